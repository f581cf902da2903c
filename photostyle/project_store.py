"""
project_store.py

Disk-backed library of finished projects.

Layout under the store root:
- projects.json              index, JSON array of Project records
- {project_id}.jpg           generated image
- {project_id}-metadata.json {"image_path": ...}

The index file is the single source of truth. It is re-read before every
read or mutation and rewritten whole (temp file + rename) after each change.
All files are written owner-only (0600).
"""

import json
import logging
import os
import shutil
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Tuple, Union

from pydantic import ValidationError

from photostyle.committed import CommittedJobIds, MemoryCommittedJobIds
from photostyle.errors import StorageFailed
from photostyle.schemas import Project, ProjectStatus
from photostyle.utils import protect_file, reencode_jpeg, safe_unlink, write_protected

log = logging.getLogger("photostyle.store")

INDEX_FILE = "projects.json"
IMAGE_SUFFIX = ".jpg"
METADATA_SUFFIX = "-metadata.json"

@dataclass(frozen=True)
class CommitResult:
    project: Optional[Project]
    skipped: bool = False
    reason: str = ""

def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)

def _read_records(path: Path) -> List[Any]:
    try:
        content = path.read_text(encoding="utf-8")
        data = json.loads(content) if content.strip() else []
    except (OSError, ValueError) as e:
        raise StorageFailed(f"Failed to load projects: {e}") from e
    if not isinstance(data, list):
        raise StorageFailed("Failed to load projects: index is not a list")
    return data

def _atomic_write_text(path: Path, text: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        protect_file(tmp)
        os.replace(tmp, path)
    except BaseException:
        safe_unlink(tmp)
        raise

class ProjectStore:
    def __init__(
        self,
        root_dir: Union[str, Path],
        committed: Optional[CommittedJobIds] = None,
        legacy_dir: Union[str, Path, None] = None,
        debounce_seconds: float = 5.0,
        jpeg_quality: int = 90,
    ):
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.index_path = self.root / INDEX_FILE
        self.committed = committed if committed is not None else MemoryCommittedJobIds()
        self.debounce_seconds = debounce_seconds
        self.jpeg_quality = jpeg_quality
        # serializes reload -> duplicate check -> write across concurrent commits
        self._lock = threading.RLock()

        if legacy_dir:
            self._migrate_legacy(Path(legacy_dir))

    # --------------------------
    # Paths
    # --------------------------
    def image_path(self, project_id: str) -> Path:
        return self.root / f"{project_id}{IMAGE_SUFFIX}"

    def metadata_path(self, project_id: str) -> Path:
        return self.root / f"{project_id}{METADATA_SUFFIX}"

    # --------------------------
    # Index I/O
    # --------------------------
    def _read_index(self) -> Tuple[List[Project], List[Any]]:
        """Return (readable projects, raw records that failed validation)."""
        if not self.index_path.exists():
            return [], []
        data = _read_records(self.index_path)

        projects, unreadable = [], []
        for item in data:
            try:
                projects.append(Project.model_validate(item))
            except ValidationError as e:
                log.warning("Keeping unreadable project record as-is: %s", e)
                unreadable.append(item)
        return projects, unreadable

    def _load_index(self) -> List[Project]:
        return self._read_index()[0]

    def _persist_index(self, projects: List[Project], unreadable: List[Any] = ()):
        payload = [p.model_dump(mode="json") for p in projects] + list(unreadable)
        _atomic_write_text(self.index_path, json.dumps(payload, indent=2))

    def _write_metadata(self, project_id: str, image_path: Path):
        _atomic_write_text(self.metadata_path(project_id), json.dumps({"image_path": str(image_path)}))

    # --------------------------
    # Duplicate guards
    # --------------------------
    def _remember(self, job_id: str):
        # the job id on the index record is authoritative, the set is a fast path
        try:
            self.committed.add(job_id)
        except OSError:
            log.warning("Could not record committed job=%s", job_id, exc_info=True)

    def _find_recent_duplicate(self, projects: List[Project], project: Project) -> Optional[Project]:
        created = _aware(project.created_at)
        for existing in projects:
            if existing.template_id != project.template_id:
                continue
            delta = abs((_aware(existing.created_at) - created).total_seconds())
            if delta <= self.debounce_seconds:
                return existing
        return None

    # --------------------------
    # Public interface
    # --------------------------
    def commit(self, job_id: Optional[str], image: bytes, project: Project) -> CommitResult:
        """
        Persist `project` with its image exactly once per job id.

        Order on disk: image -> metadata -> index. A crash before the index
        is rewritten leaves at most an orphan file, never a listed project
        without its image.
        """
        with self._lock:
            projects, unreadable = self._read_index()

            if job_id:
                stored = next((p for p in projects if p.job_id == job_id), None)
                if stored is not None or job_id in self.committed:
                    log.info("Commit skip: job=%s already committed", job_id)
                    return CommitResult(stored, skipped=True, reason="job_already_committed")
                if project.job_id != job_id:
                    project = project.model_copy(update={"job_id": job_id})

            dup = self._find_recent_duplicate(projects, project)
            if dup is not None:
                log.info(
                    "Commit skip: job=%s template=%s within %.0fs of project=%s",
                    job_id, project.template_id, self.debounce_seconds, dup.id,
                )
                if job_id:
                    self._remember(job_id)
                return CommitResult(dup, skipped=True, reason="debounced")

            try:
                data = reencode_jpeg(image, self.jpeg_quality)
            except (OSError, ValueError) as e:
                log.exception("Failed to encode image for project=%s", project.id)
                raise StorageFailed(f"Failed to encode image: {e}") from e

            image_path = self.image_path(project.id)
            try:
                write_protected(image_path, data)
                self._write_metadata(project.id, image_path)
                self._persist_index(projects + [project], unreadable)
            except OSError as e:
                log.exception("Failed to save project=%s job=%s", project.id, job_id)
                raise StorageFailed(f"Failed to save project: {e}") from e

            if job_id:
                self._remember(job_id)
            log.info("Committed project=%s job=%s template=%s", project.id, job_id, project.template_id)
            return CommitResult(project)

    def get_all(self) -> List[Project]:
        with self._lock:
            try:
                projects = self._load_index()
            except StorageFailed:
                log.exception("Project index unreadable")
                return []
        visible = []
        for p in projects:
            if p.status == ProjectStatus.COMPLETED and not self.image_path(p.id).exists():
                log.warning("Hiding completed project=%s with no image on disk", p.id)
                continue
            visible.append(p)
        return sorted(visible, key=lambda p: _aware(p.created_at), reverse=True)

    def get(self, project_id: str) -> Optional[Project]:
        for p in self.get_all():
            if p.id == project_id:
                return p
        return None

    def delete(self, project: Union[Project, str]) -> bool:
        project_id = project if isinstance(project, str) else project.id
        with self._lock:
            projects, unreadable = self._read_index()
            remaining = [p for p in projects if p.id != project_id]
            found = len(remaining) != len(projects)

            # file removal is best effort, the index update is not
            if not safe_unlink(self.image_path(project_id)):
                log.warning("Could not remove image for project=%s", project_id)
            if not safe_unlink(self.metadata_path(project_id)):
                log.warning("Could not remove metadata for project=%s", project_id)

            try:
                self._persist_index(remaining, unreadable)
            except OSError as e:
                raise StorageFailed(f"Failed to delete project: {e}") from e
        log.info("Deleted project=%s found=%s", project_id, found)
        return found

    def get_image(self, project_id: str) -> Optional[bytes]:
        path = self.image_path(project_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    # --------------------------
    # Legacy migration
    # --------------------------
    def _migrate_legacy(self, legacy: Path):
        legacy_index = legacy / INDEX_FILE
        if not legacy_index.exists() or self.index_path.exists():
            return
        if legacy.resolve() == self.root.resolve():
            return

        log.info("Migrating projects from legacy location=%s", legacy)
        try:
            copied = 0
            for src in legacy.iterdir():
                if not src.is_file() or src.name == INDEX_FILE:
                    continue
                dst = self.root / src.name
                shutil.copy2(src, dst)
                protect_file(dst)
                copied += 1

            # index goes last so its presence means the sidecars are already here
            fd, tmp = tempfile.mkstemp(dir=str(self.root), prefix=f".{INDEX_FILE}-", suffix=".tmp")
            os.close(fd)
            try:
                shutil.copy2(legacy_index, tmp)
                protect_file(tmp)
                os.replace(tmp, self.index_path)
            finally:
                safe_unlink(tmp)

            expected = len(_read_records(legacy_index))
            migrated, unreadable = self._read_index()
            if unreadable or len(migrated) != expected:
                raise StorageFailed(
                    f"migrated index has {len(migrated)} readable of {expected} record(s)"
                )
        except (OSError, StorageFailed):
            log.exception("Legacy migration failed; legacy location left untouched")
            return

        log.info("Migrated %d sidecar file(s) and index", copied)
        try:
            shutil.rmtree(legacy)
        except OSError:
            log.warning("Could not remove legacy location=%s", legacy, exc_info=True)
