import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import List, Protocol

log = logging.getLogger("photostyle.committed")

class CommittedJobIds(Protocol):
    """Persisted set of job ids whose result already became a project."""

    def __contains__(self, job_id: str) -> bool:
        ...

    def add(self, job_id: str):
        ...

def _truncate(ids: List[str], max_entries: int, keep: int) -> List[str]:
    # insertion order is kept, so the tail holds the most recent ids
    if len(ids) > max_entries:
        return ids[-keep:]
    return ids

class MemoryCommittedJobIds:
    def __init__(self, max_entries: int = 1000, keep: int = 500):
        self.max_entries = max_entries
        self.keep = keep
        self._ids: List[str] = []
        self._lock = threading.Lock()

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._ids

    def add(self, job_id: str):
        with self._lock:
            if job_id in self._ids:
                return
            self._ids = _truncate(self._ids + [job_id], self.max_entries, self.keep)

    def snapshot(self) -> List[str]:
        with self._lock:
            return list(self._ids)

class JsonCommittedJobIds:
    """
    Key-value style entry kept as a small JSON array on disk. Read fresh on
    every lookup; when it grows past max_entries only the newest `keep` ids
    are retained.
    """

    def __init__(self, path: str, max_entries: int = 1000, keep: int = 500):
        self.path = Path(path)
        self.max_entries = max_entries
        self.keep = keep
        self._lock = threading.Lock()

    def _read(self) -> List[str]:
        if not self.path.exists():
            return []
        content = self.path.read_text(encoding="utf-8")
        if not content.strip():
            return []
        try:
            data = json.loads(content)
        except ValueError:
            log.warning("Committed job id file is corrupt, starting empty: %s", self.path)
            return []
        return [str(x) for x in data] if isinstance(data, list) else []

    def _write(self, ids: List[str]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".committed-", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(ids, f)
        os.replace(tmp, self.path)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._read()

    def add(self, job_id: str):
        with self._lock:
            ids = self._read()
            if job_id in ids:
                return
            ids.append(job_id)
            trimmed = _truncate(ids, self.max_entries, self.keep)
            if len(trimmed) != len(ids):
                log.info("Committed job ids truncated %d -> %d", len(ids), len(trimmed))
            self._write(trimmed)

    def snapshot(self) -> List[str]:
        with self._lock:
            return self._read()
