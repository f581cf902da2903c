import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import requests

from photostyle.committed import JsonCommittedJobIds
from photostyle.config import Settings, settings as default_settings
from photostyle.events import JobEvents
from photostyle.logging_config import setup_logging
from photostyle.project_store import ProjectStore
from photostyle.registry import PendingJobRegistry
from photostyle.state_machine import ProcessingStateMachine
from photostyle.storage import JobJournal
from photostyle.transfer import CreditsProvider, TokenProvider, TransferTaskRunner

logger = logging.getLogger("photostyle")

@dataclass
class Engine:
    settings: Settings
    journal: JobJournal
    registry: PendingJobRegistry
    store: ProjectStore
    events: JobEvents
    runner: TransferTaskRunner
    state: ProcessingStateMachine

    def start(self) -> int:
        # subscribe the UI side first so a resumed job cannot finish unobserved
        self.state.resume_background()
        return self.runner.resume_outstanding()

    def shutdown(self, wait: bool = True):
        self.state.reset()
        self.runner.shutdown(wait=wait)

def _paths(cfg: Settings):
    data = Path(cfg.DATA_DIR)
    return {
        "projects": data / "projects",
        "scratch": data / "scratch",
        "journal": data / "jobs.sqlite3",
        "committed": data / "committed_jobs.json",
    }

def build_engine(
    token_provider: TokenProvider,
    cfg: Optional[Settings] = None,
    credits: Optional[CreditsProvider] = None,
    notifier: Optional[Callable[[str], None]] = None,
    session: Optional[requests.Session] = None,
    configure_logging: bool = True,
) -> Engine:
    cfg = cfg or default_settings
    if configure_logging:
        setup_logging(cfg.LOG_LEVEL)

    paths = _paths(cfg)
    journal = JobJournal(str(paths["journal"]))
    registry = PendingJobRegistry(journal=journal)
    committed = JsonCommittedJobIds(
        str(paths["committed"]),
        max_entries=cfg.COMMITTED_JOBS_MAX,
        keep=cfg.COMMITTED_JOBS_KEEP,
    )
    store = ProjectStore(
        paths["projects"],
        committed=committed,
        legacy_dir=cfg.LEGACY_DATA_DIR or None,
        debounce_seconds=cfg.DEBOUNCE_SECONDS,
        jpeg_quality=cfg.RESULT_JPEG_QUALITY,
    )
    events = JobEvents()
    runner = TransferTaskRunner(
        url=cfg.process_image_url,
        token_provider=token_provider,
        registry=registry,
        store=store,
        events=events,
        scratch_dir=paths["scratch"],
        session=session,
        credits=credits,
        credits_per_job=cfg.CREDITS_PER_JOB,
        request_timeout=cfg.REQUEST_TIMEOUT_SECONDS,
        resource_timeout=cfg.RESOURCE_TIMEOUT_SECONDS,
        max_connections=cfg.MAX_CONNECTIONS_PER_HOST,
        upload_max_dimension=cfg.UPLOAD_MAX_DIMENSION,
        upload_quality=cfg.UPLOAD_JPEG_QUALITY,
        original_quality=cfg.ORIGINAL_JPEG_QUALITY,
        preview_chars=cfg.LOG_RESPONSE_PREVIEW_CHARS,
        notifier=notifier,
    )
    state = ProcessingStateMachine(runner, events, journal=journal)

    logger.info(
        "Engine config: endpoint=%s data_dir=%s legacy_dir=%s timeouts=%.0fs/%.0fs",
        cfg.process_image_url,
        cfg.DATA_DIR,
        cfg.LEGACY_DATA_DIR or "-",
        cfg.REQUEST_TIMEOUT_SECONDS,
        cfg.RESOURCE_TIMEOUT_SECONDS,
    )
    return Engine(cfg, journal, registry, store, events, runner, state)
