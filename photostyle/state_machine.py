import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from photostyle.errors import ErrorKind, JobAlreadyActive, ProcessingError
from photostyle.events import JobCompleted, JobEvent, JobEvents
from photostyle.schemas import Project
from photostyle.storage import JobJournal
from photostyle.transfer import TransferTaskRunner

log = logging.getLogger("photostyle.state")

class Phase(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    PROCESSING_IN_BACKGROUND = "processing_in_background"
    COMPLETED = "completed"
    FAILED = "failed"

ACTIVE_PHASES = {Phase.PREPARING, Phase.UPLOADING, Phase.PROCESSING, Phase.PROCESSING_IN_BACKGROUND}
PROGRESS_PHASES = {Phase.PROCESSING, Phase.PROCESSING_IN_BACKGROUND}

@dataclass(frozen=True)
class ProcessingState:
    phase: Phase
    project: Optional[Project] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def is_active(self) -> bool:
        return self.phase in ACTIVE_PHASES

    @property
    def is_terminal(self) -> bool:
        return self.phase in (Phase.COMPLETED, Phase.FAILED)

StateListener = Callable[[ProcessingState], None]

class ProcessingStateMachine:
    """
    idle -> preparing -> uploading -> processing -> completed | failed

    processing_in_background is processing discovered on cold start from a
    job left in the journal. One job at a time; starting another while one
    is active raises JobAlreadyActive.
    """

    def __init__(
        self,
        runner: TransferTaskRunner,
        events: JobEvents,
        journal: Optional[JobJournal] = None,
        progress_interval: float = 0.5,
        progress_step: float = 0.05,
        progress_cap: float = 0.9,
    ):
        self.runner = runner
        self.events = events
        self.journal = journal
        self.progress_interval = progress_interval
        self.progress_step = progress_step
        self.progress_cap = progress_cap

        self.state = ProcessingState(Phase.IDLE)
        self.progress = 0.0
        self.current_job_id: Optional[str] = None
        self._listeners: List[StateListener] = []
        self._lock = threading.RLock()
        self._stop_progress = threading.Event()
        self._progress_thread: Optional[threading.Thread] = None

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def remove():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return remove

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self.state.is_active

    # --------------------------
    # Transitions
    # --------------------------
    def start(self, template_id: str, template_name: str, image: bytes) -> Optional[str]:
        with self._lock:
            if self.state.is_active:
                raise JobAlreadyActive(f"job {self.current_job_id or '(preparing)'} is still active")
            self.current_job_id = None
            self.progress = 0.0
            self._set(ProcessingState(Phase.PREPARING))

        try:
            payload = self.runner.prepare_upload(image)
        except ProcessingError as e:
            self._fail(e.kind)
            return None

        with self._lock:
            self.progress = 0.1
            self._set(ProcessingState(Phase.UPLOADING))
            # held across submit so a fast terminal event waits for processing to be set
            try:
                job_id = self.runner.submit(template_id, template_name, image, payload, listener=self._on_event)
            except ProcessingError as e:
                self._fail(e.kind)
                return None
            self.current_job_id = job_id
            self.progress = 0.3
            self._set(ProcessingState(Phase.PROCESSING))
            self._start_progress()
        log.info("Tracking job=%s template=%s", job_id, template_id)
        return job_id

    def resume_background(self) -> Optional[str]:
        """On cold start, pick up the most recent job left over from a previous session."""
        if self.journal is None:
            return None
        outstanding = self.journal.outstanding()
        if not outstanding:
            return None
        job = outstanding[-1]
        with self._lock:
            if self.state.is_active:
                return None
            self.current_job_id = job.id
            self.events.subscribe(job.id, self._on_event)
            self.progress = 0.3
            self._set(ProcessingState(Phase.PROCESSING_IN_BACKGROUND))
            self._start_progress()
        log.info("Job=%s still outstanding from previous session", job.id)
        return job.id

    def reset(self):
        """Drop interest in the current job. The remote work is not cancelled."""
        with self._lock:
            self._stop_progress.set()
            if self.current_job_id:
                self.events.unsubscribe(self.current_job_id, self._on_event)
            self.current_job_id = None
            self.progress = 0.0
            self._set(ProcessingState(Phase.IDLE))

    # --------------------------
    # Internals
    # --------------------------
    def _on_event(self, event: JobEvent):
        with self._lock:
            if event.job_id != self.current_job_id or not self.state.is_active:
                return
            self._stop_progress.set()
            self.events.unsubscribe(event.job_id, self._on_event)
            if isinstance(event, JobCompleted):
                self.progress = 1.0
                self._set(ProcessingState(Phase.COMPLETED, project=event.project))
            else:
                self._set(ProcessingState(Phase.FAILED, error_kind=event.kind))

    def _fail(self, kind: ErrorKind):
        with self._lock:
            self._stop_progress.set()
            self._set(ProcessingState(Phase.FAILED, error_kind=kind))

    def _set(self, state: ProcessingState):
        self.state = state
        log.debug("state -> %s", state.phase.value)
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                log.exception("State listener raised")

    def _start_progress(self):
        self._stop_progress.set()
        stop = threading.Event()
        self._stop_progress = stop
        t = threading.Thread(target=self._advance_progress, args=(stop,), daemon=True, name="photostyle-progress")
        self._progress_thread = t
        t.start()

    def _advance_progress(self, stop: threading.Event):
        # synthetic, for display only
        while not stop.wait(self.progress_interval):
            with self._lock:
                if stop.is_set() or self.state.phase not in PROGRESS_PHASES:
                    return
                self.progress = min(self.progress_cap, self.progress + self.progress_step)
                if self.progress >= self.progress_cap:
                    return
