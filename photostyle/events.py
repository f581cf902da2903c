import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Union

from photostyle.errors import ErrorKind
from photostyle.schemas import Project

log = logging.getLogger("photostyle.events")

@dataclass(frozen=True)
class JobCompleted:
    job_id: str
    project: Project

@dataclass(frozen=True)
class JobFailed:
    job_id: str
    kind: ErrorKind
    message: str = ""

JobEvent = Union[JobCompleted, JobFailed]
Listener = Callable[[JobEvent], None]

class Subscription:
    def __init__(self, events: "JobEvents", job_id: str, listener: Listener):
        self._events = events
        self.job_id = job_id
        self.listener = listener
        self.active = True

    def cancel(self):
        if self.active:
            self.active = False
            self._events._unsubscribe(self)

class JobEvents:
    """
    Terminal job events keyed by job id. Listeners only ever see events for
    the job they subscribed to.
    """

    def __init__(self):
        self._subs: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, job_id: str, listener: Listener) -> Subscription:
        sub = Subscription(self, job_id, listener)
        with self._lock:
            self._subs.setdefault(job_id, []).append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription):
        with self._lock:
            subs = self._subs.get(sub.job_id, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subs.pop(sub.job_id, None)

    def unsubscribe(self, job_id: str, listener: Listener):
        with self._lock:
            subs = list(self._subs.get(job_id, []))
        for sub in subs:
            if sub.listener == listener:
                sub.cancel()

    def has_listeners(self, job_id: str) -> bool:
        with self._lock:
            return bool(self._subs.get(job_id))

    def publish(self, event: JobEvent) -> int:
        """Deliver to the job's listeners; returns how many received it."""
        with self._lock:
            subs = list(self._subs.get(event.job_id, []))
        delivered = 0
        for sub in subs:
            if not sub.active:
                continue
            try:
                sub.listener(event)
                delivered += 1
            except Exception:
                log.exception("Listener for job=%s raised", event.job_id)
        return delivered
