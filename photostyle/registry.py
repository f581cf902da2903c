import logging
import threading
from typing import Dict, List, Optional

from photostyle.schemas import PendingJob
from photostyle.storage import JobJournal

log = logging.getLogger("photostyle.registry")

class PendingJobRegistry:
    """
    Maps job id -> PendingJob so a completion callback can find the template
    and original asset it belongs to. A single lock guards the map; every
    operation is O(1).

    With a journal, put/remove are written through to disk and restore()
    reloads whatever was outstanding when the process last stopped.
    """

    def __init__(self, journal: Optional[JobJournal] = None):
        self._jobs: Dict[str, PendingJob] = {}
        self._lock = threading.Lock()
        self._journal = journal

    def put(self, job: PendingJob):
        with self._lock:
            self._jobs[job.id] = job
            if self._journal is not None:
                self._journal.record(job)

    def get(self, job_id: str) -> Optional[PendingJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def remove(self, job_id: str) -> Optional[PendingJob]:
        """Returns the removed job, or None when it was not registered."""
        with self._lock:
            job = self._jobs.pop(job_id, None)
            if self._journal is not None:
                self._journal.forget(job_id)
            return job

    def restore(self) -> List[PendingJob]:
        if self._journal is None:
            return []
        jobs = self._journal.outstanding()
        with self._lock:
            for job in jobs:
                self._jobs.setdefault(job.id, job)
        if jobs:
            log.info("Restored %d outstanding job(s) from journal", len(jobs))
        return jobs

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
