import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import List

from photostyle.schemas import PendingJob

class JobJournal:
    """Durable log of submitted jobs that have not reached a terminal outcome yet."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._init()

    def _conn(self):
        return sqlite3.connect(self.db_path, check_same_thread=False)

    def _init(self):
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._conn() as c:
            c.execute("""
            CREATE TABLE IF NOT EXISTS pending_jobs (
              job_id TEXT PRIMARY KEY,
              template_id TEXT NOT NULL,
              template_name TEXT NOT NULL,
              original_asset_path TEXT NOT NULL,
              created_at_ms INTEGER NOT NULL
            )
            """)
            c.commit()

    def record(self, job: PendingJob):
        created_ms = int(job.created_at.timestamp() * 1000)
        with self._conn() as c:
            c.execute(
                "INSERT OR REPLACE INTO pending_jobs(job_id,template_id,template_name,original_asset_path,created_at_ms) "
                "VALUES(?,?,?,?,?)",
                (job.id, job.template_id, job.template_name, job.original_asset_path, created_ms),
            )
            c.commit()

    def forget(self, job_id: str):
        with self._conn() as c:
            c.execute("DELETE FROM pending_jobs WHERE job_id=?", (job_id,))
            c.commit()

    def outstanding(self) -> List[PendingJob]:
        with self._conn() as c:
            cur = c.execute(
                "SELECT job_id,template_id,template_name,original_asset_path,created_at_ms "
                "FROM pending_jobs ORDER BY created_at_ms"
            )
            rows = cur.fetchall()
        return [
            PendingJob(
                id=row[0],
                template_id=row[1],
                template_name=row[2],
                original_asset_path=row[3],
                created_at=datetime.fromtimestamp(row[4] / 1000, tz=timezone.utc),
            )
            for row in rows
        ]

    def has_pending(self) -> bool:
        with self._conn() as c:
            row = c.execute("SELECT 1 FROM pending_jobs LIMIT 1").fetchone()
        return row is not None
