import logging
from datetime import datetime, timezone
from typing import Optional

def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=(level or "INFO").upper(),
        format="%(asctime)sZ | %(levelname)s | %(name)s | %(message)s",
    )
    logging.Formatter.converter = lambda *args: datetime.now(timezone.utc).timetuple()

def job_logger(job_id: str) -> logging.Logger:
    return logging.getLogger(f"job.{job_id}")

def safe_preview(s: Optional[str], max_chars: int) -> str:
    if s is None:
        return ""
    s = str(s)
    return s if len(s) <= max_chars else s[:max_chars] + "...(truncated)"
