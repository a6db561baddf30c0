from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from .time import utc_now


def new_ingestion_run_id(job_name: str, now: datetime | None = None) -> str:
    """``<job>:<UTC timestamp>:<8 hex chars>``, sortable by start time per job."""
    stamp = (now or utc_now()).astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{job_name}:{stamp}:{uuid4().hex[:8]}"
