from __future__ import annotations

import uuid
from datetime import datetime, timezone


def new_job_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def elapsed_ms(start: float, end: float) -> float:
    return round((end - start) * 1000, 3)
