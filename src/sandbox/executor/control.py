from __future__ import annotations

import threading
from enum import Enum
from typing import Callable, List, Optional

import structlog

log = structlog.get_logger(__name__)


class Verdict(str, Enum):
    EXITED = "exited"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class RunControl:
    """Once-only termination verdict for one job.

    The watchdog, a cancel request and the normal exit path all race to
    decide the verdict; the first one wins and is never revoked. A kill
    verdict is delivered to whatever process group is attached at the time,
    or to the next one attached.
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._lock = threading.Lock()
        self._verdict: Optional[Verdict] = None
        self._killer: Optional[Callable[[], None]] = None
        self.cleanup_errors: List[str] = []

    @property
    def verdict(self) -> Optional[Verdict]:
        with self._lock:
            return self._verdict

    @property
    def killed(self) -> bool:
        return self.verdict in (Verdict.TIMED_OUT, Verdict.CANCELLED)

    def attach(self, killer: Callable[[], None]) -> None:
        with self._lock:
            self._killer = killer
            if self._verdict in (Verdict.TIMED_OUT, Verdict.CANCELLED):
                killer()

    def detach(self) -> None:
        with self._lock:
            self._killer = None

    def terminate(self, reason: Verdict) -> bool:
        """Request forced termination. Returns False if a verdict already exists."""
        with self._lock:
            if self._verdict is not None:
                return False
            self._verdict = reason
            if self._killer is not None:
                self._killer()
        log.info("run_terminated", job_id=self.job_id, reason=reason.value)
        return True

    def settle(self) -> Verdict:
        """Called once the final step exited; keeps an earlier kill verdict."""
        with self._lock:
            if self._verdict is None:
                self._verdict = Verdict.EXITED
            return self._verdict
