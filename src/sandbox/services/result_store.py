from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional

import structlog

from ..core.errors import InvalidTransition, JobNotFound
from ..core.models import RESULTLESS_STATES, ExecutionResult, Job, JobState, JobStatus, can_transition
from ..core.utils import utcnow
from .job_store import JobStore

log = structlog.get_logger(__name__)

Listener = Callable[[Job, JobStatus], None]


class ResultStore:
    """
    Job table and return path.

    Owns every admitted job until it is evicted, applies state transitions
    (monotonic, terminal states final), wakes synchronous waiters and
    notifies listeners once per terminal job. Terminal jobs are evicted
    after ``retention_s`` or on first read when ``evict_on_read`` is set;
    an optional JobStore keeps them queryable afterwards.
    """

    def __init__(self, retention_s: float = 600.0, evict_on_read: bool = False,
                 ledger: Optional[JobStore] = None, clock: Callable[[], float] = time.monotonic):
        self.retention_s = retention_s
        self.evict_on_read = evict_on_read
        self.ledger = ledger
        self._clock = clock
        self._jobs: Dict[str, Job] = {}
        self._done_at: Dict[str, float] = {}
        self._cond = threading.Condition(threading.RLock())
        self._listeners: List[Listener] = []

    # ---- registration ----

    def add(self, job: Job) -> None:
        with self._cond:
            self.purge_expired()
            if job.job_id in self._jobs:
                raise ValueError(f"duplicate job id {job.job_id}")
            self._jobs[job.job_id] = job

    def discard(self, job_id: str) -> None:
        with self._cond:
            self._jobs.pop(job_id, None)
            self._done_at.pop(job_id, None)

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    # ---- lookups ----

    def get(self, job_id: str) -> Job:
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            return job

    def status(self, job_id: str) -> JobStatus:
        with self._cond:
            self.purge_expired()
            job = self._jobs.get(job_id)
            if job is not None:
                snap = job.snapshot()
                if self.evict_on_read and job.terminal:
                    self.discard(job_id)
                return snap
        if self.ledger is not None:
            snap = self.ledger.status(job_id)
            if snap is not None:
                return snap
        raise JobNotFound(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobStatus:
        """Block until the job is terminal (or ``timeout`` elapses) and return its status."""
        with self._cond:
            job = self.get(job_id)
            self._cond.wait_for(lambda: job.terminal, timeout)
            return self.status(job_id)

    # ---- transitions ----

    def transition(self, job: Job, state: JobState, *, result: Optional[ExecutionResult] = None,
                   error: Optional[str] = None, worker: Optional[int] = None) -> bool:
        """Move ``job`` forward. Returns False when the job is already terminal."""
        with self._cond:
            if job.terminal:
                return False
            if not can_transition(job.state, state):
                raise InvalidTransition(f"{job.job_id}: {job.state.value} -> {state.value}")
            if state.terminal and state not in RESULTLESS_STATES and result is None:
                raise InvalidTransition(f"{job.job_id}: {state.value} requires an ExecutionResult")

            job.state = state
            job.history.append(state)
            if worker is not None:
                job.worker = worker
            if state is JobState.RUNNING:
                job.started_at = utcnow()
            if state.terminal:
                job.finished_at = utcnow()
                job.result = None if state in RESULTLESS_STATES else result
                job.error = error
                self._done_at[job.job_id] = self._clock()
                # persisted before anyone can read (and evict) the terminal state
                self._persist(job)
                self._cond.notify_all()
            snap = job.snapshot()

        log.info("job_state", job_id=job.job_id, state=state.value, worker=job.worker)
        if state.terminal:
            for listener in list(self._listeners):
                try:
                    listener(job, snap)
                except Exception:
                    log.exception("listener_failed", job_id=job.job_id)
        return True

    # ---- retention ----

    def purge_expired(self) -> int:
        now = self._clock()
        with self._cond:
            expired = [jid for jid, t in self._done_at.items() if now - t >= self.retention_s]
            for jid in expired:
                self.discard(jid)
        if expired:
            log.debug("jobs_evicted", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._cond:
            return len(self._jobs)

    def _persist(self, job: Job) -> None:
        if self.ledger is None:
            return
        try:
            self.ledger.save(job)
        except Exception:
            # ledger failures must not reach the worker
            log.exception("ledger_write_failed", job_id=job.job_id)
