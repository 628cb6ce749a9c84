from __future__ import annotations

import os
import threading
from typing import List, Optional

import structlog

from ..core.errors import ConfigError, SandboxError, SandboxFault
from ..core.models import Job, JobState, WorkerSlot
from ..executor.base import Executor
from ..executor.control import RunControl, Verdict
from ..runners.registry import AdapterRegistry
from .job_queue import JobQueue
from .result_store import ResultStore

log = structlog.get_logger(__name__)


def host_memory_bytes() -> Optional[int]:
    try:
        return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")
    except (ValueError, OSError, AttributeError):
        return None


class WorkerPool:
    """Fixed set of worker threads, one WorkerSlot each, draining one JobQueue."""

    def __init__(self, size: int, queue: JobQueue, store: ResultStore, executor: Executor,
                 registry: AdapterRegistry):
        if size <= 0:
            raise ValueError("pool size must be positive")
        self.queue = queue
        self.store = store
        self.executor = executor
        self.registry = registry
        self.slots: List[WorkerSlot] = [WorkerSlot(slot_id=i) for i in range(size)]
        self._lock = threading.Lock()
        self._threads: List[threading.Thread] = []

    @property
    def size(self) -> int:
        return len(self.slots)

    # ------------ lifecycle ------------

    def check_memory_budget(self, memory_ceiling_mb: int) -> None:
        total = host_memory_bytes()
        need = self.size * memory_ceiling_mb * 1024 * 1024
        if total is not None and need > total:
            raise ConfigError(
                f"pool_size={self.size} x memory ceiling {memory_ceiling_mb}MB exceeds host memory "
                f"({total // (1024 * 1024)}MB)"
            )

    def start(self) -> None:
        if self._threads:
            return
        for slot in self.slots:
            t = threading.Thread(target=self._loop, args=(slot,), name=f"sbx-worker-{slot.slot_id}", daemon=True)
            t.start()
            self._threads.append(t)
        log.info("pool_started", size=self.size)

    def join(self, timeout: Optional[float] = None) -> None:
        for t in self._threads:
            t.join(timeout)
        self._threads = [t for t in self._threads if t.is_alive()]

    # ------------ worker ------------

    def _loop(self, slot: WorkerSlot) -> None:
        while True:
            job = self.queue.take()
            if job is None:
                log.debug("worker_exit", slot=slot.slot_id)
                return
            control = RunControl(job.job_id)
            with self._lock:
                slot.assign(job, control)
                if job.cancel_requested:
                    control.terminate(Verdict.CANCELLED)
            try:
                self._drive(slot, job, control)
            except Exception as e:
                log.exception("worker_fault", slot=slot.slot_id, job_id=job.job_id)
                self._fail(job, f"internal error: {e}")
            finally:
                if control.cleanup_errors:
                    slot.needs_inspection = True
                    log.error("slot_flagged", slot=slot.slot_id, job_id=job.job_id,
                              errors=control.cleanup_errors)
                with self._lock:
                    slot.release()

    def _drive(self, slot: WorkerSlot, job: Job, control: RunControl) -> None:
        self.store.transition(job, JobState.CLAIMED, worker=slot.slot_id)
        if control.killed:
            self.store.transition(job, JobState.CANCELLED, error="cancelled before start")
            return

        adapter = self.registry.resolve(job.language)
        self.store.transition(job, JobState.RUNNING)
        try:
            result = self.executor.execute(job, adapter, control)
        except SandboxFault as e:
            log.error("sandbox_fault", job_id=job.job_id, error=str(e))
            self._fail(job, str(e))
            return

        if result.classification is JobState.CANCELLED:
            self.store.transition(job, JobState.CANCELLED, error="cancelled while running")
        else:
            self.store.transition(job, result.classification, result=result)

    def _fail(self, job: Job, message: str) -> None:
        try:
            self.store.transition(job, JobState.INTERNAL_ERROR, error=message)
        except SandboxError:
            log.exception("fail_transition_rejected", job_id=job.job_id)

    # ------------ cancellation / introspection ------------

    def cancel(self, job: Job) -> bool:
        """Cancel a claimed or running job. False if its run already finished."""
        with self._lock:
            for slot in self.slots:
                if slot.job is job and slot.control is not None:
                    return slot.control.terminate(Verdict.CANCELLED)
            # popped from the queue but not yet assigned to a slot
            if job.terminal:
                return False
            job.cancel_requested = True
            return True

    def busy_count(self) -> int:
        with self._lock:
            return sum(1 for s in self.slots if s.busy)

    def flagged_slots(self) -> List[int]:
        with self._lock:
            return [s.slot_id for s in self.slots if s.needs_inspection]

    def clear_flag(self, slot_id: int) -> None:
        with self._lock:
            self.slots[slot_id].needs_inspection = False
