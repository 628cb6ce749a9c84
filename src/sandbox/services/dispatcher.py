from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import structlog

from ..core.errors import InvalidInput, SandboxError
from ..core.limits import resolve_policy
from ..core.models import Job, JobState, JobStatus
from ..core.utils import new_job_id
from ..executor.base import Executor
from ..executor.process import IsolationExecutor
from ..isolation.isolation import IsolationPipeline, probe_capabilities
from ..runners.base import Adapter
from ..runners.registry import AdapterRegistry, default_registry
from ..settings import Settings, load_settings
from .callbacks import WebhookNotifier
from .job_queue import JobQueue
from .job_store import JobStore
from .result_store import ResultStore
from .worker_pool import WorkerPool

log = structlog.get_logger(__name__)


class Dispatcher:
    """
    Public entry point: admission (validate, resolve limits, enqueue),
    status, cancellation and the synchronous return path.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[AdapterRegistry] = None,
        executor: Optional[Executor] = None,
        store: Optional[ResultStore] = None,
        notifier: Optional[WebhookNotifier] = None,
    ):
        self.settings = s = settings or load_settings()
        self.registry = registry or default_registry(s.adapters_file)
        self.pipeline = IsolationPipeline(s.iso_strategy)
        self.executor = executor or IsolationExecutor(s, pipeline=self.pipeline)
        ledger = JobStore(s.database_url) if s.database_url else None
        self.store = store or ResultStore(s.result_retention_s, s.evict_on_read, ledger=ledger)
        self.notifier = notifier or WebhookNotifier(timeout_s=s.callback_timeout_s)
        self.store.subscribe(self.notifier)
        self.queue = JobQueue(s.queue_capacity)
        self.pool = WorkerPool(s.pool_size, self.queue, self.store, self.executor, self.registry)
        self._started = False

    # ------------ lifecycle ------------

    def start(self) -> "Dispatcher":
        if self._started:
            return self
        s = self.settings
        if s.enforce_memory_budget:
            self.pool.check_memory_budget(s.ceilings.memory_mb)
        if not self.pipeline.denies_network:
            log.warning("network_not_isolated", strategy=s.iso_strategy,
                        hint="use iso_strategy=namespaces to deny network access")
        per_slot = s.sandbox_uid is not None and s.sandbox_uid_per_slot
        if self.pool.size > 1 and not (self.pipeline.hides_workspaces or per_slot):
            log.warning("workspaces_visible_to_jobs", strategy=s.iso_strategy,
                        hint="use iso_strategy=namespaces or sandbox_uid with sandbox_uid_per_slot")
        self.pool.start()
        self._started = True
        log.info("dispatcher_started", pool_size=self.pool.size, queue_capacity=self.queue.capacity,
                 jobs_dir=str(s.jobs_dir), strategy=s.iso_strategy)
        return self

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        self.queue.close()
        for job in self.queue.drain():
            self.store.transition(job, JobState.CANCELLED, error="sandbox shutting down")
        if wait:
            self.pool.join(timeout)
        self.notifier.close(wait=wait)
        if self.store.ledger is not None:
            self.store.ledger.close()
        self._started = False
        log.info("dispatcher_stopped")

    def __enter__(self) -> "Dispatcher":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.shutdown()

    # ------------ admission ------------

    def submit(
        self,
        language: str,
        source: str,
        stdin: Optional[str] = None,
        limits: Optional[Mapping[str, Any]] = None,
        callback_url: Optional[str] = None,
    ) -> str:
        adapter = self.registry.resolve(language)  # UnsupportedLanguage
        self._validate(source, stdin)
        policy = resolve_policy(self.settings, adapter.name, adapter.default_limits, limits)

        job = Job(
            job_id=new_job_id(),
            language=adapter.name,
            source=source,
            stdin=stdin,
            policy=policy,
            callback_url=callback_url,
        )
        self.store.add(job)
        try:
            self.queue.offer(job)
        except SandboxError as e:
            # a rejected job must not linger in the store
            self.store.discard(job.job_id)
            log.warning("job_rejected", reason=e.code, language=adapter.name,
                        capacity=self.queue.capacity)
            raise
        log.info("job_admitted", job_id=job.job_id, language=adapter.name, **policy.as_dict())
        return job.job_id

    def _validate(self, source: str, stdin: Optional[str]) -> None:
        s = self.settings
        if not isinstance(source, str) or not source.strip():
            raise InvalidInput("source must be a non-empty string")
        if len(source.encode("utf-8")) > s.max_source_bytes:
            raise InvalidInput(f"source exceeds {s.max_source_bytes} bytes")
        if stdin is not None:
            if not isinstance(stdin, str):
                raise InvalidInput("stdin must be a string")
            if len(stdin.encode("utf-8")) > s.max_stdin_bytes:
                raise InvalidInput(f"stdin exceeds {s.max_stdin_bytes} bytes")

    # ------------ status / return path ------------

    def status(self, job_id: str) -> JobStatus:
        return self.store.status(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobStatus:
        return self.store.wait(job_id, timeout)

    def run(self, language: str, source: str, stdin: Optional[str] = None,
            limits: Optional[Mapping[str, Any]] = None, timeout: Optional[float] = None) -> JobStatus:
        """Submit and block until the job is terminal."""
        return self.wait(self.submit(language, source, stdin=stdin, limits=limits), timeout)

    # ------------ cancellation ------------

    def cancel(self, job_id: str) -> bool:
        job = self.store.get(job_id)  # JobNotFound
        if job.terminal:
            return False
        if job.state is JobState.QUEUED and self.queue.remove(job_id):
            ok = self.store.transition(job, JobState.CANCELLED, error="cancelled while queued")
            log.info("job_cancel", job_id=job_id, stage="queued", ok=ok)
            return ok
        ok = self.pool.cancel(job)
        log.info("job_cancel", job_id=job_id, stage=job.state.value.lower(), ok=ok)
        return ok

    # ------------ introspection ------------

    def languages(self) -> List[Adapter]:
        return self.registry.languages()

    def stats(self) -> Dict[str, Any]:
        return {
            "started": self._started,
            "pool_size": self.pool.size,
            "busy_slots": self.pool.busy_count(),
            "flagged_slots": self.pool.flagged_slots(),
            "queue_depth": len(self.queue),
            "queue_capacity": self.queue.capacity,
            "jobs_tracked": len(self.store),
        }

    def capabilities(self) -> Dict[str, Any]:
        caps = probe_capabilities(self.settings.iso_strategy)
        caps["network_denied"] = self.pipeline.denies_network
        return caps
