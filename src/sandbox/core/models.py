from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, List, Optional

from .utils import utcnow

if TYPE_CHECKING:
    from ..executor.control import RunControl


class JobState(str, Enum):
    QUEUED = "QUEUED"
    CLAIMED = "CLAIMED"
    RUNNING = "RUNNING"
    # terminal
    COMPLETED = "COMPLETED"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    COMPILE_ERROR = "COMPILE_ERROR"
    TIMED_OUT = "TIMED_OUT"
    RESOURCE_EXCEEDED = "RESOURCE_EXCEEDED"
    CANCELLED = "CANCELLED"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def phase(self) -> str:
        if self is JobState.QUEUED:
            return "queued"
        if self in (JobState.CLAIMED, JobState.RUNNING):
            return "running"
        return "done"


TERMINAL_STATES: FrozenSet[JobState] = frozenset({
    JobState.COMPLETED,
    JobState.RUNTIME_ERROR,
    JobState.COMPILE_ERROR,
    JobState.TIMED_OUT,
    JobState.RESOURCE_EXCEEDED,
    JobState.CANCELLED,
    JobState.INTERNAL_ERROR,
})

# Terminal states that never carry an ExecutionResult.
RESULTLESS_STATES: FrozenSet[JobState] = frozenset({JobState.CANCELLED, JobState.INTERNAL_ERROR})

_EXECUTION_OUTCOMES = TERMINAL_STATES - RESULTLESS_STATES

TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.QUEUED: frozenset({JobState.CLAIMED, *RESULTLESS_STATES}),
    JobState.CLAIMED: frozenset({JobState.RUNNING, *RESULTLESS_STATES}),
    JobState.RUNNING: frozenset(TERMINAL_STATES),
}


def can_transition(src: JobState, dst: JobState) -> bool:
    return dst in TRANSITIONS.get(src, frozenset())


@dataclass(frozen=True)
class LimitPolicy:
    """Resource envelope of one job. Resolved once at admission, never mutated."""

    cpu_ms: int
    wall_ms: int
    memory_mb: int
    max_output_bytes: int
    max_processes: int
    network: bool = False

    @property
    def cpu_seconds(self) -> int:
        return max(1, math.ceil(self.cpu_ms / 1000))

    @property
    def wall_seconds(self) -> float:
        return self.wall_ms / 1000.0

    @property
    def memory_bytes(self) -> int:
        return self.memory_mb * 1024 * 1024

    def scaled(self, fraction: float) -> "LimitPolicy":
        """Time budgets scaled by ``fraction`` (used for the compile sub-budget)."""
        return replace(
            self,
            cpu_ms=max(1, int(self.cpu_ms * fraction)),
            wall_ms=max(1, int(self.wall_ms * fraction)),
        )

    def as_dict(self) -> Dict[str, object]:
        return {
            "cpu_ms": self.cpu_ms,
            "wall_ms": self.wall_ms,
            "memory_mb": self.memory_mb,
            "max_output_bytes": self.max_output_bytes,
            "max_processes": self.max_processes,
            "network": self.network,
        }


@dataclass
class ExecutionResult:
    job_id: str
    classification: JobState
    exit_code: Optional[int]
    stdout: str
    stderr: str
    duration_ms: float
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    signal: Optional[int] = None
    peak_memory_bytes: Optional[int] = None
    cpu_ms: Optional[float] = None

    def __post_init__(self):
        # CANCELLED is reported by the executor but dropped before publishing
        if self.classification not in _EXECUTION_OUTCOMES | {JobState.CANCELLED}:
            raise ValueError(f"{self.classification} is not an execution outcome")

    @property
    def truncated(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated


@dataclass
class Job:
    job_id: str
    language: str
    source: str
    policy: LimitPolicy
    stdin: Optional[str] = None
    callback_url: Optional[str] = None
    submitted_at: datetime = field(default_factory=utcnow)
    state: JobState = JobState.QUEUED
    worker: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None
    cancel_requested: bool = False
    history: List[JobState] = field(default_factory=lambda: [JobState.QUEUED])

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def snapshot(self) -> "JobStatus":
        return JobStatus(
            job_id=self.job_id,
            language=self.language,
            state=self.state,
            submitted_at=self.submitted_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            worker=self.worker,
            result=self.result,
            error=self.error,
            history=tuple(self.history),
        )


@dataclass(frozen=True)
class JobStatus:
    """Read-only view of a job handed back to callers."""

    job_id: str
    language: str
    state: JobState
    submitted_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    worker: Optional[int] = None
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None
    history: tuple = ()

    @property
    def phase(self) -> str:
        return self.state.phase

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def as_dict(self) -> Dict[str, Any]:
        """Wire shape shared by the HTTP API and completion callbacks."""
        r = self.result
        return {
            "jobId": self.job_id,
            "language": self.language,
            "state": self.state.value,
            "phase": self.phase,
            "classification": self.state.value if self.terminal else None,
            "exitCode": r.exit_code if r else None,
            "signal": r.signal if r else None,
            "stdout": r.stdout if r else "",
            "stderr": r.stderr if r else "",
            "truncated": r.truncated if r else False,
            "durationMs": r.duration_ms if r else None,
            "peakMemoryBytes": r.peak_memory_bytes if r else None,
            "cpuMs": r.cpu_ms if r else None,
            "error": self.error,
            "worker": self.worker,
            "submittedAt": _iso(self.submitted_at),
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
        }


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


@dataclass
class WorkerSlot:
    slot_id: int
    job: Optional[Job] = None
    control: Optional["RunControl"] = None
    needs_inspection: bool = False

    @property
    def busy(self) -> bool:
        return self.job is not None

    def assign(self, job: Job, control: "RunControl") -> None:
        if self.job is not None:
            raise RuntimeError(f"slot {self.slot_id} already runs job {self.job.job_id}")
        self.job = job
        self.control = control

    def release(self) -> None:
        self.job = None
        self.control = None
