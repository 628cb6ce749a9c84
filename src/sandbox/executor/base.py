from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

from ..core.models import ExecutionResult, Job, LimitPolicy
from .output import BoundedBuffer

if TYPE_CHECKING:
    from ..runners.base import Adapter
    from .control import RunControl


@dataclass
class ExecSpec:
    cmd: List[str]
    workdir: Path
    env: Dict[str, str]
    policy: LimitPolicy
    stdin: Optional[bytes] = None
    limit_address_space: bool = True
    label: str = "run"
    uid: Optional[int] = None
    # fix the verdict before the exit status is collected
    settles: bool = False


@dataclass
class StepOutcome:
    returncode: int
    stdout: BoundedBuffer
    stderr: BoundedBuffer
    duration_ms: float
    cpu_ms: float = 0.0
    peak_memory_bytes: Optional[int] = None
    cgroup: Dict[str, int] = field(default_factory=dict)

    @property
    def signal(self) -> Optional[int]:
        return -self.returncode if self.returncode < 0 else None


class Executor:
    def execute(self, job: Job, adapter: "Adapter", control: "RunControl") -> ExecutionResult: ...
