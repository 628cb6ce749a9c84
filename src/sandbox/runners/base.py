from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

DEFAULT_RESOURCE_MARKERS: Tuple[str, ...] = (
    "MemoryError",
    "Cannot allocate memory",
    "std::bad_alloc",
    "out of memory",
)


@dataclass(frozen=True)
class Adapter:
    """Declarative description of how to build and run one language.

    ``run`` and ``compile`` are argv templates; placeholders ``{source}``,
    ``{workdir}``, ``{stem}`` and ``{memory_mb}`` are filled per job. The
    first argv element is a runtime binary that settings may override via
    ``runtimes[<runtime>]``.
    """

    name: str
    source_file: str
    run: Tuple[str, ...]
    compile: Optional[Tuple[str, ...]] = None
    aliases: Tuple[str, ...] = ()
    default_limits: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    runtime: Optional[str] = None
    compile_runtime: Optional[str] = None
    # JVM / V8 / Go reserve address space up front, RLIMIT_AS breaks them
    limit_address_space: bool = True
    resource_markers: Tuple[str, ...] = DEFAULT_RESOURCE_MARKERS

    @property
    def compiled(self) -> bool:
        return self.compile is not None

    def _context(self, workdir: Path, memory_mb: int) -> Dict[str, str]:
        return {
            "source": self.source_file,
            "stem": Path(self.source_file).stem,
            "workdir": str(workdir),
            "memory_mb": str(memory_mb),
        }

    @staticmethod
    def _render(template: Tuple[str, ...], ctx: Mapping[str, str], binary: Optional[str]) -> List[str]:
        argv = [part.format(**ctx) for part in template]
        if binary:
            argv[0] = binary
        return argv

    def run_argv(self, workdir: Path, memory_mb: int, runtimes: Mapping[str, str] = ()) -> List[str]:
        binary = dict(runtimes).get(self.runtime) if self.runtime else None
        return self._render(self.run, self._context(workdir, memory_mb), binary)

    def compile_argv(self, workdir: Path, memory_mb: int, runtimes: Mapping[str, str] = ()) -> Optional[List[str]]:
        if self.compile is None:
            return None
        binary = dict(runtimes).get(self.compile_runtime) if self.compile_runtime else None
        return self._render(self.compile, self._context(workdir, memory_mb), binary)

    def env_for(self, workdir: Path) -> Dict[str, str]:
        return {k: v.format(workdir=str(workdir)) for k, v in self.env.items()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Adapter":
        data = dict(data)
        for key in ("run", "compile", "aliases", "resource_markers"):
            if data.get(key) is not None:
                data[key] = tuple(data[key])
        return cls(**data)
