from __future__ import annotations

import os
import resource
from pathlib import Path
from typing import Callable, Optional


def _set(which: int, value: int) -> None:
    # never ask for more than the service itself is allowed
    _, hard = resource.getrlimit(which)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(which, (value, value))


def apply_rlimits(
    cpu_seconds: int,
    memory_bytes: Optional[int],
    nofile: int,
    fsize_bytes: Optional[int] = None,
    nproc: Optional[int] = None,
) -> None:
    """
    Process-level limits: CPU time, address space, open files, file size,
    process count, no core dumps. RLIMIT_CPU gets one second of slack between
    SIGXCPU (soft) and SIGKILL (hard).
    """
    _, cpu_hard = resource.getrlimit(resource.RLIMIT_CPU)
    cpu_soft = cpu_seconds
    cpu_cap = cpu_seconds + 1
    if cpu_hard != resource.RLIM_INFINITY:
        cpu_soft, cpu_cap = min(cpu_soft, cpu_hard), min(cpu_cap, cpu_hard)
    resource.setrlimit(resource.RLIMIT_CPU, (cpu_soft, cpu_cap))
    if memory_bytes:
        _set(resource.RLIMIT_AS, memory_bytes)
    _set(resource.RLIMIT_NOFILE, nofile)
    _set(resource.RLIMIT_CORE, 0)
    if fsize_bytes:
        _set(resource.RLIMIT_FSIZE, fsize_bytes)
    if nproc:
        _set(resource.RLIMIT_NPROC, nproc)


def make_preexec(
    *,
    cpu_seconds: int,
    memory_bytes: Optional[int],
    nofile: int,
    fsize_bytes: Optional[int],
    nproc: Optional[int],
    cgroup_procs: Optional[Path],
    uid: Optional[int],
    gid: Optional[int],
) -> Callable[[], None]:
    """Runs in the child between fork and exec, so every limit is in place
    before the first instruction of user code."""

    def _preexec() -> None:
        if cgroup_procs is not None:
            cgroup_procs.write_text(str(os.getpid()))
        apply_rlimits(cpu_seconds, memory_bytes, nofile, fsize_bytes, nproc)
        if gid is not None:
            os.setgroups([])
            os.setgid(gid)
        if uid is not None:
            os.setuid(uid)

    return _preexec
