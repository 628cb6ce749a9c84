from __future__ import annotations

import sys
import threading
from pathlib import Path

import pytest

from sandbox.core.models import ExecutionResult, JobState
from sandbox.executor.base import Executor
from sandbox.runners.base import Adapter
from sandbox.runners.registry import default_registry
from sandbox.services.dispatcher import Dispatcher
from sandbox.settings import LimitSpec, Settings

PAYLOADS = Path(__file__).parent / "payloads"

# A compiled "language" that only needs the interpreter running the tests:
# py_compile plays the compiler, exiting non-zero on a syntax error.
PYC = Adapter(
    name="pyc",
    source_file="prog.py",
    compile=(sys.executable, "-m", "py_compile", "{source}"),
    run=(sys.executable, "-I", "-B", "-u", "{source}"),
)


def payload(name: str) -> str:
    return (PAYLOADS / name).read_text(encoding="utf-8")


def make_settings(tmp_path: Path, **overrides) -> Settings:
    base = dict(
        jobs_dir=tmp_path / "jobs",
        pool_size=2,
        queue_capacity=8,
        runtimes={"python": sys.executable},
        iso_strategy="none",
        enforce_memory_budget=False,
        default_limits=LimitSpec(cpu_ms=5_000, wall_ms=5_000, memory_mb=256,
                                 max_output_bytes=64 * 1024, max_processes=32),
        ceilings=LimitSpec(cpu_ms=20_000, wall_ms=20_000, memory_mb=512,
                           max_output_bytes=256 * 1024, max_processes=64),
        limits_file=tmp_path / "limits.yaml",
    )
    base.update(overrides)
    return Settings(**base)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def registry():
    reg = default_registry()
    reg.register(PYC)
    return reg


@pytest.fixture
def dispatcher(settings, registry):
    d = Dispatcher(settings, registry=registry)
    d.start()
    yield d
    d.shutdown(wait=True, timeout=10)


class BlockingExecutor(Executor):
    """Holds every job until ``release`` is set; lets tests pin workers."""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def execute(self, job, adapter, control):
        self.started.set()
        self.release.wait(10)
        return ExecutionResult(job_id=job.job_id, classification=JobState.COMPLETED, exit_code=0,
                               stdout="held\n", stderr="", duration_ms=1.0)
