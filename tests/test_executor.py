import os
import signal
import time

import pytest

from sandbox.core.errors import SandboxFault
from sandbox.core.models import Job, JobState, LimitPolicy
from sandbox.executor.base import StepOutcome
from sandbox.executor.control import RunControl, Verdict
from sandbox.executor.output import BoundedBuffer
from sandbox.executor.process import IsolationExecutor
from sandbox.runners.base import Adapter
from sandbox.runners.builtin import BASH, PYTHON

from conftest import PYC, make_settings, payload

POLICY = LimitPolicy(cpu_ms=5_000, wall_ms=5_000, memory_mb=256, max_output_bytes=64 * 1024,
                     max_processes=32)


def _job(source, stdin=None, policy=POLICY, jid="job"):
    return Job(job_id=jid, language="python", source=source, stdin=stdin, policy=policy)


def _step(rc, stderr=b"", cpu_ms=0.0, peak=None, cgroup=None):
    err = BoundedBuffer(1024)
    err.feed(stderr)
    return StepOutcome(returncode=rc, stdout=BoundedBuffer(1024), stderr=err, duration_ms=1.0,
                       cpu_ms=cpu_ms, peak_memory_bytes=peak, cgroup=cgroup or {})


@pytest.fixture
def executor(tmp_path):
    return IsolationExecutor(make_settings(tmp_path))


def _run(executor, job, adapter=PYTHON):
    return executor.execute(job, adapter, RunControl(job.job_id))


# ---------- classification ----------

@pytest.mark.parametrize("step, verdict, expected", [
    (_step(0), Verdict.EXITED, JobState.COMPLETED),
    (_step(3), Verdict.EXITED, JobState.RUNTIME_ERROR),
    (_step(-signal.SIGKILL), Verdict.TIMED_OUT, JobState.TIMED_OUT),
    (_step(-signal.SIGKILL), Verdict.CANCELLED, JobState.CANCELLED),
    (_step(-signal.SIGXCPU), Verdict.EXITED, JobState.TIMED_OUT),
    (_step(-signal.SIGKILL, cpu_ms=5_000), Verdict.EXITED, JobState.TIMED_OUT),
    (_step(-signal.SIGKILL, cgroup={"oom_kill": 1}), Verdict.EXITED, JobState.RESOURCE_EXCEEDED),
    (_step(1, cgroup={"pids_max_events": 2}), Verdict.EXITED, JobState.RESOURCE_EXCEEDED),
    (_step(-signal.SIGXFSZ), Verdict.EXITED, JobState.RESOURCE_EXCEEDED),
    (_step(1, stderr=b"Traceback...\nMemoryError\n"), Verdict.EXITED, JobState.RESOURCE_EXCEEDED),
    (_step(-signal.SIGSEGV, peak=255 * 1024 * 1024), Verdict.EXITED, JobState.RESOURCE_EXCEEDED),
    (_step(-signal.SIGSEGV, peak=10 * 1024 * 1024), Verdict.EXITED, JobState.RUNTIME_ERROR),
    # EAGAIN from a non-blocking socket is the program's own error
    (_step(1, stderr=b"BlockingIOError: [Errno 11] Resource temporarily unavailable\n"), Verdict.EXITED,
     JobState.RUNTIME_ERROR),
])
def test_classify(step, verdict, expected):
    assert IsolationExecutor._classify(step, POLICY, PYTHON, verdict) is expected


def test_refused_fork_in_bash_is_a_resource_hit():
    step = _step(254, stderr=b"main.sh: fork: retry: Resource temporarily unavailable\n")
    assert IsolationExecutor._classify(step, POLICY, BASH, Verdict.EXITED) is JobState.RESOURCE_EXCEEDED
    assert IsolationExecutor._classify(step, POLICY, PYTHON, Verdict.EXITED) is JobState.RUNTIME_ERROR


def test_compile_budget_stays_within_ceilings(tmp_path):
    ex = IsolationExecutor(make_settings(tmp_path, compile_memory_mb=4096, compile_max_processes=1000))
    budget = ex._compile_budget(POLICY)
    assert budget.memory_mb == 512
    assert budget.max_processes == 64
    assert budget.wall_ms == POLICY.wall_ms // 2
    assert budget.network is False


def test_compile_budget_never_shrinks_the_run_policy(tmp_path):
    ex = IsolationExecutor(make_settings(tmp_path, compile_memory_mb=64, compile_max_processes=4))
    budget = ex._compile_budget(POLICY)
    assert (budget.memory_mb, budget.max_processes) == (POLICY.memory_mb, POLICY.max_processes)


# ---------- real processes ----------

def test_hello_world(executor, tmp_path):
    res = _run(executor, _job("print('hi')"))
    assert res.classification is JobState.COMPLETED
    assert res.exit_code == 0
    assert res.stdout == "hi\n"
    assert res.stderr == ""
    assert res.cpu_ms is not None
    assert os.listdir(tmp_path / "jobs") == []


def test_stdin_is_delivered(executor):
    res = _run(executor, _job("import sys; print(sys.stdin.read().upper(), end='')", stdin="abc\n"))
    assert res.stdout == "ABC\n"


def test_runtime_error_keeps_exit_code(executor):
    res = _run(executor, _job("import sys\nprint('boom', file=sys.stderr)\nsys.exit(3)"))
    assert res.classification is JobState.RUNTIME_ERROR
    assert res.exit_code == 3
    assert "boom" in res.stderr


def test_wall_clock_timeout(executor):
    policy = LimitPolicy(cpu_ms=10_000, wall_ms=500, memory_mb=256, max_output_bytes=1024, max_processes=32)
    res = _run(executor, _job("while True: pass", policy=policy))
    assert res.classification is JobState.TIMED_OUT
    assert res.exit_code is None
    assert res.duration_ms < 600


def test_sleeping_job_times_out(executor):
    policy = LimitPolicy(cpu_ms=10_000, wall_ms=300, memory_mb=256, max_output_bytes=1024, max_processes=32)
    res = _run(executor, _job("import time; time.sleep(30)", policy=policy))
    assert res.classification is JobState.TIMED_OUT


def test_cpu_limit(executor):
    policy = LimitPolicy(cpu_ms=1_000, wall_ms=10_000, memory_mb=256, max_output_bytes=1024, max_processes=32)
    res = _run(executor, _job("while True: pass", policy=policy))
    assert res.classification is JobState.TIMED_OUT
    assert res.duration_ms < 5_000


def test_memory_limit(executor):
    policy = LimitPolicy(cpu_ms=10_000, wall_ms=10_000, memory_mb=128, max_output_bytes=4096, max_processes=32)
    res = _run(executor, _job(payload("mem_stress.py"), policy=policy))
    assert res.classification is JobState.RESOURCE_EXCEEDED


def test_output_is_truncated_deterministically(executor):
    policy = LimitPolicy(cpu_ms=5_000, wall_ms=5_000, memory_mb=256, max_output_bytes=1000, max_processes=32)
    src = "import sys\nfor i in range(10000): sys.stdout.write('%05d\\n' % i)"
    first = _run(executor, _job(src, policy=policy, jid="a"))
    second = _run(executor, _job(src, policy=policy, jid="b"))
    assert first.classification is JobState.COMPLETED
    assert first.stdout_truncated and first.truncated
    assert len(first.stdout.encode()) == 1000
    assert first.stdout == second.stdout
    assert first.stdout.startswith("00000\n00001\n")


def test_cpu_bound_payload_completes(executor):
    res = _run(executor, _job(payload("cpu_burn.py")))
    assert res.classification is JobState.COMPLETED
    assert res.stdout.startswith("sum_primes_up_to 20000")


def test_compile_error(executor):
    res = _run(executor, _job("def broken(:\n"), adapter=PYC)
    assert res.classification is JobState.COMPILE_ERROR
    assert "SyntaxError" in res.stderr
    assert res.exit_code == 1


def test_compile_then_run(executor):
    res = _run(executor, _job("print(6 * 7)"), adapter=PYC)
    assert res.classification is JobState.COMPLETED
    assert res.stdout == "42\n"


def test_missing_runtime_is_a_sandbox_fault(executor, tmp_path):
    ghost = Adapter(name="ghost", source_file="main.gh", run=("/nonexistent/ghost-runtime", "{source}"))
    with pytest.raises(SandboxFault):
        _run(executor, _job("x"), adapter=ghost)
    assert os.listdir(tmp_path / "jobs") == []


def test_kill_before_start_skips_the_run(executor):
    job = _job("print('never')")
    control = RunControl(job.job_id)
    control.terminate(Verdict.CANCELLED)
    res = executor.execute(job, PYTHON, control)
    assert res.classification is JobState.CANCELLED
    assert res.stdout == ""


def _gone(pid):
    try:
        os.kill(pid, 0)
        with open(f"/proc/{pid}/stat") as f:
            # a killed orphan may linger as a zombie until init reaps it
            return f.read().rsplit(")", 1)[-1].split()[0] == "Z"
    except (ProcessLookupError, FileNotFoundError):
        return True


def test_children_are_reaped_with_the_group(executor):
    src = (
        "import subprocess, sys\n"
        "p = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
        "print(p.pid)\n"
    )
    res = _run(executor, _job(src))
    assert res.classification is JobState.COMPLETED
    pid = int(res.stdout)
    deadline = time.monotonic() + 3
    while not _gone(pid):
        if time.monotonic() > deadline:
            pytest.fail(f"child {pid} survived its job")
        time.sleep(0.05)


def test_environment_is_scrubbed(executor, monkeypatch):
    monkeypatch.setenv("SBX_SECRET_TOKEN", "hunter2")
    res = _run(executor, _job("import os; print(sorted(os.environ))"))
    assert "SBX_SECRET_TOKEN" not in res.stdout
    assert "TMPDIR" in res.stdout


def _proc_state(pid):
    with open(f"/proc/{pid}/stat") as f:
        return f.read().rsplit(")", 1)[-1].split()[0]


def test_group_is_killed_before_the_leader_is_reaped(executor, monkeypatch):
    real_killpg = os.killpg
    states = []

    def killpg(pgid, sig):
        states.append(_proc_state(pgid))
        real_killpg(pgid, sig)

    monkeypatch.setattr(os, "killpg", killpg)
    res = _run(executor, _job("print('done')"))
    assert res.classification is JobState.COMPLETED
    # the unreaped leader pins the pgid, so the kill cannot reach a recycled group
    assert states == ["Z"]


def test_cancel_after_the_run_exited_is_refused(executor, monkeypatch):
    job = _job("print('done')")
    control = RunControl(job.job_id)
    real_wait4 = os.wait4
    accepted = []

    def wait4(pid, options):
        accepted.append(control.terminate(Verdict.CANCELLED))
        return real_wait4(pid, options)

    monkeypatch.setattr(os, "wait4", wait4)
    res = executor.execute(job, PYTHON, control)
    assert accepted == [False]
    assert control.verdict is Verdict.EXITED
    assert res.classification is JobState.COMPLETED
    assert res.stdout == "done\n"
