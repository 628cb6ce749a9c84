# src/sandbox/executor/process.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Dict, Optional

import structlog

from ..core.errors import SandboxFault
from ..core.models import ExecutionResult, Job, JobState, LimitPolicy
from ..core.utils import elapsed_ms
from ..isolation.isolation import IsolationPipeline
from ..runners.base import Adapter
from ..services.storage import WorkspaceManager
from .base import ExecSpec, Executor, StepOutcome
from .cgroups import CgroupLeaf
from .control import RunControl, Verdict
from .output import BoundedBuffer, start_feeder, start_pump
from .rlimits import make_preexec

log = structlog.get_logger(__name__)

# how long reader threads may lag behind the reaped process
_DRAIN_GRACE_S = 2.0


class IsolationExecutor(Executor):
    """
    Runs one job per call:
      workspace -> [compile under a sub-budget] -> run -> classify -> cleanup.
    Limits are applied in the child before exec; a watchdog timer kills the
    whole process group once the wall-clock budget is spent.
    """

    def __init__(self, settings, workspaces: Optional[WorkspaceManager] = None,
                 pipeline: Optional[IsolationPipeline] = None):
        self.settings = settings
        self.workspaces = workspaces or WorkspaceManager(
            settings.jobs_dir, uid=settings.sandbox_uid, gid=settings.sandbox_gid)
        self.pipeline = pipeline or IsolationPipeline(settings.iso_strategy)

    # ------------ lifecycle ------------

    def execute(self, job: Job, adapter: Adapter, control: RunControl) -> ExecutionResult:
        start = time.monotonic()
        try:
            ws = self.workspaces.create(job.job_id, uid=self._job_uid(job))
        except OSError as e:
            raise SandboxFault(f"workspace creation failed: {e}") from e

        try:
            try:
                self.workspaces.write(ws, adapter.source_file, job.source, uid=self._job_uid(job))
            except (OSError, ValueError) as e:
                raise SandboxFault(f"cannot materialize source: {e}") from e
            return self._execute_in(ws, job, adapter, control, start)
        finally:
            self._cleanup(ws, control)

    def _execute_in(self, ws: Path, job: Job, adapter: Adapter, control: RunControl,
                    start: float) -> ExecutionResult:
        policy = job.policy
        env = self._child_env(ws, adapter)
        uid = self._job_uid(job)
        runtimes = self.settings.runtimes

        if control.killed:
            return self._result(job, JobState.CANCELLED, None, start)

        # ---- compile ----
        compile_argv = adapter.compile_argv(ws, policy.memory_mb, runtimes)
        if compile_argv is not None:
            budget = self._compile_budget(policy)
            step = self._run_step(ExecSpec(
                cmd=compile_argv, workdir=ws, env=env, policy=budget,
                limit_address_space=adapter.limit_address_space, label="compile", uid=uid,
            ), job.job_id, control)
            if control.killed:
                state = JobState.TIMED_OUT if control.verdict is Verdict.TIMED_OUT else JobState.CANCELLED
                return self._result(job, state, step, start)
            if step.returncode != 0:
                # a compiler that blew its own sub-budget is a limit hit, not a diagnostic
                state = self._classify(step, budget, adapter, Verdict.EXITED)
                if state not in (JobState.TIMED_OUT, JobState.RESOURCE_EXCEEDED):
                    state = JobState.COMPILE_ERROR
                log.info("compile_failed", job_id=job.job_id, rc=step.returncode, state=state.value)
                return self._result(job, state, step, start,
                                    exit_code=step.returncode if step.returncode > 0 else None)

        # ---- run (gets whatever wall budget compilation left) ----
        remaining_ms = policy.wall_ms - int(elapsed_ms(start, time.monotonic()))
        if remaining_ms <= 0:
            control.terminate(Verdict.TIMED_OUT)
            return self._result(job, JobState.TIMED_OUT, None, start)
        run_policy = replace(policy, wall_ms=remaining_ms)

        step = self._run_step(ExecSpec(
            cmd=adapter.run_argv(ws, policy.memory_mb, runtimes), workdir=ws, env=env,
            policy=run_policy,
            stdin=job.stdin.encode("utf-8") if job.stdin is not None else None,
            limit_address_space=adapter.limit_address_space, label="run", uid=uid, settles=True,
        ), job.job_id, control)
        verdict = control.settle()
        state = self._classify(step, policy, adapter, verdict)
        exit_code = step.returncode if state in (JobState.COMPLETED, JobState.RUNTIME_ERROR,
                                                 JobState.RESOURCE_EXCEEDED) and step.returncode >= 0 else None
        return self._result(job, state, step, start, exit_code=exit_code)

    def _job_uid(self, job: Job) -> Optional[int]:
        s = self.settings
        if s.sandbox_uid is None:
            return None
        if s.sandbox_uid_per_slot and job.worker is not None:
            return s.sandbox_uid + job.worker
        return s.sandbox_uid

    def _compile_budget(self, policy: LimitPolicy) -> LimitPolicy:
        """Compilers get more memory and processes than the run, never more than the ceilings."""
        s = self.settings
        return replace(
            policy.scaled(s.compile_fraction),
            memory_mb=min(max(policy.memory_mb, s.compile_memory_mb), s.ceilings.memory_mb),
            max_processes=min(max(policy.max_processes, s.compile_max_processes), s.ceilings.max_processes),
            network=False,
        )

    # ------------ one process ------------

    def _child_env(self, ws: Path, adapter: Adapter) -> Dict[str, str]:
        env = {
            "PATH": self.settings.child_path,
            "HOME": str(ws),
            "TMPDIR": str(ws / "tmp"),
            "LANG": "C.UTF-8",
            "LC_ALL": "C.UTF-8",
        }
        env.update(adapter.env_for(ws))
        return env

    def _run_step(self, spec: ExecSpec, job_id: str, control: RunControl) -> StepOutcome:
        s = self.settings
        policy = spec.policy

        leaf: Optional[CgroupLeaf] = None
        if self.pipeline.uses_cgroups:
            try:
                leaf = CgroupLeaf.create(f"{job_id}-{spec.label}", policy)
            except (OSError, RuntimeError, ValueError) as e:
                raise SandboxFault(f"cgroup setup failed: {e}") from e

        argv = self.pipeline.wrap(list(spec.cmd), policy, workdir=spec.workdir)
        preexec = make_preexec(
            cpu_seconds=policy.cpu_seconds,
            memory_bytes=policy.memory_bytes if spec.limit_address_space else None,
            nofile=s.max_open_files,
            fsize_bytes=s.max_file_bytes,
            # RLIMIT_NPROC counts per uid, only meaningful with a dedicated uid
            nproc=policy.max_processes if spec.uid is not None else None,
            cgroup_procs=leaf.procs_file if leaf else None,
            uid=spec.uid,
            gid=s.sandbox_gid,
        )

        out_buf = BoundedBuffer(policy.max_output_bytes)
        err_buf = BoundedBuffer(policy.max_output_bytes)
        t0 = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE if spec.stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(spec.workdir),
                env=spec.env,
                close_fds=True,
                start_new_session=True,  # own process group -> killpg
                preexec_fn=preexec,
            )
        except (OSError, subprocess.SubprocessError) as e:
            self._teardown_leaf(leaf, control)
            raise SandboxFault(f"cannot start {spec.label} step ({argv[0]}): {e}") from e

        log.info("step_started", job_id=job_id, step=spec.label, pid=proc.pid,
                 wall_ms=policy.wall_ms, cpu_s=policy.cpu_seconds, memory_mb=policy.memory_mb)

        def _kill():
            self._kill_group(proc.pid, leaf)

        watchdog = threading.Timer(policy.wall_seconds, self._expire, args=(control, job_id, spec.label))
        watchdog.daemon = True
        control.attach(_kill)
        watchdog.start()

        pumps = [
            start_pump(proc.stdout, out_buf, f"{job_id}-{spec.label}-stdout"),
            start_pump(proc.stderr, err_buf, f"{job_id}-{spec.label}-stderr"),
        ]
        feeder = start_feeder(proc.stdin, spec.stdin, f"{job_id}-{spec.label}-stdin")

        try:
            # leave the leader a zombie: its pid, and so the pgid, cannot be reused yet
            os.waitid(os.P_PID, proc.pid, os.WEXITED | os.WNOWAIT)
        finally:
            watchdog.cancel()
            if spec.settles:
                control.settle()
            control.detach()
            duration = elapsed_ms(t0, time.monotonic())
            # take down anything the leader left behind in the group, then reap it
            self._kill_group(proc.pid, leaf)
            _, status, rusage = os.wait4(proc.pid, 0)
            proc.returncode = os.waitstatus_to_exitcode(status)

        for t in pumps:
            t.join(_DRAIN_GRACE_S)
            if t.is_alive():
                control.cleanup_errors.append(f"{t.name} did not drain")
                log.warning("pump_stuck", job_id=job_id, thread=t.name)
        if feeder is not None:
            feeder.join(_DRAIN_GRACE_S)

        metrics: Dict[str, int] = {}
        if leaf is not None:
            try:
                metrics = leaf.read_metrics()
            except OSError as e:
                log.warning("cgroup_metrics_failed", job_id=job_id, error=str(e))
            self._teardown_leaf(leaf, control)

        peak = rusage.ru_maxrss * 1024  # kB on Linux
        if metrics.get("memory_peak"):
            peak = max(peak, metrics["memory_peak"])

        outcome = StepOutcome(
            returncode=proc.returncode,
            stdout=out_buf,
            stderr=err_buf,
            duration_ms=duration,
            cpu_ms=round((rusage.ru_utime + rusage.ru_stime) * 1000, 3),
            peak_memory_bytes=peak,
            cgroup=metrics,
        )
        log.info("step_finished", job_id=job_id, step=spec.label, rc=outcome.returncode,
                 duration_ms=duration, cpu_ms=outcome.cpu_ms, verdict=control.verdict)
        return outcome

    @staticmethod
    def _expire(control: RunControl, job_id: str, label: str) -> None:
        if control.terminate(Verdict.TIMED_OUT):
            log.warning("watchdog_fired", job_id=job_id, step=label)

    @staticmethod
    def _kill_group(pgid: int, leaf: Optional[CgroupLeaf]) -> None:
        try:
            os.killpg(pgid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            # group already empty
            pass
        if leaf is not None:
            try:
                leaf.kill()
            except OSError as e:
                log.warning("cgroup_kill_failed", path=str(leaf.path), error=str(e))

    @staticmethod
    def _teardown_leaf(leaf: Optional[CgroupLeaf], control: RunControl) -> None:
        if leaf is None:
            return
        try:
            leaf.teardown()
        except OSError as e:
            control.cleanup_errors.append(f"cgroup {leaf.path}: {e}")
            log.error("cleanup_failed", job_id=control.job_id, what="cgroup", error=str(e))

    # ------------ classification ------------

    @staticmethod
    def _classify(step: StepOutcome, policy: LimitPolicy, adapter: Adapter, verdict: Verdict) -> JobState:
        if verdict is Verdict.TIMED_OUT:
            return JobState.TIMED_OUT
        if verdict is Verdict.CANCELLED:
            return JobState.CANCELLED

        sig = step.signal
        if sig == signal.SIGXCPU or (sig == signal.SIGKILL and step.cpu_ms >= policy.cpu_seconds * 1000):
            return JobState.TIMED_OUT
        if step.cgroup.get("oom_kill") or step.cgroup.get("pids_max_events"):
            return JobState.RESOURCE_EXCEEDED
        if sig == signal.SIGXFSZ:
            return JobState.RESOURCE_EXCEEDED
        if step.returncode == 0:
            return JobState.COMPLETED

        if step.peak_memory_bytes and step.peak_memory_bytes >= policy.memory_bytes * 0.95:
            return JobState.RESOURCE_EXCEEDED
        stderr = step.stderr.text()
        if any(marker in stderr for marker in adapter.resource_markers):
            return JobState.RESOURCE_EXCEEDED
        return JobState.RUNTIME_ERROR

    @staticmethod
    def _result(job: Job, state: JobState, step: Optional[StepOutcome], start: float,
                exit_code: Optional[int] = None) -> ExecutionResult:
        duration = elapsed_ms(start, time.monotonic())
        if step is None:
            return ExecutionResult(job_id=job.job_id, classification=state, exit_code=None,
                                   stdout="", stderr="", duration_ms=duration)
        return ExecutionResult(
            job_id=job.job_id,
            classification=state,
            exit_code=exit_code,
            signal=step.signal,
            stdout=step.stdout.text(),
            stderr=step.stderr.text(),
            stdout_truncated=step.stdout.truncated,
            stderr_truncated=step.stderr.truncated,
            duration_ms=duration,
            peak_memory_bytes=step.peak_memory_bytes,
            cpu_ms=step.cpu_ms,
        )

    # ------------ cleanup ------------

    def _cleanup(self, ws: Path, control: RunControl) -> None:
        try:
            self.workspaces.destroy(ws)
        except (OSError, ValueError) as e:
            control.cleanup_errors.append(f"workspace {ws}: {e}")
            log.error("cleanup_failed", job_id=control.job_id, what="workspace", path=str(ws), error=str(e))
