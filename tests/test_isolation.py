import os
import stat

import pytest
from structlog.testing import capture_logs

from sandbox.core.models import Job, LimitPolicy
from sandbox.executor.process import IsolationExecutor
from sandbox.isolation.namespaces import wrap_with_namespaces
from sandbox.services.dispatcher import Dispatcher
from sandbox.services.storage import WorkspaceManager

from conftest import make_settings

POLICY = LimitPolicy(cpu_ms=1000, wall_ms=1000, memory_mb=64, max_output_bytes=1024, max_processes=4)


# ---------- workspace root ----------

def test_jobs_root_is_traversable_but_not_listable(tmp_path):
    root = tmp_path / "jobs"
    WorkspaceManager(root)
    assert stat.S_IMODE(os.stat(root).st_mode) == 0o711


def test_existing_jobs_root_is_tightened(tmp_path):
    root = tmp_path / "jobs"
    root.mkdir(mode=0o755)
    os.chmod(root, 0o755)
    WorkspaceManager(root)
    assert stat.S_IMODE(os.stat(root).st_mode) == 0o711


def test_workspaces_are_private_and_removed(tmp_path):
    wm = WorkspaceManager(tmp_path / "jobs")
    ws = wm.create("abc")
    assert ws.name.startswith("abc-")
    assert stat.S_IMODE(os.stat(ws).st_mode) == 0o700
    wm.write(ws, "main.py", "print(1)")
    with pytest.raises(ValueError):
        wm.write(ws, "../escape.py", "x")
    assert wm.leftovers() == [ws.name]
    wm.destroy(ws)
    assert wm.leftovers() == []
    with pytest.raises(ValueError):
        wm.destroy(tmp_path)


# ---------- namespace wrapping ----------

def test_namespace_wrapper_shows_only_the_own_workspace(tmp_path):
    ws = tmp_path / "jobs" / "j1-xyz"
    argv = wrap_with_namespaces(["python3", "main.py"], allow_network=False, unshare="/usr/bin/unshare",
                                workdir=ws)
    assert argv[0] == "/usr/bin/unshare"
    assert "--net" in argv
    sep = argv.index("--")
    script = argv[sep + 3]
    assert argv[sep + 1:sep + 3] == ["sh", "-c"]
    assert "mount -t tmpfs" in script and "--bind" in script
    assert argv[sep + 5:] == [str(ws.parent), "j1-xyz", "python3", "main.py"]


def test_namespace_wrapper_without_workdir_keeps_the_command(tmp_path):
    argv = wrap_with_namespaces(["true"], allow_network=True, unshare="/usr/bin/unshare")
    assert "--net" not in argv
    assert argv[-2:] == ["--", "true"]


# ---------- per-slot sandbox users ----------

def test_each_slot_gets_its_own_uid(tmp_path):
    job = Job(job_id="j", language="python", source="x", policy=POLICY)
    shared = IsolationExecutor(make_settings(tmp_path, sandbox_uid=60000))
    per_slot = IsolationExecutor(make_settings(tmp_path, sandbox_uid=60000, sandbox_uid_per_slot=True))
    unset = IsolationExecutor(make_settings(tmp_path, sandbox_uid_per_slot=True))

    job.worker = 3
    assert shared._job_uid(job) == 60000
    assert per_slot._job_uid(job) == 60003
    assert unset._job_uid(job) is None
    job.worker = None
    assert per_slot._job_uid(job) == 60000


# ---------- startup diagnostics ----------

def test_shared_workspace_visibility_is_reported(tmp_path, registry):
    d = Dispatcher(make_settings(tmp_path, iso_strategy="none", pool_size=2), registry=registry)
    with capture_logs() as logs:
        d.start()
    d.shutdown()
    assert "workspaces_visible_to_jobs" in [e["event"] for e in logs]


def test_single_slot_is_not_reported(tmp_path, registry):
    d = Dispatcher(make_settings(tmp_path, iso_strategy="none", pool_size=1), registry=registry)
    with capture_logs() as logs:
        d.start()
    d.shutdown()
    assert "workspaces_visible_to_jobs" not in [e["event"] for e in logs]
