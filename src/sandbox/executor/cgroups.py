# src/sandbox/executor/cgroups.py
from __future__ import annotations

import os
import signal
import time
from pathlib import Path
from typing import Dict, Optional

import structlog

from ..core.models import LimitPolicy

log = structlog.get_logger(__name__)

CGROOT = Path("/sys/fs/cgroup")


def _write_then_check(p: Path, val: str | int):
    val = str(val)
    p.write_text(val)
    back = p.read_text().strip()
    if back != val:
        raise RuntimeError(f"[cgroup] write {p}='{val}' but read-back='{back}'")


def is_v2() -> bool:
    return (CGROOT / "cgroup.controllers").exists()


def _self_cgroup_base() -> Path:
    # unified v2: '0::/<relative>'
    rel = ""
    with open("/proc/self/cgroup") as f:
        for line in f:
            if line.startswith("0::/"):
                rel = line.split("::", 1)[1].strip()
                break
    return (CGROOT / rel.lstrip("/")).resolve()


def _env_base() -> Path | None:
    val = os.environ.get("SBX_CGROUP_BASE")
    if not val:
        return None
    base = Path(val)
    if not str(base).startswith(str(CGROOT)):
        raise ValueError(f"SBX_CGROUP_BASE must start with {CGROOT}, got {base}")
    return base


def writable() -> bool:
    """True when a leaf could be created under the sandbox base."""
    if not is_v2():
        return False
    try:
        base = get_sbx_base()
    except (OSError, ValueError):
        return False
    probe = base if base.exists() else base.parent
    return os.access(probe, os.W_OK)


def get_sbx_base() -> Path:
    # SBX_CGROUP_BASE wins (e.g. .../sandbox.service/sbx); otherwise a sibling
    # of our own cgroup, since v2 forbids processes in inner nodes
    env_base = _env_base()
    if env_base:
        return env_base
    return _self_cgroup_base().parent / "sbx"


def _enable_controllers(node: Path):
    """Enable memory/pids/cpu for children of ``node`` (node must hold no PIDs)."""
    cnt_file = node / "cgroup.controllers"
    if not cnt_file.exists():
        return
    have = set(cnt_file.read_text().split())
    want = [f"+{c}" for c in ("memory", "pids", "cpu") if c in have]
    if not want:
        return
    if (node / "cgroup.procs").read_text().strip():
        raise PermissionError(f"{node} has PIDs; cannot set subtree_control")
    (node / "cgroup.subtree_control").write_text(" ".join(want))


def _parse_kv(text: str) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1].isdigit():
            out[parts[0]] = int(parts[1])
    return out


class CgroupLeaf:
    """One cgroup v2 leaf per execution step."""

    def __init__(self, path: Path):
        self.path = path

    @classmethod
    def create(cls, name: str, policy: LimitPolicy, base: Optional[Path] = None) -> "CgroupLeaf":
        base = base or get_sbx_base()
        base.mkdir(parents=True, exist_ok=True)
        _enable_controllers(base)
        path = base / name
        path.mkdir(parents=True, exist_ok=False)
        leaf = cls(path)
        try:
            leaf.set_limits(policy)
        except Exception:
            leaf.teardown()
            raise
        log.debug("cgroup_leaf_created", path=str(path), memory_mb=policy.memory_mb,
                  pids_max=policy.max_processes)
        return leaf

    def set_limits(self, policy: LimitPolicy) -> None:
        _write_then_check(self.path / "memory.max", policy.memory_bytes)
        try:
            _write_then_check(self.path / "memory.swap.max", 0)
        except FileNotFoundError:
            # memcg swap accounting disabled
            pass
        _write_then_check(self.path / "memory.oom.group", 1)
        _write_then_check(self.path / "pids.max", policy.max_processes)

    @property
    def procs_file(self) -> Path:
        return self.path / "cgroup.procs"

    def read_metrics(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        peak = self.path / "memory.peak"
        if peak.exists():
            out["memory_peak"] = int(peak.read_text().strip())
        events = self.path / "memory.events"
        if events.exists():
            kv = _parse_kv(events.read_text())
            out["oom_kill"] = kv.get("oom_kill", 0)
            out["memory_max_events"] = kv.get("max", 0)
        pids = self.path / "pids.events"
        if pids.exists():
            out["pids_max_events"] = _parse_kv(pids.read_text()).get("max", 0)
        return out

    def kill(self) -> None:
        kill_file = self.path / "cgroup.kill"
        if kill_file.exists():
            kill_file.write_text("1")
            return
        for pid in self.procs_file.read_text().split():
            try:
                os.kill(int(pid), signal.SIGKILL)
            except ProcessLookupError:
                pass

    def teardown(self) -> None:
        # leaf must be empty, best-effort retry
        last: Optional[OSError] = None
        for _ in range(10):
            try:
                self.path.rmdir()
                return
            except FileNotFoundError:
                return
            except OSError as e:
                last = e
                time.sleep(0.05)
        raise last  # type: ignore[misc]
