from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import List, Optional

import structlog

from ..core.models import LimitPolicy
from ..executor import cgroups
from .namespaces import unshare_binary, userns_available, wrap_with_namespaces

log = structlog.get_logger(__name__)


class IsolationPipeline:
    """Composes the isolation layers selected by ``iso_strategy``."""

    def __init__(self, strategy: str):
        self.strategy = (strategy or "none").lower()
        self._unshare = unshare_binary() if self.uses_namespaces else None
        if self.uses_namespaces and not self._unshare:
            log.warning("isolation_degraded", strategy=self.strategy, missing="unshare")

    @property
    def uses_namespaces(self) -> bool:
        return "namespaces" in self.strategy

    @property
    def uses_cgroups(self) -> bool:
        return "cgroups" in self.strategy

    @property
    def denies_network(self) -> bool:
        return bool(self._unshare)

    @property
    def hides_workspaces(self) -> bool:
        return bool(self._unshare)

    def wrap(self, cmd: List[str], policy: LimitPolicy, workdir: Optional[Path] = None) -> List[str]:
        if self.uses_namespaces and self._unshare:
            return wrap_with_namespaces(cmd, policy.network, self._unshare, workdir=workdir)
        return cmd


def probe_capabilities(strategy: str) -> dict:
    """Environment facts for /health and startup diagnostics."""
    return {
        "strategy": strategy,
        "euid": os.geteuid() if hasattr(os, "geteuid") else None,
        "has_unshare": bool(shutil.which("unshare")),
        "cgroup_v2": cgroups.is_v2(),
        "cgroups": cgroups.writable(),
        "namespaces": userns_available(),
        "has_sh": bool(shutil.which("sh") or shutil.which("bash")),
    }
