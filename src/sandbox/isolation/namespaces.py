from __future__ import annotations

import shutil
from pathlib import Path
from typing import List, Optional

# Runs as the mapped root of the new user+mount namespace. Covers the jobs
# root with an empty tmpfs and binds back only this job's workspace; "." is
# still the original workspace because Popen chdir'ed there before exec.
_HIDE_SIBLINGS = (
    'set -e; root="$1"; name="$2"; shift 2; '
    'mount -t tmpfs -o size=64k,mode=0711 sbx-jobs "$root"; '
    'mkdir "$root/$name"; '
    'mount --no-canonicalize --bind . "$root/$name"; '
    'cd "$root/$name"; '
    'exec "$@"'
)


def unshare_binary() -> Optional[str]:
    return shutil.which("unshare")


def wrap_with_namespaces(cmd: List[str], allow_network: bool, unshare: Optional[str] = None,
                         workdir: Optional[Path] = None) -> List[str]:
    """
    Run ``cmd`` inside fresh user+mount+pid+ipc+uts namespaces, plus a private
    network namespace (loopback only, down) unless networking is allowed.
    With ``workdir`` the parent jobs root is replaced by a view holding only
    that workspace, so concurrent jobs cannot find each other's files.
    """
    unshare = unshare or unshare_binary()
    if not unshare:
        return cmd  # fallback

    flags = [
        "--user", "--map-root-user",
        "--mount", "--propagation", "private", "--ipc", "--uts",
        "--pid", "--fork", "--kill-child", "--mount-proc",
    ]
    if not allow_network:
        flags.append("--net")
    if workdir is None:
        return [unshare, *flags, "--", *cmd]
    return [unshare, *flags, "--", "sh", "-c", _HIDE_SIBLINGS, "sbx-ns",
            str(workdir.parent), workdir.name, *cmd]


def userns_available() -> bool:
    """Best-effort check that unprivileged user namespaces can be created."""
    if not unshare_binary():
        return False
    try:
        with open("/proc/sys/user/max_user_namespaces") as f:
            if int(f.read().strip() or 0) <= 0:
                return False
    except (OSError, ValueError):
        return False
    try:
        # Debian/Ubuntu knob; absent elsewhere
        with open("/proc/sys/kernel/unprivileged_userns_clone") as f:
            return f.read().strip() != "0"
    except OSError:
        return True
