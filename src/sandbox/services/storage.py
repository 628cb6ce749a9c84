from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

# traversable but not listable: a job reaches its own workspace only by name
ROOT_MODE = 0o711


class WorkspaceManager:
    """
    Private, ephemeral workspace per job under the configured root:
      <jobs_dir>/<job_id>-<random>/
        ├─ <source file>    (code the caller sent)
        ├─ tmp/             (TMPDIR of the job)
        └─ ...              (anything the job writes; gone after the run)
    """

    def __init__(self, jobs_dir: Path, uid: Optional[int] = None, gid: Optional[int] = None):
        # always an absolute path
        self.jobs_dir = jobs_dir if jobs_dir.is_absolute() else jobs_dir.resolve()
        self.uid = uid
        self.gid = gid
        self.jobs_dir.mkdir(mode=ROOT_MODE, parents=True, exist_ok=True)
        # a pre-existing root keeps its old mode otherwise
        os.chmod(self.jobs_dir, ROOT_MODE)

    def _chown(self, path: Path, uid: Optional[int]) -> None:
        uid = self.uid if uid is None else uid
        if uid is None and self.gid is None:
            return
        os.chown(path, -1 if uid is None else uid, -1 if self.gid is None else self.gid)

    def create(self, job_id: str, uid: Optional[int] = None) -> Path:
        """``uid`` overrides the manager-wide owner (one sandbox user per slot)."""
        ws = Path(tempfile.mkdtemp(prefix=f"{job_id}-", dir=self.jobs_dir))
        (ws / "tmp").mkdir(mode=0o700)
        self._chown(ws, uid)
        self._chown(ws / "tmp", uid)
        return ws

    def write(self, ws: Path, name: str, content: str, uid: Optional[int] = None) -> Path:
        target = (ws / name).resolve()
        if ws.resolve() not in target.parents:
            raise ValueError(f"file '{name}' escapes the workspace")
        target.write_text(content, encoding="utf-8")
        self._chown(target, uid)
        return target

    def destroy(self, ws: Path) -> None:
        """Remove a workspace. Raises OSError when something is left behind."""
        if self.jobs_dir not in ws.parents:
            raise ValueError(f"refusing to delete {ws}: outside {self.jobs_dir}")
        shutil.rmtree(ws)

    def leftovers(self) -> list:
        return sorted(p.name for p in self.jobs_dir.iterdir())
