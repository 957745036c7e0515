"""XFS project quota via the xfs_quota / xfs_io CLIs."""

import os
import re
import subprocess
from typing import Any, Protocol

import psutil

from rootfs_quota.errors import EnforcementFailure
from rootfs_quota.utils import get_logger

logger = get_logger(__name__)

_XFS_QUOTA_CMD = "xfs_quota"
_XFS_IO_CMD = "xfs_io"
_PROJID_RE = re.compile(r"projid\s*=\s*(\d+)")
_PROJECT_QUOTA_OPTS = ("prjquota", "pquota", "pqnoenforce")


class QuotaEnforcer(Protocol):
    """Tags paths with project IDs and sets per-project block limits."""

    def tag(self, path: str, project_id: int) -> None: ...

    def set_limit(self, project_id: int, soft: str, hard: str) -> None: ...

    def read_tag(self, path: str) -> int: ...


def _parse_projid(stdout: str) -> int | None:
    """Parse 'xfs_io -r -c stat <path>' output. Returns the projid or None if absent."""
    match = _PROJID_RE.search(stdout)
    if not match:
        return None
    return int(match.group(1))


class XfsQuotaEnforcer:
    """QuotaEnforcer backed by the xfs_quota and xfs_io command-line tools."""

    def __init__(
        self,
        xfs_quota_cmd: str = _XFS_QUOTA_CMD,
        xfs_io_cmd: str = _XFS_IO_CMD,
        timeout: float = 30.0,
    ) -> None:
        self.xfs_quota_cmd = xfs_quota_cmd
        self.xfs_io_cmd = xfs_io_cmd
        self.timeout = timeout

    def _run(self, args: list[str]) -> str:
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise EnforcementFailure(f"{args[0]} timed out after {self.timeout}s", args) from e
        except OSError as e:
            raise EnforcementFailure(f"failed to execute {args[0]}: {e}", args) from e
        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            raise EnforcementFailure(f"{args[0]} exited with {result.returncode}", args, output)
        return result.stdout or ""

    def tag(self, path: str, project_id: int) -> None:
        """Set up project_id on the directory tree at path (xfs_quota 'project -s')."""
        self._run([self.xfs_quota_cmd, "-x", "-c", f"project -s -p {path} {project_id}"])
        logger.debug("Tagged %s with projid=%d", path, project_id)

    def set_limit(self, project_id: int, soft: str, hard: str) -> None:
        """Set block soft/hard limits for a project. "0", "0" clears the limit."""
        self._run([self.xfs_quota_cmd, "-x", "-c", f"limit -p bsoft={soft} bhard={hard} {project_id}"])
        logger.debug("Set limit projid=%d bsoft=%s bhard=%s", project_id, soft, hard)

    def read_tag(self, path: str) -> int:
        """Return the project ID currently set on path."""
        stdout = self._run([self.xfs_io_cmd, "-r", "-c", "stat", path])
        project_id = _parse_projid(stdout)
        if project_id is None:
            raise EnforcementFailure(f"projid not found in {self.xfs_io_cmd} output for {path}", output=stdout)
        return project_id


def find_mount(path: str) -> Any | None:
    """Return the partition whose mountpoint is the longest prefix of path."""
    real = os.path.realpath(path)
    best = None
    for partition in psutil.disk_partitions(all=True):
        mountpoint = partition.mountpoint
        prefix = mountpoint if mountpoint.endswith("/") else mountpoint + "/"
        if real == mountpoint or real.startswith(prefix):
            if best is None or len(mountpoint) > len(best.mountpoint):
                best = partition
    return best


def check_project_quota_mount(path: str) -> bool:
    """Warn and return False if path is not on XFS mounted with project quota enabled."""
    partition = find_mount(path)
    if partition is None:
        logger.warning("Could not find the mount for %s; project quota may not be enforced", path)
        return False
    opts = partition.opts.split(",")
    if partition.fstype != "xfs":
        logger.warning(
            "%s is on %s (%s), not xfs; project quota will not be enforced",
            path, partition.mountpoint, partition.fstype,
        )
        return False
    if not any(opt in opts for opt in _PROJECT_QUOTA_OPTS):
        logger.warning(
            "%s (%s) is mounted without prjquota; project quota will not be enforced",
            partition.mountpoint, partition.device,
        )
        return False
    return True
