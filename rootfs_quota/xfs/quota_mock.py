"""Mock quota backend: in-memory project tags and limits, no xfs tools."""

from __future__ import annotations

import threading
from typing import Any

from rootfs_quota.errors import EnforcementFailure


class MockQuotaEnforcer:
    """QuotaEnforcer that records calls and keeps tags/limits in memory.

    Failures can be injected per operation with fail_on("tag" | "set_limit" | "read_tag"),
    optionally only for a given project ID or path.
    """

    def __init__(self) -> None:
        self.tags: dict[str, int] = {}  # path -> projid
        self.limits: dict[int, tuple[str, str]] = {}  # projid -> (bsoft, bhard)
        self.calls: list[tuple[Any, ...]] = []
        self._failures: dict[str, Any] = {}
        self._lock = threading.Lock()

    def fail_on(self, operation: str, match: Any = None) -> None:
        """Make operation raise EnforcementFailure (for every call, or only when its key == match)."""
        self._failures[operation] = match

    def clear_failures(self) -> None:
        self._failures.clear()

    def _maybe_fail(self, operation: str, key: Any) -> None:
        if operation not in self._failures:
            return
        match = self._failures[operation]
        if match is None or match == key:
            raise EnforcementFailure(f"mock {operation} failure", [operation, str(key)])

    def tag(self, path: str, project_id: int) -> None:
        with self._lock:
            self.calls.append(("tag", path, project_id))
            self._maybe_fail("tag", path)
            self.tags[path] = project_id

    def set_limit(self, project_id: int, soft: str, hard: str) -> None:
        with self._lock:
            self.calls.append(("set_limit", project_id, soft, hard))
            self._maybe_fail("set_limit", project_id)
            if soft == "0" and hard == "0":
                self.limits.pop(project_id, None)
            else:
                self.limits[project_id] = (soft, hard)

    def read_tag(self, path: str) -> int:
        with self._lock:
            self.calls.append(("read_tag", path))
            self._maybe_fail("read_tag", path)
            if path not in self.tags:
                raise EnforcementFailure(f"projid not found for {path}")
            return self.tags[path]

    def calls_named(self, operation: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == operation]
