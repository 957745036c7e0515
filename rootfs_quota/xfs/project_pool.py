"""Allocation of XFS project IDs from a fixed, configured range."""

import threading

from rootfs_quota.errors import PoolExhausted


class ProjectIDPool:
    """Hands out project IDs lowest-first from [min_id, max_id]. All operations share one lock."""

    def __init__(self, min_id: int, max_id: int) -> None:
        if min_id <= 0 or min_id >= max_id:
            raise ValueError(f"invalid project ID range: min={min_id}, max={max_id}")
        self.min_id = min_id
        self.max_id = max_id
        self._used: set[int] = set()
        self._lock = threading.Lock()

    def allocate(self) -> int:
        """Mark and return the lowest free ID. Raises PoolExhausted when the range is full."""
        with self._lock:
            for project_id in range(self.min_id, self.max_id + 1):
                if project_id not in self._used:
                    self._used.add(project_id)
                    return project_id
        raise PoolExhausted(self.min_id, self.max_id)

    def release(self, project_id: int) -> None:
        """Mark an ID free. Releasing a free ID is a no-op."""
        with self._lock:
            self._used.discard(project_id)

    def mark_used(self, project_id: int) -> None:
        """Reserve an ID recorded in the state file without going through allocate()."""
        if not self.min_id <= project_id <= self.max_id:
            raise ValueError(
                f"project ID {project_id} outside configured range [{self.min_id}, {self.max_id}]"
            )
        with self._lock:
            self._used.add(project_id)

    def is_used(self, project_id: int) -> bool:
        with self._lock:
            return project_id in self._used

    def in_use(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._used)

    @property
    def capacity(self) -> int:
        return self.max_id - self.min_id + 1

    @property
    def free_count(self) -> int:
        with self._lock:
            return self.capacity - len(self._used)
