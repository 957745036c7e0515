"""Durable container -> (project ID, upperdir) mapping backed by a JSON document.

The whole document is rewritten on every mutation. Writes go to a temp file in the
same directory and are moved into place with os.replace(), so a crash mid-write
leaves the previous document intact.
"""

import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from pydantic import ValidationError

from rootfs_quota.errors import CorruptState, PersistenceFailure
from rootfs_quota.models import Entry, StateDocument
from rootfs_quota.utils import get_logger

logger = get_logger(__name__)


class _ReadWriteLock:
    """Many readers or one writer. Writers are not starved by a stream of readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class StateStore:
    """Concurrency-safe container -> Entry map that is persisted on every change."""

    def __init__(self, file_path: str) -> None:
        self.file_path = file_path
        self._entries: dict[str, Entry] = {}
        self._lock = _ReadWriteLock()

    def load(self) -> None:
        """Read the state file. Creates an empty one if missing; raises CorruptState if unreadable."""
        with self._lock.write():
            try:
                with open(self.file_path, "rb") as f:
                    data = f.read()
            except FileNotFoundError:
                logger.info("State file %s not found, creating an empty one", self.file_path)
                self._entries = {}
                self._save()
                return
            except OSError as e:
                raise CorruptState(self.file_path, str(e)) from e

            if not data.strip():
                # Older deployments may have left a zero-byte file on first start.
                self._entries = {}
                return
            try:
                document = StateDocument.model_validate_json(data)
            except ValidationError as e:
                raise CorruptState(self.file_path, str(e)) from e

            seen: dict[int, str] = {}
            for entry in document.entries.values():
                other = seen.get(entry.project_id)
                if other is not None:
                    raise CorruptState(
                        self.file_path,
                        f"project ID {entry.project_id} assigned to both {other} and {entry.container_id}",
                    )
                seen[entry.project_id] = entry.container_id
            self._entries = dict(document.entries)
        logger.info("Loaded %d entries from %s", len(self._entries), self.file_path)

    def put(self, entry: Entry) -> None:
        """Insert or replace the entry for entry.container_id and persist. Rolls back on write failure."""
        with self._lock.write():
            previous = self._entries.get(entry.container_id)
            self._entries[entry.container_id] = entry
            try:
                self._save()
            except PersistenceFailure:
                if previous is None:
                    del self._entries[entry.container_id]
                else:
                    self._entries[entry.container_id] = previous
                raise

    def remove(self, container_id: str) -> None:
        """Delete the entry for container_id if present and persist. Absent key is a no-op."""
        with self._lock.write():
            previous = self._entries.pop(container_id, None)
            if previous is None:
                return
            try:
                self._save()
            except PersistenceFailure:
                self._entries[container_id] = previous
                raise

    def get(self, container_id: str) -> Entry | None:
        with self._lock.read():
            return self._entries.get(container_id)

    def all(self) -> Iterator[Entry]:
        """One-shot iterator over a snapshot of the current entries."""
        with self._lock.read():
            snapshot = list(self._entries.values())
        return iter(snapshot)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)

    def _save(self) -> None:
        """Write the whole document atomically. Caller holds the write lock."""
        document = StateDocument(entries=self._entries)
        data = document.model_dump_json(indent=2)
        directory = os.path.dirname(os.path.abspath(self.file_path))
        tmp_path = None
        try:
            os.makedirs(directory, mode=0o755, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".state-", suffix=".tmp", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.file_path)
            tmp_path = None
        except OSError as e:
            logger.error("Failed to write state file %s: %s", self.file_path, e)
            raise PersistenceFailure(f"failed to write state file {self.file_path}: {e}") from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
