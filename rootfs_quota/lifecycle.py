"""Cancellation scope and clock used by the connection loop.

Shutdown is an explicit input: the CLI maps SIGINT/SIGTERM onto CancelScope.cancel(),
and tests call it directly. Blocking waits go through the scope so they return early.
"""

import threading
from typing import Callable

from rootfs_quota.utils import get_logger

logger = get_logger(__name__)


class CancelScope:
    """A one-shot cancellation flag with callbacks (e.g. closing a blocked event stream)."""

    def __init__(self) -> None:
        self._event = threading.Event()
        # Reentrant: cancel() runs from signal handlers on the thread that may hold it.
        self._lock = threading.RLock()
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next_token = 0

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Set the scope and run every registered callback once."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Cancel callback %r failed: %s", callback, e)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or timeout. Returns True if cancelled."""
        return self._event.wait(timeout)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register callback to run on cancel. Returns a function that unregisters it.

        If the scope is already cancelled the callback runs immediately.
        """
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._callbacks[token] = callback
            # A signal may have cancelled the scope while we held the lock.
            missed = self._event.is_set() and self._callbacks.pop(token, None) is not None
        if missed:
            callback()
            return lambda: None

        def unregister() -> None:
            with self._lock:
                self._callbacks.pop(token, None)

        return unregister


class Clock:
    """Real clock. sleep() wakes up early when the scope is cancelled."""

    def sleep(self, seconds: float, scope: CancelScope) -> bool:
        """Wait for seconds. Returns True if the full delay elapsed, False if cancelled."""
        return not scope.wait(seconds)
