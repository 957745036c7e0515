"""Keeps XFS project quotas in sync with the lifecycle of runtime containers.

On every (re)connection the handler reconciles the state file against the runtime's
running containers, then applies container create/delete events one at a time in
arrival order. Pool and state store each have their own lock; no lock spans both,
so the create/delete sequences are ordered to leave recoverable states on failure:

  create: allocate -> tag + limit -> persist    (enforced before recorded)
  delete: clear limit -> forget -> release       (forgotten before reusable)
"""

import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from rootfs_quota.errors import (
    EnforcementFailure,
    OperationCancelled,
    PersistenceFailure,
    RootfsQuotaError,
    RuntimeLookupError,
    StateInconsistent,
    StreamError,
)
from rootfs_quota.lifecycle import CancelScope, Clock
from rootfs_quota.models import ContainerEvent, Entry, EventKind, upperdir_from_mounts
from rootfs_quota.runtime import RuntimeGateway
from rootfs_quota.utils import get_logger
from rootfs_quota.xfs.project_pool import ProjectIDPool
from rootfs_quota.xfs.quota import QuotaEnforcer
from rootfs_quota.xfs.state import StateStore

logger = get_logger(__name__)

_CLEAR = "0"
DEFAULT_RECONNECT_DELAY = 5.0


class HandlerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    RECONCILING = "reconciling"
    LISTENING = "listening"
    STOPPED = "stopped"


@dataclass
class ReconcileReport:
    """Outcome of one reconciliation pass."""

    live: int = 0
    restored: int = 0  # live containers whose entry was re-reserved
    created: int = 0  # live containers with no entry that got a new quota
    skipped: int = 0  # upperdir not on disk yet
    failed: int = 0
    stale: list[str] = field(default_factory=list)  # entries with no running container

    def as_dict(self) -> dict[str, Any]:
        return {
            "live": self.live,
            "restored": self.restored,
            "created": self.created,
            "skipped": self.skipped,
            "failed": self.failed,
            "stale": list(self.stale),
        }


class QuotaHandler:
    """Drives ProjectIDPool, QuotaEnforcer and StateStore from runtime container events."""

    def __init__(
        self,
        pool: ProjectIDPool,
        store: StateStore,
        enforcer: QuotaEnforcer,
        gateway: RuntimeGateway,
        soft_limit: str,
        hard_limit: str,
        scope: CancelScope | None = None,
        clock: Clock | None = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        max_reconnect_attempts: int | None = None,
        path_exists: Callable[[str], bool] = os.path.exists,
    ) -> None:
        self.pool = pool
        self.store = store
        self.enforcer = enforcer
        self.gateway = gateway
        self.soft_limit = soft_limit
        self.hard_limit = hard_limit
        self.scope = scope or CancelScope()
        self.clock = clock or Clock()
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self._path_exists = path_exists
        self._state = HandlerState.DISCONNECTED
        self._state_lock = threading.Lock()
        self.last_report: ReconcileReport | None = None
        self.events_handled = 0
        self.events_failed = 0
        self.reconnects = 0
        self._failures = 0

    # --- connection lifecycle ---

    @property
    def state(self) -> HandlerState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: HandlerState) -> None:
        with self._state_lock:
            if self._state is state:
                return
            self._state = state
        logger.debug("Handler state -> %s", state.value)

    def run(self) -> None:
        """Connect, reconcile and listen until the scope is cancelled, reconnecting on stream errors.

        Raises StreamError only if max_reconnect_attempts consecutive attempts failed.
        """
        self._failures = 0
        try:
            while not self.scope.cancelled:
                try:
                    self._listen_once()
                except StreamError as e:
                    if self.scope.cancelled:
                        break
                    self._failures += 1
                    self._set_state(HandlerState.DISCONNECTED)
                    if self.max_reconnect_attempts is not None and self._failures > self.max_reconnect_attempts:
                        logger.error("Giving up after %d reconnect attempts: %s", self.max_reconnect_attempts, e)
                        raise
                    logger.error("Event listener failed, retrying in %.1fs: %s", self.reconnect_delay, e)
                    if not self.clock.sleep(self.reconnect_delay, self.scope):
                        break
                    self.reconnects += 1
        finally:
            self.gateway.close()
            self._set_state(HandlerState.STOPPED)
            logger.info("Quota handler stopped")

    def _listen_once(self) -> None:
        """One connection: subscribe, reconcile, then apply events until the stream ends or is closed.

        Subscribing before the reconciliation pass means events raised while reconciling are
        queued rather than lost; replaying a create for an already-recorded container is harmless.
        """
        self._set_state(HandlerState.CONNECTING)
        try:
            self.gateway.connect()
            stream = self.gateway.subscribe()
        except RootfsQuotaError as e:
            self.gateway.close()
            if isinstance(e, StreamError):
                raise
            raise StreamError(str(e)) from e

        unregister = self.scope.on_cancel(stream.close)
        try:
            self._set_state(HandlerState.RECONCILING)
            self.reconcile()
            if self.scope.cancelled:
                return
            self._set_state(HandlerState.LISTENING)
            self._failures = 0
            logger.info("Listening for container events...")
            for event in stream:
                self.handle_event(event)
                if self.scope.cancelled:
                    return
            if not self.scope.cancelled:
                raise StreamError("event stream ended")
        finally:
            unregister()
            stream.close()
            self.gateway.close()

    def _checkpoint(self) -> None:
        if self.scope.cancelled:
            raise OperationCancelled("shutdown requested")

    # --- reconciliation ---

    def reconcile(self) -> ReconcileReport:
        """Re-reserve recorded project IDs and restore quotas for running containers missing one.

        Every recorded entry is reserved in the pool before any allocation, including entries
        whose container is not running: they stay reserved until their delete event arrives.
        Per-container failures are logged and do not stop the pass.
        """
        report = ReconcileReport()
        for entry in self.store.all():
            try:
                self.pool.mark_used(entry.project_id)
            except ValueError as e:
                logger.error("Recorded entry container=%s is invalid: %s", entry.container_id, e)

        container_ids = self.gateway.list_containers()
        report.live = len(container_ids)
        for container_id in container_ids:
            if self.scope.cancelled:
                logger.info("Reconciliation interrupted by shutdown")
                break
            try:
                upperdir = self.gateway.resolve_upperdir(container_id)
            except RuntimeLookupError as e:
                logger.warning("Skipping container=%s: %s", container_id, e)
                report.failed += 1
                continue
            if not self._path_exists(upperdir):
                logger.debug("Skipping container=%s: upperdir %s does not exist yet", container_id, upperdir)
                report.skipped += 1
                continue

            entry = self.store.get(container_id)
            if entry is not None:
                try:
                    self.pool.mark_used(entry.project_id)
                except ValueError:
                    report.failed += 1
                    continue
                if entry.upperdir != upperdir:
                    logger.warning(
                        "container=%s recorded upperdir %s differs from runtime upperdir %s",
                        container_id, entry.upperdir, upperdir,
                    )
                report.restored += 1
                continue

            try:
                self._create(container_id, upperdir)
                report.created += 1
            except OperationCancelled:
                break
            except RootfsQuotaError as e:
                logger.error("Failed to restore quota for container=%s upperdir=%s: %s", container_id, upperdir, e)
                report.failed += 1

        live = set(container_ids)
        report.stale = sorted(e.container_id for e in self.store.all() if e.container_id not in live)
        if report.stale:
            logger.warning(
                "%d recorded entries have no running container and stay reserved until deleted: %s",
                len(report.stale), ", ".join(c[:12] for c in report.stale),
            )
        logger.info(
            "Reconciled: live=%d restored=%d created=%d skipped=%d failed=%d stale=%d",
            report.live, report.restored, report.created, report.skipped, report.failed, len(report.stale),
        )
        self.last_report = report
        return report

    # --- events ---

    def handle_event(self, event: ContainerEvent) -> None:
        """Apply one event. Errors are logged with context; they never stop the listener."""
        try:
            if event.kind is EventKind.CREATE:
                self.handle_create(event)
            elif event.kind is EventKind.DELETE:
                self.handle_delete(event.container_id)
            self.events_handled += 1
        except OperationCancelled:
            logger.info("Dropped %s event for container=%s: shutting down", event.kind.value, event.container_id)
        except RootfsQuotaError as e:
            self.events_failed += 1
            logger.error("Failed to handle %s event for container=%s: %s", event.kind.value, event.container_id, e)
        except Exception:
            self.events_failed += 1
            logger.exception("Unexpected error handling %s event for container=%s", event.kind.value, event.container_id)

    def handle_create(self, event: ContainerEvent) -> Entry:
        """Give a newly started container a project quota. Returns the (new or existing) entry."""
        upperdir = upperdir_from_mounts(event.rootfs)
        if upperdir is None:
            upperdir = self.gateway.resolve_upperdir(event.container_id)
        return self._create(event.container_id, upperdir)

    def _create(self, container_id: str, upperdir: str) -> Entry:
        existing = self.store.get(container_id)
        if existing is not None:
            self.pool.mark_used(existing.project_id)
            if existing.upperdir != upperdir:
                logger.warning(
                    "container=%s already has projid=%d on %s; ignoring new upperdir %s",
                    container_id, existing.project_id, existing.upperdir, upperdir,
                )
            return existing

        self._checkpoint()
        project_id = self.pool.allocate()
        try:
            self._checkpoint()
            self.enforcer.tag(upperdir, project_id)
            self._checkpoint()
            self.enforcer.set_limit(project_id, self.soft_limit, self.hard_limit)
        except (EnforcementFailure, OperationCancelled):
            self.pool.release(project_id)
            raise

        entry = Entry(container_id=container_id, project_id=project_id, upperdir=upperdir)
        try:
            self.store.put(entry)
        except PersistenceFailure:
            # Keep the ID reserved: upperdir is already tagged with it.
            logger.error(
                "Quota applied but not recorded: container=%s projid=%d upperdir=%s",
                container_id, project_id, upperdir,
            )
            raise
        logger.info(
            "Quota set: container=%s projid=%d upperdir=%s bsoft=%s bhard=%s",
            container_id, project_id, upperdir, self.soft_limit, self.hard_limit,
        )
        return entry

    def handle_delete(self, container_id: str) -> int | None:
        """Clear and forget the quota of a stopped container. Returns the released project ID, if any."""
        self._checkpoint()
        upperdir = self.gateway.resolve_upperdir(container_id)
        entry = self.store.get(container_id)
        store_id = entry.project_id if entry is not None else None

        if self._path_exists(upperdir):
            project_id = self._project_id_for_delete(container_id, upperdir, store_id)
            if project_id is None:
                return None
            try:
                self.enforcer.set_limit(project_id, _CLEAR, _CLEAR)
            except EnforcementFailure as e:
                logger.error(
                    "Failed to clear limit for container=%s projid=%d upperdir=%s: %s",
                    container_id, project_id, upperdir, e,
                )
        elif store_id is None:
            logger.info("No quota recorded for container=%s (upperdir %s gone)", container_id, upperdir)
            return None
        else:
            project_id = store_id

        self.store.remove(container_id)
        self.pool.release(project_id)
        logger.info("Quota removed: container=%s projid=%d upperdir=%s", container_id, project_id, upperdir)
        return project_id

    def _project_id_for_delete(self, container_id: str, upperdir: str, store_id: int | None) -> int | None:
        """Pick the project ID to clear: the recorded one, cross-checked against xfs when readable."""
        try:
            fs_id = self.enforcer.read_tag(upperdir)
        except EnforcementFailure as e:
            if store_id is None:
                raise
            logger.warning("Could not read projid of %s, using recorded projid=%d: %s", upperdir, store_id, e)
            return store_id

        if fs_id == 0:
            if store_id is None:
                logger.info("container=%s upperdir=%s has no project quota", container_id, upperdir)
            return store_id
        if store_id is None:
            if not self.pool.min_id <= fs_id <= self.pool.max_id:
                logger.warning(
                    "container=%s upperdir=%s carries projid=%d outside our range; leaving it alone",
                    container_id, upperdir, fs_id,
                )
                return None
            owner = next((e.container_id for e in self.store.all() if e.project_id == fs_id), None)
            if owner is not None:
                # The ID was released earlier and handed to another container; the tag is stale.
                logger.warning(
                    "container=%s upperdir=%s carries stale projid=%d now owned by container=%s; leaving it alone",
                    container_id, upperdir, fs_id, owner,
                )
                return None
            logger.info("container=%s not recorded, using projid=%d read from %s", container_id, fs_id, upperdir)
            return fs_id
        if fs_id != store_id:
            raise StateInconsistent(container_id, store_id, fs_id)
        return store_id

    # --- introspection ---

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "pool": {
                "min_id": self.pool.min_id,
                "max_id": self.pool.max_id,
                "capacity": self.pool.capacity,
                "used": self.pool.capacity - self.pool.free_count,
                "free": self.pool.free_count,
            },
            "entries": len(self.store),
            "events_handled": self.events_handled,
            "events_failed": self.events_failed,
            "reconnects": self.reconnects,
            "last_reconcile": self.last_report.as_dict() if self.last_report else None,
        }
