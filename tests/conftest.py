from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from rootfs_quota.errors import RuntimeLookupError, StreamError
from rootfs_quota.handler import QuotaHandler
from rootfs_quota.lifecycle import CancelScope
from rootfs_quota.models import ContainerEvent, EventKind, Mount
from rootfs_quota.xfs.project_pool import ProjectIDPool
from rootfs_quota.xfs.quota_mock import MockQuotaEnforcer
from rootfs_quota.xfs.state import StateStore


class FakeStream:
    """Yields scripted items; an exception item is raised. Calls on_drained after the last item."""

    def __init__(self, items: list[Any], on_drained: Callable[[], None] | None = None) -> None:
        self.items = items
        self.on_drained = on_drained
        self.closed = False

    def __iter__(self) -> Iterator[ContainerEvent]:
        for item in self.items:
            if self.closed:
                return
            if isinstance(item, BaseException):
                raise item
            yield item
        if self.on_drained is not None and not self.closed:
            self.on_drained()

    def close(self) -> None:
        self.closed = True


class FakeGateway:
    """In-memory runtime: running containers and scripted event streams."""

    def __init__(self) -> None:
        self.containers: dict[str, str] = {}  # running container -> upperdir
        self.stopped: dict[str, str] = {}  # stopped but still inspectable
        self.lookup_failures: set[str] = set()
        self.connect_failures = 0
        self.streams: list[FakeStream] = []
        self.connects = 0
        self.closes = 0
        self.subscribed: list[FakeStream] = []

    def connect(self) -> None:
        self.connects += 1
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise StreamError("connection refused")

    def close(self) -> None:
        self.closes += 1

    def list_containers(self) -> list[str]:
        return list(self.containers)

    def resolve_upperdir(self, container_id: str) -> str:
        if container_id in self.lookup_failures:
            raise RuntimeLookupError(f"cannot load container {container_id}")
        if container_id in self.containers:
            return self.containers[container_id]
        if container_id in self.stopped:
            return self.stopped[container_id]
        raise RuntimeLookupError(f"container {container_id} not found")

    def data_root(self) -> str:
        return "/var/lib/docker"

    def subscribe(self) -> FakeStream:
        stream = self.streams.pop(0) if self.streams else FakeStream([])
        self.subscribed.append(stream)
        return stream

    def stop(self, container_id: str) -> None:
        self.stopped[container_id] = self.containers.pop(container_id)


class FakeClock:
    """Records requested delays instead of sleeping."""

    def __init__(self, on_sleep: Callable[[float], None] | None = None) -> None:
        self.sleeps: list[float] = []
        self.on_sleep = on_sleep

    def sleep(self, seconds: float, scope: CancelScope) -> bool:
        self.sleeps.append(seconds)
        if self.on_sleep is not None:
            self.on_sleep(seconds)
        return not scope.cancelled


def create_event(container_id: str, upperdir: str) -> ContainerEvent:
    mount = Mount(
        type="overlay",
        source="overlay",
        options=["index=off", f"lowerdir=/var/lib/x/{container_id}/lower", f"upperdir={upperdir}", "workdir=/w"],
    )
    return ContainerEvent(kind=EventKind.CREATE, container_id=container_id, rootfs=[mount])


def delete_event(container_id: str) -> ContainerEvent:
    return ContainerEvent(kind=EventKind.DELETE, container_id=container_id)


def write_state(path: Any, entries: dict[str, tuple[int, str]]) -> None:
    doc = {
        "entries": {
            cid: {"container_id": cid, "project_id": pid, "upperdir": upperdir}
            for cid, (pid, upperdir) in entries.items()
        }
    }
    path.write_text(json.dumps(doc), encoding="utf-8")


@pytest.fixture
def state_path(tmp_path: Any) -> Any:
    return tmp_path / "state" / "state.json"


@pytest.fixture
def store(state_path: Any) -> StateStore:
    s = StateStore(str(state_path))
    s.load()
    return s


@pytest.fixture
def pool() -> ProjectIDPool:
    return ProjectIDPool(1, 10)


@pytest.fixture
def enforcer() -> MockQuotaEnforcer:
    return MockQuotaEnforcer()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def existing_paths() -> set[str]:
    return set()


@pytest.fixture
def scope() -> CancelScope:
    return CancelScope()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def handler(
    pool: ProjectIDPool,
    store: StateStore,
    enforcer: MockQuotaEnforcer,
    gateway: FakeGateway,
    existing_paths: set[str],
    scope: CancelScope,
    clock: FakeClock,
) -> QuotaHandler:
    return QuotaHandler(
        pool,
        store,
        enforcer,
        gateway,
        soft_limit="10g",
        hard_limit="12g",
        scope=scope,
        clock=clock,
        reconnect_delay=5.0,
        path_exists=lambda p: p in existing_paths,
    )
