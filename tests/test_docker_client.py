from __future__ import annotations

from typing import Any

import docker
import pytest
import requests

from rootfs_quota.errors import RuntimeLookupError, StreamError
from rootfs_quota.models import EventKind, upperdir_from_mounts
from rootfs_quota.runtime.docker_client import DockerGateway, event_from_docker, mounts_from_inspect

_INSPECT = {
    "Id": "abc123",
    "GraphDriver": {
        "Name": "overlay2",
        "Data": {
            "LowerDir": "/var/lib/docker/overlay2/abc-init/diff:/var/lib/docker/overlay2/l1/diff",
            "MergedDir": "/var/lib/docker/overlay2/abc/merged",
            "UpperDir": "/var/lib/docker/overlay2/abc/diff",
            "WorkDir": "/var/lib/docker/overlay2/abc/work",
        },
    },
}


class _Container:
    def __init__(self, cid: str) -> None:
        self.id = cid


class _Containers:
    def __init__(self, ids: list[str]) -> None:
        self.ids = ids

    def list(self) -> list[_Container]:
        return [_Container(i) for i in self.ids]


class _Api:
    def __init__(self, inspect: dict[str, dict[str, Any]]) -> None:
        self.inspect = inspect

    def inspect_container(self, cid: str) -> dict[str, Any]:
        if cid not in self.inspect:
            raise docker.errors.NotFound(f"No such container: {cid}")
        return self.inspect[cid]


class _RawEvents:
    def __init__(self, events: list[Any]) -> None:
        self.events = events
        self.closed = False

    def __iter__(self) -> Any:
        for ev in self.events:
            if isinstance(ev, BaseException):
                raise ev
            yield ev

    def close(self) -> None:
        self.closed = True


class FakeDockerClient:
    def __init__(self, ids: list[str] | None = None, inspect: dict[str, dict[str, Any]] | None = None) -> None:
        self.containers = _Containers(ids or [])
        self.api = _Api(inspect or {})
        self.raw_events = _RawEvents([])
        self.events_kwargs: dict[str, Any] = {}
        self.ping_error: BaseException | None = None
        self.closed = False

    def ping(self) -> bool:
        if self.ping_error is not None:
            raise self.ping_error
        return True

    def info(self) -> dict[str, Any]:
        return {"DockerRootDir": "/data/docker"}

    def events(self, **kwargs: Any) -> _RawEvents:
        self.events_kwargs = kwargs
        return self.raw_events

    def close(self) -> None:
        self.closed = True


def _gateway(client: FakeDockerClient) -> DockerGateway:
    gw = DockerGateway("unix:///run/docker.sock", client_factory=lambda _url, _timeout: client)
    gw.connect()
    return gw


def test_mounts_from_inspect_exposes_upperdir() -> None:
    mounts = mounts_from_inspect(_INSPECT)
    assert mounts[0].type == "overlay2"
    assert mounts[0].options[1] == "upperdir=/var/lib/docker/overlay2/abc/diff"
    assert upperdir_from_mounts(mounts) == "/var/lib/docker/overlay2/abc/diff"


def test_mounts_from_inspect_without_graph_driver() -> None:
    assert mounts_from_inspect({"Id": "x"}) == []


@pytest.mark.parametrize(
    "ev,expected",
    [
        ({"Type": "container", "Action": "start", "Actor": {"ID": "abc"}}, (EventKind.CREATE, "abc")),
        ({"Type": "container", "Action": "die", "id": "abc"}, (EventKind.DELETE, "abc")),
        ({"Type": "container", "Action": "exec_die", "Actor": {"ID": "abc"}}, None),
        ({"Type": "image", "Action": "pull", "Actor": {"ID": "busybox"}}, None),
        ({"Type": "container", "Action": "start", "Actor": {}}, None),
    ],
)
def test_event_from_docker(ev: dict[str, Any], expected: Any) -> None:
    assert event_from_docker(ev) == expected


def test_connect_failure_is_stream_error() -> None:
    client = FakeDockerClient()
    client.ping_error = requests.exceptions.ConnectionError("connection refused")
    gw = DockerGateway(client_factory=lambda _url, _timeout: client)
    with pytest.raises(StreamError):
        gw.connect()


def test_calls_before_connect_fail() -> None:
    with pytest.raises(StreamError):
        DockerGateway(client_factory=lambda _u, _t: FakeDockerClient()).list_containers()


def test_list_and_resolve() -> None:
    gw = _gateway(FakeDockerClient(ids=["abc123"], inspect={"abc123": _INSPECT}))
    assert gw.list_containers() == ["abc123"]
    assert gw.resolve_upperdir("abc123") == "/var/lib/docker/overlay2/abc/diff"
    assert gw.data_root() == "/data/docker"


def test_resolve_unknown_container() -> None:
    gw = _gateway(FakeDockerClient())
    with pytest.raises(RuntimeLookupError):
        gw.resolve_upperdir("nope")


def test_resolve_without_upperdir() -> None:
    gw = _gateway(FakeDockerClient(inspect={"vfs": {"GraphDriver": {"Name": "vfs", "Data": None}}}))
    with pytest.raises(RuntimeLookupError):
        gw.resolve_upperdir("vfs")


def test_event_stream_maps_and_filters() -> None:
    client = FakeDockerClient(inspect={"abc123": _INSPECT})
    client.raw_events = _RawEvents(
        [
            {"Type": "container", "Action": "create", "Actor": {"ID": "abc123"}},
            {"Type": "container", "Action": "start", "Actor": {"ID": "abc123"}},
            {"Type": "container", "Action": "start", "Actor": {"ID": "gone"}},
            {"Type": "container", "Action": "die", "Actor": {"ID": "abc123"}},
        ]
    )
    gw = _gateway(client)
    stream = gw.subscribe()

    events = []
    with pytest.raises(StreamError):
        for event in stream:
            events.append(event)

    assert client.events_kwargs["decode"] is True
    assert client.events_kwargs["filters"] == {"type": "container", "event": ["start", "die"]}
    assert [(e.kind, e.container_id) for e in events] == [
        (EventKind.CREATE, "abc123"),
        (EventKind.CREATE, "gone"),
        (EventKind.DELETE, "abc123"),
    ]
    assert upperdir_from_mounts(events[0].rootfs) == "/var/lib/docker/overlay2/abc/diff"
    assert events[1].rootfs == []
    assert events[2].rootfs == []


def test_event_stream_error_becomes_stream_error() -> None:
    client = FakeDockerClient()
    client.raw_events = _RawEvents([requests.exceptions.ChunkedEncodingError("connection broken")])
    stream = _gateway(client).subscribe()
    with pytest.raises(StreamError):
        list(stream)


def test_closed_event_stream_ends_quietly() -> None:
    client = FakeDockerClient()
    client.raw_events = _RawEvents([])
    stream = _gateway(client).subscribe()
    stream.close()
    assert list(stream) == []
    assert client.raw_events.closed


def test_close_releases_client() -> None:
    client = FakeDockerClient()
    gw = _gateway(client)
    gw.close()
    assert client.closed
    with pytest.raises(StreamError):
        gw.list_containers()
