"""Container runtime access: live containers, upperdir resolution and lifecycle events."""

from collections.abc import Iterator
from typing import Protocol

from rootfs_quota.models import ContainerEvent


class EventStream(Protocol):
    """Blocking iterator of container events. close() makes a blocked iteration return."""

    def __iter__(self) -> Iterator[ContainerEvent]: ...

    def close(self) -> None: ...


class RuntimeGateway(Protocol):
    """What the quota handler needs from the container runtime."""

    def connect(self) -> None: ...

    def close(self) -> None: ...

    def list_containers(self) -> list[str]: ...

    def resolve_upperdir(self, container_id: str) -> str: ...

    def subscribe(self) -> EventStream: ...

    def data_root(self) -> str: ...


__all__ = ["EventStream", "RuntimeGateway"]
