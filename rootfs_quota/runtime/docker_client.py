"""Docker API client for listing running containers, resolving upperdirs and streaming events.

Container start/die map onto the runtime's task create/delete: a container that has
died still exists, so its GraphDriver data (and upperdir) can still be inspected.
Only the overlay2 storage driver exposes an upperdir.
"""

from collections.abc import Iterator
from typing import Any, Callable

from requests.exceptions import RequestException

from rootfs_quota.errors import RuntimeLookupError, StreamError
from rootfs_quota.models import ContainerEvent, EventKind, Mount
from rootfs_quota.utils import get_logger

logger = get_logger(__name__)

_DEFAULT_DATA_ROOT = "/var/lib/docker"

# Docker action -> event kind
_ACTIONS = {
    "start": EventKind.CREATE,
    "die": EventKind.DELETE,
}


def _default_client_factory(base_url: str, timeout: float) -> Any:
    import docker
    return docker.DockerClient(base_url=base_url, timeout=int(timeout))


def _docker_errors() -> tuple[type[BaseException], ...]:
    import docker
    return (docker.errors.DockerException, RequestException)


def mounts_from_inspect(attrs: dict[str, Any]) -> list[Mount]:
    """Build the rootfs mount list from 'docker inspect' GraphDriver data."""
    graph_driver = attrs.get("GraphDriver") or {}
    data = graph_driver.get("Data") or {}
    options = []
    for key, option in (("LowerDir", "lowerdir"), ("UpperDir", "upperdir"), ("WorkDir", "workdir")):
        value = data.get(key)
        if value:
            options.append(f"{option}={value}")
    if not options:
        return []
    return [Mount(type=graph_driver.get("Name") or "overlay", source="overlay", options=options)]


def event_from_docker(ev: dict[str, Any]) -> tuple[EventKind, str] | None:
    """Map a decoded Docker event to (kind, container_id). Returns None for events we ignore."""
    if ev.get("Type") != "container":
        return None
    kind = _ACTIONS.get(ev.get("Action") or ev.get("status") or "")
    if kind is None:
        return None
    actor = ev.get("Actor") or {}
    container_id = actor.get("ID") or ev.get("id") or ev.get("ID")
    if not container_id:
        return None
    return kind, container_id


class DockerEventStream:
    """Iterates container start/die events from 'docker events'. close() unblocks iteration."""

    def __init__(self, gateway: "DockerGateway", raw: Any) -> None:
        self._gateway = gateway
        self._raw = raw
        self._closed = False

    def __iter__(self) -> Iterator[ContainerEvent]:
        errors = _docker_errors()
        try:
            for ev in self._raw:
                mapped = event_from_docker(ev)
                if mapped is None:
                    continue
                kind, container_id = mapped
                rootfs: list[Mount] = []
                if kind is EventKind.CREATE:
                    try:
                        rootfs = mounts_from_inspect(self._gateway.inspect(container_id))
                    except RuntimeLookupError as e:
                        # The handler falls back to resolve_upperdir() for an empty rootfs.
                        logger.warning("Could not inspect started container %s: %s", container_id[:12], e)
                yield ContainerEvent(kind=kind, container_id=container_id, rootfs=rootfs)
        except errors as e:
            if self._closed:
                return
            raise StreamError(f"docker event stream failed: {e}") from e
        if not self._closed:
            raise StreamError("docker event stream ended")

    def close(self) -> None:
        self._closed = True
        try:
            self._raw.close()
        except Exception as e:
            logger.debug("Closing docker event stream failed: %s", e)


class DockerGateway:
    """RuntimeGateway backed by the Docker SDK."""

    def __init__(
        self,
        base_url: str = "unix://var/run/docker.sock",
        timeout: float = 10.0,
        client_factory: Callable[[str, float], Any] | None = None,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self._client_factory = client_factory or _default_client_factory
        self._client: Any = None

    @property
    def client(self) -> Any:
        if self._client is None:
            raise StreamError("not connected to docker")
        return self._client

    def connect(self) -> None:
        """Open a client and ping the daemon. Raises StreamError if unreachable."""
        self.close()
        try:
            client = self._client_factory(self.base_url, self.timeout)
            client.ping()
        except _docker_errors() as e:
            raise StreamError(f"cannot connect to docker at {self.base_url}: {e}") from e
        self._client = client
        logger.info("Connected to docker at %s", self.base_url)

    def close(self) -> None:
        if self._client is None:
            return
        try:
            self._client.close()
        except Exception as e:
            logger.debug("Closing docker client failed: %s", e)
        self._client = None

    def list_containers(self) -> list[str]:
        """IDs of running containers."""
        try:
            containers = self.client.containers.list()
        except _docker_errors() as e:
            raise StreamError(f"docker list containers failed: {e}") from e
        return [c.id for c in containers]

    def inspect(self, container_id: str) -> dict[str, Any]:
        try:
            return self.client.api.inspect_container(container_id)
        except _docker_errors() as e:
            raise RuntimeLookupError(f"docker inspect {container_id} failed: {e}") from e

    def resolve_upperdir(self, container_id: str) -> str:
        """Return the container's writable layer directory."""
        attrs = self.inspect(container_id)
        data = (attrs.get("GraphDriver") or {}).get("Data") or {}
        upperdir = data.get("UpperDir")
        if not upperdir:
            raise RuntimeLookupError(f"upperdir not found for container {container_id}")
        return upperdir

    def data_root(self) -> str:
        """Docker data root (e.g. /var/lib/docker)."""
        try:
            info = self.client.info()
            return info.get("DockerRootDir") or _DEFAULT_DATA_ROOT
        except _docker_errors() as e:
            logger.warning("Could not get Docker data root: %s", e)
        return _DEFAULT_DATA_ROOT

    def subscribe(self) -> DockerEventStream:
        try:
            raw = self.client.events(
                decode=True,
                filters={"type": "container", "event": list(_ACTIONS)},
            )
        except _docker_errors() as e:
            raise StreamError(f"docker events subscription failed: {e}") from e
        return DockerEventStream(self, raw)
