"""Exception taxonomy for the quota daemon."""


class RootfsQuotaError(Exception):
    """Base class for all rootfs_quota errors."""

    pass


class ConfigError(RootfsQuotaError):
    """Raised when the configuration file is missing or invalid."""

    pass


class PoolExhausted(RootfsQuotaError):
    """Raised when every project ID in the configured range is in use."""

    def __init__(self, min_id: int, max_id: int) -> None:
        super().__init__(f"no available project ID in [{min_id}, {max_id}]")
        self.min_id = min_id
        self.max_id = max_id


class EnforcementFailure(RootfsQuotaError):
    """Raised when an xfs_quota / xfs_io call fails."""

    def __init__(self, message: str, command: list[str] | None = None, output: str = "") -> None:
        detail = f"{message}: {output.strip()}" if output.strip() else message
        super().__init__(detail)
        self.command = command or []
        self.output = output


class PersistenceFailure(RootfsQuotaError):
    """Raised when the state document could not be written."""

    pass


class StateInconsistent(RootfsQuotaError):
    """Raised when the state document and the filesystem disagree on a project ID."""

    def __init__(self, container_id: str, store_id: int, fs_id: int) -> None:
        super().__init__(
            f"container {container_id}: project ID mismatch (state={store_id}, xfs={fs_id})"
        )
        self.container_id = container_id
        self.store_id = store_id
        self.fs_id = fs_id


class CorruptState(RootfsQuotaError):
    """Raised when the state document exists but cannot be parsed. Fatal."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"corrupt state file {path}: {reason}")
        self.path = path
        self.reason = reason


class StreamError(RootfsQuotaError):
    """Raised when the connection to the container runtime is lost."""

    pass


class RuntimeLookupError(RootfsQuotaError):
    """Raised when the runtime cannot resolve a container or its upperdir."""

    pass


class OperationCancelled(RootfsQuotaError):
    """Raised at a sequence checkpoint when shutdown was requested before the next external call."""

    pass
