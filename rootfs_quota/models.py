"""Pydantic models for config, persisted state and runtime events."""

from enum import Enum

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from rootfs_quota.utils import parse_size

_UINT32_MAX = 2**32 - 1
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# --- Config ---


class QuotaConfig(BaseModel):
    """Daemon config, loaded from a JSON file."""

    state_file_path: str = Field(min_length=1)
    project_id_min: int = Field(gt=0, le=_UINT32_MAX)
    project_id_max: int = Field(gt=0, le=_UINT32_MAX)
    default_quota_soft: str
    default_quota_hard: str
    runtime_sock: str = Field(
        min_length=1,
        validation_alias=AliasChoices("runtime_sock", "containerd_sock"),
    )
    runtime_timeout_seconds: float = 10.0
    reconnect_delay_seconds: float = Field(default=5.0, ge=0)
    max_reconnect_attempts: int | None = Field(default=None, ge=1)  # None: retry forever
    metrics_port: int | None = Field(default=None, ge=1, le=65535)  # None: no status API
    metrics_host: str = "127.0.0.1"
    api_key: str | None = None
    xfs_quota_path: str = "xfs_quota"
    xfs_io_path: str = "xfs_io"
    command_timeout_seconds: float = 30.0
    log_level: str = "INFO"

    @field_validator("default_quota_soft", "default_quota_hard")
    @classmethod
    def _check_size(cls, v: str) -> str:
        parse_size(v)
        return v.strip()

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, v: str) -> str:
        if v.upper() not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(_LOG_LEVELS)}")
        return v.upper()

    @model_validator(mode="after")
    def _check_range(self) -> "QuotaConfig":
        if self.project_id_min >= self.project_id_max:
            raise ValueError(
                f"invalid project_id range: min={self.project_id_min}, max={self.project_id_max}"
            )
        if parse_size(self.default_quota_soft) > parse_size(self.default_quota_hard):
            raise ValueError("default_quota_soft must not exceed default_quota_hard")
        return self


# --- Persisted state ---


class Entry(BaseModel):
    """One active quota assignment: container -> project ID -> upperdir."""

    model_config = {"frozen": True}

    container_id: str
    project_id: int = Field(ge=0, le=_UINT32_MAX)
    upperdir: str


class StateDocument(BaseModel):
    """On-disk shape of the state file."""

    entries: dict[str, Entry] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_keys(self) -> "StateDocument":
        for key, entry in self.entries.items():
            if key != entry.container_id:
                raise ValueError(f"entry key {key!r} does not match container_id {entry.container_id!r}")
        return self


# --- Runtime events ---


class EventKind(str, Enum):
    CREATE = "create"
    DELETE = "delete"


class Mount(BaseModel):
    """A rootfs mount as reported by the runtime (overlay: lowerdir=/upperdir=/workdir= options)."""

    type: str
    source: str = ""
    options: list[str] = Field(default_factory=list)


class ContainerEvent(BaseModel):
    """A container lifecycle event. DELETE events carry no rootfs."""

    kind: EventKind
    container_id: str
    rootfs: list[Mount] = Field(default_factory=list)


def upperdir_from_mounts(mounts: list[Mount]) -> str | None:
    """Return the value of the first upperdir= option across all mounts, or None."""
    for mount in mounts:
        for opt in mount.options:
            if opt.startswith("upperdir="):
                value = opt[len("upperdir="):]
                if value:
                    return value
    return None
