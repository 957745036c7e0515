"""rootfs_quota: per-container XFS project quotas for container writable layers."""

import json
import threading
from typing import Any

from flask import Flask
from pydantic import ValidationError
from werkzeug.serving import make_server

from rootfs_quota.errors import ConfigError
from rootfs_quota.handler import QuotaHandler
from rootfs_quota.lifecycle import CancelScope, Clock
from rootfs_quota.models import QuotaConfig
from rootfs_quota.routes import status_api as status_api_routes
from rootfs_quota.runtime.docker_client import DockerGateway
from rootfs_quota.utils import get_logger
from rootfs_quota.xfs.project_pool import ProjectIDPool
from rootfs_quota.xfs.quota import XfsQuotaEnforcer
from rootfs_quota.xfs.state import StateStore

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = "/etc/containerd-quota/config.json"


def load_config(path: str | None = None) -> QuotaConfig:
    """Load and validate the daemon config from a JSON file. Raises ConfigError."""
    config_path = path or DEFAULT_CONFIG_PATH
    logger.info(f"Loading config from {config_path}")
    try:
        with open(config_path, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"failed to read config file {config_path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"failed to parse config file {config_path}: {e}") from e
    logger.debug(f"Config:\n{json.dumps({k: v for k, v in data.items() if k != 'api_key'}, indent=2)}")
    try:
        return QuotaConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid config file {config_path}: {e}") from e


def create_handler(
    config: QuotaConfig,
    scope: CancelScope | None = None,
    clock: Clock | None = None,
) -> QuotaHandler:
    """Build the pool, state store, xfs adapter and docker gateway from config. Loads the state file."""
    store = StateStore(config.state_file_path)
    store.load()
    pool = ProjectIDPool(config.project_id_min, config.project_id_max)
    enforcer = XfsQuotaEnforcer(
        xfs_quota_cmd=config.xfs_quota_path,
        xfs_io_cmd=config.xfs_io_path,
        timeout=config.command_timeout_seconds,
    )
    gateway = DockerGateway(config.runtime_sock, timeout=config.runtime_timeout_seconds)
    return QuotaHandler(
        pool,
        store,
        enforcer,
        gateway,
        soft_limit=config.default_quota_soft,
        hard_limit=config.default_quota_hard,
        scope=scope,
        clock=clock,
        reconnect_delay=config.reconnect_delay_seconds,
        max_reconnect_attempts=config.max_reconnect_attempts,
    )


def create_app(handler: QuotaHandler, api_key: str | None = None) -> Flask:
    """Create the Flask status app for a handler."""
    app = Flask(__name__)
    app.config["QUOTA_HANDLER"] = handler
    app.config["API_KEY"] = api_key

    @app.route("/")
    def index() -> Any:
        return "rootfs-quota", {"Content-Type": "text/plain"}

    status_api_routes.register_status_routes(app)
    return app


def start_status_server(app: Flask, host: str, port: int, scope: CancelScope) -> threading.Thread:
    """Serve app in a daemon thread until scope is cancelled."""
    server = make_server(host, port, app, threaded=True)
    thread = threading.Thread(target=server.serve_forever, name="status-api", daemon=True)
    thread.start()
    scope.on_cancel(server.shutdown)
    logger.info("Status API listening on http://%s:%d", host, port)
    return thread
