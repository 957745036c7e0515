"""Command-line entry point: rootfs-quota --config PATH."""

import argparse
import signal
import sys
from typing import Any

from rootfs_quota import DEFAULT_CONFIG_PATH, create_app, create_handler, load_config, start_status_server
from rootfs_quota.errors import RootfsQuotaError, StreamError
from rootfs_quota.lifecycle import CancelScope
from rootfs_quota.utils import configure_logging, get_logger
from rootfs_quota.xfs.quota import check_project_quota_mount

logger = get_logger(__name__)


def _install_signal_handlers(scope: CancelScope) -> None:
    def on_signal(signum: int, _frame: Any) -> None:
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        scope.cancel()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="rootfs-quota", description="Per-container XFS rootfs quotas")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to configuration file")
    args = parser.parse_args(argv)

    configure_logging()
    logger.info("rootfs-quota is starting...")
    try:
        config = load_config(args.config)
    except RootfsQuotaError as e:
        logger.error("Failed to load configuration: %s", e)
        return 1
    configure_logging(config.log_level)

    scope = CancelScope()
    try:
        handler = create_handler(config, scope=scope)
    except (RootfsQuotaError, ValueError) as e:
        logger.error("Failed to initialize: %s", e)
        return 1

    _install_signal_handlers(scope)

    if config.metrics_port is not None:
        app = create_app(handler, api_key=config.api_key)
        try:
            start_status_server(app, config.metrics_host, config.metrics_port, scope)
        except OSError as e:
            logger.error("Failed to start status API on %s:%d: %s", config.metrics_host, config.metrics_port, e)
            return 1

    try:
        handler.gateway.connect()
        check_project_quota_mount(handler.gateway.data_root())
    except RootfsQuotaError as e:
        logger.warning("Could not check the runtime data root mount: %s", e)
    finally:
        handler.gateway.close()

    try:
        handler.run()
    except StreamError as e:
        logger.error("Service exited with error: %s", e)
        return 1
    logger.info("rootfs-quota shut down gracefully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
