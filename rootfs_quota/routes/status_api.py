"""Remote API routes: read-only view of the handler, the project ID pool and recorded quotas."""

from typing import Any

from flask import current_app, jsonify

from rootfs_quota.auth import requires_api_key
from rootfs_quota.utils import get_logger

logger = get_logger(__name__)


def _handler() -> Any:
    return current_app.config["QUOTA_HANDLER"]


def register_status_routes(app: Any) -> None:
    """Register /remote-api/* status routes on the Flask app."""

    @app.route("/remote-api/ping")
    @requires_api_key
    def ping() -> Any:
        return jsonify(msg="pong")

    @app.route("/remote-api/status")
    @requires_api_key
    def get_status() -> Any:
        return jsonify(_handler().status())

    @app.route("/remote-api/quotas/containers")
    @requires_api_key
    def get_container_quotas() -> Any:
        entries = sorted(_handler().store.all(), key=lambda e: e.project_id)
        return jsonify([e.model_dump() for e in entries])

    @app.route("/remote-api/quotas/containers/<container_id>")
    @requires_api_key
    def get_container_quota(container_id: str) -> Any:
        entry = _handler().store.get(container_id)
        if entry is None:
            return jsonify(msg="container not found", detail=container_id), 404
        return jsonify(entry.model_dump())
