"""Optional API key check for the read-only status endpoints.

The daemon's config may leave api_key unset, in which case the status API is open
(it only reports quota state and never changes it). With a key configured, callers
authenticate with HTTP Basic auth as user 'api'.
"""

import functools
import hmac
from typing import Any, Callable

from flask import current_app, jsonify, request

API_USER = "api"


def _key_matches(expected: str) -> bool:
    auth = request.authorization
    return auth.username == API_USER and hmac.compare_digest(auth.password or "", expected)


def requires_api_key(view: Callable[..., Any]) -> Callable[..., Any]:
    @functools.wraps(view)
    def wrapped(*args: Any, **kwargs: Any) -> Any:
        expected = current_app.config.get("API_KEY")
        if expected:
            if request.authorization is None:
                return jsonify(msg="api key required"), 401
            if not _key_matches(expected):
                return jsonify(msg="invalid api key"), 403
        return view(*args, **kwargs)

    return wrapped
