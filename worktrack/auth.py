"""
WorkTrack — Request authentication & actor resolution.

Provides:
    - API key authentication via X-API-Key header (when API_AUTH_ENABLED)
    - Acting user resolution from the X-User-Id header → ``g.current_user_id``
    - Content-Type enforcement for state-changing requests

The acting user is who the service layer checks permissions against
(uploader, assignee, role).  Identity itself is delegated to the gateway in
front of the API, which sets X-User-Id.

Configuration (env vars):
    API_KEYS          — comma-separated list of valid API keys
    API_AUTH_ENABLED  — set to "false" to disable the API key check
"""

import logging
import os
from typing import Optional

from flask import current_app, g, jsonify, request

logger = logging.getLogger(__name__)


def _parse_api_keys() -> set[str]:
    raw = os.getenv("API_KEYS", "")
    return {k.strip() for k in raw.split(",") if k.strip()}


def _is_auth_enabled() -> bool:
    """Check whether API key authentication is enabled (env var or app config)."""
    env_val = os.getenv("API_AUTH_ENABLED", "")
    if env_val:
        return env_val.lower() not in ("false", "0", "no", "off")
    return str(current_app.config.get("API_AUTH_ENABLED", "true")).lower() not in ("false", "0", "no", "off")


def _get_api_key_from_request() -> Optional[str]:
    return request.headers.get("X-API-Key", "").strip() or None


def _resolve_actor() -> Optional[int]:
    raw = request.headers.get("X-User-Id", "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def current_user_id() -> Optional[int]:
    """Return the acting user's id for this request, or None."""
    return getattr(g, "current_user_id", None)


def actor_required():
    """Blueprint helper: ``(user_id, None)`` or ``(None, error_tuple)``."""
    uid = current_user_id()
    if uid is None:
        return None, (jsonify({"error": "X-User-Id header is required"}), 401)
    return uid, None


def _check_content_type():
    """
    For state-changing requests with a body, require JSON or multipart.
    HTML forms cannot send application/json, which blocks simple CSRF.
    """
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        ct = request.content_type or ""
        if request.content_length and "json" not in ct and "multipart/form-data" not in ct:
            return jsonify({
                "error": "Content-Type must be application/json or multipart/form-data"
            }), 415
    return None


def init_auth(app):
    """
    Install authentication middleware on the Flask app.

    - Attaches a before_request hook for API routes
    - Skips health checks and signed file downloads
    """
    @app.before_request
    def _before_request_auth():
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path.startswith("/api/v1/health"):
            return None
        if request.method == "OPTIONS":
            return None

        csrf_error = _check_content_type()
        if csrf_error:
            return csrf_error

        g.current_user_id = _resolve_actor()

        # Signed download links carry their own authorization
        if request.path.startswith("/api/v1/files/"):
            return None

        if not _is_auth_enabled():
            return None

        api_key = _get_api_key_from_request()
        if not api_key:
            return jsonify({"error": "Authentication required. Provide X-API-Key header."}), 401

        api_keys = _parse_api_keys()
        if not api_keys:
            logger.error("API_KEYS env var is not configured but API_AUTH_ENABLED=true")
            return jsonify({"error": "Server authentication not configured"}), 500

        if api_key not in api_keys:
            logger.warning("Invalid API key attempt: %s...", api_key[:8])
            return jsonify({"error": "Invalid API key"}), 401
        return None

    with app.app_context():
        logger.info("Auth middleware installed (enabled=%s)", _is_auth_enabled())
