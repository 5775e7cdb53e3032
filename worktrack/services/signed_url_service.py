"""
Signed URL Service — time-limited download links for stored blobs.

Expiry:     3600 seconds by default (configurable via SIGNED_URL_EXPIRES)
Algorithm:  HS256

Token payload:
{
    "bkt": <bucket>,
    "pth": <path>,
    "type": "blob",
    "iat": <issued_at>,
    "exp": <expires_at>
}

The token is the last path segment of ``/api/v1/files/<token>``.
"""

from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

from worktrack.core.exceptions import PermissionDeniedError

DEFAULT_EXPIRES = 3600
ALGORITHM = "HS256"
DOWNLOAD_PATH = "/api/v1/files"


def _get_secret():
    return current_app.config.get("SIGNED_URL_SECRET") or current_app.config["SECRET_KEY"]


def _get_default_expires():
    return current_app.config.get("SIGNED_URL_EXPIRES", DEFAULT_EXPIRES)


def generate_blob_token(bucket: str, path: str, expires_in: int | None = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "bkt": bucket,
        "pth": path,
        "type": "blob",
        "iat": now,
        "exp": now + timedelta(seconds=expires_in or _get_default_expires()),
    }
    return jwt.encode(payload, _get_secret(), algorithm=ALGORITHM)


def create_signed_url(bucket: str, path: str, expires_in: int | None = None) -> str:
    """Return an absolute-path download URL valid for ``expires_in`` seconds."""
    token = generate_blob_token(bucket, path, expires_in)
    return f"{DOWNLOAD_PATH}/{token}"


def decode_blob_token(token: str) -> tuple[str, str]:
    """Return (bucket, path) for a valid token.

    Raises PermissionDeniedError when the token is expired, tampered with,
    or not a blob token.
    """
    try:
        payload = jwt.decode(token, _get_secret(), algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise PermissionDeniedError("Download link has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise PermissionDeniedError("Invalid download link") from exc
    if payload.get("type") != "blob":
        raise PermissionDeniedError("Invalid download link")
    return payload["bkt"], payload["pth"]
