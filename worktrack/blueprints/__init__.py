"""
WorkTrack — Blueprint registry and shared request helpers.
"""

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from worktrack.core.exceptions import (
    BackendUnavailableError,
    CapacityExceededError,
    ConflictError,
    DependencyViolationError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from worktrack.services.document_service import UploadedFile
from worktrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def register_domain_error_handlers(bp):
    """Map service-layer exceptions to JSON error responses on ``bp``."""

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(CapacityExceededError)
    def _handle_capacity(error: CapacityExceededError):
        details = {"detail_id": error.detail_id, "requested": float(error.requested)}
        if error.remaining is not None:
            details["remaining"] = float(error.remaining)
        return api_error(E.CAPACITY_EXCEEDED, str(error), details=details)

    @bp.errorhandler(DependencyViolationError)
    def _handle_dependency(error: DependencyViolationError):
        return api_error(E.DEPENDENCY_VIOLATION, str(error), details={"dependent": error.dependent})

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})

    @bp.errorhandler(PermissionDeniedError)
    def _handle_forbidden(error: PermissionDeniedError):
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(BackendUnavailableError)
    def _handle_unavailable(error: BackendUnavailableError):
        logger.error("Backend unavailable endpoint=%s: %s", request.endpoint, error)
        return api_error(E.BACKEND_UNAVAILABLE, str(error) or "Service temporarily unavailable")

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")


def json_body() -> dict:
    """Request JSON as a dict; anything else becomes an empty dict."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def form_or_json() -> dict:
    """Fields from a multipart form, falling back to the JSON body."""
    if request.form:
        return request.form.to_dict()
    return json_body()


def uploaded_file(field: str = "file") -> UploadedFile | None:
    """Read a multipart file part into an ``UploadedFile`` (None when absent)."""
    storage = request.files.get(field)
    if storage is None or not storage.filename:
        return None
    return UploadedFile(
        name=storage.filename,
        content_type=storage.mimetype or "application/octet-stream",
        data=storage.read(),
    )


def as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")
