"""
Service-layer exception hierarchy.

Services raise these types; blueprints register handlers against them once
(see ``worktrack.blueprints.register_domain_error_handlers``) and get
consistent HTTP status codes everywhere.

Usage:
    from worktrack.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Ticket", resource_id=42)
    raise ValidationError("Title is required", details={"title": "required"})
"""

from decimal import Decimal


def _plain(value) -> str:
    return f"{Decimal(str(value)).normalize():f}"


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Ticket", "ItemDetail").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint) — this
    exception signals that the data was well-formed but violated a business
    rule (empty title, percentage out of range, file too large).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value. Maps to HTTP 409."""

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class CapacityExceededError(Exception):
    """Raised when an allocation would push a detail past its quantity.

    Maps to HTTP 409. Ledger state is unchanged when this is raised.

    Args:
        detail_id: The ticket detail whose capacity was checked.
        requested: Amount the caller tried to add.
        remaining: Capacity left at the time of the check, when known.
    """

    def __init__(
        self,
        detail_id: int,
        requested: Decimal,
        remaining: Decimal | None = None,
    ) -> None:
        self.detail_id = detail_id
        self.requested = requested
        self.remaining = remaining
        msg = "Allocation exceeds available quantity"
        if remaining is not None:
            msg += f" (requested {_plain(requested)}, remaining {_plain(remaining)})"
        super().__init__(msg)


class PermissionDeniedError(Exception):
    """Raised when the acting user lacks rights for the operation. Maps to HTTP 403."""


class DependencyViolationError(Exception):
    """Raised when a delete would orphan dependent rows. Maps to HTTP 409.

    Args:
        resource: Model name being deleted.
        resource_id: PK of the row.
        dependent: What still references it (e.g. "allocations").
    """

    def __init__(self, resource: str, resource_id: int, dependent: str, message: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.dependent = dependent
        super().__init__(
            message or f"Cannot delete {resource} id={resource_id}: it still has {dependent}"
        )


class BackendUnavailableError(Exception):
    """Raised when the database or blob store cannot be reached. Maps to HTTP 503."""
