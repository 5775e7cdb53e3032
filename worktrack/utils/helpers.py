"""Shared utility functions for services.

get_or_raise: NotFoundError-raising lookup
parse_date:   returns None on bad input
parse_number: strict Decimal coercion for quantities and costs
commit_or_unavailable: commit that maps connection loss to BackendUnavailableError
"""
import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import OperationalError

from worktrack.core.exceptions import BackendUnavailableError, NotFoundError
from worktrack.models import db

logger = logging.getLogger(__name__)


def get_or_raise(model, pk, label=None):
    """Service-layer lookup: return the row or raise NotFoundError."""
    obj = db.session.get(model, pk) if pk is not None else None
    if obj is None:
        raise NotFoundError(label or model.__name__, pk)
    return obj


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY
    """
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_number(value):
    """Coerce a JSON value to a finite Decimal.

    Floats go through ``str`` so 0.1 stays 0.1. Raises ValueError for bools,
    blanks, junk, NaN and infinities.
    """
    if isinstance(value, bool) or value is None or value == "":
        raise ValueError(f"not a number: {value!r}")
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}") from None
    if not number.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return number


def commit_or_unavailable():
    """Commit the session; connection/lock failures become BackendUnavailableError."""
    try:
        db.session.commit()
    except OperationalError as exc:
        db.session.rollback()
        logger.exception("Database operational error on commit")
        raise BackendUnavailableError("Database unavailable") from exc
