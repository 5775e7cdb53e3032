"""
Work order catalog (item & spec masters) — Service Layer.

Masters are reusable entries a ticket detail points at.  They are normally
disabled with ``is_active = False``; hard delete is only allowed while no
ticket detail references the entry.
"""

import logging

from sqlalchemy import func, select

from worktrack.core.exceptions import ConflictError, DependencyViolationError, ValidationError
from worktrack.models import db
from worktrack.services.allocation_service import parse_quantity, resolve_kind
from worktrack.utils.helpers import commit_or_unavailable, get_or_raise

logger = logging.getLogger(__name__)

# Extra column per kind on top of the shared catalog fields
_KIND_FIELDS = {"item": "subcategory", "spec": "work_chunk"}
_UPDATABLE = ("description", "category", "default_quantity", "unit", "is_active")


def list_masters(kind: str, active_only: bool = True) -> list[dict]:
    k = resolve_kind(kind)
    q = select(k.master)
    if active_only:
        q = q.where(k.master.is_active.is_(True))
    q = q.order_by(k.master.category, k.master.description)
    return [m.to_dict() for m in db.session.execute(q).scalars()]


def get_master(kind: str, master_id: int) -> dict:
    k = resolve_kind(kind)
    return get_or_raise(k.master, master_id, f"{k.label}Master").to_dict()


def create_master(kind: str, data: dict, actor_id: int | None = None) -> dict:
    k = resolve_kind(kind)
    code = (data.get("code") or "").strip()
    description = (data.get("description") or "").strip()
    errors = {}
    if not code:
        errors["code"] = "required"
    if not description:
        errors["description"] = "required"
    if errors:
        raise ValidationError("code and description are required", details=errors)

    exists = db.session.execute(
        select(func.count()).select_from(k.master).where(k.master.code == code)
    ).scalar()
    if exists:
        raise ConflictError(f"{k.label}Master", "code", code)

    extra = _KIND_FIELDS[k.name]
    entry = k.master(
        code=code,
        description=description,
        category=data.get("category", ""),
        default_quantity=parse_quantity(data.get("default_quantity", 1), "default_quantity"),
        unit=data.get("unit") or "nos",
        is_active=bool(data.get("is_active", True)),
        created_by=actor_id,
        **{extra: data.get(extra)},
    )
    db.session.add(entry)
    commit_or_unavailable()
    logger.info("Created %s master id=%s code=%s", k.name, entry.id, code)
    return entry.to_dict()


def update_master(kind: str, master_id: int, data: dict) -> dict:
    k = resolve_kind(kind)
    entry = get_or_raise(k.master, master_id, f"{k.label}Master")
    for field in _UPDATABLE + (_KIND_FIELDS[k.name],):
        if field not in data:
            continue
        value = data[field]
        if field == "default_quantity":
            value = parse_quantity(value, "default_quantity")
        elif field == "description" and not (value or "").strip():
            raise ValidationError("description cannot be empty", details={"description": "required"})
        setattr(entry, field, value)
    commit_or_unavailable()
    return entry.to_dict()


def delete_master(kind: str, master_id: int) -> None:
    k = resolve_kind(kind)
    entry = get_or_raise(k.master, master_id, f"{k.label}Master")
    in_use = db.session.execute(
        select(func.count()).select_from(k.detail).where(k.detail.catalog_entry_id == master_id)
    ).scalar()
    if in_use:
        raise DependencyViolationError(
            f"{k.label}Master", master_id, "ticket details",
            message=f"{k.label} {entry.code} is used by {in_use} ticket detail(s); deactivate it instead",
        )
    db.session.delete(entry)
    commit_or_unavailable()
    logger.info("Deleted %s master id=%s", k.name, master_id)


def seed_catalog(kind: str, rows: list[dict]) -> int:
    """Insert catalog rows whose code is not present yet. Returns count added."""
    k = resolve_kind(kind)
    existing = set(db.session.execute(select(k.master.code)).scalars())
    extra = _KIND_FIELDS[k.name]
    added = 0
    for row in rows:
        if row["code"] in existing:
            continue
        db.session.add(k.master(
            code=row["code"],
            description=row["description"],
            category=row.get("category", ""),
            default_quantity=parse_quantity(row.get("default_quantity", 1), "default_quantity"),
            unit=row.get("unit", "nos"),
            **{extra: row.get(extra)},
        ))
        added += 1
    commit_or_unavailable()
    return added
