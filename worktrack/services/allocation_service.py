"""
Allocation Ledger — Service Layer.

Business logic for work order items and specs attached to tickets:
    - Ticket details:   add / update / delete / list (with remaining quantity)
    - Allocations:      allocate / update / delete / override, per workflow step
    - Reconciliation:   rebuild running totals from ledger rows

Every function takes ``kind`` ("item" or "spec") and resolves the concrete
models through ``WORK_ORDER_KINDS``.

Capacity invariant:
    For every detail, Σ allocations == detail.allocated_quantity <= detail.quantity.
    The check and the increment are one conditional UPDATE:

        UPDATE details SET allocated_quantity = allocated_quantity + :amount
        WHERE id = :detail_id AND allocated_quantity + :amount <= quantity

    The database serialises writers on that row (row lock on PostgreSQL,
    write lock on SQLite), so concurrent allocations cannot oversubscribe.
    A zero rowcount means "missing or full"; we roll back and find out which.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import case, delete, func, select, update

from worktrack.core.exceptions import (
    CapacityExceededError,
    ConflictError,
    DependencyViolationError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from worktrack.models import db
from worktrack.models.audit import write_audit
from worktrack.models.auth import User
from worktrack.models.ticket import Ticket, WorkflowStep
from worktrack.models.work_order import (
    MAX_QUANTITY,
    QUANTITY_QUANTUM,
    QUANTITY_SCALE,
    WORK_ORDER_KINDS,
    WorkOrderKind,
    format_quantity,
    quantity_json,
)
from worktrack.utils.helpers import commit_or_unavailable, get_or_raise, parse_number

logger = logging.getLogger(__name__)

_NO_SYNC = {"synchronize_session": False}

OVERRIDE_ROLES = frozenset({"eo"})


# ── Helpers ──────────────────────────────────────────────────────────────────


def resolve_kind(kind: str) -> WorkOrderKind:
    try:
        return WORK_ORDER_KINDS[kind]
    except KeyError:
        raise ValidationError(
            f"Unknown work order kind: {kind!r}",
            details={"kind": "must be 'item' or 'spec'"},
        ) from None


def parse_quantity(value, field: str) -> Decimal:
    try:
        number = parse_number(value)
    except ValueError:
        raise ValidationError(f"{field} must be a number", details={field: "invalid"}) from None
    if number >= MAX_QUANTITY:
        raise ValidationError(f"{field} is too large", details={field: f"must be < {MAX_QUANTITY}"})
    if number > 0:
        number = number.quantize(QUANTITY_QUANTUM, rounding=ROUND_HALF_UP)
    if number <= 0:
        raise ValidationError(f"{field} must be greater than 0", details={field: "must be > 0"})
    return number


def _fixed(expr):
    """Round SQL quantity arithmetic back to the column scale."""
    return func.round(expr, QUANTITY_SCALE)


def _remaining(k: WorkOrderKind, detail_id: int):
    row = db.session.execute(
        select(k.detail.quantity, k.detail.allocated_quantity).where(k.detail.id == detail_id)
    ).first()
    if row is None:
        return None
    return row.quantity - row.allocated_quantity


# ═════════════════════════════════════════════════════════════════════════════
# Ticket details
# ═════════════════════════════════════════════════════════════════════════════


def add_detail_to_ticket(
    kind: str,
    ticket_id: int,
    catalog_entry_id: int,
    quantity,
    unit: str | None = None,
    remarks: str | None = None,
    actor_id: int | None = None,
) -> dict:
    """Attach an active catalog entry to a ticket with a total quantity."""
    k = resolve_kind(kind)
    get_or_raise(Ticket, ticket_id, "Ticket")
    entry = get_or_raise(k.master, catalog_entry_id, f"{k.label}Master")
    if not entry.is_active:
        raise ValidationError(
            f"{k.label} {entry.code} is inactive and cannot be added to tickets",
            details={"catalog_entry_id": "inactive"},
        )
    qty = parse_quantity(quantity, "quantity")

    detail = k.detail(
        ticket_id=ticket_id,
        catalog_entry_id=entry.id,
        quantity=qty,
        unit=(unit or entry.unit),
        remarks=remarks,
        added_by=actor_id,
        allocated_quantity=0,
    )
    db.session.add(detail)
    db.session.flush()
    write_audit(
        action=f"{k.name.upper()}_ADDED",
        ticket_id=ticket_id,
        category="allocation_action",
        description=f"Added {k.name} {entry.code} x {format_quantity(qty)} {detail.unit}",
        performed_by=actor_id,
        new_data={"detail_id": detail.id, "catalog_entry_id": entry.id, "quantity": quantity_json(qty)},
    )
    commit_or_unavailable()
    logger.info("Added %s detail id=%s ticket=%s qty=%s", k.name, detail.id, ticket_id, qty)
    return detail.to_dict()


def update_ticket_detail(
    kind: str,
    detail_id: int,
    *,
    quantity=None,
    unit: str | None = None,
    remarks: str | None = None,
    actor_id: int | None = None,
) -> dict:
    """Change a detail's quantity, unit or remarks.

    The quantity can never drop below what is already allocated; that
    check is part of the UPDATE so it holds against concurrent allocations.
    """
    k = resolve_kind(kind)
    Detail = k.detail

    if quantity is not None:
        qty = parse_quantity(quantity, "quantity")
        result = db.session.execute(
            update(Detail)
            .where(Detail.id == detail_id, Detail.allocated_quantity <= qty)
            .values(quantity=qty),
            execution_options=_NO_SYNC,
        )
        if result.rowcount != 1:
            db.session.rollback()
            existing = db.session.get(Detail, detail_id)
            if existing is None:
                raise NotFoundError(f"{k.label}Detail", detail_id)
            raise ValidationError(
                f"Quantity cannot be less than the already allocated quantity "
                f"({format_quantity(existing.allocated_quantity)})",
                details={"quantity": f"must be >= {format_quantity(existing.allocated_quantity)}"},
            )

    detail = db.session.get(Detail, detail_id, populate_existing=True)
    if detail is None:
        raise NotFoundError(f"{k.label}Detail", detail_id)
    if unit is not None:
        detail.unit = unit
    if remarks is not None:
        detail.remarks = remarks

    write_audit(
        action=f"{k.name.upper()}_UPDATED",
        ticket_id=detail.ticket_id,
        category="allocation_action",
        description=f"Updated {k.name} detail {detail.id}",
        performed_by=actor_id,
        new_data={"quantity": quantity_json(detail.quantity), "unit": detail.unit, "remarks": detail.remarks},
    )
    commit_or_unavailable()
    return detail.to_dict()


def delete_ticket_detail(kind: str, detail_id: int, actor_id: int | None = None) -> None:
    """Delete a detail only if it has no allocations.

    Single conditional DELETE guarded by NOT EXISTS; the RESTRICT foreign key
    from allocations covers an allocation racing in between.
    """
    k = resolve_kind(kind)
    Detail, Alloc = k.detail, k.allocation

    detail = get_or_raise(Detail, detail_id, f"{k.label}Detail")
    ticket_id = detail.ticket_id
    db.session.expunge(detail)

    has_allocations = select(Alloc.id).where(Alloc.detail_id == detail_id).exists()
    result = db.session.execute(
        delete(Detail).where(Detail.id == detail_id, ~has_allocations),
        execution_options=_NO_SYNC,
    )
    if result.rowcount != 1:
        db.session.rollback()
        if db.session.get(Detail, detail_id) is None:
            raise NotFoundError(f"{k.label}Detail", detail_id)
        raise DependencyViolationError(
            f"{k.label}Detail", detail_id, "allocations",
            message=f"Cannot delete {k.name} with active allocations. "
                    "Please remove allocations first.",
        )

    write_audit(
        action=f"{k.name.upper()}_REMOVED",
        ticket_id=ticket_id,
        category="allocation_action",
        description=f"Removed {k.name} detail {detail_id}",
        performed_by=actor_id,
        old_data={"detail_id": detail_id},
    )
    commit_or_unavailable()
    logger.info("Deleted %s detail id=%s ticket=%s", k.name, detail_id, ticket_id)


def get_details_by_ticket(kind: str, ticket_id: int) -> list[dict]:
    """Details of a ticket with catalog entry, allocated and remaining quantity."""
    k = resolve_kind(kind)
    rows = db.session.execute(
        select(k.detail)
        .where(k.detail.ticket_id == ticket_id)
        .order_by(k.detail.created_at, k.detail.id)
    ).scalars().all()
    return [d.to_dict() for d in rows]


# ═════════════════════════════════════════════════════════════════════════════
# Allocations
# ═════════════════════════════════════════════════════════════════════════════


def allocate(kind: str, detail_id: int, step_id: int, amount, actor_id: int | None = None) -> dict:
    """Earmark ``amount`` of a detail for a workflow step.

    Raises:
        ValidationError: amount <= 0, or step and detail on different tickets.
        NotFoundError: detail or step missing.
        CapacityExceededError: amount exceeds the remaining quantity.
    """
    k = resolve_kind(kind)
    Detail = k.detail
    qty = parse_quantity(amount, "allocated_quantity")
    step = get_or_raise(WorkflowStep, step_id, "WorkflowStep")
    ticket_id = step.ticket_id

    result = db.session.execute(
        update(Detail)
        .where(
            Detail.id == detail_id,
            Detail.ticket_id == ticket_id,
            _fixed(Detail.allocated_quantity + qty) <= Detail.quantity,
        )
        .values(allocated_quantity=_fixed(Detail.allocated_quantity + qty)),
        execution_options=_NO_SYNC,
    )
    if result.rowcount != 1:
        db.session.rollback()
        detail = db.session.get(Detail, detail_id)
        if detail is None:
            raise NotFoundError(f"{k.label}Detail", detail_id)
        if detail.ticket_id != ticket_id:
            raise ValidationError(
                "Workflow step and detail belong to different tickets",
                details={"workflow_step_id": "must be on the detail's ticket"},
            )
        remaining = detail.remaining_quantity
        logger.warning(
            "Allocation rejected: %s detail=%s step=%s requested=%s remaining=%s",
            k.name, detail_id, step_id, qty, remaining,
            extra={"kind": k.name, "detail_id": detail_id, "step_id": step_id},
        )
        raise CapacityExceededError(detail_id, qty, remaining)

    allocation = k.allocation(
        detail_id=detail_id,
        workflow_step_id=step_id,
        allocated_quantity=qty,
        allocated_by=actor_id,
    )
    db.session.add(allocation)
    db.session.flush()
    write_audit(
        action="ALLOCATED",
        ticket_id=ticket_id,
        step_id=step_id,
        category="allocation_action",
        description=f"Allocated {format_quantity(qty)} of {k.name} detail {detail_id} to step {step.step_number}",
        performed_by=actor_id,
        new_data={"kind": k.name, "allocation_id": allocation.id, "allocated_quantity": quantity_json(qty)},
    )
    commit_or_unavailable()
    logger.info(
        "Allocated %s detail=%s step=%s qty=%s",
        k.name, detail_id, step_id, qty,
        extra={"kind": k.name, "detail_id": detail_id, "step_id": step_id},
    )
    return allocation.to_dict()


def update_allocation(kind: str, allocation_id: int, new_amount, actor_id: int | None = None) -> dict:
    """Change an allocation's quantity; the capacity ceiling is re-checked.

    The delta goes through the same conditional UPDATE as ``allocate``; the
    allocation row itself is compare-and-swapped on its old value so two
    concurrent edits cannot both apply their delta.
    """
    k = resolve_kind(kind)
    Detail, Alloc = k.detail, k.allocation
    qty = parse_quantity(new_amount, "allocated_quantity")

    allocation = get_or_raise(Alloc, allocation_id, f"{k.label}Allocation")
    old_qty = allocation.allocated_quantity
    detail_id = allocation.detail_id
    step_id = allocation.workflow_step_id
    delta = qty - old_qty
    if delta == 0:
        return allocation.to_dict()

    result = db.session.execute(
        update(Detail)
        .where(Detail.id == detail_id, _fixed(Detail.allocated_quantity + delta) <= Detail.quantity)
        .values(allocated_quantity=_fixed(Detail.allocated_quantity + delta)),
        execution_options=_NO_SYNC,
    )
    if result.rowcount != 1:
        db.session.rollback()
        remaining = _remaining(k, detail_id)
        logger.warning(
            "Allocation update rejected: %s allocation=%s %s→%s remaining=%s",
            k.name, allocation_id, old_qty, qty, remaining,
        )
        raise CapacityExceededError(detail_id, delta, remaining)

    swapped = db.session.execute(
        update(Alloc)
        .where(Alloc.id == allocation_id, Alloc.allocated_quantity == old_qty)
        .values(allocated_quantity=qty),
        execution_options=_NO_SYNC,
    )
    if swapped.rowcount != 1:
        db.session.rollback()
        raise ConflictError(f"{k.label}Allocation", "allocated_quantity", "modified concurrently")

    step = db.session.get(WorkflowStep, step_id)
    write_audit(
        action="ALLOCATION_UPDATED",
        ticket_id=step.ticket_id if step else None,
        step_id=step_id,
        category="allocation_action",
        description=f"Changed {k.name} allocation {allocation_id} from {format_quantity(old_qty)} to {format_quantity(qty)}",
        performed_by=actor_id,
        old_data={"allocated_quantity": quantity_json(old_qty)},
        new_data={"allocated_quantity": quantity_json(qty)},
    )
    commit_or_unavailable()
    allocation = db.session.get(Alloc, allocation_id, populate_existing=True)
    return allocation.to_dict()


def override_allocation(
    kind: str,
    allocation_id: int,
    new_amount,
    actor_id: int,
    reason: str,
) -> dict:
    """Privileged allocation change that may exceed the detail's quantity.

    The detail's quantity is raised to fit so the stored invariant still
    holds; the previous quantity and the reason go to the audit log.
    """
    k = resolve_kind(kind)
    Detail, Alloc = k.detail, k.allocation
    actor = db.session.get(User, actor_id) if actor_id is not None else None
    if actor is None or actor.role not in OVERRIDE_ROLES:
        raise PermissionDeniedError("Only an EO can override allocation limits")
    reason = (reason or "").strip()
    if len(reason) < 5:
        raise ValidationError(
            "Override reason must be at least 5 characters", details={"reason": "min length 5"},
        )
    qty = parse_quantity(new_amount, "allocated_quantity")

    allocation = get_or_raise(Alloc, allocation_id, f"{k.label}Allocation")
    old_qty = allocation.allocated_quantity
    detail_id = allocation.detail_id
    step_id = allocation.workflow_step_id
    delta = qty - old_qty
    before = db.session.get(Detail, detail_id)
    old_detail_qty = before.quantity
    db.session.expunge(before)

    new_total = _fixed(Detail.allocated_quantity + delta)
    db.session.execute(
        update(Detail)
        .where(Detail.id == detail_id)
        .values(
            allocated_quantity=new_total,
            quantity=case((new_total > Detail.quantity, new_total), else_=Detail.quantity),
        ),
        execution_options=_NO_SYNC,
    )
    swapped = db.session.execute(
        update(Alloc)
        .where(Alloc.id == allocation_id, Alloc.allocated_quantity == old_qty)
        .values(allocated_quantity=qty),
        execution_options=_NO_SYNC,
    )
    if swapped.rowcount != 1:
        db.session.rollback()
        raise ConflictError(f"{k.label}Allocation", "allocated_quantity", "modified concurrently")

    detail = db.session.get(Detail, detail_id, populate_existing=True)
    write_audit(
        action="ALLOCATION_OVERRIDDEN",
        ticket_id=detail.ticket_id,
        step_id=step_id,
        category="allocation_action",
        description=reason,
        performed_by=actor_id,
        old_data={"allocated_quantity": quantity_json(old_qty), "detail_quantity": quantity_json(old_detail_qty)},
        new_data={"allocated_quantity": quantity_json(qty), "detail_quantity": quantity_json(detail.quantity)},
    )
    commit_or_unavailable()
    logger.warning(
        "Allocation override: %s allocation=%s %s→%s by user=%s",
        k.name, allocation_id, old_qty, qty, actor_id,
    )
    allocation = db.session.get(Alloc, allocation_id, populate_existing=True)
    return allocation.to_dict()


def delete_allocation(kind: str, allocation_id: int, actor_id: int | None = None) -> None:
    """Remove an allocation and give its quantity back to the detail."""
    k = resolve_kind(kind)
    Detail, Alloc = k.detail, k.allocation

    allocation = get_or_raise(Alloc, allocation_id, f"{k.label}Allocation")
    qty = allocation.allocated_quantity
    detail_id = allocation.detail_id
    step_id = allocation.workflow_step_id
    db.session.expunge(allocation)

    result = db.session.execute(
        delete(Alloc).where(Alloc.id == allocation_id, Alloc.allocated_quantity == qty),
        execution_options=_NO_SYNC,
    )
    if result.rowcount != 1:
        db.session.rollback()
        if db.session.get(Alloc, allocation_id) is None:
            raise NotFoundError(f"{k.label}Allocation", allocation_id)
        raise ConflictError(f"{k.label}Allocation", "allocated_quantity", "modified concurrently")

    db.session.execute(
        update(Detail)
        .where(Detail.id == detail_id)
        .values(allocated_quantity=_fixed(Detail.allocated_quantity - qty)),
        execution_options=_NO_SYNC,
    )
    step = db.session.get(WorkflowStep, step_id)
    write_audit(
        action="ALLOCATION_REMOVED",
        ticket_id=step.ticket_id if step else None,
        step_id=step_id,
        category="allocation_action",
        description=f"Released {format_quantity(qty)} of {k.name} detail {detail_id}",
        performed_by=actor_id,
        old_data={"allocation_id": allocation_id, "allocated_quantity": quantity_json(qty)},
    )
    commit_or_unavailable()
    logger.info("Deleted %s allocation id=%s detail=%s qty=%s", k.name, allocation_id, detail_id, qty)


def release_step_allocations(step_id: int) -> int:
    """Delete every allocation of a step and return quantities to the details.

    Does not commit; the caller deletes the step in the same transaction.
    Returns the number of allocations released.
    """
    released = 0
    for k in WORK_ORDER_KINDS.values():
        Detail, Alloc = k.detail, k.allocation
        rows = db.session.execute(
            select(Alloc.id, Alloc.detail_id, Alloc.allocated_quantity)
            .where(Alloc.workflow_step_id == step_id)
        ).all()
        for alloc_id, detail_id, qty in rows:
            db.session.execute(delete(Alloc).where(Alloc.id == alloc_id), execution_options=_NO_SYNC)
            db.session.execute(
                update(Detail)
                .where(Detail.id == detail_id)
                .values(allocated_quantity=_fixed(Detail.allocated_quantity - qty)),
                execution_options=_NO_SYNC,
            )
            released += 1
    return released


def get_allocations_by_step(kind: str, step_id: int) -> list[dict]:
    """Allocations of one step, each with its detail and catalog entry."""
    k = resolve_kind(kind)
    rows = db.session.execute(
        select(k.allocation)
        .where(k.allocation.workflow_step_id == step_id)
        .order_by(k.allocation.created_at, k.allocation.id)
    ).scalars().all()
    out = []
    for a in rows:
        d = a.to_dict()
        d["detail"] = a.detail.to_dict() if a.detail else None
        out.append(d)
    return out


def get_details_for_step(kind: str, step_id: int) -> list[dict]:
    """Every detail of the step's ticket, annotated with this step's allocation."""
    k = resolve_kind(kind)
    step = get_or_raise(WorkflowStep, step_id, "WorkflowStep")
    per_detail = dict(
        db.session.execute(
            select(k.allocation.detail_id, func.sum(k.allocation.allocated_quantity))
            .where(k.allocation.workflow_step_id == step_id)
            .group_by(k.allocation.detail_id)
        ).all()
    )
    out = []
    for d in get_details_by_ticket(kind, step.ticket_id):
        d["step_allocated_quantity"] = quantity_json(per_detail.get(d["id"]) or 0)
        out.append(d)
    return out


# ═════════════════════════════════════════════════════════════════════════════
# Reconciliation
# ═════════════════════════════════════════════════════════════════════════════


def recompute_allocated_totals(kind: str, ticket_id: int | None = None) -> list[dict]:
    """Rebuild ``allocated_quantity`` from the allocation rows.

    Returns one entry per detail whose stored total disagreed with the
    ledger.  Totals that would exceed the detail's quantity are reported
    but left alone; those need an explicit override.
    """
    k = resolve_kind(kind)
    Detail, Alloc = k.detail, k.allocation

    sums = (
        select(Alloc.detail_id, func.coalesce(func.sum(Alloc.allocated_quantity), 0).label("total"))
        .group_by(Alloc.detail_id)
        .subquery()
    )
    q = (
        select(Detail.id, Detail.quantity, Detail.allocated_quantity, func.coalesce(sums.c.total, 0))
        .outerjoin(sums, sums.c.detail_id == Detail.id)
    )
    if ticket_id is not None:
        q = q.where(Detail.ticket_id == ticket_id)

    drift = []
    for detail_id, quantity, stored, actual in db.session.execute(q).all():
        if stored == actual:
            continue
        fixed = actual <= quantity
        drift.append({
            "kind": k.name,
            "detail_id": detail_id,
            "stored": quantity_json(stored),
            "ledger": quantity_json(actual),
            "quantity": quantity_json(quantity),
            "fixed": fixed,
        })
        if fixed:
            db.session.execute(
                update(Detail).where(Detail.id == detail_id).values(allocated_quantity=actual),
                execution_options=_NO_SYNC,
            )
            logger.warning("Allocated total drift fixed: %s detail=%s %s→%s", k.name, detail_id, stored, actual)
        else:
            logger.error(
                "Allocated total exceeds quantity: %s detail=%s ledger=%s quantity=%s",
                k.name, detail_id, actual, quantity,
            )
    commit_or_unavailable()
    return drift
