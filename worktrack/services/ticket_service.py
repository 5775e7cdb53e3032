"""
Ticket Lifecycle — Service Layer.

Business logic for:
    - Ticket number generation: TKT-000001, TKT-000002, ...
    - CRUD and bulk creation (per-row SAVEPOINT isolation)
    - Status changes (EO only) with completion gates:
        * finance approval when ``requires_finance_approval``
        * a completion certificate when ``completion_documents_required``
    - Audit trail
    - Private per-user notes (one per ticket and user)
"""

import logging

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from worktrack.core.exceptions import (
    BackendUnavailableError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from worktrack.models import db
from worktrack.models.audit import AuditLog, write_audit
from worktrack.models.auth import User
from worktrack.models.document import Document
from worktrack.models.ticket import TICKET_PRIORITIES, TICKET_STATUSES, Ticket, TicketNote, WorkflowStep
from worktrack.models.work_order import WORK_ORDER_KINDS
from worktrack.services import allocation_service, document_service
from worktrack.storage import get_blob_store
from worktrack.utils.helpers import commit_or_unavailable, get_or_raise, parse_date

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = (
    "title", "description", "priority", "category", "department",
    "property_id", "property_location", "assigned_to", "due_date",
    "requires_finance_approval", "completion_documents_required",
)


# ── Code Generation ──────────────────────────────────────────────────────────


def generate_ticket_number() -> str:
    """Next ticket number: TKT-000001, TKT-000002, ..."""
    top = db.session.execute(select(func.max(Ticket.id))).scalar() or 0
    return f"TKT-{top + 1:06d}"


def _require_eo(actor_id, message: str) -> User:
    actor = db.session.get(User, actor_id) if actor_id is not None else None
    if actor is None or actor.role != "eo":
        raise PermissionDeniedError(message)
    return actor


def _normalise(field: str, value):
    if field == "title":
        if value is not None and not isinstance(value, str):
            raise ValidationError("Title must be a string", details={"title": "string"})
        value = (value or "").strip()
        if not value:
            raise ValidationError("Title is required", details={"title": "required"})
    elif field == "priority":
        value = value or "MEDIUM"
        if not isinstance(value, str) or value.upper() not in TICKET_PRIORITIES:
            raise ValidationError(f"Invalid priority: {value}", details={"priority": sorted(TICKET_PRIORITIES)})
        value = value.upper()
    elif field == "due_date":
        value = parse_date(value)
    elif field in ("requires_finance_approval", "completion_documents_required"):
        value = bool(value)
    return value


def _build_ticket(data: dict, actor_id, copied_from_ticket_id=None) -> Ticket:
    ticket = Ticket(
        ticket_number=generate_ticket_number(),
        status=data.get("status") or "created",
        created_by=actor_id,
        copied_from_ticket_id=copied_from_ticket_id,
    )
    if not isinstance(ticket.status, str) or ticket.status not in TICKET_STATUSES:
        raise ValidationError(f"Invalid status: {ticket.status}", details={"status": sorted(TICKET_STATUSES)})
    for field in _UPDATABLE_FIELDS:
        if field in data or field in ("title", "priority"):
            setattr(ticket, field, _normalise(field, data.get(field)))
    db.session.add(ticket)
    db.session.flush()
    return ticket


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════


def create_ticket(data: dict, actor_id: int | None = None, copied_from_ticket_id: int | None = None) -> dict:
    if copied_from_ticket_id is not None:
        get_or_raise(Ticket, copied_from_ticket_id, "Ticket")
    ticket = _build_ticket(data, actor_id, copied_from_ticket_id)
    write_audit(
        action="CREATED",
        ticket_id=ticket.id,
        category="ticket_action",
        description=f"Created ticket {ticket.ticket_number}",
        performed_by=actor_id,
        new_data={"title": ticket.title, "priority": ticket.priority,
                  "copied_from_ticket_id": copied_from_ticket_id},
    )
    commit_or_unavailable()
    logger.info("Created ticket id=%s number=%s", ticket.id, ticket.ticket_number)
    return ticket.to_dict()


def create_tickets_bulk(rows: list[dict], actor_id: int | None = None) -> dict:
    """Create many tickets; each row succeeds or fails on its own."""
    created_ids, errors = [], []
    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            errors.append({"index": index, "title": "", "error": "Row must be an object"})
            continue
        title = row.get("title")
        title = title.strip() if isinstance(title, str) else ""
        try:
            with db.session.begin_nested():
                ticket = _build_ticket(row, actor_id)
                write_audit(
                    action="CREATED",
                    ticket_id=ticket.id,
                    category="ticket_action",
                    description=f"Created ticket {ticket.ticket_number} (bulk)",
                    performed_by=actor_id,
                )
                created_ids.append(ticket.id)
        except (ValidationError, IntegrityError) as exc:
            errors.append({"index": index, "title": title, "error": str(exc)})
    commit_or_unavailable()
    logger.info("Bulk ticket import: %d created, %d failed", len(created_ids), len(errors))
    return {
        "success_count": len(created_ids),
        "failed_count": len(errors),
        "total_count": len(rows),
        "errors": errors,
        "created_ticket_ids": created_ids,
    }


def get_ticket(ticket_id: int) -> dict:
    """Ticket with workflow, attachments, work order details and audit trail."""
    ticket = get_or_raise(Ticket, ticket_id, "Ticket")
    d = ticket.to_dict()
    d["workflow_steps"] = [s.to_dict() for s in ticket.steps]
    d["attachments"] = document_service.get_ticket_attachments(ticket_id)
    d["completion_certificates"] = document_service.get_completion_certificates(ticket_id)
    d["item_details"] = allocation_service.get_details_by_ticket("item", ticket_id)
    d["spec_details"] = allocation_service.get_details_by_ticket("spec", ticket_id)
    d["audit_trail"] = get_audit_trail(ticket_id)
    return d


def list_tickets(status: str | None = None, assigned_to: int | None = None,
                 created_by: int | None = None) -> list[dict]:
    q = select(Ticket)
    if status:
        q = q.where(Ticket.status == status)
    if assigned_to:
        q = q.where(Ticket.assigned_to == assigned_to)
    if created_by:
        q = q.where(Ticket.created_by == created_by)
    q = q.order_by(Ticket.created_at.desc(), Ticket.id.desc())
    return [t.to_dict() for t in db.session.execute(q).scalars()]


def update_ticket(ticket_id: int, data: dict, actor_id: int | None = None) -> dict:
    ticket = get_or_raise(Ticket, ticket_id, "Ticket")
    changes = {}
    for field in _UPDATABLE_FIELDS:
        if field not in data:
            continue
        value = _normalise(field, data[field])
        old = getattr(ticket, field)
        if old != value:
            changes[field] = (old, value)
            setattr(ticket, field, value)
    if changes:
        write_audit(
            action="ASSIGNED" if set(changes) == {"assigned_to"} else "UPDATED",
            ticket_id=ticket.id,
            category="assignment_change" if "assigned_to" in changes else "ticket_action",
            description=f"Updated {', '.join(sorted(changes))}",
            performed_by=actor_id,
            old_data={k: str(v[0]) if v[0] is not None else None for k, v in changes.items()},
            new_data={k: str(v[1]) if v[1] is not None else None for k, v in changes.items()},
        )
    commit_or_unavailable()
    return ticket.to_dict()


def delete_ticket(ticket_id: int, actor_id: int) -> None:
    """Delete a ticket with its steps, details, allocations and documents (EO only)."""
    _require_eo(actor_id, "Only an EO can delete tickets")
    ticket = get_or_raise(Ticket, ticket_id, "Ticket")
    blobs = [
        (d.bucket, d.storage_path)
        for d in db.session.execute(select(Document).where(Document.ticket_id == ticket_id)).scalars()
    ]

    step_ids = select(WorkflowStep.id).where(WorkflowStep.ticket_id == ticket_id)
    for k in WORK_ORDER_KINDS.values():
        db.session.execute(
            delete(k.allocation).where(k.allocation.workflow_step_id.in_(step_ids)),
            execution_options={"synchronize_session": False},
        )
        db.session.execute(
            delete(k.detail).where(k.detail.ticket_id == ticket_id),
            execution_options={"synchronize_session": False},
        )
    db.session.delete(ticket)
    commit_or_unavailable()
    logger.info("Deleted ticket id=%s by user=%s", ticket_id, actor_id)

    store = get_blob_store()
    for bucket, path in blobs:
        try:
            store.remove(bucket, [path])
        except (BackendUnavailableError, NotFoundError):
            logger.exception("Orphaned blob after ticket delete: %s/%s", bucket, path)


# ═════════════════════════════════════════════════════════════════════════════
# Status
# ═════════════════════════════════════════════════════════════════════════════


def change_ticket_status(ticket_id: int, new_status: str, actor_id: int, remarks: str | None = None) -> dict:
    """Move a ticket to ``new_status`` (EO only).

    Completing a ticket requires finance approval and/or a completion
    certificate when the ticket is flagged for them.
    """
    _require_eo(actor_id, "Only an EO can change ticket status")
    ticket = get_or_raise(Ticket, ticket_id, "Ticket")
    if new_status not in TICKET_STATUSES:
        raise ValidationError(f"Invalid status: {new_status}", details={"status": sorted(TICKET_STATUSES)})

    if new_status == "completed":
        if ticket.requires_finance_approval and ticket.latest_finance_status != "approved":
            raise ValidationError(
                "Finance approval is required before completing this ticket",
                details={"latest_finance_status": ticket.latest_finance_status},
            )
        if ticket.completion_documents_required and not document_service.has_completion_certificate(ticket_id):
            raise ValidationError(
                "A completion certificate must be uploaded before completing this ticket",
                details={"completion_certificate": "required"},
            )

    old_status = ticket.status
    if old_status == new_status:
        return ticket.to_dict()
    ticket.status = new_status
    write_audit(
        action="STATUS_CHANGED",
        ticket_id=ticket.id,
        category="status_change",
        description=remarks or f"Status changed from {old_status} to {new_status}",
        performed_by=actor_id,
        old_data={"status": old_status},
        new_data={"status": new_status},
    )
    commit_or_unavailable()
    logger.info("Ticket %s status %s → %s by user=%s", ticket.id, old_status, new_status, actor_id)
    return ticket.to_dict()


def get_audit_trail(ticket_id: int) -> list[dict]:
    get_or_raise(Ticket, ticket_id, "Ticket")
    rows = db.session.execute(
        select(AuditLog)
        .where(AuditLog.ticket_id == ticket_id)
        .order_by(AuditLog.performed_at.desc(), AuditLog.id.desc())
    ).scalars()
    return [a.to_dict() for a in rows]


# ═════════════════════════════════════════════════════════════════════════════
# Private notes
# ═════════════════════════════════════════════════════════════════════════════


def _note_query(ticket_id: int, user_id: int):
    return select(TicketNote).where(TicketNote.ticket_id == ticket_id, TicketNote.user_id == user_id)


def get_user_note(ticket_id: int, user_id: int) -> dict | None:
    """The caller's own note on a ticket, or None."""
    get_or_raise(Ticket, ticket_id, "Ticket")
    note = db.session.execute(_note_query(ticket_id, user_id)).scalar_one_or_none()
    return note.to_dict() if note is not None else None


def save_user_note(ticket_id: int, user_id: int, content) -> dict:
    """Create or replace the caller's note on a ticket."""
    if content is not None and not isinstance(content, str):
        raise ValidationError("note_content must be a string", details={"note_content": "string"})
    get_or_raise(Ticket, ticket_id, "Ticket")
    get_or_raise(User, user_id, "User")

    note = db.session.execute(_note_query(ticket_id, user_id)).scalar_one_or_none()
    if note is None:
        try:
            with db.session.begin_nested():
                note = TicketNote(ticket_id=ticket_id, user_id=user_id, note_content=content or "")
                db.session.add(note)
        except IntegrityError:
            # a concurrent save created it first
            note = db.session.execute(_note_query(ticket_id, user_id)).scalar_one()
            note.note_content = content or ""
    else:
        note.note_content = content or ""
    commit_or_unavailable()
    return note.to_dict()


def delete_user_note(ticket_id: int, user_id: int) -> bool:
    """Remove the caller's note; False when there was none."""
    get_or_raise(Ticket, ticket_id, "Ticket")
    result = db.session.execute(
        delete(TicketNote).where(TicketNote.ticket_id == ticket_id, TicketNote.user_id == user_id),
        execution_options={"synchronize_session": False},
    )
    commit_or_unavailable()
    return bool(result.rowcount)
