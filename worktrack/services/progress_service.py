"""
Progress Tracking — Service Layer.

Numbered progress reports per workflow step, plus the merged step history
timeline (audit rows, progress documents, completion certificates).
"""

import logging

from sqlalchemy import func, or_, select, update

from worktrack.core.exceptions import PermissionDeniedError, ValidationError
from worktrack.models import db
from worktrack.models.audit import AuditLog, write_audit
from worktrack.models.auth import PROGRESS_DOCUMENT_ADMIN_ROLES, User
from worktrack.models.document import Document, ProgressDocument
from worktrack.models.progress import ProgressEntry
from worktrack.models.ticket import WorkflowStep
from worktrack.utils.helpers import commit_or_unavailable, get_or_raise

logger = logging.getLogger(__name__)

DEFAULT_ENTRY_LIMIT = 5


def _percentage(value) -> int:
    if isinstance(value, bool):
        raise ValidationError("progress_percentage must be an integer",
                              details={"progress_percentage": "invalid"})
    try:
        pct = int(value)
    except (TypeError, ValueError):
        raise ValidationError("progress_percentage must be an integer",
                              details={"progress_percentage": "invalid"}) from None
    if pct < 0 or pct > 100:
        raise ValidationError("progress_percentage must be between 0 and 100",
                              details={"progress_percentage": "0..100"})
    return pct


def create_progress_entry(step_id: int, actor_id: int, percentage, comment: str | None = None) -> dict:
    """Record a new progress report; it becomes the step's latest entry.

    Allowed for the step's assignee and progress admins (eo, dept_officer).
    The percentage is mirrored onto ``WorkflowStep.progress``.
    """
    pct = _percentage(percentage)
    step = get_or_raise(WorkflowStep, step_id, "WorkflowStep")
    actor = db.session.get(User, actor_id) if actor_id is not None else None
    if actor is None or (actor.role not in PROGRESS_DOCUMENT_ADMIN_ROLES and step.assigned_to != actor.id):
        raise PermissionDeniedError("You can only report progress on steps assigned to you")

    top = db.session.execute(
        select(func.max(ProgressEntry.entry_number)).where(ProgressEntry.step_id == step.id)
    ).scalar()
    db.session.execute(
        update(ProgressEntry)
        .where(ProgressEntry.step_id == step.id, ProgressEntry.is_latest.is_(True))
        .values(is_latest=False),
        execution_options={"synchronize_session": False},
    )
    entry = ProgressEntry(
        step_id=step.id,
        ticket_id=step.ticket_id,
        entry_number=(top or 0) + 1,
        progress_percentage=pct,
        comment=(comment or "").strip() or None,
        is_latest=True,
        created_by=actor_id,
    )
    db.session.add(entry)
    old_progress = step.progress
    step.progress = pct
    audit = write_audit(
        action="PROGRESS_UPDATED",
        ticket_id=step.ticket_id,
        step_id=step.id,
        category="progress_update",
        description=entry.comment or f"Progress updated to {pct}%",
        performed_by=actor_id,
        old_data={"progress": old_progress},
        new_data={"progress": pct},
        metadata={"entry_number": entry.entry_number},
    )
    commit_or_unavailable()
    logger.info("Progress entry #%s step=%s %s%%", entry.entry_number, step.id, pct)
    d = entry.to_dict()
    d["audit_log_id"] = audit.id
    return d


def update_progress_entry(entry_id: int, actor_id: int, percentage=None, comment: str | None = None) -> dict:
    entry = get_or_raise(ProgressEntry, entry_id, "ProgressEntry")
    if not entry.is_latest:
        raise ValidationError("Only the latest progress entry can be updated")
    if entry.created_by != actor_id:
        raise PermissionDeniedError("You can only edit your own progress entries")

    old = {"progress_percentage": entry.progress_percentage, "comment": entry.comment}
    if percentage is not None:
        entry.progress_percentage = _percentage(percentage)
        db.session.get(WorkflowStep, entry.step_id).progress = entry.progress_percentage
    if comment is not None:
        entry.comment = comment.strip() or None
    entry.updated_by = actor_id
    write_audit(
        action="PROGRESS_ENTRY_EDITED",
        ticket_id=entry.ticket_id,
        step_id=entry.step_id,
        category="progress_update",
        description=f"Edited progress entry #{entry.entry_number}",
        performed_by=actor_id,
        old_data=old,
        new_data={"progress_percentage": entry.progress_percentage, "comment": entry.comment},
    )
    commit_or_unavailable()
    return entry.to_dict()


def list_progress_entries(step_id: int, limit: int = DEFAULT_ENTRY_LIMIT) -> list[dict]:
    get_or_raise(WorkflowStep, step_id, "WorkflowStep")
    rows = db.session.execute(
        select(ProgressEntry)
        .where(ProgressEntry.step_id == step_id)
        .order_by(ProgressEntry.entry_number.desc())
        .limit(limit)
    ).scalars()
    return [e.to_dict() for e in rows]


def get_step_progress_history(step_id: int) -> list[dict]:
    """Newest-first timeline for a step.

    Audit rows carry the progress documents linked to them; documents with
    no linked row on this step, and the ticket's completion certificates,
    appear as their own entries.
    """
    step = get_or_raise(WorkflowStep, step_id, "WorkflowStep")

    audits = db.session.execute(
        select(AuditLog).where(AuditLog.step_id == step.id)
    ).scalars().all()
    docs = ProgressDocument.query_active().filter_by(step_id=step.id).all()
    certificates = db.session.execute(
        select(Document).where(
            Document.ticket_id == step.ticket_id,
            Document.is_completion_certificate.is_(True),
            or_(Document.step_id == step.id, Document.step_id.is_(None)),
        )
    ).scalars().all()

    by_audit: dict[int, list[dict]] = {}
    loose = []
    audit_ids = {a.id for a in audits}
    for doc in docs:
        if doc.audit_log_id in audit_ids:
            by_audit.setdefault(doc.audit_log_id, []).append(doc.to_dict())
        else:
            loose.append(doc)

    timeline = []
    for a in audits:
        item = a.to_dict()
        item["type"] = a.action_category
        item["documents"] = by_audit.get(a.id, [])
        timeline.append((a.performed_at, a.id, item))
    for doc in loose:
        item = doc.to_dict()
        item["type"] = "progress_document"
        timeline.append((doc.uploaded_at, doc.id, item))
    for cert in certificates:
        item = cert.to_dict()
        item["type"] = "completion_certificate"
        timeline.append((cert.uploaded_at, cert.id, item))

    timeline.sort(key=lambda t: (t[0], t[1]), reverse=True)
    return [item for _, _, item in timeline]
