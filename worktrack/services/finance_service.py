"""
Finance Approval — Service Layer.

Lifecycle:
    submit  → FinanceApproval(pending); ticket → sent_to_finance
    approve → approved;                 ticket → approved_by_finance
    reject  → rejected;                 ticket → rejected_by_finance

Only the finance officer a request was assigned to can decide it, and only
while it is pending.  A rejected ticket can be re-submitted; each
submission increments ``Ticket.finance_submission_count``.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from worktrack.core.exceptions import PermissionDeniedError, ValidationError
from worktrack.models import db
from worktrack.models.audit import write_audit
from worktrack.models.auth import User
from worktrack.models.finance import FINANCE_DOCUMENTS_BUCKET, FinanceApproval
from worktrack.models.ticket import Ticket
from worktrack.services.document_service import UploadedFile, remove_blob, sanitize_filename, store_blob
from worktrack.utils.helpers import commit_or_unavailable, get_or_raise, parse_number

logger = logging.getLogger(__name__)

MIN_REMARKS = 10
MIN_REJECTION_REASON = 20


def list_finance_officers() -> list[dict]:
    rows = db.session.execute(
        select(User).where(User.role == "finance", User.is_active.is_(True)).order_by(User.name)
    ).scalars()
    return [u.to_dict() for u in rows]


def submit_to_finance(
    ticket_id: int,
    tentative_cost,
    cost_deducted_from: str,
    remarks: str,
    finance_officer_id: int,
    actor_id: int | None = None,
) -> dict:
    ticket = get_or_raise(Ticket, ticket_id, "Ticket")

    errors = {}
    try:
        cost = parse_number(tentative_cost)
        if cost <= 0:
            errors["tentative_cost"] = "must be greater than 0"
    except ValueError:
        cost = None
        errors["tentative_cost"] = "must be a number"
    if not (cost_deducted_from or "").strip():
        errors["cost_deducted_from"] = "required"
    if len((remarks or "").strip()) < MIN_REMARKS:
        errors["remarks"] = f"min length {MIN_REMARKS}"
    if errors:
        raise ValidationError("Invalid finance submission", details=errors)

    officer = db.session.get(User, finance_officer_id) if finance_officer_id else None
    if officer is None or officer.role != "finance":
        raise ValidationError(
            "Selected user is not a finance officer",
            details={"finance_officer_id": "must have role 'finance'"},
        )
    if ticket.latest_finance_status == "pending":
        raise ValidationError("Ticket already has a pending finance request")

    approval = FinanceApproval(
        ticket_id=ticket.id,
        tentative_cost=cost,
        cost_deducted_from=cost_deducted_from.strip(),
        remarks=remarks.strip(),
        finance_officer_id=officer.id,
        status="pending",
        submitted_by=actor_id,
    )
    db.session.add(approval)
    old_status = ticket.status
    ticket.status = "sent_to_finance"
    ticket.finance_officer_id = officer.id
    ticket.finance_submission_count = (ticket.finance_submission_count or 0) + 1
    ticket.latest_finance_status = "pending"
    db.session.flush()

    write_audit(
        action="SENT_TO_FINANCE",
        ticket_id=ticket.id,
        category="finance_action",
        description=f"Submitted to finance ({officer.name}) for {cost}",
        performed_by=actor_id,
        old_data={"status": old_status},
        new_data={"status": ticket.status, "approval_id": approval.id},
    )
    commit_or_unavailable()
    logger.info("Ticket %s sent to finance approval=%s officer=%s", ticket.id, approval.id, officer.id)
    return approval.to_dict()


def _decide(approval_id: int, actor_id: int, document: UploadedFile | None):
    approval = get_or_raise(FinanceApproval, approval_id, "FinanceApproval")
    if approval.status != "pending":
        raise ValidationError("This finance request has already been processed")
    if approval.finance_officer_id != actor_id:
        raise PermissionDeniedError("Only the assigned finance officer can decide this request")

    path = None
    if document is not None:
        path = f"finance-approvals/{approval.id}/{sanitize_filename(document.name)}"
        store_blob(FINANCE_DOCUMENTS_BUCKET, path, document)
        approval.approval_document_path = path
        approval.approval_document_name = document.name
        approval.approval_document_size = document.size
        approval.approval_document_type = document.content_type
    return approval, path


def _finish(blob_path: str | None):
    try:
        commit_or_unavailable()
    except Exception:
        if blob_path:
            remove_blob(FINANCE_DOCUMENTS_BUCKET, blob_path)
        raise


def approve_request(
    approval_id: int,
    actor_id: int,
    remarks: str | None = None,
    document: UploadedFile | None = None,
) -> dict:
    approval, path = _decide(approval_id, actor_id, document)
    approval.status = "approved"
    approval.approval_remarks = (remarks or "").strip() or None
    approval.decided_at = datetime.now(timezone.utc)

    ticket = db.session.get(Ticket, approval.ticket_id)
    old_status = ticket.status
    ticket.status = "approved_by_finance"
    ticket.latest_finance_status = "approved"
    write_audit(
        action="FINANCE_APPROVED",
        ticket_id=ticket.id,
        category="finance_action",
        description=approval.approval_remarks or "Finance approved",
        performed_by=actor_id,
        old_data={"status": old_status},
        new_data={"status": ticket.status, "approval_id": approval.id},
    )
    _finish(path)
    logger.info("Finance approval=%s approved by user=%s", approval.id, actor_id)
    return approval.to_dict()


def reject_request(
    approval_id: int,
    actor_id: int,
    rejection_reason: str,
    document: UploadedFile | None = None,
) -> dict:
    reason = (rejection_reason or "").strip()
    if len(reason) < MIN_REJECTION_REASON:
        raise ValidationError(
            f"Rejection reason must be at least {MIN_REJECTION_REASON} characters",
            details={"rejection_reason": f"min length {MIN_REJECTION_REASON}"},
        )
    approval, path = _decide(approval_id, actor_id, document)
    approval.status = "rejected"
    approval.rejection_reason = reason
    approval.decided_at = datetime.now(timezone.utc)

    ticket = db.session.get(Ticket, approval.ticket_id)
    old_status = ticket.status
    ticket.status = "rejected_by_finance"
    ticket.latest_finance_status = "rejected"
    write_audit(
        action="FINANCE_REJECTED",
        ticket_id=ticket.id,
        category="finance_action",
        description=reason,
        performed_by=actor_id,
        old_data={"status": old_status},
        new_data={"status": ticket.status, "approval_id": approval.id},
    )
    _finish(path)
    logger.info("Finance approval=%s rejected by user=%s", approval.id, actor_id)
    return approval.to_dict()


def get_history(ticket_id: int) -> list[dict]:
    get_or_raise(Ticket, ticket_id, "Ticket")
    rows = db.session.execute(
        select(FinanceApproval)
        .where(FinanceApproval.ticket_id == ticket_id)
        .order_by(FinanceApproval.submitted_at.desc(), FinanceApproval.id.desc())
    ).scalars()
    return [a.to_dict() for a in rows]


def get_pending(finance_officer_id: int | None = None) -> list[dict]:
    q = select(FinanceApproval).where(FinanceApproval.status == "pending")
    if finance_officer_id is not None:
        q = q.where(FinanceApproval.finance_officer_id == finance_officer_id)
    q = q.order_by(FinanceApproval.submitted_at, FinanceApproval.id)
    return [a.to_dict() for a in db.session.execute(q).scalars()]
