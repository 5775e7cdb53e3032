"""
WorkTrack — Finance approval model.

A ticket may be submitted to a finance officer several times; each
submission is one FinanceApproval row.  The ticket mirrors the newest
row's status in ``Ticket.latest_finance_status``.
"""

from datetime import datetime, timezone

from worktrack.models import db

FINANCE_STATUSES = frozenset({"pending", "approved", "rejected"})
FINANCE_DOCUMENTS_BUCKET = "finance-approval-documents"


class FinanceApproval(db.Model):
    __tablename__ = "finance_approvals"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    tentative_cost = db.Column(db.Numeric(14, 2), nullable=False)
    cost_deducted_from = db.Column(db.String(200), nullable=False)
    remarks = db.Column(db.Text, nullable=False)
    finance_officer_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    status = db.Column(db.String(20), nullable=False, default="pending")
    rejection_reason = db.Column(db.Text, nullable=True)
    approval_remarks = db.Column(db.Text, nullable=True)

    approval_document_path = db.Column(db.String(500), nullable=True)
    approval_document_name = db.Column(db.String(255), nullable=True)
    approval_document_size = db.Column(db.Integer, nullable=True)
    approval_document_type = db.Column(db.String(120), nullable=True)

    submitted_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.CheckConstraint("status IN ('pending','approved','rejected')", name="ck_finance_status"),
        db.CheckConstraint("tentative_cost > 0", name="ck_finance_cost_positive"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "tentative_cost": float(self.tentative_cost) if self.tentative_cost is not None else None,
            "cost_deducted_from": self.cost_deducted_from,
            "remarks": self.remarks,
            "finance_officer_id": self.finance_officer_id,
            "status": self.status,
            "rejection_reason": self.rejection_reason,
            "approval_remarks": self.approval_remarks,
            "approval_document": (
                {
                    "path": self.approval_document_path,
                    "name": self.approval_document_name,
                    "size": self.approval_document_size,
                    "type": self.approval_document_type,
                }
                if self.approval_document_path else None
            ),
            "submitted_by": self.submitted_by,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }

    def __repr__(self):
        return f"<FinanceApproval {self.id}: ticket={self.ticket_id} [{self.status}]>"
