"""
WorkTrack — Audit domain model.

Models:
    - AuditLog: immutable, append-only trail of ticket lifecycle events.
"""

from datetime import datetime, timezone

from worktrack.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_CATEGORIES = frozenset({
    "ticket_action",
    "workflow_action",
    "document_action",
    "status_change",
    "assignment_change",
    "progress_update",
    "finance_action",
    "allocation_action",
})


class AuditLog(db.Model):
    """
    One row per lifecycle event on a ticket or step.

    ``old_data`` / ``new_data`` carry before/after snapshots for field-level
    changes; ``metadata_json`` carries anything else (file names, counts).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_ticket", "ticket_id"),
        db.Index("idx_audit_step", "step_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "performed_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=True,
    )
    step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="SET NULL"), nullable=True,
    )
    action = db.Column(
        db.String(60), nullable=False,
        comment="CREATED | STATUS_CHANGED | WORKFLOW_ADDED | ALLOCATED | …",
    )
    action_category = db.Column(db.String(30), nullable=False, default="ticket_action")
    description = db.Column(db.Text, default="")
    performed_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    old_data = db.Column(db.JSON, nullable=True)
    new_data = db.Column(db.JSON, nullable=True)
    metadata_json = db.Column("metadata", db.JSON, default=dict)
    performed_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "step_id": self.step_id,
            "action": self.action,
            "action_category": self.action_category,
            "description": self.description,
            "performed_by": self.performed_by,
            "old_data": self.old_data,
            "new_data": self.new_data,
            "metadata": self.metadata_json or {},
            "performed_at": self.performed_at.isoformat() if self.performed_at else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} ticket={self.ticket_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    action: str,
    ticket_id: int | None = None,
    step_id: int | None = None,
    category: str = "ticket_action",
    description: str = "",
    performed_by: int | None = None,
    old_data: dict | None = None,
    new_data: dict | None = None,
    metadata: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        ticket_id=ticket_id,
        step_id=step_id,
        action=action,
        action_category=category,
        description=description,
        performed_by=performed_by,
        old_data=old_data,
        new_data=new_data,
        metadata_json=metadata or {},
    )
    db.session.add(log)
    db.session.flush()
    return log
