"""
WorkTrack — Progress entries.

Each step keeps a numbered history of progress reports.  Exactly one entry
per step has ``is_latest = True``; only that entry may be edited.
"""

from datetime import datetime, timezone

from worktrack.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class ProgressEntry(db.Model):
    __tablename__ = "progress_entries"

    id = db.Column(db.Integer, primary_key=True)
    step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    entry_number = db.Column(db.Integer, nullable=False)
    progress_percentage = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.Text, nullable=True)
    is_latest = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "progress_percentage >= 0 AND progress_percentage <= 100",
            name="ck_progress_percentage",
        ),
        db.UniqueConstraint("step_id", "entry_number", name="uq_progress_entry_number"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "step_id": self.step_id,
            "ticket_id": self.ticket_id,
            "entry_number": self.entry_number,
            "progress_percentage": self.progress_percentage,
            "comment": self.comment,
            "is_latest": self.is_latest,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ProgressEntry {self.id}: step={self.step_id} #{self.entry_number} {self.progress_percentage}%>"
