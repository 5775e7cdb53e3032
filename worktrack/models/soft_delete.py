"""
Soft delete mixin for records that must stay in the audit trail.

Adds ``deleted_at`` / ``deleted_by`` / ``delete_reason`` columns and query
helpers. Progress documents use it: a deletion hides the file from the
timeline but keeps who removed it and why.

Usage:
    class ProgressDocument(SoftDeleteMixin, db.Model):
        ...

    doc.soft_delete(user_id, "Uploaded wrong photo")
    db.session.commit()

    ProgressDocument.query_active().filter_by(step_id=5).all()
"""

from datetime import datetime, timezone

from worktrack.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)
    deleted_by = db.Column(db.Integer, nullable=True, comment="FK → users.id (not enforced)")
    delete_reason = db.Column(db.Text, nullable=True)

    def soft_delete(self, user_id=None, reason=None):
        """Mark this record as deleted."""
        self.deleted_at = datetime.now(timezone.utc)
        self.deleted_by = user_id
        self.delete_reason = reason

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.deleted_at.is_(None))
