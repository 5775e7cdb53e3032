"""
WorkTrack — Document metadata models.

Blob bytes live in the blob store (see ``worktrack.storage``); these rows
hold the metadata and the storage path.

Models:
    - Document:          ticket attachment or step document (incl. completion certificates)
    - ProgressDocument:  evidence attached to a progress update; soft-deletable
"""

from datetime import datetime, timezone

from worktrack.models import db
from worktrack.models.soft_delete import SoftDeleteMixin

STEP_DOCUMENTS_BUCKET = "step-documents"
PROGRESS_DOCUMENTS_BUCKET = "workflow-progress-documents"


def _utcnow():
    return datetime.now(timezone.utc)


class Document(db.Model):
    """
    Ticket-scoped when ``step_id`` is NULL, step-scoped otherwise.
    Completion certificates are step-less documents flagged
    ``is_completion_certificate``.
    """

    __tablename__ = "documents"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    content_type = db.Column(db.String(120), nullable=False)
    size = db.Column(db.Integer, nullable=False)
    storage_path = db.Column(db.String(500), nullable=False)
    bucket = db.Column(db.String(60), nullable=False, default=STEP_DOCUMENTS_BUCKET)
    uploaded_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    is_mandatory = db.Column(db.Boolean, nullable=False, default=False)
    is_completion_certificate = db.Column(db.Boolean, nullable=False, default=False)
    uploaded_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "step_id": self.step_id,
            "name": self.name,
            "content_type": self.content_type,
            "size": self.size,
            "storage_path": self.storage_path,
            "uploaded_by": self.uploaded_by,
            "is_mandatory": self.is_mandatory,
            "is_completion_certificate": self.is_completion_certificate,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }

    def __repr__(self):
        return f"<Document {self.id}: {self.name!r} ticket={self.ticket_id} step={self.step_id}>"


class ProgressDocument(SoftDeleteMixin, db.Model):
    """File attached to a progress update; grouped in the timeline by ``audit_log_id``."""

    __tablename__ = "progress_documents"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    audit_log_id = db.Column(
        db.Integer, db.ForeignKey("audit_logs.id", ondelete="SET NULL"), nullable=True,
    )
    file_name = db.Column(db.String(255), nullable=False)
    file_path = db.Column(db.String(500), nullable=False)
    file_size = db.Column(db.Integer, nullable=False)
    file_type = db.Column(db.String(120), nullable=False)
    uploaded_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    uploaded_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "step_id": self.step_id,
            "audit_log_id": self.audit_log_id,
            "file_name": self.file_name,
            "file_path": self.file_path,
            "file_size": self.file_size,
            "file_type": self.file_type,
            "uploaded_by": self.uploaded_by,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
            "is_deleted": self.is_deleted,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "deleted_by": self.deleted_by,
            "delete_reason": self.delete_reason,
        }

    def __repr__(self):
        return f"<ProgressDocument {self.id}: {self.file_name!r} step={self.step_id}>"
