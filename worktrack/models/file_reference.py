"""
WorkTrack — Step file references.

A *file reference* names a document a workflow step expects, e.g.
"Signed invoice".  Mandatory references without an attached document block
step completion.

Models:
    - FileReferenceTemplate:  reusable list of reference names with mandatory flags
    - StepFileReference:      one expected document on one step, optionally
                              linked to the uploaded ``Document``
"""

from datetime import datetime, timezone

from worktrack.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class FileReferenceTemplate(db.Model):
    __tablename__ = "file_reference_templates"

    id = db.Column(db.Integer, primary_key=True)
    template_name = db.Column(db.String(200), unique=True, nullable=False)
    description = db.Column(db.Text, default="")
    file_references = db.Column(db.JSON, nullable=False, default=list)
    mandatory_flags = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    uploaded_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def entries(self) -> list[tuple[str, bool]]:
        """(name, is_mandatory) pairs; missing flags mean optional."""
        flags = self.mandatory_flags or []
        return [
            (name, bool(flags[i]) if i < len(flags) else False)
            for i, name in enumerate(self.file_references or [])
        ]

    def to_dict(self):
        return {
            "id": self.id,
            "template_name": self.template_name,
            "description": self.description,
            "file_references": self.file_references or [],
            "mandatory_flags": self.mandatory_flags or [],
            "is_active": self.is_active,
            "uploaded_by": self.uploaded_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<FileReferenceTemplate {self.id}: {self.template_name!r}>"


class StepFileReference(db.Model):
    __tablename__ = "workflow_step_file_references"

    id = db.Column(db.Integer, primary_key=True)
    step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    template_id = db.Column(
        db.Integer, db.ForeignKey("file_reference_templates.id", ondelete="RESTRICT"),
        nullable=True, index=True,
    )
    reference_name = db.Column(db.String(255), nullable=False)
    is_mandatory = db.Column(db.Boolean, nullable=False, default=False)
    document_id = db.Column(
        db.Integer, db.ForeignKey("documents.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    uploaded_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    uploaded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("step_id", "reference_name", name="uq_step_reference_name"),
    )

    document = db.relationship("Document")

    @property
    def is_uploaded(self) -> bool:
        return self.document_id is not None

    def to_dict(self):
        d = {
            "id": self.id,
            "step_id": self.step_id,
            "template_id": self.template_id,
            "reference_name": self.reference_name,
            "is_mandatory": self.is_mandatory,
            "is_uploaded": self.is_uploaded,
            "document_id": self.document_id,
            "uploaded_by": self.uploaded_by,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
            "document": None,
        }
        if self.document is not None:
            d["document"] = {
                "id": self.document.id,
                "name": self.document.name,
                "content_type": self.document.content_type,
                "size": self.document.size,
                "uploaded_at": self.document.uploaded_at.isoformat() if self.document.uploaded_at else None,
            }
        return d

    def __repr__(self):
        return f"<StepFileReference {self.id}: step={self.step_id} {self.reference_name!r}>"
