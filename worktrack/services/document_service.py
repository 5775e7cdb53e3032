"""
Document & Attachment Store — Service Layer.

Business logic for:
    - Upload validation:      5 MiB limit, MIME whitelist
    - Ticket / step documents and completion certificates
    - Deletion with permission check (uploader or EO)
    - Signed download URLs
    - Batch copy of ticket attachments (per-file failure isolation)
    - Progress documents:     upload, soft delete with reason, comment edit

Bytes go to the blob store first and metadata second; if the metadata
insert fails the just-uploaded blob is removed so no orphan is left.

Storage paths (bucket ``step-documents``):
    {ticket_id}/{step_id}/{ts}_{name}        step document
    {ticket_id}/completion/{ts}_{name}       completion certificate
    {ticket_id}/attachments/{ts}_{name}      ticket attachment
    {ticket_id}/copied/{ts}_{id}_{name}      copied attachment

Progress documents (bucket ``workflow-progress-documents``):
    {user_id}/{ticket_id}/{step_id}/progress/{ts}_{name}
"""

import logging
import mimetypes
import re
import time
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from worktrack.core.exceptions import (
    BackendUnavailableError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from worktrack.models import db
from worktrack.models.audit import AuditLog, write_audit
from worktrack.models.auth import DOCUMENT_ADMIN_ROLES, PROGRESS_DOCUMENT_ADMIN_ROLES, User
from worktrack.models.document import (
    PROGRESS_DOCUMENTS_BUCKET,
    STEP_DOCUMENTS_BUCKET,
    Document,
    ProgressDocument,
)
from worktrack.models.ticket import Ticket, WorkflowStep
from worktrack.services import file_reference_service
from worktrack.services.signed_url_service import create_signed_url, decode_blob_token
from worktrack.storage import get_blob_store
from worktrack.utils.helpers import commit_or_unavailable, get_or_raise

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 5 * 1024 * 1024

ALLOWED_MIME_TYPES = frozenset({
    "application/pdf",
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
})

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")

MIN_DELETE_REASON = 5


@dataclass
class UploadedFile:
    """An upload as received from the client."""

    name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _max_file_size() -> int:
    return current_app.config.get("MAX_UPLOAD_BYTES", DEFAULT_MAX_FILE_SIZE)


def sanitize_filename(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name)


def _timestamp() -> int:
    return int(time.time() * 1000)


def validate_file(name: str, content_type: str, size: int) -> None:
    """Raise ValidationError unless the file is within size and type limits."""
    if not name:
        raise ValidationError("File name is required", details={"file": "name required"})
    limit = _max_file_size()
    if size > limit:
        raise ValidationError(
            f"File size exceeds {limit // (1024 * 1024)}MB limit. Please choose a smaller file.",
            details={"size": size, "max_size": limit},
        )
    if size == 0:
        raise ValidationError("File is empty", details={"size": 0})
    if content_type not in ALLOWED_MIME_TYPES:
        raise ValidationError(
            f"File type {content_type} is not supported. "
            "Allowed types: PDF, Images (JPEG, PNG, GIF), Word, Excel",
            details={"content_type": content_type},
        )


def _store_then_record(bucket: str, path: str, file: UploadedFile, make_row):
    """Upload bytes, then flush the metadata row built by ``make_row``.

    The blob is removed again if the row cannot be written.
    """
    store = get_blob_store()
    store.upload(bucket, path, file.data, file.content_type)
    try:
        row = make_row()
        db.session.add(row)
        db.session.flush()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Metadata insert failed; removing blob %s/%s", bucket, path)
        store.remove(bucket, [path])
        raise
    return row


def _actor(actor_id) -> User | None:
    return db.session.get(User, actor_id) if actor_id is not None else None


# ═════════════════════════════════════════════════════════════════════════════
# Ticket & step documents
# ═════════════════════════════════════════════════════════════════════════════


def upload_document(
    ticket_id: int,
    file: UploadedFile,
    actor_id: int | None = None,
    *,
    step_id: int | None = None,
    is_mandatory: bool = False,
    is_completion_certificate: bool = False,
    file_reference_id: int | None = None,
) -> dict:
    """Store a file for a ticket (or one of its steps) and record its metadata.

    With ``file_reference_id`` the new document also fulfils that reference
    of the step.
    """
    validate_file(file.name, file.content_type, file.size)
    get_or_raise(Ticket, ticket_id, "Ticket")
    if step_id is not None:
        step = db.session.get(WorkflowStep, step_id)
        if step is None or step.ticket_id != ticket_id:
            raise NotFoundError("WorkflowStep", step_id)
    reference = None
    if file_reference_id is not None:
        if step_id is None:
            raise ValidationError("file_reference_id needs a step_id", details={"step_id": "required"})
        reference = file_reference_service.get_reference(step_id, file_reference_id)

    safe = sanitize_filename(file.name)
    if step_id is not None:
        folder = str(step_id)
    elif is_completion_certificate:
        folder = "completion"
    else:
        folder = "attachments"
    path = f"{ticket_id}/{folder}/{_timestamp()}_{safe}"

    doc = _store_then_record(STEP_DOCUMENTS_BUCKET, path, file, lambda: Document(
        ticket_id=ticket_id,
        step_id=step_id,
        name=file.name,
        content_type=file.content_type,
        size=file.size,
        storage_path=path,
        bucket=STEP_DOCUMENTS_BUCKET,
        uploaded_by=actor_id,
        is_mandatory=bool(is_mandatory or (reference is not None and reference.is_mandatory)),
        is_completion_certificate=bool(is_completion_certificate),
    ))
    if reference is not None:
        file_reference_service.link_document(reference, doc, actor_id)
    write_audit(
        action="COMPLETION_CERTIFICATE_UPLOADED" if is_completion_certificate else "DOCUMENT_UPLOADED",
        ticket_id=ticket_id,
        step_id=step_id,
        category="document_action",
        description=f"Uploaded {file.name}",
        performed_by=actor_id,
        metadata={"document_id": doc.id, "size": file.size, "content_type": file.content_type,
                  "file_reference_id": file_reference_id},
    )
    commit_or_unavailable()
    logger.info("Uploaded document id=%s ticket=%s step=%s size=%s", doc.id, ticket_id, step_id, file.size)
    return doc.to_dict()


def list_documents(ticket_id: int, step_id: int | None = None) -> list[dict]:
    """Documents of a step, or every document of the ticket when no step is given."""
    q = select(Document).where(Document.ticket_id == ticket_id)
    if step_id is not None:
        q = q.where(Document.step_id == step_id)
    q = q.order_by(Document.uploaded_at.desc(), Document.id.desc())
    return [d.to_dict() for d in db.session.execute(q).scalars()]


def get_ticket_attachments(ticket_id: int) -> list[dict]:
    q = (
        select(Document)
        .where(
            Document.ticket_id == ticket_id,
            Document.step_id.is_(None),
            Document.is_completion_certificate.is_(False),
        )
        .order_by(Document.uploaded_at.desc(), Document.id.desc())
    )
    return [d.to_dict() for d in db.session.execute(q).scalars()]


def get_completion_certificates(ticket_id: int) -> list[dict]:
    q = (
        select(Document)
        .where(Document.ticket_id == ticket_id, Document.is_completion_certificate.is_(True))
        .order_by(Document.uploaded_at.desc(), Document.id.desc())
    )
    return [d.to_dict() for d in db.session.execute(q).scalars()]


def has_completion_certificate(ticket_id: int) -> bool:
    return db.session.execute(
        select(Document.id)
        .where(Document.ticket_id == ticket_id, Document.is_completion_certificate.is_(True))
        .limit(1)
    ).first() is not None


def get_document_url(document_id: int, expires_in: int | None = None) -> dict:
    doc = get_or_raise(Document, document_id, "Document")
    return {
        "document_id": doc.id,
        "url": create_signed_url(doc.bucket, doc.storage_path, expires_in),
        "expires_in": expires_in or current_app.config.get("SIGNED_URL_EXPIRES", 3600),
    }


def delete_document(document_id: int, actor_id: int) -> None:
    """Delete a document; only its uploader or an EO may do so."""
    doc = get_or_raise(Document, document_id, "Document")
    actor = _actor(actor_id)
    if actor is None or (doc.uploaded_by != actor.id and actor.role not in DOCUMENT_ADMIN_ROLES):
        raise PermissionDeniedError("You can only delete documents you uploaded")

    bucket, path = doc.bucket, doc.storage_path
    try:
        get_blob_store().remove(bucket, [path])
    except BackendUnavailableError:
        logger.exception("Blob removal failed for document id=%s; deleting metadata anyway", document_id)

    write_audit(
        action="DOCUMENT_DELETED",
        ticket_id=doc.ticket_id,
        step_id=doc.step_id,
        category="document_action",
        description=f"Deleted {doc.name}",
        performed_by=actor_id,
        old_data=doc.to_dict(),
    )
    db.session.delete(doc)
    commit_or_unavailable()
    logger.info("Deleted document id=%s by user=%s", document_id, actor_id)


def copy_ticket_attachments(
    source_ticket_id: int,
    target_ticket_id: int,
    actor_id: int | None = None,
    attachment_ids: list[int] | None = None,
) -> dict:
    """Copy ticket-level attachments to another ticket, one file at a time.

    A failure on one file (missing blob, store error, metadata error) is
    recorded and the loop continues with the next file.

    Returns:
        {success_count, failed_count, errors: [str]}
    """
    get_or_raise(Ticket, source_ticket_id, "Ticket")
    get_or_raise(Ticket, target_ticket_id, "Ticket")

    q = select(Document).where(
        Document.ticket_id == source_ticket_id,
        Document.step_id.is_(None),
    )
    if attachment_ids:
        q = q.where(Document.id.in_(attachment_ids))
    sources = db.session.execute(q.order_by(Document.id)).scalars().all()

    store = get_blob_store()
    success, errors = 0, []
    for src in sources:
        new_path = f"{target_ticket_id}/copied/{_timestamp()}_{src.id}_{sanitize_filename(src.name)}"
        try:
            data = store.download(src.bucket, src.storage_path)
        except (NotFoundError, BackendUnavailableError) as exc:
            errors.append(f"Failed to download {src.name}: {exc}")
            continue
        try:
            store.upload(src.bucket, new_path, data, src.content_type)
        except BackendUnavailableError as exc:
            errors.append(f"Failed to upload {src.name}: {exc}")
            continue
        try:
            with db.session.begin_nested():
                db.session.add(Document(
                    ticket_id=target_ticket_id,
                    step_id=None,
                    name=src.name,
                    content_type=src.content_type,
                    size=src.size,
                    storage_path=new_path,
                    bucket=src.bucket,
                    uploaded_by=actor_id,
                    is_mandatory=src.is_mandatory,
                    is_completion_certificate=src.is_completion_certificate,
                ))
        except SQLAlchemyError as exc:
            store.remove(src.bucket, [new_path])
            errors.append(f"Failed to save {src.name}: {exc.__class__.__name__}")
            continue
        success += 1

    if success:
        write_audit(
            action="ATTACHMENTS_COPIED",
            ticket_id=target_ticket_id,
            category="document_action",
            description=f"Copied {success} attachment(s) from ticket {source_ticket_id}",
            performed_by=actor_id,
            metadata={"source_ticket_id": source_ticket_id, "failed": len(errors)},
        )
    commit_or_unavailable()
    if errors:
        logger.warning("Attachment copy %s→%s: %d ok, %d failed",
                       source_ticket_id, target_ticket_id, success, len(errors))
    return {"success_count": success, "failed_count": len(errors), "errors": errors}


# ═════════════════════════════════════════════════════════════════════════════
# Progress documents
# ═════════════════════════════════════════════════════════════════════════════


def upload_progress_document(
    step_id: int,
    file: UploadedFile,
    actor_id: int | None = None,
    *,
    audit_log_id: int | None = None,
    comment: str | None = None,
) -> dict:
    """Attach evidence to a progress update.

    Without ``audit_log_id`` a progress_update audit row is written and the
    document is linked to it, so the timeline can group files per update.
    """
    validate_file(file.name, file.content_type, file.size)
    step = get_or_raise(WorkflowStep, step_id, "WorkflowStep")
    if audit_log_id is None:
        audit = write_audit(
            action="PROGRESS_DOCUMENT_UPLOADED",
            ticket_id=step.ticket_id,
            step_id=step.id,
            category="progress_update",
            description=(comment or "").strip() or f"Uploaded {file.name}",
            performed_by=actor_id,
        )
        audit_log_id = audit.id
    else:
        get_or_raise(AuditLog, audit_log_id, "AuditLog")

    path = f"{actor_id}/{step.ticket_id}/{step.id}/progress/{_timestamp()}_{sanitize_filename(file.name)}"
    doc = _store_then_record(PROGRESS_DOCUMENTS_BUCKET, path, file, lambda: ProgressDocument(
        ticket_id=step.ticket_id,
        step_id=step.id,
        audit_log_id=audit_log_id,
        file_name=file.name,
        file_path=path,
        file_size=file.size,
        file_type=file.content_type,
        uploaded_by=actor_id,
    ))
    commit_or_unavailable()
    logger.info("Uploaded progress document id=%s step=%s", doc.id, step_id)
    return doc.to_dict()


def list_progress_documents(step_id: int, include_deleted: bool = False) -> list[dict]:
    q = ProgressDocument.query if include_deleted else ProgressDocument.query_active()
    rows = q.filter_by(step_id=step_id).order_by(
        ProgressDocument.uploaded_at.desc(), ProgressDocument.id.desc()
    ).all()
    return [d.to_dict() for d in rows]


def get_progress_document_url(document_id: int, expires_in: int | None = None) -> dict:
    doc = get_or_raise(ProgressDocument, document_id, "ProgressDocument")
    if doc.is_deleted:
        raise NotFoundError("ProgressDocument", document_id)
    return {
        "document_id": doc.id,
        "url": create_signed_url(PROGRESS_DOCUMENTS_BUCKET, doc.file_path, expires_in),
        "expires_in": expires_in or current_app.config.get("SIGNED_URL_EXPIRES", 3600),
    }


def delete_progress_document(document_id: int, actor_id: int, reason: str) -> dict:
    """Soft-delete a progress document; the blob is kept for the audit trail."""
    reason = (reason or "").strip()
    if len(reason) < MIN_DELETE_REASON:
        raise ValidationError(
            f"Deletion reason must be at least {MIN_DELETE_REASON} characters",
            details={"reason": f"min length {MIN_DELETE_REASON}"},
        )
    doc = get_or_raise(ProgressDocument, document_id, "ProgressDocument")
    if doc.is_deleted:
        raise ValidationError("Document has already been deleted")
    actor = _actor(actor_id)
    if actor is None or (doc.uploaded_by != actor.id and actor.role not in PROGRESS_DOCUMENT_ADMIN_ROLES):
        raise PermissionDeniedError("You do not have permission to delete this document")

    doc.soft_delete(actor_id, reason)
    write_audit(
        action="PROGRESS_DOCUMENT_DELETED",
        ticket_id=doc.ticket_id,
        step_id=doc.step_id,
        category="document_action",
        description=f"Deleted {doc.file_name}: {reason}",
        performed_by=actor_id,
        metadata={"document_id": doc.id},
    )
    commit_or_unavailable()
    logger.info("Soft-deleted progress document id=%s by user=%s", document_id, actor_id)
    return doc.to_dict()


def update_progress_document_comment(document_id: int, actor_id: int, comment: str) -> dict:
    """Rewrite the comment of the progress update a document belongs to (uploader only)."""
    comment = (comment or "").strip()
    if not comment:
        raise ValidationError("Comment cannot be empty", details={"comment": "required"})
    doc = get_or_raise(ProgressDocument, document_id, "ProgressDocument")
    if doc.is_deleted:
        raise ValidationError("Cannot edit the comment of a deleted document")
    if doc.uploaded_by != actor_id:
        raise PermissionDeniedError("Only the uploader can edit this comment")
    if doc.audit_log_id is None:
        raise ValidationError("Document is not linked to a progress update")

    audit = get_or_raise(AuditLog, doc.audit_log_id, "AuditLog")
    audit.description = comment
    commit_or_unavailable()
    return {"document_id": doc.id, "audit_log_id": audit.id, "comment": comment}


# ═════════════════════════════════════════════════════════════════════════════
# Signed download
# ═════════════════════════════════════════════════════════════════════════════


def read_signed_blob(token: str) -> tuple[bytes, str, str]:
    """Resolve a signed token to (data, content_type, download_name)."""
    bucket, path = decode_blob_token(token)
    data = get_blob_store().download(bucket, path)
    name = path.rsplit("/", 1)[-1]
    content_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
    return data, content_type, name


def store_blob(bucket: str, path: str, file: UploadedFile) -> None:
    """Validate and upload a file without a metadata row (caller records it)."""
    validate_file(file.name, file.content_type, file.size)
    get_blob_store().upload(bucket, path, file.data, file.content_type)


def remove_blob(bucket: str, path: str) -> None:
    get_blob_store().remove(bucket, [path])
