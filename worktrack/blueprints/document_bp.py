"""
Document blueprint — ticket/step documents, progress documents, signed downloads.

Endpoints:
    POST   /api/v1/tickets/<tid>/documents                 — multipart upload
    GET    /api/v1/tickets/<tid>/documents                 — list (?step_id)
    GET    /api/v1/tickets/<tid>/attachments               — ticket-level files
    GET    /api/v1/tickets/<tid>/completion-certificates
    POST   /api/v1/tickets/<tid>/attachments/copy          — copy from another ticket
    GET    /api/v1/documents/<id>/url                      — signed download URL
    DELETE /api/v1/documents/<id>                          — uploader or EO

    POST   /api/v1/steps/<sid>/progress-documents          — multipart upload
    GET    /api/v1/steps/<sid>/progress-documents          — list (?include_deleted)
    GET    /api/v1/progress-documents/<id>/url
    DELETE /api/v1/progress-documents/<id>                 — soft delete, reason required
    PUT    /api/v1/progress-documents/<id>/comment

    GET    /api/v1/files/<token>                           — signed blob download
"""

import io
import logging

from flask import Blueprint, jsonify, request, send_file

from worktrack.auth import actor_required
from worktrack.blueprints import (
    as_bool,
    form_or_json,
    json_body,
    register_domain_error_handlers,
    uploaded_file,
)
from worktrack.services import document_service
from worktrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)

document_bp = Blueprint("document", __name__, url_prefix="/api/v1")
register_domain_error_handlers(document_bp)


def _optional_int(data: dict, field: str):
    raw = data.get(field)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return False


# ═════════════════════════════════════════════════════════════════════════════
# Ticket & step documents
# ═════════════════════════════════════════════════════════════════════════════


@document_bp.route("/tickets/<int:ticket_id>/documents", methods=["POST"])
def upload_document(ticket_id):
    """Multipart fields: file, step_id?, file_reference_id?, is_mandatory?, is_completion_certificate?"""
    actor_id, err = actor_required()
    if err:
        return err
    file = uploaded_file()
    if file is None:
        return api_error(E.VALIDATION_REQUIRED, "file is required")
    form = request.form
    step_id = _optional_int(form, "step_id")
    if step_id is False:
        return api_error(E.VALIDATION_INVALID, "step_id must be an integer")
    reference_id = _optional_int(form, "file_reference_id")
    if reference_id is False:
        return api_error(E.VALIDATION_INVALID, "file_reference_id must be an integer")

    doc = document_service.upload_document(
        ticket_id, file, actor_id,
        step_id=step_id,
        is_mandatory=as_bool(form.get("is_mandatory")),
        is_completion_certificate=as_bool(form.get("is_completion_certificate")),
        file_reference_id=reference_id,
    )
    return jsonify(doc), 201


@document_bp.route("/tickets/<int:ticket_id>/documents", methods=["GET"])
def list_documents(ticket_id):
    rows = document_service.list_documents(ticket_id, request.args.get("step_id", type=int))
    return jsonify({"items": rows, "total": len(rows)}), 200


@document_bp.route("/tickets/<int:ticket_id>/attachments", methods=["GET"])
def list_attachments(ticket_id):
    rows = document_service.get_ticket_attachments(ticket_id)
    return jsonify({"items": rows, "total": len(rows)}), 200


@document_bp.route("/tickets/<int:ticket_id>/completion-certificates", methods=["GET"])
def list_certificates(ticket_id):
    rows = document_service.get_completion_certificates(ticket_id)
    return jsonify({"items": rows, "total": len(rows)}), 200


@document_bp.route("/tickets/<int:ticket_id>/attachments/copy", methods=["POST"])
def copy_attachments(ticket_id):
    """Body: {source_ticket_id, attachment_ids?}"""
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    source_id = data.get("source_ticket_id")
    if not isinstance(source_id, int):
        return api_error(E.VALIDATION_REQUIRED, "source_ticket_id is required")
    ids = data.get("attachment_ids")
    if ids is not None and not isinstance(ids, list):
        return api_error(E.VALIDATION_INVALID, "attachment_ids must be a list")
    result = document_service.copy_ticket_attachments(source_id, ticket_id, actor_id, ids)
    return jsonify(result), 200


@document_bp.route("/documents/<int:document_id>/url", methods=["GET"])
def document_url(document_id):
    return jsonify(document_service.get_document_url(
        document_id, request.args.get("expires_in", type=int),
    )), 200


@document_bp.route("/documents/<int:document_id>", methods=["DELETE"])
def delete_document(document_id):
    actor_id, err = actor_required()
    if err:
        return err
    document_service.delete_document(document_id, actor_id)
    return jsonify({"message": "Document deleted"}), 200


# ═════════════════════════════════════════════════════════════════════════════
# Progress documents
# ═════════════════════════════════════════════════════════════════════════════


@document_bp.route("/steps/<int:step_id>/progress-documents", methods=["POST"])
def upload_progress_document(step_id):
    """Multipart fields: file, audit_log_id?, comment?"""
    actor_id, err = actor_required()
    if err:
        return err
    file = uploaded_file()
    if file is None:
        return api_error(E.VALIDATION_REQUIRED, "file is required")
    audit_log_id = _optional_int(request.form, "audit_log_id")
    if audit_log_id is False:
        return api_error(E.VALIDATION_INVALID, "audit_log_id must be an integer")
    doc = document_service.upload_progress_document(
        step_id, file, actor_id,
        audit_log_id=audit_log_id, comment=request.form.get("comment"),
    )
    return jsonify(doc), 201


@document_bp.route("/steps/<int:step_id>/progress-documents", methods=["GET"])
def list_progress_documents(step_id):
    rows = document_service.list_progress_documents(
        step_id, include_deleted=as_bool(request.args.get("include_deleted")),
    )
    return jsonify({"items": rows, "total": len(rows)}), 200


@document_bp.route("/progress-documents/<int:document_id>/url", methods=["GET"])
def progress_document_url(document_id):
    return jsonify(document_service.get_progress_document_url(
        document_id, request.args.get("expires_in", type=int),
    )), 200


@document_bp.route("/progress-documents/<int:document_id>", methods=["DELETE"])
def delete_progress_document(document_id):
    """Body: {reason}"""
    actor_id, err = actor_required()
    if err:
        return err
    reason = form_or_json().get("reason")
    if not (reason or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "reason is required")
    return jsonify(document_service.delete_progress_document(document_id, actor_id, reason)), 200


@document_bp.route("/progress-documents/<int:document_id>/comment", methods=["PUT"])
def update_progress_document_comment(document_id):
    actor_id, err = actor_required()
    if err:
        return err
    comment = json_body().get("comment")
    if not (comment or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "comment is required")
    return jsonify(document_service.update_progress_document_comment(document_id, actor_id, comment)), 200


# ═════════════════════════════════════════════════════════════════════════════
# Signed download
# ═════════════════════════════════════════════════════════════════════════════


@document_bp.route("/files/<path:token>", methods=["GET"])
def download_blob(token):
    """Stream a blob for a valid, unexpired signed token (no API key needed)."""
    data, content_type, name = document_service.read_signed_blob(token)
    return send_file(io.BytesIO(data), mimetype=content_type, download_name=name)
