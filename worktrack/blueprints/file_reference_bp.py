"""
File reference blueprint — templates and per-step expected documents.

Endpoints:
    GET    /api/v1/file-reference-templates                     — list (?active_only)
    POST   /api/v1/file-reference-templates                     — create (EO)
    GET    /api/v1/file-reference-templates/<id>
    PUT    /api/v1/file-reference-templates/<id>                — update (EO)
    DELETE /api/v1/file-reference-templates/<id>                — delete unless in use (EO)

    GET    /api/v1/steps/<sid>/file-references                  — with linked document info
    GET    /api/v1/steps/<sid>/file-references/incomplete       — mandatory, not uploaded
    POST   /api/v1/tickets/<tid>/steps/<sid>/file-references    — apply a template (EO)
    PUT    /api/v1/steps/<sid>/file-references/<rid>            — link/unlink a document
"""

import logging

from flask import Blueprint, jsonify, request

from worktrack.auth import actor_required
from worktrack.blueprints import as_bool, json_body, register_domain_error_handlers
from worktrack.services import file_reference_service
from worktrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)

file_reference_bp = Blueprint("file_reference", __name__, url_prefix="/api/v1")
register_domain_error_handlers(file_reference_bp)


# ═════════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════════


@file_reference_bp.route("/file-reference-templates", methods=["GET"])
def list_templates():
    rows = file_reference_service.list_templates(as_bool(request.args.get("active_only")))
    return jsonify({"items": rows, "total": len(rows)}), 200


@file_reference_bp.route("/file-reference-templates", methods=["POST"])
def create_template():
    """Body: {template_name, file_references: [str], mandatory_flags?: [bool], description?}"""
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    if "file_references" not in data:
        return api_error(E.VALIDATION_REQUIRED, "file_references is required")
    return jsonify(file_reference_service.create_template(data, actor_id)), 201


@file_reference_bp.route("/file-reference-templates/<int:template_id>", methods=["GET"])
def get_template(template_id):
    return jsonify(file_reference_service.get_template(template_id)), 200


@file_reference_bp.route("/file-reference-templates/<int:template_id>", methods=["PUT"])
def update_template(template_id):
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "No fields to update")
    return jsonify(file_reference_service.update_template(template_id, data, actor_id)), 200


@file_reference_bp.route("/file-reference-templates/<int:template_id>", methods=["DELETE"])
def delete_template(template_id):
    actor_id, err = actor_required()
    if err:
        return err
    file_reference_service.delete_template(template_id, actor_id)
    return jsonify({"message": "Template deleted"}), 200


# ═════════════════════════════════════════════════════════════════════════════
# Step references
# ═════════════════════════════════════════════════════════════════════════════


@file_reference_bp.route("/steps/<int:step_id>/file-references", methods=["GET"])
def list_step_references(step_id):
    rows = file_reference_service.get_step_file_references(step_id)
    return jsonify({"items": rows, "total": len(rows)}), 200


@file_reference_bp.route("/steps/<int:step_id>/file-references/incomplete", methods=["GET"])
def incomplete_references(step_id):
    file_reference_service.get_step_file_references(step_id)
    rows = file_reference_service.get_incomplete_references(step_id)
    return jsonify({"items": rows, "total": len(rows), "complete": not rows}), 200


@file_reference_bp.route("/tickets/<int:ticket_id>/steps/<int:step_id>/file-references", methods=["POST"])
def apply_template(ticket_id, step_id):
    """Body: {template_id}"""
    actor_id, err = actor_required()
    if err:
        return err
    template_id = json_body().get("template_id")
    if not isinstance(template_id, int) or isinstance(template_id, bool):
        return api_error(E.VALIDATION_REQUIRED, "template_id must be an integer")
    rows = file_reference_service.apply_template(ticket_id, step_id, template_id, actor_id)
    return jsonify({"items": rows, "total": len(rows)}), 201


@file_reference_bp.route("/steps/<int:step_id>/file-references/<int:reference_id>", methods=["PUT"])
def link_document(step_id, reference_id):
    """Body: {document_id} — null unlinks."""
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    if "document_id" not in data:
        return api_error(E.VALIDATION_REQUIRED, "document_id is required")
    document_id = data["document_id"]
    if document_id is not None and (not isinstance(document_id, int) or isinstance(document_id, bool)):
        return api_error(E.VALIDATION_INVALID, "document_id must be an integer or null")
    return jsonify(file_reference_service.attach_document(step_id, reference_id, document_id, actor_id)), 200
