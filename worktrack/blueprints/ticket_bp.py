"""
Ticket blueprint.

Endpoints:
    GET    /api/v1/tickets                       — list (status, assigned_to, created_by filters)
    POST   /api/v1/tickets                       — create
    POST   /api/v1/tickets/bulk                  — bulk create, per-row result
    GET    /api/v1/tickets/<id>                  — detail with workflow, documents, work order
    PUT    /api/v1/tickets/<id>                  — update fields
    DELETE /api/v1/tickets/<id>                  — delete (EO)
    POST   /api/v1/tickets/<id>/status           — change status (EO); optional certificate upload
    GET    /api/v1/tickets/<id>/audit            — audit trail, newest first
    GET    /api/v1/tickets/<id>/note             — the caller's private note
    PUT    /api/v1/tickets/<id>/note             — create or replace it
    DELETE /api/v1/tickets/<id>/note

The acting user comes from X-User-Id; services own commits.
"""

import logging

from flask import Blueprint, jsonify, request

from worktrack.auth import actor_required
from worktrack.blueprints import (
    form_or_json,
    json_body,
    register_domain_error_handlers,
    uploaded_file,
)
from worktrack.services import document_service, ticket_service
from worktrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)

ticket_bp = Blueprint("ticket", __name__, url_prefix="/api/v1")
register_domain_error_handlers(ticket_bp)


@ticket_bp.route("/tickets", methods=["GET"])
def list_tickets():
    rows = ticket_service.list_tickets(
        status=request.args.get("status"),
        assigned_to=request.args.get("assigned_to", type=int),
        created_by=request.args.get("created_by", type=int),
    )
    return jsonify({"items": rows, "total": len(rows)}), 200


@ticket_bp.route("/tickets", methods=["POST"])
def create_ticket():
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    copied_from = data.get("copied_from_ticket_id")
    if copied_from is not None and not isinstance(copied_from, int):
        return api_error(E.VALIDATION_INVALID, "copied_from_ticket_id must be an integer")
    return jsonify(ticket_service.create_ticket(data, actor_id, copied_from)), 201


@ticket_bp.route("/tickets/bulk", methods=["POST"])
def create_tickets_bulk():
    actor_id, err = actor_required()
    if err:
        return err
    rows = json_body().get("tickets")
    if not isinstance(rows, list) or not rows:
        return api_error(E.VALIDATION_REQUIRED, "tickets must be a non-empty list")
    result = ticket_service.create_tickets_bulk(rows, actor_id)
    status = 201 if result["success_count"] else 422
    return jsonify(result), status


@ticket_bp.route("/tickets/<int:ticket_id>", methods=["GET"])
def get_ticket(ticket_id):
    return jsonify(ticket_service.get_ticket(ticket_id)), 200


@ticket_bp.route("/tickets/<int:ticket_id>", methods=["PUT"])
def update_ticket(ticket_id):
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "No fields to update")
    return jsonify(ticket_service.update_ticket(ticket_id, data, actor_id)), 200


@ticket_bp.route("/tickets/<int:ticket_id>", methods=["DELETE"])
def delete_ticket(ticket_id):
    actor_id, err = actor_required()
    if err:
        return err
    ticket_service.delete_ticket(ticket_id, actor_id)
    return jsonify({"message": "Ticket deleted"}), 200


@ticket_bp.route("/tickets/<int:ticket_id>/status", methods=["POST"])
def change_status(ticket_id):
    """Change ticket status.

    Body (JSON or multipart): {status, remarks?}
    A multipart ``certificate`` file is stored as a completion certificate
    before the status change is checked.
    """
    actor_id, err = actor_required()
    if err:
        return err
    data = form_or_json()
    new_status = (data.get("status") or "").strip()
    if not new_status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")

    certificate = uploaded_file("certificate")
    if certificate is not None:
        document_service.upload_document(
            ticket_id, certificate, actor_id, is_completion_certificate=True,
        )
    result = ticket_service.change_ticket_status(ticket_id, new_status, actor_id, data.get("remarks"))
    return jsonify(result), 200


@ticket_bp.route("/tickets/<int:ticket_id>/audit", methods=["GET"])
def audit_trail(ticket_id):
    rows = ticket_service.get_audit_trail(ticket_id)
    return jsonify({"items": rows, "total": len(rows)}), 200


@ticket_bp.route("/tickets/<int:ticket_id>/note", methods=["GET"])
def get_note(ticket_id):
    actor_id, err = actor_required()
    if err:
        return err
    return jsonify({"note": ticket_service.get_user_note(ticket_id, actor_id)}), 200


@ticket_bp.route("/tickets/<int:ticket_id>/note", methods=["PUT"])
def save_note(ticket_id):
    """Body: {note_content}"""
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    if "note_content" not in data:
        return api_error(E.VALIDATION_REQUIRED, "note_content is required")
    return jsonify(ticket_service.save_user_note(ticket_id, actor_id, data["note_content"])), 200


@ticket_bp.route("/tickets/<int:ticket_id>/note", methods=["DELETE"])
def delete_note(ticket_id):
    actor_id, err = actor_required()
    if err:
        return err
    if not ticket_service.delete_user_note(ticket_id, actor_id):
        return api_error(E.NOT_FOUND, "No note for this ticket")
    return jsonify({"message": "Note deleted"}), 200
