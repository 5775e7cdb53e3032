"""
Finance approval blueprint.

Endpoints:
    GET  /api/v1/finance/officers
    GET  /api/v1/finance/pending                  — (?finance_officer_id)
    POST /api/v1/tickets/<tid>/finance            — submit for approval
    GET  /api/v1/tickets/<tid>/finance            — submission history
    POST /api/v1/finance/<id>/approve             — JSON or multipart (remarks?, document?)
    POST /api/v1/finance/<id>/reject              — JSON or multipart (rejection_reason, document?)
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
from worktrack.services import finance_service
from worktrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)

finance_bp = Blueprint("finance", __name__, url_prefix="/api/v1")
register_domain_error_handlers(finance_bp)


@finance_bp.route("/finance/officers", methods=["GET"])
def list_officers():
    rows = finance_service.list_finance_officers()
    return jsonify({"items": rows, "total": len(rows)}), 200


@finance_bp.route("/finance/pending", methods=["GET"])
def list_pending():
    rows = finance_service.get_pending(request.args.get("finance_officer_id", type=int))
    return jsonify({"items": rows, "total": len(rows)}), 200


@finance_bp.route("/tickets/<int:ticket_id>/finance", methods=["POST"])
def submit(ticket_id):
    """Body: {tentative_cost, cost_deducted_from, remarks, finance_officer_id}"""
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    missing = [f for f in ("tentative_cost", "cost_deducted_from", "remarks", "finance_officer_id")
               if data.get(f) in (None, "")]
    if missing:
        return api_error(E.VALIDATION_REQUIRED, f"{', '.join(missing)} required")
    approval = finance_service.submit_to_finance(
        ticket_id,
        data["tentative_cost"],
        data["cost_deducted_from"],
        data["remarks"],
        data["finance_officer_id"],
        actor_id,
    )
    return jsonify(approval), 201


@finance_bp.route("/tickets/<int:ticket_id>/finance", methods=["GET"])
def history(ticket_id):
    rows = finance_service.get_history(ticket_id)
    return jsonify({"items": rows, "total": len(rows)}), 200


@finance_bp.route("/finance/<int:approval_id>/approve", methods=["POST"])
def approve(approval_id):
    actor_id, err = actor_required()
    if err:
        return err
    data = form_or_json()
    approval = finance_service.approve_request(
        approval_id, actor_id, data.get("remarks"), uploaded_file("document"),
    )
    return jsonify(approval), 200


@finance_bp.route("/finance/<int:approval_id>/reject", methods=["POST"])
def reject(approval_id):
    actor_id, err = actor_required()
    if err:
        return err
    data = form_or_json()
    if not (data.get("rejection_reason") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "rejection_reason is required")
    approval = finance_service.reject_request(
        approval_id, actor_id, data["rejection_reason"], uploaded_file("document"),
    )
    return jsonify(approval), 200
