"""
Progress blueprint.

Endpoints:
    GET  /api/v1/steps/<sid>/progress            — latest entries (?limit, default 5)
    POST /api/v1/steps/<sid>/progress            — new entry {progress_percentage, comment?}
    PUT  /api/v1/progress/<id>                   — edit latest entry (creator only)
    GET  /api/v1/steps/<sid>/history             — merged timeline, newest first
"""

import logging

from flask import Blueprint, jsonify, request

from worktrack.auth import actor_required
from worktrack.blueprints import json_body, register_domain_error_handlers
from worktrack.services import progress_service
from worktrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)

progress_bp = Blueprint("progress", __name__, url_prefix="/api/v1")
register_domain_error_handlers(progress_bp)

MAX_LIMIT = 100


@progress_bp.route("/steps/<int:step_id>/progress", methods=["GET"])
def list_entries(step_id):
    limit = request.args.get("limit", progress_service.DEFAULT_ENTRY_LIMIT, type=int)
    limit = max(1, min(limit, MAX_LIMIT))
    rows = progress_service.list_progress_entries(step_id, limit)
    return jsonify({"items": rows, "total": len(rows)}), 200


@progress_bp.route("/steps/<int:step_id>/progress", methods=["POST"])
def create_entry(step_id):
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    if data.get("progress_percentage") is None:
        return api_error(E.VALIDATION_REQUIRED, "progress_percentage is required")
    entry = progress_service.create_progress_entry(
        step_id, actor_id, data["progress_percentage"], data.get("comment"),
    )
    return jsonify(entry), 201


@progress_bp.route("/progress/<int:entry_id>", methods=["PUT"])
def update_entry(entry_id):
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    if "progress_percentage" not in data and "comment" not in data:
        return api_error(E.VALIDATION_REQUIRED, "No fields to update")
    entry = progress_service.update_progress_entry(
        entry_id, actor_id, data.get("progress_percentage"), data.get("comment"),
    )
    return jsonify(entry), 200


@progress_bp.route("/steps/<int:step_id>/history", methods=["GET"])
def step_history(step_id):
    rows = progress_service.get_step_progress_history(step_id)
    return jsonify({"items": rows, "total": len(rows)}), 200
