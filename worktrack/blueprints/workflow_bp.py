"""
Workflow step blueprint.

Endpoints:
    GET    /api/v1/tickets/<tid>/steps                         — ordered step tree
    POST   /api/v1/tickets/<tid>/steps                         — add one step
    POST   /api/v1/tickets/<tid>/steps/bulk                    — add many, per-row result
    PUT    /api/v1/tickets/<tid>/steps/<sid>                   — update (EO or assignee)
    DELETE /api/v1/tickets/<tid>/steps/<sid>                   — delete subtree
    PUT    /api/v1/tickets/<tid>/steps/<sid>/dependencies      — replace dependencies
    GET    /api/v1/tickets/<tid>/steps/<sid>/completion-check  — dependency gate
    GET    /api/v1/steps/<sid>/comments
    POST   /api/v1/steps/<sid>/comments
"""

import logging

from flask import Blueprint, jsonify

from worktrack.auth import actor_required
from worktrack.blueprints import json_body, register_domain_error_handlers
from worktrack.services import workflow_service
from worktrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")
register_domain_error_handlers(workflow_bp)


@workflow_bp.route("/tickets/<int:ticket_id>/steps", methods=["GET"])
def list_steps(ticket_id):
    steps = workflow_service.list_steps(ticket_id)
    return jsonify({"items": steps, "total": len(steps)}), 200


@workflow_bp.route("/tickets/<int:ticket_id>/steps", methods=["POST"])
def add_step(ticket_id):
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    deps = data.get("dependent_on_step_ids")
    if deps is not None and not isinstance(deps, list):
        return api_error(E.VALIDATION_INVALID, "dependent_on_step_ids must be a list")
    return jsonify(workflow_service.add_step(ticket_id, data, actor_id)), 201


@workflow_bp.route("/tickets/<int:ticket_id>/steps/bulk", methods=["POST"])
def add_steps_bulk(ticket_id):
    """Body: {steps: [{title, description?, ...}], parent_step_id?}"""
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    rows = data.get("steps")
    if not isinstance(rows, list) or not rows:
        return api_error(E.VALIDATION_REQUIRED, "steps must be a non-empty list")
    result = workflow_service.add_steps_bulk(
        ticket_id, rows, actor_id, parent_step_id=data.get("parent_step_id"),
    )
    return jsonify(result), 201 if result["success_count"] else 422


@workflow_bp.route("/tickets/<int:ticket_id>/steps/<int:step_id>", methods=["PUT"])
def update_step(ticket_id, step_id):
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    remarks = data.pop("remarks", None)
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "No fields to update")
    return jsonify(workflow_service.update_step(ticket_id, step_id, data, actor_id, remarks)), 200


@workflow_bp.route("/tickets/<int:ticket_id>/steps/<int:step_id>", methods=["DELETE"])
def delete_step(ticket_id, step_id):
    actor_id, err = actor_required()
    if err:
        return err
    return jsonify(workflow_service.delete_step(ticket_id, step_id, actor_id)), 200


@workflow_bp.route("/tickets/<int:ticket_id>/steps/<int:step_id>/dependencies", methods=["PUT"])
def set_dependencies(ticket_id, step_id):
    actor_id, err = actor_required()
    if err:
        return err
    deps = json_body().get("dependent_on_step_ids")
    if not isinstance(deps, list):
        return api_error(E.VALIDATION_REQUIRED, "dependent_on_step_ids must be a list")
    return jsonify(workflow_service.set_dependencies(ticket_id, step_id, deps, actor_id)), 200


@workflow_bp.route("/tickets/<int:ticket_id>/steps/<int:step_id>/completion-check", methods=["GET"])
def completion_check(ticket_id, step_id):
    step = workflow_service.get_step(step_id, ticket_id)
    return jsonify(workflow_service.validate_step_completion(step)), 200


@workflow_bp.route("/steps/<int:step_id>/comments", methods=["GET"])
def list_comments(step_id):
    rows = workflow_service.list_step_comments(step_id)
    return jsonify({"items": rows, "total": len(rows)}), 200


@workflow_bp.route("/steps/<int:step_id>/comments", methods=["POST"])
def add_comment(step_id):
    actor_id, err = actor_required()
    if err:
        return err
    content = json_body().get("content")
    if not (content or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "content is required")
    return jsonify(workflow_service.add_step_comment(step_id, content, actor_id)), 201
