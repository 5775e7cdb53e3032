"""
Work order blueprint — catalog, ticket details and the allocation ledger.

``<kind>`` is ``item`` or ``spec``; both kinds share every route.

Endpoints:
    Catalog
        GET    /api/v1/catalog/<kind>                      — list (?include_inactive=1)
        POST   /api/v1/catalog/<kind>                      — create entry
        GET    /api/v1/catalog/<kind>/<id>
        PUT    /api/v1/catalog/<kind>/<id>
        DELETE /api/v1/catalog/<kind>/<id>                 — only while unreferenced

    Ticket details
        GET    /api/v1/tickets/<tid>/<kind>-details
        POST   /api/v1/tickets/<tid>/<kind>-details
        PUT    /api/v1/<kind>-details/<id>
        DELETE /api/v1/<kind>-details/<id>                 — refused while allocated

    Allocations
        POST   /api/v1/<kind>-allocations                  — allocate to a step
        PUT    /api/v1/<kind>-allocations/<id>             — change quantity (capacity checked)
        POST   /api/v1/<kind>-allocations/<id>/override    — EO override with reason
        DELETE /api/v1/<kind>-allocations/<id>
        GET    /api/v1/steps/<sid>/<kind>-allocations
        GET    /api/v1/steps/<sid>/<kind>-details          — details with this step's share

    Maintenance
        POST   /api/v1/tickets/<tid>/allocations/reconcile — re-sum ledger totals
"""

import logging

from flask import Blueprint, jsonify, request

from worktrack.auth import actor_required
from worktrack.blueprints import as_bool, json_body, register_domain_error_handlers
from worktrack.models.work_order import WORK_ORDER_KINDS
from worktrack.services import allocation_service, catalog_service
from worktrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)

work_order_bp = Blueprint("work_order", __name__, url_prefix="/api/v1")
register_domain_error_handlers(work_order_bp)

KIND = "<any(item, spec):kind>"


def _require(data: dict, *fields):
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        return api_error(E.VALIDATION_REQUIRED, f"{', '.join(missing)} required",
                         details={f: "required" for f in missing})
    return None


# ═════════════════════════════════════════════════════════════════════════════
# Catalog
# ═════════════════════════════════════════════════════════════════════════════


@work_order_bp.route(f"/catalog/{KIND}", methods=["GET"])
def list_catalog(kind):
    rows = catalog_service.list_masters(kind, active_only=not as_bool(request.args.get("include_inactive")))
    return jsonify({"items": rows, "total": len(rows)}), 200


@work_order_bp.route(f"/catalog/{KIND}", methods=["POST"])
def create_catalog_entry(kind):
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    err = _require(data, "code", "description")
    if err:
        return err
    return jsonify(catalog_service.create_master(kind, data, actor_id)), 201


@work_order_bp.route(f"/catalog/{KIND}/<int:entry_id>", methods=["GET"])
def get_catalog_entry(kind, entry_id):
    return jsonify(catalog_service.get_master(kind, entry_id)), 200


@work_order_bp.route(f"/catalog/{KIND}/<int:entry_id>", methods=["PUT"])
def update_catalog_entry(kind, entry_id):
    _, err = actor_required()
    if err:
        return err
    data = json_body()
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "No fields to update")
    return jsonify(catalog_service.update_master(kind, entry_id, data)), 200


@work_order_bp.route(f"/catalog/{KIND}/<int:entry_id>", methods=["DELETE"])
def delete_catalog_entry(kind, entry_id):
    _, err = actor_required()
    if err:
        return err
    catalog_service.delete_master(kind, entry_id)
    return jsonify({"message": "Catalog entry deleted"}), 200


# ═════════════════════════════════════════════════════════════════════════════
# Ticket details
# ═════════════════════════════════════════════════════════════════════════════


@work_order_bp.route(f"/tickets/<int:ticket_id>/{KIND}-details", methods=["GET"])
def list_details(ticket_id, kind):
    rows = allocation_service.get_details_by_ticket(kind, ticket_id)
    return jsonify({"items": rows, "total": len(rows)}), 200


@work_order_bp.route(f"/tickets/<int:ticket_id>/{KIND}-details", methods=["POST"])
def add_detail(ticket_id, kind):
    """Body: {catalog_entry_id, quantity, unit?, remarks?}"""
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    err = _require(data, "catalog_entry_id", "quantity")
    if err:
        return err
    detail = allocation_service.add_detail_to_ticket(
        kind, ticket_id, data["catalog_entry_id"], data["quantity"],
        unit=data.get("unit"), remarks=data.get("remarks"), actor_id=actor_id,
    )
    return jsonify(detail), 201


@work_order_bp.route(f"/{KIND}-details/<int:detail_id>", methods=["PUT"])
def update_detail(kind, detail_id):
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    if not any(f in data for f in ("quantity", "unit", "remarks")):
        return api_error(E.VALIDATION_REQUIRED, "No fields to update")
    detail = allocation_service.update_ticket_detail(
        kind, detail_id,
        quantity=data.get("quantity"), unit=data.get("unit"), remarks=data.get("remarks"),
        actor_id=actor_id,
    )
    return jsonify(detail), 200


@work_order_bp.route(f"/{KIND}-details/<int:detail_id>", methods=["DELETE"])
def delete_detail(kind, detail_id):
    actor_id, err = actor_required()
    if err:
        return err
    allocation_service.delete_ticket_detail(kind, detail_id, actor_id)
    return jsonify({"message": f"{kind.capitalize()} detail deleted"}), 200


# ═════════════════════════════════════════════════════════════════════════════
# Allocations
# ═════════════════════════════════════════════════════════════════════════════


@work_order_bp.route(f"/{KIND}-allocations", methods=["POST"])
def allocate(kind):
    """Body: {detail_id, workflow_step_id, allocated_quantity}"""
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    err = _require(data, "detail_id", "workflow_step_id", "allocated_quantity")
    if err:
        return err
    allocation = allocation_service.allocate(
        kind, data["detail_id"], data["workflow_step_id"], data["allocated_quantity"], actor_id,
    )
    return jsonify(allocation), 201


@work_order_bp.route(f"/{KIND}-allocations/<int:allocation_id>", methods=["PUT"])
def update_allocation(kind, allocation_id):
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    err = _require(data, "allocated_quantity")
    if err:
        return err
    allocation = allocation_service.update_allocation(kind, allocation_id, data["allocated_quantity"], actor_id)
    return jsonify(allocation), 200


@work_order_bp.route(f"/{KIND}-allocations/<int:allocation_id>/override", methods=["POST"])
def override_allocation(kind, allocation_id):
    """Body: {allocated_quantity, reason}"""
    actor_id, err = actor_required()
    if err:
        return err
    data = json_body()
    err = _require(data, "allocated_quantity", "reason")
    if err:
        return err
    allocation = allocation_service.override_allocation(
        kind, allocation_id, data["allocated_quantity"], actor_id, data["reason"],
    )
    return jsonify(allocation), 200


@work_order_bp.route(f"/{KIND}-allocations/<int:allocation_id>", methods=["DELETE"])
def delete_allocation(kind, allocation_id):
    actor_id, err = actor_required()
    if err:
        return err
    allocation_service.delete_allocation(kind, allocation_id, actor_id)
    return jsonify({"message": "Allocation deleted"}), 200


@work_order_bp.route(f"/steps/<int:step_id>/{KIND}-allocations", methods=["GET"])
def step_allocations(step_id, kind):
    rows = allocation_service.get_allocations_by_step(kind, step_id)
    return jsonify({"items": rows, "total": len(rows)}), 200


@work_order_bp.route(f"/steps/<int:step_id>/{KIND}-details", methods=["GET"])
def step_details(step_id, kind):
    rows = allocation_service.get_details_for_step(kind, step_id)
    return jsonify({"items": rows, "total": len(rows)}), 200


@work_order_bp.route("/tickets/<int:ticket_id>/allocations/reconcile", methods=["POST"])
def reconcile(ticket_id):
    _, err = actor_required()
    if err:
        return err
    drift = []
    for kind in WORK_ORDER_KINDS:
        drift.extend(allocation_service.recompute_allocated_totals(kind, ticket_id))
    return jsonify({"drift": drift, "total": len(drift)}), 200
