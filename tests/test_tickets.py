"""
WorkTrack
Tests — Ticket lifecycle.

Covers:
    - Ticket numbers, CRUD and bulk creation
    - Status changes: EO only, finance and certificate gates
    - Ticket delete (EO only) with its ledger and documents
    - Audit trail
    - Private per-user notes
"""

import io

import pytest
from sqlalchemy import func, select

from worktrack.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from worktrack.models import db
from worktrack.models.ticket import Ticket, TicketNote
from worktrack.services import (
    allocation_service,
    catalog_service,
    document_service,
    finance_service,
    ticket_service,
    workflow_service,
)
from worktrack.services.document_service import UploadedFile
from worktrack.storage import get_blob_store


def _h(user):
    return {"X-User-Id": str(user.id)}


def _certificate():
    return UploadedFile(name="completion.pdf", content_type="application/pdf", data=b"%PDF-1.4 cert")


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════

class TestTicketCrud:
    def test_ticket_numbers_are_sequential(self, eo):
        first = ticket_service.create_ticket({"title": "A"}, eo.id)
        second = ticket_service.create_ticket({"title": "B"}, eo.id)
        assert first["ticket_number"] == "TKT-000001"
        assert second["ticket_number"] == "TKT-000002"

    def test_defaults(self, ticket, eo):
        assert ticket["status"] == "created"
        assert ticket["priority"] == "MEDIUM"
        assert ticket["created_by"] == eo.id

    def test_invalid_priority(self, eo):
        with pytest.raises(ValidationError, match="Invalid priority"):
            ticket_service.create_ticket({"title": "A", "priority": "urgent!"}, eo.id)

    def test_copy_from_missing_ticket(self, eo):
        with pytest.raises(NotFoundError):
            ticket_service.create_ticket({"title": "Copy"}, eo.id, copied_from_ticket_id=9999)

    def test_create_via_api(self, client, eo):
        res = client.post("/api/v1/tickets", json={"title": "Blocked drain", "priority": "high"},
                          headers=_h(eo))
        assert res.status_code == 201
        assert res.get_json()["priority"] == "HIGH"

    def test_create_via_api_requires_title(self, client, eo):
        res = client.post("/api/v1/tickets", json={"priority": "LOW"}, headers=_h(eo))
        assert res.status_code == 400

    def test_create_via_api_requires_actor(self, client):
        res = client.post("/api/v1/tickets", json={"title": "Anonymous"})
        assert res.status_code == 401

    def test_list_filters(self, client, eo, employee):
        ticket_service.create_ticket({"title": "Mine", "assigned_to": employee.id}, eo.id)
        ticket_service.create_ticket({"title": "Not mine"}, eo.id)
        res = client.get(f"/api/v1/tickets?assigned_to={employee.id}")
        body = res.get_json()
        assert body["total"] == 1
        assert body["items"][0]["title"] == "Mine"

    def test_get_includes_children(self, client, eo, ticket):
        workflow_service.add_step(ticket["id"], {"title": "Survey"}, eo.id)
        res = client.get(f"/api/v1/tickets/{ticket['id']}")
        assert res.status_code == 200
        body = res.get_json()
        assert len(body["workflow_steps"]) == 1
        for key in ("attachments", "completion_certificates", "item_details", "spec_details", "audit_trail"):
            assert key in body

    def test_get_missing(self, client):
        assert client.get("/api/v1/tickets/9999").status_code == 404

    def test_assignment_audited(self, eo, employee, ticket):
        ticket_service.update_ticket(ticket["id"], {"assigned_to": employee.id}, eo.id)
        trail = ticket_service.get_audit_trail(ticket["id"])
        assert trail[0]["action"] == "ASSIGNED"
        assert trail[0]["action_category"] == "assignment_change"


class TestBulkTickets:
    def test_bad_rows_do_not_block_good_rows(self, eo):
        result = ticket_service.create_tickets_bulk(
            [{"title": "Gate"}, {"title": ""}, {"title": "Lift", "priority": "nope"}, {"title": "Pump"}],
            eo.id,
        )
        assert result["success_count"] == 2
        assert result["failed_count"] == 2
        assert [e["index"] for e in result["errors"]] == [1, 2]
        assert len(ticket_service.list_tickets()) == 2

    def test_bulk_non_object_and_mistyped_rows(self, eo):
        result = ticket_service.create_tickets_bulk(
            ["Gate", None, {"title": 12}, {"title": "Lift", "priority": ["HIGH"]},
             {"title": "Pump", "status": {"x": 1}}, {"title": "Roof", "priority": "high"}],
            eo.id,
        )
        assert result["success_count"] == 1
        assert [e["index"] for e in result["errors"]] == [0, 1, 2, 3, 4]
        assert result["errors"][0]["error"] == "Row must be an object"
        assert result["errors"][2]["error"] == "Title must be a string"
        [created] = ticket_service.list_tickets()
        assert created["title"] == "Roof"
        assert created["priority"] == "HIGH"

    def test_bulk_api(self, client, eo):
        res = client.post("/api/v1/tickets/bulk", json={"tickets": [{"title": ""}]}, headers=_h(eo))
        assert res.status_code == 422
        res = client.post("/api/v1/tickets/bulk", json={"tickets": [{"title": "ok"}]}, headers=_h(eo))
        assert res.status_code == 201


# ═════════════════════════════════════════════════════════════════════════════
# STATUS
# ═════════════════════════════════════════════════════════════════════════════

class TestTicketStatus:
    def test_only_eo_changes_status(self, employee, ticket):
        with pytest.raises(PermissionDeniedError, match="Only an EO can change ticket status"):
            ticket_service.change_ticket_status(ticket["id"], "active", employee.id)

    def test_invalid_status(self, eo, ticket):
        with pytest.raises(ValidationError):
            ticket_service.change_ticket_status(ticket["id"], "paused", eo.id)

    def test_status_change_audited(self, eo, ticket):
        result = ticket_service.change_ticket_status(ticket["id"], "active", eo.id, "Crew assigned")
        assert result["status"] == "active"
        trail = ticket_service.get_audit_trail(ticket["id"])
        assert trail[0]["action"] == "STATUS_CHANGED"
        assert trail[0]["old_data"] == {"status": "created"}
        assert trail[0]["description"] == "Crew assigned"

    def test_completion_needs_finance_approval(self, eo, finance_officer):
        t = ticket_service.create_ticket({"title": "Roof", "requires_finance_approval": True}, eo.id)
        with pytest.raises(ValidationError, match="Finance approval is required"):
            ticket_service.change_ticket_status(t["id"], "completed", eo.id)

        approval = finance_service.submit_to_finance(
            t["id"], 500, "Repairs", "Membrane patch for block B", finance_officer.id, eo.id,
        )
        finance_service.approve_request(approval["id"], finance_officer.id)
        assert ticket_service.change_ticket_status(t["id"], "completed", eo.id)["status"] == "completed"

    def test_completion_needs_certificate(self, eo):
        t = ticket_service.create_ticket({"title": "Roof", "completion_documents_required": True}, eo.id)
        with pytest.raises(ValidationError, match="completion certificate"):
            ticket_service.change_ticket_status(t["id"], "completed", eo.id)
        document_service.upload_document(t["id"], _certificate(), eo.id, is_completion_certificate=True)
        assert ticket_service.change_ticket_status(t["id"], "completed", eo.id)["status"] == "completed"

    def test_status_api_with_certificate_upload(self, client, eo):
        t = ticket_service.create_ticket({"title": "Roof", "completion_documents_required": True}, eo.id)
        res = client.post(
            f"/api/v1/tickets/{t['id']}/status",
            data={"status": "completed", "certificate": (io.BytesIO(b"%PDF-1.4"), "cert.pdf", "application/pdf")},
            headers=_h(eo),
            content_type="multipart/form-data",
        )
        assert res.status_code == 200
        assert res.get_json()["status"] == "completed"
        assert document_service.has_completion_certificate(t["id"])

    def test_status_api_forbidden(self, client, employee, ticket):
        res = client.post(f"/api/v1/tickets/{ticket['id']}/status", json={"status": "active"},
                          headers=_h(employee))
        assert res.status_code == 403


# ═════════════════════════════════════════════════════════════════════════════
# DELETE
# ═════════════════════════════════════════════════════════════════════════════

class TestTicketDelete:
    def test_only_eo_deletes(self, employee, ticket):
        with pytest.raises(PermissionDeniedError, match="Only an EO can delete tickets"):
            ticket_service.delete_ticket(ticket["id"], employee.id)

    def test_delete_removes_ledger_and_blobs(self, eo, ticket):
        entry = catalog_service.create_master("item", {"code": "ITM-1", "description": "Sheet"}, eo.id)
        detail = allocation_service.add_detail_to_ticket("item", ticket["id"], entry["id"], 5, actor_id=eo.id)
        step = workflow_service.add_step(ticket["id"], {"title": "Fix"}, eo.id)
        allocation_service.allocate("item", detail["id"], step["id"], 2, eo.id)
        doc = document_service.upload_document(ticket["id"], _certificate(), eo.id)

        ticket_service.delete_ticket(ticket["id"], eo.id)
        db.session.expire_all()
        assert db.session.get(Ticket, ticket["id"]) is None
        assert allocation_service.get_allocations_by_step("item", step["id"]) == []
        assert not get_blob_store().exists("step-documents", doc["storage_path"])
        catalog_service.delete_master("item", entry["id"])

    def test_delete_via_api(self, client, eo, ticket):
        res = client.delete(f"/api/v1/tickets/{ticket['id']}", headers=_h(eo))
        assert res.status_code == 200
        assert client.get(f"/api/v1/tickets/{ticket['id']}").status_code == 404

    def test_audit_endpoint(self, client, ticket):
        res = client.get(f"/api/v1/tickets/{ticket['id']}/audit")
        assert res.status_code == 200
        assert res.get_json()["items"][0]["action"] == "CREATED"


# ═════════════════════════════════════════════════════════════════════════════
# PRIVATE NOTES
# ═════════════════════════════════════════════════════════════════════════════

class TestUserNotes:
    def test_save_replaces_own_note(self, eo, ticket):
        assert ticket_service.get_user_note(ticket["id"], eo.id) is None
        first = ticket_service.save_user_note(ticket["id"], eo.id, "Call the roofer")
        second = ticket_service.save_user_note(ticket["id"], eo.id, "Roofer booked for Monday")
        assert second["id"] == first["id"]
        assert ticket_service.get_user_note(ticket["id"], eo.id)["note_content"] == "Roofer booked for Monday"

    def test_notes_are_per_user(self, eo, employee, ticket):
        ticket_service.save_user_note(ticket["id"], eo.id, "EO view")
        assert ticket_service.get_user_note(ticket["id"], employee.id) is None
        ticket_service.save_user_note(ticket["id"], employee.id, "Bring ladder")
        assert ticket_service.get_user_note(ticket["id"], eo.id)["note_content"] == "EO view"

    def test_delete(self, eo, ticket):
        ticket_service.save_user_note(ticket["id"], eo.id, "temp")
        assert ticket_service.delete_user_note(ticket["id"], eo.id) is True
        assert ticket_service.delete_user_note(ticket["id"], eo.id) is False
        assert ticket_service.get_user_note(ticket["id"], eo.id) is None

    def test_non_string_content_rejected(self, eo, ticket):
        with pytest.raises(ValidationError):
            ticket_service.save_user_note(ticket["id"], eo.id, ["x"])

    def test_unknown_ticket(self, eo):
        with pytest.raises(NotFoundError):
            ticket_service.save_user_note(999, eo.id, "x")

    def test_notes_go_with_the_ticket(self, eo, ticket):
        ticket_service.save_user_note(ticket["id"], eo.id, "x")
        ticket_service.delete_ticket(ticket["id"], eo.id)
        db.session.expire_all()
        assert db.session.execute(select(func.count()).select_from(TicketNote)).scalar() == 0

    def test_note_api(self, client, eo, employee, ticket):
        url = f"/api/v1/tickets/{ticket['id']}/note"
        assert client.get(url, headers=_h(eo)).get_json() == {"note": None}
        res = client.put(url, json={"note_content": "Check gutters"}, headers=_h(eo))
        assert res.status_code == 200
        assert client.get(url, headers=_h(eo)).get_json()["note"]["note_content"] == "Check gutters"
        assert client.get(url, headers=_h(employee)).get_json() == {"note": None}
        assert client.put(url, json={}, headers=_h(eo)).status_code == 400
        assert client.delete(url, headers=_h(eo)).status_code == 200
        assert client.delete(url, headers=_h(eo)).status_code == 404
