"""
WorkTrack
Tests — Finance approval lifecycle.
"""

import io

import pytest

from worktrack.core.exceptions import PermissionDeniedError, ValidationError
from worktrack.models import db
from worktrack.models.ticket import Ticket
from worktrack.services import finance_service
from worktrack.services.document_service import UploadedFile
from worktrack.storage import get_blob_store

REMARKS = "Roof membrane replacement, 80 m2"
REJECTION = "Quote exceeds the annual maintenance budget"


def _h(user):
    return {"X-User-Id": str(user.id)}


def _submit(ticket, eo, officer, **overrides):
    args = {
        "tentative_cost": "12500.50",
        "cost_deducted_from": "Maintenance budget 2026",
        "remarks": REMARKS,
        "finance_officer_id": officer.id,
    }
    args.update(overrides)
    return finance_service.submit_to_finance(ticket["id"], actor_id=eo.id, **args)


def _ticket_row(ticket_id):
    return db.session.get(Ticket, ticket_id, populate_existing=True)


class TestSubmit:
    def test_submit_moves_ticket_to_finance(self, eo, finance_officer, ticket):
        approval = _submit(ticket, eo, finance_officer)
        assert approval["status"] == "pending"
        assert approval["tentative_cost"] == 12500.5
        row = _ticket_row(ticket["id"])
        assert row.status == "sent_to_finance"
        assert row.latest_finance_status == "pending"
        assert row.finance_submission_count == 1

    @pytest.mark.parametrize("field,value", [
        ("tentative_cost", "0"),
        ("tentative_cost", "lots"),
        ("tentative_cost", "inf"),
        ("tentative_cost", "NaN"),
        ("cost_deducted_from", "  "),
        ("remarks", "too short"),
    ])
    def test_submit_validation(self, eo, finance_officer, ticket, field, value):
        with pytest.raises(ValidationError) as exc_info:
            _submit(ticket, eo, finance_officer, **{field: value})
        assert field in exc_info.value.details
        assert _ticket_row(ticket["id"]).status == "created"

    def test_officer_must_have_finance_role(self, eo, employee, ticket):
        with pytest.raises(ValidationError, match="not a finance officer"):
            _submit(ticket, eo, employee)

    def test_second_pending_request_refused(self, eo, finance_officer, ticket):
        _submit(ticket, eo, finance_officer)
        with pytest.raises(ValidationError, match="already has a pending"):
            _submit(ticket, eo, finance_officer)

    def test_officers_and_pending_listing(self, client, eo, finance_officer, ticket):
        _submit(ticket, eo, finance_officer)
        officers = client.get("/api/v1/finance/officers").get_json()
        assert [o["id"] for o in officers["items"]] == [finance_officer.id]
        pending = client.get(f"/api/v1/finance/pending?finance_officer_id={finance_officer.id}").get_json()
        assert pending["total"] == 1


class TestDecide:
    def test_approve(self, eo, finance_officer, ticket):
        approval = _submit(ticket, eo, finance_officer)
        result = finance_service.approve_request(approval["id"], finance_officer.id, "Budget available")
        assert result["status"] == "approved"
        assert result["approval_remarks"] == "Budget available"
        assert result["decided_at"] is not None
        row = _ticket_row(ticket["id"])
        assert row.status == "approved_by_finance"
        assert row.latest_finance_status == "approved"

    def test_only_assigned_officer_decides(self, eo, finance_officer, make_user, ticket):
        approval = _submit(ticket, eo, finance_officer)
        other = make_user("fin.two", "finance")
        with pytest.raises(PermissionDeniedError):
            finance_service.approve_request(approval["id"], other.id)

    def test_decided_request_is_final(self, eo, finance_officer, ticket):
        approval = _submit(ticket, eo, finance_officer)
        finance_service.approve_request(approval["id"], finance_officer.id)
        with pytest.raises(ValidationError, match="already been processed"):
            finance_service.reject_request(approval["id"], finance_officer.id, REJECTION)

    def test_reject_reason_length(self, eo, finance_officer, ticket):
        approval = _submit(ticket, eo, finance_officer)
        with pytest.raises(ValidationError, match="at least 20"):
            finance_service.reject_request(approval["id"], finance_officer.id, "Too expensive")

    def test_reject_then_resubmit(self, eo, finance_officer, ticket):
        first = _submit(ticket, eo, finance_officer)
        finance_service.reject_request(first["id"], finance_officer.id, REJECTION)
        assert _ticket_row(ticket["id"]).status == "rejected_by_finance"

        _submit(ticket, eo, finance_officer, tentative_cost="9800")
        row = _ticket_row(ticket["id"])
        assert row.finance_submission_count == 2
        history = finance_service.get_history(ticket["id"])
        assert [h["status"] for h in history] == ["pending", "rejected"]

    def test_approve_with_document(self, eo, finance_officer, ticket):
        approval = _submit(ticket, eo, finance_officer)
        doc = UploadedFile(name="sanction letter.pdf", content_type="application/pdf", data=b"%PDF-1.4")
        result = finance_service.approve_request(approval["id"], finance_officer.id, None, doc)
        assert result["approval_document"]["name"] == "sanction letter.pdf"
        assert get_blob_store().exists("finance-approval-documents", result["approval_document"]["path"])

    def test_reject_via_multipart(self, client, eo, finance_officer, ticket):
        approval = _submit(ticket, eo, finance_officer)
        res = client.post(
            f"/api/v1/finance/{approval['id']}/reject",
            data={
                "rejection_reason": REJECTION,
                "document": (io.BytesIO(b"%PDF-1.4"), "memo.pdf", "application/pdf"),
            },
            headers=_h(finance_officer),
            content_type="multipart/form-data",
        )
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "rejected"
        assert body["approval_document"]["name"] == "memo.pdf"

    def test_submit_api_missing_fields(self, client, eo, ticket):
        res = client.post(f"/api/v1/tickets/{ticket['id']}/finance", json={"remarks": REMARKS},
                          headers=_h(eo))
        assert res.status_code == 400
