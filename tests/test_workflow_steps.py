"""
WorkTrack
Tests — Workflow step tree.

Covers:
    - Step numbering and the 3-level depth limit
    - Bulk import with per-row results
    - Dependencies: self, cross-ticket and circular edges; locking
    - Serial completion gate (all / any_one)
    - Update permissions, subtree delete, comments
"""

import pytest

from worktrack.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from worktrack.models import db
from worktrack.models.ticket import WorkflowStep
from worktrack.services import ticket_service, workflow_service


def _h(user):
    return {"X-User-Id": str(user.id)}


def _step(ticket_id, actor_id, title, **kw):
    data = {"title": title}
    data.update(kw)
    return workflow_service.add_step(ticket_id, data, actor_id)


# ═════════════════════════════════════════════════════════════════════════════
# TREE
# ═════════════════════════════════════════════════════════════════════════════

class TestStepTree:
    def test_root_steps_numbered_in_order(self, eo, ticket):
        s1 = _step(ticket["id"], eo.id, "Survey")
        s2 = _step(ticket["id"], eo.id, "Repair")
        assert s1["step_number"] == "1.0.0"
        assert s2["step_number"] == "2.0.0"
        assert s1["depth"] == 1
        assert s1["is_parallel"] is True
        assert s1["dependency_mode"] == "all"

    def test_sub_steps_numbered_under_parent(self, eo, ticket):
        root = _step(ticket["id"], eo.id, "Repair")
        child = _step(ticket["id"], eo.id, "Remove tiles", parent_step_id=root["id"])
        grandchild = _step(ticket["id"], eo.id, "Dispose debris", parent_step_id=child["id"])
        assert child["step_number"] == "1.1.0"
        assert grandchild["step_number"] == "1.1.1"
        assert grandchild["parent_step_id"] == child["id"]

    def test_depth_limit(self, eo, ticket):
        root = _step(ticket["id"], eo.id, "L1")
        child = _step(ticket["id"], eo.id, "L2", parent_step_id=root["id"])
        grandchild = _step(ticket["id"], eo.id, "L3", parent_step_id=child["id"])
        with pytest.raises(ValidationError, match="Maximum hierarchy depth"):
            _step(ticket["id"], eo.id, "L4", parent_step_id=grandchild["id"])

    def test_parent_on_other_ticket_not_found(self, eo, ticket):
        other = ticket_service.create_ticket({"title": "Other"}, eo.id)
        foreign = _step(other["id"], eo.id, "Foreign")
        with pytest.raises(NotFoundError):
            _step(ticket["id"], eo.id, "Child", parent_step_id=foreign["id"])

    def test_progress_out_of_range(self, eo, ticket):
        with pytest.raises(ValidationError):
            _step(ticket["id"], eo.id, "Bad", progress=140)

    def test_delete_subtree(self, eo, ticket):
        root = _step(ticket["id"], eo.id, "Repair")
        child = _step(ticket["id"], eo.id, "Sub", parent_step_id=root["id"])
        keep = _step(ticket["id"], eo.id, "Handover")
        result = workflow_service.delete_step(ticket["id"], root["id"], eo.id)
        assert sorted(result["deleted_step_ids"]) == sorted([root["id"], child["id"]])
        remaining = [s["id"] for s in workflow_service.list_steps(ticket["id"])]
        assert remaining == [keep["id"]]

    def test_delete_clears_dependencies_on_removed_step(self, eo, ticket):
        a = _step(ticket["id"], eo.id, "A")
        b = _step(ticket["id"], eo.id, "B", dependent_on_step_ids=[a["id"]])
        workflow_service.delete_step(ticket["id"], a["id"], eo.id)
        step = db.session.get(WorkflowStep, b["id"], populate_existing=True)
        assert step.dependency_ids() == []


# ═════════════════════════════════════════════════════════════════════════════
# BULK
# ═════════════════════════════════════════════════════════════════════════════

class TestBulkSteps:
    def test_partial_failure_reported_per_row(self, eo, ticket):
        result = workflow_service.add_steps_bulk(
            ticket["id"],
            [{"title": "Survey"}, {"title": "Quote"}, {"title": "  "}, {"title": "Bad", "status": "nope"}],
            eo.id,
        )
        assert result["success_count"] == 2
        assert result["failed_count"] == 2
        assert result["total_count"] == 4
        assert result["errors"][0] == {"index": 2, "title": "", "error": "Title is required"}
        assert result["errors"][1]["index"] == 3
        assert "Invalid status" in result["errors"][1]["error"]
        assert len(workflow_service.list_steps(ticket["id"])) == 2

    def test_non_object_rows_fail_on_their_own(self, eo, ticket):
        result = workflow_service.add_steps_bulk(
            ticket["id"], ["Survey", None, 42, {"title": "Quote"}, {"title": ["x"]}], eo.id,
        )
        assert result["success_count"] == 1
        assert result["failed_count"] == 4
        assert [e["index"] for e in result["errors"]] == [0, 1, 2, 4]
        assert result["errors"][0] == {"index": 0, "title": "", "error": "Row must be an object"}
        assert result["errors"][3]["error"] == "Title is required"
        assert [s["title"] for s in workflow_service.list_steps(ticket["id"])] == ["Quote"]

    @pytest.mark.parametrize("field, value", [
        ("mandatory_documents", "Invoice"),
        ("mandatory_documents", ["Invoice", ""]),
        ("optional_documents", [{"name": "Photo"}]),
        ("optional_documents", 7),
        ("dependent_on_step_ids", 3),
        ("status", ["wip"]),
        ("dependency_mode", {"all": True}),
    ])
    def test_mistyped_fields_are_row_errors(self, eo, ticket, field, value):
        result = workflow_service.add_steps_bulk(
            ticket["id"], [{"title": "Bad", field: value}, {"title": "Good"}], eo.id,
        )
        assert result["success_count"] == 1
        assert result["errors"][0]["index"] == 0
        assert [s["title"] for s in workflow_service.list_steps(ticket["id"])] == ["Good"]

    def test_document_lists_stripped_and_deduplicated(self, eo, ticket):
        step = _step(ticket["id"], eo.id, "Handover",
                     mandatory_documents=[" Invoice ", "Invoice", "Photos"])
        assert step["mandatory_documents"] == ["Invoice", "Photos"]
        assert step["optional_documents"] == []

    def test_bulk_under_parent(self, eo, ticket):
        root = _step(ticket["id"], eo.id, "Repair")
        result = workflow_service.add_steps_bulk(
            ticket["id"], [{"title": "a"}, {"title": "b"}], eo.id, parent_step_id=root["id"],
        )
        numbers = [db.session.get(WorkflowStep, i).step_number for i in result["created_step_ids"]]
        assert numbers == ["1.1.0", "1.2.0"]

    def test_bulk_api_all_failed_is_422(self, client, eo, ticket):
        res = client.post(f"/api/v1/tickets/{ticket['id']}/steps/bulk",
                          json={"steps": [{"title": ""}]}, headers=_h(eo))
        assert res.status_code == 422
        assert res.get_json()["failed_count"] == 1

    def test_bulk_api_partial_is_201(self, client, eo, ticket):
        res = client.post(f"/api/v1/tickets/{ticket['id']}/steps/bulk",
                          json={"steps": [{"title": "ok"}, {}]}, headers=_h(eo))
        assert res.status_code == 201
        assert res.get_json()["success_count"] == 1


# ═════════════════════════════════════════════════════════════════════════════
# DEPENDENCIES & COMPLETION
# ═════════════════════════════════════════════════════════════════════════════

class TestDependencies:
    def test_self_dependency_rejected(self, eo, ticket):
        a = _step(ticket["id"], eo.id, "A")
        with pytest.raises(ValidationError, match="cannot depend on itself"):
            workflow_service.set_dependencies(ticket["id"], a["id"], [a["id"]], eo.id)

    def test_circular_dependency_rejected(self, eo, ticket):
        a = _step(ticket["id"], eo.id, "A")
        b = _step(ticket["id"], eo.id, "B", dependent_on_step_ids=[a["id"]])
        c = _step(ticket["id"], eo.id, "C", dependent_on_step_ids=[b["id"]])
        with pytest.raises(ValidationError, match="circular"):
            workflow_service.set_dependencies(ticket["id"], a["id"], [c["id"]], eo.id)

    def test_cross_ticket_dependency_rejected(self, eo, ticket):
        other = ticket_service.create_ticket({"title": "Other"}, eo.id)
        foreign = _step(other["id"], eo.id, "Foreign")
        with pytest.raises(ValidationError, match="does not exist on this ticket"):
            _step(ticket["id"], eo.id, "Local", dependent_on_step_ids=[foreign["id"]])

    def test_dependencies_lock_for_non_eo(self, eo, employee, ticket):
        a = _step(ticket["id"], eo.id, "A")
        b = _step(ticket["id"], eo.id, "B", dependent_on_step_ids=[a["id"]], assigned_to=employee.id)
        assert b["is_dependency_locked"] is True
        with pytest.raises(PermissionDeniedError, match="locked"):
            workflow_service.set_dependencies(ticket["id"], b["id"], [], employee.id)
        updated = workflow_service.set_dependencies(ticket["id"], b["id"], [], eo.id)
        assert updated["dependent_on_step_ids"] == []
        assert updated["is_dependency_locked"] is False

    def test_serial_all_mode_blocks_completion(self, eo, ticket):
        a = _step(ticket["id"], eo.id, "A")
        b = _step(ticket["id"], eo.id, "B")
        c = _step(ticket["id"], eo.id, "C", is_parallel=False, dependent_on_step_ids=[a["id"], b["id"]])
        with pytest.raises(ValidationError, match="All dependencies must be completed"):
            workflow_service.update_step(ticket["id"], c["id"], {"status": "completed"}, eo.id)
        assert db.session.get(WorkflowStep, c["id"], populate_existing=True).status == "not_started"

        workflow_service.update_step(ticket["id"], a["id"], {"status": "completed"}, eo.id)
        workflow_service.update_step(ticket["id"], b["id"], {"status": "closed"}, eo.id)
        done = workflow_service.update_step(ticket["id"], c["id"], {"status": "completed"}, eo.id)
        assert done["status"] == "completed"
        assert done["progress"] == 100
        assert done["completed_at"] is not None

    def test_serial_any_one_mode(self, eo, ticket):
        a = _step(ticket["id"], eo.id, "A")
        b = _step(ticket["id"], eo.id, "B")
        c = _step(ticket["id"], eo.id, "C", is_parallel=False, dependency_mode="any_one",
                  dependent_on_step_ids=[a["id"], b["id"]])
        check = workflow_service.validate_step_completion(db.session.get(WorkflowStep, c["id"]))
        assert check["can_complete"] is False
        assert check["message"] == "At least one dependency must be completed first"

        workflow_service.update_step(ticket["id"], b["id"], {"status": "completed"}, eo.id)
        check = workflow_service.validate_step_completion(
            db.session.get(WorkflowStep, c["id"], populate_existing=True)
        )
        assert check["can_complete"] is True
        assert [d["id"] for d in check["incomplete_dependencies"]] == [a["id"]]

    def test_parallel_step_ignores_dependencies(self, eo, ticket):
        a = _step(ticket["id"], eo.id, "A")
        b = _step(ticket["id"], eo.id, "B", dependent_on_step_ids=[a["id"]])
        done = workflow_service.update_step(ticket["id"], b["id"], {"status": "completed"}, eo.id)
        assert done["status"] == "completed"

    def test_completion_check_endpoint(self, client, eo, ticket):
        a = _step(ticket["id"], eo.id, "A")
        b = _step(ticket["id"], eo.id, "B", is_parallel=False, dependent_on_step_ids=[a["id"]])
        res = client.get(f"/api/v1/tickets/{ticket['id']}/steps/{b['id']}/completion-check")
        assert res.status_code == 200
        body = res.get_json()
        assert body["can_complete"] is False
        assert body["incomplete_dependencies"][0]["id"] == a["id"]


# ═════════════════════════════════════════════════════════════════════════════
# UPDATE PERMISSIONS & COMMENTS
# ═════════════════════════════════════════════════════════════════════════════

class TestStepUpdates:
    def test_unassigned_employee_cannot_update(self, eo, employee, ticket):
        s = _step(ticket["id"], eo.id, "Paint")
        with pytest.raises(PermissionDeniedError, match="only update workflow steps that are assigned to you"):
            workflow_service.update_step(ticket["id"], s["id"], {"status": "wip"}, employee.id)

    def test_assignee_can_update(self, eo, employee, ticket):
        s = _step(ticket["id"], eo.id, "Paint", assigned_to=employee.id)
        updated = workflow_service.update_step(ticket["id"], s["id"], {"status": "wip"}, employee.id)
        assert updated["status"] == "wip"
        assert updated["start_date"] is not None

    def test_update_api_forbidden(self, client, eo, employee, ticket):
        s = _step(ticket["id"], eo.id, "Paint")
        res = client.put(f"/api/v1/tickets/{ticket['id']}/steps/{s['id']}",
                         json={"title": "Repaint"}, headers=_h(employee))
        assert res.status_code == 403

    def test_update_writes_status_audit(self, eo, ticket):
        s = _step(ticket["id"], eo.id, "Paint")
        workflow_service.update_step(ticket["id"], s["id"], {"status": "wip"}, eo.id, remarks="Crew on site")
        trail = ticket_service.get_audit_trail(ticket["id"])
        assert trail[0]["action"] == "WORKFLOW_UPDATED"
        assert trail[0]["action_category"] == "status_change"
        assert trail[0]["description"] == "Crew on site"

    def test_comments_round_trip_through_api(self, client, eo, ticket):
        s = _step(ticket["id"], eo.id, "Paint")
        res = client.post(f"/api/v1/steps/{s['id']}/comments", json={"content": "Primer delayed"},
                          headers=_h(eo))
        assert res.status_code == 201
        listing = client.get(f"/api/v1/steps/{s['id']}/comments").get_json()
        assert listing["total"] == 1
        assert listing["items"][0]["content"] == "Primer delayed"

    def test_empty_comment_rejected(self, eo, ticket):
        s = _step(ticket["id"], eo.id, "Paint")
        with pytest.raises(ValidationError):
            workflow_service.add_step_comment(s["id"], "   ", eo.id)

    def test_add_step_api_requires_title(self, client, eo, ticket):
        res = client.post(f"/api/v1/tickets/{ticket['id']}/steps", json={}, headers=_h(eo))
        assert res.status_code == 400
