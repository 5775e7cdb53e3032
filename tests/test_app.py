"""
WorkTrack
Tests — Application shell: health checks, middleware, CLI, blob storage.
"""

import json
import logging

import pytest
from flask import g

from worktrack.core.exceptions import NotFoundError, PermissionDeniedError
from worktrack.middleware.logging_config import JSONFormatter, RequestContextFilter, TextFormatter
from worktrack.models import db
from worktrack.models.auth import User
from worktrack.models.work_order import ItemDetail
from worktrack.seed_data import DEMO_USERS, ITEM_CATALOG, SPEC_CATALOG
from worktrack.services import allocation_service, catalog_service, signed_url_service, workflow_service
from worktrack.storage import LocalBlobStore


# ═════════════════════════════════════════════════════════════════════════════
# HEALTH & MIDDLEWARE
# ═════════════════════════════════════════════════════════════════════════════

def test_health_ready(client):
    res = client.get("/api/v1/health/ready")
    assert res.status_code == 200
    assert res.get_json()["status"] == "ok"


def test_health_live_reports_dependencies(client):
    res = client.get("/api/v1/health/live")
    assert res.status_code == 200
    checks = res.get_json()["checks"]
    assert checks["database"]["status"] == "ok"
    assert checks["blob_store"] == {"status": "ok", "backend": "memory"}


def test_request_id_header_echoed(client):
    res = client.get("/api/v1/tickets", headers={"X-Request-ID": "abc123"})
    assert res.headers["X-Request-ID"] == "abc123"
    assert "X-Request-Duration-Ms" in res.headers


def test_unknown_route_json_404(client):
    res = client.get("/api/v1/nope")
    assert res.status_code == 404
    assert res.get_json()["path"] == "/api/v1/nope"


def test_form_encoded_write_rejected(client, eo):
    res = client.post("/api/v1/tickets", data="title=x",
                      headers={"X-User-Id": str(eo.id), "Content-Type": "application/x-www-form-urlencoded"})
    assert res.status_code == 415


def test_json_formatter_includes_domain_fields():
    record = logging.LogRecord("worktrack.test", logging.WARNING, __file__, 1, "Allocation rejected", None, None)
    record.detail_id = 7
    record.kind = "item"
    out = json.loads(JSONFormatter().format(record))
    assert out["message"] == "Allocation rejected"
    assert out["detail_id"] == 7
    assert out["kind"] == "item"


def test_request_context_stamped_on_records(app):
    record = logging.LogRecord("worktrack.test", logging.INFO, __file__, 1, "Allocated", None, None)
    with app.test_request_context("/api/v1/item-allocations"):
        g.request_id = "req42"
        g.current_user_id = 5
        assert RequestContextFilter().filter(record) is True
    assert record.request_id == "req42"
    assert record.user_id == 5

    record.detail_id = 9
    line = TextFormatter().format(record)
    assert line.endswith("Allocated  [req=req42 user=5 detail=9]")


def test_filter_outside_request_leaves_record_alone():
    record = logging.LogRecord("worktrack.test", logging.INFO, __file__, 1, "Seeded", None, None)
    assert RequestContextFilter().filter(record) is True
    assert getattr(record, "user_id", None) is None
    assert TextFormatter().format(record).endswith("worktrack.test: Seeded")


# ═════════════════════════════════════════════════════════════════════════════
# SIGNED URLS & STORAGE
# ═════════════════════════════════════════════════════════════════════════════

def test_signed_url_round_trip():
    url = signed_url_service.create_signed_url("step-documents", "1/attachments/a.pdf")
    token = url.rsplit("/", 1)[-1]
    assert signed_url_service.decode_blob_token(token) == ("step-documents", "1/attachments/a.pdf")


def test_signed_url_rejects_garbage():
    with pytest.raises(PermissionDeniedError):
        signed_url_service.decode_blob_token("not-a-token")


def test_local_blob_store(tmp_path):
    store = LocalBlobStore(str(tmp_path))
    store.upload("step-documents", "1/a.pdf", b"data", "application/pdf")
    assert store.exists("step-documents", "1/a.pdf")
    assert store.download("step-documents", "1/a.pdf") == b"data"
    store.remove("step-documents", ["1/a.pdf", "1/missing.pdf"])
    assert not store.exists("step-documents", "1/a.pdf")
    with pytest.raises(NotFoundError):
        store.download("step-documents", "1/a.pdf")


def test_local_blob_store_refuses_escape(tmp_path):
    store = LocalBlobStore(str(tmp_path / "blobs"))
    with pytest.raises(NotFoundError):
        store.upload("step-documents", "../../etc/passwd", b"x", "text/plain")


# ═════════════════════════════════════════════════════════════════════════════
# CLI
# ═════════════════════════════════════════════════════════════════════════════

def test_seed_demo_is_idempotent(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["seed-demo"])
    assert result.exit_code == 0
    assert f"Seeded {len(DEMO_USERS)} users, {len(ITEM_CATALOG)} items, {len(SPEC_CATALOG)} specs." in result.output

    again = runner.invoke(args=["seed-demo"])
    assert "Seeded 0 users, 0 items, 0 specs." in again.output
    assert db.session.query(User).count() == len(DEMO_USERS)


def test_reconcile_allocations_command(app, eo, ticket):
    entry = catalog_service.create_master("item", {"code": "ITM-X", "description": "Sheet"}, eo.id)
    detail = allocation_service.add_detail_to_ticket("item", ticket["id"], entry["id"], 10, actor_id=eo.id)
    step = workflow_service.add_step(ticket["id"], {"title": "Fix"}, eo.id)
    allocation_service.allocate("item", detail["id"], step["id"], 4, eo.id)
    db.session.get(ItemDetail, detail["id"]).allocated_quantity = 9
    db.session.commit()

    result = app.test_cli_runner().invoke(args=["reconcile-allocations", "--ticket-id", str(ticket["id"])])
    assert result.exit_code == 0
    line = next(ln for ln in result.output.splitlines() if ln.startswith(f"item detail {detail['id']}:"))
    assert "stored=9" in line and "ledger=4" in line and line.endswith("[fixed]")
    assert "1 detail(s) drifted." in result.output
    assert db.session.get(ItemDetail, detail["id"], populate_existing=True).allocated_quantity == 4
