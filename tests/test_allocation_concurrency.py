"""
WorkTrack
Tests — Concurrent writers against the allocation ledger.

Runs against a file-backed SQLite database so several threads hold their
own connections; the in-memory test database shares a single connection.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from worktrack import create_app
from worktrack.config import TestingConfig
from worktrack.core.exceptions import (
    BackendUnavailableError,
    CapacityExceededError,
    DependencyViolationError,
    NotFoundError,
)
from worktrack.models import db
from worktrack.models.auth import User
from worktrack.models.work_order import ItemAllocation, ItemDetail
from worktrack.services import allocation_service, catalog_service, ticket_service, workflow_service

WORKERS = 8
ATTEMPTS = 24
QUANTITY = 10


@pytest.fixture()
def race_app(tmp_path, monkeypatch):
    monkeypatch.setattr(TestingConfig, "SQLALCHEMY_DATABASE_URI", f"sqlite:///{tmp_path / 'race.db'}")
    monkeypatch.setattr(TestingConfig, "SQLALCHEMY_ENGINE_OPTIONS", {"connect_args": {"timeout": 30}})
    app = create_app("testing")
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


def _seed(app, details=1):
    with app.app_context():
        eo = User(username="eo.race", name="Race EO", role="eo")
        db.session.add(eo)
        db.session.commit()
        t = ticket_service.create_ticket({"title": "Re-roof warehouse"}, eo.id)
        entry = catalog_service.create_master(
            "item", {"code": "ITM-SHT-01", "description": "Roof sheet", "unit": "nos"}, eo.id,
        )
        detail_ids = [
            allocation_service.add_detail_to_ticket("item", t["id"], entry["id"], QUANTITY, actor_id=eo.id)["id"]
            for _ in range(details)
        ]
        steps = [
            workflow_service.add_step(t["id"], {"title": f"Bay {n}"}, eo.id)["id"]
            for n in range(1, 5)
        ]
        return eo.id, detail_ids, steps


def _run(app, calls):
    """Run each zero-arg callable on its own thread inside an app context."""

    def attempt(fn):
        with app.app_context():
            try:
                fn()
                return "ok"
            except CapacityExceededError:
                return "full"
            except DependencyViolationError:
                return "in_use"
            except NotFoundError:
                return "gone"
            except BackendUnavailableError:
                return "busy"
            finally:
                db.session.remove()

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        return list(pool.map(attempt, calls))


def _ledger(app, detail_id):
    with app.app_context():
        detail = db.session.get(ItemDetail, detail_id)
        total = sum(
            a.allocated_quantity
            for a in db.session.query(ItemAllocation).filter_by(detail_id=detail_id)
        )
        return detail, total


def test_concurrent_allocations_fill_capacity_exactly(race_app):
    eo_id, (detail_id,), steps = _seed(race_app)

    outcomes = _run(race_app, [
        (lambda n=n: allocation_service.allocate("item", detail_id, steps[n % len(steps)], 1, eo_id))
        for n in range(ATTEMPTS)
    ])

    assert outcomes.count("ok") == QUANTITY
    assert outcomes.count("full") == ATTEMPTS - QUANTITY
    assert "busy" not in outcomes

    detail, ledger_total = _ledger(race_app, detail_id)
    assert detail.allocated_quantity == detail.quantity == QUANTITY
    assert ledger_total == detail.allocated_quantity


def test_concurrent_allocation_updates_respect_capacity(race_app):
    eo_id, (detail_id,), steps = _seed(race_app)
    with race_app.app_context():
        allocation_ids = [
            allocation_service.allocate("item", detail_id, step_id, 1, eo_id)["id"]
            for step_id in steps
        ]

    # 4 allocated, 6 left: each update asks for 3 more, so exactly two fit.
    outcomes = _run(race_app, [
        (lambda a=a: allocation_service.update_allocation("item", a, 4, eo_id))
        for a in allocation_ids
    ])

    assert outcomes.count("ok") == 2
    assert outcomes.count("full") == 2

    detail, ledger_total = _ledger(race_app, detail_id)
    assert detail.allocated_quantity == QUANTITY
    assert ledger_total == detail.allocated_quantity


def test_detail_delete_racing_allocations(race_app):
    eo_id, detail_ids, steps = _seed(race_app, details=6)

    calls = []
    for detail_id in detail_ids:
        calls.append(lambda d=detail_id: allocation_service.delete_ticket_detail("item", d, eo_id))
        calls.extend(
            (lambda d=detail_id, s=s: allocation_service.allocate("item", d, s, 2, eo_id))
            for s in steps[:3]
        )
    outcomes = _run(race_app, calls)
    assert "busy" not in outcomes

    for i, detail_id in enumerate(detail_ids):
        delete_outcome, *alloc_outcomes = outcomes[i * 4:(i + 1) * 4]
        with race_app.app_context():
            detail = db.session.get(ItemDetail, detail_id)
            orphans = db.session.query(ItemAllocation).filter_by(detail_id=detail_id).count()
        if delete_outcome == "ok":
            assert detail is None
            assert orphans == 0
            assert set(alloc_outcomes) <= {"gone"}
        else:
            assert delete_outcome == "in_use"
            assert detail is not None
            assert orphans == alloc_outcomes.count("ok") >= 1
            assert detail.allocated_quantity == 2 * orphans
