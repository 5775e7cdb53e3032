"""
Shared pytest fixtures for the WorkTrack test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - eo / employee / finance_officer / dept_officer: one user per role
    - ticket: Pre-created Ticket (via the service layer)
"""

import pytest

from worktrack import create_app
from worktrack.models import db as _db
from worktrack.models.auth import User
from worktrack.services import ticket_service


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        app.extensions["blob_store"].reset()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Users ────────────────────────────────────────────────────────────────


def _create_user(username: str, role: str, **kw) -> User:
    user = User(username=username, name=username.replace(".", " ").title(), role=role, **kw)
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def eo():
    return _create_user("eo.one", "eo")


@pytest.fixture()
def employee():
    return _create_user("emp.one", "employee")


@pytest.fixture()
def finance_officer():
    return _create_user("fin.one", "finance")


@pytest.fixture()
def dept_officer():
    return _create_user("dept.one", "dept_officer")


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def ticket(eo):
    """Create and return a test ticket (as a dict)."""
    return ticket_service.create_ticket({"title": "Leaking roof, block B"}, eo.id)


@pytest.fixture()
def make_user():
    """Factory for extra users: ``make_user("emp.two", "employee")``."""
    return _create_user
