"""
Shared pytest fixtures for the Tax Practice Operations test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - staff_user / tax_client: committed baseline rows
    - make_template / make_template_task / make_assignment: row factories

Factories commit: services own their transactions and roll back on
failure, so uncommitted fixture rows would vanish with them.
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.auth import User
from app.models.client import Client
from app.models.operations import (
    ClientOperationAssignment,
    OperationTemplate,
    OperationTemplateTask,
)


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
    app.config["APP_TIMEZONE"] = "UTC"
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def staff_user():
    user = User(email="preparer@example.com", first_name="Pat", last_name="Preparer", role="staff")
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def admin_user():
    user = User(email="owner@example.com", first_name="Olive", last_name="Owner", role="admin")
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def tax_client():
    c = Client(first_name="Ada", last_name="Lovelace", email="ada@example.com")
    _db.session.add(c)
    _db.session.commit()
    return c


@pytest.fixture()
def make_client():
    def _make(first_name="Grace", last_name="Hopper", **kw):
        c = Client(first_name=first_name, last_name=last_name, **kw)
        _db.session.add(c)
        _db.session.commit()
        return c
    return _make


@pytest.fixture()
def make_template():
    def _make(name="Monthly Bookkeeping", recurrence_type="monthly", **kw):
        kw.setdefault("category", "bookkeeping")
        kw.setdefault("is_active", True)
        kw.setdefault("auto_generate", True)
        template = OperationTemplate(name=name, recurrence_type=recurrence_type, **kw)
        _db.session.add(template)
        _db.session.commit()
        return template
    return _make


@pytest.fixture()
def make_template_task():
    def _make(template, title, position=None, **kw):
        kw.setdefault("is_active", True)
        kw.setdefault("evidence_required", False)
        kw.setdefault("dependency_template_task_ids", [])
        task = OperationTemplateTask(
            operation_template_id=template.id, title=title, position=position, **kw,
        )
        _db.session.add(task)
        _db.session.commit()
        return task
    return _make


@pytest.fixture()
def make_assignment():
    def _make(client, template, **kw):
        kw.setdefault("assignment_status", "active")
        kw.setdefault("auto_generate", True)
        assignment = ClientOperationAssignment(
            client_id=client.id, operation_template_id=template.id, **kw,
        )
        _db.session.add(assignment)
        _db.session.commit()
        return assignment
    return _make
