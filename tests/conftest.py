"""
Shared pytest fixtures for the GRC Core Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - plan: Pre-created AuditPlan (via the API)
    - cache_down: read-model cache backend that refuses every call
"""

import pytest
import redis

from grc import create_app
from grc.models import db as _db
from grc.services import cache_service


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


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
        # Ids are reused after every recreate; drop cached read models too.
        cache_service.clear_all()
        yield
        cache_service.clear_all()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def plan(client):
    """Create and return a test AuditPlan via the API."""
    res = client.post(
        "/api/audit-plans",
        json={"code": "AP-2026", "name": "Audit Plan 2026", "year": 2026},
    )
    assert res.status_code == 201
    return res.get_json()


class _UnreachableCache:
    """Cache backend whose every call fails like a dropped Redis connection."""

    def _refuse(self, *args, **kwargs):
        raise redis.exceptions.ConnectionError("Error 111 connecting to redis:6379. Connection refused.")

    get = setex = delete = scan_iter = flushdb = ping = _refuse


@pytest.fixture()
def cache_down(monkeypatch):
    """Swap the read-model cache for one that cannot be reached."""
    monkeypatch.setattr(cache_service, "_backend", _UnreachableCache())
