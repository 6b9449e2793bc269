"""Test fixtures for the reimbursement service."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from reimbursement_web import AppConfig, create_app
from reimbursement_web.repositories import ReimbursementRepository
from reimbursement_web.workflow import Actor


class FixedClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture()
def app(tmp_path: Path):
    """Return a Flask app configured for testing."""

    db_path = tmp_path / "test.db"
    uploads = tmp_path / "uploads"
    config = AppConfig(
        database_url=f"sqlite:///{db_path}",
        uploads_dir=uploads,
        secret_key="testing",
        max_content_length=1024 * 1024,
    )
    application = create_app(config)
    application.config.update(TESTING=True)
    yield application


@pytest.fixture()
def client(app):
    """Return a Flask test client."""

    return app.test_client()


@pytest.fixture()
def clock():
    """Return a clock pinned to 10 March 2025, 09:00 UTC."""

    return FixedClock(datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture()
def repo(app, clock):
    """Return a repository sharing the app's engine and event bus."""

    return ReimbursementRepository(
        app.config["DB_ENGINE"],
        events=app.extensions["reimbursements"]["events"],
        clock=clock,
    )


@pytest.fixture()
def admin():
    return Actor("admin-1", is_admin=True)


@pytest.fixture()
def employee():
    return Actor("emp-1")


@pytest.fixture()
def admin_headers():
    return {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin"}


@pytest.fixture()
def employee_headers():
    return {"X-Actor-Id": "emp-1", "X-Actor-Role": "employee"}
