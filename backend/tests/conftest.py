"""Pytest configuration for isoscan: temp SQLite app, in-memory substrate, recording sink."""
from __future__ import annotations

from typing import Optional

import pytest

from fakes import InMemoryBackend, RecordingSink
from isoscan import create_app
from isoscan.config import Settings
from isoscan.extensions import db
from isoscan.models import ScanJob
from isoscan.scheduler import shutdown_scheduler


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_uri=f"sqlite:///{tmp_path / 'isoscan.db'}",
        substrate="memory",
        scheduler_enabled=False,
        persist_attempts=3,
        persist_backoff_seconds=0.0,
        persist_backoff_max_seconds=0.0,
        watch_workers=4,
        tenant_concurrency_limit=5,
        timeout_grace_seconds=0,
        unit_ttl_seconds=3600,
    )


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def app(settings, backend, sink):
    app = create_app(settings, backend=backend, sink=sink)
    app.config["TESTING"] = True
    yield app
    shutdown_scheduler()
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def engine(app):
    return app.extensions["isoscan"]


@pytest.fixture
def orchestrator(engine):
    return engine.orchestrator


@pytest.fixture
def tick(engine):
    """Run one watcher tick and drop stale ORM state in the test session."""
    def _tick():
        n = engine.watcher.tick()
        db.session.expire_all()
        return n
    return _tick


@pytest.fixture
def job_row():
    def _job(scan_id, scanner_id) -> Optional[ScanJob]:
        db.session.expire_all()
        return ScanJob.query.filter_by(scan_id=scan_id, scanner_id=scanner_id).first()
    return _job
