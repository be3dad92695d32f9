"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta
from typing import List

import pytest

from ptw.core.config import Settings
from ptw.core.permit import NotificationSink, PermitEvent, PermitLifecycleService, PermitLockRegistry
from ptw.db.session import init_db, make_engine, make_session_factory


class FixedClock:
    """Deterministic clock; tests move it forward explicitly."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingSink(NotificationSink):
    """Keeps every dispatched event in memory."""

    def __init__(self):
        self.events: List[PermitEvent] = []

    def dispatch(self, event: PermitEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> List[str]:
        return [event.event_type.value for event in self.events]


@pytest.fixture
def clock():
    """Clock fixed at Monday 2025-01-06 08:00 UTC."""
    return FixedClock(datetime(2025, 1, 6, 8, 0))


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        lock_timeout_seconds=5.0,
        max_conflict_retries=3,
        extension_auto_apply=True,
        reminder_lead_minutes=30,
    )


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite database so worker threads see each other's commits."""
    engine = make_engine(f"sqlite:///{tmp_path / 'ptw.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def locks():
    return PermitLockRegistry()


@pytest.fixture
def service(session_factory, sink, locks, settings, clock):
    return PermitLifecycleService(
        session_factory,
        notifier=sink,
        locks=locks,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def client(service, session_factory):
    """API client wired to the test database and service."""
    from fastapi.testclient import TestClient

    from ptw.api.deps import get_db, get_lifecycle_service
    from ptw.api.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_lifecycle_service] = lambda: service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
