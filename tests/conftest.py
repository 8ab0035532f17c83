import os

os.environ.setdefault("TESTING", "1")

import httpx

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.api import cancellation_routes
from app.core.config import settings
from app.db import session as db_session
from app.services.capability_service import (
    CapabilityAssessor,
    CapabilityCache,
    capability_cache,
)
from app.services.cancellation_orchestrator import (
    CancellationOrchestrator,
    attach_service_observers,
)
from app.services.event_bus import CancellationEventBus
from app.services.orchestration_tracker import OrchestrationTracker
from app.utils.cancellation_clients import CollaboratorSet
from tests.fakes import (
    FakeApiClient,
    FakeAudit,
    FakeAutomationClient,
    FakeDB,
    FakeManualClient,
    FakeStore,
)

# ----------------------------
# Fixtures
# ----------------------------


@pytest.fixture
def fake_db():
    return FakeDB()


@pytest.fixture(autouse=True)
def override_db(fake_db):
    async def _fake_dependency():
        yield fake_db

    app.dependency_overrides[db_session.get_db] = _fake_dependency
    yield
    app.dependency_overrides.pop(db_session.get_db, None)


@pytest.fixture(autouse=True)
def reset_capability_cache():
    capability_cache.clear()
    yield
    capability_cache.clear()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def audit():
    return FakeAudit()


@pytest.fixture
def collaborators():
    return CollaboratorSet(
        api=FakeApiClient(), automation=FakeAutomationClient(), manual=FakeManualClient()
    )


@pytest.fixture
def event_bus():
    return CancellationEventBus()


@pytest.fixture
def tracker(event_bus):
    tracker = OrchestrationTracker(event_bus)
    attach_service_observers(event_bus, tracker)
    return tracker


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(store, audit, collaborators, tracker, event_bus, sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)

    return CancellationOrchestrator(
        store,
        audit,
        collaborators,
        tracker=tracker,
        event_bus=event_bus,
        assessor=CapabilityAssessor(store, CapabilityCache()),
        delay_seconds=1.0,
        sleep=_sleep,
    )


@pytest.fixture
def override_services(store, audit, collaborators, monkeypatch):
    monkeypatch.setattr(settings, "CANCELLATION_FALLBACK_DELAY_SECONDS", 0)
    app.dependency_overrides[cancellation_routes.get_store] = lambda: store
    app.dependency_overrides[cancellation_routes.get_audit_logger] = lambda: audit
    app.dependency_overrides[cancellation_routes.get_collaborators] = lambda: collaborators
    yield
    for dep in (
        cancellation_routes.get_store,
        cancellation_routes.get_audit_logger,
        cancellation_routes.get_collaborators,
    ):
        app.dependency_overrides.pop(dep, None)


@pytest.fixture
def sync_client():
    return TestClient(app)


@pytest.fixture
async def async_client():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
