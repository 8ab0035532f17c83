"""Orchestration against a real async session (SQLite through aiosqlite)."""

import pytest
from sqlalchemy import event, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.models import (
    AuditLog,
    Base,
    CancellationLog,
    CancellationProvider,
    CancellationRequest,
    Subscription,
    User,
)
from app.services.audit_logger import AuditLogger
from app.services.cancellation_orchestrator import CancellationOrchestrator
from app.services.cancellation_store import CancellationStore
from app.services.capability_service import CapabilityAssessor, CapabilityCache


class NullMessageStore(CancellationStore):
    """Writes the success log entry without its required message."""

    async def append_log(self, *, action, **fields):
        if action == "method_succeeded":
            fields["message"] = None
        return await super().append_log(action=action, **fields)


class NullActionAudit(AuditLogger):
    async def log(self, *, action, **fields):
        if action == "cancellation.api_method_success":
            action = None
        await super().log(action=action, **fields)


@pytest.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)

    # pysqlite opens transactions lazily; SAVEPOINT needs an explicit BEGIN.
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )
    async with factory() as session:
        session.add(User(id=7, email="user@example.com"))
        session.add(Subscription(id=1, user_id=7, name="Netflix", amount=15.99))
        session.add(
            CancellationProvider(
                name="Netflix",
                normalized_name="netflix",
                type="api",
                api_endpoint="https://api.example.com/cancel",
                success_rate=0.9,
                average_time=5,
                difficulty="easy",
            )
        )
        await session.commit()

    yield factory
    await engine.dispose()


@pytest.mark.asyncio
async def test_rejected_log_and_audit_rows_do_not_fail_the_cancellation(
    session_factory, collaborators, tracker, event_bus
):
    async def _sleep(seconds):
        return None

    async with session_factory() as session:
        store = NullMessageStore(session)
        orchestrator = CancellationOrchestrator(
            store,
            NullActionAudit(session),
            collaborators,
            tracker=tracker,
            event_bus=event_bus,
            assessor=CapabilityAssessor(store, CapabilityCache()),
            delay_seconds=0,
            sleep=_sleep,
        )

        result = await orchestrator.initiate_cancellation(7, {"subscriptionId": 1})

    assert result.success, result.error
    assert result.status == "completed"
    assert result.method == "api"
    assert result.confirmation_code == "CONF-123"

    async with session_factory() as session:
        subscription = (
            await session.execute(select(Subscription).where(Subscription.id == 1))
        ).scalars().first()
        assert subscription.status == "cancelled"
        assert subscription.is_active is False

        request = (
            await session.execute(
                select(CancellationRequest).where(CancellationRequest.id == result.request_id)
            )
        ).scalars().first()
        assert request.status == "completed"
        assert request.external_reference == "api_ref_1"

        actions = (
            await session.execute(
                select(CancellationLog.action)
                .where(CancellationLog.request_id == result.request_id)
                .order_by(CancellationLog.id)
            )
        ).scalars().all()
        assert "method_succeeded" not in actions
        assert actions[-1] == "orchestration_completed"

        audited = (await session.execute(select(AuditLog.action))).scalars().all()
        assert "cancellation.orchestration_started" in audited
        assert None not in audited


@pytest.mark.asyncio
async def test_savepoint_failure_keeps_loaded_request_usable(session_factory):
    async with session_factory() as session:
        store = CancellationStore(session)
        request = await store.create_request(
            user_id=7, subscription_id=1, method="api", status="pending", attempts=0
        )

        with pytest.raises(IntegrityError):
            await store.append_log(
                action="method_succeeded", level="success", message=None, request_id=request.id
            )

        # Still loaded: no lazy refresh is needed to read or update it.
        assert request.status == "pending"
        await store.update_request(request, status="processing", attempts=1)
        assert await store.current_status(request.id) == "processing"
