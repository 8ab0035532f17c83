from types import SimpleNamespace

import pytest
from sqlalchemy.exc import IntegrityError

from app.db.models import AuditLog, CancellationLog, CancellationRequest
from app.services.audit_logger import AuditLogger
from app.services.cancellation_store import CancellationStore
from app.services.errors import ActiveRequestConflict
from tests.fakes import FakeResult


def _unique_violation():
    return IntegrityError(
        "INSERT INTO cancellation_requests ...",
        {},
        Exception('duplicate key value violates unique constraint "uq_cancellation_requests_active_subscription"'),
    )


@pytest.mark.asyncio
async def test_create_request_writes_row_and_first_log_in_one_commit(fake_db):
    store = CancellationStore(fake_db)

    request = await store.create_request(
        user_id=7,
        subscription_id=1,
        method="api",
        status="pending",
        attempts=0,
        log={
            "orchestration_id": "orch_1",
            "action": "orchestration_initiated",
            "message": "Cancellation orchestration started",
        },
    )

    assert request.id.startswith("req_")
    assert isinstance(fake_db.added[0], CancellationRequest)
    log = fake_db.added[1]
    assert isinstance(log, CancellationLog)
    assert log.request_id == request.id
    assert log.level == "info"
    assert fake_db.commits == 1


@pytest.mark.asyncio
async def test_unique_violation_becomes_active_request_conflict(fake_db):
    fake_db.commit_error = _unique_violation()
    store = CancellationStore(fake_db)

    with pytest.raises(ActiveRequestConflict) as exc:
        await store.create_request(user_id=7, subscription_id=1, method="api", status="pending")

    assert "uq_cancellation_requests_active_subscription" in str(exc.value)
    assert fake_db.rollbacks == 1


@pytest.mark.asyncio
async def test_update_request_conflict_rolls_back(fake_db):
    fake_db.commit_error = _unique_violation()
    store = CancellationStore(fake_db)
    request = SimpleNamespace(status="failed", updated_at=None)

    with pytest.raises(ActiveRequestConflict):
        await store.update_request(request, status="pending")
    assert fake_db.rollbacks == 1


@pytest.mark.asyncio
async def test_append_log_failure_rolls_back_and_propagates(fake_db):
    fake_db.commit_error = RuntimeError("connection closed")
    store = CancellationStore(fake_db)

    with pytest.raises(RuntimeError):
        await store.append_log(action="method_attempt", level="info", message="x")
    assert fake_db.rollbacks == 1


@pytest.mark.asyncio
async def test_rejected_log_entry_unwinds_only_its_savepoint(fake_db):
    fake_db.flush_error = IntegrityError(
        "INSERT INTO cancellation_logs ...", {}, Exception("null value in column \"message\"")
    )
    store = CancellationStore(fake_db)

    with pytest.raises(IntegrityError):
        await store.append_log(action="method_succeeded", level="success", message=None)
    assert fake_db.savepoint_rollbacks == 1
    assert fake_db.rollbacks == 0
    assert fake_db.commits == 0


@pytest.mark.asyncio
async def test_current_status_reads_the_column(fake_db):
    fake_db.queue_result(FakeResult(scalar="cancelled"))
    assert await CancellationStore(fake_db).current_status("req_1") == "cancelled"


@pytest.mark.asyncio
async def test_find_request_by_reference_falls_back_to_external_reference(fake_db):
    row = SimpleNamespace(id="req_1", external_reference="auto_ref_1")
    fake_db.queue_result(FakeResult(fetchone=None))
    fake_db.queue_result(FakeResult(fetchone=row))
    store = CancellationStore(fake_db)

    assert await store.find_request_by_reference("auto_ref_1") is row


@pytest.mark.asyncio
async def test_list_requests_returns_rows_and_total(fake_db):
    rows = [SimpleNamespace(id="req_1"), SimpleNamespace(id="req_2")]
    fake_db.queue_result(FakeResult(fetchall=rows))
    fake_db.queue_result(FakeResult(scalar=5))
    store = CancellationStore(fake_db)

    items, total = await store.list_requests(7, statuses=("failed",), limit=2)

    assert items == rows
    assert total == 5


@pytest.mark.asyncio
async def test_status_breakdown(fake_db):
    fake_db.queue_result(FakeResult(fetchall=[("completed", 3), ("failed", 1)]))
    assert await CancellationStore(fake_db).status_breakdown(7) == {"completed": 3, "failed": 1}


@pytest.mark.asyncio
async def test_audit_logger_persists_entry(fake_db):
    audit = AuditLogger(fake_db, ip_address="10.0.0.1", user_agent="pytest")

    await audit.log(
        user_id=7,
        action="cancellation.orchestration_started",
        resource=1,
        result="success",
        metadata={"orchestration_id": "orch_1"},
    )

    entry = fake_db.added[0]
    assert isinstance(entry, AuditLog)
    assert entry.resource == "1"
    assert entry.ip_address == "10.0.0.1"
    assert entry.details == {"orchestration_id": "orch_1"}


@pytest.mark.asyncio
async def test_audit_logger_swallows_write_failures(fake_db):
    fake_db.commit_error = RuntimeError("audit table locked")
    audit = AuditLogger(fake_db)

    await audit.log(action="cancellation.user_cancelled", resource=1, result="success")

    assert fake_db.rollbacks == 1


@pytest.mark.asyncio
async def test_audit_logger_without_session_only_logs():
    await AuditLogger(None).log(action="x", resource=None, result="success")


@pytest.mark.asyncio
async def test_rejected_audit_entry_keeps_session_transaction(fake_db):
    fake_db.flush_error = IntegrityError(
        "INSERT INTO audit_logs ...", {}, Exception('null value in column "action"')
    )
    audit = AuditLogger(fake_db)

    await audit.log(action=None, resource=1, result="success")

    assert fake_db.savepoint_rollbacks == 1
    assert fake_db.rollbacks == 0
    assert fake_db.commits == 0
