"""In-memory stand-ins for the database, audit trail and collaborators."""

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from app.db.models import ACTIVE_REQUEST_STATUSES
from app.services.capability_service import normalize_provider_name
from app.services.errors import ActiveRequestConflict
from app.utils.cancellation_clients import (
    ApiCancellationClient,
    ApiCancellationResponse,
    AutomationWorkflowClient,
    AutomationWorkflowResponse,
    CollaboratorError,
    ManualInstructionClient,
    ManualInstructionResponse,
    ManualInstructions,
)


def utcnow():
    return datetime.now(timezone.utc)


# ----------------------------
# Raw session fakes (store / audit level tests)
# ----------------------------


@dataclass
class FakeRow:
    data: Dict[str, Any]

    def __getattr__(self, item):
        return self.data.get(item)


class FakeResult:
    def __init__(
        self,
        fetchone: Optional[Any] = None,
        fetchall: Optional[List[Any]] = None,
        scalar: Optional[Any] = None,
    ):
        self._fetchone = fetchone
        self._fetchall = fetchall or []
        self._scalar = scalar

    def fetchone(self):
        return self._fetchone

    def scalar(self):
        return self._scalar

    def fetchall(self):
        return self._fetchall

    def scalars(self):
        return self

    def first(self):
        return self._fetchone

    def all(self):
        return self._fetchall


class _Savepoint:
    def __init__(self, db):
        self.db = db

    async def __aenter__(self):
        self.db.savepoints += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None and self.db.flush_error is not None:
            self.db.savepoint_rollbacks += 1
            raise self.db.flush_error
        if exc_type is not None:
            self.db.savepoint_rollbacks += 1
        return False


class FakeDB:
    def __init__(self):
        self.execute_results = []
        self.added = []
        self.commits = 0
        self.rollbacks = 0
        self.savepoints = 0
        self.savepoint_rollbacks = 0
        self.commit_error: Optional[Exception] = None
        # Raised when a savepoint flushes, like a constraint violation would be.
        self.flush_error: Optional[Exception] = None

    def queue_result(self, result):
        self.execute_results.append(result)

    def begin_nested(self):
        return _Savepoint(self)

    async def execute(self, *args, **kwargs):
        if self.execute_results:
            return self.execute_results.pop(0)
        return FakeResult()

    def add(self, obj):
        self.added.append(obj)

    async def commit(self):
        if self.commit_error is not None:
            raise self.commit_error
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1


# ----------------------------
# In-memory store
# ----------------------------


class FakeStore:
    """Dictionary-backed stand-in for CancellationStore.

    Enforces the one-active-request-per-subscription rule the same way the
    partial unique index does: by raising ActiveRequestConflict on write.
    """

    def __init__(self):
        self.subscriptions: Dict[int, SimpleNamespace] = {}
        self.providers: Dict[str, SimpleNamespace] = {}
        self.requests: Dict[str, SimpleNamespace] = {}
        self.logs: List[SimpleNamespace] = []
        self.fail_logs = False
        self.fail_queries = False
        self._ids = count(1)
        self._log_ids = count(1)

    # ----- seeding -----

    def add_subscription(self, id=1, user_id=7, name="Netflix", status="active", **extra):
        sub = SimpleNamespace(
            id=id,
            user_id=user_id,
            name=name,
            status=status,
            is_active=status != "cancelled",
            amount=extra.pop("amount", 15.99),
            frequency=extra.pop("frequency", "monthly"),
            next_billing=extra.pop("next_billing", None),
            cancellation_info=extra.pop("cancellation_info", None),
            **extra,
        )
        self.subscriptions[id] = sub
        return sub

    def add_provider(self, name="Netflix", **fields):
        provider = SimpleNamespace(
            id=fields.pop("id", len(self.providers) + 1),
            name=name,
            normalized_name=normalize_provider_name(name),
            type=fields.pop("type", "api"),
            api_endpoint=fields.pop("api_endpoint", "https://api.example.com/cancel"),
            success_rate=fields.pop("success_rate", 0.9),
            average_time=fields.pop("average_time", 5),
            difficulty=fields.pop("difficulty", "easy"),
            requires_2fa=fields.pop("requires_2fa", False),
            requires_retention=fields.pop("requires_retention", False),
            login_url=fields.pop("login_url", None),
            logo=fields.pop("logo", None),
            category=fields.pop("category", "streaming"),
            phone_number=fields.pop("phone_number", None),
            email=fields.pop("email", None),
            chat_url=fields.pop("chat_url", None),
            instructions=fields.pop("instructions", None),
            is_active=fields.pop("is_active", True),
            **fields,
        )
        self.providers[provider.normalized_name] = provider
        return provider

    def add_request(self, **fields):
        now = utcnow()
        request_id = fields.pop("id", f"req_seed{next(self._ids):04d}")
        request = SimpleNamespace(
            id=request_id,
            user_id=fields.pop("user_id", 7),
            subscription_id=fields.pop("subscription_id", 1),
            provider_id=fields.pop("provider_id", None),
            method=fields.pop("method", "api"),
            priority=fields.pop("priority", "normal"),
            status=fields.pop("status", "pending"),
            attempts=fields.pop("attempts", 0),
            confirmation_code=fields.pop("confirmation_code", None),
            effective_date=fields.pop("effective_date", None),
            refund_amount=fields.pop("refund_amount", None),
            user_notes=fields.pop("user_notes", None),
            user_confirmed=fields.pop("user_confirmed", False),
            error_code=fields.pop("error_code", None),
            error_message=fields.pop("error_message", None),
            external_reference=fields.pop("external_reference", None),
            request_metadata=fields.pop("request_metadata", {}),
            scheduled_for=fields.pop("scheduled_for", None),
            last_attempt_at=fields.pop("last_attempt_at", None),
            completed_at=fields.pop("completed_at", None),
            created_at=fields.pop("created_at", now),
            updated_at=fields.pop("updated_at", now),
            **fields,
        )
        request.subscription = self.subscriptions.get(request.subscription_id)
        request.provider = next(
            (p for p in self.providers.values() if p.id == request.provider_id), None
        )
        self.requests[request.id] = request
        return request

    def _check_conflict(self, subscription_id, status, request_id):
        if status not in ACTIVE_REQUEST_STATUSES:
            return
        for other in self.requests.values():
            if (
                other.id != request_id
                and other.subscription_id == subscription_id
                and other.status in ACTIVE_REQUEST_STATUSES
            ):
                raise ActiveRequestConflict(
                    "duplicate key value violates unique constraint "
                    '"uq_cancellation_requests_active_subscription"'
                )

    def actions(self, orchestration_id=None):
        return [
            log.action
            for log in self.logs
            if orchestration_id is None or log.orchestration_id == orchestration_id
        ]

    # ----- CancellationStore interface -----

    async def get_subscription_for_user(self, user_id, subscription_id):
        sub = self.subscriptions.get(subscription_id)
        return sub if sub and sub.user_id == user_id else None

    async def mark_subscription_cancelled(self, subscription_id, cancellation_info):
        sub = self.subscriptions.get(subscription_id)
        if sub:
            sub.status = "cancelled"
            sub.is_active = False
            sub.cancellation_info = cancellation_info
        return sub

    async def find_active_provider(self, normalized_name):
        provider = self.providers.get(normalized_name)
        return provider if provider and provider.is_active else None

    async def list_active_providers(self):
        return [p for p in self.providers.values() if p.is_active]

    async def find_active_request(self, subscription_id, exclude_request_id=None):
        for request in self.requests.values():
            if (
                request.subscription_id == subscription_id
                and request.status in ACTIVE_REQUEST_STATUSES
                and request.id != exclude_request_id
            ):
                return request
        return None

    async def create_request(self, log=None, **fields):
        self._check_conflict(fields["subscription_id"], fields.get("status"), None)
        fields.setdefault("id", f"req_{next(self._ids):016d}")
        request = self.add_request(**fields)
        if log:
            # Written in the same commit as the row, unaffected by fail_logs.
            self._record_log(
                action=log["action"],
                level=log.get("level", "info"),
                message=log["message"],
                request_id=request.id,
                orchestration_id=log.get("orchestration_id"),
                metadata=log.get("metadata"),
            )
        return request

    async def get_request(self, request_id, *, user_id=None, statuses=None, method=None):
        if self.fail_queries:
            raise RuntimeError("database unavailable")
        request = self.requests.get(request_id)
        if request is None:
            return None
        if user_id is not None and request.user_id != user_id:
            return None
        if statuses is not None and request.status not in tuple(statuses):
            return None
        if method is not None and request.method != method:
            return None
        return request

    async def find_request_by_reference(self, reference, statuses=None):
        request = await self.get_request(reference, statuses=statuses)
        if request:
            return request
        for candidate in self.requests.values():
            if candidate.external_reference == reference and (
                statuses is None or candidate.status in tuple(statuses)
            ):
                return candidate
        return None

    async def update_request(self, request, **changes):
        if "status" in changes:
            self._check_conflict(request.subscription_id, changes["status"], request.id)
        for key, value in changes.items():
            setattr(request, key, value)
        request.updated_at = utcnow()
        return request

    async def requests_in_window(self, user_id, start, end):
        if self.fail_queries:
            raise RuntimeError("database unavailable")
        return [
            r
            for r in self.requests.values()
            if r.user_id == user_id and start <= r.created_at <= end
        ]

    async def list_requests(
        self, user_id, *, statuses=None, method=None, subscription_id=None, limit=20, offset=0
    ):
        rows = [
            r
            for r in self.requests.values()
            if r.user_id == user_id
            and (not statuses or r.status in tuple(statuses))
            and (not method or r.method == method)
            and (subscription_id is None or r.subscription_id == subscription_id)
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[offset : offset + limit], len(rows)

    async def status_breakdown(self, user_id):
        breakdown: Dict[str, int] = {}
        for r in self.requests.values():
            if r.user_id == user_id:
                breakdown[r.status] = breakdown.get(r.status, 0) + 1
        return breakdown

    async def due_scheduled_requests(self, now, limit=100):
        due = [
            r
            for r in self.requests.values()
            if r.status == "scheduled" and r.scheduled_for and r.scheduled_for <= now
        ]
        due.sort(key=lambda r: r.scheduled_for)
        return due[:limit]

    async def append_log(
        self, *, action, level, message, request_id=None, orchestration_id=None, metadata=None
    ):
        if self.fail_logs:
            raise RuntimeError("log table unavailable")
        return self._record_log(
            action=action,
            level=level,
            message=message,
            request_id=request_id,
            orchestration_id=orchestration_id,
            metadata=metadata,
        )

    async def current_status(self, request_id):
        request = self.requests.get(request_id)
        return request.status if request else None

    def _record_log(self, *, action, level, message, request_id, orchestration_id, metadata):
        entry = SimpleNamespace(
            id=next(self._log_ids),
            request_id=request_id,
            orchestration_id=orchestration_id,
            action=action,
            level=level,
            message=message,
            log_metadata=metadata or {},
            created_at=utcnow(),
        )
        self.logs.append(entry)
        return entry

    async def logs_for_orchestration(self, orchestration_id, limit=50):
        return [l for l in self.logs if l.orchestration_id == orchestration_id][:limit]

    async def logs_for_request(self, request_id, limit=10):
        return [l for l in reversed(self.logs) if l.request_id == request_id][:limit]


class FakeAudit:
    def __init__(self):
        self.entries: List[Dict[str, Any]] = []

    async def log(self, **entry):
        self.entries.append(entry)

    def actions(self):
        return [e["action"] for e in self.entries]


# ----------------------------
# Scripted collaborators
# ----------------------------


class _Scripted:
    def __init__(self, *outcomes):
        self.outcomes = deque(outcomes)
        self.calls = []

    def _next(self, ctx, default):
        self.calls.append(ctx)
        outcome = self.outcomes.popleft() if self.outcomes else default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeApiClient(_Scripted, ApiCancellationClient):
    async def initiate(self, ctx):
        return self._next(
            ctx,
            ApiCancellationResponse(
                request_id="api_ref_1", status="completed", confirmation_code="CONF-123"
            ),
        )


class FakeAutomationClient(_Scripted, AutomationWorkflowClient):
    async def initiate(self, ctx):
        return self._next(
            ctx, AutomationWorkflowResponse(request_id="auto_ref_1", workflow_id="wf_1")
        )


class FakeManualClient(_Scripted, ManualInstructionClient):
    def __init__(self, *outcomes):
        super().__init__(*outcomes)
        self.confirmations = []

    async def provide_instructions(self, ctx):
        return self._next(
            ctx,
            ManualInstructionResponse(
                request_id="manual_ref_1",
                instructions=ManualInstructions(
                    provider_name=ctx.subscription_name,
                    difficulty="medium",
                    estimated_time=15,
                    steps=[{"step_number": 1, "title": "Sign in", "description": "Sign in"}],
                ),
            ),
        )

    async def confirm(self, user_id, request_id, outcome):
        self.confirmations.append((user_id, request_id, outcome))


def collaborator_error(message="upstream unavailable"):
    return CollaboratorError(message, status_code=503)


