from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.db.models import (
    ACTIVE_REQUEST_STATUSES,
    CancellationLog,
    CancellationProvider,
    CancellationRequest,
    Subscription,
    generate_request_id,
)
from app.services.errors import ActiveRequestConflict

logger = logging.getLogger("cancellation_store")


class CancellationStore:
    """Durable reads and writes used by the orchestration engine."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ----- subscriptions -----

    async def get_subscription_for_user(
        self, user_id: int, subscription_id: int
    ) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.id == subscription_id,
                Subscription.user_id == user_id,
            )
        )
        return result.scalars().first()

    async def mark_subscription_cancelled(
        self, subscription_id: int, cancellation_info: Dict[str, Any]
    ) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        subscription = result.scalars().first()
        if not subscription:
            return None
        subscription.status = "cancelled"
        subscription.is_active = False
        subscription.cancellation_info = cancellation_info
        subscription.updated_at = datetime.now(timezone.utc)
        await self.db.commit()
        return subscription

    # ----- provider registry -----

    async def find_active_provider(
        self, normalized_name: str
    ) -> Optional[CancellationProvider]:
        result = await self.db.execute(
            select(CancellationProvider).where(
                CancellationProvider.normalized_name == normalized_name,
                CancellationProvider.is_active.is_(True),
            )
        )
        return result.scalars().first()

    async def list_active_providers(self) -> List[CancellationProvider]:
        result = await self.db.execute(
            select(CancellationProvider).where(CancellationProvider.is_active.is_(True))
        )
        return list(result.scalars().all())

    # ----- requests -----

    async def find_active_request(
        self, subscription_id: int, exclude_request_id: Optional[str] = None
    ) -> Optional[CancellationRequest]:
        stmt = select(CancellationRequest).where(
            CancellationRequest.subscription_id == subscription_id,
            CancellationRequest.status.in_(ACTIVE_REQUEST_STATUSES),
        )
        if exclude_request_id:
            stmt = stmt.where(CancellationRequest.id != exclude_request_id)
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def create_request(
        self, log: Optional[Dict[str, Any]] = None, **fields: Any
    ) -> CancellationRequest:
        """Insert a request, optionally with its first log entry in one commit."""
        fields.setdefault("id", generate_request_id())
        request = CancellationRequest(**fields)
        self.db.add(request)
        if log:
            self.db.add(
                CancellationLog(
                    request_id=request.id,
                    orchestration_id=log.get("orchestration_id"),
                    action=log["action"],
                    level=log.get("level", "info"),
                    message=log["message"],
                    log_metadata=log.get("metadata") or {},
                    created_at=datetime.now(timezone.utc),
                )
            )
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ActiveRequestConflict(str(e.orig) if e.orig else str(e))
        return request

    async def get_request(
        self,
        request_id: str,
        *,
        user_id: Optional[int] = None,
        statuses: Optional[Iterable[str]] = None,
        method: Optional[str] = None,
    ) -> Optional[CancellationRequest]:
        stmt = (
            select(CancellationRequest)
            .options(
                selectinload(CancellationRequest.subscription),
                selectinload(CancellationRequest.provider),
            )
            .where(CancellationRequest.id == request_id)
        )
        if user_id is not None:
            stmt = stmt.where(CancellationRequest.user_id == user_id)
        if statuses is not None:
            stmt = stmt.where(CancellationRequest.status.in_(tuple(statuses)))
        if method is not None:
            stmt = stmt.where(CancellationRequest.method == method)
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def find_request_by_reference(
        self, reference: str, statuses: Optional[Iterable[str]] = None
    ) -> Optional[CancellationRequest]:
        """Resolve a request by our id or by the id a collaborator handed back."""
        request = await self.get_request(reference, statuses=statuses)
        if request:
            return request
        stmt = (
            select(CancellationRequest)
            .options(selectinload(CancellationRequest.subscription))
            .where(CancellationRequest.external_reference == reference)
        )
        if statuses is not None:
            stmt = stmt.where(CancellationRequest.status.in_(tuple(statuses)))
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def update_request(
        self, request: CancellationRequest, **changes: Any
    ) -> CancellationRequest:
        for key, value in changes.items():
            setattr(request, key, value)
        request.updated_at = datetime.now(timezone.utc)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ActiveRequestConflict(str(e.orig) if e.orig else str(e))
        return request

    async def requests_in_window(
        self, user_id: int, start: datetime, end: datetime
    ) -> List[CancellationRequest]:
        result = await self.db.execute(
            select(CancellationRequest)
            .options(
                selectinload(CancellationRequest.subscription),
                selectinload(CancellationRequest.provider),
            )
            .where(
                CancellationRequest.user_id == user_id,
                CancellationRequest.created_at >= start,
                CancellationRequest.created_at <= end,
            )
        )
        return list(result.scalars().all())

    async def list_requests(
        self,
        user_id: int,
        *,
        statuses: Optional[Sequence[str]] = None,
        method: Optional[str] = None,
        subscription_id: Optional[int] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[CancellationRequest], int]:
        filters = [CancellationRequest.user_id == user_id]
        if statuses:
            filters.append(CancellationRequest.status.in_(tuple(statuses)))
        if method:
            filters.append(CancellationRequest.method == method)
        if subscription_id is not None:
            filters.append(CancellationRequest.subscription_id == subscription_id)

        rows = await self.db.execute(
            select(CancellationRequest)
            .options(selectinload(CancellationRequest.subscription))
            .where(*filters)
            .order_by(CancellationRequest.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        total = await self.db.execute(
            select(func.count(CancellationRequest.id)).where(*filters)
        )
        return list(rows.scalars().all()), int(total.scalar() or 0)

    async def status_breakdown(self, user_id: int) -> Dict[str, int]:
        rows = await self.db.execute(
            select(CancellationRequest.status, func.count(CancellationRequest.id))
            .where(CancellationRequest.user_id == user_id)
            .group_by(CancellationRequest.status)
        )
        return {status: int(count) for status, count in rows.all()}

    async def due_scheduled_requests(
        self, now: datetime, limit: int = 100
    ) -> List[CancellationRequest]:
        result = await self.db.execute(
            select(CancellationRequest)
            .where(
                CancellationRequest.status == "scheduled",
                CancellationRequest.scheduled_for <= now,
            )
            .order_by(CancellationRequest.scheduled_for.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ----- append-only log -----

    async def append_log(
        self,
        *,
        action: str,
        level: str,
        message: str,
        request_id: Optional[str] = None,
        orchestration_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CancellationLog:
        entry = CancellationLog(
            request_id=request_id,
            orchestration_id=orchestration_id,
            action=action,
            level=level,
            message=message,
            log_metadata=metadata or {},
            created_at=datetime.now(timezone.utc),
        )
        # A rejected entry only unwinds its savepoint; a full rollback would
        # expire the request and subscription the caller is still holding.
        async with self.db.begin_nested():
            self.db.add(entry)
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.warning(f"Rolled back cancellation log '{action}'")
            raise
        return entry

    async def current_status(self, request_id: str) -> Optional[str]:
        """Status as stored right now, bypassing the session's loaded copy."""
        result = await self.db.execute(
            select(CancellationRequest.status).where(CancellationRequest.id == request_id)
        )
        return result.scalar()

    async def logs_for_orchestration(
        self, orchestration_id: str, limit: int = 50
    ) -> List[CancellationLog]:
        result = await self.db.execute(
            select(CancellationLog)
            .where(CancellationLog.orchestration_id == orchestration_id)
            .order_by(CancellationLog.created_at.asc(), CancellationLog.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def logs_for_request(
        self, request_id: str, limit: int = 10
    ) -> List[CancellationLog]:
        result = await self.db.execute(
            select(CancellationLog)
            .where(CancellationLog.request_id == request_id)
            .order_by(CancellationLog.created_at.desc(), CancellationLog.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
