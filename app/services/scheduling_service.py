from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from app.services.capability_service import ProviderCapability
from app.services.errors import (
    ActiveRequestConflict,
    CancellationError,
    CancellationErrorCode,
)
from app.services.results import CancellationResult, ResultMetadata, tracking_for

logger = logging.getLogger("scheduling")


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def schedule_cancellation(
    store,
    audit,
    *,
    user_id: int,
    subscription,
    payload,
    orchestration_id: str,
    method: str,
    capability: ProviderCapability,
    now: Optional[datetime] = None,
) -> CancellationResult:
    """
    Persist a future-dated cancellation without executing anything.

    An external job runner picks the row up once ``scheduled_for`` has passed
    and hands it back to the orchestrator.
    """
    now = now or datetime.now(timezone.utc)
    schedule_for = payload.scheduling.scheduleFor if payload.scheduling else None
    timezone_name = payload.scheduling.timezone if payload.scheduling else None

    if schedule_for is None:
        message = "Schedule time is required for scheduled cancellation"
        await audit.log(
            user_id=user_id,
            action="cancellation.scheduling_validation_failed",
            resource=subscription.id,
            result="failure",
            error=message,
        )
        raise CancellationError(
            CancellationErrorCode.SCHEDULING_VALIDATION_FAILED, message
        )

    schedule_for = as_utc(schedule_for)
    if schedule_for <= now:
        message = "Scheduled time must be in the future"
        await audit.log(
            user_id=user_id,
            action="cancellation.scheduling_validation_failed",
            resource=subscription.id,
            result="failure",
            error=message,
            metadata={
                "schedule_for": schedule_for.isoformat(),
                "current_time": now.isoformat(),
            },
        )
        raise CancellationError(
            CancellationErrorCode.SCHEDULING_VALIDATION_FAILED,
            message,
            {"schedule_for": schedule_for.isoformat()},
        )

    capability_snapshot = capability.to_dict()
    try:
        request = await store.create_request(
            user_id=user_id,
            subscription_id=subscription.id,
            provider_id=getattr(capability, "provider_id", None),
            method=method,
            priority=payload.priority,
            status="scheduled",
            attempts=0,
            user_notes=payload.reason,
            scheduled_for=schedule_for,
            request_metadata={
                "orchestration_id": orchestration_id,
                "schedule_for": schedule_for.isoformat(),
                "preferred_method": method,
                "timezone": timezone_name,
                "capabilities": capability_snapshot,
                "user_preferences": (
                    payload.userPreferences.model_dump()
                    if payload.userPreferences
                    else None
                ),
            },
            log={
                "orchestration_id": orchestration_id,
                "action": "cancellation_scheduled",
                "level": "info",
                "message": f"Cancellation scheduled for {schedule_for.isoformat()}",
                "metadata": {
                    "schedule_for": schedule_for.isoformat(),
                    "method": method,
                    "user_id": user_id,
                },
            },
        )
    except ActiveRequestConflict:
        raise CancellationError(
            CancellationErrorCode.CANCELLATION_IN_PROGRESS,
            "A cancellation request is already in progress for this subscription",
        )

    logger.info(
        f"Scheduled cancellation {request.id} for subscription {subscription.id} "
        f"at {schedule_for.isoformat()}"
    )
    return CancellationResult(
        success=True,
        orchestration_id=orchestration_id,
        request_id=request.id,
        status="scheduled",
        method=method,
        message=f"Cancellation scheduled for {schedule_for.strftime('%Y-%m-%d %H:%M UTC')}",
        estimated_completion=schedule_for,
        metadata=ResultMetadata(
            attempts_used=0,
            real_time_updates_enabled=payload.real_time_updates,
            provider_info=capability_snapshot,
        ),
        tracking=tracking_for(orchestration_id),
    )


async def due_scheduled_requests(store, now: Optional[datetime] = None) -> List:
    return await store.due_scheduled_requests(now or datetime.now(timezone.utc))
