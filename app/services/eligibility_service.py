from __future__ import annotations

from typing import Any, Dict, Optional

from app.services.capability_service import normalize_provider_name
from app.services.errors import CancellationError, CancellationErrorCode


async def validate_subscription_ownership(store, audit, user_id: int, subscription_id: int):
    subscription = await store.get_subscription_for_user(user_id, subscription_id)
    if not subscription:
        await audit.log(
            user_id=user_id,
            action="subscription.access_denied",
            resource=subscription_id,
            result="failure",
            error="Subscription not found or access denied",
        )
        raise CancellationError(
            CancellationErrorCode.NOT_FOUND,
            "Subscription not found or you do not have permission to access it",
            {"subscription_id": subscription_id},
        )
    return subscription


async def validate_cancellation_eligibility(
    store,
    audit,
    user_id: int,
    subscription,
    exclude_request_id: Optional[str] = None,
) -> None:
    """
    Reject already-cancelled subscriptions and subscriptions that already have
    an in-flight request. This read is only the fast path: the partial unique
    index on cancellation_requests is what makes the rule hold under races.
    """
    if subscription.status == "cancelled":
        await audit.log(
            user_id=user_id,
            action="cancellation.already_cancelled",
            resource=subscription.id,
            result="failure",
            error="Subscription is already cancelled",
        )
        raise CancellationError(
            CancellationErrorCode.ALREADY_CANCELLED,
            "This subscription is already cancelled",
        )

    existing = await store.find_active_request(
        subscription.id, exclude_request_id=exclude_request_id
    )
    if existing:
        await audit.log(
            user_id=user_id,
            action="cancellation.already_in_progress",
            resource=subscription.id,
            result="failure",
            error="Cancellation already in progress",
            metadata={"existing_request_id": existing.id},
        )
        raise CancellationError(
            CancellationErrorCode.CANCELLATION_IN_PROGRESS,
            "A cancellation request is already in progress for this subscription",
            {"existing_request_id": existing.id, "status": existing.status},
        )


async def check_eligibility(store, user_id: int, subscription_id: int) -> Dict[str, Any]:
    subscription = await store.get_subscription_for_user(user_id, subscription_id)
    if not subscription:
        return {
            "can_cancel": False,
            "reason": "not_found",
            "message": "Subscription not found or you do not have permission to cancel it",
        }

    if subscription.status == "cancelled":
        info = subscription.cancellation_info or {}
        return {
            "can_cancel": False,
            "reason": "already_cancelled",
            "message": "This subscription is already cancelled",
            "effective_date": info.get("effective_date"),
        }

    existing = await store.find_active_request(subscription.id)
    if existing:
        return {
            "can_cancel": False,
            "reason": "cancellation_in_progress",
            "message": "A cancellation request is already in progress",
            "existing_request_id": existing.id,
            "request_status": existing.status,
            "request_method": existing.method,
            "created_at": existing.created_at,
        }

    provider = await store.find_active_provider(normalize_provider_name(subscription.name))
    return {
        "can_cancel": True,
        "message": "Subscription can be cancelled",
        "provider": (
            {
                "id": provider.id,
                "name": provider.name,
                "type": provider.type,
                "difficulty": provider.difficulty,
                "estimated_time": provider.average_time,
                "success_rate": float(provider.success_rate or 0),
            }
            if provider
            else None
        ),
        "subscription": {
            "id": subscription.id,
            "name": subscription.name,
            "amount": float(subscription.amount or 0),
            "frequency": subscription.frequency,
            "next_billing": subscription.next_billing,
        },
    }
