from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from app.services.errors import CancellationError, CancellationErrorCode

logger = logging.getLogger("cancellation_analytics")

TIMEFRAME_DAYS = {"day": 1, "week": 7, "month": 30}
TREND_DAYS = 7

_METHOD_ALIASES = {
    "api": "api",
    "automation": "automation",
    "web_automation": "automation",
    "event_driven": "automation",
    "webhook": "automation",
    "manual": "manual",
    "lightweight": "manual",
}

_PENDING_STATUSES = ("pending", "processing", "scheduled")


def normalize_method(method: Optional[str]) -> Optional[str]:
    if not method:
        return None
    return _METHOD_ALIASES.get(method.lower())


def _percent(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole else 0


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _trend_days(now: datetime) -> List[str]:
    today = now.date()
    return [
        (today - timedelta(days=offset)).isoformat()
        for offset in range(TREND_DAYS - 1, -1, -1)
    ]


def empty_analytics(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    return {
        "summary": {
            "total": 0,
            "successful": 0,
            "failed": 0,
            "pending": 0,
            "success_rate": 0,
        },
        "method_breakdown": {"api": 0, "automation": 0, "manual": 0},
        "success_rates": {"overall": 0, "by_method": {}, "by_provider": {}},
        "provider_analytics": [],
        "trends": [
            {"date": day, "requests": 0, "successful": 0, "success_rate": 0}
            for day in _trend_days(now)
        ],
    }


def summarize_requests(requests: List[Any], now: datetime) -> Dict[str, Any]:
    """Fold a window of cancellation requests into the analytics payload."""
    if not requests:
        return empty_analytics(now)

    total = len(requests)
    successful = sum(1 for r in requests if r.status == "completed")
    failed = sum(1 for r in requests if r.status == "failed")
    pending = sum(1 for r in requests if r.status in _PENDING_STATUSES)

    breakdown = {"api": 0, "automation": 0, "manual": 0}
    method_success = {"api": 0, "automation": 0, "manual": 0}
    for r in requests:
        method = normalize_method(r.method)
        if method is None:
            logger.warning(f"Ignoring unknown method '{r.method}' on request {r.id}")
            continue
        breakdown[method] += 1
        if r.status == "completed":
            method_success[method] += 1

    by_method = {
        method: _percent(method_success[method], count)
        for method, count in breakdown.items()
        if count
    }

    providers: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for r in requests:
        provider = getattr(r, "provider", None)
        subscription = getattr(r, "subscription", None)
        name = (
            provider.name
            if provider is not None
            else (subscription.name if subscription is not None else "Unknown")
        )
        stats = providers.setdefault(
            name, {"total": 0, "successful": 0, "timed": 0, "minutes": 0.0}
        )
        stats["total"] += 1
        if r.status == "completed":
            stats["successful"] += 1
            if r.completed_at and r.created_at:
                elapsed = _as_utc(r.completed_at) - _as_utc(r.created_at)
                stats["timed"] += 1
                stats["minutes"] += elapsed.total_seconds() / 60

    provider_analytics = [
        {
            "provider": name,
            "total": stats["total"],
            "successful": stats["successful"],
            "avg_time": (
                round(stats["minutes"] / stats["timed"]) if stats["timed"] else 0
            ),
            "success_rate": _percent(stats["successful"], stats["total"]),
        }
        for name, stats in providers.items()
    ]

    days = _trend_days(now)
    per_day = {day: [0, 0] for day in days}
    for r in requests:
        if not r.created_at:
            continue
        day = _as_utc(r.created_at).date().isoformat()
        if day in per_day:
            per_day[day][0] += 1
            if r.status == "completed":
                per_day[day][1] += 1

    trends = [
        {
            "date": day,
            "requests": per_day[day][0],
            "successful": per_day[day][1],
            "success_rate": _percent(per_day[day][1], per_day[day][0]),
        }
        for day in days
    ]

    overall = _percent(successful, total)
    return {
        "summary": {
            "total": total,
            "successful": successful,
            "failed": failed,
            "pending": pending,
            "success_rate": overall,
        },
        "method_breakdown": breakdown,
        "success_rates": {
            "overall": overall,
            "by_method": by_method,
            "by_provider": {p["provider"]: p["success_rate"] for p in provider_analytics},
        },
        "provider_analytics": provider_analytics,
        "trends": trends,
    }


async def get_unified_analytics(
    store, user_id: int, timeframe: str = "month", now: Optional[datetime] = None
) -> Dict[str, Any]:
    if timeframe not in TIMEFRAME_DAYS:
        raise CancellationError(
            CancellationErrorCode.VALIDATION_ERROR,
            "Invalid timeframe. Must be day, week, or month",
            {"timeframe": timeframe},
        )

    now = now or datetime.now(timezone.utc)
    start = now - timedelta(days=TIMEFRAME_DAYS[timeframe])
    try:
        requests = await store.requests_in_window(user_id, start, now)
    except Exception as e:
        logger.warning(f"Analytics query failed for user {user_id}: {e}")
        return empty_analytics(now)

    return summarize_requests(requests, now)
