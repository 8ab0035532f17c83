from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder

from app.core.config import settings
from app.services.errors import CancellationErrorCode


@dataclass
class ResultTracking:
    status_check_endpoint: str
    live_update_endpoint: str


def tracking_for(orchestration_id: str) -> ResultTracking:
    base = settings.API_BASE_PATH.rstrip("/")
    return ResultTracking(
        status_check_endpoint=f"{base}/orchestrations/{orchestration_id}",
        live_update_endpoint=f"{base}/orchestrations/{orchestration_id}/stream",
    )


@dataclass
class ResultMetadata:
    attempts_used: int = 0
    real_time_updates_enabled: bool = True
    fallback_reason: Optional[str] = None
    provider_info: Optional[Dict[str, Any]] = None
    workflow_id: Optional[str] = None


@dataclass
class ResultError:
    code: CancellationErrorCode
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CancellationResult:
    success: bool
    orchestration_id: str
    request_id: Optional[str]
    status: str
    method: str
    message: str
    metadata: ResultMetadata
    tracking: ResultTracking
    estimated_completion: Optional[datetime] = None
    confirmation_code: Optional[str] = None
    effective_date: Optional[datetime] = None
    refund_amount: Optional[float] = None
    manual_instructions: Optional[Dict[str, Any]] = None
    error: Optional[ResultError] = None

    def to_dict(self) -> Dict[str, Any]:
        data = jsonable_encoder(self)
        return {k: v for k, v in data.items() if v is not None or k == "request_id"}


def failure_result(
    *,
    orchestration_id: str,
    request_id: Optional[str],
    method: str,
    code: CancellationErrorCode,
    message: str,
    attempts_used: int = 0,
    fallback_reason: Optional[str] = None,
    real_time_updates: bool = True,
    details: Optional[Dict[str, Any]] = None,
) -> CancellationResult:
    return CancellationResult(
        success=False,
        orchestration_id=orchestration_id,
        request_id=request_id,
        status="failed",
        method=method,
        message=message,
        metadata=ResultMetadata(
            attempts_used=attempts_used,
            real_time_updates_enabled=real_time_updates,
            fallback_reason=fallback_reason,
        ),
        tracking=tracking_for(orchestration_id),
        error=ResultError(code=code, message=message, details=details or {}),
    )
