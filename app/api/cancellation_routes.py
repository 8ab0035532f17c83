import asyncio
import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.session import get_db
from app.schemas.models import (
    CancelCancellationRequest,
    ManualConfirmationRequest,
    ProviderWebhookPayload,
    RetryCancellationRequest,
)
from app.services.audit_logger import AuditLogger
from app.services.cancellation_orchestrator import CancellationOrchestrator
from app.services.cancellation_store import CancellationStore
from app.services.errors import CancellationError
from app.services.orchestration_tracker import TERMINAL_SESSION_STATUSES
from app.utils.cancellation_clients import CollaboratorSet, build_collaborators
from app.utils.extract_client_info import extract_client_info

router = APIRouter(prefix=settings.API_BASE_PATH, tags=["Cancellation"])
logger = logging.getLogger("cancellation_api")

STREAM_KEEPALIVE_SECONDS = 15


# ----------------------------
# Dependencies
# ----------------------------


def get_store(db: AsyncSession = Depends(get_db)) -> CancellationStore:
    return CancellationStore(db)


def get_audit_logger(
    request: Request, db: AsyncSession = Depends(get_db)
) -> AuditLogger:
    client_ip, user_agent = extract_client_info(request)
    return AuditLogger(db, ip_address=client_ip, user_agent=user_agent)


def get_collaborators(
    store: CancellationStore = Depends(get_store),
) -> CollaboratorSet:
    return build_collaborators(store)


def get_orchestrator(
    request: Request,
    store: CancellationStore = Depends(get_store),
    audit: AuditLogger = Depends(get_audit_logger),
    collaborators: CollaboratorSet = Depends(get_collaborators),
) -> CancellationOrchestrator:
    return CancellationOrchestrator(
        store,
        audit,
        collaborators,
        tracker=request.app.state.tracker,
        event_bus=request.app.state.event_bus,
        delay_seconds=settings.CANCELLATION_FALLBACK_DELAY_SECONDS,
    )


def _require_user(request: Request) -> int:
    user_id = request.headers.get("X-User-ID")
    if not user_id:
        raise HTTPException(status_code=400, detail="Missing X-User-ID header")
    try:
        return int(user_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-User-ID header")


def verify_webhook_signature(raw: bytes, signature: str, secret: str) -> bool:
    """HMAC-SHA256(secret, raw_body) as hex, compared in constant time."""
    if not raw or not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


# ----------------------------
# Orchestration
# ----------------------------


@router.post("/initiate")
async def initiate_cancellation(
    payload: dict,
    request: Request,
    orchestrator: CancellationOrchestrator = Depends(get_orchestrator),
):
    user_id = _require_user(request)
    result = await orchestrator.initiate_cancellation(user_id, payload)
    return result.to_dict()


@router.post("/requests/{request_id}/retry")
async def retry_cancellation(
    request_id: str,
    request: Request,
    payload: Optional[RetryCancellationRequest] = None,
    orchestrator: CancellationOrchestrator = Depends(get_orchestrator),
):
    user_id = _require_user(request)
    payload = payload or RetryCancellationRequest()
    result = await orchestrator.retry_cancellation(
        user_id,
        request_id,
        force_method=payload.forceMethod,
        escalate=payload.escalate,
    )
    return result.to_dict()


@router.post("/requests/{request_id}/cancel")
async def cancel_cancellation_request(
    request_id: str,
    request: Request,
    payload: Optional[CancelCancellationRequest] = None,
    orchestrator: CancellationOrchestrator = Depends(get_orchestrator),
):
    user_id = _require_user(request)
    reason = payload.reason if payload else None
    return await orchestrator.cancel_cancellation_request(user_id, request_id, reason)


@router.post("/requests/{request_id}/confirm")
async def confirm_manual_cancellation(
    request_id: str,
    payload: ManualConfirmationRequest,
    request: Request,
    orchestrator: CancellationOrchestrator = Depends(get_orchestrator),
):
    user_id = _require_user(request)
    return await orchestrator.confirm_manual(
        user_id,
        request_id,
        was_successful=payload.wasSuccessful,
        confirmation_code=payload.confirmationCode,
        effective_date=payload.effectiveDate,
        refund_amount=payload.refundAmount,
        notes=payload.notes,
    )


@router.get("/requests/{request_id}")
async def get_cancellation_status(
    request_id: str,
    request: Request,
    orchestrator: CancellationOrchestrator = Depends(get_orchestrator),
):
    user_id = _require_user(request)
    return jsonable_encoder(
        await orchestrator.get_cancellation_status(user_id, request_id)
    )


@router.get("/orchestrations/{orchestration_id}")
async def get_orchestration_status(
    orchestration_id: str,
    request: Request,
    orchestrator: CancellationOrchestrator = Depends(get_orchestrator),
):
    user_id = _require_user(request)
    status = await orchestrator.get_orchestration_status(orchestration_id, user_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Orchestration not found")
    return jsonable_encoder(status)


@router.get("/orchestrations/{orchestration_id}/stream")
async def stream_orchestration_updates(
    orchestration_id: str,
    request: Request,
    orchestrator: CancellationOrchestrator = Depends(get_orchestrator),
):
    """Server-sent events: one ``status`` snapshot, then live ``update`` events."""
    user_id = _require_user(request)
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    unsubscribe = orchestrator.subscribe_to_updates(
        orchestration_id,
        lambda update: loop.call_soon_threadsafe(queue.put_nowait, update),
    )
    status = await orchestrator.get_orchestration_status(orchestration_id, user_id)
    if status is None:
        unsubscribe()
        raise HTTPException(status_code=404, detail="Orchestration not found")

    snapshot = {k: v for k, v in status.items() if k != "logs"}

    async def events():
        try:
            yield f"event: status\ndata: {json.dumps(jsonable_encoder(snapshot))}\n\n"
            if not status.get("live"):
                return
            while True:
                if await request.is_disconnected():
                    break
                try:
                    update = await asyncio.wait_for(
                        queue.get(), timeout=STREAM_KEEPALIVE_SECONDS
                    )
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: update\ndata: {json.dumps(jsonable_encoder(update.to_dict()))}\n\n"
                if update.status in TERMINAL_SESSION_STATUSES:
                    break
        finally:
            unsubscribe()

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ----------------------------
# Read models
# ----------------------------


@router.get("/analytics")
async def get_unified_analytics(
    request: Request,
    timeframe: str = Query("month"),
    orchestrator: CancellationOrchestrator = Depends(get_orchestrator),
):
    user_id = _require_user(request)
    try:
        return await orchestrator.get_unified_analytics(user_id, timeframe)
    except CancellationError as e:
        raise HTTPException(
            status_code=400, detail={"code": e.code.value, "message": e.message}
        )


@router.get("/providers/capabilities")
async def get_provider_capabilities(
    provider: Optional[str] = Query(None),
    orchestrator: CancellationOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.get_provider_capabilities(provider)
    except CancellationError as e:
        raise HTTPException(
            status_code=400, detail={"code": e.code.value, "message": e.message}
        )


@router.get("/subscriptions/{subscription_id}/eligibility")
async def get_cancellation_eligibility(
    subscription_id: int,
    request: Request,
    orchestrator: CancellationOrchestrator = Depends(get_orchestrator),
):
    user_id = _require_user(request)
    return jsonable_encoder(await orchestrator.can_cancel(user_id, subscription_id))


@router.get("/history")
async def get_cancellation_history(
    request: Request,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: str = Query("all"),
    method: str = Query("all"),
    subscription_id: Optional[int] = Query(None),
    orchestrator: CancellationOrchestrator = Depends(get_orchestrator),
):
    user_id = _require_user(request)
    history = await orchestrator.get_history(
        user_id,
        limit=limit,
        offset=offset,
        status=status,
        method=method,
        subscription_id=subscription_id,
    )
    return jsonable_encoder(history)


# ----------------------------
# External triggers
# ----------------------------


@router.post("/webhook")
async def provider_webhook(
    request: Request,
    orchestrator: CancellationOrchestrator = Depends(get_orchestrator),
):
    secret = settings.CANCELLATION_WEBHOOK_SECRET
    if not secret:
        logger.error("Provider webhook received but CANCELLATION_WEBHOOK_SECRET is not set")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    raw = await request.body()
    signature = request.headers.get("X-Signature", "")
    if not verify_webhook_signature(raw, signature, secret):
        logger.warning("Rejected provider webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = ProviderWebhookPayload.model_validate_json(raw)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid payload: {e.errors()[0]['msg']}")

    return await orchestrator.handle_provider_webhook(payload)


@router.post("/scheduled/run")
async def run_due_scheduled_cancellations(
    request: Request,
    limit: int = Query(50, ge=1, le=500),
    orchestrator: CancellationOrchestrator = Depends(get_orchestrator),
):
    """Entry point for the external job runner; guarded by the service token."""
    token = request.headers.get("X-Service-Token", "")
    expected = settings.INTERNAL_SERVICE_TOKEN
    if not expected or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid service token")

    due = await orchestrator.due_scheduled_requests()
    # Ids are captured first: each run commits and may refresh the rows.
    request_ids = [r.id for r in due[:limit]]
    results = []
    for request_id in request_ids:
        result = await orchestrator.run_scheduled(request_id)
        results.append(
            {
                "request_id": request_id,
                "success": result.success,
                "status": result.status,
                "error": result.error.code.value if result.error else None,
            }
        )
    logger.info(f"Ran {len(results)} due scheduled cancellations")
    return {"processed": len(results), "results": results}
