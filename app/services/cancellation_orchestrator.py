from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from app.core.config import settings
from app.db.models import ACTIVE_REQUEST_STATUSES
from app.schemas.models import (
    CancellationRequestInput,
    ProviderWebhookPayload,
    UserCancellationPreferences,
)
from app.services.analytics_service import get_unified_analytics, normalize_method
from app.services.capability_service import CapabilityAssessor, ProviderCapability
from app.services.eligibility_service import (
    check_eligibility,
    validate_cancellation_eligibility,
    validate_subscription_ownership,
)
from app.services.errors import (
    ActiveRequestConflict,
    CancellationError,
    CancellationErrorCode,
    RequestWithdrawn,
)
from app.services.event_bus import (
    SERVICE_COMPLETED,
    SERVICE_FAILED,
    SERVICE_PROGRESS,
    CancellationEventBus,
    LifecycleEvent,
    ProgressUpdate,
)
from app.services.fallback_executor import ChainResult, FallbackChainExecutor
from app.services.method_executors import build_executors
from app.services.method_selection import build_fallback_chain, select_method
from app.services.orchestration_tracker import OrchestrationTracker
from app.services.results import (
    CancellationResult,
    ResultMetadata,
    failure_result,
    tracking_for,
)
from app.services.scheduling_service import due_scheduled_requests, schedule_cancellation
from app.utils.cancellation_clients import CancellationContext, ManualOutcome

logger = logging.getLogger("cancellation")

_PRIORITIES = ("low", "normal", "high")
_RETRYABLE_STATUSES = ("failed", "cancelled")
_CANCELLABLE_STATUSES = ("pending", "processing")
_CONFIRMABLE_STATUSES = ("pending", "processing")


def generate_orchestration_id() -> str:
    return f"orch_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_details(exc: ValidationError) -> Dict[str, Any]:
    return {
        "errors": [
            {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
            for err in exc.errors()
        ]
    }


def _notification_preferences(payload: CancellationRequestInput) -> Dict[str, bool]:
    prefs = payload.userPreferences.notificationPreferences if payload.userPreferences else None
    if prefs is None:
        return {"email": True, "sms": False, "realtime": True}
    return {"email": prefs.email, "sms": prefs.sms, "realtime": prefs.realTime}


def _error(code: CancellationErrorCode, message: str) -> Dict[str, Any]:
    return {"success": False, "message": message, "error": {"code": code.value, "message": message}}


def attach_service_observers(
    event_bus: CancellationEventBus, tracker: OrchestrationTracker
) -> List[Callable[[], None]]:
    """Forward collaborator lifecycle events into live orchestration sessions."""

    def _on_progress(event: LifecycleEvent) -> None:
        if not event.orchestration_id:
            return
        tracker.emit_update(
            event.orchestration_id,
            ProgressUpdate(
                orchestration_id=event.orchestration_id,
                status=event.payload.get("status", "processing"),
                message=event.payload.get("message", "Cancellation in progress"),
                progress=int(event.payload.get("progress", 0)),
                metadata=event.payload,
            ),
        )

    def _on_completed(event: LifecycleEvent) -> None:
        if event.orchestration_id:
            tracker.update_status(
                event.orchestration_id,
                "completed",
                message=event.payload.get("message", "Cancellation completed"),
                metadata=event.payload,
            )

    def _on_failed(event: LifecycleEvent) -> None:
        if event.orchestration_id:
            tracker.update_status(
                event.orchestration_id,
                "failed",
                message=event.payload.get("message", "Cancellation failed"),
                metadata=event.payload,
            )

    return [
        event_bus.subscribe(SERVICE_PROGRESS, _on_progress),
        event_bus.subscribe(SERVICE_COMPLETED, _on_completed),
        event_bus.subscribe(SERVICE_FAILED, _on_failed),
    ]


class CancellationOrchestrator:
    """
    Single entry point for cancelling a subscription.

    ``initiate_cancellation`` validates the request, picks a method from the
    provider's capability, runs the fallback chain and records the outcome.
    It never raises: every failure comes back as a ``CancellationResult``
    with ``success=False`` and an error code.

    The tracker and event bus are long-lived and shared between requests;
    the store and audit logger are bound to one database session.
    """

    def __init__(
        self,
        store,
        audit,
        collaborators,
        tracker: OrchestrationTracker,
        event_bus: CancellationEventBus,
        assessor: Optional[CapabilityAssessor] = None,
        delay_seconds: float = settings.CANCELLATION_FALLBACK_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.audit = audit
        self.collaborators = collaborators
        self.tracker = tracker
        self.event_bus = event_bus
        self.assessor = assessor or CapabilityAssessor(store)
        self.executors = build_executors(audit, collaborators)
        self.delay_seconds = delay_seconds
        self.sleep = sleep

    # ----- tracking log -----

    async def _log(
        self,
        orchestration_id: Optional[str],
        request_id: Optional[str],
        action: str,
        level: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            await self.store.append_log(
                action=action,
                level=level,
                message=message,
                request_id=request_id,
                orchestration_id=orchestration_id,
                metadata=metadata,
            )
        except Exception as e:
            logger.warning(f"Failed to write cancellation log '{action}': {e}")

    # ----- initiation -----

    async def initiate_cancellation(
        self,
        user_id: int,
        payload: Union[CancellationRequestInput, Dict[str, Any]],
        reuse_request_id: Optional[str] = None,
    ) -> CancellationResult:
        orchestration_id = generate_orchestration_id()
        method = "manual"
        request = None
        request_id = reuse_request_id

        try:
            request_input = (
                payload
                if isinstance(payload, CancellationRequestInput)
                else CancellationRequestInput.model_validate(payload)
            )
        except ValidationError as e:
            return failure_result(
                orchestration_id=orchestration_id,
                request_id=reuse_request_id,
                method=method,
                code=CancellationErrorCode.VALIDATION_ERROR,
                message="Input validation failed",
                details=_error_details(e),
            )

        real_time = request_input.real_time_updates
        try:
            if reuse_request_id:
                request = await self.store.get_request(reuse_request_id, user_id=user_id)
                if request is None:
                    raise CancellationError(
                        CancellationErrorCode.REQUEST_NOT_FOUND,
                        "Cancellation request not found",
                        {"request_id": reuse_request_id},
                    )

            await self.audit.log(
                user_id=user_id,
                action="cancellation.orchestration_started",
                resource=request_input.subscriptionId,
                result="success",
                metadata={
                    "orchestration_id": orchestration_id,
                    "preferred_method": request_input.preferredMethod,
                    "priority": request_input.priority,
                },
            )

            subscription = await validate_subscription_ownership(
                self.store, self.audit, user_id, request_input.subscriptionId
            )
            await validate_cancellation_eligibility(
                self.store,
                self.audit,
                user_id,
                subscription,
                exclude_request_id=reuse_request_id,
            )

            capability = await self.assessor.assess(subscription.name)
            method = select_method(
                capability, request_input.preferredMethod, request_input.userPreferences
            )

            if request_input.scheduling and request_input.scheduling.scheduleFor:
                return await schedule_cancellation(
                    self.store,
                    self.audit,
                    user_id=user_id,
                    subscription=subscription,
                    payload=request_input,
                    orchestration_id=orchestration_id,
                    method=method,
                    capability=capability,
                )

            request = await self._open_request(
                request, user_id, subscription, request_input, orchestration_id, method, capability
            )
            request_id = request.id
            self.tracker.register(
                orchestration_id, user_id, method, status="routing", request_id=request.id
            )
            if reuse_request_id is not None:
                await self._log(
                    orchestration_id,
                    request.id,
                    "orchestration_initiated",
                    "info",
                    "Cancellation orchestration restarted",
                    {"user_id": user_id, "subscription_id": subscription.id, "method": method},
                )

            return await self._execute(
                user_id, subscription, request_input, request, orchestration_id, method, capability
            )
        except CancellationError as e:
            logger.info(f"Orchestration {orchestration_id} rejected: {e.code.value} {e.message}")
            await self._abandon(request, request_id, orchestration_id, e.code, e.message)
            return failure_result(
                orchestration_id=orchestration_id,
                request_id=request_id,
                method=method,
                code=e.code,
                message=e.message,
                real_time_updates=real_time,
                details=e.details,
            )
        except Exception as e:
            logger.exception(f"Orchestration {orchestration_id} failed unexpectedly")
            message = str(e) or "Unknown error occurred"
            await self.audit.log(
                user_id=user_id,
                action="cancellation.orchestration_failed",
                resource=request_input.subscriptionId,
                result="failure",
                error=message,
                metadata={"orchestration_id": orchestration_id},
            )
            await self._abandon(
                request,
                request_id,
                orchestration_id,
                CancellationErrorCode.ORCHESTRATION_FAILED,
                message,
            )
            return failure_result(
                orchestration_id=orchestration_id,
                request_id=request_id,
                method=method,
                code=CancellationErrorCode.ORCHESTRATION_FAILED,
                message=message,
                real_time_updates=real_time,
                details={"exception": e.__class__.__name__},
            )

    async def _open_request(
        self,
        request,
        user_id: int,
        subscription,
        payload: CancellationRequestInput,
        orchestration_id: str,
        method: str,
        capability: ProviderCapability,
    ):
        metadata = {
            "orchestration_id": orchestration_id,
            "preferred_method": payload.preferredMethod,
            "capabilities": capability.to_dict(),
        }
        try:
            if request is not None:
                return await self.store.update_request(
                    request,
                    method=method,
                    priority=payload.priority,
                    status="pending",
                    provider_id=getattr(capability, "provider_id", None),
                    request_metadata={**(request.request_metadata or {}), **metadata},
                )
            return await self.store.create_request(
                user_id=user_id,
                subscription_id=subscription.id,
                provider_id=getattr(capability, "provider_id", None),
                method=method,
                priority=payload.priority,
                status="pending",
                attempts=0,
                user_notes=payload.reason,
                request_metadata=metadata,
                log={
                    "orchestration_id": orchestration_id,
                    "action": "orchestration_initiated",
                    "level": "info",
                    "message": "Cancellation orchestration started",
                    "metadata": {
                        "user_id": user_id,
                        "subscription_id": subscription.id,
                        "method": method,
                    },
                },
            )
        except ActiveRequestConflict:
            raise CancellationError(
                CancellationErrorCode.CANCELLATION_IN_PROGRESS,
                "A cancellation request is already in progress for this subscription",
                {"subscription_id": subscription.id},
            )

    async def _execute(
        self,
        user_id: int,
        subscription,
        payload: CancellationRequestInput,
        request,
        orchestration_id: str,
        method: str,
        capability: ProviderCapability,
    ) -> CancellationResult:
        chain = build_fallback_chain(method, capability)
        ctx = CancellationContext(
            user_id=user_id,
            subscription_id=subscription.id,
            subscription_name=subscription.name,
            request_id=request.id,
            orchestration_id=orchestration_id,
            priority=payload.priority,
            notes=payload.reason,
            notification_preferences=_notification_preferences(payload),
        )

        async def log_activity(action, level, message, metadata):
            await self._log(orchestration_id, request.id, action, level, message, metadata)

        async def on_attempt(attempt_method, attempt):
            if await self._withdrawn(request):
                raise RequestWithdrawn(request.id)
            await self.store.update_request(
                request,
                method=attempt_method,
                status="processing",
                attempts=(request.attempts or 0) + 1,
                last_attempt_at=_utcnow(),
            )

        chain_executor = FallbackChainExecutor(
            self.executors,
            self.tracker,
            log_activity,
            delay_seconds=self.delay_seconds,
            sleep=self.sleep,
            on_attempt=on_attempt,
        )
        try:
            outcome = await chain_executor.run(
                chain, ctx, capability, allow_fallback=payload.allow_fallback
            )
        except RequestWithdrawn:
            return await self._withdraw(
                payload, request, orchestration_id, request.method, request.attempts or 0
            )

        # A user cancel that landed during the last attempt wins over its outcome.
        if await self._withdrawn(request):
            return await self._withdraw(
                payload, request, orchestration_id, outcome.method, outcome.attempts_used, outcome
            )

        if outcome.success:
            return await self._finalize_success(
                user_id, subscription, payload, request, orchestration_id, capability, outcome
            )
        return await self._finalize_failure(
            user_id, subscription, payload, request, orchestration_id, outcome
        )

    async def _finalize_success(
        self,
        user_id: int,
        subscription,
        payload: CancellationRequestInput,
        request,
        orchestration_id: str,
        capability: ProviderCapability,
        chain: ChainResult,
    ) -> CancellationResult:
        result = chain.outcome
        now = _utcnow()
        metadata = dict(request.request_metadata or {})
        if result.workflow_id:
            metadata["workflow_id"] = result.workflow_id

        if result.status == "completed":
            await self.store.update_request(
                request,
                status="completed",
                method=chain.method,
                external_reference=result.external_reference,
                confirmation_code=result.confirmation_code,
                effective_date=result.effective_date or now,
                refund_amount=result.refund_amount,
                completed_at=now,
                request_metadata=metadata,
            )
            await self.store.mark_subscription_cancelled(
                subscription.id,
                {
                    "request_id": request.id,
                    "method": chain.method,
                    "confirmation_code": result.confirmation_code,
                    "effective_date": (result.effective_date or now).isoformat(),
                    "cancelled_at": now.isoformat(),
                },
            )
        else:
            # Manual and asynchronous tracks keep the in-flight slot until
            # a confirmation or provider callback finalizes them.
            await self.store.update_request(
                request,
                status="processing" if result.status == "processing" else "pending",
                method=chain.method,
                external_reference=result.external_reference,
                request_metadata=metadata,
            )

        self.tracker.update_status(
            orchestration_id,
            result.status,
            message=result.message,
            metadata={"method": chain.method, "attempts_used": chain.attempts_used},
        )
        await self._log(
            orchestration_id,
            request.id,
            "orchestration_completed",
            "success",
            f"Cancellation {result.status} via {chain.method}",
            {"method": chain.method, "attempts_used": chain.attempts_used},
        )
        logger.info(
            f"Orchestration {orchestration_id} finished with {result.status} "
            f"via {chain.method} after {chain.attempts_used} attempt(s)"
        )

        return CancellationResult(
            success=True,
            orchestration_id=orchestration_id,
            request_id=request.id,
            status=result.status,
            method=chain.method,
            message=result.message,
            estimated_completion=result.estimated_completion,
            confirmation_code=result.confirmation_code,
            effective_date=result.effective_date,
            refund_amount=result.refund_amount,
            manual_instructions=result.manual_instructions,
            metadata=ResultMetadata(
                attempts_used=chain.attempts_used,
                real_time_updates_enabled=payload.real_time_updates,
                fallback_reason=chain.fallback_reason,
                provider_info=capability.to_dict(),
                workflow_id=result.workflow_id,
            ),
            tracking=tracking_for(orchestration_id),
        )

    async def _finalize_failure(
        self,
        user_id: int,
        subscription,
        payload: CancellationRequestInput,
        request,
        orchestration_id: str,
        chain: ChainResult,
    ) -> CancellationResult:
        await self.store.update_request(
            request,
            status="failed",
            method=chain.method,
            error_code=chain.error_code.value,
            error_message=chain.error_message,
        )
        self.tracker.update_status(
            orchestration_id,
            "failed",
            message=chain.error_message,
            metadata={"error_code": chain.error_code.value, "attempted": chain.attempted},
        )
        await self._log(
            orchestration_id,
            request.id,
            "orchestration_failed",
            "error",
            chain.error_message,
            {"error_code": chain.error_code.value, "attempted": chain.attempted},
        )
        await self.audit.log(
            user_id=user_id,
            action="cancellation.orchestration_failed",
            resource=subscription.id,
            result="failure",
            error=chain.error_message,
            metadata={
                "orchestration_id": orchestration_id,
                "request_id": request.id,
                "attempted": chain.attempted,
            },
        )
        return failure_result(
            orchestration_id=orchestration_id,
            request_id=request.id,
            method=chain.method,
            code=chain.error_code,
            message=chain.error_message,
            attempts_used=chain.attempts_used,
            fallback_reason=chain.fallback_reason,
            real_time_updates=payload.real_time_updates,
            details={"attempted_methods": chain.attempted},
        )

    async def _withdrawn(self, request) -> bool:
        return await self.store.current_status(request.id) == "cancelled"

    async def _withdraw(
        self,
        payload: CancellationRequestInput,
        request,
        orchestration_id: str,
        method: str,
        attempts_used: int,
        chain: Optional[ChainResult] = None,
    ) -> CancellationResult:
        """Stop after a user cancel; the stored request is left as the user set it."""
        message = "Cancellation request was withdrawn by the user"
        metadata: Dict[str, Any] = {"method": method, "attempts_used": attempts_used}
        if chain is not None:
            metadata["chain_succeeded"] = chain.success
            if chain.outcome is not None:
                metadata["outcome_status"] = chain.outcome.status
                metadata["external_reference"] = chain.outcome.external_reference
            if chain.error_code is not None:
                metadata["error_code"] = chain.error_code.value

        self.tracker.update_status(orchestration_id, "cancelled", message=message)
        await self._log(
            orchestration_id, request.id, "orchestration_withdrawn", "warning", message, metadata
        )
        logger.info(
            f"Orchestration {orchestration_id} stopped: request {request.id} was withdrawn"
        )

        result = failure_result(
            orchestration_id=orchestration_id,
            request_id=request.id,
            method=method,
            code=CancellationErrorCode.REQUEST_WITHDRAWN,
            message=message,
            attempts_used=attempts_used,
            real_time_updates=payload.real_time_updates,
            details=metadata,
        )
        result.status = "cancelled"
        return result

    async def _abandon(
        self,
        request,
        request_id: Optional[str],
        orchestration_id: str,
        code: CancellationErrorCode,
        message: str,
    ) -> None:
        """Release the in-flight slot held by a request that will never run."""
        self.tracker.update_status(orchestration_id, "failed", message=message)
        if request is None:
            return
        try:
            if request.status not in ACTIVE_REQUEST_STATUSES:
                return
            await self.store.update_request(
                request, status="failed", error_code=code.value, error_message=message
            )
        except Exception as e:
            logger.warning(f"Could not mark request {request_id} as failed: {e}")
            return
        await self._log(
            orchestration_id,
            request_id,
            "orchestration_failed",
            "error",
            message,
            {"error_code": code.value},
        )

    # ----- retry / cancel / confirm -----

    async def retry_cancellation(
        self,
        user_id: int,
        request_id: str,
        force_method: Optional[str] = None,
        escalate: bool = False,
    ) -> CancellationResult:
        method = force_method or "manual"
        try:
            request = await self.store.get_request(
                request_id, user_id=user_id, statuses=_RETRYABLE_STATUSES
            )
            if request is None:
                return failure_result(
                    orchestration_id=generate_orchestration_id(),
                    request_id=request_id,
                    method=method,
                    code=CancellationErrorCode.REQUEST_NOT_FOUND,
                    message="Cancellation request not found or cannot be retried",
                )

            previous_method = normalize_method(request.method) or "manual"
            method = force_method or ("automation" if escalate else previous_method)
            priority = "high" if escalate else (
                request.priority if request.priority in _PRIORITIES else "normal"
            )

            try:
                await self.store.update_request(
                    request,
                    status="pending",
                    error_code=None,
                    error_message=None,
                    completed_at=None,
                )
            except ActiveRequestConflict:
                return failure_result(
                    orchestration_id=generate_orchestration_id(),
                    request_id=request_id,
                    method=method,
                    code=CancellationErrorCode.CANCELLATION_IN_PROGRESS,
                    message="Another cancellation request is already in progress for this subscription",
                )

            await self.audit.log(
                user_id=user_id,
                action="cancellation.retry_requested",
                resource=request.subscription_id,
                result="success",
                metadata={
                    "request_id": request.id,
                    "previous_method": previous_method,
                    "method": method,
                    "escalate": escalate,
                },
            )
            payload = CancellationRequestInput(
                subscriptionId=request.subscription_id,
                reason=request.user_notes,
                priority=priority,
                preferredMethod=method,
                userPreferences=UserCancellationPreferences(
                    allowFallback=force_method is None
                ),
            )
        except Exception as e:
            logger.exception(f"Retry of cancellation request {request_id} failed")
            return failure_result(
                orchestration_id=generate_orchestration_id(),
                request_id=request_id,
                method=method,
                code=CancellationErrorCode.RETRY_FAILED,
                message=f"Failed to retry cancellation: {e}",
            )

        return await self.initiate_cancellation(user_id, payload, reuse_request_id=request.id)

    async def cancel_cancellation_request(
        self, user_id: int, request_id: str, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        try:
            request = await self.store.get_request(
                request_id, user_id=user_id, statuses=_CANCELLABLE_STATUSES
            )
            if request is None:
                return _error(
                    CancellationErrorCode.REQUEST_NOT_FOUND,
                    "Cancellation request not found or cannot be cancelled",
                )

            now = _utcnow()
            await self.store.update_request(
                request,
                status="cancelled",
                error_message=reason or "Cancelled by user",
                completed_at=now,
            )
            orchestration_id = (request.request_metadata or {}).get("orchestration_id")
            await self._log(
                orchestration_id,
                request.id,
                "user_cancelled",
                "info",
                "Cancellation request cancelled by user",
                {"reason": reason, "user_id": user_id},
            )
            await self.audit.log(
                user_id=user_id,
                action="cancellation.user_cancelled",
                resource=request.subscription_id,
                result="success",
                metadata={"request_id": request.id, "reason": reason},
            )

            live_id = self.tracker.find_by_request(request.id) or orchestration_id
            if live_id:
                self.tracker.update_status(
                    live_id, "cancelled", message="Cancellation request cancelled by user"
                )

            return {
                "success": True,
                "request_id": request.id,
                "status": "cancelled",
                "message": "Cancellation request cancelled",
            }
        except Exception as e:
            logger.exception(f"Failed to cancel cancellation request {request_id}")
            return _error(
                CancellationErrorCode.CANCELLATION_ERROR,
                f"Failed to cancel request: {e}",
            )

    async def confirm_manual(
        self,
        user_id: int,
        request_id: str,
        was_successful: bool,
        confirmation_code: Optional[str] = None,
        effective_date: Optional[datetime] = None,
        refund_amount: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            request = await self.store.get_request(
                request_id,
                user_id=user_id,
                statuses=_CONFIRMABLE_STATUSES,
                method="manual",
            )
            if request is None:
                return _error(
                    CancellationErrorCode.REQUEST_NOT_FOUND,
                    "Manual cancellation request not found or already finalized",
                )

            now = _utcnow()
            orchestration_id = (request.request_metadata or {}).get("orchestration_id")
            if was_successful:
                effective = effective_date or now
                await self.store.update_request(
                    request,
                    status="completed",
                    confirmation_code=confirmation_code,
                    effective_date=effective,
                    refund_amount=refund_amount,
                    user_confirmed=True,
                    user_notes=notes or request.user_notes,
                    completed_at=now,
                )
                await self.store.mark_subscription_cancelled(
                    request.subscription_id,
                    {
                        "request_id": request.id,
                        "method": "manual",
                        "confirmation_code": confirmation_code,
                        "effective_date": effective.isoformat(),
                        "cancelled_at": now.isoformat(),
                    },
                )
                message = "Manual cancellation confirmed"
            else:
                await self.store.update_request(
                    request,
                    status="failed",
                    user_confirmed=True,
                    user_notes=notes or request.user_notes,
                    error_message=notes or "User reported the manual cancellation did not succeed",
                )
                message = "Manual cancellation marked as unsuccessful"

            await self._log(
                orchestration_id,
                request.id,
                "manual_confirmation_success" if was_successful else "manual_confirmation_failed",
                "success" if was_successful else "warning",
                message,
                {"confirmation_code": confirmation_code, "user_id": user_id},
            )

            try:
                await self.collaborators.manual.confirm(
                    user_id,
                    request.external_reference or request.id,
                    ManualOutcome(
                        was_successful=was_successful,
                        confirmation_code=confirmation_code,
                        effective_date=effective_date,
                        notes=notes,
                    ),
                )
            except Exception as e:
                logger.warning(f"Instruction service confirmation failed for {request.id}: {e}")

            await self.audit.log(
                user_id=user_id,
                action="cancellation.manual_confirmation",
                resource=request.subscription_id,
                result="success" if was_successful else "failure",
                metadata={"request_id": request.id, "confirmation_code": confirmation_code},
            )

            live_id = self.tracker.find_by_request(request.id) or orchestration_id
            if live_id:
                self.tracker.update_status(
                    live_id, "completed" if was_successful else "failed", message=message
                )

            return {
                "success": True,
                "request_id": request.id,
                "status": "completed" if was_successful else "failed",
                "message": message,
            }
        except Exception as e:
            logger.exception(f"Manual confirmation failed for request {request_id}")
            return _error(
                CancellationErrorCode.CONFIRMATION_ERROR,
                f"Failed to confirm cancellation: {e}",
            )

    # ----- status and tracking -----

    async def get_orchestration_status(
        self, orchestration_id: str, user_id: Optional[int] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Live session state when the orchestration is still tracked, otherwise
        a reconstruction from the durable request and its log timeline.
        """
        session = self.tracker.get(orchestration_id)
        try:
            logs = await self.store.logs_for_orchestration(orchestration_id)
        except Exception as e:
            logger.warning(f"Failed to load logs for orchestration {orchestration_id}: {e}")
            logs = []

        timeline = [
            {
                "id": log.id,
                "request_id": log.request_id,
                "action": log.action,
                "level": log.level,
                "message": log.message,
                "metadata": log.log_metadata or {},
                "created_at": log.created_at,
            }
            for log in logs
        ]

        if session is not None:
            if user_id is not None and session["user_id"] != user_id:
                return None
            return {**session, "live": True, "logs": timeline}

        request_id = next((log.request_id for log in logs if log.request_id), None)
        if request_id is None:
            return None
        request = await self.store.get_request(request_id, user_id=user_id)
        if request is None:
            return None
        return {
            "orchestration_id": orchestration_id,
            "user_id": request.user_id,
            "request_id": request.id,
            "status": request.status,
            "method": request.method,
            "start_time": logs[0].created_at,
            "last_update": logs[-1].created_at,
            "live": False,
            "logs": timeline,
        }

    async def get_cancellation_status(self, user_id: int, request_id: str) -> Dict[str, Any]:
        try:
            request = await self.store.get_request(request_id, user_id=user_id)
            if request is None:
                return _error(
                    CancellationErrorCode.REQUEST_NOT_FOUND, "Cancellation request not found"
                )
            logs = await self.store.logs_for_request(request.id)
        except Exception as e:
            logger.exception(f"Failed to load cancellation request {request_id}")
            return _error(
                CancellationErrorCode.STATUS_RETRIEVAL_ERROR,
                f"Error retrieving cancellation status: {e}",
            )

        if request.status == "completed":
            next_steps = ["Cancellation completed successfully"]
        elif request.status == "failed":
            next_steps = ["Review failure reason and retry if needed"]
        elif request.status == "scheduled":
            next_steps = ["Cancellation will start at the scheduled time"]
        elif request.status == "cancelled":
            next_steps = ["Cancellation request was withdrawn; start a new one or retry"]
        else:
            next_steps = ["Cancellation in progress"]

        subscription = request.subscription
        provider = request.provider
        return {
            "success": True,
            "status": {
                "request_id": request.id,
                "status": request.status,
                "method": request.method,
                "attempts": request.attempts,
                "created_at": request.created_at,
                "updated_at": request.updated_at,
                "completed_at": request.completed_at,
                "scheduled_for": request.scheduled_for,
                "confirmation_code": request.confirmation_code,
                "effective_date": request.effective_date,
                "error_code": request.error_code,
                "error_message": request.error_message,
                "subscription": (
                    {
                        "id": subscription.id,
                        "name": subscription.name,
                        "amount": float(subscription.amount or 0),
                    }
                    if subscription is not None
                    else None
                ),
                "provider": (
                    {"name": provider.name, "type": provider.type}
                    if provider is not None
                    else None
                ),
            },
            "timeline": [
                {
                    "action": log.action,
                    "level": log.level,
                    "message": log.message,
                    "created_at": log.created_at,
                }
                for log in logs
            ],
            "next_steps": next_steps,
        }

    def subscribe_to_updates(
        self, orchestration_id: str, callback: Callable[[ProgressUpdate], None]
    ) -> Callable[[], None]:
        return self.tracker.subscribe(orchestration_id, callback)

    # ----- read models -----

    async def get_unified_analytics(self, user_id: int, timeframe: str = "month") -> Dict[str, Any]:
        return await get_unified_analytics(self.store, user_id, timeframe)

    async def get_provider_capabilities(self, provider: Optional[str] = None) -> Dict[str, Any]:
        if provider:
            capability = await self.assessor.assess(provider)
            return {provider: capability.to_dict()}
        return {name: cap.to_dict() for name, cap in self.assessor.snapshot().items()}

    async def can_cancel(self, user_id: int, subscription_id: int) -> Dict[str, Any]:
        return await check_eligibility(self.store, user_id, subscription_id)

    async def get_history(
        self,
        user_id: int,
        limit: int = 20,
        offset: int = 0,
        status: str = "all",
        method: str = "all",
        subscription_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        if status == "all":
            statuses = None
        elif status == "pending":
            statuses = ACTIVE_REQUEST_STATUSES
        else:
            statuses = (status,)

        items, total = await self.store.list_requests(
            user_id,
            statuses=statuses,
            method=None if method == "all" else method,
            subscription_id=subscription_id,
            limit=limit,
            offset=offset,
        )
        breakdown = await self.store.status_breakdown(user_id)
        return {
            "requests": [
                {
                    "id": r.id,
                    "subscription_id": r.subscription_id,
                    "subscription_name": r.subscription.name if r.subscription else None,
                    "method": r.method,
                    "status": r.status,
                    "priority": r.priority,
                    "attempts": r.attempts,
                    "confirmation_code": r.confirmation_code,
                    "effective_date": r.effective_date,
                    "scheduled_for": r.scheduled_for,
                    "created_at": r.created_at,
                    "completed_at": r.completed_at,
                }
                for r in items
            ],
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "has_more": offset + len(items) < total,
            },
            "status_breakdown": breakdown,
        }

    # ----- external triggers -----

    async def handle_provider_webhook(self, payload: ProviderWebhookPayload) -> Dict[str, Any]:
        request = await self.store.find_request_by_reference(
            payload.requestId, statuses=_CANCELLABLE_STATUSES
        )
        if request is None:
            logger.info(f"Ignoring provider callback for unknown request {payload.requestId}")
            return {"status": "ignored"}

        now = _utcnow()
        orchestration_id = (
            self.tracker.find_by_request(request.id)
            or (request.request_metadata or {}).get("orchestration_id")
        )
        if payload.status == "completed":
            effective = payload.effectiveDate or now
            await self.store.update_request(
                request,
                status="completed",
                confirmation_code=payload.confirmationCode,
                effective_date=effective,
                refund_amount=payload.refundAmount,
                completed_at=now,
            )
            await self.store.mark_subscription_cancelled(
                request.subscription_id,
                {
                    "request_id": request.id,
                    "method": request.method,
                    "confirmation_code": payload.confirmationCode,
                    "effective_date": effective.isoformat(),
                    "cancelled_at": now.isoformat(),
                },
            )
            message = "Provider confirmed the cancellation"
            channel = SERVICE_COMPLETED
        else:
            message = payload.error or "Provider reported the cancellation failed"
            await self.store.update_request(
                request,
                status="failed",
                error_code=CancellationErrorCode.ALL_METHODS_FAILED.value,
                error_message=message,
            )
            channel = SERVICE_FAILED

        await self._log(
            orchestration_id,
            request.id,
            f"provider_webhook_{payload.status}",
            "success" if payload.status == "completed" else "error",
            message,
            {"confirmation_code": payload.confirmationCode, "reference": payload.requestId},
        )
        self.event_bus.publish(
            LifecycleEvent(
                channel=channel,
                orchestration_id=orchestration_id,
                user_id=request.user_id,
                request_id=request.id,
                payload={
                    "message": message,
                    "request_id": request.id,
                    "confirmation_code": payload.confirmationCode,
                },
            )
        )
        return {"status": "ok", "request_id": request.id, "request_status": request.status}

    async def due_scheduled_requests(self, now: Optional[datetime] = None) -> List[Any]:
        return await due_scheduled_requests(self.store, now)

    async def run_scheduled(self, request_id: str) -> CancellationResult:
        """Start a scheduled request once its time has come."""
        request = await self.store.get_request(request_id, statuses=("scheduled",))
        if request is None:
            return failure_result(
                orchestration_id=generate_orchestration_id(),
                request_id=request_id,
                method="manual",
                code=CancellationErrorCode.REQUEST_NOT_FOUND,
                message="Scheduled cancellation request not found",
            )

        await self.store.update_request(request, status="pending")
        method = normalize_method(request.method)
        preferences = (request.request_metadata or {}).get("user_preferences")
        payload = CancellationRequestInput(
            subscriptionId=request.subscription_id,
            reason=request.user_notes,
            priority=request.priority if request.priority in _PRIORITIES else "normal",
            preferredMethod=method or "auto",
            userPreferences=(
                UserCancellationPreferences.model_validate(preferences)
                if preferences
                else None
            ),
        )
        return await self.initiate_cancellation(
            request.user_id, payload, reuse_request_id=request.id
        )
