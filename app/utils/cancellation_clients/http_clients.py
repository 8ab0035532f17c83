from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from app.core.config import settings
from app.utils.cancellation_clients.base import (
    ApiCancellationClient,
    ApiCancellationResponse,
    AutomationWorkflowClient,
    AutomationWorkflowResponse,
    CancellationContext,
    CollaboratorError,
    ManualInstructionClient,
    ManualInstructionResponse,
    ManualInstructions,
    ManualOutcome,
)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_amount(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class InternalServiceClient:
    """
    Thin async JSON client for the internal cancellation collaborators.

    Every call carries the shared service token and surfaces failures as
    CollaboratorError so executors can convert them into fallback attempts.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url:
            raise RuntimeError("Collaborator base URL is required")
        self.base_url = base_url.rstrip("/")
        self.token = token if token is not None else settings.INTERNAL_SERVICE_TOKEN
        self.timeout = timeout or settings.COLLABORATOR_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["X-Service-Token"] = self.token
        return headers

    async def _request(
        self, method: str, path: str, payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, headers=self._headers, transport=self._transport
            ) as client:
                resp = await client.request(method, url, json=payload)
        except httpx.HTTPError as e:
            raise CollaboratorError(f"{url} unreachable: {e}", status_code=503)

        if resp.status_code >= 400:
            try:
                parsed = resp.json()
                detail = parsed.get("detail") or parsed.get("error") or parsed
            except ValueError:
                detail = resp.text
            raise CollaboratorError(
                f"{method} {path} failed ({resp.status_code}): {detail}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError:
            raise CollaboratorError(f"{method} {path} returned invalid JSON")


def _base_payload(ctx: CancellationContext) -> Dict[str, Any]:
    return {
        "userId": ctx.user_id,
        "subscriptionId": ctx.subscription_id,
        "subscriptionName": ctx.subscription_name,
        "requestId": ctx.request_id,
        "orchestrationId": ctx.orchestration_id,
        "priority": ctx.priority,
        "notes": ctx.notes,
    }


class HttpApiCancellationClient(ApiCancellationClient):
    def __init__(self, service: Optional[InternalServiceClient] = None):
        self.service = service or InternalServiceClient(
            settings.CANCELLATION_API_SERVICE_URL
        )

    async def initiate(self, ctx: CancellationContext) -> ApiCancellationResponse:
        body = await self.service._request(
            "POST", "/api/cancellations", payload=_base_payload(ctx)
        )
        if not body.get("requestId"):
            raise CollaboratorError("API cancellation response missing requestId")
        return ApiCancellationResponse(
            request_id=str(body["requestId"]),
            status=body.get("status") or "processing",
            confirmation_code=body.get("confirmationCode"),
            effective_date=_parse_datetime(body.get("effectiveDate")),
            refund_amount=_parse_amount(body.get("refundAmount")),
        )


class HttpAutomationWorkflowClient(AutomationWorkflowClient):
    def __init__(self, service: Optional[InternalServiceClient] = None):
        self.service = service or InternalServiceClient(settings.AUTOMATION_SERVICE_URL)

    async def initiate(self, ctx: CancellationContext) -> AutomationWorkflowResponse:
        payload = _base_payload(ctx)
        payload["notificationPreferences"] = dict(ctx.notification_preferences)
        body = await self.service._request("POST", "/api/workflows", payload=payload)
        if not body.get("requestId"):
            raise CollaboratorError("Automation response missing requestId")
        return AutomationWorkflowResponse(
            request_id=str(body["requestId"]),
            workflow_id=body.get("workflowId"),
            estimated_completion=_parse_datetime(body.get("estimatedCompletion")),
        )


class HttpInstructionClient(ManualInstructionClient):
    def __init__(self, service: Optional[InternalServiceClient] = None):
        self.service = service or InternalServiceClient(settings.INSTRUCTION_SERVICE_URL)

    async def provide_instructions(
        self, ctx: CancellationContext
    ) -> ManualInstructionResponse:
        body = await self.service._request(
            "POST", "/api/instructions", payload=_base_payload(ctx)
        )
        raw = body.get("instructions")
        instructions = None
        if raw:
            provider = raw.get("provider") or {}
            instructions = ManualInstructions(
                provider_name=provider.get("name") or ctx.subscription_name,
                logo=provider.get("logo"),
                difficulty=provider.get("difficulty") or "medium",
                estimated_time=int(provider.get("estimatedTime") or 0),
                steps=list(raw.get("steps") or []),
                tips=list(raw.get("tips") or []),
                warnings=list(raw.get("warnings") or []),
                contact_info=dict(raw.get("contactInfo") or {}),
            )
        return ManualInstructionResponse(
            request_id=str(body.get("requestId") or ctx.request_id),
            instructions=instructions,
        )

    async def confirm(
        self, user_id: int, request_id: str, outcome: ManualOutcome
    ) -> None:
        await self.service._request(
            "POST",
            f"/api/instructions/{request_id}/confirm",
            payload={
                "userId": user_id,
                "wasSuccessful": outcome.was_successful,
                "confirmationCode": outcome.confirmation_code,
                "effectiveDate": (
                    outcome.effective_date.isoformat()
                    if outcome.effective_date
                    else None
                ),
                "notes": outcome.notes,
            },
        )
