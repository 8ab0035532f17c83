from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from app.services.capability_service import ProviderCapability
from app.services.errors import MethodExecutionError
from app.utils.cancellation_clients import (
    ApiCancellationClient,
    AutomationWorkflowClient,
    CancellationContext,
    ManualInstructionClient,
)

logger = logging.getLogger("method_executors")


@dataclass
class MethodOutcome:
    """Unified result of one successful method execution."""

    method: str
    status: str  # completed | processing | requires_manual
    message: str
    external_reference: Optional[str] = None
    estimated_completion: Optional[datetime] = None
    confirmation_code: Optional[str] = None
    effective_date: Optional[datetime] = None
    refund_amount: Optional[float] = None
    workflow_id: Optional[str] = None
    manual_instructions: Optional[Dict[str, Any]] = None
    details: Dict[str, Any] = field(default_factory=dict)


def _minutes_from_now(minutes: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)


class MethodExecutor(ABC):
    method: str = "base"
    label: str = "Base"

    def __init__(self, audit):
        self.audit = audit

    async def execute(
        self, ctx: CancellationContext, capability: ProviderCapability
    ) -> MethodOutcome:
        try:
            outcome = await self._run(ctx, capability)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            await self.audit.log(
                user_id=ctx.user_id,
                action=f"cancellation.{self.method}_method_failed",
                resource=ctx.subscription_id,
                result="failure",
                error=message,
                metadata={
                    "request_id": ctx.request_id,
                    "orchestration_id": ctx.orchestration_id,
                    "capability": capability.to_dict(),
                },
            )
            raise MethodExecutionError(
                self.method, f"{self.label} cancellation failed: {message}"
            ) from e

        await self.audit.log(
            user_id=ctx.user_id,
            action=f"cancellation.{self.method}_method_success",
            resource=ctx.subscription_id,
            result="success",
            metadata={
                "request_id": ctx.request_id,
                "orchestration_id": ctx.orchestration_id,
                "external_reference": outcome.external_reference,
                "status": outcome.status,
                "estimated_completion": outcome.estimated_completion,
            },
        )
        return outcome

    @abstractmethod
    async def _run(
        self, ctx: CancellationContext, capability: ProviderCapability
    ) -> MethodOutcome:
        raise NotImplementedError


class ApiMethodExecutor(MethodExecutor):
    method = "api"
    label = "API"

    def __init__(self, audit, client: ApiCancellationClient):
        super().__init__(audit)
        self.client = client

    async def _run(self, ctx, capability):
        response = await self.client.initiate(ctx)
        completed = response.status == "completed"
        return MethodOutcome(
            method=self.method,
            status="completed" if completed else "processing",
            message=(
                "API cancellation completed"
                if completed
                else "API cancellation initiated successfully"
            ),
            external_reference=response.request_id,
            estimated_completion=_minutes_from_now(capability.api_estimated_time),
            confirmation_code=response.confirmation_code,
            effective_date=response.effective_date,
            refund_amount=response.refund_amount,
        )


class AutomationMethodExecutor(MethodExecutor):
    method = "automation"
    label = "Automation"

    def __init__(self, audit, client: AutomationWorkflowClient):
        super().__init__(audit)
        self.client = client

    async def _run(self, ctx, capability):
        response = await self.client.initiate(ctx)
        return MethodOutcome(
            method=self.method,
            status="processing",
            message="Automation cancellation workflow started",
            external_reference=response.request_id,
            estimated_completion=(
                response.estimated_completion
                or _minutes_from_now(capability.automation_estimated_time)
            ),
            workflow_id=response.workflow_id,
        )


class ManualMethodExecutor(MethodExecutor):
    method = "manual"
    label = "Manual"

    def __init__(self, audit, client: ManualInstructionClient):
        super().__init__(audit)
        self.client = client

    async def _run(self, ctx, capability):
        response = await self.client.provide_instructions(ctx)
        instructions = response.instructions
        return MethodOutcome(
            method=self.method,
            status="requires_manual",
            message="Manual cancellation instructions generated",
            external_reference=response.request_id,
            estimated_completion=_minutes_from_now(capability.manual_estimated_time),
            manual_instructions=instructions.to_dict() if instructions else None,
        )


def build_executors(audit, collaborators) -> Dict[str, MethodExecutor]:
    return {
        "api": ApiMethodExecutor(audit, collaborators.api),
        "automation": AutomationMethodExecutor(audit, collaborators.automation),
        "manual": ManualMethodExecutor(audit, collaborators.manual),
    }
