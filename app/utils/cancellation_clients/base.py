from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


class CollaboratorError(Exception):
    """Standardized collaborator failure that carries an HTTP-ish status code."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class CancellationContext:
    user_id: int
    subscription_id: int
    subscription_name: str
    request_id: str
    orchestration_id: str
    priority: str = "normal"
    notes: Optional[str] = None
    notification_preferences: Dict[str, bool] = field(
        default_factory=lambda: {"email": True, "sms": False, "realtime": True}
    )


@dataclass
class ApiCancellationResponse:
    request_id: str
    status: str
    confirmation_code: Optional[str] = None
    effective_date: Optional[datetime] = None
    refund_amount: Optional[float] = None


@dataclass
class AutomationWorkflowResponse:
    request_id: str
    workflow_id: Optional[str] = None
    estimated_completion: Optional[datetime] = None


@dataclass
class ManualInstructions:
    provider_name: str
    difficulty: str
    estimated_time: int
    steps: List[Dict[str, Any]] = field(default_factory=list)
    tips: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    contact_info: Dict[str, Any] = field(default_factory=dict)
    logo: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ManualInstructionResponse:
    request_id: str
    instructions: Optional[ManualInstructions] = None


@dataclass
class ManualOutcome:
    was_successful: bool
    confirmation_code: Optional[str] = None
    effective_date: Optional[datetime] = None
    notes: Optional[str] = None


class ApiCancellationClient(ABC):
    name: str = "api"

    @abstractmethod
    async def initiate(self, ctx: CancellationContext) -> ApiCancellationResponse:
        raise NotImplementedError


class AutomationWorkflowClient(ABC):
    name: str = "automation"

    @abstractmethod
    async def initiate(self, ctx: CancellationContext) -> AutomationWorkflowResponse:
        raise NotImplementedError


class ManualInstructionClient(ABC):
    name: str = "manual"

    @abstractmethod
    async def provide_instructions(
        self, ctx: CancellationContext
    ) -> ManualInstructionResponse:
        raise NotImplementedError

    async def confirm(
        self, user_id: int, request_id: str, outcome: ManualOutcome
    ) -> None:
        return None
