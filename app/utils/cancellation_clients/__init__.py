from dataclasses import dataclass

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
from app.utils.cancellation_clients.http_clients import (
    HttpApiCancellationClient,
    HttpAutomationWorkflowClient,
    HttpInstructionClient,
    InternalServiceClient,
)
from app.utils.cancellation_clients.registry_instructions import (
    RegistryInstructionClient,
)


@dataclass
class CollaboratorSet:
    api: ApiCancellationClient
    automation: AutomationWorkflowClient
    manual: ManualInstructionClient


def build_collaborators(store) -> CollaboratorSet:
    """Wire the configured collaborators; manual falls back to the registry."""
    if settings.INSTRUCTION_SERVICE_URL:
        manual: ManualInstructionClient = HttpInstructionClient()
    else:
        manual = RegistryInstructionClient(store)
    return CollaboratorSet(
        api=HttpApiCancellationClient(),
        automation=HttpAutomationWorkflowClient(),
        manual=manual,
    )


__all__ = [
    "ApiCancellationClient",
    "ApiCancellationResponse",
    "AutomationWorkflowClient",
    "AutomationWorkflowResponse",
    "CancellationContext",
    "CollaboratorError",
    "CollaboratorSet",
    "HttpApiCancellationClient",
    "HttpAutomationWorkflowClient",
    "HttpInstructionClient",
    "InternalServiceClient",
    "ManualInstructionClient",
    "ManualInstructionResponse",
    "ManualInstructions",
    "ManualOutcome",
    "RegistryInstructionClient",
    "build_collaborators",
]
