from __future__ import annotations

from typing import Any, Dict, List

from app.services.capability_service import (
    classify_provider,
    heuristic_capability,
    normalize_provider_name,
)
from app.utils.cancellation_clients.base import (
    CancellationContext,
    ManualInstructionClient,
    ManualInstructionResponse,
    ManualInstructions,
)

_GENERIC_STEPS: List[Dict[str, Any]] = [
    {
        "title": "Sign in to your account",
        "description": "Open the provider's website or app and sign in.",
    },
    {
        "title": "Open billing or subscription settings",
        "description": "Look for Account, Billing, Membership or Plan settings.",
    },
    {
        "title": "Cancel the subscription",
        "description": "Choose Cancel and follow the prompts until you see a confirmation.",
    },
    {
        "title": "Save the confirmation",
        "description": "Note the confirmation number or keep the confirmation email.",
    },
]

_CATEGORY_TIPS = {
    "streaming": ["Decline retention offers if you want the cancellation to go through."],
    "software": ["Annual plans may carry an early termination fee; check before confirming."],
    "utility": ["Utilities usually require a phone call; have your account number ready."],
    "other": [],
}


class RegistryInstructionClient(ManualInstructionClient):
    """Builds manual instructions from the provider registry (no remote call)."""

    name = "registry"

    def __init__(self, store):
        self.store = store

    async def provide_instructions(
        self, ctx: CancellationContext
    ) -> ManualInstructionResponse:
        provider = await self.store.find_active_provider(
            normalize_provider_name(ctx.subscription_name)
        )
        if provider is None:
            fallback = heuristic_capability(ctx.subscription_name)
            category = classify_provider(ctx.subscription_name)
            instructions = ManualInstructions(
                provider_name=ctx.subscription_name,
                difficulty=fallback.difficulty,
                estimated_time=fallback.manual_estimated_time,
                steps=list(_GENERIC_STEPS),
                tips=list(_CATEGORY_TIPS[category]),
            )
            return ManualInstructionResponse(
                request_id=ctx.request_id, instructions=instructions
            )

        steps = []
        tips = []
        warnings = []
        for raw in provider.instructions or []:
            steps.append(
                {"title": raw.get("title", ""), "description": raw.get("description", "")}
            )
            if raw.get("tip"):
                tips.append(raw["tip"])
            if raw.get("warning"):
                warnings.append(raw["warning"])

        contact_info = {
            key: value
            for key, value in (
                ("phone", provider.phone_number),
                ("email", provider.email),
                ("chat", provider.chat_url),
                ("website", provider.login_url),
            )
            if value
        }
        instructions = ManualInstructions(
            provider_name=provider.name,
            logo=provider.logo,
            difficulty=provider.difficulty or "medium",
            estimated_time=provider.average_time or 20,
            steps=steps or list(_GENERIC_STEPS),
            tips=tips,
            warnings=warnings,
            contact_info=contact_info,
        )
        return ManualInstructionResponse(
            request_id=ctx.request_id, instructions=instructions
        )
