from __future__ import annotations

from typing import List, Optional

from app.services.capability_service import METHODS, ProviderCapability

API_CONFIDENCE_THRESHOLD = 0.85
AUTOMATION_CONFIDENCE_THRESHOLD = 0.7


def select_method(
    capability: ProviderCapability,
    preferred_method: str = "auto",
    preferences: Optional[object] = None,
) -> str:
    """
    Pick the primary cancellation method for a provider.

    An explicit, supported preference wins. Otherwise the API is used when it
    is reliable enough, automation when the provider is awkward to cancel by
    hand or automation is reliable, and manual instructions as a last resort.
    Deterministic: no randomness and no clock reads.
    """
    if preferred_method != "auto" and preferred_method in METHODS:
        if capability.supports(preferred_method):
            return preferred_method

    if (
        capability.supports_api
        and capability.api_success_rate > API_CONFIDENCE_THRESHOLD
    ):
        return "api"

    if capability.supports_automation and (
        capability.requires_2fa
        or capability.has_retention_offers
        or capability.difficulty == "hard"
        or capability.automation_success_rate > AUTOMATION_CONFIDENCE_THRESHOLD
    ):
        return "automation"

    return "manual"


def build_fallback_chain(primary: str, capability: ProviderCapability) -> List[str]:
    chain = [primary]
    for method in METHODS:
        if method != primary and capability.supports(method):
            chain.append(method)
    if "manual" not in chain:
        chain.append("manual")
    return chain
