from __future__ import annotations

import logging
import re
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, ClassVar, Dict, Optional, Tuple, Union

from app.core.config import settings
from app.services.errors import CancellationError, CancellationErrorCode

logger = logging.getLogger("capabilities")

METHODS = ("api", "automation", "manual")
DIFFICULTIES = ("easy", "medium", "hard")

_STREAMING = re.compile(r"netflix|hulu|disney|prime|spotify|apple|youtube")
_SOFTWARE = re.compile(r"adobe|microsoft|zoom|slack|dropbox")
_UTILITY = re.compile(r"phone|electric|gas|water|internet")

# category -> (difficulty, estimated minutes, retention offers)
_HEURISTIC_PROFILES: Dict[str, Tuple[str, int, bool]] = {
    "streaming": ("easy", 10, True),
    "software": ("medium", 20, True),
    "utility": ("hard", 30, False),
    "other": ("medium", 15, False),
}


def normalize_provider_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


@dataclass(frozen=True)
class _Capability:
    provider_name: str
    supports_api: bool
    supports_automation: bool
    supports_manual: bool
    api_success_rate: float
    automation_success_rate: float
    manual_success_rate: float
    api_estimated_time: int
    automation_estimated_time: int
    manual_estimated_time: int
    difficulty: str
    requires_2fa: bool
    has_retention_offers: bool
    requires_human_intervention: bool
    last_assessed: datetime

    data_source: ClassVar[str] = ""

    def supports(self, method: str) -> bool:
        if method == "api":
            return self.supports_api
        if method == "automation":
            return self.supports_automation
        if method == "manual":
            return self.supports_manual
        return False

    def success_rate(self, method: str) -> float:
        return getattr(self, f"{method}_success_rate", 0.0)

    def estimated_minutes(self, method: str) -> int:
        return getattr(self, f"{method}_estimated_time", 0)

    def is_within_bounds(self) -> bool:
        rates = (
            self.api_success_rate,
            self.automation_success_rate,
            self.manual_success_rate,
        )
        times = (
            self.api_estimated_time,
            self.automation_estimated_time,
            self.manual_estimated_time,
        )
        return (
            bool(self.provider_name)
            and all(0.0 <= r <= 1.0 for r in rates)
            and all(t >= 0 for t in times)
            and self.difficulty in DIFFICULTIES
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_assessed"] = self.last_assessed.isoformat()
        data["data_source"] = self.data_source
        return data


@dataclass(frozen=True)
class StoredCapability(_Capability):
    """Capability derived from a row of the provider registry."""

    provider_id: Optional[int] = None

    data_source: ClassVar[str] = "database"


@dataclass(frozen=True)
class HeuristicCapability(_Capability):
    """Capability guessed from the provider's display name."""

    category: str = "other"

    data_source: ClassVar[str] = "heuristic"


ProviderCapability = Union[StoredCapability, HeuristicCapability]


def classify_provider(name: str) -> str:
    lowered = name.lower()
    if _STREAMING.search(lowered):
        return "streaming"
    if _SOFTWARE.search(lowered):
        return "software"
    if _UTILITY.search(lowered):
        return "utility"
    return "other"


def heuristic_capability(name: str) -> HeuristicCapability:
    category = classify_provider(name)
    difficulty, minutes, retention = _HEURISTIC_PROFILES[category]
    return HeuristicCapability(
        provider_name=name,
        supports_api=False,
        supports_automation=False,
        supports_manual=True,
        api_success_rate=0.0,
        automation_success_rate=0.0,
        manual_success_rate=0.9,
        api_estimated_time=0,
        automation_estimated_time=0,
        manual_estimated_time=minutes,
        difficulty=difficulty,
        requires_2fa=False,
        has_retention_offers=retention,
        requires_human_intervention=retention,
        last_assessed=datetime.now(timezone.utc),
        category=category,
    )


def capability_from_provider(provider: Any) -> StoredCapability:
    """Map a ``CancellationProvider`` row onto a stored capability."""
    provider_type = provider.type
    rate = float(provider.success_rate or 0)
    average_time = provider.average_time
    is_api = provider_type == "api" and bool(provider.api_endpoint)
    is_automation = provider_type == "web_automation"
    requires_2fa = bool(provider.requires_2fa)
    requires_retention = bool(provider.requires_retention)
    return StoredCapability(
        provider_name=provider.name,
        supports_api=is_api,
        supports_automation=is_automation,
        supports_manual=True,
        api_success_rate=rate if provider_type == "api" else 0.0,
        automation_success_rate=rate if is_automation else 0.0,
        manual_success_rate=0.95,
        api_estimated_time=(average_time or 5) if provider_type == "api" else 0,
        automation_estimated_time=(average_time or 15) if is_automation else 0,
        manual_estimated_time=average_time or 20,
        difficulty=provider.difficulty or "medium",
        requires_2fa=requires_2fa,
        has_retention_offers=requires_retention,
        requires_human_intervention=requires_2fa or requires_retention,
        last_assessed=datetime.now(timezone.utc),
        provider_id=provider.id,
    )


class CapabilityCache:
    """Process-wide capability cache keyed by normalized provider name.

    Entries are immutable snapshots; concurrent writers for the same key
    compute equivalent values, so the last write simply wins.
    """

    def __init__(
        self,
        ttl_seconds: int = settings.CAPABILITY_CACHE_TTL_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, Tuple[ProviderCapability, datetime]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[ProviderCapability]:
        with self._lock:
            entry = self._entries.get(key)
        if not entry:
            return None
        capability, expires_at = entry
        if expires_at <= self._clock():
            return None
        return capability

    def put(self, key: str, capability: ProviderCapability) -> None:
        with self._lock:
            self._entries[key] = (capability, self._clock() + self.ttl)

    def discard(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def snapshot(self) -> Dict[str, ProviderCapability]:
        now = self._clock()
        with self._lock:
            return {
                key: capability
                for key, (capability, expires_at) in self._entries.items()
                if expires_at > now
            }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


capability_cache = CapabilityCache()


class CapabilityAssessor:
    def __init__(self, store, cache: Optional[CapabilityCache] = None):
        self.store = store
        self.cache = cache if cache is not None else capability_cache

    async def assess(self, subscription_name: str) -> ProviderCapability:
        if not isinstance(subscription_name, str) or not subscription_name.strip():
            raise CancellationError(
                CancellationErrorCode.VALIDATION_ERROR,
                "Invalid subscription name for capability assessment",
            )

        key = normalize_provider_name(subscription_name)
        cached = self.cache.get(key)
        if cached is not None and cached.is_within_bounds():
            return cached
        if cached is not None:
            self.cache.discard(key)

        provider = None
        if key:
            try:
                provider = await self.store.find_active_provider(key)
            except Exception as e:
                logger.warning(f"Provider registry lookup failed for '{key}': {e}")

        capability: ProviderCapability
        if provider is not None:
            capability = capability_from_provider(provider)
        else:
            capability = heuristic_capability(subscription_name)

        if not capability.is_within_bounds():
            logger.error(
                f"Invalid capability generated for '{subscription_name}', "
                "using heuristic default"
            )
            capability = heuristic_capability(subscription_name)

        self.cache.put(key, capability)
        return capability

    async def warm(self) -> int:
        """Pre-populate the cache from every active provider."""
        try:
            providers = await self.store.list_active_providers()
        except Exception as e:
            logger.warning(f"Failed to initialize capability cache: {e}")
            return 0

        loaded = 0
        for provider in providers:
            capability = capability_from_provider(provider)
            if not capability.is_within_bounds():
                logger.warning(
                    f"Skipping provider '{provider.name}' with out-of-range data"
                )
                continue
            self.cache.put(provider.normalized_name, capability)
            loaded += 1
        logger.info(f"Initialized capabilities for {loaded} providers")
        return loaded

    def snapshot(self, provider: Optional[str] = None):
        if provider is not None:
            return self.cache.get(normalize_provider_name(provider))
        return self.cache.snapshot()
