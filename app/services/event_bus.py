from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("cancellation_events")

ORCHESTRATION_UPDATE = "orchestration.update"
SERVICE_PROGRESS = "service.progress"
SERVICE_COMPLETED = "service.completed"
SERVICE_FAILED = "service.failed"

CHANNELS = (ORCHESTRATION_UPDATE, SERVICE_PROGRESS, SERVICE_COMPLETED, SERVICE_FAILED)


@dataclass
class ProgressUpdate:
    orchestration_id: str
    status: str
    message: str
    progress: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orchestration_id": self.orchestration_id,
            "status": self.status,
            "message": self.message,
            "progress": self.progress,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


@dataclass
class LifecycleEvent:
    channel: str
    orchestration_id: Optional[str] = None
    user_id: Optional[int] = None
    request_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


Observer = Callable[[LifecycleEvent], None]


class CancellationEventBus:
    """Typed publish/subscribe channels shared by the orchestrator and its observers."""

    def __init__(self):
        self._observers: Dict[str, List[Observer]] = {c: [] for c in CHANNELS}
        self._lock = threading.Lock()

    def subscribe(self, channel: str, observer: Observer) -> Callable[[], None]:
        if channel not in self._observers:
            raise ValueError(f"Unknown cancellation event channel '{channel}'")
        with self._lock:
            self._observers[channel].append(observer)

        def _unsubscribe() -> None:
            with self._lock:
                if observer in self._observers[channel]:
                    self._observers[channel].remove(observer)

        return _unsubscribe

    def publish(self, event: LifecycleEvent) -> None:
        if event.channel not in self._observers:
            raise ValueError(f"Unknown cancellation event channel '{event.channel}'")
        with self._lock:
            observers = list(self._observers[event.channel])
        for observer in observers:
            try:
                observer(event)
            except Exception:
                logger.exception(f"Observer failed on '{event.channel}'")

    def observer_count(self, channel: str) -> int:
        with self._lock:
            return len(self._observers.get(channel, []))
