from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from app.core.config import settings
from app.services.event_bus import (
    ORCHESTRATION_UPDATE,
    CancellationEventBus,
    LifecycleEvent,
    ProgressUpdate,
)

logger = logging.getLogger("orchestration")

TERMINAL_SESSION_STATUSES = frozenset({"completed", "failed", "cancelled"})

UpdateCallback = Callable[[ProgressUpdate], None]


@dataclass
class OrchestrationSession:
    orchestration_id: str
    user_id: int
    status: str
    method: str
    started_at: datetime
    last_update: datetime
    request_id: Optional[str] = None
    subscribers: List[UpdateCallback] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orchestration_id": self.orchestration_id,
            "user_id": self.user_id,
            "status": self.status,
            "method": self.method,
            "request_id": self.request_id,
            "start_time": self.started_at.isoformat(),
            "last_update": self.last_update.isoformat(),
        }


class OrchestrationTracker:
    """
    Registry of live orchestration sessions and their progress subscribers.

    Sessions live only in this process. They are created when an orchestration
    starts executing and evicted once a terminal status is reached or after
    the session TTL passes. All access goes through the internal lock;
    subscriber callbacks are invoked outside of it.
    """

    def __init__(
        self,
        event_bus: Optional[CancellationEventBus] = None,
        ttl_seconds: int = settings.ORCHESTRATION_SESSION_TTL_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.event_bus = event_bus
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._sessions: Dict[str, OrchestrationSession] = {}
        self._lock = threading.Lock()

    def register(
        self,
        orchestration_id: str,
        user_id: int,
        method: str,
        status: str = "routing",
        request_id: Optional[str] = None,
    ) -> OrchestrationSession:
        now = self._clock()
        session = OrchestrationSession(
            orchestration_id=orchestration_id,
            user_id=user_id,
            status=status,
            method=method,
            started_at=now,
            last_update=now,
            request_id=request_id,
        )
        with self._lock:
            self._sessions[orchestration_id] = session
        return session

    def get(self, orchestration_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            session = self._sessions.get(orchestration_id)
            return session.to_dict() if session else None

    def is_active(self, orchestration_id: str) -> bool:
        with self._lock:
            return orchestration_id in self._sessions

    def set_method(self, orchestration_id: str, method: str) -> None:
        with self._lock:
            session = self._sessions.get(orchestration_id)
            if session:
                session.method = method
                session.last_update = self._clock()

    def update_status(
        self,
        orchestration_id: str,
        status: str,
        message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        with self._lock:
            session = self._sessions.get(orchestration_id)
            if not session:
                return False
            session.status = status
            session.last_update = self._clock()

        self.emit_update(
            orchestration_id,
            ProgressUpdate(
                orchestration_id=orchestration_id,
                status=status,
                message=message or f"Status updated to: {status}",
                progress=100 if status in TERMINAL_SESSION_STATUSES else 0,
                metadata=metadata or {},
            ),
        )
        if status in TERMINAL_SESSION_STATUSES:
            self.evict(orchestration_id)
        return True

    def emit_update(self, orchestration_id: str, update: ProgressUpdate) -> bool:
        with self._lock:
            session = self._sessions.get(orchestration_id)
            if not session:
                return False
            subscribers = list(session.subscribers)
            user_id = session.user_id
            request_id = session.request_id

        for callback in subscribers:
            try:
                callback(update)
            except Exception:
                logger.exception(
                    f"Update callback failed for orchestration {orchestration_id}"
                )

        if self.event_bus is not None:
            self.event_bus.publish(
                LifecycleEvent(
                    channel=ORCHESTRATION_UPDATE,
                    orchestration_id=orchestration_id,
                    user_id=user_id,
                    request_id=request_id,
                    payload=update.to_dict(),
                )
            )
        return True

    def subscribe(
        self, orchestration_id: str, callback: UpdateCallback
    ) -> Callable[[], None]:
        with self._lock:
            session = self._sessions.get(orchestration_id)
            if session:
                session.subscribers.append(callback)

        if not session:
            return lambda: None

        def _unsubscribe() -> None:
            with self._lock:
                if callback in session.subscribers:
                    session.subscribers.remove(callback)

        return _unsubscribe

    def find_by_request(self, request_id: str) -> Optional[str]:
        with self._lock:
            for orchestration_id, session in self._sessions.items():
                if session.request_id == request_id:
                    return orchestration_id
        return None

    def evict(self, orchestration_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(orchestration_id, None)
            if session:
                session.subscribers.clear()

    def sweep_expired(self) -> int:
        cutoff = self._clock() - self.ttl
        with self._lock:
            expired = [
                oid for oid, s in self._sessions.items() if s.last_update < cutoff
            ]
            for oid in expired:
                self._sessions.pop(oid).subscribers.clear()
        if expired:
            logger.info(f"Evicted {len(expired)} stale orchestration sessions")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
