from datetime import datetime, timedelta, timezone

import pytest

from app.services.event_bus import (
    ORCHESTRATION_UPDATE,
    SERVICE_COMPLETED,
    CancellationEventBus,
    LifecycleEvent,
    ProgressUpdate,
)
from app.services.orchestration_tracker import OrchestrationTracker


class Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def test_update_status_notifies_subscribers_and_bus():
    bus = CancellationEventBus()
    published = []
    bus.subscribe(ORCHESTRATION_UPDATE, published.append)
    tracker = OrchestrationTracker(bus)
    tracker.register("orch_1", 7, "api", request_id="req_1")

    updates = []
    tracker.subscribe("orch_1", updates.append)
    assert tracker.update_status("orch_1", "processing", message="working")

    assert [u.message for u in updates] == ["working"]
    assert published[0].orchestration_id == "orch_1"
    assert published[0].user_id == 7
    assert published[0].payload["status"] == "processing"
    assert tracker.get("orch_1")["status"] == "processing"


def test_terminal_status_evicts_session_after_final_update():
    tracker = OrchestrationTracker()
    tracker.register("orch_1", 7, "api")
    updates = []
    tracker.subscribe("orch_1", updates.append)

    tracker.update_status("orch_1", "completed")

    assert updates[-1].status == "completed"
    assert updates[-1].progress == 100
    assert tracker.get("orch_1") is None
    assert not tracker.is_active("orch_1")
    assert tracker.update_status("orch_1", "failed") is False


def test_subscribe_to_unknown_session_is_noop():
    tracker = OrchestrationTracker()
    unsubscribe = tracker.subscribe("missing", lambda update: None)
    unsubscribe()
    assert len(tracker) == 0


def test_unsubscribe_stops_delivery():
    tracker = OrchestrationTracker()
    tracker.register("orch_1", 7, "manual")
    updates = []
    unsubscribe = tracker.subscribe("orch_1", updates.append)
    unsubscribe()
    tracker.update_status("orch_1", "processing")
    assert updates == []


def test_failing_callback_does_not_block_others():
    tracker = OrchestrationTracker()
    tracker.register("orch_1", 7, "api")
    received = []

    def broken(update):
        raise RuntimeError("socket closed")

    tracker.subscribe("orch_1", broken)
    tracker.subscribe("orch_1", received.append)
    assert tracker.emit_update(
        "orch_1", ProgressUpdate(orchestration_id="orch_1", status="processing", message="x")
    )
    assert len(received) == 1


def test_sweep_expired_drops_stale_sessions():
    clock = Clock()
    tracker = OrchestrationTracker(ttl_seconds=60, clock=clock)
    tracker.register("old", 7, "api")
    clock.now += timedelta(seconds=30)
    tracker.register("fresh", 8, "api")
    clock.now += timedelta(seconds=31)

    assert tracker.sweep_expired() == 1
    assert tracker.get("old") is None
    assert tracker.get("fresh") is not None


def test_find_by_request():
    tracker = OrchestrationTracker()
    tracker.register("orch_1", 7, "api", request_id="req_1")
    assert tracker.find_by_request("req_1") == "orch_1"
    assert tracker.find_by_request("req_2") is None


def test_event_bus_rejects_unknown_channel():
    bus = CancellationEventBus()
    with pytest.raises(ValueError):
        bus.subscribe("billing.updated", lambda event: None)
    with pytest.raises(ValueError):
        bus.publish(LifecycleEvent(channel="billing.updated"))


def test_event_bus_isolates_observer_failures():
    bus = CancellationEventBus()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(SERVICE_COMPLETED, broken)
    unsubscribe = bus.subscribe(SERVICE_COMPLETED, seen.append)
    bus.publish(LifecycleEvent(channel=SERVICE_COMPLETED, request_id="req_1"))
    assert [e.request_id for e in seen] == ["req_1"]

    unsubscribe()
    assert bus.observer_count(SERVICE_COMPLETED) == 1


def test_service_events_drive_live_sessions(tracker, event_bus):
    tracker.register("orch_1", 7, "automation", status="processing")
    updates = []
    tracker.subscribe("orch_1", updates.append)

    event_bus.publish(
        LifecycleEvent(
            channel=SERVICE_COMPLETED,
            orchestration_id="orch_1",
            payload={"message": "Provider confirmed"},
        )
    )

    assert updates[-1].status == "completed"
    assert updates[-1].message == "Provider confirmed"
    assert tracker.get("orch_1") is None
