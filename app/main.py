import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.cancellation_routes import router as cancellation_router
from app.db import session as db_session
from app.services.cancellation_orchestrator import attach_service_observers
from app.services.cancellation_store import CancellationStore
from app.services.capability_service import CapabilityAssessor
from app.services.event_bus import CancellationEventBus
from app.services.orchestration_tracker import OrchestrationTracker

logger = logging.getLogger("cancellation_service")

SESSION_SWEEP_INTERVAL_SECONDS = 60


async def _sweep_sessions(tracker: OrchestrationTracker) -> None:
    while True:
        await asyncio.sleep(SESSION_SWEEP_INTERVAL_SECONDS)
        tracker.sweep_expired()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not db_session.TESTING:
        try:
            async with db_session.session_scope() as db:
                await CapabilityAssessor(CancellationStore(db)).warm()
        except Exception as e:
            logger.warning(f"Capability cache warm-up skipped: {e}")

    sweeper = asyncio.create_task(_sweep_sessions(app.state.tracker))
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper


app = FastAPI(title="Subscription Cancellation Service", docs_url="/docs", lifespan=lifespan)

app.state.event_bus = CancellationEventBus()
app.state.tracker = OrchestrationTracker(app.state.event_bus)
attach_service_observers(app.state.event_bus, app.state.tracker)


@app.get("/")
def root():
    return {"message": "Cancellation Service Running 🚀"}


app.include_router(cancellation_router)
