from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from app.core.config import settings
from app.services.capability_service import ProviderCapability
from app.services.errors import CancellationErrorCode, MethodExecutionError
from app.services.event_bus import ProgressUpdate
from app.services.method_executors import MethodExecutor, MethodOutcome
from app.services.orchestration_tracker import OrchestrationTracker
from app.utils.cancellation_clients import CancellationContext

logger = logging.getLogger("fallback")

ActivityLogger = Callable[[str, str, str, Dict[str, Any]], Awaitable[None]]
AttemptHook = Callable[[str, int], Awaitable[None]]


@dataclass
class ChainResult:
    success: bool
    method: str
    attempts_used: int
    outcome: Optional[MethodOutcome] = None
    error_code: Optional[CancellationErrorCode] = None
    error_message: Optional[str] = None
    fallback_reason: Optional[str] = None
    attempted: List[str] = field(default_factory=list)


class FallbackChainExecutor:
    """
    Runs a fallback chain one method at a time.

    The first successful method ends the run. A failure either ends the run
    (last method, or fallback disabled) or waits ``delay_seconds`` and moves
    to the next method. Given the chain and the sequence of executor outcomes
    the transitions are fully deterministic.
    """

    def __init__(
        self,
        executors: Mapping[str, MethodExecutor],
        tracker: OrchestrationTracker,
        log_activity: ActivityLogger,
        delay_seconds: float = settings.CANCELLATION_FALLBACK_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_attempt: Optional[AttemptHook] = None,
    ):
        self.executors = executors
        self.tracker = tracker
        self.log_activity = log_activity
        self.delay_seconds = delay_seconds
        self.sleep = sleep
        self.on_attempt = on_attempt

    async def run(
        self,
        chain: List[str],
        ctx: CancellationContext,
        capability: ProviderCapability,
        allow_fallback: bool = True,
    ) -> ChainResult:
        total = len(chain)
        attempted: List[str] = []
        oid = ctx.orchestration_id

        for index, method in enumerate(chain):
            executor = self.executors.get(method)
            if executor is None:
                message = f"Unsupported cancellation method: {method}"
                await self.log_activity(
                    "method_unsupported", "error", message, {"method": method}
                )
                return ChainResult(
                    success=False,
                    method=method,
                    attempts_used=len(attempted),
                    error_code=CancellationErrorCode.UNSUPPORTED_METHOD,
                    error_message=message,
                    attempted=attempted,
                )

            attempt = index + 1
            self.tracker.set_method(oid, method)
            self.tracker.update_status(
                oid,
                "processing",
                message=f"Attempting {method} cancellation ({attempt} of {total})",
                metadata={
                    "current_method": method,
                    "attempt": attempt,
                    "total_methods": total,
                },
            )
            await self.log_activity(
                "method_attempt",
                "info",
                f"Attempting method {attempt} of {total}: {method}",
                {"method": method, "attempt": attempt, "total_methods": total},
            )
            if self.on_attempt is not None:
                await self.on_attempt(method, attempt)

            attempted.append(method)
            try:
                outcome = await executor.execute(ctx, capability)
            except MethodExecutionError as e:
                error_message = str(e)
                await self.log_activity(
                    "method_failed",
                    "warning",
                    f"{method} cancellation failed: {error_message}",
                    {"method": method, "error": error_message, "attempt": attempt},
                )
                self.tracker.emit_update(
                    oid,
                    ProgressUpdate(
                        orchestration_id=oid,
                        status="failed",
                        message=f"{method} cancellation failed: {error_message}",
                        metadata={"method": method, "attempt": attempt},
                    ),
                )

                if attempt == total:
                    return ChainResult(
                        success=False,
                        method=method,
                        attempts_used=total,
                        error_code=CancellationErrorCode.ALL_METHODS_FAILED,
                        error_message=(
                            f"All cancellation methods failed. Last error: {error_message}"
                        ),
                        fallback_reason="All methods exhausted",
                        attempted=attempted,
                    )

                if not allow_fallback:
                    return ChainResult(
                        success=False,
                        method=method,
                        attempts_used=attempt,
                        error_code=CancellationErrorCode.FALLBACK_DISABLED,
                        error_message=(
                            f"{method} cancellation failed and fallback is disabled"
                        ),
                        fallback_reason="Fallback disabled by user",
                        attempted=attempted,
                    )

                logger.info(
                    f"Orchestration {oid}: {method} failed, falling back to "
                    f"{chain[index + 1]} in {self.delay_seconds}s"
                )
                await self.sleep(self.delay_seconds)
                continue

            await self.log_activity(
                "method_succeeded",
                "success",
                f"{method} cancellation succeeded",
                {"method": method, "attempt": attempt, "status": outcome.status},
            )
            return ChainResult(
                success=True,
                method=method,
                attempts_used=attempt,
                outcome=outcome,
                fallback_reason=(
                    f"Fell back after {index} failed method(s)" if index else None
                ),
                attempted=attempted,
            )

        return ChainResult(
            success=False,
            method=chain[-1] if chain else "manual",
            attempts_used=len(attempted),
            error_code=CancellationErrorCode.ALL_METHODS_FAILED,
            error_message="Fallback chain was empty",
            attempted=attempted,
        )
