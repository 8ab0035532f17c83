from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class CancellationErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_CANCELLED = "ALREADY_CANCELLED"
    CANCELLATION_IN_PROGRESS = "CANCELLATION_IN_PROGRESS"
    ALL_METHODS_FAILED = "ALL_METHODS_FAILED"
    FALLBACK_DISABLED = "FALLBACK_DISABLED"
    UNSUPPORTED_METHOD = "UNSUPPORTED_METHOD"
    ORCHESTRATION_FAILED = "ORCHESTRATION_FAILED"
    SCHEDULING_VALIDATION_FAILED = "SCHEDULING_VALIDATION_FAILED"
    REQUEST_NOT_FOUND = "REQUEST_NOT_FOUND"
    RETRY_FAILED = "RETRY_FAILED"
    CONFIRMATION_ERROR = "CONFIRMATION_ERROR"
    CANCELLATION_ERROR = "CANCELLATION_ERROR"
    STATUS_RETRIEVAL_ERROR = "STATUS_RETRIEVAL_ERROR"
    REQUEST_WITHDRAWN = "REQUEST_WITHDRAWN"


class CancellationError(Exception):
    """Domain error carrying a stable code for structured results."""

    def __init__(
        self,
        code: CancellationErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}


class MethodExecutionError(Exception):
    """Raised by a method executor so the fallback loop can move on."""

    def __init__(self, method: str, message: str):
        super().__init__(message)
        self.method = method


class ActiveRequestConflict(Exception):
    """The storage-level in-flight constraint rejected a new request."""


class RequestWithdrawn(Exception):
    """The user cancelled the request while its fallback chain was running."""

    def __init__(self, request_id: str):
        super().__init__(f"Cancellation request {request_id} was withdrawn")
        self.request_id = request_id
