"""
Error types shared by the orchestration core and the HTTP layer.

Every error carries a stable ``reason`` string and the HTTP status the API
responds with, so routes can raise them directly.
"""

from __future__ import annotations

from typing import Optional


class DroidOpsError(Exception):
    """Base exception for all rejected requests and failed actions."""

    status_code = 500
    default_reason = "internal_error"

    def __init__(self, message: str, *, reason: Optional[str] = None) -> None:
        self.message = message
        self.reason = reason or self.default_reason
        super().__init__(message)


class ValidationError(DroidOpsError):
    """Raised when a payload is malformed; nothing has been mutated."""

    status_code = 400
    default_reason = "validation_error"


class NotFoundError(DroidOpsError):
    """Raised for an unknown job id or workflow name."""

    status_code = 404
    default_reason = "not_found"


class ProviderError(DroidOpsError):
    """Raised when the device backend fails. The message is kept verbatim."""

    status_code = 502
    default_reason = "provider_error"


class CapacityError(DroidOpsError):
    """Raised when a request or a bounded structure would exceed its limit."""

    status_code = 413
    default_reason = "capacity_exceeded"


class InvalidTransitionError(DroidOpsError):
    """Raised when attempting an illegal job state transition."""

    default_reason = "invalid_transition"

    def __init__(self, job_id: int, current: str, target: str) -> None:
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Invalid job {job_id} state transition: {current} -> {target}")
