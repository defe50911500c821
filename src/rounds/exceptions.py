"""Custom exceptions for the round lifecycle engine.

All service-layer exceptions live here to avoid circular imports between
the FSM, the service and the repositories. Storage errors raised by
aiosqlite are deliberately not part of this hierarchy: they propagate
unchanged to the job runner, which retries them.
"""

from typing import Any


class RoundEngineError(Exception):
    """Base exception for all round engine errors.

    Args:
        code: Stable machine-readable error code.
        message: Human-readable description.
        details: Extra context for operators (ids, statuses, missing keys).
    """

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} ({self.code}: {self.details})"
        return f"{self.message} ({self.code})"


class ValidationError(RoundEngineError):
    """Raised for a malformed identifier or missing transition metadata."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(RoundEngineError):
    """Raised when a referenced round or bet does not exist."""

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(
            "NOT_FOUND",
            f"{resource} not found: {resource_id}",
            {"resource": resource, "id": resource_id},
        )


class BusinessRuleError(RoundEngineError):
    """Raised for an illegal FSM transition or an operation in the wrong state."""


class PriceUnavailableError(Exception):
    """Raised when a price snapshot cannot be fetched or is incomplete.

    Transient by nature, so it sits outside RoundEngineError and the job
    runner retries it.
    """
