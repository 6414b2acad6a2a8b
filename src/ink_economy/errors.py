from __future__ import annotations

from typing import Any, Optional


class InkEconomyError(Exception):
    """Base error; `status_code` is what the HTTP layer answers with."""

    status_code: int = 500
    code: str = "INK_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(InkEconomyError, ValueError):
    """Malformed or missing input, rejected before any write."""

    status_code = 400
    code = "VALIDATION_ERROR"


class InsufficientCreditsError(InkEconomyError, ValueError):
    status_code = 402
    code = "INSUFFICIENT_CREDITS"


class PermissionDeniedError(InkEconomyError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(InkEconomyError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(InkEconomyError):
    """The requested transition contradicts what the ledger already records."""

    status_code = 409
    code = "CONFLICT"


class UpstreamError(InkEconomyError):
    """The inference call failed or reported unusable usage; nothing was charged."""

    status_code = 502
    code = "UPSTREAM_ERROR"


class PersistenceError(InkEconomyError):
    """A store write failed. Paired writes are not rolled back."""

    status_code = 500
    code = "PERSISTENCE_ERROR"


class DuplicateActiveSessionError(PersistenceError):
    """Raised by a store when an account already holds an active session."""

    status_code = 409
    code = "DUPLICATE_ACTIVE_SESSION"
