"""Error taxonomy shared by the reimbursement core and its callers.

Every failure the core reports is one of the classes below. Callers decide
whether to retry; only :class:`StorageUnavailable` is safe to retry and the
core guarantees nothing was written when it is raised.
"""

from __future__ import annotations

from typing import Iterable, List, Optional


class ReimbursementError(Exception):
    """Base exception for reimbursement business rule violations."""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        """Return a JSON-ready description of the error."""

        return {"error": self.kind, "message": self.message}


class ValidationError(ReimbursementError):
    """Raised when input data is malformed or violates domain rules."""

    kind = "validation_error"

    def __init__(self, errors: Iterable[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid input.")

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["errors"] = list(self.errors)
        return payload


class AuthorizationError(ReimbursementError):
    """Raised when the actor lacks the capability for an operation."""

    kind = "authorization_error"


class InvalidTransitionError(ReimbursementError):
    """Raised when a status change is not legal from the current status."""

    kind = "invalid_transition"

    def __init__(self, action: str, current_status: Optional[str], message: str = ""):
        self.action = action
        self.current_status = current_status
        super().__init__(
            message
            or f"Cannot {action} a request whose status is {current_status!r}."
        )

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["action"] = self.action
        payload["current_status"] = self.current_status
        return payload


class NotFound(ReimbursementError):
    """Raised when a request, item, or receipt does not exist."""

    kind = "not_found"


class StorageUnavailable(ReimbursementError):
    """Raised when the persistence layer cannot be reached.

    The transaction that hit the failure has been rolled back, so callers may
    retry with backoff.
    """

    kind = "storage_unavailable"
