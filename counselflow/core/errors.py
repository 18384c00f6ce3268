from __future__ import annotations

from typing import Any


class CounselFlowError(Exception):
    """Base error for counselflow; carries a stable code and HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class Unauthorized(CounselFlowError):
    """No valid caller identity."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401


class Forbidden(CounselFlowError):
    """Caller lacks the role or ownership for the operation."""

    code = "AUTH_FORBIDDEN"
    status_code = 403


class NotFound(CounselFlowError):
    """Referenced letter, subscription, coupon or commission does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class InvalidTransition(CounselFlowError):
    """Requested status change is not in the transition table."""

    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, from_status: str | None, to_status: str) -> None:
        super().__init__(
            f"Cannot transition from {from_status} to {to_status}",
            details={"from": from_status, "to": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class AllowanceExhausted(CounselFlowError):
    """No letter credits left; the caller should offer an upgrade."""

    code = "ALLOWANCE_EXHAUSTED"
    status_code = 402

    def __init__(self, message: str = "No letter allowances remaining. Please purchase more letters or upgrade your plan.") -> None:
        super().__init__(message, details={"needs_subscription": True})


class ValidationError(CounselFlowError):
    """Missing or malformed required field."""

    code = "VALIDATION_ERROR"
    status_code = 422


class ConflictError(CounselFlowError):
    """Row state changed between read and conditional write."""

    code = "STATE_CONFLICT"
    status_code = 409


class DependencyFailure(CounselFlowError):
    """A required external call or primary write failed; safe to retry the whole operation."""

    code = "DEPENDENCY_FAILURE"
    status_code = 503


class DraftingError(CounselFlowError):
    """Drafting provider failed or returned no content."""

    code = "DRAFTING_FAILED"
    status_code = 502
