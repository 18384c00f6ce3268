from __future__ import annotations

from typing import Any

from counselflow.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    404: _response("Not found", code="NOT_FOUND", message="Letter not found"),
    422: _response("Validation error", code="VALIDATION_ERROR", message="final_content is required"),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    503: _response("Dependency failure", code="DEPENDENCY_FAILURE", message="Failed to persist letter change"),
}

TRANSITION_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    402: _response(
        "Allowance exhausted",
        code="ALLOWANCE_EXHAUSTED",
        message="No letter allowances remaining. Please purchase more letters or upgrade your plan.",
        details={"needs_subscription": True},
    ),
    409: _response(
        "Invalid transition or concurrent change",
        code="INVALID_TRANSITION",
        message="Cannot transition from pending_review to approved",
        details={"from": "pending_review", "to": "approved"},
    ),
}
