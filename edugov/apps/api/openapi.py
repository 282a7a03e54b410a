from __future__ import annotations

from typing import Any

from edugov.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {"success": False, "data": None, "message": message, "code": code}
    if details:
        payload["details"] = details
    return payload


def _error_response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response(
        "Validation error",
        _error_example(code="VALIDATION_ERROR", message="Title must be 1-200 characters"),
    ),
    401: _error_response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Authentication required"),
    ),
    403: _error_response(
        "Forbidden",
        _error_example(
            code="AUTH_FORBIDDEN",
            message="Insufficient role for this action",
            details={"reason": "role", "action": "review_upload"},
        ),
    ),
    404: _error_response("Not found", _error_example(code="NOT_FOUND", message="Upload not found")),
    409: _error_response(
        "Conflict",
        _error_example(code="ALREADY_PROCESSED", message="Upload already processed", details={"status": "approved"}),
    ),
    500: _error_response("Internal error", _error_example(code="INTERNAL_ERROR", message="Internal server error")),
}
