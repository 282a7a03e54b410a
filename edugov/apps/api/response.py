from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

T = TypeVar("T")


class SuccessEnvelope(BaseModel, Generic[T]):
    # Wrap successful responses in a consistent envelope.
    success: bool = True
    data: T
    message: str | None = None


class ErrorEnvelope(BaseModel):
    # Errors keep the same shape and add a stable machine-readable code.
    success: bool = False
    data: Any = None
    message: str
    code: str
    details: dict[str, Any] | None = None


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def success_response(data: Any, *, message: str | None = None) -> dict[str, Any]:
    return {"success": True, "data": data, "message": message}


def error_response(
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    envelope = ErrorEnvelope(message=message, code=code, details=details)
    return envelope.model_dump(exclude_none=True) | {"data": None}
