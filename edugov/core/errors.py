from __future__ import annotations

from typing import Any


class EduGovError(Exception):
    """Base error for the governance core."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal server error", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(EduGovError):
    """Client-fixable input problem detected before any write."""

    status_code = 400
    code = "VALIDATION_ERROR"


class UnauthenticatedError(EduGovError):
    """No usable principal on the request."""

    status_code = 401
    code = "AUTH_UNAUTHORIZED"


class ForbiddenError(EduGovError):
    """Authenticated principal lacks permission or targets itself."""

    status_code = 403
    code = "AUTH_FORBIDDEN"


class NotFoundError(EduGovError):
    """Unknown entity id."""

    status_code = 404
    code = "NOT_FOUND"


class ConflictError(EduGovError):
    """Write precondition failed (duplicate, stale state, lost race)."""

    status_code = 409
    code = "CONFLICT"


class AlreadyProcessedError(ConflictError):
    """Terminal item reviewed again."""

    code = "ALREADY_PROCESSED"


class QuotaExceededError(EduGovError):
    """Monthly upload quota reached for a tenant and media kind."""

    status_code = 400
    code = "QUOTA_EXCEEDED"

    def __init__(
        self,
        message: str = "Upload quota exceeded",
        *,
        details: dict[str, Any] | None = None,
        race_lost: bool = False,
    ) -> None:
        super().__init__(message, details=details)
        self.race_lost = race_lost
        if race_lost:
            # Losing the conditional increment after a passing pre-check is a conflict.
            self.status_code = 409


class StorageError(EduGovError):
    """Blob storage collaborator failed to persist bytes."""

    code = "STORAGE_ERROR"
