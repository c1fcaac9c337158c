"""Error taxonomy shared by the roster, queue and application workflows."""

from __future__ import annotations

from typing import Any


class ClanServiceError(Exception):
    """Base error carrying the HTTP status the request boundary should use."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, **extra: Any):
        self.message = message
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.extra}


class ValidationError(ClanServiceError):
    status_code = 400
    code = "VALIDATION_ERROR"


class BatchTooLargeError(ValidationError):
    code = "BATCH_TOO_LARGE"


class BatchTooSmallError(ValidationError):
    code = "BATCH_TOO_SMALL"

    def __init__(self, message: str, *, remaining: int, **extra: Any):
        self.remaining = remaining
        super().__init__(message, remaining=remaining, **extra)


class AuthError(ClanServiceError):
    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(AuthError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(ClanServiceError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(ClanServiceError):
    status_code = 409
    code = "CONFLICT"


class InvalidTransitionError(ConflictError):
    code = "INVALID_TRANSITION"


class RateLimitedError(ClanServiceError):
    status_code = 429
    code = "RATE_LIMITED"


class StoreError(ClanServiceError):
    status_code = 500
    code = "STORE_ERROR"


class ExternalServiceError(ClanServiceError):
    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"


class PartialBatchError(ClanServiceError):
    """A batch that finished with per-row errors.

    Not raised to callers; batch operations attach it to their outcome and
    audit records so the row errors travel with a single summary.
    """

    status_code = 200
    code = "PARTIAL_BATCH"

    def __init__(self, errors: list[str], **extra: Any):
        self.errors = list(errors)
        super().__init__(
            f"{len(self.errors)} row(s) failed", errors=self.errors, **extra
        )
