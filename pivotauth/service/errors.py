from __future__ import annotations

from typing import Optional

from pivotauth.schemas import Envelope, ErrorBody


def _at_least_one_second(seconds) -> int:
    return max(1, int(seconds))


class ServiceError(Exception):
    """Base class for engine errors handed back to route handlers.

    Each subclass pins an HTTP-style ``status_code`` and a stable
    ``error_code``. Messages are fixed per class so responses never vary
    with internal state such as counters or whether an account exists.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_envelope(self, request_id: Optional[str] = None) -> Envelope:
        body = ErrorBody(code=self.error_code, message=self.message, details=self.detail or None)
        if request_id is None:
            return Envelope(status="error", error=body)
        return Envelope(status="error", error=body, request_id=request_id)


class ValidationError(ServiceError):
    """Input failed a policy check (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidCredentials(ServiceError):
    """Unknown identifier or wrong password; the two are indistinguishable (401)."""
    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self) -> None:
        super().__init__("invalid credentials")


class AccountLocked(ServiceError):
    status_code = 423
    error_code = "account_locked"

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = _at_least_one_second(retry_after_seconds)
        super().__init__(
            "account temporarily locked", detail={"retry_after_seconds": self.retry_after_seconds}
        )


class AccountNotUsable(ServiceError):
    status_code = 403
    error_code = "account_not_usable"

    def __init__(self, category: str, message: str) -> None:
        super().__init__(message, detail={"category": category})
        self.category = category


class Unauthorized(ServiceError):
    """Malformed, expired, revoked or misdirected token (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "invalid token") -> None:
        super().__init__(message)


class InvalidMfaCode(ServiceError):
    status_code = 400
    error_code = "invalid_mfa_code"

    def __init__(self) -> None:
        super().__init__("invalid verification code")


class InvalidOrExpiredResetToken(ServiceError):
    status_code = 400
    error_code = "invalid_reset_token"

    def __init__(self) -> None:
        super().__init__("invalid or expired reset token")


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Operation does not apply to the current state (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = _at_least_one_second(retry_after_seconds)
        super().__init__(
            "too many attempts, try again later",
            detail={"retry_after_seconds": self.retry_after_seconds},
        )


class ServerError(ServiceError):
    """Infrastructure failure; never carries the underlying cause (500)."""
    status_code = 500
    error_code = "server_error"

    def __init__(self, message: str = "temporary failure, try again") -> None:
        super().__init__(message)


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentials",
    "AccountLocked",
    "AccountNotUsable",
    "Unauthorized",
    "InvalidMfaCode",
    "InvalidOrExpiredResetToken",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
