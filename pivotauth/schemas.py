from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "invalid_credentials",
    "account_locked",
    "account_not_usable",
    "unauthorized",
    "invalid_mfa_code",
    "invalid_reset_token",
    "validation_error",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class TokenPair(BaseModel):
    access: str
    refresh: str
    expired_at: datetime
    refreshable_until: datetime


class Authorized(BaseModel):
    """Payload returned by login and refresh; identical in shape for both."""

    id: str
    role: str
    token: Optional[TokenPair] = None
    profile: Dict[str, Any] = Field(default_factory=dict)
    mfa_required: bool = False


class AuthContext(BaseModel):
    account_id: str
    role: str
    issued_at: datetime


class MfaSetupResult(BaseModel):
    secret: str
    provisioning_uri: str


class MfaVerifyResult(BaseModel):
    mfa_enabled: bool = True
    codes: List[str]


class RecoveryCodesResult(BaseModel):
    mfa_enabled: bool = True
    codes: List[str]


class MfaDisableResult(BaseModel):
    mfa_enabled: bool = False


class PasswordResetResult(BaseModel):
    success: bool = True
    message: str = "password has been reset"


class PasswordChangeResult(BaseModel):
    success: bool = True
    message: str = "password changed"


__all__ = [
    "ErrorBody",
    "Envelope",
    "TokenPair",
    "Authorized",
    "AuthContext",
    "MfaSetupResult",
    "MfaVerifyResult",
    "RecoveryCodesResult",
    "MfaDisableResult",
    "PasswordResetResult",
    "PasswordChangeResult",
]
