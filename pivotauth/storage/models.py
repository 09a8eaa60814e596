from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Epoch pivot for accounts that never had a security event
PIVOT_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class Account:
    id: str
    identifier: str
    role: str = "member"
    status: str = "active"
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    failed_login_attempts: int = 0
    failed_login_window_start: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    security_pivot: datetime = PIVOT_EPOCH
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    mfa_recovery_codes: List[str] = field(default_factory=list)
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None
    meta: Dict | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def copy(self) -> "Account":
        return replace(
            self,
            mfa_recovery_codes=list(self.mfa_recovery_codes),
            meta=dict(self.meta) if self.meta else self.meta,
        )


# Columns callers may change through CredentialStore.update
MUTABLE_ACCOUNT_FIELDS = frozenset(
    f.name
    for f in fields(Account)
    if f.name not in {"id", "identifier", "version", "created_at"}
)


@dataclass
class PasswordResetRecord:
    token_hash: str
    account_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    def is_redeemable(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now


def normalize_identifier(identifier: str) -> str:
    """Emails match case-insensitively; other identifiers are only trimmed."""
    cleaned = (identifier or "").strip()
    if "@" in cleaned:
        return cleaned.lower()
    return cleaned


def account_to_dict(account: Account) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for f in fields(Account):
        value = getattr(account, f.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, list):
            value = list(value)
        data[f.name] = value
    return data


_DATETIME_FIELDS = {
    "failed_login_window_start",
    "locked_until",
    "security_pivot",
    "created_at",
    "deleted_at",
}


def account_from_dict(data: Dict[str, Any]) -> Account:
    known = {f.name for f in fields(Account)}
    values: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            continue
        if key in _DATETIME_FIELDS and isinstance(value, str):
            value = datetime.fromisoformat(value)
        values[key] = value
    return Account(**values)
