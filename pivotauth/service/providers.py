from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from pivotauth.storage.models import Account


class AccountStatus(str, Enum):
    """Account status values with the message shown when login is refused."""

    ACTIVE = ("active", "")
    PENDING_APPROVAL = ("pending_approval", "account is awaiting approval")
    UNVERIFIED_EMAIL = ("unverified_email", "email address has not been verified")
    SUSPENDED = ("suspended", "account is suspended")
    BANNED = ("banned", "account has been banned")

    def __new__(cls, value: str, message: str):
        member = str.__new__(cls, value)
        member._value_ = value
        member.message = message
        return member

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["AccountStatus"]:
        try:
            return cls((raw or "").strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class StatusDecision:
    usable: bool
    reason: Optional[AccountStatus] = None

    @property
    def category(self) -> Optional[str]:
        return self.reason.value if self.reason else None


class AccountStatusProvider(Protocol):
    def is_usable(self, account: Account) -> StatusDecision: ...


class ProfileSnapshotProvider(Protocol):
    def get(self, account: Account) -> Dict[str, Any]: ...


class DefaultStatusProvider:
    """Reads ``Account.status``; unknown values are treated as suspended."""

    def __init__(self, blocked: frozenset[AccountStatus] | None = None) -> None:
        self.blocked = blocked or frozenset(
            status for status in AccountStatus if status is not AccountStatus.ACTIVE
        )

    def is_usable(self, account: Account) -> StatusDecision:
        status = AccountStatus.parse(account.status)
        if status is None:
            return StatusDecision(False, AccountStatus.SUSPENDED)
        if status in self.blocked:
            return StatusDecision(False, status)
        return StatusDecision(True)


class DefaultProfileProvider:
    """Profile snapshot built from the account row and its ``meta`` fields."""

    def __init__(self, fields: tuple[str, ...] = ("display_name", "handle", "avatar_url")) -> None:
        self.fields = fields

    def get(self, account: Account) -> Dict[str, Any]:
        meta = account.meta or {}
        profile: Dict[str, Any] = {
            "identifier": account.identifier,
            "role": account.role,
            "mfa_enabled": account.mfa_enabled,
        }
        for name in self.fields:
            if name in meta:
                profile[name] = meta[name]
        return profile


__all__ = [
    "AccountStatus",
    "StatusDecision",
    "AccountStatusProvider",
    "ProfileSnapshotProvider",
    "DefaultStatusProvider",
    "DefaultProfileProvider",
]
