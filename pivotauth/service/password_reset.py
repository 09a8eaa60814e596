from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Optional

from pivotauth.logging import get_logger, identifier_digest
from pivotauth.schemas import PasswordChangeResult, PasswordResetResult
from pivotauth.service.accounts import AccountGateway, advance_pivot
from pivotauth.service.errors import (
    InvalidCredentials,
    InvalidOrExpiredResetToken,
    ServerError,
    Unauthorized,
)
from pivotauth.service.passwords import PasswordHasher, PasswordPolicy
from pivotauth.storage.errors import ConstraintViolation, StoreUnavailable
from pivotauth.storage.models import Account, PasswordResetRecord


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class PasswordResetService:
    """Reset tokens and password changes.

    Only the SHA-256 of a reset token is stored; the plaintext goes back to
    the caller once for delivery. Every completed reset or change moves the
    account's ``security_pivot`` forward so outstanding refresh tokens die.
    """

    def __init__(
        self,
        accounts: AccountGateway,
        hasher: PasswordHasher,
        policy: PasswordPolicy,
        *,
        role: str,
        reset_ttl: timedelta = timedelta(minutes=15),
    ) -> None:
        self.accounts = accounts
        self.hasher = hasher
        self.policy = policy
        self.role = role
        self.reset_ttl = reset_ttl
        self.logger = get_logger(__name__)

    def request_reset(self, identifier: str, now: datetime) -> Optional[str]:
        account = self.accounts.find(identifier or "", self.role)
        if account is None or account.is_deleted:
            self.logger.info(
                "password_reset_requested_unknown",
                identifier_digest=identifier_digest(identifier or ""),
            )
            return None
        token = secrets.token_urlsafe(32)
        record = PasswordResetRecord(
            token_hash=hash_reset_token(token),
            account_id=account.id,
            expires_at=now + self.reset_ttl,
            created_at=now,
        )
        try:
            self.accounts.store.create_reset_record(record)
        except (ConstraintViolation, StoreUnavailable) as exc:
            self.logger.error("password_reset_record_failed", account_id=account.id, error=str(exc))
            raise ServerError() from exc
        self.logger.info("password_reset_requested", account_id=account.id)
        return token

    @staticmethod
    def _password_changes(fresh: Account, new_hash: str, algo: str, now: datetime) -> dict:
        # lockout fields stay as they are; only login success or unlock clears a lock
        return {
            "password_hash": new_hash,
            "password_algo": algo,
            "security_pivot": advance_pivot(fresh, now),
        }

    def confirm(self, token: str, new_password: str, now: datetime) -> PasswordResetResult:
        if not token:
            raise InvalidOrExpiredResetToken()
        token_hash = hash_reset_token(token)
        try:
            record = self.accounts.store.get_reset_record(token_hash)
        except StoreUnavailable as exc:
            self.logger.error("store_read_failed", error=str(exc))
            raise ServerError() from exc
        if record is None or not record.is_redeemable(now):
            self.logger.info("password_reset_rejected", reason="missing_or_spent")
            raise InvalidOrExpiredResetToken()
        account = self.accounts.load(record.account_id)
        if account is None or account.is_deleted or account.role != self.role:
            self.logger.info("password_reset_rejected", reason="account_missing")
            raise InvalidOrExpiredResetToken()

        self.policy.validate(new_password)
        new_hash, algo = self.hasher.hash(new_password)

        try:
            claimed = self.accounts.store.mark_reset_record_used(token_hash, now)
        except StoreUnavailable as exc:
            self.logger.error("store_write_failed", error=str(exc))
            raise ServerError() from exc
        if not claimed:
            # another confirm spent it first
            raise InvalidOrExpiredResetToken()

        updated = self.accounts.apply(
            account.id, lambda fresh: self._password_changes(fresh, new_hash, algo, now)
        )
        if updated is None:
            raise InvalidOrExpiredResetToken()
        self.logger.info("password_reset_completed", account_id=account.id)
        return PasswordResetResult()

    def change_password(
        self, account_id: str, current_password: str, new_password: str, now: datetime
    ) -> PasswordChangeResult:
        account = self.accounts.load(account_id)
        if account is None or account.is_deleted:
            raise Unauthorized()
        if not self.hasher.verify(current_password, account.password_hash, account.password_algo):
            self.logger.info("password_change_rejected", account_id=account_id)
            raise InvalidCredentials()
        self.policy.validate(new_password)
        new_hash, algo = self.hasher.hash(new_password)

        updated = self.accounts.apply(
            account_id, lambda fresh: self._password_changes(fresh, new_hash, algo, now)
        )
        if updated is None:
            raise Unauthorized()
        self.logger.info("password_changed", account_id=account_id)
        return PasswordChangeResult()


__all__ = ["PasswordResetService", "hash_reset_token"]
