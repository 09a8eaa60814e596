from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from pivotauth.logging import get_logger, identifier_digest
from pivotauth.schemas import Authorized, TokenPair
from pivotauth.service.accounts import AccountGateway
from pivotauth.service.errors import (
    AccountLocked,
    AccountNotUsable,
    InvalidCredentials,
    InvalidMfaCode,
)
from pivotauth.service.lockout import LockoutPolicy, LockoutState, LoginOutcome
from pivotauth.service.mfa import MfaManager
from pivotauth.service.passwords import PasswordHasher
from pivotauth.service.providers import AccountStatusProvider, ProfileSnapshotProvider
from pivotauth.service.tokens import TokenClaims, TokenClass, TokenSigner
from pivotauth.storage.models import Account


class SessionIssuer:
    """Password login for one role, plus minting of the token pair.

    The password hash is checked before any counter write, and the counter
    write is a compare-and-set against the row version, so no lock is ever
    held across the slow hash.
    """

    def __init__(
        self,
        accounts: AccountGateway,
        hasher: PasswordHasher,
        signer: TokenSigner,
        policy: LockoutPolicy,
        status: AccountStatusProvider,
        profile: ProfileSnapshotProvider,
        mfa: MfaManager,
        *,
        role: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
    ) -> None:
        self.accounts = accounts
        self.hasher = hasher
        self.signer = signer
        self.policy = policy
        self.status = status
        self.profile = profile
        self.mfa = mfa
        self.role = role
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.logger = get_logger(__name__)

    def issue(self, account: Account, now: datetime) -> Authorized:
        access, access_claims = self.signer.sign(
            TokenClaims(account.id, account.role, TokenClass.ACCESS, now), self.access_ttl
        )
        refresh, refresh_claims = self.signer.sign(
            TokenClaims(account.id, account.role, TokenClass.REFRESH, now), self.refresh_ttl
        )
        return Authorized(
            id=account.id,
            role=account.role,
            token=TokenPair(
                access=access,
                refresh=refresh,
                expired_at=access_claims.expires_at,
                refreshable_until=refresh_claims.expires_at,
            ),
            profile=self.profile.get(account),
        )

    def ensure_usable(self, account: Account) -> None:
        decision = self.status.is_usable(account)
        if not decision.usable:
            reason = decision.reason
            raise AccountNotUsable(decision.category or "unavailable", reason.message if reason else "account is not available")

    def _record_failure(self, account_id: str, now: datetime) -> Optional[Account]:
        def compute(fresh: Account):
            state = LockoutState.of(fresh)
            # Someone else locked it meanwhile; the lock stands untouched
            if self.policy.is_locked(state, now):
                return None
            return self.policy.apply(now, state, LoginOutcome.FAILURE).as_changes()

        return self.accounts.apply(account_id, compute)

    def _record_success(
        self, account: Account, now: datetime, password: Optional[str] = None
    ) -> Optional[Account]:
        upgrade: dict = {}
        if password is not None and self.hasher.needs_rehash(account.password_hash):
            new_hash, algo = self.hasher.hash(password)
            upgrade = {"password_hash": new_hash, "password_algo": algo}

        def compute(fresh: Account):
            state = LockoutState.of(fresh)
            if self.policy.is_locked(state, now):
                raise AccountLocked(self.policy.retry_after_seconds(state, now))
            changes = {}
            cleared = self.policy.apply(now, state, LoginOutcome.SUCCESS)
            if cleared != state:
                changes.update(cleared.as_changes())
            # skip the upgrade if the password changed since it was verified
            if upgrade and fresh.password_hash == account.password_hash:
                changes.update(upgrade)
            return changes or None

        return self.accounts.apply(account.id, compute)

    def verify_password(self, identifier: str, password: str, now: datetime) -> Account:
        """Steps shared by every password login: lookup, lock, status, hash.

        Returns the account when the password matched. A mismatch has
        already been recorded against the lockout counters when
        ``InvalidCredentials`` is raised.
        """
        subject = identifier_digest(identifier or "")
        account = self.accounts.find(identifier or "", self.role)
        if account is None or account.is_deleted:
            self.hasher.dummy_verify(password)
            self.logger.info("login_failed", identifier_digest=subject, reason="unknown")
            raise InvalidCredentials()

        state = LockoutState.of(account)
        if self.policy.is_locked(state, now):
            self.logger.info("login_rejected_locked", account_id=account.id)
            raise AccountLocked(self.policy.retry_after_seconds(state, now))

        self.ensure_usable(account)

        if not self.hasher.verify(password, account.password_hash, account.password_algo):
            updated = self._record_failure(account.id, now)
            if updated is not None and self.policy.is_locked(LockoutState.of(updated), now):
                self.logger.warning(
                    "account_locked",
                    account_id=account.id,
                    locked_until=updated.locked_until.isoformat(),
                )
            self.logger.info("login_failed", identifier_digest=subject, reason="password")
            raise InvalidCredentials()
        return account

    async def login(
        self,
        identifier: str,
        password: str,
        now: datetime,
        *,
        mfa_code: Optional[str] = None,
    ) -> Authorized:
        account = self.verify_password(identifier, password, now)
        if account.mfa_enabled:
            if mfa_code is None:
                self._record_success(account, now, password)
                self.logger.info("login_mfa_required", account_id=account.id)
                return Authorized(id=account.id, role=account.role, mfa_required=True)
            await self.mfa.check_login_code(account, mfa_code, now)
        updated = self._record_success(account, now, password) or account
        self.logger.info("login_succeeded", account_id=account.id, role=self.role)
        return self.issue(updated, now)

    async def login_with_recovery_code(
        self, identifier: str, password: str, recovery_code: str, now: datetime
    ) -> Authorized:
        account = self.verify_password(identifier, password, now)
        if not account.mfa_enabled or not await self.mfa.consume_recovery_code(
            account.id, recovery_code, now
        ):
            raise InvalidMfaCode()
        updated = self._record_success(account, now, password) or account
        self.logger.info("login_succeeded", account_id=account.id, role=self.role, factor="recovery_code")
        return self.issue(updated, now)


__all__ = ["SessionIssuer"]
