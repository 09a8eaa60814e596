from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from pivotauth.config import Settings
from pivotauth.logging import get_logger
from pivotauth.schemas import (
    AuthContext,
    Authorized,
    MfaDisableResult,
    MfaSetupResult,
    MfaVerifyResult,
    PasswordChangeResult,
    PasswordResetResult,
    RecoveryCodesResult,
)
from pivotauth.service.accounts import AccountGateway, advance_pivot
from pivotauth.service.errors import NotFoundError, Unauthorized, ValidationError
from pivotauth.service.lockout import LockoutPolicy
from pivotauth.service.mfa import MfaManager
from pivotauth.service.password_reset import PasswordResetService
from pivotauth.service.passwords import PasswordHasher, PasswordPolicy
from pivotauth.service.providers import (
    AccountStatusProvider,
    DefaultProfileProvider,
    DefaultStatusProvider,
    ProfileSnapshotProvider,
)
from pivotauth.service.refresh import RefreshRotator
from pivotauth.service.sessions import SessionIssuer
from pivotauth.service.throttle import MfaThrottle
from pivotauth.service.tokens import TokenSigner
from pivotauth.service.totp import TotpVerifier
from pivotauth.storage.base import CredentialStore
from pivotauth.storage.models import Account, utcnow


def _resolve_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return utcnow()
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


class AuthService:
    """Authentication session engine for a single role.

    One instance serves one role tag; the same class backs every role and
    differs only by the status and profile providers it is given. All
    public operations accept ``now`` so callers and tests can pin the clock.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        role: str = "member",
        throttle: MfaThrottle | None = None,
        hasher: PasswordHasher | None = None,
        status_provider: AccountStatusProvider | None = None,
        profile_provider: ProfileSnapshotProvider | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.role = role
        self.logger = get_logger(__name__).bind(role=role)

        self.accounts = AccountGateway(store, retries=settings.lockout_write_retries)
        self.hasher = hasher or PasswordHasher()
        self.password_policy = PasswordPolicy(
            settings.password_min_length, settings.password_max_length
        )
        self.signer = TokenSigner(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.jwt_leeway_seconds,
        )
        self.lockout = LockoutPolicy(
            threshold=settings.lockout_threshold,
            window=timedelta(minutes=settings.lockout_window_minutes),
            lock_duration=timedelta(minutes=settings.lockout_duration_minutes),
        )
        self.throttle = throttle or MfaThrottle(
            attempts=settings.mfa_rate_limit_attempts,
            window_seconds=settings.mfa_rate_limit_window_seconds,
        )
        self.mfa = MfaManager(
            self.accounts,
            TotpVerifier(settings.mfa_issuer),
            self.throttle,
            role=role,
            recovery_code_pepper=settings.mfa_encryption_key or settings.jwt_secret,
            recovery_code_count=settings.mfa_recovery_code_count,
        )
        self.sessions = SessionIssuer(
            self.accounts,
            self.hasher,
            self.signer,
            self.lockout,
            status_provider or DefaultStatusProvider(),
            profile_provider or DefaultProfileProvider(),
            self.mfa,
            role=role,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
        )
        self.rotator = RefreshRotator(self.accounts, self.signer, self.sessions, role=role)
        self.passwords = PasswordResetService(
            self.accounts,
            self.hasher,
            self.password_policy,
            role=role,
            reset_ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
        )

    # Account creation belongs to registration; exposed here for that
    # collaborator so the hash and policy stay in one place.
    def register(self, identifier: str, password: str, *, status: str = "active", meta: Optional[dict] = None) -> Account:
        self.password_policy.validate(password)
        password_hash, algo = self.hasher.hash(password)
        return self.store.create_account(
            identifier,
            role=self.role,
            status=status,
            password_hash=password_hash,
            password_algo=algo,
            meta=meta,
        )

    async def login(
        self,
        identifier: str,
        password: str,
        *,
        mfa_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Authorized:
        return await self.sessions.login(identifier, password, _resolve_now(now), mfa_code=mfa_code)

    async def login_with_recovery_code(
        self,
        identifier: str,
        password: str,
        recovery_code: str,
        *,
        now: Optional[datetime] = None,
    ) -> Authorized:
        return await self.sessions.login_with_recovery_code(
            identifier, password, recovery_code, _resolve_now(now)
        )

    async def refresh(self, refresh_token: str, *, now: Optional[datetime] = None) -> Authorized:
        return await self.rotator.refresh(refresh_token, _resolve_now(now))

    async def authenticate(self, access_token: str, *, now: Optional[datetime] = None) -> AuthContext:
        return await self.rotator.authenticate(access_token, _resolve_now(now))

    async def mfa_setup(self, access_token: str, *, now: Optional[datetime] = None) -> MfaSetupResult:
        now = _resolve_now(now)
        ctx = await self.authenticate(access_token, now=now)
        return await self.mfa.setup(ctx.account_id, now)

    async def mfa_verify(
        self, access_token: str, code: str, *, now: Optional[datetime] = None
    ) -> MfaVerifyResult:
        now = _resolve_now(now)
        ctx = await self.authenticate(access_token, now=now)
        return await self.mfa.verify(ctx.account_id, code, now)

    async def mfa_regenerate_recovery_codes(
        self, access_token: str, totp_code: str, *, now: Optional[datetime] = None
    ) -> RecoveryCodesResult:
        now = _resolve_now(now)
        ctx = await self.authenticate(access_token, now=now)
        return await self.mfa.regenerate_recovery_codes(ctx.account_id, totp_code, now)

    async def mfa_disable(
        self, access_token: str, totp_code: str, *, now: Optional[datetime] = None
    ) -> MfaDisableResult:
        now = _resolve_now(now)
        ctx = await self.authenticate(access_token, now=now)
        return await self.mfa.disable(ctx.account_id, totp_code, now)

    async def request_password_reset(
        self, identifier: str, *, now: Optional[datetime] = None
    ) -> Optional[str]:
        return self.passwords.request_reset(identifier, _resolve_now(now))

    async def password_reset_confirm(
        self, token: str, new_password: str, *, now: Optional[datetime] = None
    ) -> PasswordResetResult:
        return self.passwords.confirm(token, new_password, _resolve_now(now))

    async def change_password(
        self,
        access_token: str,
        current_password: str,
        new_password: str,
        *,
        now: Optional[datetime] = None,
    ) -> PasswordChangeResult:
        now = _resolve_now(now)
        ctx = await self.authenticate(access_token, now=now)
        return self.passwords.change_password(ctx.account_id, current_password, new_password, now)

    async def logout_all(self, access_token: str, *, now: Optional[datetime] = None) -> None:
        now = _resolve_now(now)
        ctx = await self.authenticate(access_token, now=now)
        updated = self.accounts.apply(
            ctx.account_id, lambda fresh: {"security_pivot": advance_pivot(fresh, now)}
        )
        if updated is None:
            raise Unauthorized()
        self.logger.info("logout_all", account_id=ctx.account_id)

    # Administrative lock control
    async def lock_account(
        self, account_id: str, until: datetime, *, now: Optional[datetime] = None
    ) -> Account:
        now = _resolve_now(now)
        until = _resolve_now(until)
        if until <= now:
            raise ValidationError("lock must end in the future", detail={"field": "until"})

        def compute(fresh: Account):
            # an existing later lock is never shortened
            if fresh.locked_until is not None and fresh.locked_until >= until:
                return None
            return {"locked_until": until}

        updated = self.accounts.apply(account_id, compute)
        if updated is None:
            raise NotFoundError("account not found")
        self.logger.warning(
            "account_locked",
            account_id=account_id,
            locked_until=updated.locked_until.isoformat(),
            reason="administrative",
        )
        return updated

    async def unlock_account(self, account_id: str) -> Account:
        def compute(fresh: Account):
            if (
                fresh.locked_until is None
                and fresh.failed_login_attempts == 0
                and fresh.failed_login_window_start is None
            ):
                return None
            return {
                "locked_until": None,
                "failed_login_attempts": 0,
                "failed_login_window_start": None,
            }

        updated = self.accounts.apply(account_id, compute)
        if updated is None:
            raise NotFoundError("account not found")
        self.logger.info("account_unlocked", account_id=account_id)
        return updated


__all__ = ["AuthService"]
