from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime
from typing import List, Optional

from pivotauth.logging import get_logger
from pivotauth.schemas import MfaDisableResult, MfaSetupResult, MfaVerifyResult, RecoveryCodesResult
from pivotauth.service.accounts import AccountGateway, advance_pivot
from pivotauth.service.errors import ConflictError, InvalidMfaCode, Unauthorized
from pivotauth.service.throttle import MfaThrottle
from pivotauth.service.totp import TotpVerifier
from pivotauth.storage.models import Account

# No 0/O or 1/I so codes survive being read aloud or copied by hand
RECOVERY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
RECOVERY_CODE_LENGTH = 10


def normalize_recovery_code(code: Optional[str]) -> str:
    return "".join(ch for ch in (code or "").upper() if ch.isalnum())


class MfaManager:
    """TOTP enrollment and recovery codes for one role.

    States run Disabled -> Provisioning -> Enabled. Every code comparison
    passes through the throttle first, and MFA failures never reach the
    login lockout counters.
    """

    def __init__(
        self,
        accounts: AccountGateway,
        totp: TotpVerifier,
        throttle: MfaThrottle,
        *,
        role: str,
        recovery_code_pepper: str,
        recovery_code_count: int = 10,
    ) -> None:
        self.accounts = accounts
        self.totp = totp
        self.throttle = throttle
        self.role = role
        self._pepper = recovery_code_pepper.encode()
        self.recovery_code_count = recovery_code_count
        self.logger = get_logger(__name__)

    def _subject(self, account_id: str) -> str:
        return f"{self.role}:{account_id}"

    def hash_recovery_code(self, code: str) -> str:
        return hmac.new(self._pepper, normalize_recovery_code(code).encode(), hashlib.sha256).hexdigest()

    def _generate_codes(self, existing_hashes: List[str]) -> tuple[List[str], List[str]]:
        taken = set(existing_hashes)
        codes: List[str] = []
        hashes: List[str] = []
        while len(codes) < self.recovery_code_count:
            raw = "".join(secrets.choice(RECOVERY_CODE_ALPHABET) for _ in range(RECOVERY_CODE_LENGTH))
            digest = self.hash_recovery_code(raw)
            if digest in taken:
                continue
            taken.add(digest)
            codes.append(f"{raw[:5]}-{raw[5:]}")
            hashes.append(digest)
        return codes, hashes

    def _require(self, account_id: str) -> Account:
        account = self.accounts.load(account_id)
        if account is None or account.is_deleted:
            raise Unauthorized()
        return account

    async def _check_totp(self, account: Account, code: Optional[str], now: datetime) -> None:
        subject = self._subject(account.id)
        await self.throttle.ensure_allowed(subject, now)
        if not self.totp.verify(account.mfa_secret, code, now):
            await self.throttle.record_failure(subject, now)
            self.logger.info("mfa_code_rejected", account_id=account.id)
            raise InvalidMfaCode()
        await self.throttle.clear(subject)

    async def setup(self, account_id: str, now: datetime) -> MfaSetupResult:
        account = self._require(account_id)
        if account.mfa_enabled:
            raise ConflictError("mfa is already enabled")
        secret = self.totp.new_secret()

        def compute(fresh: Account):
            if fresh.mfa_enabled:
                raise ConflictError("mfa is already enabled")
            return {"mfa_secret": secret, "mfa_enabled": False, "mfa_recovery_codes": []}

        if self.accounts.apply(account_id, compute) is None:
            raise Unauthorized()
        self.logger.info("mfa_provisioning_started", account_id=account_id)
        return MfaSetupResult(
            secret=secret,
            provisioning_uri=self.totp.provisioning_uri(secret, account.identifier),
        )

    async def verify(self, account_id: str, code: Optional[str], now: datetime) -> MfaVerifyResult:
        account = self._require(account_id)
        if account.mfa_enabled:
            raise ConflictError("mfa is already enabled")
        if not account.mfa_secret:
            raise ConflictError("mfa setup has not been started")
        await self._check_totp(account, code, now)

        codes, hashes = self._generate_codes([])
        pending_secret = account.mfa_secret

        def compute(fresh: Account):
            if fresh.mfa_enabled:
                raise ConflictError("mfa is already enabled")
            if fresh.mfa_secret != pending_secret:
                # setup ran again after the code was checked
                raise ConflictError("mfa setup changed, verify again")
            return {
                "mfa_enabled": True,
                "mfa_recovery_codes": hashes,
                "security_pivot": advance_pivot(fresh, now),
            }

        if self.accounts.apply(account_id, compute) is None:
            raise Unauthorized()
        self.logger.info("mfa_enabled", account_id=account_id, issued_count=len(codes))
        return MfaVerifyResult(codes=codes)

    async def regenerate_recovery_codes(
        self, account_id: str, totp_code: Optional[str], now: datetime
    ) -> RecoveryCodesResult:
        account = self._require(account_id)
        if not account.mfa_enabled:
            raise ConflictError("mfa is not enabled")
        await self._check_totp(account, totp_code, now)

        issued: dict[str, List[str]] = {}

        def compute(fresh: Account):
            if not fresh.mfa_enabled:
                raise ConflictError("mfa is not enabled")
            codes, hashes = self._generate_codes(fresh.mfa_recovery_codes)
            issued["codes"] = codes
            return {
                "mfa_recovery_codes": hashes,
                "security_pivot": advance_pivot(fresh, now),
            }

        if self.accounts.apply(account_id, compute) is None:
            raise Unauthorized()
        self.logger.info("mfa_recovery_codes_regenerated", account_id=account_id)
        return RecoveryCodesResult(codes=issued["codes"])

    async def consume_recovery_code(self, account_id: str, code: Optional[str], now: datetime) -> bool:
        """Spend one recovery code; True when it matched an unused entry."""
        subject = self._subject(account_id)
        await self.throttle.ensure_allowed(subject, now)
        presented = self.hash_recovery_code(code) if normalize_recovery_code(code) else ""
        outcome = {"matched": False}

        def compute(fresh: Account):
            outcome["matched"] = False
            if not fresh.mfa_enabled or not presented:
                return None
            match_index = -1
            # Compare against every entry so timing does not reveal which codes remain
            for index, stored in enumerate(fresh.mfa_recovery_codes):
                if hmac.compare_digest(stored, presented) and match_index < 0:
                    match_index = index
            if match_index < 0:
                return None
            outcome["matched"] = True
            remaining = list(fresh.mfa_recovery_codes)
            del remaining[match_index]
            return {"mfa_recovery_codes": remaining}

        updated = self.accounts.apply(account_id, compute)
        if updated is None or not outcome["matched"]:
            await self.throttle.record_failure(subject, now)
            self.logger.info("recovery_code_rejected", account_id=account_id)
            return False
        await self.throttle.clear(subject)
        self.logger.info(
            "recovery_code_consumed",
            account_id=account_id,
            remaining=len(updated.mfa_recovery_codes),
        )
        return True

    async def check_login_code(self, account: Account, code: Optional[str], now: datetime) -> None:
        """Second factor during login; raises ``InvalidMfaCode`` on mismatch."""
        await self._check_totp(account, code, now)

    async def disable(self, account_id: str, totp_code: Optional[str], now: datetime) -> MfaDisableResult:
        account = self._require(account_id)
        if not account.mfa_enabled:
            raise ConflictError("mfa is not enabled")
        await self._check_totp(account, totp_code, now)

        def compute(fresh: Account):
            if not fresh.mfa_enabled:
                raise ConflictError("mfa is not enabled")
            return {
                "mfa_enabled": False,
                "mfa_secret": None,
                "mfa_recovery_codes": [],
                "security_pivot": advance_pivot(fresh, now),
            }

        if self.accounts.apply(account_id, compute) is None:
            raise Unauthorized()
        self.logger.info("mfa_disabled", account_id=account_id)
        return MfaDisableResult()


__all__ = ["MfaManager", "normalize_recovery_code", "RECOVERY_CODE_ALPHABET"]
