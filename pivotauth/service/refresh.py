from __future__ import annotations

from datetime import datetime

from pivotauth.logging import get_logger
from pivotauth.schemas import AuthContext, Authorized
from pivotauth.service.accounts import AccountGateway
from pivotauth.service.errors import Unauthorized
from pivotauth.service.sessions import SessionIssuer
from pivotauth.service.tokens import TokenClaims, TokenClass, TokenError, TokenSigner
from pivotauth.storage.models import Account


class RefreshRotator:
    """Exchanges a refresh token for a fresh pair.

    Revocation is only the ``security_pivot`` comparison; this path reads
    the account and never writes it, so concurrent refreshes from several
    devices do not contend.
    """

    def __init__(
        self,
        accounts: AccountGateway,
        signer: TokenSigner,
        issuer: SessionIssuer,
        *,
        role: str,
    ) -> None:
        self.accounts = accounts
        self.signer = signer
        self.issuer = issuer
        self.role = role
        self.logger = get_logger(__name__)

    def _decode(self, token: str, expected: TokenClass, now: datetime) -> TokenClaims:
        try:
            claims = self.signer.verify(token, now)
        except TokenError as exc:
            self.logger.info("token_rejected", reason=exc.reason, expected=expected.value)
            raise Unauthorized() from exc
        if claims.token_class is not expected:
            self.logger.info("token_rejected", reason="wrong_class", expected=expected.value)
            raise Unauthorized()
        if claims.role != self.role:
            self.logger.info("token_rejected", reason="wrong_role", expected=expected.value)
            raise Unauthorized()
        return claims

    def _account_for(self, claims: TokenClaims) -> Account:
        account = self.accounts.load(claims.subject_id)
        if account is None or account.is_deleted:
            self.logger.info("token_rejected", reason="account_missing", account_id=claims.subject_id)
            raise Unauthorized()
        if account.role != claims.role:
            self.logger.warning("token_role_drift", account_id=account.id, claimed=claims.role)
            raise Unauthorized()
        return account

    async def refresh(self, refresh_token: str, now: datetime) -> Authorized:
        claims = self._decode(refresh_token, TokenClass.REFRESH, now)
        account = self._account_for(claims)
        if claims.issued_at < account.security_pivot:
            self.logger.info("refresh_revoked", account_id=account.id)
            raise Unauthorized("token revoked")
        self.issuer.ensure_usable(account)
        self.logger.info("refresh_rotated", account_id=account.id)
        return self.issuer.issue(account, now)

    async def authenticate(self, access_token: str, now: datetime) -> AuthContext:
        """Resolve an access token to the account it was issued for."""
        claims = self._decode(access_token, TokenClass.ACCESS, now)
        account = self._account_for(claims)
        return AuthContext(account_id=account.id, role=account.role, issued_at=claims.issued_at)


__all__ = ["RefreshRotator"]
