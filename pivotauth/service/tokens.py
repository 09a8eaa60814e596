from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pivotauth.logging import get_logger

logger = get_logger(__name__)


class TokenClass(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenError(Exception):
    """Token could not be trusted; ``reason`` is for logs only."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    role: str
    token_class: TokenClass
    issued_at: datetime
    expires_at: Optional[datetime] = None
    jti: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_payload(self, issuer: str, audience: str) -> dict[str, Any]:
        if self.expires_at is None:
            raise ValueError("claims need an expiry before signing")
        return {
            "iss": issuer,
            "aud": audience,
            "sub": self.subject_id,
            "role": self.role,
            "token_class": self.token_class.value,
            # float keeps microseconds so the pivot comparison is exact
            "iat": self.issued_at.timestamp(),
            "exp": self.expires_at.timestamp(),
            "jti": self.jti,
        }


def _from_timestamp(value: Any) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class TokenSigner:
    """Compact HS256 JWT signer for access and refresh tokens."""

    ALGORITHM = "HS256"

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 30,
    ) -> None:
        if not secret:
            raise ValueError("token signer requires a secret")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway = timedelta(seconds=max(0, leeway_seconds))

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, claims: TokenClaims, ttl: timedelta) -> tuple[str, TokenClaims]:
        """Sign ``claims`` valid for ``ttl`` from their issue time.

        Returns the compact token and the claims with ``expires_at`` filled in.
        """
        claims = replace(claims, expires_at=claims.issued_at + ttl)
        header = {"alg": self.ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(claims.to_payload(self.issuer, self.audience), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}", claims

    def verify(self, token: str, now: datetime) -> TokenClaims:
        if not isinstance(token, str):
            raise TokenError("not_a_string")
        # compact tokens are base64url segments; anything else cannot be ours
        if not token.isascii():
            raise TokenError("malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenError("malformed")

        # Pin the algorithm so a forged header cannot pick a weaker one
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            raise TokenError("header_undecodable")
        if not isinstance(header, dict) or header.get("alg") != self.ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise TokenError("bad_algorithm")

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenError("bad_signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError:
            raise TokenError("payload_undecodable")
        if not isinstance(payload, dict):
            raise TokenError("payload_undecodable")

        if payload.get("iss") != self.issuer:
            raise TokenError("bad_issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenError("bad_audience")

        try:
            token_class = TokenClass(payload.get("token_class"))
            issued_at = _from_timestamp(payload["iat"])
            expires_at = _from_timestamp(payload["exp"])
            subject_id = str(payload["sub"])
            role = str(payload["role"])
        except (KeyError, TypeError, ValueError, OverflowError):
            raise TokenError("claims_incomplete")
        if expires_at <= now - self.leeway:
            raise TokenError("expired")
        if issued_at > now + self.leeway:
            raise TokenError("issued_in_future")
        return TokenClaims(
            subject_id=subject_id,
            role=role,
            token_class=token_class,
            issued_at=issued_at,
            expires_at=expires_at,
            jti=str(payload.get("jti") or ""),
        )


__all__ = ["TokenClass", "TokenClaims", "TokenError", "TokenSigner"]
