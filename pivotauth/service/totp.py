"""RFC 6238 TOTP: 6 digits, 30 second step, HMAC-SHA1.

Compatible with Google Authenticator, Authy and Aegis.
"""
from __future__ import annotations

from datetime import datetime

import pyotp


class TotpVerifier:
    def __init__(self, issuer: str = "PivotAuth", *, valid_window: int = 1) -> None:
        self.issuer = issuer
        # one adjacent step either side for clock skew
        self.valid_window = valid_window

    @staticmethod
    def new_secret() -> str:
        return pyotp.random_base32()

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=self.issuer)

    @staticmethod
    def normalize(code: str | None) -> str:
        return (code or "").strip().replace(" ", "")

    def verify(self, secret: str | None, code: str | None, now: datetime) -> bool:
        if not secret or not code:
            return False
        code = self.normalize(code)
        if len(code) != 6 or not code.isdigit():
            return False
        try:
            return pyotp.TOTP(secret).verify(code, for_time=now, valid_window=self.valid_window)
        except (TypeError, ValueError):
            # undecodable base32 secret
            return False

    @staticmethod
    def code_at(secret: str, when: datetime) -> str:
        return pyotp.TOTP(secret).at(when)


__all__ = ["TotpVerifier"]
