from __future__ import annotations

from typing import Optional, Tuple

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from pivotauth.logging import get_logger
from pivotauth.service.errors import ValidationError

PASSWORD_ALGO = "argon2id"

logger = get_logger(__name__)


class PasswordPolicy:
    def __init__(self, min_length: int = 10, max_length: int = 128) -> None:
        self.min_length = min_length
        self.max_length = max(max_length, min_length)

    def validate(self, password: Optional[str]) -> str:
        if not isinstance(password, str) or not password:
            raise ValidationError("password is required", detail={"field": "password"})
        if len(password) < self.min_length:
            raise ValidationError(
                f"password must be at least {self.min_length} characters",
                detail={"field": "password", "min_length": self.min_length},
            )
        if len(password) > self.max_length:
            raise ValidationError(
                f"password must be at most {self.max_length} characters",
                detail={"field": "password", "max_length": self.max_length},
            )
        if not password.strip():
            raise ValidationError(
                "password cannot be only whitespace", detail={"field": "password"}
            )
        return password


class PasswordHasher:
    """argon2id hashing with constant-time verification.

    ``dummy_verify`` burns the same CPU as a real verification and always
    fails; login uses it when no account matched so both paths cost the same.
    """

    def __init__(
        self,
        *,
        time_cost: Optional[int] = None,
        memory_cost: Optional[int] = None,
        parallelism: Optional[int] = None,
    ) -> None:
        kwargs = {"type": Type.ID}
        if time_cost is not None:
            kwargs["time_cost"] = time_cost
        if memory_cost is not None:
            kwargs["memory_cost"] = memory_cost
        if parallelism is not None:
            kwargs["parallelism"] = parallelism
        self._hasher = Argon2Hasher(**kwargs)
        self._dummy_hash = self._hasher.hash("pivotauth-dummy-password")

    def hash(self, plaintext: str) -> Tuple[str, str]:
        return self._hasher.hash(plaintext), PASSWORD_ALGO

    def verify(self, plaintext: str, stored_hash: Optional[str], algo: Optional[str] = PASSWORD_ALGO) -> bool:
        if not stored_hash or algo != PASSWORD_ALGO:
            if stored_hash:
                logger.warning("password_algo_mismatch", algo=algo)
            self.dummy_verify(plaintext)
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def dummy_verify(self, plaintext: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, plaintext or "")
        except VerificationError:
            pass

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True


__all__ = ["PASSWORD_ALGO", "PasswordHasher", "PasswordPolicy"]
