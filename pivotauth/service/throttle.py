from __future__ import annotations

import math
import threading
from datetime import datetime, timedelta
from typing import Optional

from redis.exceptions import RedisError

from pivotauth.logging import get_logger
from pivotauth.service.errors import RateLimitedError, ServerError
from pivotauth.storage.redis_cache import RedisCache


class MfaThrottle:
    """Caps TOTP and recovery-code guesses per account.

    Independent of the login lockout counters. With a ``RedisCache`` the
    counter lives in Redis and is shared across workers; otherwise a
    process-local map guarded by a lock gives the same window semantics.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        attempts: int = 5,
        window_seconds: int = 300,
    ) -> None:
        self.cache = cache
        self.max_attempts = attempts
        self.window = timedelta(seconds=window_seconds)
        self.logger = get_logger(__name__)
        self._state_lock = threading.Lock()
        self._attempts: dict[str, tuple[int, datetime]] = {}  # subject -> (count, window_start)
        self._lockouts: dict[str, datetime] = {}  # subject -> locked_until

    def _prune(self, now: datetime) -> None:
        # caller holds _state_lock; drops windows and lockouts that have run out
        for subject, (_, window_start) in list(self._attempts.items()):
            if window_start + self.window <= now:
                del self._attempts[subject]
        for subject, locked_until in list(self._lockouts.items()):
            if locked_until <= now:
                del self._lockouts[subject]

    async def ensure_allowed(self, subject: str, now: datetime) -> None:
        """Raise ``RateLimitedError`` while ``subject`` is throttled."""
        if self.cache:
            try:
                remaining = await self.cache.check_mfa_lockout(subject)
            except RedisError as exc:
                self.logger.error("mfa_throttle_unavailable", error=str(exc))
                raise ServerError() from exc
        else:
            with self._state_lock:
                self._prune(now)
                locked_until = self._lockouts.get(subject)
            remaining = (
                math.ceil((locked_until - now).total_seconds()) if locked_until else 0
            )
        if remaining > 0:
            self.logger.warning("mfa_throttled", retry_after_seconds=remaining)
            raise RateLimitedError(remaining)

    async def record_failure(self, subject: str, now: datetime) -> bool:
        """Count a failed guess; returns True once the subject is throttled."""
        if self.cache:
            try:
                locked, attempts = await self.cache.atomic_mfa_attempt(
                    subject,
                    max_attempts=self.max_attempts,
                    lockout_seconds=int(self.window.total_seconds()),
                )
            except RedisError as exc:
                self.logger.error("mfa_throttle_unavailable", error=str(exc))
                raise ServerError() from exc
            if locked and attempts >= 0:
                self.logger.warning("mfa_lockout_triggered", attempts=attempts)
            return locked

        with self._state_lock:
            self._prune(now)
            current = self._attempts.get(subject)
            attempts, window_start = 1, now
            if current:
                count, prev_window_start = current
                if now - prev_window_start < self.window:
                    attempts, window_start = count + 1, prev_window_start
            if attempts >= self.max_attempts:
                self._lockouts[subject] = now + self.window
                self._attempts.pop(subject, None)
                self.logger.warning("mfa_lockout_triggered", attempts=attempts)
                return True
            self._attempts[subject] = (attempts, window_start)
            return False

    async def clear(self, subject: str) -> None:
        if self.cache:
            try:
                await self.cache.clear_mfa_attempts(subject)
            except RedisError as exc:
                self.logger.error("mfa_throttle_unavailable", error=str(exc))
                raise ServerError() from exc
            return
        with self._state_lock:
            self._attempts.pop(subject, None)


__all__ = ["MfaThrottle"]
