from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from pivotauth.storage.models import Account


class LoginOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class LockoutState:
    attempts: int = 0
    window_start: Optional[datetime] = None
    locked_until: Optional[datetime] = None

    @classmethod
    def of(cls, account: Account) -> "LockoutState":
        return cls(
            attempts=account.failed_login_attempts,
            window_start=account.failed_login_window_start,
            locked_until=account.locked_until,
        )

    def as_changes(self) -> Dict[str, Any]:
        return {
            "failed_login_attempts": self.attempts,
            "failed_login_window_start": self.window_start,
            "locked_until": self.locked_until,
        }


class LockoutPolicy:
    """Failed-attempt counter with a sliding window and a timed lock.

    ``apply`` is pure. Callers reject while a lock is active and never feed
    a locked state through it.
    """

    def __init__(
        self,
        *,
        threshold: int = 5,
        window: timedelta = timedelta(minutes=15),
        lock_duration: timedelta = timedelta(minutes=30),
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be positive")
        self.threshold = threshold
        self.window = window
        self.lock_duration = lock_duration

    @staticmethod
    def is_locked(state: LockoutState, now: datetime) -> bool:
        return state.locked_until is not None and state.locked_until > now

    @staticmethod
    def retry_after_seconds(state: LockoutState, now: datetime) -> int:
        if state.locked_until is None:
            return 0
        return max(1, math.ceil((state.locked_until - now).total_seconds()))

    def apply(self, now: datetime, state: LockoutState, outcome: LoginOutcome) -> LockoutState:
        if outcome is LoginOutcome.SUCCESS:
            return LockoutState()
        if state.window_start is None or now - state.window_start > self.window:
            attempts, window_start = 1, now
        else:
            attempts, window_start = state.attempts + 1, state.window_start
        locked_until = now + self.lock_duration if attempts >= self.threshold else None
        return LockoutState(attempts=attempts, window_start=window_start, locked_until=locked_until)


__all__ = ["LoginOutcome", "LockoutState", "LockoutPolicy"]
