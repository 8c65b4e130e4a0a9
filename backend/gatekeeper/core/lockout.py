"""
Account lockout policy.

A pure decision over ``(login_attempts, lock_until, now)``. Callers read a
``LockoutState`` snapshot off the user, ask the policy for the next state and
write it back; nothing here touches the database.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class LockoutState:
    login_attempts: int = 0
    lock_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def lock_expired(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until <= now


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = 5
    lock_duration: timedelta = timedelta(hours=1)

    def register_failure(self, state: LockoutState, now: datetime) -> LockoutState:
        # An expired lock starts a fresh count
        if state.lock_expired(now):
            return LockoutState(login_attempts=1, lock_until=None)

        attempts = state.login_attempts + 1
        lock_until = state.lock_until
        if attempts >= self.max_attempts and not state.is_locked(now):
            lock_until = now + self.lock_duration
        return LockoutState(login_attempts=attempts, lock_until=lock_until)

    def register_success(self) -> LockoutState:
        return LockoutState(login_attempts=0, lock_until=None)

    def minutes_remaining(self, state: LockoutState, now: datetime) -> int:
        if not state.is_locked(now):
            return 0
        return math.ceil((state.lock_until - now).total_seconds() / 60)

    @staticmethod
    def newly_locked(before: LockoutState, after: LockoutState, now: datetime) -> bool:
        return after.is_locked(now) and not before.is_locked(now)
