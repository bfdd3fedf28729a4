from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol, Union

from clientportal.config import ConfigurationError
from clientportal.logging import get_logger
from clientportal.storage.models import Account, ensure_utc, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class Unlocked:
    failed_attempts: int = 0


@dataclass(frozen=True)
class Locked:
    until: datetime

    def remaining_seconds(self, now: datetime) -> int:
        return max(1, math.ceil((self.until - now).total_seconds()))


LockoutState = Union[Unlocked, Locked]


class LockoutStore(Protocol):
    def increment_failed_attempts(self, account_id: str, *, now: datetime) -> int: ...

    def set_locked_until(self, account_id: str, until: datetime) -> None: ...

    def record_login_success(self, account_id: str, *, now: datetime) -> None: ...


class LockoutTracker:
    """Derives Unlocked/Locked from account bookkeeping fields.

    A lock is never deleted when it runs out; ``state`` simply reports
    Unlocked once ``now >= locked_until`` and the next failure starts a new
    count.
    """

    def __init__(
        self,
        store: LockoutStore,
        *,
        threshold: int = 5,
        duration: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if threshold < 1:
            raise ConfigurationError("lockout threshold must be at least 1")
        if duration <= timedelta(0):
            raise ConfigurationError("lockout duration must be positive")
        self.store = store
        self.threshold = threshold
        self.duration = duration
        self._clock = clock or utcnow

    def state(self, account: Account, now: datetime | None = None) -> LockoutState:
        now = now or self._clock()
        if account.locked_until is not None:
            until = ensure_utc(account.locked_until)
            if now < until:
                return Locked(until=until)
            return Unlocked(failed_attempts=0)
        return Unlocked(failed_attempts=account.failed_attempts)

    def record_failure(self, account: Account, now: datetime | None = None) -> LockoutState:
        """Count one failed attempt and lock the account on reaching the threshold."""
        now = now or self._clock()
        attempts = self.store.increment_failed_attempts(account.id, now=now)
        account.failed_attempts = attempts
        if attempts >= self.threshold:
            until = now + self.duration
            self.store.set_locked_until(account.id, until)
            account.locked_until = until
            logger.warning(
                "account_lockout_triggered",
                account_id=account.id,
                attempts=attempts,
                locked_until=until.isoformat(),
            )
            return Locked(until=until)
        return Unlocked(failed_attempts=attempts)

    def reset(self, account: Account, now: datetime | None = None) -> None:
        now = now or self._clock()
        self.store.record_login_success(account.id, now=now)
        account.failed_attempts = 0
        account.locked_until = None
        account.last_login_at = now
