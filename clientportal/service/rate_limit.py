from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Mapping, Optional

from clientportal.logging import get_logger
from clientportal.storage.counter_store import CounterStore
from clientportal.storage.errors import StoreUnavailable
from clientportal.storage.models import utcnow

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    reset_after: int
    degraded: bool = False


class RateLimiter:
    """Fixed-window counter per (action, identifier) kept in the counter store.

    When the store cannot be reached the limiter allows the request and marks
    the decision as degraded instead of raising.
    """

    KEY_PREFIX = "rate"

    def __init__(
        self,
        store: CounterStore,
        policies: Optional[Mapping[str, RateLimitPolicy]] = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.policies: Dict[str, RateLimitPolicy] = dict(policies or {})
        self._clock = clock or utcnow

    @classmethod
    def key_for(cls, action: str, identifier: str) -> str:
        # hash the caller-supplied part so it cannot inject delimiters
        digest = hashlib.sha256(identifier.encode()).hexdigest()
        return f"{cls.KEY_PREFIX}:{action}:{digest}"

    def _resolve(
        self, action: str, limit: Optional[int], window: Optional[int]
    ) -> RateLimitPolicy:
        policy = self.policies.get(action)
        if limit is None:
            limit = policy.limit if policy else 0
        if window is None:
            window = policy.window_seconds if policy else DEFAULT_WINDOW_SECONDS
        return RateLimitPolicy(limit=limit, window_seconds=window)

    async def allow(
        self,
        action: str,
        identifier: str,
        limit: Optional[int] = None,
        window: Optional[int] = None,
    ) -> RateLimitDecision:
        policy = self._resolve(action, limit, window)
        limit, window = policy.limit, policy.window_seconds
        now = self._clock()
        if limit <= 0:
            return RateLimitDecision(
                allowed=True,
                limit=limit,
                remaining=0,
                reset_at=now,
                reset_after=0,
            )
        if window <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                action=action,
                window_seconds=window,
                message="Invalid rate limit window; defaulting to 60 seconds",
            )
            window = DEFAULT_WINDOW_SECONDS

        key = self.key_for(action, identifier)
        try:
            count, ttl = await self.store.increment(key, window)
        except StoreUnavailable as exc:
            logger.warning(
                "rate_limit_degraded",
                action=action,
                limit=limit,
                window_seconds=window,
                error=str(exc),
            )
            return RateLimitDecision(
                allowed=True,
                limit=limit,
                remaining=max(0, limit - 1),
                reset_at=now + timedelta(seconds=window),
                reset_after=window,
                degraded=True,
            )

        allowed = count <= limit
        decision = RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=now + timedelta(seconds=ttl),
            reset_after=ttl,
        )
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                action=action,
                count=count,
                limit=limit,
                reset_after=ttl,
            )
        else:
            logger.debug("rate_limit_allowed", action=action, count=count, limit=limit)
        return decision
