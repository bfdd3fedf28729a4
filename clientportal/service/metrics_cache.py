from __future__ import annotations

import asyncio
import inspect
import json
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Union

from clientportal.logging import get_logger
from clientportal.service.errors import ServiceUnavailableError
from clientportal.storage.counter_store import CounterStore
from clientportal.storage.errors import StoreUnavailable
from clientportal.storage.models import ensure_utc, utcnow

logger = get_logger(__name__)

ComputeFn = Callable[[], Union[Any, Awaitable[Any]]]


class MetricsCache:
    """Cache-aside store for expensive per-tenant dashboard aggregates.

    Entries are served until their embedded expiry even if the backend keeps
    them longer. Invalidation is best effort, so staleness is bounded by the
    TTL rather than by invalidation succeeding.
    """

    KEY_PREFIX = "metrics:dashboard"

    def __init__(
        self,
        store: CounterStore,
        *,
        ttl_seconds: int = 300,
        compute_timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.compute_timeout_seconds = compute_timeout_seconds
        self._clock = clock or utcnow

    @classmethod
    def key_for(cls, tenant_key: str) -> str:
        return f"{cls.KEY_PREFIX}:{tenant_key}"

    async def _read(self, key: str) -> tuple[bool, Any]:
        try:
            cached = await self.store.get(key)
        except StoreUnavailable as exc:
            logger.warning("metrics_cache_degraded", operation="read", key=key, error=str(exc))
            return False, None
        if not cached:
            return False, None
        try:
            payload = json.loads(cached)
            expires_at = ensure_utc(datetime.fromisoformat(payload["expires_at"]))
        except (ValueError, KeyError, TypeError):
            # Corrupted cache entry - treat as cache miss
            return False, None
        if self._clock() >= expires_at:
            return False, None
        return True, payload.get("value")

    async def _compute(self, tenant_key: str, compute_fn: ComputeFn) -> Any:
        try:
            if inspect.iscoroutinefunction(compute_fn):
                return await asyncio.wait_for(compute_fn(), self.compute_timeout_seconds)
            result = await asyncio.wait_for(
                asyncio.to_thread(compute_fn), self.compute_timeout_seconds
            )
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, self.compute_timeout_seconds)
            return result
        except asyncio.TimeoutError as exc:
            logger.error(
                "metrics_compute_timeout",
                tenant_key=tenant_key,
                timeout_seconds=self.compute_timeout_seconds,
            )
            raise ServiceUnavailableError("metrics temporarily unavailable") from exc

    async def get_or_compute(
        self, tenant_key: str, compute_fn: ComputeFn, ttl: Optional[int] = None
    ) -> Any:
        ttl = ttl or self.ttl_seconds
        key = self.key_for(tenant_key)
        hit, value = await self._read(key)
        if hit:
            logger.debug("metrics_cache_hit", tenant_key=tenant_key)
            return value

        value = await self._compute(tenant_key, compute_fn)
        expires_at = self._clock() + timedelta(seconds=ttl)
        try:
            payload = json.dumps({"expires_at": expires_at.isoformat(), "value": value})
        except (TypeError, ValueError) as exc:
            logger.warning(
                "metrics_cache_degraded", operation="serialize", key=key, error=str(exc)
            )
            return value
        try:
            await self.store.set(key, payload, ttl)
        except StoreUnavailable as exc:
            logger.warning("metrics_cache_degraded", operation="write", key=key, error=str(exc))
        return value

    async def invalidate(self, tenant_key: str) -> bool:
        key = self.key_for(tenant_key)
        try:
            await self.store.delete(key)
        except StoreUnavailable as exc:
            logger.warning(
                "metrics_cache_invalidate_failed", tenant_key=tenant_key, error=str(exc)
            )
            return False
        logger.info("metrics_cache_invalidated", tenant_key=tenant_key)
        return True
