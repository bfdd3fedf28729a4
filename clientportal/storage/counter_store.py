from __future__ import annotations

import asyncio
import math
import threading
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Protocol, Set, Tuple, TypeVar

from clientportal.logging import get_logger
from clientportal.storage.errors import StoreUnavailable
from clientportal.storage.models import utcnow

logger = get_logger(__name__)

T = TypeVar("T")


class CounterStore(Protocol):
    """Shared TTL key/value backend for counters, sessions and cached views."""

    async def increment(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Atomically increment ``key`` and return ``(count, ttl_seconds)``.

        The first increment of a window sets the key's expiry to
        ``window_seconds``; later increments leave the expiry untouched.
        """
        ...

    async def get(self, key: str) -> Optional[str]: ...

    async def set(
        self, key: str, value: str, ttl_seconds: int, *, only_if_present: bool = False
    ) -> bool:
        """Store ``value`` with a TTL and return whether it was written.

        With ``only_if_present`` the write happens only while ``key`` is live,
        so a renewal never recreates a key that was deleted meanwhile.
        """
        ...

    async def delete(self, key: str) -> int: ...

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> None: ...

    async def members(self, key: str) -> Set[str]: ...

    async def remove_member(self, key: str, member: str) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class MemoryCounterStore:
    """In-process counter store for tests and local development.

    Expiry is evaluated lazily against the injected clock so tests can move
    time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or utcnow
        self._values: Dict[str, Tuple[str, Optional[datetime]]] = {}
        self._sets: Dict[str, Tuple[Set[str], Optional[datetime]]] = {}
        self._lock = threading.Lock()

    def _expiry(self, ttl_seconds: int) -> datetime:
        return self._clock() + timedelta(seconds=max(1, int(ttl_seconds)))

    def _live_value(self, key: str) -> Optional[Tuple[str, Optional[datetime]]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._values.pop(key, None)
            return None
        return entry

    def _live_set(self, key: str) -> Optional[Tuple[Set[str], Optional[datetime]]]:
        entry = self._sets.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._sets.pop(key, None)
            return None
        return entry

    async def increment(self, key: str, window_seconds: int) -> Tuple[int, int]:
        with self._lock:
            entry = self._live_value(key)
            if entry is None:
                expires_at = self._expiry(window_seconds)
                count = 1
            else:
                raw, expires_at = entry
                count = int(raw) + 1
                if expires_at is None:
                    expires_at = self._expiry(window_seconds)
            self._values[key] = (str(count), expires_at)
            remaining = (expires_at - self._clock()).total_seconds()
            return count, max(1, math.ceil(remaining))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live_value(key)
            return entry[0] if entry else None

    async def set(
        self, key: str, value: str, ttl_seconds: int, *, only_if_present: bool = False
    ) -> bool:
        with self._lock:
            if only_if_present and self._live_value(key) is None:
                return False
            self._values[key] = (value, self._expiry(ttl_seconds))
            return True

    async def delete(self, key: str) -> int:
        with self._lock:
            removed = 0
            if self._live_value(key) is not None:
                self._values.pop(key, None)
                removed += 1
            if self._live_set(key) is not None:
                self._sets.pop(key, None)
                removed += 1
            return removed

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> None:
        with self._lock:
            entry = self._live_set(key)
            members = set(entry[0]) if entry else set()
            members.add(member)
            self._sets[key] = (members, self._expiry(ttl_seconds))

    async def members(self, key: str) -> Set[str]:
        with self._lock:
            entry = self._live_set(key)
            return set(entry[0]) if entry else set()

    async def remove_member(self, key: str, member: str) -> None:
        with self._lock:
            entry = self._live_set(key)
            if entry is None:
                return
            members, expires_at = entry
            members = set(members)
            members.discard(member)
            if members:
                self._sets[key] = (members, expires_at)
            else:
                self._sets.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()


class BoundedCounterStore:
    """Wrap a counter store so every call honors a deadline.

    Timeouts and connection failures surface as ``StoreUnavailable``; callers
    decide whether that means degrade or deny.
    """

    def __init__(self, inner: CounterStore, *, timeout_seconds: float) -> None:
        self.inner = inner
        self.timeout_seconds = timeout_seconds

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.timeout_seconds)
        except StoreUnavailable:
            raise
        except asyncio.TimeoutError as exc:
            logger.warning(
                "counter_store_timeout",
                operation=operation,
                timeout_seconds=self.timeout_seconds,
            )
            raise StoreUnavailable(operation, exc) from exc
        except (ConnectionError, OSError) as exc:
            raise StoreUnavailable(operation, exc) from exc

    async def increment(self, key: str, window_seconds: int) -> Tuple[int, int]:
        return await self._call("increment", self.inner.increment(key, window_seconds))

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.inner.get(key))

    async def set(
        self, key: str, value: str, ttl_seconds: int, *, only_if_present: bool = False
    ) -> bool:
        return await self._call(
            "set", self.inner.set(key, value, ttl_seconds, only_if_present=only_if_present)
        )

    async def delete(self, key: str) -> int:
        return await self._call("delete", self.inner.delete(key))

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> None:
        await self._call("add_member", self.inner.add_member(key, member, ttl_seconds))

    async def members(self, key: str) -> Set[str]:
        return await self._call("members", self.inner.members(key))

    async def remove_member(self, key: str, member: str) -> None:
        await self._call("remove_member", self.inner.remove_member(key, member))

    async def ping(self) -> bool:
        try:
            return await self._call("ping", self.inner.ping())
        except StoreUnavailable:
            return False

    async def close(self) -> None:
        await self.inner.close()


__all__ = ["CounterStore", "MemoryCounterStore", "BoundedCounterStore"]
