"""Tests for opaque session tokens with sliding expiry."""

import asyncio
import json
from datetime import timedelta

import pytest

from clientportal.service.sessions import SessionFailure, SessionManager
from clientportal.storage.counter_store import MemoryCounterStore


@pytest.fixture
def counters(clock):
    return MemoryCounterStore(clock=clock)


@pytest.fixture
def sessions(counters, clock):
    return SessionManager(counters, ttl=timedelta(hours=8), clock=clock)


class _InterleavingStore(MemoryCounterStore):
    """Runs ``on_lookup`` once, right after the first session record read."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.on_lookup = None

    async def get(self, key):
        value = await super().get(key)
        if self.on_lookup is not None and key.startswith("session:"):
            hook, self.on_lookup = self.on_lookup, None
            await hook()
        return value


class _YieldingStore(MemoryCounterStore):
    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)


class TestSessionManager:
    async def test_create_then_validate(self, sessions, clock):
        token = await sessions.create("acct-1", "client", "tenant-1")
        result = await sessions.validate(token)
        assert result.ok
        assert result.session.subject_id == "acct-1"
        assert result.session.role == "client"
        assert result.session.tenant_scope == "tenant-1"
        assert result.session.expires_at == clock.now + timedelta(hours=8)

    async def test_tokens_are_unique_and_not_stored_raw(self, sessions, counters):
        first = await sessions.create("acct-1", "client", "tenant-1")
        second = await sessions.create("acct-1", "client", "tenant-1")
        assert first != second
        assert await counters.get(f"session:{first}") is None

    async def test_validation_slides_expiry(self, sessions, clock):
        token = await sessions.create("acct-1", "client", "tenant-1")
        clock.advance(hours=7)
        assert (await sessions.validate(token)).ok
        clock.advance(hours=7)
        result = await sessions.validate(token)
        assert result.ok
        assert result.session.expires_at == clock.now + timedelta(hours=8)

    async def test_idle_session_expires(self, sessions, clock):
        token = await sessions.create("acct-1", "client", "tenant-1", ttl=timedelta(minutes=10))
        clock.advance(minutes=10)
        result = await sessions.validate(token)
        assert result.failure in (SessionFailure.SESSION_EXPIRED, SessionFailure.NO_SESSION)
        assert not (await sessions.validate(token)).ok

    async def test_embedded_expiry_wins_over_backend_ttl(self, sessions, counters, clock):
        token = await sessions.create("acct-1", "client", "tenant-1")
        key = f"session:{sessions._digest(token)}"
        payload = json.loads(await counters.get(key))
        payload["expires_at"] = (clock.now - timedelta(seconds=1)).isoformat()
        await counters.set(key, json.dumps(payload), 60)
        result = await sessions.validate(token)
        assert result.failure == SessionFailure.SESSION_EXPIRED
        assert await counters.get(key) is None

    async def test_missing_and_blank_tokens(self, sessions):
        assert (await sessions.validate(None)).failure == SessionFailure.NO_SESSION
        assert (await sessions.validate("")).failure == SessionFailure.NO_SESSION
        assert (await sessions.validate("forged")).failure == SessionFailure.NO_SESSION

    async def test_corrupt_record_is_no_session(self, sessions, counters):
        token = await sessions.create("acct-1", "client", "tenant-1")
        await counters.set(f"session:{sessions._digest(token)}", "not-json", 60)
        assert (await sessions.validate(token)).failure == SessionFailure.NO_SESSION

    async def test_revoke_is_idempotent(self, sessions):
        token = await sessions.create("acct-1", "client", "tenant-1")
        assert await sessions.revoke(token) is True
        assert await sessions.revoke(token) is False
        assert await sessions.revoke(None) is False
        assert (await sessions.validate(token)).failure == SessionFailure.NO_SESSION

    async def test_revoke_all_removes_every_session_of_subject(self, sessions):
        tokens = [await sessions.create("acct-1", "client", "tenant-1") for _ in range(3)]
        other = await sessions.create("acct-2", "client", "tenant-1")
        assert await sessions.revoke_all("acct-1") == 3
        for token in tokens:
            assert not (await sessions.validate(token)).ok
        assert (await sessions.validate(other)).ok
        assert await sessions.revoke_all("acct-1") == 0

    async def test_store_outage_denies(self, unavailable_store, clock):
        sessions = SessionManager(unavailable_store, clock=clock)
        result = await sessions.validate("some-token")
        assert result.failure == SessionFailure.NO_SESSION

    async def test_revoke_payload_that_is_not_an_object(self, sessions, counters):
        token = await sessions.create("acct-1", "client", "tenant-1")
        await counters.set(f"session:{sessions._digest(token)}", "[]", 60)
        assert await sessions.revoke(token) is True
        assert (await sessions.validate(token)).failure == SessionFailure.NO_SESSION


class TestSessionConcurrency:
    """Overlapping validations and revocations on one token."""

    async def test_simultaneous_validations_both_extend(self, clock):
        counters = _YieldingStore(clock=clock)
        sessions = SessionManager(counters, ttl=timedelta(hours=8), clock=clock)
        token = await sessions.create("acct-1", "client", "tenant-1")
        clock.advance(hours=1)
        first, second = await asyncio.gather(sessions.validate(token), sessions.validate(token))
        assert first.ok and second.ok
        stored = json.loads(await counters.get(f"session:{sessions._digest(token)}"))
        assert stored["expires_at"] == (clock.now + timedelta(hours=8)).isoformat()

    async def test_revoke_during_validation_is_not_undone(self, clock):
        counters = _InterleavingStore(clock)
        sessions = SessionManager(counters, ttl=timedelta(hours=8), clock=clock)
        token = await sessions.create("acct-1", "client", "tenant-1")

        async def revoke():
            assert await sessions.revoke(token) is True

        counters.on_lookup = revoke
        assert (await sessions.validate(token)).failure == SessionFailure.NO_SESSION
        assert await counters.get(f"session:{sessions._digest(token)}") is None
        assert (await sessions.validate(token)).failure == SessionFailure.NO_SESSION

    async def test_revoke_all_during_validation_is_not_undone(self, clock):
        counters = _InterleavingStore(clock)
        sessions = SessionManager(counters, ttl=timedelta(hours=8), clock=clock)
        token = await sessions.create("acct-1", "client", "tenant-1")

        async def revoke_all():
            assert await sessions.revoke_all("acct-1") == 1

        counters.on_lookup = revoke_all
        assert not (await sessions.validate(token)).ok
        assert not (await sessions.validate(token)).ok
        assert await counters.members("session_subject:acct-1") == set()
