from __future__ import annotations

import hashlib
import json
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from clientportal.logging import get_logger, log_auth_event
from clientportal.storage.counter_store import CounterStore
from clientportal.storage.errors import StoreUnavailable
from clientportal.storage.models import SessionRecord, utcnow

logger = get_logger(__name__)


class SessionFailure(str, Enum):
    NO_SESSION = "no_session"
    SESSION_EXPIRED = "session_expired"


@dataclass(frozen=True)
class SessionResult:
    session: Optional[SessionRecord] = None
    failure: Optional[SessionFailure] = None

    @property
    def ok(self) -> bool:
        return self.session is not None and self.failure is None


class SessionManager:
    """Issues, validates with sliding expiry, and revokes opaque session tokens.

    Records are keyed by the SHA-256 digest of the token so a leaked store
    dump cannot be replayed as cookies.
    """

    KEY_PREFIX = "session"
    SUBJECT_PREFIX = "session_subject"

    def __init__(
        self,
        store: CounterStore,
        *,
        ttl: timedelta = timedelta(hours=8),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock or utcnow

    @staticmethod
    def _digest(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    @classmethod
    def _session_key(cls, digest: str) -> str:
        return f"{cls.KEY_PREFIX}:{digest}"

    @classmethod
    def _subject_key(cls, subject_id: str) -> str:
        return f"{cls.SUBJECT_PREFIX}:{subject_id}"

    @staticmethod
    def _ttl_seconds(record: SessionRecord, now: datetime) -> int:
        return max(1, math.ceil((record.expires_at - now).total_seconds()))

    async def _write(
        self, digest: str, record: SessionRecord, now: datetime, *, renew: bool = False
    ) -> bool:
        ttl = self._ttl_seconds(record, now)
        written = await self.store.set(
            self._session_key(digest),
            json.dumps(record.to_payload()),
            ttl,
            only_if_present=renew,
        )
        if not written:
            return False
        await self.store.add_member(self._subject_key(record.subject_id), digest, ttl)
        return True

    async def create(
        self,
        subject_id: str,
        role: str,
        tenant_scope: Optional[str],
        ttl: timedelta | None = None,
    ) -> str:
        """Store a new session and return its token.

        Raises ``StoreUnavailable`` when the record cannot be written; the
        caller decides how to deny.
        """
        token, _ = await self.issue(subject_id, role, tenant_scope, ttl)
        return token

    async def issue(
        self,
        subject_id: str,
        role: str,
        tenant_scope: Optional[str],
        ttl: timedelta | None = None,
    ) -> tuple[str, SessionRecord]:
        ttl = ttl or self.ttl
        now = self._clock()
        token = secrets.token_urlsafe(32)
        digest = self._digest(token)
        record = SessionRecord(
            subject_id=subject_id,
            role=str(getattr(role, "value", role)),
            tenant_scope=tenant_scope,
            created_at=now,
            last_activity_at=now,
            expires_at=now + ttl,
            ttl_seconds=int(ttl.total_seconds()),
        )
        await self._write(digest, record, now)
        log_auth_event(
            "session_created",
            outcome="success",
            logger=logger,
            subject_id=subject_id,
            role=record.role,
            tenant_scope=tenant_scope,
            expires_at=record.expires_at.isoformat(),
        )
        return token, record

    async def validate(self, token: Optional[str]) -> SessionResult:
        if not token:
            return SessionResult(failure=SessionFailure.NO_SESSION)
        digest = self._digest(token)
        key = self._session_key(digest)
        try:
            raw = await self.store.get(key)
        except StoreUnavailable as exc:
            logger.error("session_store_unavailable", operation="validate", error=str(exc))
            return SessionResult(failure=SessionFailure.NO_SESSION)
        if raw is None:
            return SessionResult(failure=SessionFailure.NO_SESSION)
        try:
            record = SessionRecord.from_payload(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("session_record_corrupt", error=str(exc))
            return SessionResult(failure=SessionFailure.NO_SESSION)

        now = self._clock()
        if now >= record.expires_at:
            log_auth_event(
                "session_expired",
                outcome="session_expired",
                logger=logger,
                subject_id=record.subject_id,
                expired_at=record.expires_at.isoformat(),
            )
            try:
                await self.store.delete(key)
                await self.store.remove_member(self._subject_key(record.subject_id), digest)
            except StoreUnavailable as exc:
                logger.warning("session_cleanup_failed", error=str(exc))
            return SessionResult(failure=SessionFailure.SESSION_EXPIRED)

        record.last_activity_at = now
        record.expires_at = now + timedelta(seconds=record.ttl_seconds)
        try:
            renewed = await self._write(digest, record, now, renew=True)
        except StoreUnavailable as exc:
            logger.error("session_store_unavailable", operation="renew", error=str(exc))
            return SessionResult(failure=SessionFailure.NO_SESSION)
        if not renewed:
            # revoked between lookup and renewal
            logger.info("session_revoked_during_renewal", subject_id=record.subject_id)
            return SessionResult(failure=SessionFailure.NO_SESSION)
        return SessionResult(session=record)

    async def revoke(self, token: Optional[str]) -> bool:
        """Remove one session. Revoking an absent session is not an error."""
        if not token:
            return False
        digest = self._digest(token)
        key = self._session_key(digest)
        try:
            raw = await self.store.get(key)
            removed = await self.store.delete(key)
            payload = json.loads(raw) if raw else None
            subject_id = payload.get("subject_id") if isinstance(payload, dict) else None
            if subject_id:
                await self.store.remove_member(self._subject_key(subject_id), digest)
        except StoreUnavailable as exc:
            logger.error("session_store_unavailable", operation="revoke", error=str(exc))
            return False
        except ValueError as exc:
            logger.warning("session_record_corrupt", error=str(exc))
            return bool(removed)
        if removed:
            log_auth_event("session_revoked", outcome="revoked", logger=logger)
        return bool(removed)

    async def revoke_all(self, subject_id: str) -> int:
        """Revoke every session of a subject and return how many were removed."""
        subject_key = self._subject_key(subject_id)
        revoked = 0
        try:
            digests = await self.store.members(subject_key)
            for digest in digests:
                revoked += 1 if await self.store.delete(self._session_key(digest)) else 0
            await self.store.delete(subject_key)
        except StoreUnavailable as exc:
            logger.error(
                "session_store_unavailable",
                operation="revoke_all",
                subject_id=subject_id,
                error=str(exc),
            )
            return revoked
        log_auth_event(
            "sessions_revoked_all",
            outcome="revoked",
            logger=logger,
            subject_id=subject_id,
            revoked=revoked,
        )
        return revoked
