from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from clientportal.logging import get_logger, log_auth_event
from clientportal.service.lockout import Locked, LockoutTracker
from clientportal.service.rate_limit import RateLimitDecision, RateLimiter
from clientportal.service.rbac import RoleResolver
from clientportal.service.sessions import SessionFailure, SessionManager, SessionResult
from clientportal.storage.errors import StoreUnavailable
from clientportal.storage.models import Account, SessionRecord, Tenant, VerifiedIdentity, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
LOGIN_ACTION = "login"

_password_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> Tuple[str, str]:
    return _password_hasher.hash(password), PASSWORD_ALGO


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_business_identity(value: Optional[str]) -> str:
    """Keep digits only so formatted and bare registration numbers compare equal."""
    return re.sub(r"\D", "", value or "")


class AccountStore(Protocol):
    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def increment_failed_attempts(self, account_id: str, *, now: datetime) -> int: ...

    def set_locked_until(self, account_id: str, until: datetime) -> None: ...

    def record_login_success(self, account_id: str, *, now: datetime) -> None: ...

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None: ...


class AuthFailure(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    TENANT_MISMATCH = "tenant_mismatch"
    ACCESS_DISABLED = "access_disabled"
    TEMPORARILY_LOCKED = "temporarily_locked"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class VerifyResult:
    identity: Optional[VerifiedIdentity] = None
    failure: Optional[AuthFailure] = None
    retry_after: Optional[int] = None
    rate_limit: Optional[RateLimitDecision] = None

    @property
    def ok(self) -> bool:
        return self.identity is not None and self.failure is None


@dataclass
class AuthContext:
    subject_id: str
    role: str
    tenant_scope: Optional[str]
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class LoginResult:
    token: Optional[str] = None
    context: Optional[AuthContext] = None
    failure: Optional[AuthFailure] = None
    retry_after: Optional[int] = None
    rate_limit: Optional[RateLimitDecision] = None

    @property
    def ok(self) -> bool:
        return self.token is not None and self.failure is None


class CredentialVerifier:
    """Password (and optional tenant identity) verification with lockout.

    Checks run in a fixed order: rate limit, account lookup, enabled flag,
    lockout, secret, tenant identity. A locked account never reaches the
    secret comparison.
    """

    def __init__(
        self,
        store: AccountStore,
        rate_limiter: RateLimiter,
        lockout: LockoutTracker,
        roles: RoleResolver,
        *,
        lookup_timeout_seconds: float = 2.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.lockout = lockout
        self.roles = roles
        self.lookup_timeout_seconds = lookup_timeout_seconds
        self._clock = clock or utcnow
        self._pwd_hasher = _password_hasher
        # Compared against when the account is missing so both branches cost the same
        self._dummy_hash = self._pwd_hasher.hash("portal-timing-equalizer")

    def _fail(
        self,
        failure: AuthFailure,
        *,
        check: str,
        email: str,
        level: str = "warning",
        retry_after: Optional[int] = None,
        rate_limit: Optional[RateLimitDecision] = None,
        **fields,
    ) -> VerifyResult:
        log_auth_event(
            "login_failed",
            outcome=failure.value,
            level=level,
            logger=logger,
            reason=failure.value,
            check=check,
            email=email,
            **fields,
        )
        return VerifyResult(failure=failure, retry_after=retry_after, rate_limit=rate_limit)

    async def _bounded_lookup(self, func, *args):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args), self.lookup_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(func.__name__, exc) from exc
        except (ConnectionError, OSError) as exc:
            raise StoreUnavailable(func.__name__, exc) from exc

    def _secret_matches(self, account: Account, secret: str) -> bool:
        if account.password_algo != PASSWORD_ALGO:
            logger.warning(
                "password_algo_mismatch", account_id=account.id, algo=account.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_invalid", account_id=account.id)
            return False

    def _maybe_rehash(self, account: Account, secret: str) -> None:
        if not self._pwd_hasher.check_needs_rehash(account.password_hash):
            return
        password_hash, algo = hash_password(secret)
        self.store.save_password(account.id, password_hash, algo)
        logger.info("password_rehashed", account_id=account.id)

    async def verify(
        self, identifier: str, secret: str, tenant_identity: Optional[str] = None
    ) -> VerifyResult:
        email = normalize_email(identifier)
        decision = await self.rate_limiter.allow(LOGIN_ACTION, email)
        if not decision.allowed:
            return self._fail(
                AuthFailure.RATE_LIMITED,
                check="rate_limit",
                email=email,
                retry_after=decision.reset_after,
                rate_limit=decision,
            )

        try:
            account = await self._bounded_lookup(self.store.get_account_by_email, email)
        except StoreUnavailable as exc:
            return self._fail(
                AuthFailure.INVALID_CREDENTIALS,
                check="account_lookup",
                email=email,
                level="error",
                rate_limit=decision,
                error=str(exc),
            )
        if account is None:
            try:
                self._pwd_hasher.verify(self._dummy_hash, secret or "")
            except VerifyMismatchError:
                pass
            return self._fail(
                AuthFailure.INVALID_CREDENTIALS,
                check="account_exists",
                email=email,
                rate_limit=decision,
            )

        if not account.enabled:
            return self._fail(
                AuthFailure.ACCESS_DISABLED,
                check="account_enabled",
                email=email,
                account_id=account.id,
                rate_limit=decision,
            )

        now = self._clock()
        state = self.lockout.state(account, now)
        if isinstance(state, Locked):
            return self._fail(
                AuthFailure.TEMPORARILY_LOCKED,
                check="lockout",
                email=email,
                account_id=account.id,
                retry_after=state.remaining_seconds(now),
                locked_until=state.until.isoformat(),
                rate_limit=decision,
            )

        if not self._secret_matches(account, secret or ""):
            after = self.lockout.record_failure(account, now)
            return self._fail(
                AuthFailure.INVALID_CREDENTIALS,
                check="secret",
                email=email,
                account_id=account.id,
                failed_attempts=account.failed_attempts,
                locked=isinstance(after, Locked),
                rate_limit=decision,
            )

        if tenant_identity is not None and tenant_identity.strip():
            supplied = normalize_business_identity(tenant_identity)
            try:
                tenant = await self._bounded_lookup(self.store.get_tenant, account.tenant_id)
            except StoreUnavailable as exc:
                return self._fail(
                    AuthFailure.INVALID_CREDENTIALS,
                    check="tenant_lookup",
                    email=email,
                    level="error",
                    account_id=account.id,
                    rate_limit=decision,
                    error=str(exc),
                )
            stored = normalize_business_identity(tenant.business_identity if tenant else None)
            if not supplied or not stored or supplied != stored:
                after = self.lockout.record_failure(account, now)
                return self._fail(
                    AuthFailure.TENANT_MISMATCH,
                    check="tenant_identity",
                    email=email,
                    account_id=account.id,
                    tenant_id=account.tenant_id,
                    tenant_has_identity=bool(stored),
                    failed_attempts=account.failed_attempts,
                    locked=isinstance(after, Locked),
                    rate_limit=decision,
                )

        self.lockout.reset(account, now)
        self._maybe_rehash(account, secret)
        log_auth_event(
            "login_succeeded",
            outcome="success",
            logger=logger,
            email=email,
            account_id=account.id,
            tenant_id=account.tenant_id,
            source="credentials",
        )
        return VerifyResult(
            identity=VerifiedIdentity(
                subject_id=account.id,
                email=account.email,
                tenant_id=account.tenant_id,
                source="credentials",
            ),
            rate_limit=decision,
        )

    async def verify_federated(self, email: str) -> VerifyResult:
        """Accept an e-mail already proven by an external identity provider.

        Allow-listed administrators need no portal account; everyone else
        needs an enabled, unlocked one. No secret is compared and no failure
        is counted.
        """
        email = normalize_email(email)
        if self.roles.is_admin(email):
            log_auth_event(
                "login_succeeded", outcome="success", logger=logger, email=email, source="federated"
            )
            return VerifyResult(
                identity=VerifiedIdentity(
                    subject_id=RoleResolver.admin_subject_id(email),
                    email=email,
                    tenant_id=None,
                    source="federated",
                )
            )
        try:
            account = await self._bounded_lookup(self.store.get_account_by_email, email)
        except StoreUnavailable as exc:
            return self._fail(
                AuthFailure.INVALID_CREDENTIALS,
                check="account_lookup",
                email=email,
                level="error",
                source="federated",
                error=str(exc),
            )
        if account is None:
            return self._fail(
                AuthFailure.INVALID_CREDENTIALS,
                check="account_exists",
                email=email,
                source="federated",
            )
        if not account.enabled:
            return self._fail(
                AuthFailure.ACCESS_DISABLED,
                check="account_enabled",
                email=email,
                account_id=account.id,
                source="federated",
            )
        now = self._clock()
        state = self.lockout.state(account, now)
        if isinstance(state, Locked):
            return self._fail(
                AuthFailure.TEMPORARILY_LOCKED,
                check="lockout",
                email=email,
                account_id=account.id,
                retry_after=state.remaining_seconds(now),
                source="federated",
            )
        self.store.record_login_success(account.id, now=now)
        log_auth_event(
            "login_succeeded",
            outcome="success",
            logger=logger,
            email=email,
            account_id=account.id,
            tenant_id=account.tenant_id,
            source="federated",
        )
        return VerifyResult(
            identity=VerifiedIdentity(
                subject_id=account.id,
                email=account.email,
                tenant_id=account.tenant_id,
                source="federated",
            )
        )


class PortalAuthService:
    """Login, per-request authentication and logout on top of the verifier."""

    def __init__(
        self,
        verifier: CredentialVerifier,
        roles: RoleResolver,
        sessions: SessionManager,
    ) -> None:
        self.verifier = verifier
        self.roles = roles
        self.sessions = sessions

    @staticmethod
    def _context(record: SessionRecord) -> AuthContext:
        return AuthContext(
            subject_id=record.subject_id,
            role=record.role,
            tenant_scope=record.tenant_scope,
            expires_at=record.expires_at,
        )

    async def _issue(self, verified: VerifyResult, *, ttl: timedelta | None = None) -> LoginResult:
        if not verified.ok or verified.identity is None:
            return LoginResult(
                failure=verified.failure,
                retry_after=verified.retry_after,
                rate_limit=verified.rate_limit,
            )
        identity = verified.identity
        resolved = self.roles.resolve(identity)
        try:
            token, record = await self.sessions.issue(
                identity.subject_id, resolved.role.value, resolved.tenant_scope, ttl
            )
        except StoreUnavailable as exc:
            log_auth_event(
                "login_failed",
                outcome="session_store_unavailable",
                level="error",
                logger=logger,
                reason="session_store_unavailable",
                check="session_create",
                account_id=identity.subject_id,
                error=str(exc),
            )
            return LoginResult(
                failure=AuthFailure.INVALID_CREDENTIALS, rate_limit=verified.rate_limit
            )
        return LoginResult(
            token=token, context=self._context(record), rate_limit=verified.rate_limit
        )

    async def login(
        self, email: str, password: str, tenant_identity: Optional[str] = None
    ) -> LoginResult:
        verified = await self.verifier.verify(email, password, tenant_identity)
        return await self._issue(verified)

    async def login_federated(self, email: str) -> LoginResult:
        verified = await self.verifier.verify_federated(email)
        return await self._issue(verified)

    async def authenticate(self, token: Optional[str]) -> Tuple[Optional[AuthContext], Optional[SessionFailure]]:
        result: SessionResult = await self.sessions.validate(token)
        if not result.ok or result.session is None:
            return None, result.failure or SessionFailure.NO_SESSION
        return self._context(result.session), None

    async def logout(self, token: Optional[str]) -> bool:
        return await self.sessions.revoke(token)

    async def revoke_all(self, subject_id: str) -> int:
        return await self.sessions.revoke_all(subject_id)
