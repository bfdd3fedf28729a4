"""Tests for credential verification, lockout integration and login sessions."""

import time
from datetime import timedelta
from unittest.mock import patch

import pytest

from clientportal.service.auth import (
    AuthFailure,
    CredentialVerifier,
    PortalAuthService,
    hash_password,
    normalize_business_identity,
)
from clientportal.service.lockout import LockoutTracker
from clientportal.service.rate_limit import RateLimiter, RateLimitPolicy
from clientportal.service.rbac import Role, RoleResolver
from clientportal.service.sessions import SessionManager
from clientportal.storage.counter_store import MemoryCounterStore
from clientportal.storage.memory import MemoryStore

PASSWORD = "teste123"
ADMIN_EMAIL = "admin@portal.example"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tenant(store):
    return store.create_tenant("Empresa Ltda", "12.345.678/0001-90")


@pytest.fixture
def account(store, tenant):
    password_hash, algo = hash_password(PASSWORD)
    return store.create_account("joao@empresa.com", tenant.id, password_hash, algo)


@pytest.fixture
def counters(clock):
    return MemoryCounterStore(clock=clock)


@pytest.fixture
def roles():
    return RoleResolver([ADMIN_EMAIL])


@pytest.fixture
def verifier(store, counters, roles, clock):
    limiter = RateLimiter(
        counters, {"login": RateLimitPolicy(limit=100, window_seconds=900)}, clock=clock
    )
    lockout = LockoutTracker(store, threshold=5, duration=timedelta(minutes=30), clock=clock)
    return CredentialVerifier(store, limiter, lockout, roles, clock=clock)


@pytest.fixture
def auth(verifier, roles, counters, clock):
    sessions = SessionManager(counters, ttl=timedelta(hours=8), clock=clock)
    return PortalAuthService(verifier, roles, sessions)


class TestCredentialVerifier:
    async def test_login_with_tenant_identity_yields_client_session(self, auth, account, tenant):
        result = await auth.login("joao@empresa.com", PASSWORD, "12345678000190")
        assert result.ok
        ctx, failure = await auth.authenticate(result.token)
        assert failure is None
        assert ctx.role == Role.CLIENT.value
        assert ctx.tenant_scope == tenant.id
        assert ctx.subject_id == account.id

    async def test_email_is_case_insensitive(self, verifier, account):
        result = await verifier.verify("  JOAO@Empresa.com ", PASSWORD)
        assert result.ok
        assert result.identity.source == "credentials"

    async def test_five_failures_lock_even_the_correct_password(self, verifier, account):
        failures = [
            (await verifier.verify("joao@empresa.com", "errada")).failure for _ in range(5)
        ]
        assert failures == [AuthFailure.INVALID_CREDENTIALS] * 5
        sixth = await verifier.verify("joao@empresa.com", PASSWORD)
        assert sixth.failure == AuthFailure.TEMPORARILY_LOCKED
        assert sixth.retry_after == 30 * 60

    async def test_locked_account_never_compares_secret(self, verifier, account, store):
        for _ in range(5):
            await verifier.verify("joao@empresa.com", "errada")
        with patch.object(verifier, "_secret_matches") as secret_check:
            result = await verifier.verify("joao@empresa.com", "errada")
        secret_check.assert_not_called()
        assert result.failure == AuthFailure.TEMPORARILY_LOCKED
        # counting stops while locked
        assert store.get_account(account.id).failed_attempts == 5

    async def test_unlocks_once_lock_expires(self, verifier, account, store, clock):
        for _ in range(5):
            await verifier.verify("joao@empresa.com", "errada")
        clock.advance(minutes=30, seconds=1)
        result = await verifier.verify("joao@empresa.com", PASSWORD)
        assert result.ok
        stored = store.get_account(account.id)
        assert stored.failed_attempts == 0
        assert stored.locked_until is None

    async def test_success_resets_failed_attempts(self, verifier, account, store, clock):
        for _ in range(4):
            await verifier.verify("joao@empresa.com", "errada")
        assert (await verifier.verify("joao@empresa.com", PASSWORD)).ok
        stored = store.get_account(account.id)
        assert stored.failed_attempts == 0
        assert stored.last_login_at == clock.now

    async def test_tenant_identity_mismatch_counts_as_failure(self, verifier, account, store):
        result = await verifier.verify("joao@empresa.com", PASSWORD, "99.999.999/0001-99")
        assert result.failure == AuthFailure.TENANT_MISMATCH
        assert store.get_account(account.id).failed_attempts == 1

    async def test_blank_tenant_identity_is_skipped(self, verifier, account):
        assert (await verifier.verify("joao@empresa.com", PASSWORD, "   ")).ok

    async def test_identity_supplied_but_tenant_has_none(self, verifier, store):
        bare = store.create_tenant("Sem Cadastro")
        password_hash, algo = hash_password(PASSWORD)
        store.create_account("maria@semcadastro.com", bare.id, password_hash, algo)
        result = await verifier.verify("maria@semcadastro.com", PASSWORD, "12345678000190")
        assert result.failure == AuthFailure.TENANT_MISMATCH

    async def test_disabled_account(self, verifier, account, store):
        store.set_account_enabled(account.id, False)
        result = await verifier.verify("joao@empresa.com", PASSWORD)
        assert result.failure == AuthFailure.ACCESS_DISABLED

    async def test_unknown_account_logs_generic_failure(self, verifier):
        with patch("clientportal.service.auth.logger") as mock_logger:
            result = await verifier.verify("ninguem@empresa.com", PASSWORD)
        assert result.failure == AuthFailure.INVALID_CREDENTIALS
        event, kwargs = mock_logger.warning.call_args[0][0], mock_logger.warning.call_args[1]
        assert event == "login_failed"
        assert kwargs["check"] == "account_exists"
        assert kwargs["audit"] is True

    async def test_rate_limited_before_lookup(self, store, account, counters, roles, clock):
        limiter = RateLimiter(counters, clock=clock)
        lockout = LockoutTracker(store, clock=clock)
        verifier = CredentialVerifier(store, limiter, lockout, roles, clock=clock)
        verifier.rate_limiter.policies["login"] = RateLimitPolicy(limit=2, window_seconds=900)
        await verifier.verify("joao@empresa.com", "errada")
        await verifier.verify("joao@empresa.com", "errada")
        result = await verifier.verify("joao@empresa.com", PASSWORD)
        assert result.failure == AuthFailure.RATE_LIMITED
        assert result.retry_after == 900
        # the throttled attempt is not counted against the account
        assert store.get_account(account.id).failed_attempts == 2

    async def test_slow_lookup_denies(self, store, account, verifier):
        def _slow_lookup(email):
            time.sleep(0.3)
            return account

        verifier.lookup_timeout_seconds = 0.05
        with patch.object(store, "get_account_by_email", _slow_lookup):
            result = await verifier.verify("joao@empresa.com", PASSWORD)
        assert result.failure == AuthFailure.INVALID_CREDENTIALS


class TestFederatedLogin:
    async def test_allow_listed_admin_needs_no_account(self, auth):
        result = await auth.login_federated("Admin@Portal.example")
        assert result.ok
        assert result.context.role == Role.ADMIN.value
        assert result.context.tenant_scope is None
        assert result.context.subject_id == RoleResolver.admin_subject_id(ADMIN_EMAIL)

    async def test_client_account_gets_tenant_scope(self, auth, account, tenant):
        result = await auth.login_federated("joao@empresa.com")
        assert result.ok
        assert result.context.role == Role.CLIENT.value
        assert result.context.tenant_scope == tenant.id

    async def test_unknown_account_is_rejected(self, auth):
        result = await auth.login_federated("estranho@empresa.com")
        assert result.failure == AuthFailure.INVALID_CREDENTIALS


class TestLoginSessionFailures:
    async def test_session_store_outage_denies_login(
        self, verifier, roles, unavailable_store, account, clock
    ):
        auth = PortalAuthService(
            verifier, roles, SessionManager(unavailable_store, clock=clock)
        )
        result = await auth.login("joao@empresa.com", PASSWORD)
        assert not result.ok
        assert result.failure == AuthFailure.INVALID_CREDENTIALS


def test_normalize_business_identity_strips_formatting():
    assert normalize_business_identity("12.345.678/0001-90") == "12345678000190"
    assert normalize_business_identity(None) == ""
