from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from clientportal.config import get_settings, reset_settings_cache
from clientportal.logging import configure_logging, get_logger
from clientportal.service.auth import LOGIN_ACTION, CredentialVerifier, PortalAuthService
from clientportal.service.lockout import LockoutTracker
from clientportal.service.metrics_cache import MetricsCache
from clientportal.service.portal import PortalService
from clientportal.service.rate_limit import RateLimiter, RateLimitPolicy
from clientportal.service.rbac import PermissionResolver, RoleResolver
from clientportal.service.sessions import SessionManager
from clientportal.storage.counter_store import BoundedCounterStore, MemoryCounterStore
from clientportal.storage.memory import MemoryStore
from clientportal.storage.postgres import PostgresStore
from clientportal.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        configure_logging(
            self.settings.log_level,
            json_output=self.settings.log_json,
            development_mode=self.settings.log_dev_mode,
        )
        self.settings.validate_startup()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.counter_backend = self._build_counter_backend()
        self.counters = BoundedCounterStore(
            self.counter_backend, timeout_seconds=self.settings.store_timeout_seconds
        )

        self.rate_limiter = RateLimiter(
            self.counters,
            {
                LOGIN_ACTION: RateLimitPolicy(
                    limit=self.settings.login_rate_limit,
                    window_seconds=self.settings.login_rate_window_seconds,
                )
            },
        )
        self.lockout = LockoutTracker(
            self.store,
            threshold=self.settings.lockout_threshold,
            duration=timedelta(minutes=self.settings.lockout_minutes),
        )
        self.roles = RoleResolver(self.settings.admin_identities)
        self.permissions = PermissionResolver()
        self.sessions = SessionManager(
            self.counters, ttl=timedelta(seconds=self.settings.session_ttl_seconds)
        )
        self.verifier = CredentialVerifier(
            self.store,
            self.rate_limiter,
            self.lockout,
            self.roles,
            lookup_timeout_seconds=self.settings.store_timeout_seconds,
        )
        self.auth = PortalAuthService(self.verifier, self.roles, self.sessions)
        self.metrics_cache = MetricsCache(
            self.counters,
            ttl_seconds=self.settings.metrics_cache_ttl_seconds,
            compute_timeout_seconds=self.settings.compute_timeout_seconds,
        )
        self.portal = PortalService(self.store, self.metrics_cache, self.permissions)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.counter_backend, RedisCache),
            admin_identities=len(self.settings.admin_identities),
            login_rate_limit=self.settings.login_rate_limit,
            lockout_threshold=self.settings.lockout_threshold,
        )

    def _build_counter_backend(self):
        fallback_allowed = self.settings.test_mode or self.settings.allow_redis_fallback_dev
        redis_error: Exception | None = None
        if self.settings.redis_url:
            cache = RedisCache(
                self.settings.redis_url, socket_timeout=self.settings.store_timeout_seconds
            )
            try:
                cache.verify_connection()
                return cache
            except (RedisError, OSError) as exc:
                redis_error = exc
                if not fallback_allowed:
                    # Keep the client: limiter and metrics degrade, logins deny,
                    # and the process recovers once Redis answers again.
                    logger.error(
                        "counter_store_unreachable_at_startup",
                        redis_url=_mask_url_password(self.settings.redis_url),
                        error=str(exc),
                    )
                    return cache

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions, rate limits and "
                "cached metrics are in-process only."
            ),
            mode=fallback_mode,
        )
        return MemoryCounterStore()

    async def close(self) -> None:
        await self.counters.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent races during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
