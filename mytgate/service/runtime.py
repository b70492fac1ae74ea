from __future__ import annotations

import threading
import time
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from mytgate.config import Settings, get_settings, reset_settings_cache
from mytgate.logging import get_logger
from mytgate.service.circuit_breaker import CircuitBreaker
from mytgate.service.credentials import CredentialExchange
from mytgate.service.gateway import Gateway
from mytgate.service.identity import IdentityHasher
from mytgate.service.metrics import Metrics
from mytgate.service.rate_limit import RateLimiter
from mytgate.service.sessions import SessionAuthority
from mytgate.service.upstream import MyTClient, UpstreamClient
from mytgate.storage.common import KeyValueStore
from mytgate.storage.memory import MemoryStore
from mytgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def _build_store(settings: Settings, clock: Callable[[], float]) -> KeyValueStore:
    if settings.use_memory_store or not settings.redis_url:
        if not settings.test_mode and not settings.use_memory_store:
            raise RuntimeError(
                "REDIS_URL is required unless USE_MEMORY_STORE=true or TEST_MODE=true"
            )
        return MemoryStore(clock=clock)
    cache = (
        SyncRedisCache(settings.redis_url)
        if settings.test_mode
        else RedisCache(settings.redis_url)
    )
    cache.verify_connection()
    return cache


class Runtime:
    """Holds the wired core services for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[KeyValueStore] = None,
        upstream: Optional[UpstreamClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        # Refuse to build anything with unusable keys.
        self.settings.validate_secrets()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = store if store is not None else _build_store(self.settings, clock)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.metrics = Metrics()
        self.hasher = IdentityHasher(self.settings.identity_hash_key)
        self.upstream = upstream or MyTClient(
            auth_base_url=self.settings.upstream_auth_base_url,
            api_base_url=self.settings.upstream_api_base_url,
            client_id=self.settings.upstream_client_id,
            redirect_uri=self.settings.upstream_redirect_uri,
            api_key=self.settings.upstream_api_key,
            timeout=self.settings.upstream_timeout_seconds,
        )
        self.breaker = CircuitBreaker(
            "myt",
            failure_threshold=self.settings.failure_threshold,
            timeout_seconds=self.settings.circuit_timeout_seconds,
            success_threshold=self.settings.success_threshold,
            metrics=self.metrics,
            clock=clock,
        )
        self.rate_limiter = RateLimiter(
            self.store,
            login_failure_limit=self.settings.login_failure_limit,
            login_failure_window_seconds=self.settings.login_failure_window_seconds,
            lockout_seconds=self.settings.lockout_seconds,
            requests_per_hour=self.settings.requests_per_hour,
            metrics=self.metrics,
        )
        self.sessions = SessionAuthority(
            self.store,
            signing_key=self.settings.signing_key,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            metrics=self.metrics,
            clock=clock,
        )
        self.credentials = CredentialExchange(
            self.store,
            self.upstream,
            self.breaker,
            self.hasher.cipher("upstream-token-cache"),
            cache_ttl_seconds=self.settings.cache_ttl_seconds,
            metrics=self.metrics,
            clock=clock,
        )
        self.gateway = Gateway(
            self.sessions,
            self.rate_limiter,
            self.credentials,
            self.hasher,
            metrics=self.metrics,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            failure_threshold=self.settings.failure_threshold,
            requests_per_hour=self.settings.requests_per_hour,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once the runtime
    exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(new_runtime: Runtime) -> Runtime:
    """Install a pre-built runtime, e.g. one wired with a fake upstream."""
    global runtime
    with _runtime_lock:
        runtime = new_runtime
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton so the next request rebuilds it.

    Only allowed under TEST_MODE.
    """
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, SyncRedisCache):
            runtime.store.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = None
