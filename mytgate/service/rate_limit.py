from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from mytgate.logging import get_logger
from mytgate.service.metrics import Metrics
from mytgate.storage.common import KeyValueStore

logger = get_logger(__name__)

REQUEST_WINDOW_SECONDS = 3600


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0


class RateLimiter:
    """Per-identity login lockout and hourly request quota.

    All state lives in the key-value store under the identity hash:
    ``rate:login_failures:{h}``, ``rate:lockout:{h}`` and
    ``rate:requests:{h}``. Counters use the store's atomic ``incr`` so
    concurrent callers never lose an update.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        login_failure_limit: int = 5,
        login_failure_window_seconds: int = 900,
        lockout_seconds: int = 900,
        requests_per_hour: int = 1000,
        metrics: Metrics | None = None,
    ) -> None:
        self.store = store
        self.login_failure_limit = login_failure_limit
        self.login_failure_window_seconds = login_failure_window_seconds
        self.lockout_seconds = lockout_seconds
        self.requests_per_hour = requests_per_hour
        self.metrics = metrics

    @staticmethod
    def _failures_key(identity_hash: str) -> str:
        return f"rate:login_failures:{identity_hash}"

    @staticmethod
    def _lockout_key(identity_hash: str) -> str:
        return f"rate:lockout:{identity_hash}"

    @staticmethod
    def _requests_key(identity_hash: str) -> str:
        return f"rate:requests:{identity_hash}"

    async def record_login_failure(self, identity_hash: str) -> Tuple[bool, int]:
        """Count a failed login; returns ``(now_locked_out, attempts)``."""
        attempts, _ = await self.store.incr(
            self._failures_key(identity_hash), self.login_failure_window_seconds
        )
        if attempts < self.login_failure_limit:
            return False, attempts
        await self.store.set(
            self._lockout_key(identity_hash), "1", ttl=self.lockout_seconds
        )
        await self.store.delete(self._failures_key(identity_hash))
        logger.warning(
            "login_lockout_started",
            identity_hash=identity_hash,
            attempts=attempts,
            lockout_seconds=self.lockout_seconds,
        )
        if self.metrics is not None:
            self.metrics.increment("lockouts")
        return True, attempts

    async def record_login_success(self, identity_hash: str) -> None:
        await self.store.delete(self._failures_key(identity_hash))

    async def is_locked_out(self, identity_hash: str) -> Tuple[bool, int]:
        remaining = await self.store.ttl(self._lockout_key(identity_hash))
        if remaining is None:
            return False, 0
        if remaining < 0:
            # lockout marker without expiry; treat as a full lockout period
            return True, self.lockout_seconds
        return True, remaining

    async def check_and_count_request(self, identity_hash: str) -> RateDecision:
        """Count one request in the identity's fixed hourly window."""
        if self.requests_per_hour <= 0:
            return RateDecision(allowed=True, remaining=0)
        count, window_left = await self.store.incr(
            self._requests_key(identity_hash), REQUEST_WINDOW_SECONDS
        )
        if count > self.requests_per_hour:
            if self.metrics is not None:
                self.metrics.increment("rate_limit_hits")
            return RateDecision(
                allowed=False, remaining=0, retry_after=max(window_left, 1)
            )
        return RateDecision(allowed=True, remaining=self.requests_per_hour - count)
