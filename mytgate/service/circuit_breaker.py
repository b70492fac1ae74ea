from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from mytgate.logging import get_logger
from mytgate.service.errors import AuthError, CircuitOpenError, UpstreamError
from mytgate.service.metrics import Metrics
from mytgate.storage.common import ceil_seconds

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitSnapshot:
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    trial_successes: int = 0


def next_state(snapshot: CircuitSnapshot, now: float, timeout: float) -> CircuitSnapshot:
    """Apply the time-driven Open -> HalfOpen transition.

    There is no background timer: this runs at the top of every
    ``can_attempt`` and is the only place the cooldown is evaluated.
    """
    if snapshot.state != CircuitState.OPEN or snapshot.opened_at is None:
        return snapshot
    if now - snapshot.opened_at >= timeout:
        return replace(snapshot, state=CircuitState.HALF_OPEN, trial_successes=0)
    return snapshot


class CircuitBreaker:
    """Three-state guard around one upstream dependency.

    Callers must invoke ``can_attempt()`` before each upstream call and then
    exactly one of ``record_success()`` / ``record_failure()``. ``call()``
    wraps that protocol for coroutines and classifies errors so that only
    upstream unavailability counts as a failure.
    """

    def __init__(
        self,
        name: str = "upstream",
        *,
        failure_threshold: int = 5,
        timeout_seconds: float = 60.0,
        success_threshold: int = 2,
        metrics: Optional[Metrics] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if failure_threshold < 1 or success_threshold < 1:
            raise ValueError("circuit breaker thresholds must be positive")
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout_seconds = float(timeout_seconds)
        self.success_threshold = success_threshold
        self.metrics = metrics
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshot = CircuitSnapshot()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._snapshot.state

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            return self._snapshot

    def can_attempt(self) -> None:
        """Raise ``CircuitOpenError`` if the upstream must not be contacted."""
        with self._lock:
            now = self._clock()
            current = next_state(self._snapshot, now, self.timeout_seconds)
            if current is not self._snapshot:
                logger.info(
                    "circuit_half_open",
                    breaker=self.name,
                    open_for_seconds=round(now - (self._snapshot.opened_at or now), 3),
                )
                self._snapshot = current
            if current.state != CircuitState.OPEN:
                return
            retry_after = ceil_seconds(
                self.timeout_seconds - (now - (current.opened_at or now))
            )
        logger.debug("circuit_rejected", breaker=self.name, retry_after=retry_after)
        raise CircuitOpenError(retry_after=max(retry_after, 1))

    def record_success(self) -> None:
        with self._lock:
            current = self._snapshot
            if current.state == CircuitState.CLOSED:
                if current.consecutive_failures:
                    self._snapshot = replace(current, consecutive_failures=0)
            elif current.state == CircuitState.HALF_OPEN:
                successes = current.trial_successes + 1
                if successes >= self.success_threshold:
                    self._snapshot = CircuitSnapshot()
                    logger.info("circuit_closed", breaker=self.name)
                else:
                    self._snapshot = replace(current, trial_successes=successes)
            else:
                logger.warning("circuit_success_while_open", breaker=self.name)

    def record_failure(self) -> None:
        opened = False
        with self._lock:
            now = self._clock()
            current = self._snapshot
            if current.state == CircuitState.CLOSED:
                failures = current.consecutive_failures + 1
                if failures >= self.failure_threshold:
                    self._snapshot = CircuitSnapshot(
                        state=CircuitState.OPEN,
                        consecutive_failures=failures,
                        opened_at=now,
                    )
                    opened = True
                else:
                    self._snapshot = replace(current, consecutive_failures=failures)
            elif current.state == CircuitState.HALF_OPEN:
                self._snapshot = CircuitSnapshot(
                    state=CircuitState.OPEN,
                    consecutive_failures=1,
                    opened_at=now,
                )
                logger.warning("circuit_reopened", breaker=self.name)
            else:
                self._snapshot = replace(current, opened_at=now)
            failures = self._snapshot.consecutive_failures
        if opened:
            logger.error(
                "circuit_opened",
                breaker=self.name,
                failures=failures,
                timeout_seconds=self.timeout_seconds,
            )
            if self.metrics is not None:
                self.metrics.increment("circuit_breaker_opens")

    def reset(self) -> None:
        with self._lock:
            self._snapshot = CircuitSnapshot()

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` under the breaker protocol.

        Transient upstream errors record a failure. Any answer the upstream
        actually gave, including a rejection of the caller's input, records
        a success.
        """
        self.can_attempt()
        try:
            result = await fn()
        except UpstreamError as exc:
            if exc.is_transient:
                self.record_failure()
            else:
                self.record_success()
            raise
        except AuthError:
            self.record_success()
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result
