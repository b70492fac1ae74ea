from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from mytgate.logging import get_logger
from mytgate.storage.common import ceil_seconds

# Writes between full sweeps of expired keys.
DEFAULT_SWEEP_EVERY = 1000


class MemoryStore:
    """In-process key-value store used for tests and single-node deployments.

    Expiry is checked lazily on access. Keys that are never read again are
    dropped by a full sweep every ``sweep_every`` writes. Every operation
    runs entirely inside ``_data_lock`` and never awaits while holding it, so
    increments on one key are serialized across threads and event loops.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sweep_every: int = DEFAULT_SWEEP_EVERY,
    ) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self.sweep_every = sweep_every
        self._values: Dict[str, str] = {}
        self._expires_at: Dict[str, float] = {}
        self._writes_since_sweep = 0
        self._data_lock = threading.RLock()

    def _expired(self, key: str, now: float) -> bool:
        deadline = self._expires_at.get(key)
        return deadline is not None and deadline <= now

    def _purge_if_expired(self, key: str, now: float) -> None:
        if self._expired(key, now):
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def _note_write(self) -> None:
        # caller holds _data_lock
        self._writes_since_sweep += 1
        if self.sweep_every > 0 and self._writes_since_sweep >= self.sweep_every:
            self.sweep()

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            self._purge_if_expired(key, self._clock())
            return self._values.get(key)

    async def set(self, key: str, value: str, *, ttl: Optional[float] = None) -> None:
        with self._data_lock:
            self._values[key] = value
            if ttl is not None:
                self._expires_at[key] = self._clock() + max(float(ttl), 0.0)
            else:
                self._expires_at.pop(key, None)
            self._note_write()

    async def delete(self, key: str) -> None:
        with self._data_lock:
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    async def exists(self, key: str) -> bool:
        with self._data_lock:
            self._purge_if_expired(key, self._clock())
            return key in self._values

    async def incr(self, key: str, ttl: float) -> Tuple[int, int]:
        """Increment ``key``; a newly created counter expires after ``ttl``.

        Returns the new count and the seconds left in the counter's window.
        """
        with self._data_lock:
            now = self._clock()
            self._purge_if_expired(key, now)
            count = int(self._values.get(key, "0")) + 1
            self._values[key] = str(count)
            if key not in self._expires_at:
                self._expires_at[key] = now + float(ttl)
            remaining = ceil_seconds(self._expires_at[key] - now)
            self._note_write()
            return count, remaining

    async def ttl(self, key: str) -> Optional[int]:
        with self._data_lock:
            now = self._clock()
            self._purge_if_expired(key, now)
            if key not in self._values:
                return None
            deadline = self._expires_at.get(key)
            if deadline is None:
                return -1
            return ceil_seconds(deadline - now)

    def sweep(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._data_lock:
            now = self._clock()
            stale = [key for key in self._expires_at if self._expired(key, now)]
            for key in stale:
                self._values.pop(key, None)
                self._expires_at.pop(key, None)
            self._writes_since_sweep = 0
        if stale:
            self.logger.debug("memory_store_swept", removed=len(stale))
        return len(stale)

    async def close(self) -> None:
        return None
