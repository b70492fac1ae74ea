from __future__ import annotations

import threading
from collections import Counter
from typing import Dict

# Counter names the gateway increments; unknown names are still accepted.
KNOWN_COUNTERS = (
    "requests",
    "errors",
    "cache_hits",
    "cache_misses",
    "login_attempts",
    "login_failures",
    "lockouts",
    "rate_limit_hits",
    "circuit_breaker_opens",
    "upstream_logins",
    "upstream_refreshes",
    "sessions_issued",
    "sessions_revoked",
)


class Metrics:
    """Thread-safe counter sink. Exporting the numbers is left to the host."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Counter[str] = Counter({name: 0 for name in KNOWN_COUNTERS})

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def reset(self) -> None:
        with self._lock:
            self._counters = Counter({name: 0 for name in KNOWN_COUNTERS})
