from __future__ import annotations

import math
from typing import Optional, Protocol, Tuple


class KeyValueStore(Protocol):
    """Opaque string key-value storage with per-key expiry.

    Backs the upstream token cache, the session and revocation records and
    the rate counters. ``incr`` must be atomic per key: concurrent callers
    never lose an increment, and the expiry is set only when the key is
    created so a fixed window is not extended by later hits.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, *, ttl: Optional[float] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def incr(self, key: str, ttl: float) -> Tuple[int, int]: ...

    async def ttl(self, key: str) -> Optional[int]: ...

    async def close(self) -> None: ...


def ceil_seconds(value: float) -> int:
    """Round a remaining duration up so callers never retry too early."""
    if value <= 0:
        return 0
    return int(math.ceil(value))


__all__ = ["KeyValueStore", "ceil_seconds"]
