from __future__ import annotations

import time
from typing import Awaitable, Callable, Optional, TypeVar

from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from mytgate.logging import get_logger
from mytgate.service.circuit_breaker import CircuitBreaker
from mytgate.service.errors import AuthError, AuthErrorKind, UpstreamError
from mytgate.service.metrics import Metrics
from mytgate.service.upstream import (
    Credentials,
    TokenGrant,
    UpstreamClient,
    UpstreamToken,
    customer_uuid_from_id_token,
)
from mytgate.storage.common import KeyValueStore

logger = get_logger(__name__)

T = TypeVar("T")


class CredentialExchange:
    """Per-identity cache of upstream OAuth tokens.

    Each identity hash owns at most one entry, ``upstream:token:{hash}``,
    stored Fernet-encrypted. The entry is dropped after ``cache_ttl_seconds``
    without use even if the upstream token itself is still valid. Upstream
    calls go through the circuit breaker and never run under a store lock.
    """

    def __init__(
        self,
        store: KeyValueStore,
        upstream: UpstreamClient,
        breaker: CircuitBreaker,
        cipher: Fernet,
        *,
        cache_ttl_seconds: int = 3600,
        refresh_margin_seconds: int = 30,
        metrics: Optional[Metrics] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.upstream = upstream
        self.breaker = breaker
        self._cipher = cipher
        self.cache_ttl_seconds = cache_ttl_seconds
        self.refresh_margin_seconds = refresh_margin_seconds
        self.metrics = metrics
        self._clock = clock

    @staticmethod
    def _cache_key(identity_hash: str) -> str:
        return f"upstream:token:{identity_hash}"

    def _count(self, name: str) -> None:
        if self.metrics is not None:
            self.metrics.increment(name)

    async def _load(self, identity_hash: str) -> Optional[UpstreamToken]:
        raw = await self.store.get(self._cache_key(identity_hash))
        if raw is None:
            return None
        try:
            return UpstreamToken.model_validate_json(self._cipher.decrypt(raw.encode()))
        except (InvalidToken, ValidationError):
            logger.warning("upstream_token_unreadable", identity_hash=identity_hash)
            await self.store.delete(self._cache_key(identity_hash))
            return None

    async def _save(self, identity_hash: str, token: UpstreamToken) -> None:
        sealed = self._cipher.encrypt(token.model_dump_json().encode()).decode()
        await self.store.set(
            self._cache_key(identity_hash), sealed, ttl=self.cache_ttl_seconds
        )

    def _from_grant(
        self, grant: TokenGrant, now: float, previous: Optional[UpstreamToken] = None
    ) -> UpstreamToken:
        uuid = customer_uuid_from_id_token(grant.id_token)
        if uuid is None and previous is not None:
            uuid = previous.uuid
        return UpstreamToken(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=now + grant.expires_in,
            last_used_at=now,
            token_type=grant.token_type,
            uuid=uuid,
        )

    def _needs_refresh(self, token: UpstreamToken, now: float) -> bool:
        return token.is_expired(now + self.refresh_margin_seconds)

    async def get_or_refresh(
        self,
        identity_hash: str,
        credentials: Optional[Credentials] = None,
        *,
        force_login: bool = False,
    ) -> UpstreamToken:
        """Return a usable upstream token for the identity.

        A fresh cached token is returned as is. An expired one is refreshed
        in place. On a miss the full upstream login runs, which needs
        ``credentials``; without them the caller gets ``AuthError(EXPIRED)``
        and must log in again. ``force_login`` skips the cache entirely.
        """
        if not force_login:
            cached = await self._load(identity_hash)
            if cached is not None:
                now = self._clock()
                if not self._needs_refresh(cached, now):
                    self._count("cache_hits")
                    touched = cached.model_copy(update={"last_used_at": now})
                    await self._save(identity_hash, touched)
                    return touched
                refreshed = await self._refresh(identity_hash, cached, credentials)
                if refreshed is not None:
                    return refreshed
            else:
                self._count("cache_misses")

        if credentials is None:
            raise AuthError(AuthErrorKind.EXPIRED)
        return await self._login(identity_hash, credentials)

    async def _refresh(
        self,
        identity_hash: str,
        cached: UpstreamToken,
        credentials: Optional[Credentials],
    ) -> Optional[UpstreamToken]:
        try:
            grant = await self.breaker.call(
                lambda: self.upstream.refresh(cached.refresh_token)
            )
        except UpstreamError as exc:
            if exc.is_transient:
                raise
            # refresh token rejected; only a full login can recover
            logger.info(
                "upstream_refresh_rejected",
                identity_hash=identity_hash,
                upstream_status=exc.upstream_status,
                can_relogin=credentials is not None,
            )
            await self.invalidate(identity_hash)
            return None
        self._count("upstream_refreshes")
        token = self._from_grant(grant, self._clock(), previous=cached)
        await self._save(identity_hash, token)
        logger.info("upstream_token_refreshed", identity_hash=identity_hash)
        return token

    async def _login(self, identity_hash: str, credentials: Credentials) -> UpstreamToken:
        grant = await self.breaker.call(lambda: self.upstream.login(credentials))
        self._count("upstream_logins")
        token = self._from_grant(grant, self._clock())
        await self._save(identity_hash, token)
        logger.info("upstream_login_succeeded", identity_hash=identity_hash)
        return token

    async def invalidate(self, identity_hash: str) -> None:
        await self.store.delete(self._cache_key(identity_hash))
        logger.info("upstream_token_invalidated", identity_hash=identity_hash)

    async def execute(
        self,
        identity_hash: str,
        operation: Callable[[UpstreamToken], Awaitable[T]],
        credentials: Optional[Credentials] = None,
    ) -> T:
        """Run an upstream data call with the identity's token.

        A transient failure is retried once. An upstream 401 means the
        cached token is dead: the entry is dropped and, without credentials
        to log in again, the caller gets ``AuthError(EXPIRED)``.
        """
        retried = False
        while True:
            token = await self.get_or_refresh(identity_hash, credentials)
            try:
                return await self.breaker.call(lambda: operation(token))
            except UpstreamError as exc:
                if exc.upstream_status == 401:
                    await self.invalidate(identity_hash)
                    if credentials is None or retried:
                        raise AuthError(AuthErrorKind.EXPIRED) from exc
                elif not exc.is_transient or retried:
                    raise
                retried = True
                logger.info(
                    "upstream_call_retry",
                    identity_hash=identity_hash,
                    error_kind=exc.kind,
                    upstream_status=exc.upstream_status,
                )
