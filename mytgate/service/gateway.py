from __future__ import annotations

import time
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from mytgate.logging import get_logger
from mytgate.service.credentials import CredentialExchange
from mytgate.service.errors import (
    AuthError,
    AuthErrorKind,
    GatewayError,
    LockedOutError,
    RateLimitedError,
    ValidationError,
)
from mytgate.service.identity import IdentityHasher
from mytgate.service.metrics import Metrics
from mytgate.service.rate_limit import RateLimiter
from mytgate.service.sessions import ACCESS, Claims, SessionAuthority, TokenPair
from mytgate.service.upstream import VEHICLES_PATH, Credentials

logger = get_logger(__name__)


def extract_bearer(header: Optional[str]) -> str:
    if not header:
        raise AuthError(AuthErrorKind.MALFORMED)
    scheme, _, token = header.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise AuthError(AuthErrorKind.MALFORMED)
    return token


class Gateway:
    """Single entry point the HTTP layer calls for every auth decision.

    Sequences token verification, the per-identity rate gate and, for login
    and data routes, the upstream credential exchange. Every rejection is
    logged with the identity hash, the error kind and the elapsed time.
    """

    def __init__(
        self,
        sessions: SessionAuthority,
        rate_limiter: RateLimiter,
        credentials: CredentialExchange,
        hasher: IdentityHasher,
        *,
        metrics: Optional[Metrics] = None,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.credentials = credentials
        self.hasher = hasher
        self.metrics = metrics
        self._timer = timer

    def _count(self, name: str) -> None:
        if self.metrics is not None:
            self.metrics.increment(name)

    def _reject(
        self,
        operation: str,
        identity_hash: Optional[str],
        exc: GatewayError,
        started: float,
    ) -> None:
        self._count("errors")
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "request_rejected",
            operation=operation,
            identity_hash=identity_hash,
            error_kind=exc.kind,
            status_code=exc.status_code,
            elapsed_ms=round((self._timer() - started) * 1000, 2),
        )

    async def authorize(self, authorization_header: Optional[str]) -> Claims:
        """Verify a bearer access token and count the request against the quota."""
        started = self._timer()
        identity_hash: Optional[str] = None
        self._count("requests")
        try:
            claims = await self.sessions.verify(
                extract_bearer(authorization_header), ACCESS
            )
            identity_hash = claims.subject
            decision = await self.rate_limiter.check_and_count_request(identity_hash)
            if not decision.allowed:
                raise RateLimitedError(decision.retry_after)
            return claims
        except GatewayError as exc:
            self._reject("authorize", identity_hash, exc, started)
            raise

    async def login(self, username: str, password: str) -> TokenPair:
        started = self._timer()
        try:
            credentials = Credentials(username=username, password=password)
        except PydanticValidationError:
            exc = ValidationError("a valid username and password are required")
            self._reject("login", None, exc, started)
            raise exc from None

        identity_hash = self.hasher.hash(credentials.username)
        self._count("login_attempts")
        try:
            locked, remaining = await self.rate_limiter.is_locked_out(identity_hash)
            if locked:
                raise LockedOutError(remaining)
            try:
                # always re-authenticate upstream so a cached token never
                # stands in for a password check
                await self.credentials.get_or_refresh(
                    identity_hash, credentials, force_login=True
                )
            except AuthError as exc:
                if exc.auth_kind == AuthErrorKind.INVALID_CREDENTIALS:
                    self._count("login_failures")
                    await self.rate_limiter.record_login_failure(identity_hash)
                raise
            await self.rate_limiter.record_login_success(identity_hash)
            pair = await self.sessions.issue(identity_hash)
        except GatewayError as exc:
            self._reject("login", identity_hash, exc, started)
            raise
        logger.info(
            "login_succeeded",
            identity_hash=identity_hash,
            elapsed_ms=round((self._timer() - started) * 1000, 2),
        )
        return pair

    async def refresh(self, refresh_token: str) -> TokenPair:
        started = self._timer()
        try:
            return await self.sessions.refresh(refresh_token)
        except GatewayError as exc:
            self._reject("refresh", None, exc, started)
            raise

    async def logout(self, authorization_header: Optional[str]) -> None:
        started = self._timer()
        identity_hash: Optional[str] = None
        try:
            claims = await self.sessions.verify(
                extract_bearer(authorization_header), ACCESS
            )
            identity_hash = claims.subject
            await self.sessions.revoke_session(claims)
        except GatewayError as exc:
            self._reject("logout", identity_hash, exc, started)
            raise

    async def fetch(self, claims: Claims, path: str) -> Any:
        """Fetch raw upstream JSON for an authorized caller."""
        started = self._timer()
        upstream = self.credentials.upstream
        try:
            return await self.credentials.execute(
                claims.subject, lambda token: upstream.get_json(path, token)
            )
        except GatewayError as exc:
            self._reject("fetch", claims.subject, exc, started)
            raise

    async def vehicles(self, claims: Claims) -> Any:
        return await self.fetch(claims, VEHICLES_PATH)
