"""Upstream token cache, refresh and retry behaviour."""

import pytest

from conftest import GOOD_PASSWORD, GOOD_USER, IDENTITY_KEY, permanent, transient
from mytgate.service.circuit_breaker import CircuitBreaker, CircuitState
from mytgate.service.credentials import CredentialExchange
from mytgate.service.errors import (
    AuthError,
    AuthErrorKind,
    CircuitOpenError,
    UpstreamError,
)
from mytgate.service.identity import IdentityHasher
from mytgate.service.metrics import Metrics
from mytgate.service.upstream import Credentials

HASHER = IdentityHasher(IDENTITY_KEY)
IDENTITY = HASHER.hash(GOOD_USER)
CREDS = Credentials(username=GOOD_USER, password=GOOD_PASSWORD)


@pytest.fixture
def metrics():
    return Metrics()


@pytest.fixture
def breaker(clock, metrics):
    return CircuitBreaker("myt", metrics=metrics, clock=clock)


@pytest.fixture
def exchange(store, upstream, breaker, metrics, clock):
    return CredentialExchange(
        store,
        upstream,
        breaker,
        HASHER.cipher("upstream-token-cache"),
        cache_ttl_seconds=3600,
        metrics=metrics,
        clock=clock,
    )


class TestGetOrRefresh:
    async def test_miss_without_credentials_needs_login(self, exchange, upstream, metrics):
        with pytest.raises(AuthError) as excinfo:
            await exchange.get_or_refresh(IDENTITY)
        assert excinfo.value.auth_kind == AuthErrorKind.EXPIRED
        assert upstream.login_calls == 0
        assert metrics.get("cache_misses") == 1

    async def test_cached_token_is_reused(self, exchange, upstream, clock, metrics):
        first = await exchange.get_or_refresh(IDENTITY, CREDS)
        clock.advance(120)
        second = await exchange.get_or_refresh(IDENTITY)
        assert second.access_token == first.access_token
        assert second.last_used_at == clock()
        assert upstream.login_calls == 1
        assert metrics.get("cache_hits") == 1
        assert metrics.get("upstream_logins") == 1

    async def test_force_login_skips_cache(self, exchange, upstream):
        await exchange.get_or_refresh(IDENTITY, CREDS)
        token = await exchange.get_or_refresh(IDENTITY, CREDS, force_login=True)
        assert upstream.login_calls == 2
        assert token.access_token == "upstream-access-2"

    async def test_idle_entry_is_evicted(self, exchange, upstream, clock):
        await exchange.get_or_refresh(IDENTITY, CREDS)
        clock.advance(3600)
        with pytest.raises(AuthError):
            await exchange.get_or_refresh(IDENTITY)
        await exchange.get_or_refresh(IDENTITY, CREDS)
        assert upstream.login_calls == 2

    async def test_use_extends_idle_window(self, exchange, upstream, clock):
        upstream.expires_in = 7200
        await exchange.get_or_refresh(IDENTITY, CREDS)
        for _ in range(3):
            clock.advance(3000)
            await exchange.get_or_refresh(IDENTITY)
        assert upstream.login_calls == 1

    async def test_expired_token_is_refreshed(self, exchange, upstream, clock, metrics):
        upstream.expires_in = 600
        await exchange.get_or_refresh(IDENTITY, CREDS)
        clock.advance(600)
        token = await exchange.get_or_refresh(IDENTITY)
        assert token.access_token == "upstream-access-2"
        assert upstream.refresh_calls == 1
        assert upstream.login_calls == 1
        assert metrics.get("upstream_refreshes") == 1

    async def test_refresh_within_margin(self, exchange, upstream, clock):
        upstream.expires_in = 600
        await exchange.get_or_refresh(IDENTITY, CREDS)
        clock.advance(580)
        await exchange.get_or_refresh(IDENTITY)
        assert upstream.refresh_calls == 1

    async def test_rejected_refresh_falls_back_to_login(self, exchange, upstream, clock):
        upstream.expires_in = 600
        await exchange.get_or_refresh(IDENTITY, CREDS)
        clock.advance(600)
        upstream.fail_next(permanent(400))
        token = await exchange.get_or_refresh(IDENTITY, CREDS)
        assert upstream.login_calls == 2
        assert token.access_token == "upstream-access-2"

    async def test_rejected_refresh_without_credentials(self, exchange, upstream, store, clock):
        upstream.expires_in = 600
        await exchange.get_or_refresh(IDENTITY, CREDS)
        clock.advance(600)
        upstream.fail_next(permanent(400))
        with pytest.raises(AuthError) as excinfo:
            await exchange.get_or_refresh(IDENTITY)
        assert excinfo.value.auth_kind == AuthErrorKind.EXPIRED
        assert await store.get(f"upstream:token:{IDENTITY}") is None

    async def test_transient_refresh_failure_keeps_entry(self, exchange, upstream, store, clock):
        upstream.expires_in = 600
        await exchange.get_or_refresh(IDENTITY, CREDS)
        clock.advance(600)
        upstream.fail_next(transient(502))
        with pytest.raises(UpstreamError) as excinfo:
            await exchange.get_or_refresh(IDENTITY, CREDS)
        assert excinfo.value.is_transient
        assert upstream.login_calls == 1
        assert await store.get(f"upstream:token:{IDENTITY}") is not None

    async def test_entry_is_encrypted(self, exchange, store):
        await exchange.get_or_refresh(IDENTITY, CREDS)
        raw = await store.get(f"upstream:token:{IDENTITY}")
        assert "upstream-access-1" not in raw
        assert "upstream-refresh-1" not in raw

    async def test_unreadable_entry_is_dropped(self, exchange, store, upstream):
        await store.set(f"upstream:token:{IDENTITY}", "garbage", ttl=60)
        await exchange.get_or_refresh(IDENTITY, CREDS)
        assert upstream.login_calls == 1

    async def test_invalid_password_propagates(self, exchange, upstream, breaker):
        with pytest.raises(AuthError) as excinfo:
            await exchange.get_or_refresh(
                IDENTITY, Credentials(username=GOOD_USER, password="wrong")
            )
        assert excinfo.value.auth_kind == AuthErrorKind.INVALID_CREDENTIALS
        assert breaker.state == CircuitState.CLOSED


class TestCircuitInterplay:
    async def test_open_circuit_stops_upstream_calls(self, exchange, upstream, breaker, clock):
        for _ in range(5):
            upstream.fail_next(transient())
            with pytest.raises(UpstreamError):
                await exchange.get_or_refresh(IDENTITY, CREDS)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            await exchange.get_or_refresh(IDENTITY, CREDS)
        assert upstream.login_calls == 5

        clock.advance(60)
        await exchange.get_or_refresh(IDENTITY, CREDS)
        assert breaker.state == CircuitState.HALF_OPEN
        await exchange.get_or_refresh(IDENTITY, CREDS, force_login=True)
        assert breaker.state == CircuitState.CLOSED


class TestExecute:
    async def _fetch(self, exchange, upstream, credentials=None):
        return await exchange.execute(
            IDENTITY,
            lambda token: upstream.get_json("/api/user/v1/vehicles", token),
            credentials,
        )

    async def test_returns_upstream_payload(self, exchange, upstream):
        await exchange.get_or_refresh(IDENTITY, CREDS)
        assert await self._fetch(exchange, upstream) == upstream.vehicles

    async def test_transient_failure_retried_once(self, exchange, upstream):
        await exchange.get_or_refresh(IDENTITY, CREDS)
        upstream.fail_next(transient(503))
        assert await self._fetch(exchange, upstream) == upstream.vehicles
        assert upstream.data_calls == 2

    async def test_second_transient_failure_propagates(self, exchange, upstream):
        await exchange.get_or_refresh(IDENTITY, CREDS)
        upstream.fail_next(transient(503), transient(504))
        with pytest.raises(UpstreamError):
            await self._fetch(exchange, upstream)
        assert upstream.data_calls == 2

    async def test_permanent_failure_not_retried(self, exchange, upstream):
        await exchange.get_or_refresh(IDENTITY, CREDS)
        upstream.fail_next(permanent(404))
        with pytest.raises(UpstreamError) as excinfo:
            await self._fetch(exchange, upstream)
        assert excinfo.value.upstream_status == 404
        assert upstream.data_calls == 1

    async def test_upstream_401_invalidates_entry(self, exchange, upstream, store):
        await exchange.get_or_refresh(IDENTITY, CREDS)
        upstream.fail_next(permanent(401))
        with pytest.raises(AuthError) as excinfo:
            await self._fetch(exchange, upstream)
        assert excinfo.value.auth_kind == AuthErrorKind.EXPIRED
        assert await store.get(f"upstream:token:{IDENTITY}") is None

    async def test_upstream_401_relogs_in_with_credentials(self, exchange, upstream):
        await exchange.get_or_refresh(IDENTITY, CREDS)
        upstream.fail_next(permanent(401))
        assert await self._fetch(exchange, upstream, CREDS) == upstream.vehicles
        assert upstream.login_calls == 2
