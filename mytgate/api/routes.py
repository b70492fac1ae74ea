from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header

from mytgate.api.schemas import (
    HealthResponse,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    RefreshRequest,
    RefreshResponse,
    SessionResponse,
)
from mytgate.service.circuit_breaker import CircuitState
from mytgate.service.runtime import get_runtime
from mytgate.service.sessions import Claims

router = APIRouter()


async def get_claims(authorization: Optional[str] = Header(None)) -> Claims:
    """Resolve the caller through the gateway's single authorize entry point."""
    runtime = get_runtime()
    return await runtime.gateway.authorize(authorization)


@router.post("/auth/login", response_model=LoginResponse, tags=["auth"])
async def login(body: LoginRequest) -> LoginResponse:
    """Log in against the upstream and issue a gateway token pair.

    Raises:
        401: invalid credentials
        429: identity locked out after repeated failures
        503: upstream unavailable or circuit open
    """
    runtime = get_runtime()
    pair = await runtime.gateway.login(body.username, body.password)
    return LoginResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
    )


@router.post("/auth/refresh", response_model=RefreshResponse, tags=["auth"])
async def refresh(body: RefreshRequest) -> RefreshResponse:
    runtime = get_runtime()
    pair = await runtime.gateway.refresh(body.refresh_token)
    return RefreshResponse(
        access_token=pair.access_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
    )


@router.post("/auth/logout", response_model=LogoutResponse, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)) -> LogoutResponse:
    runtime = get_runtime()
    await runtime.gateway.logout(authorization)
    return LogoutResponse()


@router.get("/auth/session", response_model=SessionResponse, tags=["auth"])
async def current_session(claims: Claims = Depends(get_claims)) -> SessionResponse:
    return SessionResponse(**claims.to_public())


@router.get("/vehicles", tags=["vehicles"])
async def vehicles(claims: Claims = Depends(get_claims)) -> Any:
    """Upstream vehicle list, passed through untouched."""
    runtime = get_runtime()
    return await runtime.gateway.vehicles(claims)


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health() -> HealthResponse:
    runtime = get_runtime()
    state = runtime.breaker.state
    return HealthResponse(
        status="degraded" if state == CircuitState.OPEN else "ok",
        circuit=state.value,
    )
