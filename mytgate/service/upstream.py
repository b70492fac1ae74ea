from __future__ import annotations

import base64
import json
import re
from typing import Any, List, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mytgate.logging import get_logger
from mytgate.service.errors import (
    AuthError,
    AuthErrorKind,
    UpstreamError,
    UpstreamErrorKind,
)

logger = get_logger(__name__)

AUTHENTICATE_PATH = "/json/realms/root/realms/tme/authenticate"
AUTHORIZE_PATH = "/oauth2/realms/root/realms/tme/authorize"
TOKEN_PATH = "/auth/oauth2/token"
VEHICLES_PATH = "/api/user/v1/vehicles"
SSO_COOKIE = "iPlanetDirectoryPro"
MAX_CREDENTIAL_LENGTH = 256


class _CallbackField(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    value: Any = ""


class _Callback(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    output: List[_CallbackField] = Field(default_factory=list)
    input: List[_CallbackField] = Field(default_factory=list)


class _AuthChallenge(BaseModel):
    model_config = ConfigDict(extra="ignore")

    authId: str
    callbacks: List[_Callback] = Field(default_factory=list)


class _AuthSuccess(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tokenId: str


class TokenGrant(BaseModel):
    """Token endpoint response."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)
    expires_in: int = Field(..., gt=0)
    token_type: str = "Bearer"
    id_token: Optional[str] = None


class UpstreamToken(BaseModel):
    """Cached upstream credential for one identity. Never sent downstream."""

    access_token: str
    refresh_token: str
    expires_at: float
    last_used_at: float
    token_type: str = "Bearer"
    uuid: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def validate_username(value: str) -> str:
    """MyT account names are email addresses; reject anything else before
    it reaches the upstream or the lockout counters."""
    value = value.strip()
    if not value:
        raise ValueError("username must not be blank")
    local, sep, domain = value.partition("@")
    if not sep or not local or not domain:
        raise ValueError("username must be an email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("username must be an email address")
    labels = domain.split(".")
    if len(labels) < 2 or not all(_EMAIL_DOMAIN_LABEL.match(label) for label in labels):
        raise ValueError("username must be an email address")
    return value


class Credentials(BaseModel):
    username: str = Field(..., min_length=1, max_length=MAX_CREDENTIAL_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_CREDENTIAL_LENGTH)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return validate_username(value)


class UpstreamClient(Protocol):
    async def login(self, credentials: Credentials) -> TokenGrant: ...

    async def refresh(self, refresh_token: str) -> TokenGrant: ...

    async def get_json(self, path: str, token: UpstreamToken) -> Any: ...


def customer_uuid_from_id_token(id_token: Optional[str]) -> Optional[str]:
    """Read the ``uuid`` claim from an id_token without verifying it.

    The token comes straight from the upstream over TLS; only the claim is
    needed for data calls.
    """
    if not id_token:
        return None
    parts = id_token.split(".")
    if len(parts) < 2:
        return None
    segment = parts[1] + "=" * ((4 - len(parts[1]) % 4) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment))
    except ValueError:
        logger.warning("upstream_id_token_unreadable")
        return None
    value = claims.get("uuid") if isinstance(claims, dict) else None
    return str(value) if value else None


def classify_status(status_code: int) -> UpstreamErrorKind:
    if status_code == 429 or status_code >= 500:
        return UpstreamErrorKind.TRANSIENT
    return UpstreamErrorKind.PERMANENT


def _raise_for_status(response: httpx.Response, step: str) -> None:
    if response.is_success:
        return
    kind = classify_status(response.status_code)
    logger.warning(
        "upstream_http_error",
        step=step,
        status_code=response.status_code,
        error_kind=kind.value,
    )
    raise UpstreamError(
        kind,
        f"upstream {step} failed with HTTP {response.status_code}",
        upstream_status=response.status_code,
    )


def _parse(model: type[BaseModel], response: httpx.Response, step: str) -> Any:
    try:
        return model.model_validate(response.json())
    except (ValueError, ValidationError) as exc:
        logger.warning("upstream_payload_invalid", step=step, error=str(exc)[:200])
        raise UpstreamError(
            UpstreamErrorKind.PERMANENT,
            f"unexpected upstream {step} payload",
            upstream_status=response.status_code,
        ) from exc


class MyTClient:
    """httpx client for the MyT identity and vehicle APIs.

    Login is the ForgeRock callback flow: start an authentication tree,
    answer the username/password callbacks to get an SSO token, trade it
    for an authorization code, then exchange the code for OAuth tokens.
    """

    def __init__(
        self,
        *,
        auth_base_url: str,
        api_base_url: str,
        client_id: str,
        redirect_uri: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.auth_base_url = auth_base_url.rstrip("/")
        self.api_base_url = api_base_url.rstrip("/")
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=False,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    async def _send(
        self, client: httpx.AsyncClient, step: str, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.warning(
                "upstream_transport_error",
                step=step,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise UpstreamError(
                UpstreamErrorKind.TRANSIENT, f"upstream {step} unreachable"
            ) from exc

    async def login(self, credentials: Credentials) -> TokenGrant:
        auth_url = f"{self.auth_base_url}{AUTHENTICATE_PATH}"
        async with self._client() as client:
            response = await self._send(client, "authenticate", "POST", auth_url, json={})
            _raise_for_status(response, "authenticate")
            challenge: _AuthChallenge = _parse(_AuthChallenge, response, "authenticate")

            answered = self._answer_callbacks(challenge, credentials)
            response = await self._send(
                client, "credentials", "POST", auth_url, json=answered
            )
            if response.status_code in (401, 403):
                raise AuthError(AuthErrorKind.INVALID_CREDENTIALS)
            _raise_for_status(response, "credentials")
            sso: _AuthSuccess = _parse(_AuthSuccess, response, "credentials")

            code = await self._authorize(client, sso.tokenId)
            response = await self._send(
                client,
                "token",
                "POST",
                f"{self.auth_base_url}{TOKEN_PATH}",
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": self.client_id,
                    "redirect_uri": self.redirect_uri,
                },
            )
            _raise_for_status(response, "token")
            return _parse(TokenGrant, response, "token")

    @staticmethod
    def _answer_callbacks(challenge: _AuthChallenge, credentials: Credentials) -> dict:
        answers = {
            "NameCallback": credentials.username,
            "PasswordCallback": credentials.password,
        }
        callbacks = []
        for callback in challenge.callbacks:
            value = answers.get(callback.type)
            if value is None or not callback.input:
                continue
            callbacks.append(
                {
                    "type": callback.type,
                    "input": [{"name": callback.input[0].name, "value": value}],
                }
            )
        if len(callbacks) != len(answers):
            raise UpstreamError(
                UpstreamErrorKind.PERMANENT,
                "upstream login did not ask for username and password",
            )
        return {"authId": challenge.authId, "callbacks": callbacks}

    async def _authorize(self, client: httpx.AsyncClient, sso_token: str) -> str:
        response = await self._send(
            client,
            "authorize",
            "GET",
            f"{self.auth_base_url}{AUTHORIZE_PATH}",
            params={
                "client_id": self.client_id,
                "scope": "openid profile write",
                "response_type": "code",
                "redirect_uri": self.redirect_uri,
            },
            headers={"Cookie": f"{SSO_COOKIE}={sso_token}"},
        )
        if response.status_code not in (301, 302, 303, 307):
            _raise_for_status(response, "authorize")
            raise UpstreamError(
                UpstreamErrorKind.PERMANENT,
                "upstream authorize did not redirect",
                upstream_status=response.status_code,
            )
        location = response.headers.get("location", "")
        code = httpx.URL(location).params.get("code") if location else None
        if not code:
            raise UpstreamError(
                UpstreamErrorKind.PERMANENT,
                "upstream authorize redirect carried no code",
                upstream_status=response.status_code,
            )
        return code

    async def refresh(self, refresh_token: str) -> TokenGrant:
        async with self._client() as client:
            response = await self._send(
                client,
                "refresh",
                "POST",
                f"{self.auth_base_url}{TOKEN_PATH}",
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.client_id,
                    "redirect_uri": self.redirect_uri,
                },
            )
            _raise_for_status(response, "refresh")
            return _parse(TokenGrant, response, "refresh")

    async def get_json(self, path: str, token: UpstreamToken) -> Any:
        headers = {"Authorization": f"Bearer {token.access_token}"}
        if token.uuid:
            headers["x-guid"] = token.uuid
        if self.api_key:
            headers["x-api-key"] = self.api_key
        async with self._client() as client:
            response = await self._send(
                client, "data", "GET", f"{self.api_base_url}{path}", headers=headers
            )
            _raise_for_status(response, "data")
            try:
                return response.json()
            except ValueError as exc:
                raise UpstreamError(
                    UpstreamErrorKind.PERMANENT,
                    "upstream returned a non-JSON body",
                    upstream_status=response.status_code,
                ) from exc
