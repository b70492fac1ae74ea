"""MyT client against a mocked HTTP transport."""

import base64
import json
from urllib.parse import parse_qs

import httpx
import pytest
from pydantic import ValidationError

from mytgate.service.errors import (
    AuthError,
    AuthErrorKind,
    UpstreamError,
    UpstreamErrorKind,
)
from mytgate.service.upstream import (
    Credentials,
    MyTClient,
    UpstreamToken,
    classify_status,
    customer_uuid_from_id_token,
)

AUTH_BASE = "https://login.example.com"
API_BASE = "https://api.example.com"
REDIRECT = "https://app.example.com/callback"
CREDS = Credentials(username="driver@example.com", password="secret-pass")


def _id_token(claims: dict) -> str:
    body = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"eyJhbGciOiJSUzI1NiJ9.{body}.sig"


class FakeMyT:
    """Scripted MyT identity and API endpoints."""

    def __init__(self, password: str = "secret-pass") -> None:
        self.password = password
        self.requests = []
        self.overrides = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.overrides:
            return self.overrides[path](request)
        if path.endswith("/authenticate"):
            body = json.loads(request.content or b"{}")
            if not body:
                return httpx.Response(
                    200,
                    json={
                        "authId": "auth-1",
                        "callbacks": [
                            {"type": "NameCallback", "input": [{"name": "IDToken1", "value": ""}]},
                            {
                                "type": "PasswordCallback",
                                "input": [{"name": "IDToken2", "value": ""}],
                            },
                        ],
                    },
                )
            answers = {cb["type"]: cb["input"][0]["value"] for cb in body["callbacks"]}
            if answers.get("PasswordCallback") != self.password:
                return httpx.Response(401, json={"code": 401, "message": "Login failure"})
            return httpx.Response(200, json={"tokenId": "sso-token", "successUrl": "/"})
        if path.endswith("/authorize"):
            if "iPlanetDirectoryPro=sso-token" not in request.headers.get("cookie", ""):
                return httpx.Response(401)
            return httpx.Response(302, headers={"Location": f"{REDIRECT}?code=code-123"})
        if path == "/auth/oauth2/token":
            form = parse_qs(request.content.decode())
            if form["grant_type"] == ["authorization_code"] and form["code"] != ["code-123"]:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(
                200,
                json={
                    "access_token": "myt-access",
                    "refresh_token": "myt-refresh",
                    "expires_in": 3599,
                    "token_type": "Bearer",
                    "id_token": _id_token({"uuid": "cust-42"}),
                },
            )
        if path == "/api/user/v1/vehicles":
            return httpx.Response(200, json={"payload": [{"vin": "VIN1"}]})
        return httpx.Response(404)


@pytest.fixture
def myt():
    return FakeMyT()


@pytest.fixture
def client(myt):
    return MyTClient(
        auth_base_url=AUTH_BASE + "/",
        api_base_url=API_BASE,
        client_id="oneapp",
        redirect_uri=REDIRECT,
        api_key="api-key-1",
        transport=httpx.MockTransport(myt),
    )


def _token(**overrides) -> UpstreamToken:
    fields = dict(
        access_token="myt-access",
        refresh_token="myt-refresh",
        expires_at=0.0,
        last_used_at=0.0,
        uuid="cust-42",
    )
    fields.update(overrides)
    return UpstreamToken(**fields)


class TestLogin:
    async def test_full_flow(self, client, myt):
        grant = await client.login(CREDS)
        assert grant.access_token == "myt-access"
        assert grant.expires_in == 3599
        assert customer_uuid_from_id_token(grant.id_token) == "cust-42"
        steps = [(r.method, r.url.path) for r in myt.requests]
        assert steps == [
            ("POST", "/json/realms/root/realms/tme/authenticate"),
            ("POST", "/json/realms/root/realms/tme/authenticate"),
            ("GET", "/oauth2/realms/root/realms/tme/authorize"),
            ("POST", "/auth/oauth2/token"),
        ]
        token_form = parse_qs(myt.requests[-1].content.decode())
        assert token_form["client_id"] == ["oneapp"]
        assert token_form["redirect_uri"] == [REDIRECT]

    async def test_bad_password(self, client):
        with pytest.raises(AuthError) as excinfo:
            await client.login(CREDS.model_copy(update={"password": "nope"}))
        assert excinfo.value.auth_kind == AuthErrorKind.INVALID_CREDENTIALS

    async def test_server_error_is_transient(self, client, myt):
        myt.overrides["/json/realms/root/realms/tme/authenticate"] = (
            lambda request: httpx.Response(503)
        )
        with pytest.raises(UpstreamError) as excinfo:
            await client.login(CREDS)
        assert excinfo.value.kind == UpstreamErrorKind.TRANSIENT.value
        assert excinfo.value.upstream_status == 503

    async def test_unexpected_challenge_is_permanent(self, client, myt):
        myt.overrides["/json/realms/root/realms/tme/authenticate"] = (
            lambda request: httpx.Response(200, json={"authId": "a", "callbacks": []})
        )
        with pytest.raises(UpstreamError) as excinfo:
            await client.login(CREDS)
        assert not excinfo.value.is_transient

    async def test_authorize_without_redirect(self, client, myt):
        myt.overrides["/oauth2/realms/root/realms/tme/authorize"] = (
            lambda request: httpx.Response(200, json={})
        )
        with pytest.raises(UpstreamError) as excinfo:
            await client.login(CREDS)
        assert excinfo.value.upstream_status == 200
        assert not excinfo.value.is_transient

    async def test_malformed_token_payload(self, client, myt):
        myt.overrides["/auth/oauth2/token"] = lambda request: httpx.Response(
            200, json={"access_token": "x"}
        )
        with pytest.raises(UpstreamError) as excinfo:
            await client.login(CREDS)
        assert not excinfo.value.is_transient

    async def test_connection_error_is_transient(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = MyTClient(
            auth_base_url=AUTH_BASE,
            api_base_url=API_BASE,
            client_id="oneapp",
            redirect_uri=REDIRECT,
            transport=httpx.MockTransport(refuse),
        )
        with pytest.raises(UpstreamError) as excinfo:
            await client.login(CREDS)
        assert excinfo.value.is_transient
        assert excinfo.value.status_code == 503


class TestRefresh:
    async def test_refresh_grant(self, client, myt):
        grant = await client.refresh("myt-refresh")
        assert grant.refresh_token == "myt-refresh"
        form = parse_qs(myt.requests[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["myt-refresh"]

    async def test_rejected_refresh_is_permanent(self, client, myt):
        myt.overrides["/auth/oauth2/token"] = lambda request: httpx.Response(
            400, json={"error": "invalid_grant"}
        )
        with pytest.raises(UpstreamError) as excinfo:
            await client.refresh("stale")
        assert not excinfo.value.is_transient
        assert excinfo.value.status_code == 502

    async def test_throttled_refresh_is_transient(self, client, myt):
        myt.overrides["/auth/oauth2/token"] = lambda request: httpx.Response(429)
        with pytest.raises(UpstreamError) as excinfo:
            await client.refresh("myt-refresh")
        assert excinfo.value.is_transient


class TestData:
    async def test_headers_sent(self, client, myt):
        payload = await client.get_json("/api/user/v1/vehicles", _token())
        assert payload == {"payload": [{"vin": "VIN1"}]}
        request = myt.requests[0]
        assert request.url.host == "api.example.com"
        assert request.headers["authorization"] == "Bearer myt-access"
        assert request.headers["x-guid"] == "cust-42"
        assert request.headers["x-api-key"] == "api-key-1"

    async def test_upstream_401_surfaces_status(self, client, myt):
        myt.overrides["/api/user/v1/vehicles"] = lambda request: httpx.Response(401)
        with pytest.raises(UpstreamError) as excinfo:
            await client.get_json("/api/user/v1/vehicles", _token())
        assert excinfo.value.upstream_status == 401

    async def test_non_json_body(self, client, myt):
        myt.overrides["/api/user/v1/vehicles"] = lambda request: httpx.Response(
            200, text="<html>maintenance</html>"
        )
        with pytest.raises(UpstreamError) as excinfo:
            await client.get_json("/api/user/v1/vehicles", _token())
        assert not excinfo.value.is_transient


class TestHelpers:
    @pytest.mark.parametrize(
        "status,kind",
        [
            (400, UpstreamErrorKind.PERMANENT),
            (401, UpstreamErrorKind.PERMANENT),
            (404, UpstreamErrorKind.PERMANENT),
            (429, UpstreamErrorKind.TRANSIENT),
            (500, UpstreamErrorKind.TRANSIENT),
            (504, UpstreamErrorKind.TRANSIENT),
        ],
    )
    def test_classify_status(self, status, kind):
        assert classify_status(status) == kind

    def test_uuid_from_id_token(self):
        assert customer_uuid_from_id_token(_id_token({"uuid": "abc"})) == "abc"
        assert customer_uuid_from_id_token(_id_token({"sub": "x"})) is None
        assert customer_uuid_from_id_token("not-a-jwt") is None
        assert customer_uuid_from_id_token(None) is None

    @pytest.mark.parametrize(
        "username", ["driver", "driver@", "@example.com", "driver@localhost", "dri ver@example.com"]
    )
    def test_credentials_require_email_username(self, username):
        with pytest.raises(ValidationError):
            Credentials(username=username, password="secret-pass")

    def test_credentials_strip_username(self):
        creds = Credentials(username="  Driver@Example.com ", password="secret-pass")
        assert creds.username == "Driver@Example.com"
