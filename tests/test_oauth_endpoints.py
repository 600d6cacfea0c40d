try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover
    import _bootstrap  # type: ignore # noqa: F401

from types import SimpleNamespace
from typing import Optional
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from oauth_proxy.clients.google_auth import (
    GoogleOAuthClient,
    OAuthTokenExchangeError,
    TokenGrant,
    UserInfo,
)
from oauth_proxy.core.config import GoogleSettings, OAuthSettings
from oauth_proxy.main import app
from oauth_proxy.services import pkce
from oauth_proxy.services.credential_store import CredentialStore
from oauth_proxy.services.idempotency import IdempotencyService
from oauth_proxy.services.proxy_tokens import HashSecret, ProxyTokenService

CLIENT_ID = "mcp1-oauth-client"
CLIENT_SECRET = "test-proxy-secret"
AGENT_REDIRECT = "https://chatgpt.com/aip/g-abc123/oauth/callback"


class DummyOAuthClient:
    token_url = "https://oauth.example.com/token"

    def __init__(self) -> None:
        self.states: list[str] = []
        self.challenges: list[str] = []
        self.exchanges: list[tuple[str, Optional[str]]] = []
        self.reject_pkce = False

    def build_authorization_url(self, state: str, code_challenge: str) -> str:
        self.states.append(state)
        self.challenges.append(code_challenge)
        return f"https://oauth.example.com/auth?state={state}"

    async def exchange_authorization_code(
        self, code: str, code_verifier: Optional[str] = None
    ) -> TokenGrant:
        self.exchanges.append((code, code_verifier))
        if code_verifier and self.reject_pkce:
            raise OAuthTokenExchangeError(
                "Invalid code verifier.",
                status_code=400,
                error_code="invalid_request",
                description="Invalid code verifier.",
            )
        return TokenGrant(
            access_token="google-access", refresh_token="google-refresh", expires_in=3599
        )

    async def fetch_user_info(self, access_token: str) -> UserInfo:
        return UserInfo(subject_id="google-sub-1", email="user@example.com")


@pytest.fixture()
def proxy(sqlite_store, token_cipher):
    from oauth_proxy import dependencies

    oauth_client = DummyOAuthClient()
    credential_store = CredentialStore(sqlite_store, token_cipher)
    proxy_tokens = ProxyTokenService(sqlite_store, [HashSecret("primary", "hash-secret")])
    idempotency = IdempotencyService(sqlite_store)

    app.dependency_overrides.update(
        {
            dependencies.get_google_oauth_client: lambda: oauth_client,
            dependencies.get_credential_store: lambda: credential_store,
            dependencies.get_proxy_token_service: lambda: proxy_tokens,
            dependencies.get_idempotency_service: lambda: idempotency,
        }
    )

    yield SimpleNamespace(
        oauth_client=oauth_client,
        credential_store=credential_store,
        proxy_tokens=proxy_tokens,
    )

    app.dependency_overrides.clear()


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    )


async def _authorize(client: httpx.AsyncClient, **params) -> httpx.Response:
    query = {
        "client_id": CLIENT_ID,
        "redirect_uri": AGENT_REDIRECT,
        "state": "agent-state",
        "response_type": "code",
    }
    query.update(params)
    return await client.get("/oauth/authorize", params=query)


async def _bridge_code(client: httpx.AsyncClient, proxy) -> str:
    await _authorize(client)
    callback = await client.get(
        "/oauth/callback",
        params={"code": "google-code", "state": proxy.oauth_client.states[-1]},
    )
    assert callback.status_code == 302
    return parse_qs(urlparse(callback.headers["location"]).query)["code"][0]


async def _token(client: httpx.AsyncClient, code: str, **overrides) -> httpx.Response:
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": CLIENT_ID,
        "client_secret": CLIENT_SECRET,
        "redirect_uri": AGENT_REDIRECT,
    }
    data.update(overrides)
    return await client.post("/oauth/token", data=data)


@pytest.mark.anyio
async def test_health() -> None:
    async with _client() as client:
        response = await client.get("/health")
    assert response.json() == {"status": "ok"}


@pytest.mark.anyio
async def test_full_authorization_hop_issues_proxy_token(proxy) -> None:
    async with _client() as client:
        authorize = await _authorize(client)
        assert authorize.status_code == 302
        assert authorize.headers["location"].startswith("https://oauth.example.com/auth")

        callback = await client.get(
            "/oauth/callback",
            params={"code": "google-code", "state": proxy.oauth_client.states[-1]},
        )
        location = urlparse(callback.headers["location"])
        query = parse_qs(location.query)
        assert callback.status_code == 302
        assert f"{location.scheme}://{location.netloc}{location.path}" == AGENT_REDIRECT
        assert query["state"] == ["agent-state"]

        token = await _token(client, query["code"][0])
        body = token.json()
        assert token.status_code == 200
        assert token.headers["cache-control"] == "no-store"
        assert body["token_type"] == "bearer"
        assert body["expires_in"] == 2_592_000

        status = await client.get(
            "/api/auth/status",
            headers={"Authorization": f"Bearer {body['access_token']}"},
        )

    code, verifier = proxy.oauth_client.exchanges[-1]
    assert code == "google-code"
    assert pkce.verify(verifier, proxy.oauth_client.challenges[-1])

    tokens = proxy.credential_store.get_tokens("google-sub-1")
    assert tokens.access_token == "google-access"
    assert tokens.refresh_token == "google-refresh"

    assert status.status_code == 200
    assert status.json()["subjectId"] == "google-sub-1"
    assert status.json()["email"] == "user@example.com"
    assert status.json()["refreshTokenRevoked"] is False


@pytest.mark.anyio
async def test_authorize_rejects_unregistered_redirect(proxy) -> None:
    async with _client() as client:
        response = await _authorize(
            client, redirect_uri="https://evil.example.com/aip/g-abc123/oauth/callback"
        )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_REDIRECT_URI"
    assert proxy.oauth_client.states == []


@pytest.mark.anyio
async def test_authorize_rejects_unknown_client(proxy) -> None:
    async with _client() as client:
        response = await _authorize(client, client_id="someone-else")

    assert response.status_code == 401
    assert response.json()["error"] == "invalid_client"


@pytest.mark.anyio
async def test_callback_falls_back_when_provider_rejects_pkce(proxy) -> None:
    proxy.oauth_client.reject_pkce = True
    async with _client() as client:
        code = await _bridge_code(client, proxy)

    assert code
    assert [verifier is None for _, verifier in proxy.oauth_client.exchanges] == [False, True]


@pytest.mark.anyio
async def test_callback_rejects_tampered_state_and_provider_errors(proxy) -> None:
    async with _client() as client:
        tampered = await client.get(
            "/oauth/callback", params={"code": "google-code", "state": "not-a-state"}
        )
        denied = await client.get("/oauth/callback", params={"error": "access_denied"})

    assert tampered.status_code == 400
    assert tampered.json()["code"] == "INVALID_STATE"
    assert denied.status_code == 400
    assert denied.json()["code"] == "AUTHORIZATION_DENIED"
    assert proxy.oauth_client.exchanges == []


@pytest.mark.anyio
async def test_token_endpoint_validation_order(proxy) -> None:
    async with _client() as client:
        code = await _bridge_code(client, proxy)

        unsupported = await _token(client, code, grant_type="client_credentials")
        bad_client = await _token(client, code, client_secret="wrong")
        missing_code = await _token(client, "")
        mismatch = await _token(
            client, code, redirect_uri="https://chatgpt.com/aip/g-other/oauth/callback"
        )
        reused = await _token(client, code)

    assert unsupported.status_code == 400
    assert unsupported.json()["error"] == "unsupported_grant_type"
    assert bad_client.status_code == 401
    assert bad_client.json()["error"] == "invalid_client"
    assert missing_code.status_code == 400
    assert missing_code.json()["error"] == "invalid_request"
    assert mismatch.status_code == 400
    assert mismatch.json()["error"] == "invalid_grant"
    # The mismatched attempt already consumed the single-use code.
    assert reused.status_code == 400
    assert reused.json()["requiresReauth"] is True


@pytest.mark.anyio
async def test_token_endpoint_accepts_basic_auth_and_json(proxy) -> None:
    async with _client() as client:
        code = await _bridge_code(client, proxy)
        response = await client.post(
            "/oauth/token",
            json={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": AGENT_REDIRECT,
            },
            auth=(CLIENT_ID, CLIENT_SECRET),
        )

    assert response.status_code == 200
    assert proxy.proxy_tokens.resolve_proxy_token(response.json()["access_token"]) == (
        "google-sub-1"
    )


@pytest.mark.anyio
async def test_non_ascii_client_credentials_are_rejected_as_invalid_client(proxy) -> None:
    async with _client() as client:
        authorize = await _authorize(client, client_id="clé")
        code = await _bridge_code(client, proxy)
        bad_secret = await _token(client, code, client_secret="sécret")
        non_string = await client.post(
            "/oauth/token",
            json={
                "grant_type": "authorization_code",
                "code": code,
                "client_id": 123,
                "client_secret": CLIENT_SECRET,
                "redirect_uri": AGENT_REDIRECT,
            },
        )

    assert authorize.status_code == 401
    assert authorize.json()["error"] == "invalid_client"
    assert bad_secret.status_code == 401
    assert bad_secret.json()["error"] == "invalid_client"
    assert non_string.status_code == 401
    assert non_string.json()["error"] == "invalid_client"


def _google_client(userinfo: dict, token: dict) -> GoogleOAuthClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json=token)
        return httpx.Response(200, json=userinfo)

    settings = GoogleSettings(
        GOOGLE_CLIENT_ID="client",
        GOOGLE_CLIENT_SECRET="secret",
        GOOGLE_REDIRECT_URI="https://proxy.example.com/oauth/callback",
    )
    return GoogleOAuthClient(settings, OAuthSettings(), transport=httpx.MockTransport(handler))


async def _callback_with(google_client: GoogleOAuthClient) -> httpx.Response:
    from oauth_proxy import dependencies

    app.dependency_overrides[dependencies.get_google_oauth_client] = lambda: google_client
    async with _client() as client:
        authorize = await _authorize(client)
        state = parse_qs(urlparse(authorize.headers["location"]).query)["state"][0]
        return await client.get(
            "/oauth/callback", params={"code": "google-code", "state": state}
        )


@pytest.mark.anyio
async def test_callback_without_refresh_token_requires_consent_again(proxy) -> None:
    response = await _callback_with(
        _google_client(
            userinfo={"id": "google-sub-2"},
            token={"access_token": "a", "expires_in": 3599},
        )
    )

    body = response.json()
    assert response.status_code == 400
    assert body["code"] == "MISSING_REFRESH_TOKEN"
    assert body["requiresReauth"] is True
    assert proxy.credential_store.get_record("google-sub-2") is None


@pytest.mark.anyio
async def test_callback_without_subject_requires_consent_again(proxy) -> None:
    response = await _callback_with(
        _google_client(
            userinfo={"email": "user@example.com"},
            token={"access_token": "a", "refresh_token": "r", "expires_in": 3599},
        )
    )

    body = response.json()
    assert response.status_code == 400
    assert body["code"] == "MISSING_SUBJECT"
    assert body["requiresReauth"] is True
