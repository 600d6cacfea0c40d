from __future__ import annotations

try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover
    import _bootstrap  # type: ignore # noqa: F401

from datetime import timedelta

import pytest

from oauth_proxy.clients.google_auth import OAuthTokenExchangeError, TokenGrant
from oauth_proxy.core.config import GoogleSettings, OAuthSettings
from oauth_proxy.core.errors import (
    CredentialNotFoundError,
    ReauthRequiredError,
    UpstreamTransientError,
)
from oauth_proxy.services.google_tokens import ProviderTokenService


class DummyOAuthClient:
    token_url = "https://oauth.example/token"

    def __init__(self, *, error: Exception | None = None, rotated: str | None = None) -> None:
        self.error = error
        self.rotated = rotated
        self.calls: list[str] = []

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        self.calls.append(refresh_token)
        if self.error is not None:
            raise self.error
        return TokenGrant(
            access_token="refreshed-access", refresh_token=self.rotated, expires_in=3600
        )


def _service(credential_store, oauth_client, clock) -> ProviderTokenService:
    settings = GoogleSettings(
        GOOGLE_CLIENT_ID="client",
        GOOGLE_CLIENT_SECRET="secret",
        GOOGLE_REDIRECT_URI="https://example.com/callback",
    )
    return ProviderTokenService(
        credential_store, oauth_client, settings, OAuthSettings(), clock=clock
    )


def _seed(credential_store, clock, *, expires_in: timedelta) -> None:
    credential_store.save_credentials(
        subject_id="123",
        email="user@example.com",
        access_token="initial-token",
        refresh_token="refresh-token",
        token_expiry=clock() + expires_in,
    )


@pytest.mark.asyncio
async def test_get_credentials_refreshes_and_updates_storage(credential_store, clock) -> None:
    _seed(credential_store, clock, expires_in=timedelta(minutes=-1))
    oauth_client = DummyOAuthClient()

    credentials = await _service(credential_store, oauth_client, clock).get_credentials(
        subject_id="123"
    )

    assert credentials.token == "refreshed-access"
    assert credentials.refresh_token == "refresh-token"
    assert credentials.client_id == "client"
    assert oauth_client.calls == ["refresh-token"]

    stored = credential_store.get_tokens("123")
    assert stored.access_token == "refreshed-access"
    assert stored.token_expiry == clock() + timedelta(hours=1)
    assert credential_store.get_record("123").last_used_at == clock()


@pytest.mark.asyncio
async def test_get_credentials_within_buffer_refreshes(credential_store, clock) -> None:
    _seed(credential_store, clock, expires_in=timedelta(minutes=4))
    oauth_client = DummyOAuthClient(rotated="rotated-refresh")

    credentials = await _service(credential_store, oauth_client, clock).get_credentials(
        subject_id="123"
    )

    assert credentials.refresh_token == "rotated-refresh"
    assert credential_store.get_tokens("123").refresh_token == "rotated-refresh"


@pytest.mark.asyncio
async def test_get_credentials_uses_cached_token_when_valid(credential_store, clock) -> None:
    _seed(credential_store, clock, expires_in=timedelta(hours=1))
    oauth_client = DummyOAuthClient()

    credentials = await _service(credential_store, oauth_client, clock).get_credentials(
        subject_id="123"
    )

    assert credentials.token == "initial-token"
    assert credentials.expiry.tzinfo is None
    assert oauth_client.calls == []


@pytest.mark.asyncio
async def test_missing_credentials_raise_not_found(credential_store, clock) -> None:
    with pytest.raises(CredentialNotFoundError):
        await _service(credential_store, DummyOAuthClient(), clock).get_credentials(
            subject_id="unknown"
        )


@pytest.mark.asyncio
async def test_invalid_grant_marks_revoked_and_requires_reauth(credential_store, clock) -> None:
    _seed(credential_store, clock, expires_in=timedelta(minutes=-1))
    oauth_client = DummyOAuthClient(
        error=OAuthTokenExchangeError(
            "Token has been expired or revoked.", status_code=400, error_code="invalid_grant"
        )
    )
    service = _service(credential_store, oauth_client, clock)

    with pytest.raises(ReauthRequiredError) as exc_info:
        await service.get_credentials(subject_id="123")
    assert exc_info.value.to_response()["requiresReauth"] is True
    assert credential_store.get_record("123").refresh_token_revoked is True

    with pytest.raises(ReauthRequiredError):
        await service.get_credentials(subject_id="123")
    assert len(oauth_client.calls) == 1


@pytest.mark.asyncio
async def test_upstream_outage_is_transient(credential_store, clock) -> None:
    _seed(credential_store, clock, expires_in=timedelta(minutes=-1))
    oauth_client = DummyOAuthClient(
        error=OAuthTokenExchangeError("Backend error", status_code=503)
    )

    with pytest.raises(UpstreamTransientError):
        await _service(credential_store, oauth_client, clock).get_credentials(subject_id="123")

    record = credential_store.get_record("123")
    assert record.refresh_token_revoked is False
    assert record.last_refresh_error.status == 503
