"""
Google OAuth utilities.

These helpers manage the upstream authorization redirect, the code exchange,
token refresh, and identity lookup.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from oauth_proxy.core.config import GoogleSettings, OAuthSettings
from oauth_proxy.core.errors import InvalidRequestError
from oauth_proxy.utils.http import RetryConfig, request_with_retry


class OAuthStateEncoder:
    """Encode and decode OAuth state values to guard against tampering."""

    def __init__(self, secret_key: str) -> None:
        self._secret_key = secret_key.encode("utf-8")

    def encode(self, payload: Dict[str, Any]) -> str:
        serialized = json.dumps(payload, separators=(",", ":"), sort_keys=True)
        signature = hmac.new(self._secret_key, serialized.encode("utf-8"), sha256).digest()
        return (
            base64.urlsafe_b64encode(signature + serialized.encode("utf-8"))
            .decode("utf-8")
            .rstrip("=")
        )

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            padded = token + "=" * (-len(token) % 4)
            decoded = base64.urlsafe_b64decode(padded.encode("utf-8"))
        except (binascii.Error, ValueError) as exc:
            raise InvalidRequestError(
                "The state parameter is invalid or corrupted.", code="INVALID_STATE"
            ) from exc
        signature, serialized = decoded[:32], decoded[32:]
        expected_signature = hmac.new(self._secret_key, serialized, sha256).digest()
        if not hmac.compare_digest(signature, expected_signature):
            raise InvalidRequestError(
                "Invalid OAuth state signature.", code="INVALID_STATE"
            )
        return json.loads(serialized)


class OAuthTokenExchangeError(Exception):
    """Raised when the token endpoint returns an error."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.description = description

    @classmethod
    def from_response(cls, response: httpx.Response) -> "OAuthTokenExchangeError":
        error_code = None
        description = None
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            if isinstance(payload.get("error"), str):
                error_code = payload["error"]
            if isinstance(payload.get("error_description"), str):
                description = payload["error_description"]
        return cls(
            description or error_code or response.text or "Token endpoint error",
            status_code=response.status_code,
            error_code=error_code,
            description=description,
        )

    @property
    def is_invalid_grant(self) -> bool:
        """The grant itself (code or refresh token) is permanently invalid."""
        return self.error_code == "invalid_grant"

    @property
    def is_pkce_rejection(self) -> bool:
        text = (self.description or "").lower()
        return "code_verifier" in text or "code verifier" in text


class IncompleteGrantError(OAuthTokenExchangeError):
    """The provider answered successfully but left out something we need.

    Retrying will not help; the user has to consent again.
    """

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message, status_code=httpx.codes.OK)
        self.reason = reason


@dataclass(frozen=True, slots=True)
class TokenGrant:
    """Tokens returned by the provider's token endpoint."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    expiry_date_ms: Optional[int] = None
    scope: Optional[str] = None


@dataclass(frozen=True, slots=True)
class UserInfo:
    subject_id: str
    email: Optional[str] = None


class GoogleOAuthClient:
    """Build Google authorization URLs and exchange or refresh tokens."""

    def __init__(
        self,
        google_settings: GoogleSettings,
        oauth_settings: OAuthSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._google = google_settings
        self._oauth = oauth_settings
        self._transport = transport

    @property
    def token_url(self) -> str:
        return self._google.token_url

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._google.http_timeout_seconds, transport=self._transport
        )

    def build_authorization_url(self, state: str, code_challenge: str) -> str:
        """Construct the Google OAuth consent URL with a PKCE challenge."""
        params = {
            "client_id": self._google.client_id,
            "redirect_uri": str(self._google.redirect_uri),
            "response_type": "code",
            "scope": " ".join(self._oauth.scopes),
            "access_type": "offline",
            "include_granted_scopes": "true",
            "prompt": "consent",
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{self._google.auth_base_url}?{urlencode(params)}"

    async def exchange_authorization_code(
        self, code: str, code_verifier: Optional[str] = None
    ) -> TokenGrant:
        """Exchange an authorization code for tokens."""
        payload = {
            "code": code,
            "client_id": self._google.client_id,
            "client_secret": self._google.client_secret,
            "redirect_uri": str(self._google.redirect_uri),
            "grant_type": "authorization_code",
        }
        if code_verifier:
            payload["code_verifier"] = code_verifier

        grant = await self._post_token(payload)
        if not grant.refresh_token:
            raise IncompleteGrantError(
                "Google did not return a refresh token.", reason="MISSING_REFRESH_TOKEN"
            )
        return grant

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        """Refresh the access token using a stored refresh token."""
        payload = {
            "client_id": self._google.client_id,
            "client_secret": self._google.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        return await self._post_token(payload)

    async def _post_token(self, payload: Dict[str, str]) -> TokenGrant:
        async with self._client() as client:
            response = await client.post(self._google.token_url, data=payload)

        if response.status_code != httpx.codes.OK:
            raise OAuthTokenExchangeError.from_response(response)

        token_payload = response.json()
        access_token = token_payload.get("access_token")
        if not access_token:
            raise OAuthTokenExchangeError(
                "Incomplete token payload returned from Google.",
                status_code=response.status_code,
            )
        expires_in = token_payload.get("expires_in")
        expiry_date = token_payload.get("expiry_date")
        return TokenGrant(
            access_token=access_token,
            refresh_token=token_payload.get("refresh_token"),
            expires_in=int(expires_in) if expires_in else None,
            expiry_date_ms=int(expiry_date) if expiry_date else None,
            scope=token_payload.get("scope"),
        )

    async def fetch_user_info(self, access_token: str) -> UserInfo:
        """Resolve the upstream identity behind an access token."""
        async with self._client() as client:
            response = await request_with_retry(
                client.get,
                self._google.userinfo_url,
                headers={"Authorization": f"Bearer {access_token}"},
                retry_config=RetryConfig(attempts=3, backoff_seconds=0.5),
            )
        data = response.json()
        subject_id = data.get("id") or data.get("sub")
        if not subject_id:
            raise IncompleteGrantError(
                "Google user info did not include a subject.", reason="MISSING_SUBJECT"
            )
        return UserInfo(subject_id=str(subject_id), email=data.get("email"))


__all__ = [
    "GoogleOAuthClient",
    "IncompleteGrantError",
    "OAuthStateEncoder",
    "OAuthTokenExchangeError",
    "TokenGrant",
    "UserInfo",
]
