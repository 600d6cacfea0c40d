"""
Helpers for handing valid Google credentials to resource handlers.
"""

from __future__ import annotations

import logging
from datetime import timezone

import httpx
from google.oauth2.credentials import Credentials

from oauth_proxy.clients.google_auth import GoogleOAuthClient, OAuthTokenExchangeError
from oauth_proxy.core.config import GoogleSettings, OAuthSettings
from oauth_proxy.core.errors import (
    CredentialNotFoundError,
    ReauthRequiredError,
    UpstreamTransientError,
)
from oauth_proxy.models.oauth import RefreshErrorInfo
from oauth_proxy.services.credential_store import Clock, CredentialStore, utc_now
from oauth_proxy.utils.token_expiry import determine_expiry, is_expiring

logger = logging.getLogger(__name__)


class ProviderTokenService:
    """Returns a valid upstream access token for a subject, refreshing inline."""

    def __init__(
        self,
        credential_store: CredentialStore,
        oauth_client: GoogleOAuthClient,
        google_settings: GoogleSettings,
        oauth_settings: OAuthSettings,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._credentials = credential_store
        self._oauth = oauth_client
        self._google = google_settings
        self._oauth_settings = oauth_settings
        self._clock = clock

    async def get_credentials(self, *, subject_id: str) -> Credentials:
        """Retrieve credentials for a subject, refreshing tokens when necessary."""
        record = self._credentials.get_record(subject_id)
        if record is None:
            raise CredentialNotFoundError(f"No credentials stored for subject {subject_id}.")
        if record.refresh_token_revoked:
            raise ReauthRequiredError()

        tokens = self._credentials.decrypt_record(record)
        access_token = tokens.access_token
        refresh_token = tokens.refresh_token
        expiry = tokens.token_expiry

        now = self._clock()
        if is_expiring(expiry, now=now):
            try:
                grant = await self._oauth.refresh_token(refresh_token)
            except OAuthTokenExchangeError as exc:
                self._credentials.record_refresh_failure(
                    subject_id,
                    error=RefreshErrorInfo(
                        status=exc.status_code,
                        provider_error_code=exc.error_code,
                        message=str(exc),
                        at=now,
                    ),
                    revoked=exc.is_invalid_grant,
                )
                if exc.is_invalid_grant:
                    logger.warning("Refresh token revoked for subject %s", subject_id)
                    raise ReauthRequiredError() from exc
                raise UpstreamTransientError() from exc
            except httpx.TransportError as exc:
                raise UpstreamTransientError() from exc

            access_token = grant.access_token
            refresh_token = grant.refresh_token or refresh_token
            expiry = determine_expiry(
                expiry_date_ms=grant.expiry_date_ms, expires_in=grant.expires_in, now=now
            )
            self._credentials.update_tokens(
                subject_id,
                access_token=access_token,
                refresh_token=refresh_token,
                token_expiry=expiry,
            )
            logger.info("Refreshed access token inline for subject %s", subject_id)

        self._credentials.touch_last_used(subject_id)

        return Credentials(
            token=access_token,
            refresh_token=refresh_token,
            token_uri=self._oauth.token_url,
            client_id=self._google.client_id,
            client_secret=self._google.client_secret,
            scopes=list(self._oauth_settings.scopes),
            # google-auth compares against a naive UTC datetime.
            expiry=expiry.astimezone(timezone.utc).replace(tzinfo=None) if expiry else None,
        )


__all__ = ["ProviderTokenService"]
