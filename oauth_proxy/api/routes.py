"""
FastAPI routes for the OAuth proxy.

``router`` carries the authorization hop (authorize, callback, token);
``account_router`` carries the bearer-protected and maintenance endpoints and
applies idempotency keys to every mutating method.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from http import HTTPStatus
from typing import Annotated, Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from oauth_proxy.api.idempotency import IdempotentRoute
from oauth_proxy.clients.google_auth import (
    GoogleOAuthClient,
    IncompleteGrantError,
    OAuthStateEncoder,
    OAuthTokenExchangeError,
    TokenGrant,
)
from oauth_proxy.core.config import AppSettings
from oauth_proxy.core.errors import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    ProxyError,
    UnsupportedGrantTypeError,
    UpstreamTransientError,
)
from oauth_proxy.dependencies import (
    CurrentSubject,
    SettingsDependency,
    get_credential_store,
    get_google_oauth_client,
    get_idempotency_service,
    get_oauth_state_encoder,
    get_proxy_token_service,
    get_redirect_guard,
)
from oauth_proxy.schemas import (
    AccountDeletionResponse,
    AuthStatusResponse,
    CleanupResponse,
    RefreshErrorSummary,
    TokenResponse,
)
from oauth_proxy.services import pkce
from oauth_proxy.services.credential_store import CredentialStore
from oauth_proxy.services.idempotency import IdempotencyService, parse_body
from oauth_proxy.services.proxy_tokens import ProxyTokenService
from oauth_proxy.services.redirect_guard import RedirectGuard
from oauth_proxy.utils.token_expiry import determine_expiry

router = APIRouter()
account_router = APIRouter(route_class=IdempotentRoute)
logger = logging.getLogger(__name__)

_basic_auth = HTTPBasic(auto_error=False)


def _matches(value: Any, expected: str) -> bool:
    """Constant-time comparison that tolerates non-ASCII and non-string input."""
    if not isinstance(value, str) or not value:
        return False
    return hmac.compare_digest(value.encode("utf-8"), expected.encode("utf-8"))


def _client_credentials_match(settings: AppSettings, client_id: Any, client_secret: Any) -> bool:
    id_ok = _matches(client_id, settings.client.client_id)
    secret_ok = _matches(client_secret, settings.client.client_secret)
    return id_ok and secret_ok


def _append_query(uri: str, params: Dict[str, str]) -> str:
    separator = "&" if "?" in uri else "?"
    return f"{uri}{separator}{urlencode(params)}"


def _exchange_failure(exc: Exception) -> ProxyError:
    """Translate a failed upstream code exchange into the error taxonomy."""
    if isinstance(exc, IncompleteGrantError):
        return InvalidRequestError(str(exc), code=exc.reason, requires_reauth=True)
    if isinstance(exc, OAuthTokenExchangeError):
        if exc.is_invalid_grant:
            return InvalidGrantError(
                "The provider rejected the authorization code.",
                code="UPSTREAM_INVALID_GRANT",
            )
        if exc.status_code is None or exc.status_code >= 500 or exc.status_code == 429:
            return UpstreamTransientError()
        return InvalidRequestError(
            f"Token exchange failed: {exc}", code="UPSTREAM_EXCHANGE_FAILED"
        )
    return UpstreamTransientError()


@router.get("/health", status_code=HTTPStatus.OK)
async def healthcheck() -> dict:
    """Simple health endpoint for monitoring."""
    return {"status": "ok"}


@router.get("/oauth/authorize")
async def authorize(
    settings: SettingsDependency,
    oauth_client: Annotated[GoogleOAuthClient, Depends(get_google_oauth_client)],
    state_encoder: Annotated[OAuthStateEncoder, Depends(get_oauth_state_encoder)],
    redirect_guard: Annotated[RedirectGuard, Depends(get_redirect_guard)],
    client_id: Optional[str] = Query(default=None),
    redirect_uri: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None, description="Opaque agent state."),
    scope: Optional[str] = Query(default=None),
    response_type: Optional[str] = Query(default=None),
) -> RedirectResponse:
    """Validate the agent's request and redirect to the Google consent screen."""
    if not client_id or not redirect_uri:
        raise InvalidRequestError("client_id and redirect_uri are required.")
    if response_type is not None and response_type != "code":
        raise InvalidRequestError(
            "Only response_type=code is supported.", code="UNSUPPORTED_RESPONSE_TYPE"
        )
    if not _matches(client_id, settings.client.client_id):
        logger.warning("Authorize request with unknown client_id %s", client_id)
        raise InvalidClientError("Unknown client_id.")
    if not redirect_guard.validate_redirect_uri(redirect_uri):
        raise InvalidRequestError(
            "redirect_uri is not registered for this client.", code="INVALID_REDIRECT_URI"
        )
    if scope:
        logger.debug("Ignoring requested scope %r in favour of configured scopes", scope)

    pair = pkce.generate_pair()
    provider_state = state_encoder.encode(
        {
            "nonce": secrets.token_hex(8),
            "client_state": state,
            "client_redirect_uri": redirect_uri,
            "code_verifier": pair.verifier,
            "issued_at": datetime.now(timezone.utc).isoformat(),
        }
    )
    authorization_url = oauth_client.build_authorization_url(
        state=provider_state, code_challenge=pair.challenge
    )
    logger.info("Redirecting client %s to Google consent", client_id)
    return RedirectResponse(url=authorization_url, status_code=HTTPStatus.FOUND)


def _decode_state(
    state_encoder: OAuthStateEncoder, state: str, ttl_seconds: int
) -> Dict[str, Any]:
    state_data = state_encoder.decode(state)

    issued_at_raw = state_data.get("issued_at")
    if not issued_at_raw:
        raise InvalidRequestError("Missing issued_at in state.", code="INVALID_STATE")
    try:
        issued_at = datetime.fromisoformat(issued_at_raw)
    except (TypeError, ValueError) as exc:
        raise InvalidRequestError("Invalid issued_at in state.", code="INVALID_STATE") from exc
    if issued_at.tzinfo is None:
        issued_at = issued_at.replace(tzinfo=timezone.utc)

    if datetime.now(timezone.utc) - issued_at > timedelta(seconds=ttl_seconds):
        raise InvalidRequestError("OAuth state has expired.", code="STATE_EXPIRED")
    if not state_data.get("client_redirect_uri"):
        raise InvalidRequestError("State is missing the client redirect.", code="INVALID_STATE")
    return state_data


async def _exchange_with_fallback(
    oauth_client: GoogleOAuthClient, code: str, code_verifier: Optional[str]
) -> TokenGrant:
    """Exchange with PKCE; retry once without it only if the provider rejects the verifier."""
    try:
        return await oauth_client.exchange_authorization_code(code, code_verifier)
    except OAuthTokenExchangeError as exc:
        if not code_verifier or not exc.is_pkce_rejection:
            raise
        logger.warning("Provider rejected PKCE verifier; retrying exchange without it")
    return await oauth_client.exchange_authorization_code(code)


@router.get("/oauth/callback")
async def oauth_callback(
    settings: SettingsDependency,
    oauth_client: Annotated[GoogleOAuthClient, Depends(get_google_oauth_client)],
    state_encoder: Annotated[OAuthStateEncoder, Depends(get_oauth_state_encoder)],
    redirect_guard: Annotated[RedirectGuard, Depends(get_redirect_guard)],
    credential_store: Annotated[CredentialStore, Depends(get_credential_store)],
    proxy_tokens: Annotated[ProxyTokenService, Depends(get_proxy_token_service)],
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
) -> RedirectResponse:
    """Finish the upstream hop and hand a bridge code back to the agent."""
    if error:
        logger.warning("Google returned an authorization error: %s", error)
        raise InvalidRequestError(
            f"Authorization was not granted: {error}", code="AUTHORIZATION_DENIED"
        )
    if not code or not state:
        raise InvalidRequestError("code and state are required.")

    state_data = _decode_state(state_encoder, state, settings.oauth.state_ttl_seconds)
    client_redirect_uri = state_data["client_redirect_uri"]
    if not redirect_guard.validate_redirect_uri(client_redirect_uri):
        raise InvalidRequestError(
            "redirect_uri is not registered for this client.", code="INVALID_REDIRECT_URI"
        )

    try:
        grant = await _exchange_with_fallback(
            oauth_client, code, state_data.get("code_verifier")
        )
        user = await oauth_client.fetch_user_info(grant.access_token)
    except (OAuthTokenExchangeError, httpx.HTTPError) as exc:
        logger.warning("Google code exchange failed: %s", exc)
        raise _exchange_failure(exc) from exc

    expiry = determine_expiry(
        expiry_date_ms=grant.expiry_date_ms,
        expires_in=grant.expires_in,
        now=datetime.now(timezone.utc),
    )
    credential_store.save_credentials(
        subject_id=user.subject_id,
        email=user.email,
        access_token=grant.access_token,
        refresh_token=grant.refresh_token,
        token_expiry=expiry,
    )

    client_state = state_data.get("client_state")
    auth_code = proxy_tokens.issue_auth_code(
        user.subject_id, client_state, client_redirect_uri
    )
    params = {"code": auth_code}
    if client_state:
        params["state"] = client_state
    return RedirectResponse(
        url=_append_query(client_redirect_uri, params), status_code=HTTPStatus.FOUND
    )


@router.post("/oauth/token", response_model=TokenResponse)
async def issue_token(
    request: Request,
    settings: SettingsDependency,
    redirect_guard: Annotated[RedirectGuard, Depends(get_redirect_guard)],
    proxy_tokens: Annotated[ProxyTokenService, Depends(get_proxy_token_service)],
    basic: Annotated[Optional[HTTPBasicCredentials], Depends(_basic_auth)],
) -> JSONResponse:
    """Exchange a bridge code for a proxy bearer token.

    Accepts form-encoded or JSON bodies; client credentials may also be sent
    with HTTP Basic authentication.
    """
    body = parse_body(request.headers.get("content-type"), await request.body())
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be form-encoded or a JSON object.")

    grant_type = body.get("grant_type")
    if not grant_type:
        raise InvalidRequestError("grant_type is required.")
    if grant_type != "authorization_code":
        raise UnsupportedGrantTypeError()

    client_id = body.get("client_id") or (basic.username if basic else None)
    client_secret = body.get("client_secret") or (basic.password if basic else None)
    if not _client_credentials_match(settings, client_id, client_secret):
        logger.warning("Token request with invalid client credentials")
        raise InvalidClientError()

    code = body.get("code")
    redirect_uri = body.get("redirect_uri")
    if not code or not isinstance(code, str):
        raise InvalidRequestError("code is required.")
    if not redirect_uri or not isinstance(redirect_uri, str):
        raise InvalidRequestError("redirect_uri is required.")
    if not redirect_guard.validate_auth_code(code):
        raise InvalidGrantError()

    grant = proxy_tokens.consume_auth_code(code)
    if grant is None:
        raise InvalidGrantError()
    if grant.client_redirect_uri != redirect_uri:
        logger.warning("redirect_uri mismatch for subject %s", grant.subject_id)
        raise InvalidGrantError("redirect_uri does not match the authorization request.")

    issued = proxy_tokens.issue_proxy_token(
        grant.subject_id, settings.oauth.proxy_token_ttl_seconds
    )
    payload = TokenResponse(access_token=issued.token, expires_in=issued.expires_in)
    return JSONResponse(
        content=payload.model_dump(),
        headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
    )


@account_router.get("/auth/status", response_model=AuthStatusResponse)
async def auth_status(
    subject: CurrentSubject,
    credential_store: Annotated[CredentialStore, Depends(get_credential_store)],
) -> AuthStatusResponse:
    """Report the credential health of the authenticated subject."""
    record = credential_store.get_record(subject.subject_id)
    if record is None:
        return AuthStatusResponse(subject_id=subject.subject_id, requires_reauth=True)
    last_error = record.last_refresh_error
    return AuthStatusResponse(
        subject_id=record.subject_id,
        email=record.email,
        token_expiry=record.token_expiry,
        last_used_at=record.last_used_at,
        refresh_token_revoked=record.refresh_token_revoked,
        requires_reauth=record.refresh_token_revoked,
        last_refresh_error=(
            RefreshErrorSummary(**last_error.model_dump()) if last_error else None
        ),
    )


@account_router.delete("/account", response_model=AccountDeletionResponse)
async def delete_account(
    subject: CurrentSubject,
    credential_store: Annotated[CredentialStore, Depends(get_credential_store)],
    proxy_tokens: Annotated[ProxyTokenService, Depends(get_proxy_token_service)],
) -> AccountDeletionResponse:
    """Remove the subject's credentials and revoke every proxy token it holds."""
    revoked = proxy_tokens.revoke_subject_tokens(subject.subject_id)
    deleted = credential_store.delete(subject.subject_id)
    logger.info(
        "Account deleted for subject %s (%d proxy tokens revoked)",
        subject.subject_id,
        revoked,
    )
    return AccountDeletionResponse(
        subject_id=subject.subject_id,
        credentials_deleted=deleted,
        proxy_tokens_revoked=revoked,
    )


@account_router.post("/maintenance/cleanup", response_model=CleanupResponse)
async def run_cleanup(
    settings: SettingsDependency,
    basic: Annotated[Optional[HTTPBasicCredentials], Depends(_basic_auth)],
    proxy_tokens: Annotated[ProxyTokenService, Depends(get_proxy_token_service)],
    idempotency: Annotated[IdempotencyService, Depends(get_idempotency_service)],
) -> CleanupResponse:
    """Delete expired bridge codes, proxy tokens and idempotency records now."""
    if basic is None or not _client_credentials_match(
        settings, basic.username, basic.password
    ):
        raise InvalidClientError()
    counts = proxy_tokens.cleanup_expired()
    records = idempotency.cleanup_expired()
    return CleanupResponse(
        auth_codes_deleted=counts.auth_codes_deleted,
        proxy_tokens_deleted=counts.proxy_tokens_deleted,
        idempotency_records_deleted=records,
    )


__all__ = ["account_router", "router"]
