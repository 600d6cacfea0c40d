"""
Factory functions to provide shared clients and services as FastAPI dependencies.
"""

from functools import lru_cache

from oauth_proxy.clients import GoogleOAuthClient, OAuthStateEncoder, SQLiteStore
from oauth_proxy.core.config import get_settings
from oauth_proxy.services import (
    CredentialStore,
    HashSecret,
    IdempotencyService,
    ProviderTokenService,
    ProxyTokenService,
    RedirectGuard,
    RefreshScheduler,
    TokenCipherService,
)


@lru_cache()
def get_sqlite_store() -> SQLiteStore:
    """Provide the shared SQLite database."""
    return SQLiteStore(get_settings().database_path)


@lru_cache()
def get_token_cipher_service() -> TokenCipherService:
    """Provide AES-256-GCM encryption for provider tokens."""
    return TokenCipherService(key_hex=get_settings().security.token_encryption_key)


@lru_cache()
def get_credential_store() -> CredentialStore:
    return CredentialStore(get_sqlite_store(), get_token_cipher_service())


@lru_cache()
def get_proxy_token_service() -> ProxyTokenService:
    """Provide bridge-code and proxy-token issuance over the configured secrets."""
    settings = get_settings()
    secrets = [
        HashSecret(secret_id=secret_id, secret=secret)
        for secret_id, secret in settings.security.hash_secret_entries()
    ]
    return ProxyTokenService(
        get_sqlite_store(),
        secrets,
        auth_code_ttl_seconds=settings.oauth.auth_code_ttl_seconds,
    )


@lru_cache()
def get_oauth_state_encoder() -> OAuthStateEncoder:
    """Provide an OAuth state encoder derived from the Google client secret."""
    return OAuthStateEncoder(secret_key=get_settings().google.client_secret)


@lru_cache()
def get_google_oauth_client() -> GoogleOAuthClient:
    settings = get_settings()
    return GoogleOAuthClient(settings.google, settings.oauth)


@lru_cache()
def get_redirect_guard() -> RedirectGuard:
    settings = get_settings()
    return RedirectGuard(
        allowed_hosts=settings.client.allowed_redirect_hosts,
        agent_id=settings.client.agent_id,
        extra_redirect_uris=settings.client.extra_redirect_uris,
        allow_localhost=settings.is_development,
    )


@lru_cache()
def get_provider_token_service() -> ProviderTokenService:
    """Provide valid Google credentials to resource handlers."""
    settings = get_settings()
    return ProviderTokenService(
        get_credential_store(),
        get_google_oauth_client(),
        settings.google,
        settings.oauth,
    )


@lru_cache()
def get_idempotency_service() -> IdempotencyService:
    return IdempotencyService(
        get_sqlite_store(), ttl_seconds=get_settings().idempotency.ttl_seconds
    )


@lru_cache()
def get_refresh_scheduler() -> RefreshScheduler:
    """Provide the background refresh scheduler started by the app lifespan."""
    return RefreshScheduler(
        get_credential_store(),
        get_google_oauth_client(),
        get_settings().refresh,
    )


__all__ = [
    "get_credential_store",
    "get_google_oauth_client",
    "get_idempotency_service",
    "get_oauth_state_encoder",
    "get_provider_token_service",
    "get_proxy_token_service",
    "get_redirect_guard",
    "get_refresh_scheduler",
    "get_sqlite_store",
    "get_token_cipher_service",
]
