"""Expose dependency helpers for FastAPI routers."""

from .auth import AuthenticatedSubject, CurrentSubject, get_current_subject
from .clients import (
    get_credential_store,
    get_google_oauth_client,
    get_idempotency_service,
    get_oauth_state_encoder,
    get_provider_token_service,
    get_proxy_token_service,
    get_redirect_guard,
    get_refresh_scheduler,
    get_sqlite_store,
    get_token_cipher_service,
)
from .config import SettingsDependency, get_app_settings

__all__ = [
    "AuthenticatedSubject",
    "CurrentSubject",
    "SettingsDependency",
    "get_app_settings",
    "get_credential_store",
    "get_current_subject",
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
