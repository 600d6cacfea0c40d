"""
Application configuration models and helpers.

Centralizes settings management so the FastAPI app, the background refresh
scheduler and the maintenance scripts share a consistent configuration surface.
"""

import hashlib
import hmac
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Optional

import os

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _load_env_file(path: str = ".env") -> None:
    """Best-effort load key=value pairs from a .env file without extra deps."""
    env_path = Path(path)
    if not env_path.exists():
        return
    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()


def _split_csv(value: str | tuple[str, ...] | list[str]) -> tuple[str, ...]:
    if isinstance(value, tuple):
        return value
    if isinstance(value, list):
        return tuple(value)
    return tuple(item.strip() for item in value.split(",") if item.strip())


class GoogleSettings(BaseSettings):
    """Configuration for the upstream Google OAuth provider."""

    client_id: str = Field(..., validation_alias="GOOGLE_CLIENT_ID")
    client_secret: str = Field(..., validation_alias="GOOGLE_CLIENT_SECRET")
    redirect_uri: AnyHttpUrl = Field(..., validation_alias="GOOGLE_REDIRECT_URI")
    auth_base_url: str = Field(
        "https://accounts.google.com/o/oauth2/v2/auth",
        validation_alias="GOOGLE_AUTH_URL",
    )
    token_url: str = Field(
        "https://oauth2.googleapis.com/token", validation_alias="GOOGLE_TOKEN_URL"
    )
    userinfo_url: str = Field(
        "https://www.googleapis.com/oauth2/v2/userinfo",
        validation_alias="GOOGLE_USERINFO_URL",
    )
    http_timeout_seconds: float = Field(10.0, validation_alias="GOOGLE_HTTP_TIMEOUT")


class ProxyClientSettings(BaseSettings):
    """Credentials and redirect policy for the agent calling this proxy."""

    client_id: str = Field("mcp1-oauth-client", validation_alias="OAUTH_CLIENT_ID")
    client_secret: str = Field(..., validation_alias="OAUTH_CLIENT_SECRET")
    agent_id: Optional[str] = Field(
        None,
        validation_alias="CHATGPT_GPT_ID",
        description="Optional agent identifier pinned into exact redirect URIs.",
    )
    allowed_redirect_hosts: Annotated[tuple[str, ...], NoDecode] = Field(
        ("chat.openai.com", "chatgpt.com"),
        validation_alias="OAUTH_ALLOWED_REDIRECT_HOSTS",
    )
    extra_redirect_uris: Annotated[tuple[str, ...], NoDecode] = Field(
        (),
        validation_alias="OAUTH_EXTRA_REDIRECT_URIS",
        description="Additional redirect URIs accepted by exact match.",
    )

    @field_validator("allowed_redirect_hosts", "extra_redirect_uris", mode="before")
    @classmethod
    def _split_lists(
        cls, value: str | tuple[str, ...] | list[str]
    ) -> tuple[str, ...]:
        """Support providing lists as comma-separated strings."""
        return _split_csv(value)


class SecuritySettings(BaseSettings):
    """Key material for token encryption and proxy token hashing."""

    token_encryption_key: str = Field(
        ...,
        validation_alias="ENCRYPTION_KEY",
        description="AES-256 key as 64 hexadecimal characters.",
    )
    proxy_token_hash_secrets: Annotated[tuple[str, ...], NoDecode] = Field(
        (),
        validation_alias="PROXY_TOKEN_HASH_SECRETS",
        description=(
            "Ordered 'id:secret' entries, primary first. Older entries stay "
            "configured until every token hashed under them has been re-keyed."
        ),
    )

    @field_validator("token_encryption_key")
    @classmethod
    def _validate_key(cls, value: str) -> str:
        try:
            raw = bytes.fromhex(value)
        except ValueError as exc:
            raise ValueError("ENCRYPTION_KEY must be hexadecimal.") from exc
        if len(raw) != 32:
            raise ValueError("ENCRYPTION_KEY must be 64 hex characters (32 bytes).")
        return value

    @field_validator("proxy_token_hash_secrets", mode="before")
    @classmethod
    def _split_secrets(
        cls, value: str | tuple[str, ...] | list[str]
    ) -> tuple[str, ...]:
        return _split_csv(value)

    def hash_secret_entries(self) -> list[tuple[str, str]]:
        """Return ``(secret_id, secret)`` pairs.

        Without configured secrets a single ``default`` entry is derived from the
        encryption key so the AES key itself is never used as an HMAC key.
        """
        entries: list[tuple[str, str]] = []
        for raw in self.proxy_token_hash_secrets:
            secret_id, sep, secret = raw.partition(":")
            if not sep or not secret_id or not secret:
                raise ValueError(
                    "PROXY_TOKEN_HASH_SECRETS entries must look like 'id:secret'."
                )
            entries.append((secret_id.strip(), secret.strip()))
        if not entries:
            derived = hmac.new(
                bytes.fromhex(self.token_encryption_key), b"proxy-token-hash", hashlib.sha256
            ).hexdigest()
            entries.append(("default", derived))
        return entries


class OAuthSettings(BaseSettings):
    """OAuth flow configuration."""

    state_ttl_seconds: int = Field(900, validation_alias="OAUTH_STATE_TTL")
    auth_code_ttl_seconds: int = Field(600, validation_alias="OAUTH_AUTH_CODE_TTL")
    proxy_token_ttl_seconds: int = Field(
        2_592_000, validation_alias="OAUTH_PROXY_TOKEN_TTL"
    )
    scopes: Annotated[tuple[str, ...], NoDecode] = Field(
        (
            "https://mail.google.com/",
            "https://www.googleapis.com/auth/calendar",
            "https://www.googleapis.com/auth/drive.file",
            "https://www.googleapis.com/auth/spreadsheets",
            "https://www.googleapis.com/auth/tasks",
            "openid",
            "email",
            "profile",
        ),
        validation_alias="OAUTH_SCOPES",
    )

    @field_validator("scopes", mode="before")
    @classmethod
    def _split_scopes(
        cls, value: str | tuple[str, ...] | list[str]
    ) -> tuple[str, ...]:
        """Support providing scopes as a comma-separated string."""
        return _split_csv(value)


class RefreshSettings(BaseSettings):
    """Background refresh scheduler tuning."""

    enabled: bool = Field(True, validation_alias="TOKEN_REFRESH_ENABLED")
    concurrency: int = Field(3, ge=1, validation_alias="TOKEN_REFRESH_CONCURRENCY")
    startup_horizon_seconds: int = Field(
        3600, validation_alias="TOKEN_REFRESH_STARTUP_HORIZON"
    )
    periodic_horizon_seconds: int = Field(
        7200, validation_alias="TOKEN_REFRESH_PERIODIC_HORIZON"
    )
    active_window_seconds: int = Field(
        86400, validation_alias="TOKEN_REFRESH_ACTIVE_WINDOW"
    )
    interval_seconds: int = Field(1800, validation_alias="TOKEN_REFRESH_INTERVAL")
    startup_delay_seconds: float = Field(
        5.0, validation_alias="TOKEN_REFRESH_STARTUP_DELAY"
    )
    max_jitter_seconds: float = Field(0.2, validation_alias="TOKEN_REFRESH_MAX_JITTER")


class IdempotencySettings(BaseSettings):
    """Idempotency record retention."""

    ttl_seconds: int = Field(43200, validation_alias="IDEMPOTENCY_TTL")


class AppSettings(BaseSettings):
    """Root settings object for the FastAPI application."""

    environment: str = Field("development", validation_alias="APP_ENV")
    log_level: str = Field("INFO", validation_alias="APP_LOG_LEVEL")
    database_path: str = Field(
        "data/oauth_proxy.db", validation_alias="OAUTH_PROXY_DB_PATH"
    )
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    google: GoogleSettings = Field(default_factory=GoogleSettings)
    client: ProxyClientSettings = Field(default_factory=ProxyClientSettings)
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)
    idempotency: IdempotencySettings = Field(default_factory=IdempotencySettings)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


@lru_cache()
def get_settings() -> AppSettings:
    """Return a cached settings object."""
    return AppSettings()  # type: ignore[call-arg]


__all__ = [
    "AppSettings",
    "GoogleSettings",
    "IdempotencySettings",
    "OAuthSettings",
    "ProxyClientSettings",
    "RefreshSettings",
    "SecuritySettings",
    "get_settings",
]
