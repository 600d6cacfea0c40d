"""Schemas returned by the OAuth and account endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TokenResponse(BaseModel):
    """RFC 6749 token response issued to the agent."""

    access_token: str = Field(..., description="Opaque proxy bearer token.")
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Lifetime of the proxy token in seconds.")


class RefreshErrorSummary(_CamelModel):
    status: Optional[int] = None
    provider_error_code: Optional[str] = None
    message: str
    at: datetime


class AuthStatusResponse(_CamelModel):
    """Credential health for the authenticated subject."""

    subject_id: str
    email: Optional[str] = None
    token_expiry: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    refresh_token_revoked: bool = False
    requires_reauth: bool = False
    last_refresh_error: Optional[RefreshErrorSummary] = None


class AccountDeletionResponse(_CamelModel):
    subject_id: str
    credentials_deleted: bool
    proxy_tokens_revoked: int


class CleanupResponse(_CamelModel):
    auth_codes_deleted: int
    proxy_tokens_deleted: int
    idempotency_records_deleted: int


__all__ = [
    "AccountDeletionResponse",
    "AuthStatusResponse",
    "CleanupResponse",
    "RefreshErrorSummary",
    "TokenResponse",
]
