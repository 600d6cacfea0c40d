"""
Domain models for the persisted credential, bridge, proxy-token and
idempotency records.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class EncryptedToken(BaseModel):
    """Hex-encoded AES-GCM envelope."""

    model_config = ConfigDict(frozen=True)

    ciphertext: str
    iv: str
    auth_tag: str


class RefreshErrorInfo(BaseModel):
    """Last refresh failure, kept for observability."""

    status: Optional[int] = None
    provider_error_code: Optional[str] = None
    message: str
    at: datetime


class CredentialRecord(BaseModel):
    """Encrypted provider tokens for one upstream subject."""

    subject_id: str = Field(..., description="Opaque provider user identifier.")
    email: Optional[str] = None
    encrypted_access_token: EncryptedToken
    encrypted_refresh_token: EncryptedToken
    token_expiry: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    refresh_token_revoked: bool = False
    last_refresh_error: Optional[RefreshErrorInfo] = None


class AuthBridgeRecord(BaseModel):
    """Short-lived, single-use code linking the redirect hop to a subject."""

    auth_code: str
    subject_id: str
    client_state: Optional[str] = None
    client_redirect_uri: str
    created_at: datetime
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None


class ProxyTokenRecord(BaseModel):
    """Keyed hash of a bearer token issued to the agent."""

    token_hash: str
    token_prefix: str
    subject_id: str
    hash_secret_id: str
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None


class IdempotencyRecord(BaseModel):
    """Stored outcome of the first execution of an idempotent request."""

    key: str
    method: str
    path: str
    fingerprint: str
    response_status: int
    response_body: str
    media_type: Optional[str] = None
    created_at: datetime


__all__ = [
    "AuthBridgeRecord",
    "CredentialRecord",
    "EncryptedToken",
    "IdempotencyRecord",
    "ProxyTokenRecord",
    "RefreshErrorInfo",
]
