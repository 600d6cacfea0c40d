"""
Error taxonomy shared by the credential subsystem and its HTTP surface.

Every user-visible failure carries a machine ``code`` plus a ``requires_reauth``
flag so callers can tell "retry later" from "start the authorization hop again"
without matching on message text.
"""

from __future__ import annotations

from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any, Dict, Optional


class ProxyError(Exception):
    """Base class for errors rendered with the uniform error shape."""

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR
    error: str = "server_error"
    code: str = "INTERNAL_ERROR"
    requires_reauth: bool = False
    default_message: str = "An unexpected error occurred."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        requires_reauth: Optional[bool] = None,
    ) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        if requires_reauth is not None:
            self.requires_reauth = requires_reauth

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "error": self.error,
            "error_description": self.message,
            "message": self.message,
            "code": self.code,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self.requires_reauth:
            body["requiresReauth"] = True
        return body


class InvalidRequestError(ProxyError):
    """Bad or missing parameters."""

    status_code = HTTPStatus.BAD_REQUEST
    error = "invalid_request"
    code = "INVALID_REQUEST"
    default_message = "The request is missing a parameter or is malformed."


class InvalidClientError(ProxyError):
    status_code = HTTPStatus.UNAUTHORIZED
    error = "invalid_client"
    code = "INVALID_CLIENT"
    default_message = "Invalid client credentials."


class InvalidGrantError(ProxyError):
    """Invalid, expired or reused authorization code, or a redirect mismatch."""

    status_code = HTTPStatus.BAD_REQUEST
    error = "invalid_grant"
    code = "INVALID_GRANT"
    requires_reauth = True
    default_message = "Invalid, expired, or already used authorization code."


class UnsupportedGrantTypeError(ProxyError):
    status_code = HTTPStatus.BAD_REQUEST
    error = "unsupported_grant_type"
    code = "UNSUPPORTED_GRANT_TYPE"
    default_message = "Only the authorization_code grant type is supported."


class UnauthorizedError(ProxyError):
    """Missing, unknown or expired bearer token."""

    status_code = HTTPStatus.UNAUTHORIZED
    error = "unauthorized"
    code = "UNAUTHORIZED"
    requires_reauth = True
    default_message = "Missing or invalid authorization token."


class CredentialNotFoundError(ProxyError):
    status_code = HTTPStatus.NOT_FOUND
    error = "not_found"
    code = "CREDENTIAL_NOT_FOUND"
    requires_reauth = True
    default_message = "No stored provider credentials for this subject."


class ReauthRequiredError(ProxyError):
    """The provider reported the refresh token itself as permanently invalid."""

    status_code = HTTPStatus.UNAUTHORIZED
    error = "reauthentication_required"
    code = "REFRESH_TOKEN_REVOKED"
    requires_reauth = True
    default_message = "Provider access was revoked; reauthentication required."


class UpstreamTransientError(ProxyError):
    """Provider rate-limited us or failed with a server error; retry later."""

    status_code = HTTPStatus.BAD_GATEWAY
    error = "temporarily_unavailable"
    code = "UPSTREAM_UNAVAILABLE"
    default_message = "The upstream provider is temporarily unavailable."


class DecryptionError(ProxyError):
    """Ciphertext failed authentication: key mismatch or corrupted data."""

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    error = "server_error"
    code = "TOKEN_DECRYPTION_FAILED"
    default_message = "Token decryption failed - data may be corrupted."


class IdempotencyConflictError(ProxyError):
    status_code = HTTPStatus.CONFLICT
    error = "idempotency_conflict"
    code = "IDEMPOTENCY_KEY_REUSE_MISMATCH"
    default_message = (
        "This idempotency key was already used with a different request body. "
        "Please use a new key for a different request."
    )


__all__ = [
    "CredentialNotFoundError",
    "DecryptionError",
    "IdempotencyConflictError",
    "InvalidClientError",
    "InvalidGrantError",
    "InvalidRequestError",
    "ProxyError",
    "ReauthRequiredError",
    "UnauthorizedError",
    "UnsupportedGrantTypeError",
    "UpstreamTransientError",
]
