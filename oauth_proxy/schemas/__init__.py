"""Public schema exports."""

from .auth import (
    AccountDeletionResponse,
    AuthStatusResponse,
    CleanupResponse,
    RefreshErrorSummary,
    TokenResponse,
)

__all__ = [
    "AccountDeletionResponse",
    "AuthStatusResponse",
    "CleanupResponse",
    "RefreshErrorSummary",
    "TokenResponse",
]
