"""Expose constructed client wrappers."""

from .google_auth import GoogleOAuthClient, OAuthStateEncoder
from .sqlite_store import SQLiteStore

__all__ = [
    "GoogleOAuthClient",
    "OAuthStateEncoder",
    "SQLiteStore",
]
