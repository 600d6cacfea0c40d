"""Service layer exports."""

from .token_cipher import EncryptedToken, TokenCipherService
from .credential_store import CredentialStore, ProviderTokens
from .google_tokens import ProviderTokenService
from .idempotency import IdempotencyService
from .proxy_tokens import HashSecret, ProxyTokenService
from .redirect_guard import RedirectGuard
from .refresh_scheduler import RefreshScheduler, SweepReport

__all__ = [
    "CredentialStore",
    "EncryptedToken",
    "HashSecret",
    "IdempotencyService",
    "ProviderTokenService",
    "ProviderTokens",
    "ProxyTokenService",
    "RedirectGuard",
    "RefreshScheduler",
    "SweepReport",
    "TokenCipherService",
]
