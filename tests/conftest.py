"""Pytest configuration shared across the suite."""

try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

from datetime import datetime, timedelta, timezone

import pytest

from oauth_proxy.clients.sqlite_store import SQLiteStore
from oauth_proxy.services.credential_store import CredentialStore
from oauth_proxy.services.token_cipher import TokenCipherService


class FakeClock:
    """Settable clock injected wherever services read the current time."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO-powered tests to run against asyncio backend only."""
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def sqlite_store(tmp_path) -> SQLiteStore:
    return SQLiteStore(str(tmp_path / "proxy.db"))


@pytest.fixture
def token_cipher() -> TokenCipherService:
    return TokenCipherService(key_hex=_bootstrap.TEST_ENCRYPTION_KEY)


@pytest.fixture
def credential_store(sqlite_store, token_cipher, clock) -> CredentialStore:
    return CredentialStore(sqlite_store, token_cipher, clock=clock)
