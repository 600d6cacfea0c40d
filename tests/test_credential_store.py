try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

from datetime import timedelta

import pytest

from oauth_proxy.core.errors import DecryptionError
from oauth_proxy.models.oauth import RefreshErrorInfo
from oauth_proxy.services.credential_store import CredentialStore
from oauth_proxy.services.token_cipher import TokenCipherService


def _save(store: CredentialStore, clock, subject_id: str = "subject-1", *, expires_in_minutes=60):
    store.save_credentials(
        subject_id=subject_id,
        email=f"{subject_id}@example.com",
        access_token=f"access-{subject_id}",
        refresh_token=f"refresh-{subject_id}",
        token_expiry=clock() + timedelta(minutes=expires_in_minutes),
    )


def test_credentials_are_encrypted_at_rest(credential_store, sqlite_store, clock) -> None:
    _save(credential_store, clock)

    with sqlite_store.connect() as conn:
        row = conn.execute("SELECT * FROM credentials").fetchone()
    assert "access-subject-1" not in dict(row).values()
    assert "refresh-subject-1" not in dict(row).values()

    tokens = credential_store.get_tokens("subject-1")
    assert tokens is not None
    assert tokens.access_token == "access-subject-1"
    assert tokens.refresh_token == "refresh-subject-1"
    assert tokens.token_expiry == clock() + timedelta(minutes=60)


def test_missing_subject_returns_none(credential_store) -> None:
    assert credential_store.get_record("nobody") is None
    assert credential_store.get_tokens("nobody") is None
    assert credential_store.delete("nobody") is False


def test_refresh_failure_flags_revocation_until_tokens_replaced(credential_store, clock) -> None:
    _save(credential_store, clock)
    error = RefreshErrorInfo(
        status=400, provider_error_code="invalid_grant", message="Token revoked", at=clock()
    )

    credential_store.record_refresh_failure("subject-1", error=error, revoked=True)
    credential_store.record_refresh_failure(
        "subject-1",
        error=RefreshErrorInfo(message="timeout", at=clock()),
        revoked=False,
    )

    record = credential_store.get_record("subject-1")
    assert record.refresh_token_revoked is True
    assert record.last_refresh_error.message == "timeout"

    assert credential_store.update_tokens(
        "subject-1",
        access_token="new-access",
        refresh_token="new-refresh",
        token_expiry=clock() + timedelta(hours=1),
    )
    record = credential_store.get_record("subject-1")
    assert record.refresh_token_revoked is False
    assert record.last_refresh_error is None
    assert credential_store.decrypt_refresh_token(record) == "new-refresh"


def test_reauthorization_resets_revoked_flag(credential_store, clock) -> None:
    _save(credential_store, clock)
    credential_store.record_refresh_failure(
        "subject-1",
        error=RefreshErrorInfo(provider_error_code="invalid_grant", message="x", at=clock()),
        revoked=True,
    )

    _save(credential_store, clock)

    assert credential_store.get_record("subject-1").refresh_token_revoked is False


def test_refresh_candidates_respect_horizon_and_activity(credential_store, clock) -> None:
    _save(credential_store, clock, "soon", expires_in_minutes=30)
    _save(credential_store, clock, "later", expires_in_minutes=600)
    _save(credential_store, clock, "idle", expires_in_minutes=30)
    clock.advance(hours=30)
    credential_store.touch_last_used("soon")

    horizon = clock() + timedelta(hours=1)
    all_due = credential_store.list_refresh_candidates(expiring_before=horizon)
    active_due = credential_store.list_refresh_candidates(
        expiring_before=horizon, used_since=clock() - timedelta(hours=24)
    )

    assert [record.subject_id for record in all_due] == ["idle", "later", "soon"]
    assert [record.subject_id for record in active_due] == ["soon"]


def test_foreign_key_material_raises_decryption_error(sqlite_store, credential_store, clock) -> None:
    _save(credential_store, clock)
    other = CredentialStore(sqlite_store, TokenCipherService(key_hex="a" * 64), clock=clock)

    with pytest.raises(DecryptionError):
        other.get_tokens("subject-1")


def test_delete_removes_record(credential_store, clock) -> None:
    _save(credential_store, clock)

    assert credential_store.delete("subject-1") is True
    assert credential_store.get_record("subject-1") is None
