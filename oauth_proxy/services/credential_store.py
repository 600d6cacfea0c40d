"""
Per-subject credential records with provider tokens encrypted at rest.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from oauth_proxy.clients.sqlite_store import SQLiteStore, from_db_time, to_db_time
from oauth_proxy.models.oauth import CredentialRecord, RefreshErrorInfo
from oauth_proxy.services.token_cipher import EncryptedToken, TokenCipherService

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ProviderTokens:
    """Decrypted tokens for a subject; never persisted in this form."""

    subject_id: str
    email: Optional[str]
    access_token: str
    refresh_token: str
    token_expiry: Optional[datetime]


class CredentialStore:
    """CRUD over credential records built on the token cipher."""

    def __init__(
        self,
        store: SQLiteStore,
        token_cipher: TokenCipherService,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._cipher = token_cipher
        self._clock = clock

    def save_credentials(
        self,
        *,
        subject_id: str,
        email: Optional[str],
        access_token: str,
        refresh_token: str,
        token_expiry: datetime,
    ) -> None:
        """Create or replace the record after a successful authorization.

        A fresh authorization clears any revoked flag and previous refresh error.
        """
        access = self._cipher.encrypt(access_token)
        refresh = self._cipher.encrypt(refresh_token)
        now = to_db_time(self._clock())
        with self._store.connect() as conn:
            conn.execute(
                """
                INSERT INTO credentials (
                    subject_id, email,
                    access_ciphertext, access_iv, access_auth_tag,
                    refresh_ciphertext, refresh_iv, refresh_auth_tag,
                    token_expiry, last_used_at, created_at, updated_at,
                    refresh_token_revoked, last_refresh_error
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, NULL)
                ON CONFLICT(subject_id) DO UPDATE SET
                    email = excluded.email,
                    access_ciphertext = excluded.access_ciphertext,
                    access_iv = excluded.access_iv,
                    access_auth_tag = excluded.access_auth_tag,
                    refresh_ciphertext = excluded.refresh_ciphertext,
                    refresh_iv = excluded.refresh_iv,
                    refresh_auth_tag = excluded.refresh_auth_tag,
                    token_expiry = excluded.token_expiry,
                    last_used_at = excluded.last_used_at,
                    updated_at = excluded.updated_at,
                    refresh_token_revoked = 0,
                    last_refresh_error = NULL
                """,
                (
                    subject_id,
                    email,
                    access.ciphertext,
                    access.iv,
                    access.auth_tag,
                    refresh.ciphertext,
                    refresh.iv,
                    refresh.auth_tag,
                    to_db_time(token_expiry),
                    now,
                    now,
                    now,
                ),
            )
        logger.info("Stored credentials for subject %s", subject_id)

    def get_record(self, subject_id: str) -> Optional[CredentialRecord]:
        with self._store.connect() as conn:
            row = conn.execute(
                "SELECT * FROM credentials WHERE subject_id = ?", (subject_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_record(row)

    def get_tokens(self, subject_id: str) -> Optional[ProviderTokens]:
        """Load and decrypt a subject's tokens; ``DecryptionError`` propagates."""
        record = self.get_record(subject_id)
        if record is None:
            return None
        return self.decrypt_record(record)

    def decrypt_record(self, record: CredentialRecord) -> ProviderTokens:
        return ProviderTokens(
            subject_id=record.subject_id,
            email=record.email,
            access_token=self._cipher.decrypt_envelope(record.encrypted_access_token),
            refresh_token=self._cipher.decrypt_envelope(record.encrypted_refresh_token),
            token_expiry=record.token_expiry,
        )

    def decrypt_refresh_token(self, record: CredentialRecord) -> str:
        return self._cipher.decrypt_envelope(record.encrypted_refresh_token)

    def update_tokens(
        self,
        subject_id: str,
        *,
        access_token: str,
        refresh_token: str,
        token_expiry: datetime,
    ) -> bool:
        """Persist refreshed tokens and clear the previous refresh error.

        Both ciphertexts are recomputed together; pass the existing refresh token
        when the provider did not rotate it.
        """
        access = self._cipher.encrypt(access_token)
        refresh = self._cipher.encrypt(refresh_token)
        with self._store.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE credentials SET
                    access_ciphertext = ?, access_iv = ?, access_auth_tag = ?,
                    refresh_ciphertext = ?, refresh_iv = ?, refresh_auth_tag = ?,
                    token_expiry = ?, updated_at = ?,
                    refresh_token_revoked = 0, last_refresh_error = NULL
                WHERE subject_id = ?
                """,
                (
                    access.ciphertext,
                    access.iv,
                    access.auth_tag,
                    refresh.ciphertext,
                    refresh.iv,
                    refresh.auth_tag,
                    to_db_time(token_expiry),
                    to_db_time(self._clock()),
                    subject_id,
                ),
            )
        return cursor.rowcount == 1

    def record_refresh_failure(
        self,
        subject_id: str,
        *,
        error: RefreshErrorInfo,
        revoked: bool,
    ) -> None:
        """Store the last refresh error; ``revoked`` only ever sets the flag."""
        with self._store.connect() as conn:
            conn.execute(
                """
                UPDATE credentials SET
                    last_refresh_error = ?,
                    refresh_token_revoked = CASE WHEN ? THEN 1 ELSE refresh_token_revoked END,
                    updated_at = ?
                WHERE subject_id = ?
                """,
                (
                    error.model_dump_json(),
                    1 if revoked else 0,
                    to_db_time(self._clock()),
                    subject_id,
                ),
            )

    def touch_last_used(self, subject_id: str) -> None:
        with self._store.connect() as conn:
            conn.execute(
                "UPDATE credentials SET last_used_at = ? WHERE subject_id = ?",
                (to_db_time(self._clock()), subject_id),
            )

    def list_refresh_candidates(
        self,
        *,
        expiring_before: datetime,
        used_since: Optional[datetime] = None,
    ) -> list[CredentialRecord]:
        """Records whose expiry is missing or earlier than ``expiring_before``.

        When ``used_since`` is given only records used at or after it qualify.
        """
        query = (
            "SELECT * FROM credentials "
            "WHERE (token_expiry IS NULL OR token_expiry < ?)"
        )
        params: list[str] = [to_db_time(expiring_before)]
        if used_since is not None:
            query += " AND last_used_at IS NOT NULL AND last_used_at >= ?"
            params.append(to_db_time(used_since))
        query += " ORDER BY subject_id"
        with self._store.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def delete(self, subject_id: str) -> bool:
        """Physically remove a record; only used for account deletion."""
        with self._store.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM credentials WHERE subject_id = ?", (subject_id,)
            )
        deleted = cursor.rowcount == 1
        if deleted:
            logger.info("Deleted credentials for subject %s", subject_id)
        return deleted

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> CredentialRecord:
        error_raw = row["last_refresh_error"]
        return CredentialRecord(
            subject_id=row["subject_id"],
            email=row["email"],
            encrypted_access_token=EncryptedToken(
                ciphertext=row["access_ciphertext"],
                iv=row["access_iv"],
                auth_tag=row["access_auth_tag"],
            ),
            encrypted_refresh_token=EncryptedToken(
                ciphertext=row["refresh_ciphertext"],
                iv=row["refresh_iv"],
                auth_tag=row["refresh_auth_tag"],
            ),
            token_expiry=from_db_time(row["token_expiry"]),
            last_used_at=from_db_time(row["last_used_at"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            refresh_token_revoked=bool(row["refresh_token_revoked"]),
            last_refresh_error=(
                RefreshErrorInfo.model_validate(json.loads(error_raw))
                if error_raw
                else None
            ),
        )


__all__ = ["CredentialStore", "ProviderTokens", "utc_now"]
