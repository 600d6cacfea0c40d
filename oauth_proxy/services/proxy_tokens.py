"""
Authorization-code bridging and proxy bearer-token issuance.

The bridge code is short-lived and single-use; the proxy token is long-lived
and stored only as a keyed hash. Both lookups collapse "expired", "already used"
and "never existed" into a single not-found answer for callers; the detailed
reason is kept for logging only.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from oauth_proxy.clients.sqlite_store import SQLiteStore, from_db_time, to_db_time
from oauth_proxy.models.oauth import AuthBridgeRecord, ProxyTokenRecord
from oauth_proxy.services.credential_store import Clock, utc_now

logger = logging.getLogger(__name__)

_TOKEN_BYTES = 32
_PREFIX_LENGTH = 8


@dataclass(frozen=True, slots=True)
class HashSecret:
    """Named key material used to hash proxy tokens."""

    secret_id: str
    secret: str


@dataclass(frozen=True, slots=True)
class AuthCodeGrant:
    subject_id: str
    client_redirect_uri: str
    client_state: Optional[str] = None


@dataclass(frozen=True, slots=True)
class IssuedProxyToken:
    token: str
    expires_in: int
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class CleanupCounts:
    auth_codes_deleted: int
    proxy_tokens_deleted: int


class LookupStatus(str, enum.Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    USED = "used"


def _bridge_from_row(row) -> AuthBridgeRecord:
    return AuthBridgeRecord(
        auth_code=row["auth_code"],
        subject_id=row["subject_id"],
        client_state=row["client_state"],
        client_redirect_uri=row["client_redirect_uri"],
        created_at=from_db_time(row["created_at"]),
        expires_at=from_db_time(row["expires_at"]),
        used=bool(row["used"]),
        used_at=from_db_time(row["used_at"]),
    )


def _token_from_row(row) -> ProxyTokenRecord:
    return ProxyTokenRecord(
        token_hash=row["token_hash"],
        token_prefix=row["token_prefix"],
        subject_id=row["subject_id"],
        hash_secret_id=row["hash_secret_id"],
        created_at=from_db_time(row["created_at"]),
        expires_at=from_db_time(row["expires_at"]),
        last_used_at=from_db_time(row["last_used_at"]),
    )


@dataclass(frozen=True, slots=True)
class _Lookup:
    status: LookupStatus
    grant: Optional[AuthCodeGrant] = None


class ProxyTokenService:
    """Issues bridge codes and proxy tokens and resolves them back to subjects."""

    def __init__(
        self,
        store: SQLiteStore,
        hash_secrets: Sequence[HashSecret],
        *,
        auth_code_ttl_seconds: int = 600,
        clock: Clock = utc_now,
    ) -> None:
        if not hash_secrets:
            raise ValueError("At least one proxy token hash secret is required.")
        ids = [entry.secret_id for entry in hash_secrets]
        if len(set(ids)) != len(ids):
            raise ValueError("Proxy token hash secret ids must be unique.")
        self._store = store
        self._secrets = tuple(hash_secrets)
        self._auth_code_ttl = timedelta(seconds=auth_code_ttl_seconds)
        self._clock = clock

    @property
    def primary_secret(self) -> HashSecret:
        return self._secrets[0]

    # -- authorization-code bridge -------------------------------------------------

    def issue_auth_code(
        self,
        subject_id: str,
        client_state: Optional[str],
        client_redirect_uri: str,
    ) -> str:
        """Persist a pending bridge record and return its code."""
        code = secrets.token_hex(_TOKEN_BYTES)
        created_at = self._clock()
        with self._store.connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_bridges (
                    auth_code, subject_id, client_state, client_redirect_uri,
                    created_at, expires_at, used
                )
                VALUES (?, ?, ?, ?, ?, ?, 0)
                """,
                (
                    code,
                    subject_id,
                    client_state,
                    client_redirect_uri,
                    to_db_time(created_at),
                    to_db_time(created_at + self._auth_code_ttl),
                ),
            )
        logger.info("Auth code issued: %s...", code[:_PREFIX_LENGTH])
        return code

    def consume_auth_code(self, code: str) -> Optional[AuthCodeGrant]:
        """Atomically mark a pending, unexpired code as used.

        Returns ``None`` for any failure so callers cannot distinguish states.
        """
        lookup = self._consume(code)
        if lookup.status is not LookupStatus.FOUND:
            logger.warning(
                "Auth code rejected (%s): %s...",
                lookup.status.value,
                (code or "")[:_PREFIX_LENGTH],
            )
            return None
        logger.info("Auth code consumed: %s...", code[:_PREFIX_LENGTH])
        return lookup.grant

    def _consume(self, code: str) -> _Lookup:
        if not code:
            return _Lookup(LookupStatus.NOT_FOUND)
        now = self._clock()
        with self._store.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE auth_bridges SET used = 1, used_at = ?
                WHERE auth_code = ? AND used = 0 AND expires_at > ?
                """,
                (to_db_time(now), code, to_db_time(now)),
            )
            row = conn.execute(
                "SELECT * FROM auth_bridges WHERE auth_code = ?", (code,)
            ).fetchone()
            won = cursor.rowcount == 1
        if row is None:
            return _Lookup(LookupStatus.NOT_FOUND)
        record = _bridge_from_row(row)
        if won:
            return _Lookup(
                LookupStatus.FOUND,
                AuthCodeGrant(
                    subject_id=record.subject_id,
                    client_redirect_uri=record.client_redirect_uri,
                    client_state=record.client_state,
                ),
            )
        if record.expires_at <= now:
            return _Lookup(LookupStatus.EXPIRED)
        return _Lookup(LookupStatus.USED)

    # -- proxy tokens ----------------------------------------------------------------

    def _hash(self, token: str, secret: HashSecret) -> str:
        return hmac.new(
            secret.secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def issue_proxy_token(self, subject_id: str, ttl_seconds: int) -> IssuedProxyToken:
        """Return a new bearer token; only its hash under the primary secret is stored."""
        token = secrets.token_hex(_TOKEN_BYTES)
        primary = self.primary_secret
        created_at = self._clock()
        expires_at = created_at + timedelta(seconds=ttl_seconds)
        with self._store.connect() as conn:
            conn.execute(
                """
                INSERT INTO proxy_tokens (
                    token_hash, token_prefix, subject_id, hash_secret_id,
                    created_at, expires_at, last_used_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    self._hash(token, primary),
                    token[:_PREFIX_LENGTH],
                    subject_id,
                    primary.secret_id,
                    to_db_time(created_at),
                    to_db_time(expires_at),
                    to_db_time(created_at),
                ),
            )
        logger.info(
            "Proxy token %s... issued for subject %s",
            token[:_PREFIX_LENGTH],
            subject_id,
        )
        return IssuedProxyToken(token=token, expires_in=ttl_seconds, expires_at=expires_at)

    def resolve_proxy_token(self, token: str) -> Optional[str]:
        """Return the subject bound to ``token`` or ``None``.

        Hashes are tried under every configured secret; a hit under a non-primary
        secret is re-keyed to the primary in place.
        """
        if not token:
            return None
        candidates = {entry.secret_id: self._hash(token, entry) for entry in self._secrets}
        placeholders = ",".join("?" for _ in candidates)
        now = self._clock()
        with self._store.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM proxy_tokens WHERE token_hash IN ({placeholders})",
                tuple(candidates.values()),
            ).fetchall()
            by_hash = {row["token_hash"]: row for row in rows}
            match = None
            for entry in self._secrets:
                match = by_hash.get(candidates[entry.secret_id])
                if match is not None:
                    break
            if match is None:
                logger.info("Proxy token %s... not found", token[:_PREFIX_LENGTH])
                return None
            record = _token_from_row(match)
            if record.expires_at <= now:
                logger.info("Proxy token %s... expired", token[:_PREFIX_LENGTH])
                return None

            primary = self.primary_secret
            if record.hash_secret_id != primary.secret_id:
                conn.execute(
                    """
                    UPDATE proxy_tokens
                    SET token_hash = ?, hash_secret_id = ?, last_used_at = ?
                    WHERE token_hash = ?
                    """,
                    (
                        candidates[primary.secret_id],
                        primary.secret_id,
                        to_db_time(now),
                        record.token_hash,
                    ),
                )
                logger.info(
                    "Proxy token %s... re-keyed from secret %s to %s",
                    token[:_PREFIX_LENGTH],
                    record.hash_secret_id,
                    primary.secret_id,
                )
            else:
                conn.execute(
                    "UPDATE proxy_tokens SET last_used_at = ? WHERE token_hash = ?",
                    (to_db_time(now), record.token_hash),
                )
        return record.subject_id

    def revoke_subject_tokens(self, subject_id: str) -> int:
        with self._store.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM proxy_tokens WHERE subject_id = ?", (subject_id,)
            )
        return cursor.rowcount

    def cleanup_expired(self) -> CleanupCounts:
        """Delete bridge and proxy-token records past their expiry."""
        now = to_db_time(self._clock())
        with self._store.connect() as conn:
            codes = conn.execute(
                "DELETE FROM auth_bridges WHERE expires_at < ?", (now,)
            ).rowcount
            tokens = conn.execute(
                "DELETE FROM proxy_tokens WHERE expires_at < ?", (now,)
            ).rowcount
        counts = CleanupCounts(auth_codes_deleted=codes, proxy_tokens_deleted=tokens)
        logger.info(
            "Cleanup complete: %d auth codes, %d proxy tokens deleted",
            counts.auth_codes_deleted,
            counts.proxy_tokens_deleted,
        )
        return counts


__all__ = [
    "AuthCodeGrant",
    "CleanupCounts",
    "HashSecret",
    "IssuedProxyToken",
    "LookupStatus",
    "ProxyTokenService",
]
