"""
Idempotency records for mutating requests.

A record is keyed by ``(key, method, path)`` and holds the fingerprint of the
request that first used the key together with the response it produced.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import parse_qsl

from oauth_proxy.clients.sqlite_store import SQLiteStore, from_db_time, to_db_time
from oauth_proxy.core.logging import digest_for_log
from oauth_proxy.models.oauth import IdempotencyRecord
from oauth_proxy.services.credential_store import Clock, utc_now

logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
IDEMPOTENCY_HEADER = "idempotency-key"
IDEMPOTENCY_BODY_FIELD = "idempotency_key"
VOLATILE_FIELDS = frozenset(
    {IDEMPOTENCY_BODY_FIELD, "createdAt", "updatedAt", "created_at", "updated_at", "timestamp"}
)


def parse_body(content_type: Optional[str], raw: bytes) -> Any:
    """Decode a request body into JSON-compatible data for fingerprinting."""
    if not raw:
        return {}
    media_type = (content_type or "").split(";")[0].strip().lower()
    text = raw.decode("utf-8", errors="replace")
    if media_type == "application/x-www-form-urlencoded":
        return dict(parse_qsl(text, keep_blank_values=True))
    if media_type.endswith("json") or text.lstrip()[:1] in ("{", "["):
        try:
            return json.loads(text)
        except ValueError:
            return text
    return text


def canonicalize(body: Any) -> str:
    """Stable JSON form: volatile top-level fields dropped, keys sorted recursively."""
    if isinstance(body, dict):
        body = {key: value for key, value in body.items() if key not in VOLATILE_FIELDS}
    return json.dumps(
        body, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )


def compute_fingerprint(
    method: str, path: str, body: Any, principal: Optional[str] = None
) -> str:
    """SHA-256 over ``METHOD:path:canonical-body``, prefixed by the caller when known."""
    data = f"{method.upper()}:{path}:{canonicalize(body)}"
    if principal:
        data = f"{principal}:{data}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


class IdempotencyService:
    """Lookup, upsert and expiry of idempotency records."""

    def __init__(
        self,
        store: SQLiteStore,
        *,
        ttl_seconds: int = 43200,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def _cutoff(self) -> datetime:
        return self._clock() - self._ttl

    def lookup(self, key: str, method: str, path: str) -> Optional[IdempotencyRecord]:
        """Return the live record for the scope, ignoring expired ones."""
        with self._store.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM idempotency_records
                WHERE key = ? AND method = ? AND path = ? AND created_at >= ?
                """,
                (key, method, path, to_db_time(self._cutoff())),
            ).fetchone()
        if not row:
            return None
        return IdempotencyRecord(
            key=row["key"],
            method=row["method"],
            path=row["path"],
            fingerprint=row["fingerprint"],
            response_status=row["response_status"],
            response_body=row["response_body"],
            media_type=row["media_type"],
            created_at=from_db_time(row["created_at"]),
        )

    def save(
        self,
        *,
        key: str,
        method: str,
        path: str,
        fingerprint: str,
        response_status: int,
        response_body: str,
        media_type: Optional[str],
    ) -> None:
        """Upsert the outcome; a racing duplicate write simply overwrites."""
        with self._store.connect() as conn:
            conn.execute(
                """
                INSERT INTO idempotency_records (
                    key, method, path, fingerprint, response_status,
                    response_body, media_type, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(key, method, path) DO UPDATE SET
                    fingerprint = excluded.fingerprint,
                    response_status = excluded.response_status,
                    response_body = excluded.response_body,
                    media_type = excluded.media_type,
                    created_at = excluded.created_at
                """,
                (
                    key,
                    method,
                    path,
                    fingerprint,
                    response_status,
                    response_body,
                    media_type,
                    to_db_time(self._clock()),
                ),
            )
        logger.info(
            "[IDEMPOTENCY] Stored - Key: %s, Method: %s, Path: %s",
            digest_for_log(key),
            method,
            path,
        )

    def cleanup_expired(self) -> int:
        with self._store.connect() as conn:
            deleted = conn.execute(
                "DELETE FROM idempotency_records WHERE created_at < ?",
                (to_db_time(self._cutoff()),),
            ).rowcount
        logger.info("[IDEMPOTENCY] Cleaned up %d expired records", deleted)
        return deleted


__all__ = [
    "IDEMPOTENCY_BODY_FIELD",
    "IDEMPOTENCY_HEADER",
    "MUTATING_METHODS",
    "IdempotencyService",
    "canonicalize",
    "compute_fingerprint",
    "parse_body",
]
