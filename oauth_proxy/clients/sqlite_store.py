"""SQLite-backed document store for credentials, bridges, proxy tokens and
idempotency records."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS credentials (
        subject_id TEXT PRIMARY KEY,
        email TEXT,
        access_ciphertext TEXT NOT NULL,
        access_iv TEXT NOT NULL,
        access_auth_tag TEXT NOT NULL,
        refresh_ciphertext TEXT NOT NULL,
        refresh_iv TEXT NOT NULL,
        refresh_auth_tag TEXT NOT NULL,
        token_expiry TEXT,
        last_used_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        refresh_token_revoked INTEGER NOT NULL DEFAULT 0,
        last_refresh_error TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_credentials_expiry ON credentials (token_expiry)",
    """
    CREATE TABLE IF NOT EXISTS auth_bridges (
        auth_code TEXT PRIMARY KEY,
        subject_id TEXT NOT NULL,
        client_state TEXT,
        client_redirect_uri TEXT NOT NULL,
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        used INTEGER NOT NULL DEFAULT 0,
        used_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_auth_bridges_expiry ON auth_bridges (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS proxy_tokens (
        token_hash TEXT PRIMARY KEY,
        token_prefix TEXT NOT NULL,
        subject_id TEXT NOT NULL,
        hash_secret_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        last_used_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_proxy_tokens_expiry ON proxy_tokens (expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_proxy_tokens_subject ON proxy_tokens (subject_id)",
    """
    CREATE TABLE IF NOT EXISTS idempotency_records (
        key TEXT NOT NULL,
        method TEXT NOT NULL,
        path TEXT NOT NULL,
        fingerprint TEXT NOT NULL,
        response_status INTEGER NOT NULL,
        response_body TEXT NOT NULL,
        media_type TEXT,
        created_at TEXT NOT NULL,
        PRIMARY KEY (key, method, path)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_idempotency_created ON idempotency_records (created_at)",
)


def to_db_time(value: datetime) -> str:
    """Serialize as UTC ISO-8601 with fixed precision so strings sort chronologically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLiteStore:
    """Owns the database file and schema; services issue their own statements."""

    def __init__(self, db_path: str) -> None:
        self._db_path = Path(db_path)
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self.connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)


__all__ = ["SQLiteStore", "from_db_time", "to_db_time"]
