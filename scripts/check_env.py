"""Validate OAuth proxy configuration and detect ``.env`` drift.

Commands:

* ``check``: load ``AppSettings`` from the given file and report missing or
  malformed values (including an encryption key that is not 64 hex chars).
* ``record``: validate, then write the file's SHA-256 checksum as a baseline.
* ``verify``: validate, then compare the checksum against the baseline.

Example::

    python -m scripts.check_env record --env-file /srv/oauth-proxy/.env \
        --hash-file /srv/oauth-proxy/.env.sha256
"""

from __future__ import annotations

import argparse
import hashlib
import sys
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from oauth_proxy.core.config import AppSettings, _load_env_file
from oauth_proxy.core.logging import summarize_secret

EXIT_OK = 0
EXIT_VALIDATION_ERROR = 2
EXIT_CHECKSUM_ERROR = 3
EXIT_RUNTIME_ERROR = 5


def _compute_hash(env_file: Path) -> str:
    return hashlib.sha256(env_file.read_bytes()).hexdigest()


def _validate_settings(env_file: Path) -> AppSettings:
    """Load settings from ``env_file``; rotation secrets are parsed eagerly."""
    _load_env_file(str(env_file))
    settings = AppSettings(_env_file=str(env_file))  # type: ignore[call-arg]
    settings.security.hash_secret_entries()
    return settings


def _describe(settings: AppSettings) -> None:
    secret_ids = [secret_id for secret_id, _ in settings.security.hash_secret_entries()]
    print(f"Environment: {settings.environment}")
    print(f"Database: {settings.database_path}")
    print(f"Proxy client: {settings.client.client_id}")
    print(f"Client secret: {summarize_secret(settings.client.client_secret)}")
    print(f"Hash secrets (primary first): {', '.join(secret_ids)}")


def _record_checksum(env_file: Path, hash_file: Path) -> int:
    checksum = _compute_hash(env_file)
    hash_file.write_text(f"{checksum}\n", encoding="utf-8")
    print(f"Recorded checksum to {hash_file} ({checksum})")
    return EXIT_OK


def _verify_checksum(env_file: Path, hash_file: Path) -> int:
    if not hash_file.exists():
        print(
            f"Checksum baseline {hash_file} is missing; run 'record' first.",
            file=sys.stderr,
        )
        return EXIT_RUNTIME_ERROR

    expected = hash_file.read_text(encoding="utf-8").strip()
    actual = _compute_hash(env_file)
    if expected == actual:
        print("Environment checksum OK.")
        return EXIT_OK

    print(
        "Environment checksum mismatch!\n"
        f"  expected: {expected}\n"
        f"  actual:   {actual}",
        file=sys.stderr,
    )
    return EXIT_CHECKSUM_ERROR


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Validate OAuth proxy settings and detect .env drift."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text, needs_hash in (
        ("record", "Validate settings and store the checksum baseline.", True),
        ("verify", "Validate settings and compare against the baseline.", True),
        ("check", "Validate settings only.", False),
    ):
        subparser = subparsers.add_parser(name, help=help_text)
        subparser.add_argument("--env-file", default=".env", type=Path)
        if needs_hash:
            subparser.add_argument("--hash-file", required=True, type=Path)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    env_file: Path = args.env_file

    if not env_file.exists():
        print(f"Environment file {env_file} does not exist.", file=sys.stderr)
        return EXIT_RUNTIME_ERROR

    try:
        settings = _validate_settings(env_file)
    except ValidationError as exc:
        print(
            "Settings validation failed. Missing or invalid values detected:\n"
            f"{exc.json(indent=2)}",
            file=sys.stderr,
        )
        return EXIT_VALIDATION_ERROR
    except ValueError as exc:
        print(f"Settings validation failed: {exc}", file=sys.stderr)
        return EXIT_VALIDATION_ERROR

    handlers: dict[str, Callable[[], int]] = {
        "record": lambda: _record_checksum(env_file, args.hash_file),
        "verify": lambda: _verify_checksum(env_file, args.hash_file),
        "check": lambda: EXIT_OK,
    }
    _describe(settings)
    return handlers[args.command]()


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
