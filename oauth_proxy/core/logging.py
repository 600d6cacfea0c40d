"""
Logging utilities for the FastAPI application and the refresh scheduler.

Provides a consistent logging format and helpers that keep secrets out of logs.
"""

import hashlib
import logging
import sys
from typing import Optional


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging with a sensible default format."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )


def summarize_secret(value: Optional[str]) -> str:
    """Render a secret as ``abcd…wxyz (len=N)`` so logs can be correlated safely."""
    if not value or len(value) <= 8:
        return "[redacted]"
    return f"{value[:4]}…{value[-4:]} (len={len(value)})"


def digest_for_log(value: str) -> str:
    """Short, irreversible digest used to correlate client-supplied keys."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


__all__ = ["configure_logging", "digest_for_log", "summarize_secret"]
