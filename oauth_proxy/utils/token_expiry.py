"""Expiry computation for provider token grants."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_ACCESS_TOKEN_LIFETIME = timedelta(hours=1)


def determine_expiry(
    *,
    expiry_date_ms: Optional[int],
    expires_in: Optional[int],
    now: datetime,
) -> datetime:
    """Absolute expiry when the provider sends one, else relative, else one hour.

    ``expiry_date_ms`` is always epoch milliseconds and ``expires_in`` always
    seconds; values are never reinterpreted by magnitude.
    """
    if expiry_date_ms:
        return datetime.fromtimestamp(expiry_date_ms / 1000, tz=timezone.utc)
    if expires_in and expires_in > 0:
        return now + timedelta(seconds=expires_in)
    logger.warning("No expiry information in token response, using 1 hour default")
    return now + DEFAULT_ACCESS_TOKEN_LIFETIME


def is_expiring(
    expiry: Optional[datetime], *, now: datetime, buffer: timedelta = timedelta(minutes=5)
) -> bool:
    """True when ``expiry`` is unknown or falls within ``buffer`` of ``now``."""
    if expiry is None:
        return True
    return now >= expiry - buffer


__all__ = ["DEFAULT_ACCESS_TOKEN_LIFETIME", "determine_expiry", "is_expiring"]
