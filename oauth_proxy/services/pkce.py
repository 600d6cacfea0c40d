"""Proof Key for Code Exchange (RFC 7636) helpers.

Stateless: the verifier travels inside the signed OAuth state blob between the
authorization redirect and the callback.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass

CHALLENGE_METHOD = "S256"


@dataclass(frozen=True, slots=True)
class PKCEPair:
    verifier: str
    challenge: str
    method: str = CHALLENGE_METHOD


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier(length: int = 64) -> str:
    """Return ``length`` characters of URL-safe random data (43-128)."""
    if length < 43 or length > 128:
        raise ValueError("Code verifier length must be between 43 and 128.")
    # 3 random bytes encode to 4 characters.
    raw = secrets.token_bytes((length * 3 + 3) // 4)
    return _b64url(raw)[:length]


def generate_code_challenge(verifier: str) -> str:
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_pair(length: int = 64) -> PKCEPair:
    verifier = generate_code_verifier(length)
    return PKCEPair(verifier=verifier, challenge=generate_code_challenge(verifier))


def verify(verifier: str, challenge: str) -> bool:
    """Recompute the challenge and compare in constant time."""
    if not verifier or not challenge:
        return False
    try:
        computed = generate_code_challenge(verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed.encode("ascii"), challenge.encode("utf-8"))


__all__ = [
    "CHALLENGE_METHOD",
    "PKCEPair",
    "generate_code_challenge",
    "generate_code_verifier",
    "generate_pair",
    "verify",
]
