"""Authenticated envelope encryption for provider tokens at rest."""

from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from oauth_proxy.core.errors import DecryptionError
from oauth_proxy.models.oauth import EncryptedToken

_IV_BYTES = 12
_TAG_BYTES = 16


class TokenCipherService:
    """Encrypt and decrypt sensitive strings with AES-256-GCM."""

    def __init__(self, *, key_hex: str) -> None:
        if not key_hex:
            raise ValueError("Token encryption key must be provided.")
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as exc:
            raise ValueError("Token encryption key must be hexadecimal.") from exc
        if len(key) != 32:
            raise ValueError("Token encryption key must be 32 bytes (64 hex chars).")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> EncryptedToken:
        """Encrypt a plaintext string under a fresh random IV."""
        iv = os.urandom(_IV_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        return EncryptedToken(
            ciphertext=sealed[:-_TAG_BYTES].hex(),
            iv=iv.hex(),
            auth_tag=sealed[-_TAG_BYTES:].hex(),
        )

    def decrypt(self, ciphertext: str, iv: str, auth_tag: str) -> str:
        """Decrypt an envelope, raising ``DecryptionError`` if the tag does not verify."""
        try:
            iv_bytes = bytes.fromhex(iv)
            sealed = bytes.fromhex(ciphertext) + bytes.fromhex(auth_tag)
        except (TypeError, ValueError) as exc:
            raise DecryptionError("Encrypted token is not valid hex.") from exc
        if len(iv_bytes) != _IV_BYTES or len(sealed) < _TAG_BYTES:
            raise DecryptionError("Encrypted token envelope is malformed.")
        try:
            plaintext = self._aesgcm.decrypt(iv_bytes, sealed, None)
        except InvalidTag as exc:
            raise DecryptionError() from exc
        return plaintext.decode("utf-8")

    def decrypt_envelope(self, envelope: EncryptedToken) -> str:
        return self.decrypt(envelope.ciphertext, envelope.iv, envelope.auth_tag)


__all__ = ["EncryptedToken", "TokenCipherService"]
