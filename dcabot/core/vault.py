"""Credential vault: AES-256-GCM encryption of exchange API keys at rest.

Blob format is three hex fields joined by colons::

    <16-byte IV>:<16-byte auth tag>:<ciphertext>
"""

from __future__ import annotations

import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from dcabot.core.errors import DecryptionFailed

logger = logging.getLogger(__name__)

_KEY_SIZE = 32
_IV_SIZE = 16
_TAG_SIZE = 16


def derive_key(secret: str) -> bytes:
    """Pad (with ``"0"``) or truncate *secret* to a 32-byte AES-256 key."""
    return secret.ljust(_KEY_SIZE, "0").encode("utf-8")[:_KEY_SIZE]


class CredentialVault:
    """Encrypts and decrypts credential strings with a process-wide secret.

    Parameters
    ----------
    secret:
        Vault secret (``DCABOT_ENCRYPTION_SECRET``).
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Credential vault secret must not be empty")
        self._cipher = AESGCM(derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt *plaintext* and return an ``iv:tag:ciphertext`` hex blob."""
        iv = os.urandom(_IV_SIZE)
        sealed = self._cipher.encrypt(iv, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-_TAG_SIZE], sealed[-_TAG_SIZE:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, blob: str) -> str:
        """Decrypt a blob produced by :meth:`encrypt`.

        Raises
        ------
        DecryptionFailed
            If the blob is malformed or the authentication tag does not verify.
        """
        parts = blob.split(":") if isinstance(blob, str) else []
        if len(parts) != 3:
            raise DecryptionFailed("Invalid encrypted text format")

        try:
            iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as e:
            raise DecryptionFailed(f"Invalid hex in encrypted text: {e}") from e

        if len(iv) != _IV_SIZE or len(tag) != _TAG_SIZE:
            raise DecryptionFailed("Invalid IV or authentication tag length")

        try:
            plaintext = self._cipher.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            logger.warning("Credential blob failed authentication")
            raise DecryptionFailed("Authentication tag mismatch") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionFailed("Decrypted data is not valid UTF-8") from e

    @staticmethod
    def is_encrypted(text: str) -> bool:
        """Return True if *text* looks like a vault blob."""
        parts = text.split(":")
        if len(parts) != 3 or len(parts[0]) != _IV_SIZE * 2 or len(parts[1]) != _TAG_SIZE * 2:
            return False
        try:
            for p in parts:
                binascii.unhexlify(p)
        except (binascii.Error, ValueError):
            return False
        return True

    @staticmethod
    def mask(value: str, prefix: int = 4, suffix: int = 4) -> str:
        """Return a masked representation of an API key for display."""
        token = (value or "").strip()
        if not token:
            return ""
        if len(token) <= prefix + suffix:
            return "*" * len(token)
        return f"{token[:prefix]}…{token[-suffix:]}"
