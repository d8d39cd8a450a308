"""Symmetric encryption of message bodies at rest."""

from __future__ import annotations

import hashlib
import logging
import os
from base64 import b64decode, b64encode
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.config import get_settings

logger = logging.getLogger(__name__)

_NONCE_SIZE = 12


class MessageCipher:
    """AES-GCM wrapper producing base64 ``nonce || ciphertext`` tokens."""

    def __init__(self, key: bytes) -> None:
        if len(key) not in (16, 24, 32):
            raise ValueError("AES key must be 16, 24 or 32 bytes long")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_secret(cls, secret: str) -> "MessageCipher":
        return cls(hashlib.sha256(secret.encode("utf-8")).digest())

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        nonce = os.urandom(_NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, token: str | None) -> str:
        """Return the plaintext, or an empty string for empty or unreadable tokens."""

        if not token:
            return ""
        try:
            raw = b64decode(token)
            plaintext = self._aesgcm.decrypt(raw[:_NONCE_SIZE], raw[_NONCE_SIZE:], None)
        except (InvalidTag, ValueError):
            logger.debug("Unable to decrypt message content")
            return ""
        return plaintext.decode("utf-8")


@lru_cache
def get_cipher() -> MessageCipher:
    settings = get_settings()
    if settings.message_encryption_key:
        return MessageCipher(b64decode(settings.message_encryption_key))
    logger.warning(
        "MESSAGE_ENCRYPTION_KEY is not set; deriving the message key from JWT_SECRET_KEY"
    )
    return MessageCipher.from_secret(settings.jwt_secret_key)
