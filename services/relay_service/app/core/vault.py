"""Authenticated encryption of upstream credentials at rest (AES-256-GCM)."""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from typing import NamedTuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from shared.errors import InternalError

NONCE_SIZE = 12
TAG_SIZE = 16


class SecretDecryptionError(InternalError):
    """Ciphertext failed authentication (tampered, truncated or wrong key)."""


class SealedSecret(NamedTuple):
    cipher_text: str
    nonce: str


class SecretVault:
    """Encrypt and decrypt small secrets with a key derived from operator key material.

    The 32-byte key is the SHA-256 digest of the configured material and never
    leaves this object. Ciphertext carries the 16-byte GCM tag appended.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("Encryption key material is required")
        self._aead = AESGCM(hashlib.sha256(key_material.encode("utf-8")).digest())

    def encrypt(self, plaintext: bytes) -> tuple[bytes, bytes]:
        nonce = os.urandom(NONCE_SIZE)
        return self._aead.encrypt(nonce, plaintext, None), nonce

    def decrypt(self, cipher_text: bytes, nonce: bytes) -> bytes:
        if len(cipher_text) < TAG_SIZE or len(nonce) != NONCE_SIZE:
            raise SecretDecryptionError("Ciphertext is invalid")
        try:
            return self._aead.decrypt(nonce, cipher_text, None)
        except InvalidTag as exc:
            raise SecretDecryptionError("Ciphertext failed verification") from exc

    def seal(self, plaintext: str) -> SealedSecret:
        """Encrypt text and return base64 ciphertext and nonce for storage."""
        cipher_text, nonce = self.encrypt(plaintext.encode("utf-8"))
        return SealedSecret(
            cipher_text=base64.b64encode(cipher_text).decode("ascii"),
            nonce=base64.b64encode(nonce).decode("ascii"),
        )

    def unseal(self, cipher_text: str, nonce: str) -> str:
        try:
            raw_cipher = base64.b64decode(cipher_text, validate=True)
            raw_nonce = base64.b64decode(nonce, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SecretDecryptionError("Ciphertext is not valid base64") from exc
        return self.decrypt(raw_cipher, raw_nonce).decode("utf-8")
