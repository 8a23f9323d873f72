"""
Cryptographic primitives for AES-256-GCM credential encryption.

This module provides:
- SecureKey: Secure key wrapper with best-effort zeroization
- SealedSecret: Nonce, authentication tag and ciphertext as separate parts
- AesGcmCipher: AES-256-GCM encryption/decryption operations
- derive_key_from_secret: SHA-256 derivation of a 32-byte key from a shared secret
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import DecryptionFailedError

# Cryptographic constants
AES_256_KEY_SIZE: int = 32  # 256 bits
NONCE_SIZE: int = 12  # 96 bits (standard for AES-GCM)
TAG_SIZE: int = 16  # 128 bits (authentication tag)


class SecureKey:
    """
    Secure key wrapper with automatic memory cleanup on deletion.

    Uses bytearray internally for mutable zeroing in __del__.
    Note: Python's garbage collector doesn't guarantee immediate cleanup,
    so this is best-effort zeroization.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise TypeError("Key must be bytes or bytearray")
        if len(key_bytes) != AES_256_KEY_SIZE:
            raise ValueError(
                f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(key_bytes)}"
            )
        self._bytes = bytearray(key_bytes)

    def as_bytes(self) -> bytes:
        """Return key as immutable bytes."""
        return bytes(self._bytes)

    def __len__(self) -> int:
        return len(self._bytes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecureKey):
            return NotImplemented
        return secrets.compare_digest(bytes(self._bytes), bytes(other._bytes))

    def __repr__(self) -> str:
        """Redacted representation to prevent accidental key disclosure."""
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        """Zero memory on deletion (best-effort)."""
        if hasattr(self, "_bytes"):
            for i in range(len(self._bytes)):
                self._bytes[i] = 0


@dataclass(frozen=True)
class SealedSecret:
    """
    AES-GCM output split into its three parts.

    AESGCM appends the 16-byte tag to the ciphertext; the credential
    payload format carries it as a separate segment.
    """

    nonce: bytes  # 12 bytes
    tag: bytes  # 16 bytes
    ciphertext: bytes


def derive_key_from_secret(secret: str) -> SecureKey:
    """Derive a 32-byte key as the SHA-256 digest of a UTF-8 secret."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(secret.encode("utf-8"))
    return SecureKey(digest.finalize())


class AesGcmCipher:
    """
    AES-256-GCM authenticated encryption.

    Payloads carry no associated data, so stored credentials written by
    earlier deployments still open.
    """

    @staticmethod
    def seal(key: SecureKey, plaintext: bytes) -> SealedSecret:
        """
        Encrypt plaintext with AES-256-GCM under a fresh random nonce.

        Args:
            key: 32-byte encryption key
            plaintext: Data to encrypt

        Returns:
            SealedSecret with nonce, tag and ciphertext
        """
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = AESGCM(key.as_bytes()).encrypt(nonce, plaintext, None)
        return SealedSecret(
            nonce=nonce,
            tag=sealed[-TAG_SIZE:],
            ciphertext=sealed[:-TAG_SIZE],
        )

    @staticmethod
    def open(key: SecureKey, sealed: SealedSecret) -> bytes:
        """
        Decrypt and authenticate a sealed secret.

        Raises:
            DecryptionFailedError: If the tag does not verify under this key
        """
        if len(sealed.nonce) != NONCE_SIZE or len(sealed.tag) != TAG_SIZE:
            raise DecryptionFailedError("Decryption failed")

        try:
            return AESGCM(key.as_bytes()).decrypt(
                sealed.nonce, sealed.ciphertext + sealed.tag, None
            )
        except InvalidTag:
            # Generic error to prevent oracle attacks
            raise DecryptionFailedError("Decryption failed") from None
