"""
Credential cipher: encrypts and decrypts individual secret values.

Encryption always uses the backend's primary key and emits the versioned
payload. Decryption reads the backend from the payload and tries every
candidate key of that backend (and only that backend) in order.
"""

from __future__ import annotations

import logging

from .backends import KeyBackend, KeyBackendResolver
from .crypto import AesGcmCipher
from .envelope import decode_payload, encode_payload
from .errors import BackendNotConfiguredError, DecryptionFailedError

logger = logging.getLogger(__name__)


class CredentialCipher:
    """AES-256-GCM secret encryption over the key backend resolver."""

    def __init__(self, resolver: KeyBackendResolver) -> None:
        self._resolver = resolver

    @property
    def resolver(self) -> KeyBackendResolver:
        return self._resolver

    def encrypt(self, plaintext: str, backend: KeyBackend) -> str:
        """
        Encrypt a secret under ``backend``'s primary key.

        Args:
            plaintext: Secret value (never logged)
            backend: Target key backend

        Returns:
            Versioned payload string

        Raises:
            ValueError: If plaintext is empty
            BackendNotConfiguredError: If backend has no key material
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty credential")

        key = self._resolver.derive_key(backend)
        sealed = AesGcmCipher.seal(key, plaintext.encode("utf-8"))
        return encode_payload(backend, sealed.nonce, sealed.tag, sealed.ciphertext)

    def decrypt(self, payload: str) -> str:
        """
        Decrypt a versioned or legacy payload.

        Raises:
            MalformedPayloadError: If the payload does not parse
            BackendNotConfiguredError: If the declared backend has no keys
            DecryptionFailedError: If no candidate key authenticates it
        """
        parsed = decode_payload(payload)
        candidates = self._resolver.candidate_keys(parsed.backend, legacy=parsed.legacy)
        if not candidates:
            raise BackendNotConfiguredError(parsed.backend)

        for index, key in enumerate(candidates):
            try:
                plaintext = AesGcmCipher.open(key, parsed.sealed)
            except DecryptionFailedError:
                continue
            if index > 0:
                logger.debug(
                    "Credential decrypted with non-primary key",
                    extra={"backend": parsed.backend.value, "candidate_index": index},
                )
            return plaintext.decode("utf-8")

        logger.warning(
            "Credential decryption failed for every candidate key",
            extra={
                "backend": parsed.backend.value,
                "legacy": parsed.legacy,
                "candidates": len(candidates),
            },
        )
        raise DecryptionFailedError(
            f"Failed to decrypt credential with any {parsed.backend.value} key"
        )

    def reencrypt(self, payload: str, backend: KeyBackend) -> str:
        """Decrypt ``payload`` and encrypt the plaintext again under ``backend``."""
        plaintext = self.decrypt(payload)
        try:
            return self.encrypt(plaintext, backend)
        finally:
            # Best effort
            del plaintext

    @staticmethod
    def payload_backend(payload: str) -> KeyBackend:
        """Backend declared by a payload (low-assurance for legacy payloads)."""
        return decode_payload(payload).backend
