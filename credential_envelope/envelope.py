"""
Encrypted credential payload codec.

Versioned form:  ``v1:{backend}:{iv_b64}.{tag_b64}.{ciphertext_b64}``
Legacy form:     ``{iv_b64}.{tag_b64}.{ciphertext_b64}`` (low-assurance backend)

Pure string handling, no key material involved. A payload either parses
completely in one of the two shapes or raises MalformedPayloadError.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass

from .backends import KeyBackend
from .crypto import NONCE_SIZE, TAG_SIZE, SealedSecret
from .errors import MalformedPayloadError

PAYLOAD_VERSION = "v1"


@dataclass(frozen=True)
class EncryptedPayload:
    """Decoded payload parts."""

    backend: KeyBackend
    iv: bytes
    tag: bytes
    ciphertext: bytes
    legacy: bool = False

    @property
    def sealed(self) -> SealedSecret:
        return SealedSecret(nonce=self.iv, tag=self.tag, ciphertext=self.ciphertext)


def _b64(data: bytes) -> str:
    return base64.standard_b64encode(data).decode("ascii")


def _unb64(segment: str) -> bytes:
    try:
        return base64.b64decode(segment.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError):
        raise MalformedPayloadError("Invalid base64 segment in encrypted payload") from None


def encode_payload(backend: KeyBackend, iv: bytes, tag: bytes, ciphertext: bytes) -> str:
    """Encode parts into the versioned payload string."""
    return f"{PAYLOAD_VERSION}:{backend.value}:{_b64(iv)}.{_b64(tag)}.{_b64(ciphertext)}"


def is_versioned(payload: str) -> bool:
    """True when ``payload`` carries the current version prefix."""
    return payload.startswith(f"{PAYLOAD_VERSION}:")


def decode_payload(payload: str) -> EncryptedPayload:
    """
    Parse a versioned or legacy payload string.

    Raises:
        MalformedPayloadError: On unknown version or backend tag, wrong
            segment count, empty segments, invalid base64, or wrong
            IV/tag length
    """
    if not isinstance(payload, str) or not payload:
        raise MalformedPayloadError("Encrypted payload is empty")

    legacy = ":" not in payload
    if legacy:
        backend = KeyBackend.LOW_ASSURANCE
        body = payload
    else:
        parts = payload.split(":")
        if len(parts) != 3 or parts[0] != PAYLOAD_VERSION:
            raise MalformedPayloadError("Unsupported encrypted payload version")
        try:
            backend = KeyBackend.from_str(parts[1])
        except ValueError:
            raise MalformedPayloadError("Unrecognized key backend in encrypted payload") from None
        body = parts[2]

    segments = body.split(".")
    if len(segments) != 3 or not all(segments):
        raise MalformedPayloadError("Encrypted payload must have three segments")

    iv, tag, ciphertext = (_unb64(segment) for segment in segments)
    if len(iv) != NONCE_SIZE:
        raise MalformedPayloadError(f"Invalid IV length: expected {NONCE_SIZE}, got {len(iv)}")
    if len(tag) != TAG_SIZE:
        raise MalformedPayloadError(f"Invalid tag length: expected {TAG_SIZE}, got {len(tag)}")

    return EncryptedPayload(
        backend=backend,
        iv=iv,
        tag=tag,
        ciphertext=ciphertext,
        legacy=legacy,
    )
