"""
Tests for the encrypted payload codec.
"""

from __future__ import annotations

import base64

import pytest

from credential_envelope import KeyBackend, MalformedPayloadError
from credential_envelope.envelope import (
    PAYLOAD_VERSION,
    decode_payload,
    encode_payload,
    is_versioned,
)

IV = bytes(range(12))
TAG = bytes(range(100, 116))
CIPHERTEXT = b"ciphertext-bytes"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


LEGACY_BODY = f"{_b64(IV)}.{_b64(TAG)}.{_b64(CIPHERTEXT)}"


class TestEncode:
    def test_versioned_shape(self):
        payload = encode_payload(KeyBackend.MANAGED_KMS, IV, TAG, CIPHERTEXT)
        assert payload == f"v1:managed_kms:{LEGACY_BODY}"
        assert is_versioned(payload)

    def test_decode_restores_parts(self):
        payload = encode_payload(KeyBackend.LOW_ASSURANCE, IV, TAG, CIPHERTEXT)
        parsed = decode_payload(payload)
        assert parsed.backend == KeyBackend.LOW_ASSURANCE
        assert (parsed.iv, parsed.tag, parsed.ciphertext) == (IV, TAG, CIPHERTEXT)
        assert parsed.legacy is False


class TestDecodeLegacy:
    def test_unversioned_is_low_assurance(self):
        parsed = decode_payload(LEGACY_BODY)
        assert parsed.legacy is True
        assert parsed.backend == KeyBackend.LOW_ASSURANCE
        assert parsed.ciphertext == CIPHERTEXT
        assert not is_versioned(LEGACY_BODY)

    def test_vault_oss_alias(self):
        parsed = decode_payload(f"{PAYLOAD_VERSION}:vault_oss:{LEGACY_BODY}")
        assert parsed.backend == KeyBackend.LOW_ASSURANCE
        assert parsed.legacy is False


class TestDecodeMalformed:
    @pytest.mark.parametrize(
        "payload",
        [
            "",
            "v2:managed_kms:" + LEGACY_BODY,
            "v1:unknown_backend:" + LEGACY_BODY,
            "v1:managed_kms",
            "v1:managed_kms:extra:" + LEGACY_BODY,
            f"{_b64(IV)}.{_b64(TAG)}",
            f"{_b64(IV)}.{_b64(TAG)}.{_b64(CIPHERTEXT)}.extra",
            f"{_b64(IV)}..{_b64(CIPHERTEXT)}",
            f"{_b64(IV)}.{_b64(TAG)}.not*base64",
            f"{_b64(IV[:8])}.{_b64(TAG)}.{_b64(CIPHERTEXT)}",
            f"{_b64(IV)}.{_b64(TAG[:12])}.{_b64(CIPHERTEXT)}",
        ],
    )
    def test_rejected(self, payload):
        with pytest.raises(MalformedPayloadError):
            decode_payload(payload)

    def test_non_string_rejected(self):
        with pytest.raises(MalformedPayloadError):
            decode_payload(None)  # type: ignore[arg-type]
