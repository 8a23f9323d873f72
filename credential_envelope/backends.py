"""
Key backends and the resolver that turns configuration into key material.

This module provides:
- KeyBackend: Enumerated key-derivation strategies
- SecurityMode: Tenant-facing name of a backend (free / most_secure)
- KeyBackendResolver: Derives primary and candidate keys per backend

Backends:
- LOW_ASSURANCE: SHA-256 of a shared secret. Several secrets may have been
  used over a deployment's lifetime, so every configured one is a decrypt
  candidate; only the first encrypts.
- MANAGED_KMS: SHA-256 of a single dedicated wrapping secret. If that
  secret is unset the backend is unavailable. There is no fallback.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from .config import DEVELOPMENT_DEFAULT_SECRET, VaultSettings
from .crypto import SecureKey, derive_key_from_secret
from .errors import BackendNotConfiguredError, ConfigError

# Tag written for the low-assurance backend by earlier deployments.
LEGACY_LOW_ASSURANCE_TAG = "vault_oss"


class KeyBackend(Enum):
    """Key backend identifier (embedded in every versioned payload)."""

    LOW_ASSURANCE = "low_assurance"
    MANAGED_KMS = "managed_kms"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_str(cls, s: str) -> KeyBackend:
        """Parse a backend tag, accepting the legacy ``vault_oss`` alias."""
        if s == LEGACY_LOW_ASSURANCE_TAG:
            return cls.LOW_ASSURANCE
        return cls(s)


class SecurityMode(Enum):
    """Tenant-facing security mode."""

    FREE = "free"
    MOST_SECURE = "most_secure"

    def __str__(self) -> str:
        return self.value

    @property
    def backend(self) -> KeyBackend:
        return mode_to_backend(self)


ALL_SECURITY_MODES = (SecurityMode.FREE, SecurityMode.MOST_SECURE)


def mode_to_backend(mode: SecurityMode) -> KeyBackend:
    if mode == SecurityMode.MOST_SECURE:
        return KeyBackend.MANAGED_KMS
    return KeyBackend.LOW_ASSURANCE


def backend_to_mode(backend: KeyBackend) -> SecurityMode:
    if backend == KeyBackend.MANAGED_KMS:
        return SecurityMode.MOST_SECURE
    return SecurityMode.FREE


def _dedupe_secrets(values: List[Optional[str]]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if value is None:
            continue
        trimmed = value.strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        result.append(trimmed)
    return result


class KeyBackendResolver:
    """
    Derives key material for each backend from VaultSettings.

    Pure function of configuration: no I/O and no caching of derived keys
    beyond the lifetime of a call.
    """

    def __init__(self, settings: VaultSettings) -> None:
        self._settings = settings
        kms_keys = self.candidate_keys(KeyBackend.MANAGED_KMS)
        low_keys = self.candidate_keys(KeyBackend.LOW_ASSURANCE, legacy=True)
        if any(key in low_keys for key in kms_keys):
            raise ConfigError(
                "Managed KMS wrapping secret must differ from every low-assurance, "
                "legacy and development default secret"
            )

    @property
    def settings(self) -> VaultSettings:
        return self._settings

    def is_available(self, backend: KeyBackend) -> bool:
        """True when ``backend`` has at least one usable key."""
        return bool(self._secrets(backend, legacy=False))

    def derive_key(self, backend: KeyBackend) -> SecureKey:
        """
        Derive the primary (encryption) key for a backend.

        Raises:
            BackendNotConfiguredError: If no secret is configured for backend
        """
        secrets = self._secrets(backend, legacy=False)
        if not secrets:
            raise BackendNotConfiguredError(backend)
        return derive_key_from_secret(secrets[0])

    def candidate_keys(self, backend: KeyBackend, legacy: bool = False) -> List[SecureKey]:
        """
        Keys to try, in priority order, when decrypting a payload of ``backend``.

        Args:
            backend: Backend declared by the payload
            legacy: True for unversioned payloads, which may also have been
                written with the legacy single-key fallback

        Returns:
            Ordered, de-duplicated list of keys (may be empty)
        """
        return [derive_key_from_secret(s) for s in self._secrets(backend, legacy)]

    def _secrets(self, backend: KeyBackend, legacy: bool) -> List[str]:
        settings = self._settings
        if backend == KeyBackend.MANAGED_KMS:
            return _dedupe_secrets([settings.managed_kms_secret])

        values: List[Optional[str]] = list(settings.low_assurance_secrets)
        if legacy:
            values.append(settings.legacy_secret)
        if settings.allow_development_default:
            values.append(DEVELOPMENT_DEFAULT_SECRET)
        return _dedupe_secrets(values)
