"""
Exception classes for credential vault operations.

None of these messages may carry secret material: only tenant ids,
provider names, backend names and slot names.
"""

from __future__ import annotations


class CredentialVaultError(Exception):
    """Base exception for all credential vault operations."""

    pass


class MalformedPayloadError(CredentialVaultError):
    """Encrypted payload string does not parse (corruption or tampering)."""

    pass


class BackendNotConfiguredError(CredentialVaultError):
    """Requested key backend has no key material available."""

    def __init__(self, backend: object, message: str | None = None) -> None:
        self.backend = backend
        super().__init__(message or f"Key backend is not configured: {backend}")


class DecryptionFailedError(CredentialVaultError):
    """Authentication tag verification failed for every candidate key."""

    pass


class IncompleteCredentialSetError(CredentialVaultError, ValueError):
    """A provider's mandatory fields are not all present after merging."""

    def __init__(self, provider: object, missing: list[str]) -> None:
        self.provider = provider
        self.missing = list(missing)
        super().__init__(
            f"{provider} credentials require {', '.join(self.missing)}"
        )


class StorageError(CredentialVaultError):
    """Storage backend error (database, in-memory, etc.)."""

    pass


class ProfileConflictError(StorageError):
    """Provider profile changed underneath an update (version mismatch)."""

    pass


class ConfigError(CredentialVaultError):
    """Configuration error."""

    pass
