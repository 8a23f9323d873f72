"""
Credential Envelope

Multi-tenant vault for delivery provider credentials. Every secret is
encrypted with AES-256-GCM under a selectable key backend, tagged with that
backend in a versioned payload string, and stored next to per-provider
security profiles and an append-only audit trail.

Quick Start
-----------
```python
import asyncio
from credential_envelope import (
    CredentialCipher,
    CredentialService,
    InMemoryStorage,
    KeyBackendResolver,
    ProviderProfileStore,
    VaultSettings,
)

async def main():
    settings = VaultSettings.from_env()
    resolver = KeyBackendResolver(settings)
    storage = InMemoryStorage()
    profiles = ProviderProfileStore(storage, resolver)
    service = CredentialService(storage, CredentialCipher(resolver), profiles)

    await service.upsert(
        "restaurant-1",
        "doordash",
        {"apiKey": "dd-key", "signingSecret": "dd-secret", "mode": "production"},
        actor="owner@example.com",
    )
    summary = await service.get_summary("restaurant-1")
    credentials = await service.get_runtime_credentials("restaurant-1", "doordash")

    await service.switch_security_mode("restaurant-1", "most_secure")

asyncio.run(main())
```

Key Features
------------
- **AES-256-GCM**: Authenticated encryption with a fresh IV per secret
- **Key Backends**: Low-assurance shared secret or dedicated managed-KMS secret
- **Versioned Payloads**: ``v1:{backend}:{iv}.{tag}.{ciphertext}``, legacy
  unversioned payloads still readable
- **Atomic Rekey**: Switching security mode re-encrypts every secret in one
  transaction
- **Audit Trail**: One event per profile mutation
- **PostgreSQL Storage**: asyncpg backend with per-tenant advisory locks
"""

__version__ = "0.1.0"

# =============================================================================
# Crypto Exports
# =============================================================================

from .crypto import (
    AES_256_KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    AesGcmCipher,
    SealedSecret,
    SecureKey,
    derive_key_from_secret,
)

# =============================================================================
# Error Exports
# =============================================================================

from .errors import (
    BackendNotConfiguredError,
    ConfigError,
    CredentialVaultError,
    DecryptionFailedError,
    IncompleteCredentialSetError,
    MalformedPayloadError,
    ProfileConflictError,
    StorageError,
)

# =============================================================================
# Configuration and Key Backends
# =============================================================================

from .backends import KeyBackend, KeyBackendResolver, SecurityMode
from .config import VaultSettings
from .envelope import EncryptedPayload, decode_payload, encode_payload, is_versioned
from .cipher import CredentialCipher

# =============================================================================
# Records and Storage
# =============================================================================

from .models import (
    AiCredentialRecord,
    CredentialRecord,
    DeliveryMode,
    DoorDashConfigRefMap,
    ProfileAction,
    ProfileState,
    Provider,
    ProviderProfileEvent,
    ProviderSecurityProfile,
    UberConfigRefMap,
)
from .storage import CredentialStorage, InMemoryStorage, StorageTransaction

# =============================================================================
# Services (Primary API)
# =============================================================================

from .providers import (
    DoorDashCredentialPayload,
    DoorDashRuntimeCredentials,
    UberCredentialPayload,
    UberRuntimeCredentials,
)
from .profiles import ProviderProfileStore, SecurityProfileSummary
from .service import CredentialService, CredentialSummary
from .ai_keys import AiCredentialService, AiKeyStatus
from .migration import CredentialMigrator, MigrationReport, RowStatus

# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "AES_256_KEY_SIZE",
    "NONCE_SIZE",
    "TAG_SIZE",
    "AesGcmCipher",
    "SealedSecret",
    "SecureKey",
    "derive_key_from_secret",
    # Errors
    "CredentialVaultError",
    "MalformedPayloadError",
    "BackendNotConfiguredError",
    "DecryptionFailedError",
    "IncompleteCredentialSetError",
    "StorageError",
    "ProfileConflictError",
    "ConfigError",
    # Configuration and key backends
    "VaultSettings",
    "KeyBackend",
    "SecurityMode",
    "KeyBackendResolver",
    "EncryptedPayload",
    "encode_payload",
    "decode_payload",
    "is_versioned",
    "CredentialCipher",
    # Records and storage
    "Provider",
    "ProfileState",
    "DeliveryMode",
    "ProfileAction",
    "DoorDashConfigRefMap",
    "UberConfigRefMap",
    "CredentialRecord",
    "ProviderSecurityProfile",
    "ProviderProfileEvent",
    "AiCredentialRecord",
    "CredentialStorage",
    "StorageTransaction",
    "InMemoryStorage",
    # Services
    "DoorDashCredentialPayload",
    "UberCredentialPayload",
    "DoorDashRuntimeCredentials",
    "UberRuntimeCredentials",
    "ProviderProfileStore",
    "SecurityProfileSummary",
    "CredentialService",
    "CredentialSummary",
    "AiCredentialService",
    "AiKeyStatus",
    "CredentialMigrator",
    "MigrationReport",
    "RowStatus",
]
