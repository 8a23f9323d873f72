"""
Pytest configuration and fixtures for credential envelope tests.
"""

from __future__ import annotations

import base64
import os
import secrets
from pathlib import Path
from typing import AsyncGenerator

import asyncpg
import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from dotenv import load_dotenv

from credential_envelope import (
    AiCredentialService,
    CredentialCipher,
    CredentialService,
    InMemoryStorage,
    KeyBackendResolver,
    ProviderProfileStore,
    VaultSettings,
    derive_key_from_secret,
)
from credential_envelope.migration import CredentialMigrator
from credential_envelope.postgres import PostgresStorage

PROJECT_ROOT = Path(__file__).parent.parent

LOW_ASSURANCE_SECRET = "low-assurance-test-secret"
ROTATED_LOW_ASSURANCE_SECRET = "older-low-assurance-secret"
MANAGED_KMS_SECRET = "managed-kms-test-secret"
LEGACY_SECRET = "legacy-credentials-secret"


def legacy_payload(secret: str, plaintext: str) -> str:
    """Build an unversioned payload the way older deployments wrote them."""
    key = derive_key_from_secret(secret).as_bytes()
    iv = secrets.token_bytes(12)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    parts = (iv, sealed[-16:], sealed[:-16])
    return ".".join(base64.b64encode(p).decode("ascii") for p in parts)


@pytest.fixture
def settings() -> VaultSettings:
    """Both backends configured, development default disabled."""
    return VaultSettings(
        low_assurance_secrets=(LOW_ASSURANCE_SECRET, ROTATED_LOW_ASSURANCE_SECRET),
        managed_kms_secret=MANAGED_KMS_SECRET,
        legacy_secret=LEGACY_SECRET,
        allow_development_default=False,
    )


@pytest.fixture
def low_only_settings() -> VaultSettings:
    """Deployment without a managed-KMS secret."""
    return VaultSettings(
        low_assurance_secrets=(LOW_ASSURANCE_SECRET,),
        allow_development_default=False,
    )


@pytest.fixture
def resolver(settings: VaultSettings) -> KeyBackendResolver:
    return KeyBackendResolver(settings)


@pytest.fixture
def cipher(resolver: KeyBackendResolver) -> CredentialCipher:
    return CredentialCipher(resolver)


@pytest.fixture
def memory_storage() -> InMemoryStorage:
    """Create an in-memory storage instance for testing."""
    return InMemoryStorage()


@pytest.fixture
def profiles(memory_storage: InMemoryStorage, resolver: KeyBackendResolver) -> ProviderProfileStore:
    return ProviderProfileStore(memory_storage, resolver)


@pytest.fixture
def service(
    memory_storage: InMemoryStorage,
    cipher: CredentialCipher,
    profiles: ProviderProfileStore,
) -> CredentialService:
    return CredentialService(memory_storage, cipher, profiles)


@pytest.fixture
def ai_service(
    memory_storage: InMemoryStorage,
    cipher: CredentialCipher,
    profiles: ProviderProfileStore,
) -> AiCredentialService:
    return AiCredentialService(memory_storage, cipher, profiles)


@pytest.fixture
def migrator(
    memory_storage: InMemoryStorage,
    cipher: CredentialCipher,
    profiles: ProviderProfileStore,
) -> CredentialMigrator:
    return CredentialMigrator(memory_storage, cipher, profiles)


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    # Load environment from project root
    load_dotenv(PROJECT_ROOT / ".env")

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    await pool.execute((PROJECT_ROOT / "schema.sql").read_text())
    await pool.execute(
        "TRUNCATE TABLE restaurant_provider_profile_events, restaurant_provider_profiles, "
        "restaurant_delivery_credentials, restaurant_ai_credentials"
    )

    yield pool

    await pool.close()


@pytest.fixture
async def postgres_storage(pg_pool: asyncpg.Pool) -> PostgresStorage:
    """Create a PostgreSQL storage instance for testing."""
    return PostgresStorage(pg_pool)
