"""
PostgreSQL storage tests. Skipped unless DATABASE_URL is set.
"""

from __future__ import annotations

import asyncio

import pytest

from credential_envelope import (
    CredentialCipher,
    CredentialService,
    DecryptionFailedError,
    KeyBackend,
    ProfileAction,
    ProfileConflictError,
    ProfileState,
    Provider,
    ProviderProfileStore,
    decode_payload,
)
from credential_envelope.ai_keys import AiCredentialService
from credential_envelope.migration import CredentialMigrator
from credential_envelope.models import CredentialRecord

from .conftest import LEGACY_SECRET, legacy_payload

TENANT = "pg-restaurant-1"

DOORDASH_FIELDS = {"apiKey": "dd-api-key", "signingSecret": "dd-signing-secret", "mode": "production"}
UBER_FIELDS = {"clientId": "c", "clientSecret": "s", "customerId": "u", "webhookSigningKey": "w"}


@pytest.fixture
def pg_profiles(postgres_storage, resolver) -> ProviderProfileStore:
    return ProviderProfileStore(postgres_storage, resolver)


@pytest.fixture
def pg_service(postgres_storage, cipher, pg_profiles) -> CredentialService:
    return CredentialService(postgres_storage, cipher, pg_profiles)


class TestPostgresStorage:
    async def test_upsert_and_read(self, pg_service, postgres_storage):
        await pg_service.upsert(TENANT, "doordash", DOORDASH_FIELDS, actor="owner")

        credentials = await pg_service.get_runtime_credentials(TENANT, "doordash")
        assert credentials.api_key == "dd-api-key"

        async with postgres_storage.transaction(TENANT) as tx:
            profile = await tx.get_profile(Provider.DOORDASH)
            events = await tx.list_events()
        assert profile.state == ProfileState.ACTIVE
        assert profile.config_ref_map.to_json()["mode"] == "production"
        assert [e.action for e in events] == [ProfileAction.CREDENTIALS_UPSERTED.value]
        assert events[0].metadata["fieldsUpdated"] == ["api_key", "signing_secret"]

    async def test_switch_is_atomic(self, pg_service, postgres_storage):
        await pg_service.upsert(TENANT, "doordash", DOORDASH_FIELDS)
        await pg_service.upsert(TENANT, "uber", UBER_FIELDS)

        await pg_service.switch_security_mode(TENANT, "most_secure")

        async with postgres_storage.transaction(TENANT) as tx:
            record = await tx.get_credentials()
            uber = await tx.get_profile(Provider.UBER)
        assert decode_payload(record.uber_webhook_signing_key).backend == KeyBackend.MANAGED_KMS
        assert uber.backend == KeyBackend.MANAGED_KMS
        assert uber.profile_version == 2

    async def test_failed_switch_rolls_back(self, pg_service, postgres_storage):
        await pg_service.upsert(TENANT, "doordash", DOORDASH_FIELDS)
        async with postgres_storage.transaction(TENANT) as tx:
            record = await tx.get_credentials()
            record.uber_client_id = legacy_payload("unknown-secret", "c")
            await tx.save_credentials(record)

        with pytest.raises(DecryptionFailedError):
            await pg_service.switch_security_mode(TENANT, "most_secure")

        async with postgres_storage.transaction(TENANT) as tx:
            assert await tx.get_profile(Provider.DELIVERY_SECURITY) is None
            doordash = await tx.get_profile(Provider.DOORDASH)
            after = await tx.get_credentials()
        assert doordash.profile_version == 1
        assert after.doordash_api_key == record.doordash_api_key

    async def test_version_conflict(self, pg_service, postgres_storage):
        await pg_service.upsert(TENANT, "uber", UBER_FIELDS)
        async with postgres_storage.transaction(TENANT) as tx:
            profile = await tx.get_profile(Provider.UBER)
            profile.profile_version = 3
            with pytest.raises(ProfileConflictError):
                await tx.update_profile(profile, expected_version=2)

    async def test_concurrent_upserts_serialized(self, pg_service, postgres_storage):
        await asyncio.gather(
            pg_service.upsert(TENANT, "doordash", DOORDASH_FIELDS),
            pg_service.upsert(TENANT, "uber", UBER_FIELDS),
            pg_service.switch_security_mode(TENANT, "most_secure"),
        )
        summary = await pg_service.get_summary(TENANT)
        assert summary.doordash.configured and summary.uber.configured
        async with postgres_storage.transaction(TENANT) as tx:
            record = await tx.get_credentials()
        assert decode_payload(record.doordash_api_key).backend == summary.security_profile.backend

    async def test_ai_keys(self, postgres_storage, cipher, pg_profiles):
        service = AiCredentialService(postgres_storage, cipher, pg_profiles)
        await service.save_api_key(TENANT, "sk-ant-123456789")
        assert await service.get_api_key(TENANT) == "sk-ant-123456789"
        assert await service.delete_api_key(TENANT) is True
        assert (await service.get_key_status(TENANT)).configured is False

    async def test_migration(self, postgres_storage, cipher, pg_profiles):
        async with postgres_storage.transaction("pg-legacy") as tx:
            await tx.save_credentials(
                CredentialRecord(
                    tenant_id="pg-legacy",
                    doordash_api_key=legacy_payload(LEGACY_SECRET, "k"),
                    doordash_signing_secret=legacy_payload(LEGACY_SECRET, "s"),
                )
            )
        migrator = CredentialMigrator(postgres_storage, cipher, pg_profiles)

        dry = await migrator.run(dry_run=True)
        live = await migrator.run(dry_run=False)

        assert dry.would_migrate == 1
        assert live.migrated == 1
        assert await postgres_storage.list_credential_tenants() == ["pg-legacy"]
