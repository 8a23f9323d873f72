"""
PostgreSQL storage backend.

This module provides:
- PostgresStorage: asyncpg-backed CredentialStorage
- _PostgresTransaction: unit of work on one pooled connection

Tables (see schema.sql):
- restaurant_delivery_credentials: one wide row per tenant
- restaurant_provider_profiles: one row per (tenant, provider)
- restaurant_provider_profile_events: append-only audit log
- restaurant_ai_credentials: one row per (tenant, AI provider)

Concurrency:
- Each transaction takes ``pg_advisory_xact_lock`` on the tenant id, so
  upserts and security-mode switches for one tenant are serialized
- Profile updates also check the expected ``profile_version``
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import asyncpg

from .backends import KeyBackend
from .errors import ProfileConflictError, StorageError
from .models import (
    AiCredentialRecord,
    CredentialRecord,
    ProfileState,
    Provider,
    ProviderProfileEvent,
    ProviderSecurityProfile,
    parse_config_ref_map,
)
from .storage import CredentialStorage, StorageTransaction

_CREDENTIAL_COLUMNS = """
    id, restaurant_id, doordash_api_key_encrypted, doordash_signing_secret_encrypted,
    doordash_mode, uber_client_id_encrypted, uber_client_secret_encrypted,
    uber_customer_id_encrypted, uber_webhook_signing_key_encrypted,
    created_at, updated_at
"""

_PROFILE_COLUMNS = """
    id, restaurant_id, provider, config_ref_map, profile_version, profile_state,
    key_backend, dek_version, created_at, updated_at, rotated_at
"""

_EVENT_COLUMNS = """
    id, restaurant_id, profile_id, provider, action, actor, profile_version,
    outcome, correlation_id, metadata, created_at
"""

_AI_COLUMNS = """
    id, restaurant_id, provider, encrypted_api_key, key_last_four, is_valid,
    created_at, updated_at
"""


def _load_json(value):
    if value is None:
        return None
    if isinstance(value, str):
        return json.loads(value)
    return value


class _PostgresTransaction(StorageTransaction):
    """StorageTransaction bound to a connection inside an open transaction."""

    def __init__(self, conn: asyncpg.Connection, tenant_id: str) -> None:
        super().__init__(tenant_id)
        self._conn = conn

    async def get_credentials(self) -> Optional[CredentialRecord]:
        query = f"""
            SELECT {_CREDENTIAL_COLUMNS}
            FROM restaurant_delivery_credentials
            WHERE restaurant_id = $1
        """
        try:
            row = await self._conn.fetchrow(query, self.tenant_id)
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to get credentials: {e}") from e
        return self._row_to_credentials(row) if row else None

    async def save_credentials(self, record: CredentialRecord) -> CredentialRecord:
        self._check_tenant(record.tenant_id)
        query = f"""
            INSERT INTO restaurant_delivery_credentials ({_CREDENTIAL_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (restaurant_id) DO UPDATE SET
                doordash_api_key_encrypted = EXCLUDED.doordash_api_key_encrypted,
                doordash_signing_secret_encrypted = EXCLUDED.doordash_signing_secret_encrypted,
                doordash_mode = EXCLUDED.doordash_mode,
                uber_client_id_encrypted = EXCLUDED.uber_client_id_encrypted,
                uber_client_secret_encrypted = EXCLUDED.uber_client_secret_encrypted,
                uber_customer_id_encrypted = EXCLUDED.uber_customer_id_encrypted,
                uber_webhook_signing_key_encrypted = EXCLUDED.uber_webhook_signing_key_encrypted,
                updated_at = EXCLUDED.updated_at
            RETURNING {_CREDENTIAL_COLUMNS}
        """
        try:
            row = await self._conn.fetchrow(
                query,
                record.id,
                record.tenant_id,
                record.doordash_api_key,
                record.doordash_signing_secret,
                record.doordash_mode,
                record.uber_client_id,
                record.uber_client_secret,
                record.uber_customer_id,
                record.uber_webhook_signing_key,
                record.created_at,
                record.updated_at,
            )
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to save credentials: {e}") from e
        return self._row_to_credentials(row)

    async def get_profile(self, provider: Provider) -> Optional[ProviderSecurityProfile]:
        query = f"""
            SELECT {_PROFILE_COLUMNS}
            FROM restaurant_provider_profiles
            WHERE restaurant_id = $1 AND provider = $2
        """
        try:
            row = await self._conn.fetchrow(query, self.tenant_id, provider.value)
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to get provider profile: {e}") from e
        return self._row_to_profile(row) if row else None

    async def insert_profile(self, profile: ProviderSecurityProfile) -> ProviderSecurityProfile:
        self._check_tenant(profile.tenant_id)
        query = f"""
            INSERT INTO restaurant_provider_profiles ({_PROFILE_COLUMNS})
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8, $9, $10, $11)
            RETURNING {_PROFILE_COLUMNS}
        """
        try:
            row = await self._conn.fetchrow(query, *self._profile_args(profile))
        except asyncpg.UniqueViolationError as e:
            raise ProfileConflictError(
                f"Profile already exists for tenant {profile.tenant_id} provider {profile.provider}"
            ) from e
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to insert provider profile: {e}") from e
        return self._row_to_profile(row)

    async def update_profile(
        self, profile: ProviderSecurityProfile, expected_version: int
    ) -> ProviderSecurityProfile:
        self._check_tenant(profile.tenant_id)
        query = f"""
            UPDATE restaurant_provider_profiles SET
                config_ref_map = $3::jsonb,
                profile_version = $4,
                profile_state = $5,
                key_backend = $6,
                dek_version = $7,
                updated_at = $8,
                rotated_at = $9
            WHERE id = $1 AND restaurant_id = $2 AND profile_version = $10
            RETURNING {_PROFILE_COLUMNS}
        """
        (profile_id, tenant_id, _provider, ref_map, version, state, backend,
         dek_version, _created_at, updated_at, rotated_at) = self._profile_args(profile)
        try:
            row = await self._conn.fetchrow(
                query,
                profile_id,
                tenant_id,
                ref_map,
                version,
                state,
                backend,
                dek_version,
                updated_at,
                rotated_at,
                expected_version,
            )
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to update provider profile: {e}") from e
        if row is None:
            raise ProfileConflictError(
                f"Profile version conflict for tenant {profile.tenant_id} provider {profile.provider}"
            )
        return self._row_to_profile(row)

    async def append_event(self, event: ProviderProfileEvent) -> None:
        self._check_tenant(event.tenant_id)
        query = f"""
            INSERT INTO restaurant_provider_profile_events ({_EVENT_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, $11)
        """
        try:
            await self._conn.execute(
                query,
                event.id,
                event.tenant_id,
                event.profile_id,
                event.provider,
                event.action,
                event.actor,
                event.profile_version,
                event.outcome,
                event.correlation_id,
                json.dumps(event.metadata),
                event.created_at,
            )
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to append provider profile event: {e}") from e

    async def list_events(self, provider: Optional[str] = None) -> List[ProviderProfileEvent]:
        query = f"""
            SELECT {_EVENT_COLUMNS}
            FROM restaurant_provider_profile_events
            WHERE restaurant_id = $1 AND ($2::text IS NULL OR provider = $2)
            ORDER BY created_at ASC, id ASC
        """
        try:
            rows = await self._conn.fetch(query, self.tenant_id, provider)
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to list provider profile events: {e}") from e
        return [self._row_to_event(row) for row in rows]

    async def get_ai_credential(self, provider: str) -> Optional[AiCredentialRecord]:
        query = f"""
            SELECT {_AI_COLUMNS}
            FROM restaurant_ai_credentials
            WHERE restaurant_id = $1 AND provider = $2
        """
        try:
            row = await self._conn.fetchrow(query, self.tenant_id, provider)
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to get AI credential: {e}") from e
        return self._row_to_ai(row) if row else None

    async def list_ai_credentials(self) -> List[AiCredentialRecord]:
        query = f"""
            SELECT {_AI_COLUMNS}
            FROM restaurant_ai_credentials
            WHERE restaurant_id = $1
            ORDER BY provider ASC
        """
        try:
            rows = await self._conn.fetch(query, self.tenant_id)
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to list AI credentials: {e}") from e
        return [self._row_to_ai(row) for row in rows]

    async def save_ai_credential(self, record: AiCredentialRecord) -> AiCredentialRecord:
        self._check_tenant(record.tenant_id)
        query = f"""
            INSERT INTO restaurant_ai_credentials ({_AI_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (restaurant_id, provider) DO UPDATE SET
                encrypted_api_key = EXCLUDED.encrypted_api_key,
                key_last_four = EXCLUDED.key_last_four,
                is_valid = EXCLUDED.is_valid,
                updated_at = EXCLUDED.updated_at
            RETURNING {_AI_COLUMNS}
        """
        try:
            row = await self._conn.fetchrow(
                query,
                record.id,
                record.tenant_id,
                record.provider,
                record.encrypted_api_key,
                record.key_last_four,
                record.is_valid,
                record.created_at,
                record.updated_at,
            )
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to save AI credential: {e}") from e
        return self._row_to_ai(row)

    async def delete_ai_credential(self, provider: str) -> bool:
        query = """
            DELETE FROM restaurant_ai_credentials
            WHERE restaurant_id = $1 AND provider = $2
            RETURNING id
        """
        try:
            row = await self._conn.fetchrow(query, self.tenant_id, provider)
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to delete AI credential: {e}") from e
        return row is not None

    @staticmethod
    def _profile_args(profile: ProviderSecurityProfile) -> tuple:
        ref_map = profile.config_ref_map.to_json() if profile.config_ref_map is not None else None
        return (
            profile.id,
            profile.tenant_id,
            profile.provider.value,
            json.dumps(ref_map) if ref_map is not None else None,
            profile.profile_version,
            profile.state.value,
            profile.backend.value,
            profile.dek_version,
            profile.created_at,
            profile.updated_at,
            profile.rotated_at,
        )

    @staticmethod
    def _row_to_credentials(row: asyncpg.Record) -> CredentialRecord:
        """Convert database row to CredentialRecord."""
        return CredentialRecord(
            id=row["id"],
            tenant_id=row["restaurant_id"],
            doordash_api_key=row["doordash_api_key_encrypted"],
            doordash_signing_secret=row["doordash_signing_secret_encrypted"],
            doordash_mode=row["doordash_mode"],
            uber_client_id=row["uber_client_id_encrypted"],
            uber_client_secret=row["uber_client_secret_encrypted"],
            uber_customer_id=row["uber_customer_id_encrypted"],
            uber_webhook_signing_key=row["uber_webhook_signing_key_encrypted"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_profile(row: asyncpg.Record) -> ProviderSecurityProfile:
        """Convert database row to ProviderSecurityProfile."""
        try:
            provider = Provider(row["provider"])
            backend = KeyBackend.from_str(row["key_backend"])
        except ValueError as e:
            raise StorageError(f"Invalid provider profile row: {e}") from e
        return ProviderSecurityProfile(
            id=row["id"],
            tenant_id=row["restaurant_id"],
            provider=provider,
            backend=backend,
            state=ProfileState.from_str(row["profile_state"]),
            profile_version=row["profile_version"],
            config_ref_map=parse_config_ref_map(provider, _load_json(row["config_ref_map"])),
            dek_version=row["dek_version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            rotated_at=row["rotated_at"],
        )

    @staticmethod
    def _row_to_event(row: asyncpg.Record) -> ProviderProfileEvent:
        return ProviderProfileEvent(
            id=row["id"],
            tenant_id=row["restaurant_id"],
            profile_id=row["profile_id"],
            provider=row["provider"],
            action=row["action"],
            actor=row["actor"],
            profile_version=row["profile_version"],
            outcome=row["outcome"],
            correlation_id=row["correlation_id"],
            metadata=_load_json(row["metadata"]) or {},
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_ai(row: asyncpg.Record) -> AiCredentialRecord:
        return AiCredentialRecord(
            id=row["id"],
            tenant_id=row["restaurant_id"],
            provider=row["provider"],
            encrypted_api_key=row["encrypted_api_key"],
            key_last_four=row["key_last_four"],
            is_valid=row["is_valid"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class PostgresStorage(CredentialStorage):
    """
    PostgreSQL storage backend for credentials, profiles and audit events.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        """
        Initialize PostgreSQL storage.

        Args:
            pool: asyncpg connection pool
        """
        self._pool = pool

    @classmethod
    async def connect(cls, database_url: str) -> PostgresStorage:
        """Create a connection pool for ``database_url`` and wrap it."""
        try:
            pool = await asyncpg.create_pool(database_url)
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(f"Failed to connect to database: {e}") from e
        if pool is None:
            raise StorageError("Failed to create connection pool")
        return cls(pool)

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool."""
        return self._pool

    async def close(self) -> None:
        await self._pool.close()

    @asynccontextmanager
    async def transaction(self, tenant_id: str) -> AsyncIterator[StorageTransaction]:
        if not tenant_id:
            raise ValueError("tenant_id is required")
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtextextended($1, 0))", tenant_id
                )
                yield _PostgresTransaction(conn, tenant_id)

    async def list_credential_tenants(self, tenant_id: Optional[str] = None) -> List[str]:
        query = """
            SELECT restaurant_id
            FROM restaurant_delivery_credentials
            WHERE ($1::text IS NULL OR restaurant_id = $1)
            ORDER BY updated_at ASC
        """
        try:
            rows = await self._pool.fetch(query, tenant_id)
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to list credential tenants: {e}") from e
        return [row["restaurant_id"] for row in rows]
