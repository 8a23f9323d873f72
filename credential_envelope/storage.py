"""
Storage abstractions for the credential vault.

This module provides:
- StorageTransaction: Unit of work scoped to one tenant
- CredentialStorage: Abstract storage backend handing out transactions
- InMemoryStorage: asyncio-safe in-memory implementation for testing

Every read-modify-write sequence for a tenant runs inside
``storage.transaction(tenant_id)``. Implementations must serialize
transactions for the same tenant and apply all of a transaction's writes
or none of them.
"""

from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Tuple

from .errors import ProfileConflictError, StorageError
from .models import (
    AiCredentialRecord,
    CredentialRecord,
    Provider,
    ProviderProfileEvent,
    ProviderSecurityProfile,
)


class StorageTransaction(ABC):
    """
    Unit of work for a single tenant.

    All methods are async to support both in-memory and database backends.
    """

    def __init__(self, tenant_id: str) -> None:
        self._tenant_id = tenant_id

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    def _check_tenant(self, tenant_id: str) -> None:
        if tenant_id != self._tenant_id:
            raise StorageError(
                f"Record for tenant {tenant_id} written in transaction for {self._tenant_id}"
            )

    @abstractmethod
    async def get_credentials(self) -> Optional[CredentialRecord]:
        """Get the tenant's credential record."""
        ...

    @abstractmethod
    async def save_credentials(self, record: CredentialRecord) -> CredentialRecord:
        """Insert or update the tenant's credential record."""
        ...

    @abstractmethod
    async def get_profile(self, provider: Provider) -> Optional[ProviderSecurityProfile]:
        """Get the tenant's profile for a provider."""
        ...

    @abstractmethod
    async def insert_profile(self, profile: ProviderSecurityProfile) -> ProviderSecurityProfile:
        """Insert a new profile."""
        ...

    @abstractmethod
    async def update_profile(
        self, profile: ProviderSecurityProfile, expected_version: int
    ) -> ProviderSecurityProfile:
        """
        Update a profile if its stored version still equals ``expected_version``.

        Raises:
            ProfileConflictError: If the stored version differs
        """
        ...

    @abstractmethod
    async def append_event(self, event: ProviderProfileEvent) -> None:
        """Append an audit event."""
        ...

    @abstractmethod
    async def list_events(self, provider: Optional[str] = None) -> List[ProviderProfileEvent]:
        """List the tenant's audit events, oldest first."""
        ...

    @abstractmethod
    async def get_ai_credential(self, provider: str) -> Optional[AiCredentialRecord]:
        """Get the tenant's API key record for an AI provider."""
        ...

    @abstractmethod
    async def list_ai_credentials(self) -> List[AiCredentialRecord]:
        """List all of the tenant's AI API key records."""
        ...

    @abstractmethod
    async def save_ai_credential(self, record: AiCredentialRecord) -> AiCredentialRecord:
        """Insert or update an AI API key record."""
        ...

    @abstractmethod
    async def delete_ai_credential(self, provider: str) -> bool:
        """Delete an AI API key record. Returns True if one existed."""
        ...


class CredentialStorage(ABC):
    """Abstract storage backend."""

    @abstractmethod
    def transaction(self, tenant_id: str):
        """
        Async context manager yielding a StorageTransaction for ``tenant_id``.

        Commits when the block exits normally, rolls back on exception.
        """
        ...

    @abstractmethod
    async def list_credential_tenants(self, tenant_id: Optional[str] = None) -> List[str]:
        """Tenant ids owning a credential record, least recently updated first."""
        ...

    async def close(self) -> None:
        """Release connections held by the backend."""


# =============================================================================
# In-memory implementation
# =============================================================================

_DELETED = object()


class _InMemoryTransaction(StorageTransaction):
    """Stages writes locally; InMemoryStorage applies them on commit."""

    def __init__(self, storage: InMemoryStorage, tenant_id: str) -> None:
        super().__init__(tenant_id)
        self._storage = storage
        self._credentials: Optional[CredentialRecord] = None
        self._profiles: Dict[Provider, ProviderSecurityProfile] = {}
        self._events: List[ProviderProfileEvent] = []
        self._ai: Dict[str, object] = {}

    async def get_credentials(self) -> Optional[CredentialRecord]:
        if self._credentials is not None:
            return copy.deepcopy(self._credentials)
        return copy.deepcopy(self._storage._credentials.get(self.tenant_id))

    async def save_credentials(self, record: CredentialRecord) -> CredentialRecord:
        self._check_tenant(record.tenant_id)
        self._credentials = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def get_profile(self, provider: Provider) -> Optional[ProviderSecurityProfile]:
        if provider in self._profiles:
            return copy.deepcopy(self._profiles[provider])
        return copy.deepcopy(self._storage._profiles.get((self.tenant_id, provider)))

    async def insert_profile(self, profile: ProviderSecurityProfile) -> ProviderSecurityProfile:
        self._check_tenant(profile.tenant_id)
        if await self.get_profile(profile.provider) is not None:
            raise ProfileConflictError(
                f"Profile already exists for tenant {profile.tenant_id} provider {profile.provider}"
            )
        self._profiles[profile.provider] = copy.deepcopy(profile)
        return copy.deepcopy(profile)

    async def update_profile(
        self, profile: ProviderSecurityProfile, expected_version: int
    ) -> ProviderSecurityProfile:
        self._check_tenant(profile.tenant_id)
        current = await self.get_profile(profile.provider)
        if current is None or current.profile_version != expected_version:
            raise ProfileConflictError(
                f"Profile version conflict for tenant {profile.tenant_id} provider {profile.provider}"
            )
        self._profiles[profile.provider] = copy.deepcopy(profile)
        return copy.deepcopy(profile)

    async def append_event(self, event: ProviderProfileEvent) -> None:
        self._check_tenant(event.tenant_id)
        self._events.append(event)

    async def list_events(self, provider: Optional[str] = None) -> List[ProviderProfileEvent]:
        events = [e for e in self._storage._events if e.tenant_id == self.tenant_id]
        events.extend(self._events)
        if provider is not None:
            events = [e for e in events if e.provider == str(provider)]
        return events

    async def get_ai_credential(self, provider: str) -> Optional[AiCredentialRecord]:
        if provider in self._ai:
            staged = self._ai[provider]
            return None if staged is _DELETED else copy.deepcopy(staged)
        return copy.deepcopy(self._storage._ai.get((self.tenant_id, provider)))

    async def list_ai_credentials(self) -> List[AiCredentialRecord]:
        providers = {p for (t, p) in self._storage._ai if t == self.tenant_id}
        providers.update(self._ai)
        records = []
        for provider in sorted(providers):
            record = await self.get_ai_credential(provider)
            if record is not None:
                records.append(record)
        return records

    async def save_ai_credential(self, record: AiCredentialRecord) -> AiCredentialRecord:
        self._check_tenant(record.tenant_id)
        self._ai[record.provider] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def delete_ai_credential(self, provider: str) -> bool:
        existed = await self.get_ai_credential(provider) is not None
        if existed:
            self._ai[provider] = _DELETED
        return existed

    def _commit(self) -> int:
        storage = self._storage
        writes = 0
        if self._credentials is not None:
            storage._credentials[self.tenant_id] = self._credentials
            writes += 1
        for provider, profile in self._profiles.items():
            storage._profiles[(self.tenant_id, provider)] = profile
            writes += 1
        for provider, record in self._ai.items():
            if record is _DELETED:
                storage._ai.pop((self.tenant_id, provider), None)
            else:
                storage._ai[(self.tenant_id, provider)] = record
            writes += 1
        storage._events.extend(self._events)
        writes += len(self._events)
        return writes


class InMemoryStorage(CredentialStorage):
    """
    In-memory storage implementation for testing.

    Uses one asyncio.Lock per tenant to serialize transactions. Writes are
    staged in the transaction and applied only when the block succeeds.
    ``write_count`` counts committed writes.

    Locks are created on first use and kept for the lifetime of the
    instance, so ``_locks`` grows by one entry per tenant ever seen. That is
    fine for tests and short-lived tools; long-running services should use
    PostgresStorage.
    """

    def __init__(self) -> None:
        self._credentials: Dict[str, CredentialRecord] = {}
        self._profiles: Dict[Tuple[str, Provider], ProviderSecurityProfile] = {}
        self._events: List[ProviderProfileEvent] = []
        self._ai: Dict[Tuple[str, str], AiCredentialRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.write_count = 0

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def transaction(self, tenant_id: str) -> AsyncIterator[StorageTransaction]:
        if not tenant_id:
            raise ValueError("tenant_id is required")
        async with self._lock_for(tenant_id):
            tx = _InMemoryTransaction(self, tenant_id)
            yield tx
            self.write_count += tx._commit()

    async def list_credential_tenants(self, tenant_id: Optional[str] = None) -> List[str]:
        records = sorted(self._credentials.values(), key=lambda r: r.updated_at)
        return [r.tenant_id for r in records if tenant_id is None or r.tenant_id == tenant_id]

    # Test helpers: direct access to committed state.

    def put_credentials(self, record: CredentialRecord) -> None:
        """Seed a credential record without going through a transaction."""
        self._credentials[record.tenant_id] = copy.deepcopy(record)

    def peek_credentials(self, tenant_id: str) -> Optional[CredentialRecord]:
        return copy.deepcopy(self._credentials.get(tenant_id))

    def peek_profile(self, tenant_id: str, provider: Provider) -> Optional[ProviderSecurityProfile]:
        return copy.deepcopy(self._profiles.get((tenant_id, provider)))

    def peek_events(self, tenant_id: Optional[str] = None) -> List[ProviderProfileEvent]:
        return [e for e in self._events if tenant_id is None or e.tenant_id == tenant_id]
