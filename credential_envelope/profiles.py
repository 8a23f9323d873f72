"""
Provider profile store.

Per (tenant, provider) key backend metadata and the audit trail. Every
profile mutation appends its ProviderProfileEvent inside the same storage
transaction, so neither can exist without the other.

The tenant's canonical security mode lives on the internal
``delivery_security`` profile. Delivery provider profiles mirror its backend
for their own slots so each provider can be migrated independently.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from .backends import (
    ALL_SECURITY_MODES,
    KeyBackend,
    KeyBackendResolver,
    SecurityMode,
    backend_to_mode,
    mode_to_backend,
)
from .errors import BackendNotConfiguredError
from .models import (
    ConfigRefMap,
    ProfileAction,
    ProfileState,
    Provider,
    ProviderProfileEvent,
    ProviderSecurityProfile,
    utcnow,
)
from .storage import CredentialStorage, StorageTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SecurityProfileSummary:
    """Tenant security mode as shown to the route layer."""

    mode: SecurityMode
    backend: KeyBackend
    available_modes: Tuple[SecurityMode, ...]
    can_use_most_secure: bool
    updated_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "backend": self.backend.value,
            "availableModes": [m.value for m in self.available_modes],
            "canUseMostSecure": self.can_use_most_secure,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


def parse_security_mode(mode: Union[SecurityMode, KeyBackend, str]) -> SecurityMode:
    """Accept a mode name (``free``) or the backend it maps to (``low_assurance``)."""
    if isinstance(mode, SecurityMode):
        return mode
    if isinstance(mode, KeyBackend):
        return backend_to_mode(mode)
    try:
        return SecurityMode(mode)
    except ValueError:
        pass
    try:
        return backend_to_mode(KeyBackend.from_str(mode))
    except ValueError:
        raise ValueError(f"Unsupported security mode: {mode}") from None


class ProviderProfileStore:
    """Reads and mutates provider profiles, appending an event per mutation."""

    def __init__(self, storage: CredentialStorage, resolver: KeyBackendResolver) -> None:
        self._storage = storage
        self._resolver = resolver

    @asynccontextmanager
    async def _scope(
        self, tenant_id: str, tx: Optional[StorageTransaction]
    ) -> AsyncIterator[StorageTransaction]:
        """Join the caller's transaction or open a new one."""
        if tx is not None:
            if tx.tenant_id != tenant_id:
                raise ValueError("Transaction belongs to another tenant")
            yield tx
            return
        async with self._storage.transaction(tenant_id) as own:
            yield own

    def can_use_most_secure(self) -> bool:
        return self._resolver.is_available(KeyBackend.MANAGED_KMS)

    def _summary(self, backend: KeyBackend, updated_at: Optional[datetime]) -> SecurityProfileSummary:
        return SecurityProfileSummary(
            mode=backend_to_mode(backend),
            backend=backend,
            available_modes=ALL_SECURITY_MODES,
            can_use_most_secure=self.can_use_most_secure(),
            updated_at=updated_at,
        )

    def require_available(self, mode: Union[SecurityMode, str]) -> KeyBackend:
        """
        Backend for ``mode`` if it is usable.

        Raises:
            BackendNotConfiguredError: If the backend has no key material
        """
        backend = mode_to_backend(parse_security_mode(mode))
        if not self._resolver.is_available(backend):
            raise BackendNotConfiguredError(
                backend, f"Security mode {parse_security_mode(mode).value} is not configured"
            )
        return backend

    async def get_security_profile(
        self, tenant_id: str, tx: Optional[StorageTransaction] = None
    ) -> SecurityProfileSummary:
        """Tenant's current security mode; free / low-assurance if never set."""
        async with self._scope(tenant_id, tx) as scope:
            profile = await scope.get_profile(Provider.DELIVERY_SECURITY)

        if profile is None:
            return self._summary(KeyBackend.LOW_ASSURANCE, None)
        return self._summary(profile.backend, profile.updated_at)

    async def set_security_profile(
        self,
        tenant_id: str,
        mode: Union[SecurityMode, str],
        actor: Optional[str] = None,
        tx: Optional[StorageTransaction] = None,
    ) -> SecurityProfileSummary:
        """
        Persist the tenant's security mode without re-encrypting anything.

        No-op when the mode is unchanged.

        Raises:
            BackendNotConfiguredError: If the mode's backend is unavailable
        """
        mode = parse_security_mode(mode)
        backend = self.require_available(mode)

        async with self._scope(tenant_id, tx) as scope:
            current = await self.get_security_profile(tenant_id, tx=scope)
            if current.mode == mode:
                return current

            profile = await self.upsert_profile(
                scope,
                tenant_id,
                Provider.DELIVERY_SECURITY,
                backend=backend,
                state=ProfileState.ACTIVE,
                config_ref_map=None,
                action=ProfileAction.SECURITY_MODE_CHANGED,
                actor=actor,
                metadata={"mode": mode.value, "previousMode": current.mode.value},
            )

        logger.info(
            "Security mode changed",
            extra={"tenant_id": tenant_id, "mode": mode.value, "backend": backend.value},
        )
        return self._summary(profile.backend, profile.updated_at)

    async def get_profile(
        self, tenant_id: str, provider: Provider, tx: Optional[StorageTransaction] = None
    ) -> Optional[ProviderSecurityProfile]:
        async with self._scope(tenant_id, tx) as scope:
            return await scope.get_profile(provider)

    async def list_events(
        self, tenant_id: str, provider: Optional[Union[Provider, str]] = None
    ) -> List[ProviderProfileEvent]:
        async with self._storage.transaction(tenant_id) as tx:
            return await tx.list_events(str(provider) if provider is not None else None)

    async def upsert_profile(
        self,
        tx: StorageTransaction,
        tenant_id: str,
        provider: Provider,
        backend: KeyBackend,
        state: ProfileState,
        config_ref_map: Optional[ConfigRefMap],
        action: Union[ProfileAction, str],
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProviderSecurityProfile:
        """
        Create (version 1) or update (version + 1) a profile and append its event.

        Must run inside the caller's transaction so that the profile write
        and the event commit together.
        """
        existing = await tx.get_profile(provider)
        now = utcnow()

        if existing is None:
            profile = await tx.insert_profile(
                ProviderSecurityProfile(
                    tenant_id=tenant_id,
                    provider=provider,
                    backend=backend,
                    state=state,
                    profile_version=1,
                    config_ref_map=config_ref_map,
                    created_at=now,
                    updated_at=now,
                )
            )
        else:
            previous_version = existing.profile_version
            existing.backend = backend
            existing.state = state
            existing.config_ref_map = config_ref_map
            existing.profile_version = previous_version + 1
            existing.updated_at = now
            profile = await tx.update_profile(existing, expected_version=previous_version)

        event_metadata = {"profileState": state.value, "keyBackend": backend.value}
        event_metadata.update(metadata or {})
        await self._append_event(tx, profile, action, actor, event_metadata)
        return profile

    async def rekey_profile(
        self,
        tx: StorageTransaction,
        tenant_id: str,
        provider: Provider,
        backend: KeyBackend,
        action: Union[ProfileAction, str] = ProfileAction.SECURITY_MODE_REKEY,
        actor: Optional[str] = None,
    ) -> Optional[ProviderSecurityProfile]:
        """
        Move an existing profile to ``backend`` keeping its state.

        Returns None without writing when the profile does not exist.
        """
        existing = await tx.get_profile(provider)
        if existing is None:
            return None

        previous_version = existing.profile_version
        previous_backend = existing.backend
        now = utcnow()
        existing.backend = backend
        existing.profile_version = previous_version + 1
        existing.updated_at = now
        existing.rotated_at = now
        profile = await tx.update_profile(existing, expected_version=previous_version)

        await self._append_event(
            tx,
            profile,
            action,
            actor,
            {"keyBackend": backend.value, "previousKeyBackend": previous_backend.value},
        )
        return profile

    async def append_untracked_event(
        self,
        tx: StorageTransaction,
        tenant_id: str,
        provider: str,
        action: Union[ProfileAction, str],
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Audit a mutation of a record that has no provider profile."""
        await tx.append_event(
            ProviderProfileEvent(
                tenant_id=tenant_id,
                provider=provider,
                action=str(action),
                actor=actor,
                metadata=dict(metadata or {}),
            )
        )

    @staticmethod
    async def _append_event(
        tx: StorageTransaction,
        profile: ProviderSecurityProfile,
        action: Union[ProfileAction, str],
        actor: Optional[str],
        metadata: Dict[str, Any],
    ) -> None:
        await tx.append_event(
            ProviderProfileEvent(
                tenant_id=profile.tenant_id,
                provider=profile.provider.value,
                profile_id=profile.id,
                action=str(action),
                actor=actor,
                profile_version=profile.profile_version,
                metadata=metadata,
            )
        )
        logger.debug(
            "Provider profile event appended",
            extra={
                "tenant_id": profile.tenant_id,
                "provider": profile.provider.value,
                "action": str(action),
                "profile_version": profile.profile_version,
            },
        )
