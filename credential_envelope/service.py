"""
Delivery credential service.

Orchestrates upsert / clear / read of provider credentials and the
security-mode switch. Each operation runs in one storage transaction for
the tenant, so the credential record, the provider profiles and their audit
events always change together.

SECURITY:
- Decrypted values leave this module only through get_runtime_credentials
  and get_webhook_signing_secret
- Summaries expose presence booleans, never values
- Log records carry tenant ids, providers, backends and slot names only
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Union

from .backends import KeyBackend, SecurityMode
from .cipher import CredentialCipher
from .envelope import decode_payload
from .errors import IncompleteCredentialSetError
from .models import (
    DELIVERY_PROVIDERS,
    CredentialRecord,
    DeliveryMode,
    ProfileAction,
    ProfileState,
    Provider,
    utcnow,
)
from .profiles import ProviderProfileStore, SecurityProfileSummary, parse_security_mode
from .providers import (
    ALL_SLOTS,
    DOORDASH_SPEC,
    UBER_SPEC,
    CredentialFields,
    RuntimeCredentials,
    build_runtime_credentials,
    get_provider_spec,
    parse_credential_fields,
)
from .storage import CredentialStorage, StorageTransaction

logger = logging.getLogger(__name__)

AI_EVENT_PREFIX = "ai:"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class DoorDashSummary:
    configured: bool
    has_api_key: bool
    has_signing_secret: bool
    mode: DeliveryMode
    updated_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "configured": self.configured,
            "hasApiKey": self.has_api_key,
            "hasSigningSecret": self.has_signing_secret,
            "mode": self.mode.value,
            "updatedAt": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class UberSummary:
    configured: bool
    has_client_id: bool
    has_client_secret: bool
    has_customer_id: bool
    has_webhook_signing_key: bool
    updated_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "configured": self.configured,
            "hasClientId": self.has_client_id,
            "hasClientSecret": self.has_client_secret,
            "hasCustomerId": self.has_customer_id,
            "hasWebhookSigningKey": self.has_webhook_signing_key,
            "updatedAt": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class CredentialSummary:
    """Credential presence per provider plus the tenant's security profile."""

    security_profile: SecurityProfileSummary
    doordash: DoorDashSummary
    uber: UberSummary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "securityProfile": self.security_profile.to_dict(),
            "doordash": self.doordash.to_dict(),
            "uber": self.uber.to_dict(),
        }


def summarize_credentials(
    record: Optional[CredentialRecord], security_profile: SecurityProfileSummary
) -> CredentialSummary:
    doordash = DOORDASH_SPEC.present(record)
    uber = UBER_SPEC.present(record)
    updated_at = record.updated_at if record is not None else None

    return CredentialSummary(
        security_profile=security_profile,
        doordash=DoorDashSummary(
            configured=DOORDASH_SPEC.configured(record),
            has_api_key=doordash["api_key"],
            has_signing_secret=doordash["signing_secret"],
            mode=DOORDASH_SPEC.mode(record),
            updated_at=updated_at if any(doordash.values()) else None,
        ),
        uber=UberSummary(
            configured=UBER_SPEC.configured(record),
            has_client_id=uber["client_id"],
            has_client_secret=uber["client_secret"],
            has_customer_id=uber["customer_id"],
            has_webhook_signing_key=uber["webhook_signing_key"],
            updated_at=updated_at if any(uber.values()) else None,
        ),
    )


class CredentialService:
    """
    Service for encrypted delivery credential management.

    A deployment pinned to one backend is the degenerate case where the
    managed-KMS secret is simply not configured.
    """

    def __init__(
        self,
        storage: CredentialStorage,
        cipher: CredentialCipher,
        profiles: ProviderProfileStore,
    ) -> None:
        self._storage = storage
        self._cipher = cipher
        self._profiles = profiles

    async def get_security_profile(self, tenant_id: str) -> SecurityProfileSummary:
        return await self._profiles.get_security_profile(tenant_id)

    async def get_summary(self, tenant_id: str) -> CredentialSummary:
        """Presence summary for both delivery providers (no secret values)."""
        async with self._storage.transaction(tenant_id) as tx:
            return await self._summary(tx)

    async def _summary(self, tx: StorageTransaction) -> CredentialSummary:
        security_profile = await self._profiles.get_security_profile(tx.tenant_id, tx=tx)
        record = await tx.get_credentials()
        return summarize_credentials(record, security_profile)

    def _align(self, payload: str, backend: KeyBackend) -> str:
        """Re-encrypt a kept payload that is legacy or tagged with another backend."""
        parsed = decode_payload(payload)
        if parsed.legacy or parsed.backend != backend:
            return self._cipher.reencrypt(payload, backend)
        return payload

    async def upsert(
        self,
        tenant_id: str,
        provider: Union[Provider, str],
        fields: CredentialFields,
        actor: Optional[str] = None,
    ) -> CredentialSummary:
        """
        Encrypt and store supplied credential fields for one provider.

        Fields that are not supplied keep their stored value.

        Raises:
            ValueError: On unknown fields or an unsupported provider
            IncompleteCredentialSetError: If mandatory slots are still
                missing after the merge
        """
        spec = get_provider_spec(provider)
        update = parse_credential_fields(spec, fields)

        async with self._storage.transaction(tenant_id) as tx:
            security_profile = await self._profiles.get_security_profile(tenant_id, tx=tx)
            backend = security_profile.backend
            record = await tx.get_credentials() or CredentialRecord(tenant_id=tenant_id)

            merged: Dict[str, Optional[str]] = {}
            for name, payload in spec.payloads(record).items():
                if name in update.secrets:
                    merged[name] = self._cipher.encrypt(update.secrets[name], backend)
                elif payload:
                    merged[name] = self._align(payload, backend)
                else:
                    merged[name] = None

            missing = spec.missing(merged)
            if missing:
                logger.warning(
                    "Rejected incomplete credential set",
                    extra={"tenant_id": tenant_id, "provider": spec.provider.value, "missing": missing},
                )
                raise IncompleteCredentialSetError(spec.provider.value, missing)

            for slot in spec.slots:
                setattr(record, slot.attr, merged[slot.name])
            if spec.has_mode:
                record.doordash_mode = (update.mode or spec.mode(record)).value
            record.updated_at = utcnow()
            await tx.save_credentials(record)

            await self._profiles.upsert_profile(
                tx,
                tenant_id,
                spec.provider,
                backend=backend,
                state=ProfileState.ACTIVE,
                config_ref_map=spec.config_ref_map(record),
                action=ProfileAction.CREDENTIALS_UPSERTED,
                actor=actor,
                metadata={"fieldsUpdated": sorted(update.secrets)},
            )
            summary = await self._summary(tx)

        logger.info(
            "Delivery credentials upserted",
            extra={
                "tenant_id": tenant_id,
                "provider": spec.provider.value,
                "backend": backend.value,
                "fields_updated": sorted(update.secrets),
            },
        )
        return summary

    async def clear(
        self,
        tenant_id: str,
        provider: Union[Provider, str],
        actor: Optional[str] = None,
    ) -> CredentialSummary:
        """Null every slot of one provider and disable its profile."""
        spec = get_provider_spec(provider)

        async with self._storage.transaction(tenant_id) as tx:
            security_profile = await self._profiles.get_security_profile(tenant_id, tx=tx)
            record = await tx.get_credentials() or CredentialRecord(tenant_id=tenant_id)

            for slot in spec.slots:
                setattr(record, slot.attr, None)
            if spec.has_mode:
                record.doordash_mode = None
            record.updated_at = utcnow()
            await tx.save_credentials(record)

            await self._profiles.upsert_profile(
                tx,
                tenant_id,
                spec.provider,
                backend=security_profile.backend,
                state=ProfileState.DISABLED,
                config_ref_map=spec.config_ref_map(record),
                action=ProfileAction.CREDENTIALS_CLEARED,
                actor=actor,
            )
            summary = await self._summary(tx)

        logger.info(
            "Delivery credentials cleared",
            extra={"tenant_id": tenant_id, "provider": spec.provider.value},
        )
        return summary

    async def get_runtime_credentials(
        self, tenant_id: str, provider: Union[Provider, str]
    ) -> Optional[RuntimeCredentials]:
        """
        Decrypt a provider's credentials for outbound calls.

        Returns None when any mandatory slot is empty. Malformed payloads and
        failed decryptions propagate.
        """
        spec = get_provider_spec(provider)
        async with self._storage.transaction(tenant_id) as tx:
            record = await tx.get_credentials()

        payloads = spec.payloads(record)
        if spec.missing(payloads):
            return None

        plaintexts = {
            name: self._cipher.decrypt(payload)
            for name, payload in payloads.items()
            if payload
        }
        return build_runtime_credentials(spec, plaintexts, spec.mode(record))

    async def get_webhook_signing_secret(
        self, tenant_id: str, provider: Union[Provider, str]
    ) -> Optional[str]:
        """Secret used to verify a provider's inbound webhooks, if configured."""
        credentials = await self.get_runtime_credentials(tenant_id, provider)
        if credentials is None:
            return None
        return credentials.webhook_signing_secret

    async def switch_security_mode(
        self,
        tenant_id: str,
        mode: Union[SecurityMode, str],
        actor: Optional[str] = None,
    ) -> SecurityProfileSummary:
        """
        Change the tenant's security mode and re-encrypt every stored secret.

        Steps, all inside one transaction:
        1. Unchanged mode returns the current profile without writing
        2. Unavailable target backend fails before any write
        3-4. Every non-null delivery slot and AI key is decrypted and
           re-encrypted under the new backend
        5. Record, AI keys and the security profile are persisted
        6-7. Both delivery profiles move to the new backend (state kept),
           one security_mode_rekey event each

        Raises:
            BackendNotConfiguredError: If the target backend is unavailable
            MalformedPayloadError, DecryptionFailedError: If any stored
                secret cannot be read; nothing is written in that case
        """
        target = parse_security_mode(mode)

        async with self._storage.transaction(tenant_id) as tx:
            current = await self._profiles.get_security_profile(tenant_id, tx=tx)
            if current.mode == target:
                logger.info(
                    "Security mode unchanged",
                    extra={"tenant_id": tenant_id, "mode": target.value},
                )
                return current

            backend = self._profiles.require_available(target)

            record = await tx.get_credentials()
            rekeyed_slots = []
            if record is not None:
                for slot in ALL_SLOTS:
                    payload = getattr(record, slot.attr)
                    if payload:
                        setattr(record, slot.attr, self._cipher.reencrypt(payload, backend))
                        rekeyed_slots.append(slot.attr)

            ai_records = await tx.list_ai_credentials()
            for ai_record in ai_records:
                ai_record.encrypted_api_key = self._cipher.reencrypt(
                    ai_record.encrypted_api_key, backend
                )

            now = utcnow()
            if record is not None:
                record.updated_at = now
                await tx.save_credentials(record)
            for ai_record in ai_records:
                ai_record.updated_at = now
                await tx.save_ai_credential(ai_record)
                await self._profiles.append_untracked_event(
                    tx,
                    tenant_id,
                    f"{AI_EVENT_PREFIX}{ai_record.provider}",
                    ProfileAction.SECURITY_MODE_REKEY,
                    actor=actor,
                    metadata={"keyBackend": backend.value},
                )

            summary = await self._profiles.set_security_profile(tenant_id, target, actor=actor, tx=tx)
            for provider in DELIVERY_PROVIDERS:
                await self._profiles.rekey_profile(
                    tx,
                    tenant_id,
                    provider,
                    backend,
                    action=ProfileAction.SECURITY_MODE_REKEY,
                    actor=actor,
                )

        logger.info(
            "Security mode switched",
            extra={
                "tenant_id": tenant_id,
                "from_backend": current.backend.value,
                "to_backend": backend.value,
                "rekeyed_slots": rekeyed_slots,
                "rekeyed_ai_keys": len(ai_records),
            },
        )
        return summary
