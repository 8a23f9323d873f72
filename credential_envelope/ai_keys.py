"""
Per-provider AI API key storage.

Keys are encrypted with the same cipher and payload format as delivery
credentials, under the tenant's active security backend, and are re-keyed
by CredentialService.switch_security_mode. Only the last four characters
are ever returned outside get_api_key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .cipher import CredentialCipher
from .models import AiCredentialRecord, ProfileAction, utcnow
from .profiles import ProviderProfileStore
from .service import AI_EVENT_PREFIX
from .storage import CredentialStorage

logger = logging.getLogger(__name__)

DEFAULT_AI_PROVIDER = "anthropic"

ApiKeyValidator = Callable[[str, str], Awaitable[bool]]


@dataclass(frozen=True)
class AiKeyStatus:
    configured: bool
    key_last_four: Optional[str]
    is_valid: Optional[bool]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "configured": self.configured,
            "keyLastFour": self.key_last_four,
            "isValid": self.is_valid,
        }


def _normalize_provider(provider: str) -> str:
    if not isinstance(provider, str) or not provider.strip():
        raise ValueError("AI provider name is required")
    return provider.strip().lower()


class AiCredentialService:
    """
    Stores one API key per (tenant, AI provider).

    ``validator`` is an optional coroutine ``(provider, api_key) -> bool``
    that checks a key against the provider before it is stored; without one
    the key's validity is recorded as unknown (None).
    """

    def __init__(
        self,
        storage: CredentialStorage,
        cipher: CredentialCipher,
        profiles: ProviderProfileStore,
        validator: Optional[ApiKeyValidator] = None,
    ) -> None:
        self._storage = storage
        self._cipher = cipher
        self._profiles = profiles
        self._validator = validator

    async def save_api_key(
        self,
        tenant_id: str,
        api_key: str,
        provider: str = DEFAULT_AI_PROVIDER,
        actor: Optional[str] = None,
    ) -> AiKeyStatus:
        """
        Encrypt and store an API key.

        Raises:
            ValueError: If the key or provider name is empty
        """
        provider = _normalize_provider(provider)
        api_key = (api_key or "").strip()
        if not api_key:
            raise ValueError("Cannot store empty API key")

        is_valid: Optional[bool] = None
        if self._validator is not None:
            is_valid = await self._validator(provider, api_key)

        key_last_four = api_key[-4:]

        async with self._storage.transaction(tenant_id) as tx:
            security_profile = await self._profiles.get_security_profile(tenant_id, tx=tx)
            encrypted = self._cipher.encrypt(api_key, security_profile.backend)

            record = await tx.get_ai_credential(provider)
            now = utcnow()
            if record is None:
                record = AiCredentialRecord(
                    tenant_id=tenant_id,
                    provider=provider,
                    encrypted_api_key=encrypted,
                    key_last_four=key_last_four,
                    is_valid=is_valid,
                    created_at=now,
                    updated_at=now,
                )
            else:
                record.encrypted_api_key = encrypted
                record.key_last_four = key_last_four
                record.is_valid = is_valid
                record.updated_at = now
            await tx.save_ai_credential(record)

            await self._profiles.append_untracked_event(
                tx,
                tenant_id,
                f"{AI_EVENT_PREFIX}{provider}",
                ProfileAction.AI_KEY_SAVED,
                actor=actor,
                metadata={"keyBackend": security_profile.backend.value, "isValid": is_valid},
            )

        logger.info(
            "AI API key saved",
            extra={"tenant_id": tenant_id, "provider": provider, "is_valid": is_valid},
        )
        return AiKeyStatus(configured=True, key_last_four=key_last_four, is_valid=is_valid)

    async def get_api_key(self, tenant_id: str, provider: str = DEFAULT_AI_PROVIDER) -> Optional[str]:
        """Decrypted API key, or None when none is stored. Decrypt errors propagate."""
        provider = _normalize_provider(provider)
        async with self._storage.transaction(tenant_id) as tx:
            record = await tx.get_ai_credential(provider)
        if record is None:
            return None
        return self._cipher.decrypt(record.encrypted_api_key)

    async def delete_api_key(
        self,
        tenant_id: str,
        provider: str = DEFAULT_AI_PROVIDER,
        actor: Optional[str] = None,
    ) -> bool:
        """Delete a stored key. Returns True if one existed."""
        provider = _normalize_provider(provider)
        async with self._storage.transaction(tenant_id) as tx:
            existed = await tx.delete_ai_credential(provider)
            if existed:
                await self._profiles.append_untracked_event(
                    tx,
                    tenant_id,
                    f"{AI_EVENT_PREFIX}{provider}",
                    ProfileAction.AI_KEY_DELETED,
                    actor=actor,
                )

        if existed:
            logger.info("AI API key deleted", extra={"tenant_id": tenant_id, "provider": provider})
        return existed

    async def get_key_status(self, tenant_id: str, provider: str = DEFAULT_AI_PROVIDER) -> AiKeyStatus:
        provider = _normalize_provider(provider)
        async with self._storage.transaction(tenant_id) as tx:
            record = await tx.get_ai_credential(provider)
        if record is None:
            return AiKeyStatus(configured=False, key_last_four=None, is_valid=False)
        return AiKeyStatus(configured=True, key_last_four=record.key_last_four, is_valid=record.is_valid)
