"""
Persisted records for the credential vault.

This module provides:
- Provider / ProfileState / DeliveryMode / ProfileAction enums
- DoorDashConfigRefMap / UberConfigRefMap: typed per-provider reference maps
- CredentialRecord: one wide row of encrypted slots per tenant
- ProviderSecurityProfile: per (tenant, provider) key backend metadata
- ProviderProfileEvent: append-only audit record
- AiCredentialRecord: per (tenant, AI provider) encrypted API key

Slots hold encrypted payload strings or None, never plaintext.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union
from uuid import UUID, uuid4

from .backends import KeyBackend
from .errors import StorageError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Provider(Enum):
    """Profile owner: a delivery provider or the tenant's security profile."""

    DOORDASH = "doordash"
    UBER = "uber"
    DELIVERY_SECURITY = "delivery_security"

    def __str__(self) -> str:
        return self.value


DELIVERY_PROVIDERS = (Provider.DOORDASH, Provider.UBER)


class ProfileState(Enum):
    """Provider profile lifecycle state."""

    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"
    ROTATING = "ROTATING"
    REVOKED = "REVOKED"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_str(cls, s: str) -> ProfileState:
        try:
            return cls(s.upper())
        except ValueError:
            raise StorageError(f"Invalid profile state: {s}")


class DeliveryMode(Enum):
    """DoorDash environment the credentials belong to."""

    PRODUCTION = "production"
    TEST = "test"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def normalize(cls, value: object) -> DeliveryMode:
        """Stored values other than ``production`` read back as TEST."""
        if isinstance(value, DeliveryMode):
            return value
        return cls.PRODUCTION if value == cls.PRODUCTION.value else cls.TEST


class ProfileAction(str, Enum):
    """Audit event actions."""

    CREDENTIALS_UPSERTED = "credentials_upserted"
    CREDENTIALS_CLEARED = "credentials_cleared"
    SECURITY_MODE_CHANGED = "security_mode_changed"
    SECURITY_MODE_REKEY = "security_mode_rekey"
    MIGRATION_PROFILE_SYNC = "migration_profile_sync"
    AI_KEY_SAVED = "ai_key_saved"
    AI_KEY_DELETED = "ai_key_deleted"

    def __str__(self) -> str:
        return self.value


OUTCOME_SUCCESS = "SUCCESS"

_PRESENT = "present"
_ABSENT = "absent"


def _ref(flag: bool) -> str:
    return _PRESENT if flag else _ABSENT


def _read_ref(refs: Mapping[str, Any], name: str) -> bool:
    value = refs.get(name, _ABSENT)
    if value not in (_PRESENT, _ABSENT):
        raise StorageError(f"Invalid config ref value for {name}: {value!r}")
    return value == _PRESENT


@dataclass(frozen=True)
class DoorDashConfigRefMap:
    """Which DoorDash slots are populated, plus the environment mode."""

    api_key: bool = False
    signing_secret: bool = False
    mode: DeliveryMode = DeliveryMode.TEST

    def to_json(self) -> Dict[str, Any]:
        return {
            "refs": {
                "apiKey": _ref(self.api_key),
                "signingSecret": _ref(self.signing_secret),
            },
            "mode": self.mode.value,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> DoorDashConfigRefMap:
        refs = data.get("refs") or {}
        return cls(
            api_key=_read_ref(refs, "apiKey"),
            signing_secret=_read_ref(refs, "signingSecret"),
            mode=DeliveryMode.normalize(data.get("mode")),
        )


@dataclass(frozen=True)
class UberConfigRefMap:
    """Which Uber slots are populated."""

    client_id: bool = False
    client_secret: bool = False
    customer_id: bool = False
    webhook_signing_key: bool = False

    def to_json(self) -> Dict[str, Any]:
        return {
            "refs": {
                "clientId": _ref(self.client_id),
                "clientSecret": _ref(self.client_secret),
                "customerId": _ref(self.customer_id),
                "webhookSigningKey": _ref(self.webhook_signing_key),
            },
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> UberConfigRefMap:
        refs = data.get("refs") or {}
        return cls(
            client_id=_read_ref(refs, "clientId"),
            client_secret=_read_ref(refs, "clientSecret"),
            customer_id=_read_ref(refs, "customerId"),
            webhook_signing_key=_read_ref(refs, "webhookSigningKey"),
        )


ConfigRefMap = Union[DoorDashConfigRefMap, UberConfigRefMap]


def parse_config_ref_map(
    provider: Provider, data: Optional[Mapping[str, Any]]
) -> Optional[ConfigRefMap]:
    """Validate a stored reference map against the provider's shape."""
    if data is None:
        return None
    if not isinstance(data, Mapping):
        raise StorageError(f"Invalid config ref map for {provider}")
    if provider == Provider.DOORDASH:
        return DoorDashConfigRefMap.from_json(data)
    if provider == Provider.UBER:
        return UberConfigRefMap.from_json(data)
    raise StorageError(f"Provider {provider} does not carry a config ref map")


@dataclass
class CredentialRecord:
    """Encrypted delivery credentials for one tenant (one slot per secret)."""

    tenant_id: str
    doordash_api_key: Optional[str] = None
    doordash_signing_secret: Optional[str] = None
    doordash_mode: Optional[str] = None
    uber_client_id: Optional[str] = None
    uber_client_secret: Optional[str] = None
    uber_customer_id: Optional[str] = None
    uber_webhook_signing_key: Optional[str] = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ProviderSecurityProfile:
    """Key backend metadata for one (tenant, provider) pair."""

    tenant_id: str
    provider: Provider
    backend: KeyBackend
    state: ProfileState
    profile_version: int = 1
    config_ref_map: Optional[ConfigRefMap] = None
    dek_version: int = 1  # reserved for per-profile DEK wrapping
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    rotated_at: Optional[datetime] = None


@dataclass(frozen=True)
class ProviderProfileEvent:
    """Immutable audit record of one profile or credential mutation."""

    tenant_id: str
    provider: str
    action: str
    profile_id: Optional[UUID] = None
    actor: Optional[str] = None
    profile_version: Optional[int] = None
    outcome: str = OUTCOME_SUCCESS
    correlation_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AiCredentialRecord:
    """Encrypted API key for one (tenant, AI provider) pair."""

    tenant_id: str
    provider: str
    encrypted_api_key: str
    key_last_four: str
    is_valid: Optional[bool] = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
