"""
Delivery provider slot layouts and the typed values that cross the
service boundary.

Each provider owns a fixed set of secret slots on the CredentialRecord. The
ProviderSpec registry maps payload field names (snake_case, with camelCase
aliases as used by the route layer) onto record attributes and decides which
slots are mandatory.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .models import (
    ConfigRefMap,
    CredentialRecord,
    DeliveryMode,
    DoorDashConfigRefMap,
    Provider,
    UberConfigRefMap,
)


@dataclass(frozen=True)
class SlotSpec:
    """One encrypted slot: payload field name, route alias, record attribute."""

    name: str
    alias: str
    attr: str
    required: bool = True


@dataclass(frozen=True)
class ProviderSpec:
    provider: Provider
    slots: Tuple[SlotSpec, ...]
    has_mode: bool = False

    def slot(self, name: str) -> SlotSpec:
        for slot in self.slots:
            if slot.name == name:
                return slot
        raise KeyError(name)

    def payloads(self, record: Optional[CredentialRecord]) -> Dict[str, Optional[str]]:
        """Encrypted payload per slot name (None when absent or no record)."""
        return {
            slot.name: (getattr(record, slot.attr) if record is not None else None)
            for slot in self.slots
        }

    def present(self, record: Optional[CredentialRecord]) -> Dict[str, bool]:
        return {name: bool(value) for name, value in self.payloads(record).items()}

    def missing(self, payloads: Mapping[str, Optional[str]]) -> list:
        return [slot.name for slot in self.slots if slot.required and not payloads.get(slot.name)]

    def configured(self, record: Optional[CredentialRecord]) -> bool:
        return not self.missing(self.payloads(record))

    def mode(self, record: Optional[CredentialRecord]) -> DeliveryMode:
        return DeliveryMode.normalize(record.doordash_mode if record is not None else None)

    def config_ref_map(self, record: Optional[CredentialRecord]) -> ConfigRefMap:
        present = self.present(record)
        if self.provider == Provider.DOORDASH:
            return DoorDashConfigRefMap(mode=self.mode(record), **present)
        return UberConfigRefMap(**present)


DOORDASH_SPEC = ProviderSpec(
    provider=Provider.DOORDASH,
    slots=(
        SlotSpec("api_key", "apiKey", "doordash_api_key"),
        SlotSpec("signing_secret", "signingSecret", "doordash_signing_secret"),
    ),
    has_mode=True,
)

UBER_SPEC = ProviderSpec(
    provider=Provider.UBER,
    slots=(
        SlotSpec("client_id", "clientId", "uber_client_id"),
        SlotSpec("client_secret", "clientSecret", "uber_client_secret"),
        SlotSpec("customer_id", "customerId", "uber_customer_id"),
        SlotSpec("webhook_signing_key", "webhookSigningKey", "uber_webhook_signing_key"),
    ),
)

PROVIDER_SPECS: Dict[Provider, ProviderSpec] = {
    Provider.DOORDASH: DOORDASH_SPEC,
    Provider.UBER: UBER_SPEC,
}

ALL_SLOTS: Tuple[SlotSpec, ...] = DOORDASH_SPEC.slots + UBER_SPEC.slots


def get_provider_spec(provider: Union[Provider, str]) -> ProviderSpec:
    """Resolve a delivery provider (enum or name) to its slot layout."""
    try:
        key = provider if isinstance(provider, Provider) else Provider(provider)
        return PROVIDER_SPECS[key]
    except (KeyError, ValueError):
        raise ValueError(f"Unsupported delivery provider: {provider}") from None


# =============================================================================
# Inbound payloads
# =============================================================================


@dataclass
class DoorDashCredentialPayload:
    api_key: Optional[str] = field(default=None, repr=False)
    signing_secret: Optional[str] = field(default=None, repr=False)
    mode: Optional[Union[DeliveryMode, str]] = None


@dataclass
class UberCredentialPayload:
    client_id: Optional[str] = field(default=None, repr=False)
    client_secret: Optional[str] = field(default=None, repr=False)
    customer_id: Optional[str] = field(default=None, repr=False)
    webhook_signing_key: Optional[str] = field(default=None, repr=False)


CredentialFields = Union[DoorDashCredentialPayload, UberCredentialPayload, Mapping[str, Any]]


@dataclass
class CredentialUpdate:
    """Validated inbound fields: trimmed secrets per slot name, optional mode."""

    secrets: Dict[str, str] = field(default_factory=dict, repr=False)
    mode: Optional[DeliveryMode] = None


def _trimmed(name: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Credential field {name} must be a string")
    value = value.strip()
    return value or None


def parse_credential_fields(spec: ProviderSpec, fields: CredentialFields) -> CredentialUpdate:
    """
    Validate inbound credential fields for a provider.

    Accepts the provider's payload dataclass or a mapping keyed by field name
    or camelCase alias. Blank values count as not supplied.

    Raises:
        ValueError: On unknown field names, non-string values, an invalid
            mode, or a payload type belonging to another provider
    """
    if dataclasses.is_dataclass(fields) and not isinstance(fields, type):
        expected = DoorDashCredentialPayload if spec.provider == Provider.DOORDASH else UberCredentialPayload
        if not isinstance(fields, expected):
            raise ValueError(f"{type(fields).__name__} is not a {spec.provider} payload")
        raw: Mapping[str, Any] = {f.name: getattr(fields, f.name) for f in dataclasses.fields(fields)}
    elif isinstance(fields, Mapping):
        raw = fields
    else:
        raise ValueError("Credential fields must be a mapping or a credential payload")

    by_key = {}
    for slot in spec.slots:
        by_key[slot.name] = slot
        by_key[slot.alias] = slot

    update = CredentialUpdate()
    for key, value in raw.items():
        if spec.has_mode and key == "mode":
            if value is not None and value != "":
                try:
                    update.mode = value if isinstance(value, DeliveryMode) else DeliveryMode(value)
                except ValueError:
                    raise ValueError(f"Invalid {spec.provider} mode: {value!r}") from None
            continue
        slot = by_key.get(key)
        if slot is None:
            raise ValueError(f"Unknown {spec.provider} credential field: {key}")
        trimmed = _trimmed(slot.name, value)
        if trimmed is not None:
            update.secrets[slot.name] = trimmed
    return update


# =============================================================================
# Decrypted runtime credentials (internal consumers only)
# =============================================================================


@dataclass(frozen=True)
class DoorDashRuntimeCredentials:
    api_key: str = field(repr=False)
    signing_secret: str = field(repr=False)
    mode: DeliveryMode = DeliveryMode.TEST

    @property
    def webhook_signing_secret(self) -> str:
        return self.signing_secret


@dataclass(frozen=True)
class UberRuntimeCredentials:
    client_id: str = field(repr=False)
    client_secret: str = field(repr=False)
    customer_id: str = field(repr=False)
    webhook_signing_key: str = field(repr=False)

    @property
    def webhook_signing_secret(self) -> str:
        return self.webhook_signing_key


RuntimeCredentials = Union[DoorDashRuntimeCredentials, UberRuntimeCredentials]


def build_runtime_credentials(
    spec: ProviderSpec, plaintexts: Mapping[str, str], mode: DeliveryMode
) -> RuntimeCredentials:
    if spec.provider == Provider.DOORDASH:
        return DoorDashRuntimeCredentials(mode=mode, **plaintexts)
    return UberRuntimeCredentials(**plaintexts)
