"""
Environment-provided configuration for the credential vault.

Secrets are read once at startup into an immutable VaultSettings value and
injected into the key backend resolver; nothing else reads the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigError

# Low-assurance shared secrets, highest priority first.
LOW_ASSURANCE_SECRET_ENV_VARS: Tuple[str, ...] = (
    "DELIVERY_FREE_WRAPPING_KEY",
    "DELIVERY_CREDENTIALS_ENCRYPTION_KEY",
    "JWT_SECRET",
)
MANAGED_KMS_SECRET_ENV_VAR = "DELIVERY_MANAGED_KMS_WRAPPING_KEY"
LEGACY_SECRET_ENV_VAR = "DELIVERY_LEGACY_CREDENTIALS_KEY"

# Publicly known. Only ever a last-resort candidate outside production.
DEVELOPMENT_DEFAULT_SECRET = "your-secret-key-change-in-production"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def parse_bool(value: Optional[str], default: bool) -> bool:
    """Parse a boolean environment flag, falling back to ``default`` when unset."""
    if value is None or not value.strip():
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean value: {value!r}")


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class VaultSettings:
    """
    Key material configuration.

    Attributes:
        low_assurance_secrets: Shared secrets in priority order; the first one
            encrypts, all of them are decrypt candidates
        managed_kms_secret: Dedicated managed-KMS wrapping secret; None
            disables that backend entirely
        legacy_secret: Extra candidate used only for unversioned payloads
        allow_development_default: Whether the hard-coded development secret
            may be used as the last low-assurance candidate
        database_url: PostgreSQL DSN for the asyncpg storage
    """

    low_assurance_secrets: Tuple[str, ...] = ()
    managed_kms_secret: Optional[str] = None
    legacy_secret: Optional[str] = None
    allow_development_default: bool = False
    database_url: Optional[str] = field(default=None, repr=False)

    def __repr__(self) -> str:
        return (
            "VaultSettings("
            f"low_assurance_secrets={len(self.low_assurance_secrets)} configured, "
            f"managed_kms_configured={self.managed_kms_secret is not None}, "
            f"legacy_configured={self.legacy_secret is not None}, "
            f"allow_development_default={self.allow_development_default})"
        )

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        env_file: Optional[Path] = None,
    ) -> VaultSettings:
        """
        Build settings from environment variables.

        Loads a ``.env`` file first (without overriding variables that are
        already set) when reading from the process environment.

        Args:
            environ: Mapping to read instead of ``os.environ`` (tests)
            env_file: Explicit .env path; defaults to python-dotenv discovery

        Returns:
            VaultSettings instance
        """
        if environ is None:
            load_dotenv(env_file)
            environ = os.environ

        low_assurance = tuple(
            secret
            for secret in (_clean(environ.get(name)) for name in LOW_ASSURANCE_SECRET_ENV_VARS)
            if secret is not None
        )

        app_env = (_clean(environ.get("APP_ENV")) or "development").lower()
        allow_default = parse_bool(
            environ.get("CREDENTIALS_ALLOW_DEV_DEFAULT_KEY"),
            default=app_env != "production",
        )

        return cls(
            low_assurance_secrets=low_assurance,
            managed_kms_secret=_clean(environ.get(MANAGED_KMS_SECRET_ENV_VAR)),
            legacy_secret=_clean(environ.get(LEGACY_SECRET_ENV_VAR)),
            allow_development_default=allow_default,
            database_url=_clean(environ.get("DATABASE_URL")),
        )
