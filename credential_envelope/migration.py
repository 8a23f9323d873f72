"""
Delivery credential migration CLI.

Rewrites every stored credential as a versioned payload under the tenant's
key backend and backfills the DoorDash / Uber provider profiles.

Usage:
    credential-migrate                 # dry run, all tenants
    credential-migrate --live          # write changes
    credential-migrate --tenant r-123  # one tenant

Or run directly:
    python -m credential_envelope.migration

Environment (or .env file):
    DATABASE_URL
    DELIVERY_PROFILE_MIGRATE_DRY_RUN   (default: true)
    DELIVERY_PROFILE_MIGRATE_RESTAURANT_ID
    DELIVERY_PROFILE_MIGRATE_ACTOR     (default: migration-script)
    plus the key material variables read by VaultSettings
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Mapping, Optional, Sequence

from dotenv import load_dotenv

from .backends import KeyBackend, KeyBackendResolver
from .cipher import CredentialCipher
from .config import VaultSettings, parse_bool
from .envelope import decode_payload
from .errors import CredentialVaultError
from .models import DELIVERY_PROVIDERS, ProfileAction, ProfileState, utcnow
from .profiles import ProviderProfileStore
from .providers import ALL_SLOTS, DOORDASH_SPEC, UBER_SPEC, get_provider_spec
from .storage import CredentialStorage

logger = logging.getLogger(__name__)

DEFAULT_ACTOR = "migration-script"


class RowStatus(Enum):
    """Per-tenant outcome. PENDING after a dry run means "would migrate"."""

    PENDING = "pending"
    MIGRATED = "migrated"
    SKIPPED = "skipped"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


@dataclass
class MigrationRowResult:
    tenant_id: str
    status: RowStatus = RowStatus.PENDING
    backend: Optional[KeyBackend] = None
    doordash_configured: bool = False
    uber_configured: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None


@dataclass
class MigrationReport:
    """Counts and per-row results of one migration run."""

    dry_run: bool
    results: List[MigrationRowResult] = field(default_factory=list)

    def _count(self, status: RowStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def rows(self) -> int:
        return len(self.results)

    @property
    def migrated(self) -> int:
        return self._count(RowStatus.MIGRATED)

    @property
    def would_migrate(self) -> int:
        return self._count(RowStatus.PENDING) if self.dry_run else 0

    @property
    def skipped(self) -> int:
        return self._count(RowStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(RowStatus.FAILED)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0


class CredentialMigrator:
    """Re-encrypts each tenant's credential record and syncs its profiles."""

    def __init__(
        self,
        storage: CredentialStorage,
        cipher: CredentialCipher,
        profiles: ProviderProfileStore,
    ) -> None:
        self._storage = storage
        self._cipher = cipher
        self._profiles = profiles

    async def run(
        self,
        dry_run: bool = True,
        tenant_id: Optional[str] = None,
        actor: str = DEFAULT_ACTOR,
        concurrency: int = 1,
    ) -> MigrationReport:
        """
        Migrate every tenant with a credential record.

        Args:
            dry_run: Decrypt and report, but write nothing
            tenant_id: Restrict the run to one tenant
            actor: Label recorded on the profile events
            concurrency: Maximum number of tenants processed at once

        Returns:
            MigrationReport; row failures are recorded there, not raised
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        tenant_ids = await self._storage.list_credential_tenants(tenant_id)
        logger.info(
            "Starting credential migration",
            extra={"rows": len(tenant_ids), "dry_run": dry_run, "concurrency": concurrency},
        )

        semaphore = asyncio.Semaphore(concurrency)

        async def bounded(tid: str) -> MigrationRowResult:
            async with semaphore:
                return await self._process(tid, dry_run, actor)

        results = await asyncio.gather(*(bounded(tid) for tid in tenant_ids))
        report = MigrationReport(dry_run=dry_run, results=list(results))

        logger.info(
            "Credential migration finished",
            extra={
                "rows": report.rows,
                "migrated": report.migrated,
                "would_migrate": report.would_migrate,
                "skipped": report.skipped,
                "failed": report.failed,
                "dry_run": dry_run,
            },
        )
        return report

    async def _process(self, tenant_id: str, dry_run: bool, actor: str) -> MigrationRowResult:
        try:
            return await self.migrate_tenant(tenant_id, dry_run=dry_run, actor=actor)
        except Exception as e:
            logger.error(
                "Credential migration failed for tenant",
                extra={"tenant_id": tenant_id, "error_type": type(e).__name__, "error": str(e)},
            )
            return MigrationRowResult(
                tenant_id=tenant_id,
                status=RowStatus.FAILED,
                error=f"{type(e).__name__}: {e}",
            )

    async def migrate_tenant(
        self, tenant_id: str, dry_run: bool = True, actor: str = DEFAULT_ACTOR
    ) -> MigrationRowResult:
        """
        Migrate one tenant inside a single transaction.

        Raises:
            MalformedPayloadError, DecryptionFailedError,
            BackendNotConfiguredError: If a slot cannot be re-encrypted
        """
        result = MigrationRowResult(tenant_id=tenant_id)

        async with self._storage.transaction(tenant_id) as tx:
            record = await tx.get_credentials()
            present = {
                slot.attr: getattr(record, slot.attr)
                for slot in ALL_SLOTS
                if record is not None and getattr(record, slot.attr)
            }
            if not present:
                result.status = RowStatus.SKIPPED
                result.reason = "no stored secrets"
                logger.info("Skipping tenant without secrets", extra={"tenant_id": tenant_id})
                return result

            security_profile = await self._profiles.get_security_profile(tenant_id, tx=tx)
            backend = security_profile.backend
            result.backend = backend

            profiles = [await tx.get_profile(provider) for provider in DELIVERY_PROVIDERS]
            if all(p is not None for p in profiles) and all(
                self._is_current(payload, backend) for payload in present.values()
            ):
                result.status = RowStatus.SKIPPED
                result.reason = "already migrated"
                logger.info(
                    "Skipping migrated tenant",
                    extra={"tenant_id": tenant_id, "backend": backend.value},
                )
                return result

            rewritten = {
                attr: self._cipher.reencrypt(payload, backend) for attr, payload in present.items()
            }
            for attr, payload in rewritten.items():
                setattr(record, attr, payload)

            result.doordash_configured = DOORDASH_SPEC.configured(record)
            result.uber_configured = UBER_SPEC.configured(record)

            if dry_run:
                logger.info(
                    "Dry run: tenant would be migrated",
                    extra={
                        "tenant_id": tenant_id,
                        "backend": backend.value,
                        "doordash_configured": result.doordash_configured,
                        "uber_configured": result.uber_configured,
                    },
                )
                return result

            record.updated_at = utcnow()
            await tx.save_credentials(record)
            for provider in DELIVERY_PROVIDERS:
                spec = get_provider_spec(provider)
                configured = spec.configured(record)
                await self._profiles.upsert_profile(
                    tx,
                    tenant_id,
                    provider,
                    backend=backend,
                    state=ProfileState.ACTIVE if configured else ProfileState.DISABLED,
                    config_ref_map=spec.config_ref_map(record),
                    action=ProfileAction.MIGRATION_PROFILE_SYNC,
                    actor=actor,
                )

        result.status = RowStatus.MIGRATED
        logger.info(
            "Tenant migrated",
            extra={
                "tenant_id": tenant_id,
                "backend": backend.value,
                "slots": sorted(rewritten),
                "doordash_configured": result.doordash_configured,
                "uber_configured": result.uber_configured,
            },
        )
        return result

    @staticmethod
    def _is_current(payload: str, backend: KeyBackend) -> bool:
        parsed = decode_payload(payload)
        return not parsed.legacy and parsed.backend == backend


# =============================================================================
# CLI
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="credential-migrate",
        description="Re-encrypt delivery credentials and backfill provider profiles.",
    )
    parser.add_argument(
        "--live",
        action="store_true",
        help="Write changes (default is a dry run)",
    )
    parser.add_argument(
        "--tenant",
        default=os.environ.get("DELIVERY_PROFILE_MIGRATE_RESTAURANT_ID") or None,
        help="Only migrate this tenant id",
    )
    parser.add_argument(
        "--actor",
        default=os.environ.get("DELIVERY_PROFILE_MIGRATE_ACTOR") or DEFAULT_ACTOR,
        help="Actor label recorded on profile events",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=1,
        help="Tenants processed concurrently (default: 1)",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="PostgreSQL DSN (default: DATABASE_URL)",
    )
    return parser


def print_report(report: MigrationReport) -> None:
    print("=== Delivery Credential Migration ===")
    print(f"  Mode:          {'dry run' if report.dry_run else 'live'}")
    print(f"  Rows:          {report.rows}")
    print(f"  Migrated:      {report.migrated}")
    print(f"  Would migrate: {report.would_migrate}")
    print(f"  Skipped:       {report.skipped}")
    print(f"  Failed:        {report.failed}")
    for row in report.results:
        if row.status == RowStatus.FAILED:
            print(f"    {row.tenant_id}: {row.error}")


def resolve_dry_run(live: bool, environ: Optional[Mapping[str, str]] = None) -> bool:
    """
    Decide whether a CLI run writes anything.

    ``--live`` always writes. Otherwise DELIVERY_PROFILE_MIGRATE_DRY_RUN
    decides, and an unset variable means a dry run.

    Raises:
        ConfigError: If the variable is not a recognised boolean
    """
    if live:
        return False
    if environ is None:
        environ = os.environ
    return parse_bool(environ.get("DELIVERY_PROFILE_MIGRATE_DRY_RUN"), default=True)


async def run_migration(args: argparse.Namespace) -> int:
    """Run the migration against PostgreSQL and return the exit status."""
    # Imported here so the in-memory paths never need a database driver.
    from .postgres import PostgresStorage

    settings = VaultSettings.from_env()
    dry_run = resolve_dry_run(args.live)

    database_url = args.database_url or settings.database_url
    if not database_url:
        print("Error: DATABASE_URL not set", file=sys.stderr)
        return 2

    storage = await PostgresStorage.connect(database_url)
    try:
        resolver = KeyBackendResolver(settings)
        cipher = CredentialCipher(resolver)
        migrator = CredentialMigrator(storage, cipher, ProviderProfileStore(storage, resolver))
        report = await migrator.run(
            dry_run=dry_run,
            tenant_id=args.tenant,
            actor=args.actor,
            concurrency=args.concurrency,
        )
    finally:
        await storage.close()

    print_report(report)
    return report.exit_code


def main(argv: Optional[Sequence[str]] = None) -> None:
    """CLI entry point for credential-migrate command."""
    load_dotenv()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    args = build_parser().parse_args(argv)
    try:
        code = asyncio.run(run_migration(args))
    except CredentialVaultError as e:
        print(f"Error: {e}", file=sys.stderr)
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
