"""
Tests for the credential migration batch tool.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from credential_envelope import (
    ConfigError,
    CredentialRecord,
    KeyBackend,
    ProfileAction,
    ProfileState,
    Provider,
    RowStatus,
    decode_payload,
    is_versioned,
)
from credential_envelope.migration import build_parser, main, resolve_dry_run
from credential_envelope.postgres import PostgresStorage
from credential_envelope.providers import ALL_SLOTS

from .conftest import LEGACY_SECRET, LOW_ASSURANCE_SECRET, legacy_payload

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _legacy_record(index: int) -> CredentialRecord:
    secret = LEGACY_SECRET if index % 2 else LOW_ASSURANCE_SECRET
    return CredentialRecord(
        tenant_id=f"tenant-{index:02d}",
        doordash_api_key=legacy_payload(secret, f"dd-key-{index}"),
        doordash_signing_secret=legacy_payload(secret, f"dd-secret-{index}"),
        doordash_mode="production",
        uber_client_id=legacy_payload(secret, f"uber-client-{index}") if index < 3 else None,
        updated_at=BASE_TIME + timedelta(minutes=index),
    )


@pytest.fixture
def legacy_tenants(memory_storage):
    for index in range(10):
        memory_storage.put_credentials(_legacy_record(index))
    return [f"tenant-{index:02d}" for index in range(10)]


class TestDryRun:
    async def test_reports_without_writing(self, migrator, memory_storage, legacy_tenants):
        before = {t: memory_storage.peek_credentials(t) for t in legacy_tenants}

        report = await migrator.run(dry_run=True)

        assert report.rows == 10
        assert report.would_migrate == 10
        assert report.migrated == 0
        assert report.failed == 0
        assert report.exit_code == 0
        assert memory_storage.write_count == 0
        assert {t: memory_storage.peek_credentials(t) for t in legacy_tenants} == before
        assert [r.tenant_id for r in report.results] == legacy_tenants

    async def test_configured_flags(self, migrator, legacy_tenants):
        report = await migrator.run(dry_run=True, tenant_id="tenant-01")
        (row,) = report.results
        assert row.status == RowStatus.PENDING
        assert row.doordash_configured is True
        assert row.uber_configured is False
        assert row.backend == KeyBackend.LOW_ASSURANCE


class TestLiveRun:
    async def test_migrates_every_tenant(self, migrator, memory_storage, legacy_tenants):
        report = await migrator.run(dry_run=False, actor="ops")

        assert report.migrated == 10
        assert report.failed == 0
        assert report.would_migrate == 0
        for tenant_id in legacy_tenants:
            record = memory_storage.peek_credentials(tenant_id)
            for slot in ALL_SLOTS:
                payload = getattr(record, slot.attr)
                if payload:
                    assert is_versioned(payload)
                    assert decode_payload(payload).backend == KeyBackend.LOW_ASSURANCE

            doordash = memory_storage.peek_profile(tenant_id, Provider.DOORDASH)
            uber = memory_storage.peek_profile(tenant_id, Provider.UBER)
            assert doordash.state == ProfileState.ACTIVE
            assert uber.state == ProfileState.DISABLED
            assert uber.config_ref_map.client_id == (tenant_id < "tenant-03")

        events = memory_storage.peek_events("tenant-00")
        assert {e.action for e in events} == {ProfileAction.MIGRATION_PROFILE_SYNC.value}
        assert {e.actor for e in events} == {"ops"}

    async def test_plaintext_preserved(self, migrator, service, legacy_tenants):
        await migrator.run(dry_run=False)
        credentials = await service.get_runtime_credentials("tenant-05", "doordash")
        assert credentials.api_key == "dd-key-5"
        assert credentials.signing_secret == "dd-secret-5"

    async def test_second_run_skips(self, migrator, memory_storage, legacy_tenants):
        await migrator.run(dry_run=False)
        writes = memory_storage.write_count

        report = await migrator.run(dry_run=False)

        assert report.skipped == 10
        assert report.migrated == 0
        assert memory_storage.write_count == writes

    async def test_uses_tenant_backend(self, migrator, profiles, memory_storage, legacy_tenants):
        await profiles.set_security_profile("tenant-04", "most_secure")

        await migrator.run(dry_run=False, tenant_id="tenant-04")

        record = memory_storage.peek_credentials("tenant-04")
        assert decode_payload(record.doordash_api_key).backend == KeyBackend.MANAGED_KMS
        assert memory_storage.peek_profile("tenant-04", Provider.DOORDASH).backend == KeyBackend.MANAGED_KMS

    async def test_failures_do_not_stop_batch(self, migrator, memory_storage, legacy_tenants):
        broken = memory_storage.peek_credentials("tenant-03")
        broken.doordash_api_key = legacy_payload("unknown-secret", "x")
        memory_storage.put_credentials(broken)

        report = await migrator.run(dry_run=False, concurrency=4)

        assert report.failed == 1
        assert report.migrated == 9
        assert report.exit_code == 1
        (failed,) = [r for r in report.results if r.status == RowStatus.FAILED]
        assert failed.tenant_id == "tenant-03"
        assert failed.error.startswith("DecryptionFailedError")
        assert memory_storage.peek_credentials("tenant-03") == broken
        assert memory_storage.peek_profile("tenant-03", Provider.DOORDASH) is None

    async def test_record_without_secrets_skipped(self, migrator, memory_storage):
        memory_storage.put_credentials(CredentialRecord(tenant_id="empty"))
        report = await migrator.run(dry_run=False)
        assert report.skipped == 1
        assert report.results[0].reason == "no stored secrets"

    async def test_invalid_concurrency(self, migrator):
        with pytest.raises(ValueError):
            await migrator.run(concurrency=0)


class TestCli:
    def test_dry_run_is_default(self, monkeypatch):
        monkeypatch.delenv("DELIVERY_PROFILE_MIGRATE_RESTAURANT_ID", raising=False)
        monkeypatch.delenv("DELIVERY_PROFILE_MIGRATE_ACTOR", raising=False)
        args = build_parser().parse_args([])
        assert args.live is False
        assert args.tenant is None
        assert args.actor == "migration-script"
        assert args.concurrency == 1

    def test_environment_defaults(self, monkeypatch):
        monkeypatch.setenv("DELIVERY_PROFILE_MIGRATE_RESTAURANT_ID", "tenant-07")
        monkeypatch.setenv("DELIVERY_PROFILE_MIGRATE_ACTOR", "nightly")
        args = build_parser().parse_args(["--live", "--concurrency", "8"])
        assert args.live is True
        assert args.tenant == "tenant-07"
        assert args.actor == "nightly"
        assert args.concurrency == 8


class TestResolveDryRun:
    def test_unset_means_dry_run(self):
        assert resolve_dry_run(live=False, environ={}) is True

    def test_live_flag_wins(self):
        assert resolve_dry_run(live=True, environ={"DELIVERY_PROFILE_MIGRATE_DRY_RUN": "true"}) is False

    def test_environment_disables_dry_run(self):
        assert resolve_dry_run(live=False, environ={"DELIVERY_PROFILE_MIGRATE_DRY_RUN": "false"}) is False

    def test_invalid_value(self):
        with pytest.raises(ConfigError):
            resolve_dry_run(live=False, environ={"DELIVERY_PROFILE_MIGRATE_DRY_RUN": "sometimes"})


class TestMain:
    @pytest.fixture
    def cli_env(self, monkeypatch, memory_storage):
        for name in (
            "DELIVERY_CREDENTIALS_ENCRYPTION_KEY",
            "JWT_SECRET",
            "DELIVERY_MANAGED_KMS_WRAPPING_KEY",
            "APP_ENV",
            "CREDENTIALS_ALLOW_DEV_DEFAULT_KEY",
            "DELIVERY_PROFILE_MIGRATE_DRY_RUN",
            "DELIVERY_PROFILE_MIGRATE_RESTAURANT_ID",
            "DELIVERY_PROFILE_MIGRATE_ACTOR",
        ):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("DELIVERY_FREE_WRAPPING_KEY", LOW_ASSURANCE_SECRET)
        monkeypatch.setenv("DELIVERY_LEGACY_CREDENTIALS_KEY", LEGACY_SECRET)
        monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/credentials")

        async def connect(database_url):
            return memory_storage

        monkeypatch.setattr(PostgresStorage, "connect", staticmethod(connect))
        return monkeypatch

    def test_dry_run_by_default(self, cli_env, memory_storage, legacy_tenants, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == 0
        assert memory_storage.write_count == 0
        output = capsys.readouterr().out
        assert "dry run" in output
        assert "Would migrate: 10" in output

    def test_environment_turns_off_dry_run(self, cli_env, memory_storage, legacy_tenants):
        cli_env.setenv("DELIVERY_PROFILE_MIGRATE_DRY_RUN", "false")

        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == 0
        assert memory_storage.peek_profile("tenant-00", Provider.DOORDASH) is not None
        assert is_versioned(memory_storage.peek_credentials("tenant-09").doordash_api_key)

    def test_failed_row_gives_nonzero_exit(self, cli_env, memory_storage, legacy_tenants, capsys):
        broken = memory_storage.peek_credentials("tenant-03")
        broken.doordash_api_key = legacy_payload("unknown-secret", "x")
        memory_storage.put_credentials(broken)

        with pytest.raises(SystemExit) as exc_info:
            main(["--live", "--concurrency", "3"])

        assert exc_info.value.code == 1
        assert "tenant-03: DecryptionFailedError" in capsys.readouterr().out

    def test_missing_database_url(self, cli_env, legacy_tenants):
        cli_env.delenv("DATABASE_URL")

        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == 2

    def test_invalid_dry_run_flag(self, cli_env):
        cli_env.setenv("DELIVERY_PROFILE_MIGRATE_DRY_RUN", "sometimes")

        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == 2
