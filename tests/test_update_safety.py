"""Tests for the update coordinator: backup, gate, verification and rollback."""

from __future__ import annotations

import asyncio
import json
import os
import sqlite3
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import insert_user, user_names

from updateguard.coordinator.update_safety import UpdatePhase
from updateguard.errors import FailureKind, RestoreError
from updateguard.runtime import UpdateSafetyRuntime, recover_after_update


def _drop_table(db: Path, table: str) -> None:
    conn = sqlite3.connect(db)
    try:
        with conn:
            conn.execute(f'DROP TABLE "{table}"')
    finally:
        conn.close()


# ── Pre-update backup ────────────────────────────────────────────────────────


class TestCreatePreUpdateBackup:
    def test_success_writes_update_metadata(self, runtime: UpdateSafetyRuntime) -> None:
        coordinator = runtime.coordinator
        result = asyncio.run(coordinator.create_pre_update_backup("2.0.0"))

        assert result.success
        assert result.backup_path is not None and result.backup_path.exists()
        assert coordinator.phase == UpdatePhase.BACKED_UP
        record = json.loads(runtime.layout.update_metadata_path.read_text(encoding="utf-8"))
        assert record["version"] == "2.0.0"
        assert record["backupPath"] == str(result.backup_path)
        assert record["healthCheck"] is True
        assert record["databaseSize"] == runtime.layout.db_path.stat().st_size
        assert "timestamp" in record

    def test_unhealthy_database_is_still_backed_up(self, runtime: UpdateSafetyRuntime) -> None:
        _drop_table(runtime.layout.db_path, "inventory")

        result = asyncio.run(runtime.coordinator.create_pre_update_backup("2.0.0"))

        assert result.success
        assert result.health_check is not None and not result.health_check.is_healthy
        record = json.loads(runtime.layout.update_metadata_path.read_text(encoding="utf-8"))
        assert record["healthCheck"] is False

    def test_missing_database_fails(self, runtime: UpdateSafetyRuntime) -> None:
        runtime.layout.db_path.unlink()

        result = asyncio.run(runtime.coordinator.create_pre_update_backup("2.0.0"))

        assert not result.success
        assert result.kind == FailureKind.BACKUP_CREATION
        assert "Database file is missing" in (result.error or "")
        assert runtime.coordinator.phase == UpdatePhase.STABLE
        assert not runtime.layout.update_metadata_path.exists()


# ── Update gate ──────────────────────────────────────────────────────────────


class TestVerifyBackupExists:
    def test_no_backup_blocks_update(self, runtime: UpdateSafetyRuntime) -> None:
        assert asyncio.run(runtime.coordinator.verify_backup_exists()) is False
        assert runtime.coordinator.phase == UpdatePhase.STABLE

    def test_fresh_backup_allows_update(self, runtime: UpdateSafetyRuntime) -> None:
        coordinator = runtime.coordinator
        asyncio.run(coordinator.create_pre_update_backup("2.0.0"))

        assert asyncio.run(coordinator.verify_backup_exists()) is True
        assert coordinator.phase == UpdatePhase.UPDATING

    def test_empty_backup_blocks_update(self, runtime: UpdateSafetyRuntime) -> None:
        result = asyncio.run(runtime.coordinator.create_pre_update_backup("2.0.0"))
        result.backup_path.write_bytes(b"")

        assert asyncio.run(runtime.coordinator.verify_backup_exists()) is False

    def test_stale_backup_blocks_update_after_failed_attempt(self, runtime: UpdateSafetyRuntime) -> None:
        coordinator = runtime.coordinator
        old = asyncio.run(coordinator.create_pre_update_backup("1.9.0"))
        os.utime(old.backup_path, (1_000_000, 1_000_000))
        runtime.layout.db_path.unlink()

        failed = asyncio.run(coordinator.create_pre_update_backup("2.0.0"))

        assert not failed.success
        assert asyncio.run(coordinator.verify_backup_exists()) is False


# ── Post-update verification ─────────────────────────────────────────────────


class TestVerifyPostUpdateIntegrity:
    def test_healthy_after_update(self, runtime: UpdateSafetyRuntime) -> None:
        coordinator = runtime.coordinator
        asyncio.run(coordinator.record_startup("2.0.0"))

        assert asyncio.run(coordinator.verify_post_update_integrity()) is True
        assert coordinator.phase == UpdatePhase.STABLE
        assert coordinator.last_failure is None

    def test_schema_damage_requests_rollback(self, runtime: UpdateSafetyRuntime) -> None:
        _drop_table(runtime.layout.db_path, "orders")

        assert asyncio.run(runtime.coordinator.verify_post_update_integrity()) is False
        assert runtime.coordinator.phase == UpdatePhase.ROLLBACK
        assert runtime.coordinator.last_failure == FailureKind.SCHEMA

    def test_crash_loop_requests_rollback(self, runtime: UpdateSafetyRuntime) -> None:
        coordinator = runtime.coordinator
        for _ in range(3):
            asyncio.run(coordinator.record_startup("2.0.0"))

        assert asyncio.run(coordinator.verify_post_update_integrity()) is False
        assert coordinator.phase == UpdatePhase.ROLLBACK
        assert coordinator.last_failure == FailureKind.CRASH_LOOP
        assert asyncio.run(coordinator.crash_status()).crash_count == 3


# ── Rollback ─────────────────────────────────────────────────────────────────


class TestHandleUpdateFailure:
    def test_no_backup(self, runtime: UpdateSafetyRuntime) -> None:
        result = asyncio.run(runtime.coordinator.handle_update_failure())

        assert not result.success
        assert result.error == "No backup available for recovery"
        assert runtime.coordinator.phase == UpdatePhase.ROLLBACK

    def test_restores_latest_pre_update_backup(self, runtime: UpdateSafetyRuntime) -> None:
        coordinator = runtime.coordinator
        db = runtime.layout.db_path
        insert_user(db, "alice")
        backup = asyncio.run(coordinator.create_pre_update_backup("2.0.0"))
        insert_user(db, "migrated-row")
        db.write_bytes(b"half-migrated garbage" * 64)

        result = asyncio.run(coordinator.handle_update_failure())

        assert result.success, result.error
        assert result.backup_path == backup.backup_path
        assert result.health_check is not None and result.health_check.is_healthy
        assert user_names(db) == ["alice"]
        assert coordinator.phase == UpdatePhase.STABLE
        assert list(db.parent.glob("app.db.corrupted.*"))

    def test_invalid_backup_is_reported(self, runtime: UpdateSafetyRuntime) -> None:
        backup = asyncio.run(runtime.coordinator.create_pre_update_backup("2.0.0"))
        backup.backup_path.write_bytes(b"")

        result = asyncio.run(runtime.coordinator.handle_update_failure())

        assert not result.success
        assert result.kind == FailureKind.BACKUP_VERIFICATION


# ── Crash signals ────────────────────────────────────────────────────────────


class TestCrashSignals:
    def test_clean_shutdown_then_restart(self, runtime: UpdateSafetyRuntime) -> None:
        coordinator = runtime.coordinator
        asyncio.run(coordinator.record_startup("2.0.0"))
        asyncio.run(coordinator.record_clean_shutdown())
        asyncio.run(coordinator.record_startup("2.0.0"))

        assert asyncio.run(coordinator.crash_status()).crash_count == 0

    def test_successful_startup_resets(self, runtime: UpdateSafetyRuntime) -> None:
        coordinator = runtime.coordinator
        for _ in range(3):
            asyncio.run(coordinator.record_startup("2.0.0"))
        asyncio.run(coordinator.record_successful_startup())

        assert asyncio.run(coordinator.crash_status()).crash_count == 0

    def test_record_failure_is_logged_not_raised(self, runtime: UpdateSafetyRuntime) -> None:
        with patch.object(
            runtime.coordinator.crash_detector, "record_startup", side_effect=OSError("read-only fs")
        ):
            assert asyncio.run(runtime.coordinator.record_startup("2.0.0")) is None


# ── Boot recovery ────────────────────────────────────────────────────────────


class TestRecoverAfterUpdate:
    def test_healthy_database_is_left_alone(self, runtime: UpdateSafetyRuntime) -> None:
        insert_user(runtime.layout.db_path, "alice")
        asyncio.run(recover_after_update(runtime))

        assert runtime.coordinator.phase == UpdatePhase.STABLE
        assert user_names(runtime.layout.db_path) == ["alice"]

    def test_damaged_database_is_rolled_back(self, runtime: UpdateSafetyRuntime) -> None:
        db = runtime.layout.db_path
        insert_user(db, "alice")
        asyncio.run(runtime.coordinator.create_pre_update_backup("2.0.0"))
        _drop_table(db, "orders")

        asyncio.run(recover_after_update(runtime))

        assert user_names(db) == ["alice"]
        assert runtime.coordinator.phase == UpdatePhase.STABLE

    def test_failed_rollback_raises(self, runtime: UpdateSafetyRuntime) -> None:
        _drop_table(runtime.layout.db_path, "orders")

        with pytest.raises(RestoreError, match="No backup available for recovery"):
            asyncio.run(recover_after_update(runtime))

    def test_crash_loop_rollback_resets_counter(self, runtime: UpdateSafetyRuntime) -> None:
        coordinator = runtime.coordinator
        asyncio.run(coordinator.create_pre_update_backup("2.0.0"))
        for _ in range(3):
            asyncio.run(coordinator.record_startup("2.0.0"))

        asyncio.run(recover_after_update(runtime))

        assert coordinator.phase == UpdatePhase.STABLE
        assert asyncio.run(coordinator.crash_status()).crash_count == 0

    def test_fresh_install_is_skipped(self, runtime: UpdateSafetyRuntime) -> None:
        runtime.layout.db_path.unlink()

        asyncio.run(recover_after_update(runtime))

        assert runtime.coordinator.phase == UpdatePhase.STABLE
        assert not runtime.layout.db_path.exists()
