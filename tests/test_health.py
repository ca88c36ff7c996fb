"""Tests for the database integrity checker."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path

from conftest import make_database

from updateguard.config import DEFAULT_REQUIRED_TABLES
from updateguard.errors import FailureKind
from updateguard.health.checker import IntegrityChecker
from updateguard.health.provider import WRITE_TEST_KEY


class FakeProvider:
    """Provider whose individual probes can be switched to fail."""

    def __init__(self, fail: set[str] | None = None, integrity: str = "ok") -> None:
        self.fail = fail or set()
        self.integrity = integrity
        self.calls: list[str] = []

    def _probe(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise sqlite3.OperationalError(f"{name} broken")

    def ping(self) -> None:
        self._probe("ping")

    def integrity_check(self) -> str:
        self._probe("integrity")
        return self.integrity

    def count_rows(self, table: str) -> int:
        self._probe(f"count:{table}")
        return 0

    def upsert_sentinel(self) -> None:
        self._probe("upsert")


# ── Full health check ────────────────────────────────────────────────────────


class TestRunHealthCheck:
    def test_fresh_database_is_healthy(self, tmp_path: Path) -> None:
        db = make_database(tmp_path / "app.db")
        checker = IntegrityChecker(db)
        try:
            result = asyncio.run(checker.run_health_check())
        finally:
            checker.close()

        assert result.is_healthy
        assert result.checks.connection
        assert result.checks.integrity
        assert result.checks.required_tables
        assert result.checks.writeable
        assert result.errors == []
        assert result.failures == []
        assert result.database_size and result.database_size > 0
        assert set(result.table_counts) == set(DEFAULT_REQUIRED_TABLES)

    def test_missing_table_is_named_and_other_probes_still_pass(self, tmp_path: Path) -> None:
        tables = [t for t in DEFAULT_REQUIRED_TABLES if t != "payments"]
        db = make_database(tmp_path / "app.db", tables)
        checker = IntegrityChecker(db)
        try:
            result = checker.run_health_check_sync()
        finally:
            checker.close()

        assert not result.is_healthy
        assert result.missing_tables == ["payments"]
        assert result.checks.connection
        assert result.checks.integrity
        assert result.checks.writeable
        assert not result.checks.required_tables
        assert result.failures == [FailureKind.SCHEMA]
        assert any("payments" in e for e in result.errors)

    def test_missing_file_is_not_created(self, tmp_path: Path) -> None:
        db = tmp_path / "absent.db"
        checker = IntegrityChecker(db)
        try:
            result = checker.run_health_check_sync()
        finally:
            checker.close()

        assert not result.is_healthy
        assert not result.checks.connection
        assert not result.checks.writeable
        assert FailureKind.CONNECTION in result.failures
        assert result.database_size is None
        assert result.warnings
        assert not db.exists()

    def test_garbage_file_fails(self, tmp_path: Path) -> None:
        db = tmp_path / "app.db"
        db.write_bytes(b"this is not a database" * 100)
        checker = IntegrityChecker(db)
        try:
            result = checker.run_health_check_sync()
        finally:
            checker.close()

        assert not result.is_healthy
        assert not result.checks.integrity

    def test_write_probe_upserts_sentinel(self, tmp_path: Path) -> None:
        db = make_database(tmp_path / "app.db")
        checker = IntegrityChecker(db)
        try:
            checker.run_health_check_sync()
            checker.run_health_check_sync()
        finally:
            checker.close()

        conn = sqlite3.connect(db)
        try:
            rows = conn.execute(
                "SELECT type, category FROM settings WHERE key = ?", (WRITE_TEST_KEY,)
            ).fetchall()
        finally:
            conn.close()
        assert rows == [("string", "system")]

    def test_to_dict_serializes_failures(self, tmp_path: Path) -> None:
        checker = IntegrityChecker(tmp_path / "absent.db")
        try:
            d = checker.run_health_check_sync().to_dict()
        finally:
            checker.close()
        assert "connection_failure" in d["failures"]
        assert d["checks"]["connection"] is False


# ── Probe independence ───────────────────────────────────────────────────────


class TestProbeIndependence:
    def test_connection_failure_does_not_short_circuit(self, tmp_path: Path) -> None:
        provider = FakeProvider(fail={"ping"})
        checker = IntegrityChecker(tmp_path / "app.db", provider=provider, required_tables=["users"])
        try:
            result = checker.run_health_check_sync()
        finally:
            checker.close()

        assert not result.checks.connection
        assert result.checks.integrity
        assert result.checks.required_tables
        assert result.checks.writeable
        assert provider.calls == ["ping", "integrity", "count:users", "upsert"]

    def test_write_failure_reported_alone(self, tmp_path: Path) -> None:
        provider = FakeProvider(fail={"upsert"})
        checker = IntegrityChecker(tmp_path / "app.db", provider=provider, required_tables=["users"])
        try:
            result = checker.run_health_check_sync()
        finally:
            checker.close()

        assert not result.is_healthy
        assert result.failures == [FailureKind.WRITE]
        assert result.errors == ["Database is not writeable"]

    def test_integrity_status_other_than_ok_fails(self, tmp_path: Path) -> None:
        provider = FakeProvider(integrity="*** in database main *** Page 3 is never used")
        checker = IntegrityChecker(tmp_path / "app.db", provider=provider, required_tables=["users"])
        try:
            result = checker.run_health_check_sync()
        finally:
            checker.close()

        assert not result.checks.integrity
        assert result.failures == [FailureKind.INTEGRITY]


# ── Quick check & helpers ────────────────────────────────────────────────────


class TestQuickHealthCheck:
    def test_healthy(self, tmp_path: Path) -> None:
        checker = IntegrityChecker(make_database(tmp_path / "app.db"))
        try:
            assert asyncio.run(checker.quick_health_check()) is True
        finally:
            checker.close()

    def test_skips_integrity_when_connection_fails(self, tmp_path: Path) -> None:
        provider = FakeProvider(fail={"ping"})
        checker = IntegrityChecker(tmp_path / "app.db", provider=provider)
        try:
            assert asyncio.run(checker.quick_health_check()) is False
        finally:
            checker.close()
        assert provider.calls == ["ping"]

    def test_database_path_helpers(self, tmp_path: Path) -> None:
        db = tmp_path / "app.db"
        checker = IntegrityChecker(db)
        try:
            assert checker.get_database_path() == db
            assert not checker.database_file_exists()
            make_database(db)
            assert checker.database_file_exists()
        finally:
            checker.close()
