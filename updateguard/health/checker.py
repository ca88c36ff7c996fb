"""Database integrity checker: composite health probes for the live database.

Four probes run on every full check, independently and unconditionally:
connection, engine integrity, required tables, writeability. A failing probe
never stops the others, so callers always see the complete failure surface.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from ..config import DEFAULT_REQUIRED_TABLES
from ..errors import FailureKind
from .provider import ConnectionProvider, SQLiteConnectionProvider

logger = logging.getLogger(__name__)

INTEGRITY_OK = "ok"


# ── Models ───────────────────────────────────────────────────────────────────


@dataclass
class HealthChecks:
    connection: bool = False
    integrity: bool = False
    required_tables: bool = False
    writeable: bool = False


@dataclass
class HealthCheckResult:
    """Outcome of one full health check. Built fresh per call, never persisted."""

    database_path: str
    is_healthy: bool = False
    checks: HealthChecks = field(default_factory=HealthChecks)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    database_size: int | None = None
    missing_tables: list[str] = field(default_factory=list)
    table_counts: dict[str, int] = field(default_factory=dict)
    failures: list[FailureKind] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["failures"] = [f.value for f in self.failures]
        return d


@dataclass
class TableCheck:
    all_tables_exist: bool
    missing_tables: list[str]
    table_counts: dict[str, int]


# ── Checker ──────────────────────────────────────────────────────────────────


class IntegrityChecker:
    """Runs health probes against the database behind a ConnectionProvider.

    Probes are blocking (SQLite); the async entry points push them onto a
    small thread pool so the host event loop keeps running.
    """

    def __init__(
        self,
        db_path: Path,
        provider: ConnectionProvider | None = None,
        required_tables: Sequence[str] | None = None,
    ) -> None:
        self._db_path = Path(db_path)
        self.provider = provider or SQLiteConnectionProvider(self._db_path)
        self.required_tables = list(required_tables or DEFAULT_REQUIRED_TABLES)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="health")

    # -- public API ------------------------------------------------------------

    async def run_health_check(self) -> HealthCheckResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.run_health_check_sync)

    async def quick_health_check(self) -> bool:
        """Connection + integrity only, for frequent polling."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.quick_health_check_sync)

    def get_database_path(self) -> Path:
        return self._db_path

    def database_file_exists(self) -> bool:
        try:
            return self._db_path.is_file()
        except OSError:
            return False

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    # -- sync probes -----------------------------------------------------------

    def run_health_check_sync(self) -> HealthCheckResult:
        logger.info("Starting database health check: %s", self._db_path)
        result = HealthCheckResult(database_path=str(self._db_path))

        result.checks.connection = self.check_connection()
        if not result.checks.connection:
            result.errors.append("Failed to connect to database")
            result.failures.append(FailureKind.CONNECTION)

        result.checks.integrity = self.check_integrity()
        if not result.checks.integrity:
            result.errors.append("Database integrity check failed")
            result.failures.append(FailureKind.INTEGRITY)

        tables = self.verify_required_tables()
        result.checks.required_tables = tables.all_tables_exist
        result.missing_tables = tables.missing_tables
        result.table_counts = tables.table_counts
        if not tables.all_tables_exist:
            result.errors.append(f"Missing required tables: {', '.join(tables.missing_tables)}")
            result.failures.append(FailureKind.SCHEMA)

        result.checks.writeable = self.check_writeable()
        if not result.checks.writeable:
            result.errors.append("Database is not writeable")
            result.failures.append(FailureKind.WRITE)

        try:
            result.database_size = self._db_path.stat().st_size
        except OSError:
            result.warnings.append("Could not determine database file size")

        result.is_healthy = all(
            (
                result.checks.connection,
                result.checks.integrity,
                result.checks.required_tables,
                result.checks.writeable,
            )
        )

        if result.is_healthy:
            logger.info("Database health check passed: %s", self._db_path)
        else:
            logger.error(
                "Database health check FAILED for %s: %s",
                self._db_path, "; ".join(result.errors),
            )
        return result

    def quick_health_check_sync(self) -> bool:
        if not self.check_connection():
            return False
        return self.check_integrity()

    def check_connection(self) -> bool:
        try:
            self.provider.ping()
            return True
        except Exception as e:
            logger.error("Connection probe failed for %s: %s", self._db_path, e)
            return False

    def check_integrity(self) -> bool:
        try:
            status = self.provider.integrity_check()
        except Exception as e:
            logger.error("Integrity probe failed for %s: %s", self._db_path, e)
            return False
        if status == INTEGRITY_OK:
            return True
        logger.error("Integrity check returned %r for %s", status, self._db_path)
        return False

    def verify_required_tables(self) -> TableCheck:
        missing: list[str] = []
        counts: dict[str, int] = {}
        for table in self.required_tables:
            try:
                counts[table] = self.provider.count_rows(table)
            except Exception as e:
                logger.debug("Table probe failed for %s: %s", table, e)
                missing.append(table)

        if missing:
            logger.error("Missing required tables in %s: %s", self._db_path, ", ".join(missing))
        else:
            logger.debug("All %d required tables present", len(self.required_tables))
        return TableCheck(all_tables_exist=not missing, missing_tables=missing, table_counts=counts)

    def check_writeable(self) -> bool:
        try:
            self.provider.upsert_sentinel()
            return True
        except Exception as e:
            logger.error("Write probe failed for %s: %s", self._db_path, e)
            return False
