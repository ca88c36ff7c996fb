"""Update coordinator: backup, gate, post-update verification and rollback.

Sequence driven by the host around an application update:

    STABLE --create_pre_update_backup--> BACKED_UP
    BACKED_UP --verify_backup_exists--> UPDATING        (updater installs)
    next boot --verify_post_update_integrity--> STABLE | ROLLBACK
    ROLLBACK --handle_update_failure--> STABLE (restored) | ROLLBACK (failed)

The phase is kept in memory for observability only; the persisted state that
survives restarts is the crash record and the backup artifacts themselves.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, TypeVar

from ..backups.store import BackupStore
from ..config import DataLayout
from ..errors import FailureKind
from ..fileops import atomic_write_json
from ..health.checker import HealthCheckResult, IntegrityChecker
from .crash import CrashDetectionMetadata, CrashDetector, CrashHistory

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Filesystem timestamps can trail time.time() by a clock tick
MTIME_SLACK_SECONDS = 1.0


class UpdatePhase(str, Enum):
    STABLE = "stable"
    BACKED_UP = "backed_up"
    UPDATING = "updating"
    POST_UPDATE_VERIFY = "post_update_verify"
    ROLLBACK = "rollback"


@dataclass
class UpdateSafetyResult:
    success: bool
    backup_path: Path | None = None
    error: str | None = None
    kind: FailureKind | None = None
    health_check: HealthCheckResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "error": self.error,
            "kind": self.kind.value if self.kind else None,
            "health_check": self.health_check.to_dict() if self.health_check else None,
        }


class UpdateCoordinator:
    """Sequences the update safety protocol on top of the checker and the store."""

    def __init__(
        self,
        layout: DataLayout,
        checker: IntegrityChecker,
        store: BackupStore,
        crash_detector: CrashDetector,
    ) -> None:
        self.layout = layout
        self.checker = checker
        self.store = store
        self.crash_detector = crash_detector
        self.phase = UpdatePhase.STABLE
        self.last_failure: FailureKind | None = None
        self._backup_requested_at: float | None = None
        # One worker: crash-record updates apply in call order
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="crash")

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, partial(fn, *args))

    def _set_phase(self, phase: UpdatePhase) -> None:
        if phase is not self.phase:
            logger.info("Update phase: %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    # ── Before the update ───────────────────────────────────────────────────

    async def create_pre_update_backup(self, new_version: str) -> UpdateSafetyResult:
        logger.info("Creating pre-update backup before installing version %s", new_version)
        self._backup_requested_at = time.time()

        health = await self.checker.run_health_check()
        if not health.is_healthy:
            logger.warning(
                "Database health check failed before update, backing up anyway: %s",
                "; ".join(health.errors),
            )

        result = await self.store.create_pre_update_backup(new_version)
        if not result.success or result.path is None:
            logger.error("Pre-update backup for version %s failed: %s", new_version, result.error)
            return UpdateSafetyResult(
                success=False,
                error=result.error,
                kind=result.kind or FailureKind.BACKUP_CREATION,
                health_check=health,
            )

        await self._run(self._save_update_metadata, new_version, result.path, health)
        self._set_phase(UpdatePhase.BACKED_UP)
        logger.info("Pre-update backup ready: %s", result.path)
        return UpdateSafetyResult(success=True, backup_path=result.path, health_check=health)

    def _save_update_metadata(self, version: str, backup_path: Path, health: HealthCheckResult) -> None:
        record = {
            "version": version,
            "backupPath": str(backup_path),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "databaseSize": health.database_size,
            "healthCheck": health.is_healthy,
        }
        try:
            atomic_write_json(self.layout.update_metadata_path, record)
        except OSError as e:
            # The artifact and its sidecar are already durable
            logger.error("Failed to save update metadata %s: %s", self.layout.update_metadata_path, e)

    async def verify_backup_exists(self) -> bool:
        """Gate for the updater: True only when a usable pre-update backup exists."""
        try:
            latest = await self.store.get_latest_pre_update_backup()
            if latest is None:
                logger.error("No pre-update backup found - update must not proceed")
                return False

            if not await self.store.verify_backup_integrity(latest):
                logger.error("Latest pre-update backup is invalid: %s", latest)
                return False

            if self._backup_requested_at is not None:
                mtime = latest.stat().st_mtime
                if mtime < self._backup_requested_at - MTIME_SLACK_SECONDS:
                    logger.error(
                        "Latest pre-update backup %s predates this update attempt", latest.name
                    )
                    return False
        except Exception:
            logger.exception("Backup verification failed in %s", self.layout.pre_update_dir)
            return False

        logger.info("Pre-update backup verified: %s", latest.name)
        self._set_phase(UpdatePhase.UPDATING)
        return True

    # ── After the update ────────────────────────────────────────────────────

    async def verify_post_update_integrity(self) -> bool:
        """Health check plus crash history, run on the first boot of a new version."""
        self._set_phase(UpdatePhase.POST_UPDATE_VERIFY)
        self.last_failure = None
        logger.info("Verifying post-update database integrity")

        health = await self.checker.run_health_check()
        if not health.is_healthy:
            logger.error("Post-update health check failed: %s", "; ".join(health.errors))
            self.last_failure = health.failures[0] if health.failures else FailureKind.INTEGRITY
            self._set_phase(UpdatePhase.ROLLBACK)
            return False

        history = await self.check_crash_history()
        if history.should_rollback:
            logger.error(
                "Crash loop detected: %d crashes within %ds - rollback recommended",
                history.crash_count, self.crash_detector.window_ms // 1000,
            )
            self.last_failure = FailureKind.CRASH_LOOP
            self._set_phase(UpdatePhase.ROLLBACK)
            return False

        logger.info("Post-update integrity verified")
        self._set_phase(UpdatePhase.STABLE)
        return True

    async def handle_update_failure(self) -> UpdateSafetyResult:
        """Roll the live database back to the newest pre-update backup."""
        self._set_phase(UpdatePhase.ROLLBACK)
        logger.warning("Handling update failure - attempting rollback")

        latest = await self.store.get_latest_pre_update_backup()
        if latest is None:
            error = "No backup available for recovery"
            logger.error("Rollback failed in %s: %s", self.layout.pre_update_dir, error)
            return UpdateSafetyResult(success=False, error=error, kind=FailureKind.RESTORE)

        result = await self.store.restore_from_backup_file(latest)
        if not result.success:
            logger.error("Rollback from %s failed: %s", latest, result.error)
            return UpdateSafetyResult(
                success=False,
                backup_path=latest,
                error=result.error,
                kind=result.kind or FailureKind.RESTORE,
                health_check=result.health_check,
            )

        logger.info("Rollback completed from %s", latest.name)
        self._set_phase(UpdatePhase.STABLE)
        return UpdateSafetyResult(success=True, backup_path=latest, health_check=result.health_check)

    # ── Crash detection ─────────────────────────────────────────────────────

    async def record_startup(self, version: str) -> CrashDetectionMetadata | None:
        try:
            return await self._run(self.crash_detector.record_startup, version)
        except Exception:
            logger.exception("Failed to record startup in %s", self.crash_detector.path)
            return None

    async def record_successful_startup(self) -> CrashDetectionMetadata | None:
        try:
            return await self._run(self.crash_detector.record_successful_startup)
        except Exception:
            logger.exception("Failed to record successful startup in %s", self.crash_detector.path)
            return None

    async def record_clean_shutdown(self) -> CrashDetectionMetadata | None:
        try:
            return await self._run(self.crash_detector.record_clean_shutdown)
        except Exception:
            logger.exception("Failed to record clean shutdown in %s", self.crash_detector.path)
            return None

    async def check_crash_history(self) -> CrashHistory:
        try:
            return await self._run(self.crash_detector.check_crash_history)
        except Exception:
            logger.exception("Failed to check crash history in %s", self.crash_detector.path)
            return CrashHistory(crash_count=0, should_rollback=False)

    async def crash_status(self) -> CrashHistory:
        return await self._run(self.crash_detector.status)
