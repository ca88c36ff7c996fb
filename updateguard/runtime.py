"""Process-wide handle on the update safety services.

Built once at the composition root (API lifespan, CLI command) and passed by
reference to whoever needs it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .backups.scheduler import BackupScheduler
from .backups.store import BackupStore
from .config import DataLayout, Settings
from .coordinator.crash import CrashDetector
from .coordinator.update_safety import UpdateCoordinator
from .errors import FailureKind, RestoreError
from .health.checker import IntegrityChecker

logger = logging.getLogger(__name__)


@dataclass
class UpdateSafetyRuntime:
    settings: Settings
    layout: DataLayout
    checker: IntegrityChecker
    store: BackupStore
    coordinator: UpdateCoordinator
    scheduler: BackupScheduler

    async def aclose(self) -> None:
        """Stop the scheduler, then release worker pools."""
        await self.scheduler.stop()
        self.close()

    def close(self) -> None:
        self.coordinator.close()
        self.store.close()
        self.checker.close()
        logger.info("Update safety services closed")


def init_update_safety(settings: Settings | None = None) -> UpdateSafetyRuntime:
    """Wire checker, store, coordinator and scheduler over one data directory."""
    settings = settings or Settings()
    layout = settings.layout()
    layout.ensure()

    checker = IntegrityChecker(layout.db_path, required_tables=settings.required_tables)
    store = BackupStore(layout, checker, settings)
    crash_detector = CrashDetector(
        layout.crash_detection_path,
        default_version=settings.app_version,
        window_ms=settings.crash_window_seconds * 1000,
        max_crash_count=settings.max_crash_count,
    )
    coordinator = UpdateCoordinator(layout, checker, store, crash_detector)
    scheduler = BackupScheduler(
        store,
        interval_seconds=settings.backup_interval_hours * 3600,
        initial_delay_seconds=settings.backup_initial_delay_seconds,
        keep_count=settings.backup_keep_count,
    )

    logger.info("Update safety services initialized for %s", layout.user_data_dir)
    return UpdateSafetyRuntime(
        settings=settings,
        layout=layout,
        checker=checker,
        store=store,
        coordinator=coordinator,
        scheduler=scheduler,
    )


async def recover_after_update(runtime: UpdateSafetyRuntime) -> None:
    """Verify the database on boot and roll back to the newest pre-update backup if needed.

    Raises RestoreError when the rollback itself fails; the host must not
    start on top of a database it could neither verify nor restore.
    """
    layout = runtime.layout
    coordinator = runtime.coordinator
    if not layout.db_path.exists() and not layout.update_metadata_path.exists():
        logger.info("No database at %s yet, skipping post-update verification", layout.db_path)
        return

    if await coordinator.verify_post_update_integrity():
        logger.info("Post-update integrity check passed")
        return

    kind = coordinator.last_failure
    logger.error(
        "Post-update integrity check failed (%s) - attempting recovery", kind.value if kind else "unknown"
    )
    result = await coordinator.handle_update_failure()
    if not result.success:
        raise RestoreError(f"Failed to recover from an update error: {result.error}")

    logger.info("Successfully recovered from update failure using %s", result.backup_path)
    if kind is FailureKind.CRASH_LOOP:
        # Restored data must not trigger the same rollback again on the next boot
        await coordinator.record_successful_startup()
