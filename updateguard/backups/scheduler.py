"""Backup scheduler: periodic full backups.

After the initial delay each cycle takes a full backup and then prunes old
ones. Overlap with a manual backup or a restore is prevented by the store's
directory lock.
"""

from __future__ import annotations

import asyncio
import logging

from .models import BackupResult
from .store import BackupStore

logger = logging.getLogger(__name__)

SCHEDULED_NOTES = "Scheduled automatic backup"


class BackupScheduler:
    """Runs ``create_backup`` on a fixed interval.

    Lifecycle:
        scheduler = BackupScheduler(store, interval_seconds=3 * 3600)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        store: BackupStore,
        interval_seconds: float,
        initial_delay_seconds: float = 120,
        keep_count: int = 5,
    ) -> None:
        self.store = store
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.keep_count = keep_count
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self.last_result: BackupResult | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="backup-scheduler")
        logger.info(
            "Backup scheduler started: every %.1fh (first run in %ds)",
            self.interval_seconds / 3600, self.initial_delay_seconds,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Backup scheduler stopped")

    async def run_now(self) -> BackupResult:
        """One scheduled cycle: full backup, then retention."""
        logger.info("Running scheduled automatic backup...")
        result = await self.store.create_backup(SCHEDULED_NOTES)
        self.last_result = result
        if result.success:
            await self.store.clean_old_backups(self.keep_count)
        else:
            logger.error("Scheduled backup failed: %s", result.error)
        return result

    async def _loop(self) -> None:
        delay = self.initial_delay_seconds
        while self._running:
            try:
                await asyncio.sleep(delay)
                if not self._running:
                    break
                await self.run_now()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Scheduled backup error")
            delay = self.interval_seconds
