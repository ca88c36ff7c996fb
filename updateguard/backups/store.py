"""Backup store: durable, verifiable snapshots of the live database.

Two artifact flavors live under the backup directory:

    backups/backup-<stamp>.zip               full archive (database + settings)
    backups/pre-update/pre-update-v<ver>-<stamp>.db   raw database copy

Each artifact has a ``.meta`` JSON sidecar. Artifacts and sidecars are written
to a ``.tmp`` sibling and renamed into place; the live database is never
modified in place during a restore. It is copied, journal files included, to
``<db>.corrupted.<epoch-ms>`` first and then replaced by rename; the old
journal files are dropped only once the replacement is in place.
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import os
import re
import shutil
import time
import zipfile
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, TypeVar

from filelock import FileLock, Timeout

from ..config import DataLayout, Settings
from ..errors import (
    BackupCreationError,
    BackupLockTimeout,
    BackupVerificationError,
    FailureKind,
    RestoreError,
    UpdateSafetyError,
)
from ..fileops import TEMP_SUFFIX, atomic_copy, atomic_write_json, read_json, remove_quietly, temp_path_for
from ..health.checker import HealthCheckResult, IntegrityChecker
from .models import (
    FULL_SUFFIX,
    STAMP_FORMAT,
    STAMP_PATTERN,
    BackupArtifact,
    BackupFlavor,
    BackupMetadata,
    BackupResult,
    RestoreResult,
    full_backup_name,
    pre_update_backup_name,
    sidecar_path,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_VERSION = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")
_TIMESTAMP = re.compile(rf"^{STAMP_PATTERN}$")

SQLITE_SIDE_FILES = ("-wal", "-shm", "-journal")


class BackupStore:
    """Creates, verifies, lists, prunes and restores backup artifacts.

    Every mutating operation holds an advisory ``FileLock`` over the backup
    directory for its whole duration. Blocking work runs on a private thread
    pool; the async methods never block the caller's event loop.
    """

    def __init__(
        self,
        layout: DataLayout,
        checker: IntegrityChecker,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or Settings()
        self.layout = layout
        self.checker = checker
        self.app_version = settings.app_version
        self.pre_update_keep_count = settings.pre_update_keep_count
        self.archived_keep_count = settings.archived_backup_keep_count
        self.compression_level = settings.archive_compression_level
        self.lock_timeout = settings.lock_timeout_seconds
        self.database_name = layout.db_path.name
        self.settings_name = layout.settings_path.name

        layout.ensure()
        self._dir_lock = FileLock(str(layout.lock_path))
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="backup")
        logger.info("BackupStore initialized: %s", layout.backup_dir)

    # -- plumbing --------------------------------------------------------------

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, partial(fn, *args))

    @contextmanager
    def _locked(self) -> Iterator[None]:
        try:
            self._dir_lock.acquire(timeout=self.lock_timeout)
        except Timeout as e:
            raise BackupLockTimeout(
                f"Backup directory is locked by another operation: {self.layout.lock_path}"
            ) from e
        try:
            yield
        finally:
            self._dir_lock.release()

    @staticmethod
    def _new_stamp() -> str:
        return datetime.now(timezone.utc).strftime(STAMP_FORMAT)

    @staticmethod
    def _unique_path(directory: Path, make_name: Callable[[str], str], stamp: str) -> tuple[Path, str]:
        """First free artifact name for *stamp*; a numeric suffix breaks same-tick collisions."""
        candidate = stamp
        n = 1
        while True:
            path = directory / make_name(candidate)
            if not path.exists() and not temp_path_for(path).exists():
                return path, candidate
            candidate = f"{stamp}-{n}"
            n += 1

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    # -- creation --------------------------------------------------------------

    async def create_backup(self, notes: str | None = None) -> BackupResult:
        """Full backup: zip archive of the database and the settings file."""
        return await self._run(self.create_backup_sync, notes)

    def create_backup_sync(self, notes: str | None = None) -> BackupResult:
        try:
            with self._locked():
                return self._create_backup(notes)
        except UpdateSafetyError as e:
            logger.error("create_backup failed in %s: %s", self.layout.backup_dir, e)
            return BackupResult(success=False, error=str(e), kind=e.kind)
        except Exception as e:
            logger.exception("create_backup failed in %s", self.layout.backup_dir)
            return BackupResult(success=False, error=str(e), kind=FailureKind.BACKUP_CREATION)

    def _create_backup(self, notes: str | None) -> BackupResult:
        path, stamp = self._unique_path(self.layout.backup_dir, full_backup_name, self._new_stamp())
        tmp = temp_path_for(path)

        sources = (
            (self.layout.db_path, self.database_name),
            (self.layout.settings_path, self.settings_name),
        )
        members: list[str] = []
        try:
            with zipfile.ZipFile(
                tmp, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=self.compression_level
            ) as zf:
                for source, arcname in sources:
                    try:
                        zf.write(source, arcname)
                    except FileNotFoundError:
                        # Optional inputs: a missing file is a warning, not a failure
                        logger.warning("File not found during backup, skipping: %s", source)
                        continue
                    members.append(arcname)
            if not members:
                raise BackupCreationError(
                    f"Nothing to back up: neither {self.layout.db_path} nor "
                    f"{self.layout.settings_path} exists"
                )
            with open(tmp, "rb+") as fh:
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except BaseException:
            remove_quietly(tmp)
            raise

        if not self._verify_sync(path):
            remove_quietly(path)
            raise BackupVerificationError(f"Backup verification failed - archive is invalid: {path}")

        metadata = BackupMetadata(
            timestamp=stamp,
            version=self.app_version,
            size=path.stat().st_size,
            files=members,
            notes=notes,
        )
        self._write_sidecar(path, metadata)
        logger.info("Backup created successfully: %s (%d bytes)", path.name, metadata.size)
        return BackupResult(success=True, path=path, metadata=metadata)

    async def create_pre_update_backup(self, version: str) -> BackupResult:
        """Fast raw copy of the database taken right before an update."""
        return await self._run(self.create_pre_update_backup_sync, version)

    def create_pre_update_backup_sync(self, version: str) -> BackupResult:
        try:
            with self._locked():
                return self._create_pre_update_backup(version)
        except UpdateSafetyError as e:
            logger.error("create_pre_update_backup(%s) failed for %s: %s", version, self.layout.db_path, e)
            return BackupResult(success=False, error=str(e), kind=e.kind)
        except Exception as e:
            logger.exception("create_pre_update_backup(%s) failed for %s", version, self.layout.db_path)
            return BackupResult(success=False, error=str(e), kind=FailureKind.BACKUP_CREATION)

    def _create_pre_update_backup(self, version: str) -> BackupResult:
        if not _VERSION.match(version):
            raise BackupCreationError(f"Invalid version string: {version!r}")

        db_path = self.layout.db_path
        if not db_path.is_file():
            raise BackupCreationError(f"Database file is missing: {db_path} not found")

        path, stamp = self._unique_path(
            self.layout.pre_update_dir, lambda s: pre_update_backup_name(version, s), self._new_stamp()
        )

        atomic_copy(db_path, path)

        if not self._verify_sync(path):
            remove_quietly(path)
            raise BackupVerificationError("Backup verification failed - backup is invalid")

        metadata = BackupMetadata(
            timestamp=stamp,
            version=version,
            size=path.stat().st_size,
            files=[self.database_name],
            notes=f"Pre-update backup for version {version}",
        )
        self._write_sidecar(path, metadata)
        logger.info("Pre-update backup created successfully: %s", path.name)

        self._clean_old_pre_update_backups(self.pre_update_keep_count)
        return BackupResult(success=True, path=path, metadata=metadata)

    def _write_sidecar(self, artifact: Path, metadata: BackupMetadata) -> None:
        try:
            atomic_write_json(sidecar_path(artifact), metadata.to_dict())
        except OSError as e:
            # An artifact without its sidecar is invisible to listing; drop it
            remove_quietly(artifact)
            raise BackupCreationError(f"Failed to write backup metadata for {artifact.name}: {e}") from e

    # -- verification & listing ------------------------------------------------

    async def verify_backup_integrity(self, path: Path | str) -> bool:
        """File-level check only: the artifact exists and is not empty."""
        return await self._run(self._verify_sync, Path(path))

    def _verify_sync(self, path: Path) -> bool:
        try:
            if not path.is_file():
                logger.error("Backup file does not exist: %s", path)
                return False
            if path.stat().st_size == 0:
                logger.error("Backup file is empty: %s", path)
                return False
        except OSError as e:
            logger.error("Backup integrity verification failed for %s: %s", path, e)
            return False
        return True

    async def list_backups(self) -> list[BackupMetadata]:
        """Metadata of full backups, newest first."""
        return await self._run(self._list_metadata, self.layout.backup_dir, "*.zip.meta")

    async def list_pre_update_backups(self) -> list[BackupMetadata]:
        """Metadata of pre-update backups, newest first."""
        return await self._run(self._list_metadata, self.layout.pre_update_dir, "*.db.meta")

    def _list_metadata(self, directory: Path, pattern: str) -> list[BackupMetadata]:
        backups: list[BackupMetadata] = []
        for meta_path in directory.glob(pattern):
            try:
                backups.append(BackupMetadata.from_dict(read_json(meta_path)))
            except FileNotFoundError:
                continue
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning("Skipping unreadable backup metadata %s: %s", meta_path, e)
        backups.sort(key=lambda m: m.timestamp, reverse=True)
        return backups

    def artifacts(self, flavor: BackupFlavor) -> list[BackupArtifact]:
        """Artifacts of one flavor on disk, newest first by modification time."""
        directory = self.layout.backup_dir if flavor is BackupFlavor.FULL else self.layout.pre_update_dir
        found: list[BackupArtifact] = []
        for path in directory.iterdir():
            if path.name.endswith(TEMP_SUFFIX) or not path.is_file():
                continue
            try:
                artifact = BackupArtifact.from_path(path)
            except FileNotFoundError:
                continue
            if artifact is not None and artifact.flavor is flavor:
                found.append(artifact)
        found.sort(key=lambda a: a.sort_key, reverse=True)
        return found

    async def get_latest_backup(self) -> Path | None:
        return await self._run(self._latest, BackupFlavor.FULL)

    async def get_latest_pre_update_backup(self) -> Path | None:
        return await self._run(self._latest, BackupFlavor.PRE_UPDATE)

    def _latest(self, flavor: BackupFlavor) -> Path | None:
        try:
            found = self.artifacts(flavor)
        except OSError as e:
            logger.error("Failed to list %s backups: %s", flavor.value, e)
            return None
        return found[0].path if found else None

    def find_backup(self, timestamp: str) -> Path | None:
        """Path of the full backup with this timestamp, if it exists."""
        if not _TIMESTAMP.match(timestamp):
            return None
        path = self.layout.backup_dir / full_backup_name(timestamp)
        return path if path.is_file() else None

    # -- retention -------------------------------------------------------------

    async def clean_old_pre_update_backups(self, keep_count: int) -> int:
        return await self._run(self.clean_old_pre_update_backups_sync, keep_count)

    def clean_old_pre_update_backups_sync(self, keep_count: int) -> int:
        try:
            with self._locked():
                return self._clean_old_pre_update_backups(keep_count)
        except Exception as e:
            logger.error("Failed to clean old pre-update backups in %s: %s", self.layout.pre_update_dir, e)
            return 0

    def _clean_old_pre_update_backups(self, keep_count: int) -> int:
        evicted = self.artifacts(BackupFlavor.PRE_UPDATE)[max(keep_count, 0):]
        for artifact in evicted:
            remove_quietly(artifact.path)
            remove_quietly(artifact.meta_path)
            logger.info("Deleted old pre-update backup: %s", artifact.path.name)
        if evicted:
            logger.info("Cleaned %d old pre-update backups", len(evicted))
        return len(evicted)

    async def clean_old_backups(self, keep_count: int) -> int:
        """Evict full backups beyond *keep_count*, gzip-archiving each first."""
        return await self._run(self.clean_old_backups_sync, keep_count)

    def clean_old_backups_sync(self, keep_count: int) -> int:
        try:
            with self._locked():
                return self._clean_old_backups(keep_count)
        except Exception as e:
            logger.error("Failed to clean old backups in %s: %s", self.layout.backup_dir, e)
            return 0

    def _clean_old_backups(self, keep_count: int) -> int:
        evicted = self.artifacts(BackupFlavor.FULL)[max(keep_count, 0):]
        for artifact in evicted:
            self._gzip_to_archive(artifact.path)
            remove_quietly(artifact.path)
            remove_quietly(artifact.meta_path)
            logger.info("Archived and deleted old backup: %s", artifact.path.name)

        cold = sorted(
            self.layout.archived_dir.glob("backup-*.zip.gz"),
            key=lambda p: (p.stat().st_mtime, p.name),
            reverse=True,
        )
        for path in cold[self.archived_keep_count:]:
            remove_quietly(path)
            logger.info("Deleted old archived backup: %s", path.name)
        return len(evicted)

    def _gzip_to_archive(self, source: Path) -> Path:
        target = self.layout.archived_dir / f"{source.name}.gz"
        tmp = temp_path_for(target)
        try:
            with open(source, "rb") as src, gzip.open(tmp, "wb") as dst:
                shutil.copyfileobj(src, dst)
            os.replace(tmp, target)
        except BaseException:
            remove_quietly(tmp)
            raise
        return target

    # -- restore ---------------------------------------------------------------

    async def restore_backup(self, timestamp: str) -> RestoreResult:
        """Restore the full backup identified by its timestamp."""
        path = self.find_backup(timestamp)
        if path is None:
            error = f"Backup file not found: {full_backup_name(timestamp)}"
            logger.error("restore_backup failed: %s", error)
            return RestoreResult(success=False, error=error, kind=FailureKind.RESTORE)
        return await self.restore_from_backup_file(path)

    async def restore_from_backup_file(self, path: Path | str) -> RestoreResult:
        return await self._run(self.restore_from_backup_file_sync, Path(path))

    def restore_from_backup_file_sync(self, path: Path) -> RestoreResult:
        try:
            with self._locked():
                if not path.is_file():
                    raise RestoreError(f"Backup file not found: {path}")
                if not self._verify_sync(path):
                    raise BackupVerificationError(f"Backup file is corrupted: {path}")
                if path.suffix == FULL_SUFFIX:
                    return self._restore_archive(path)
                return self._restore_raw(path)
        except UpdateSafetyError as e:
            logger.error("Restore from %s failed: %s", path, e)
            return RestoreResult(success=False, path=path, error=str(e), kind=e.kind)
        except Exception as e:
            logger.exception("Restore from %s failed", path)
            return RestoreResult(success=False, path=path, error=str(e), kind=FailureKind.RESTORE)

    def _restore_raw(self, backup: Path) -> RestoreResult:
        snapshot = self._snapshot_live_db()
        failure = self._swap_database(backup, partial(atomic_copy, backup, self.layout.db_path), snapshot)
        if failure is not None:
            return failure
        logger.info("Database replaced from backup %s", backup)
        return self._confirm_restore(backup, snapshot)

    def _restore_archive(self, archive: Path) -> RestoreResult:
        scratch = self.layout.user_data_dir / f"restore-temp-{int(time.time() * 1000)}"
        scratch.mkdir(parents=True, exist_ok=False)
        try:
            with zipfile.ZipFile(archive) as zf:
                bad = zf.testzip()
                if bad is not None:
                    raise BackupVerificationError(f"Archive member {bad} is corrupted in {archive.name}")
                names = set(zf.namelist())
                db_file = Path(zf.extract(self.database_name, scratch)) if self.database_name in names else None
                settings_file = (
                    Path(zf.extract(self.settings_name, scratch)) if self.settings_name in names else None
                )
            if db_file is None and settings_file is None:
                raise RestoreError(f"Archive {archive.name} contains neither database nor settings")
            logger.info("Backup extracted to temporary directory: %s", scratch)

            result = RestoreResult(success=True, path=archive)
            snapshot = None
            if db_file is not None:
                snapshot = self._snapshot_live_db()
                failure = self._swap_database(
                    archive, partial(os.replace, db_file, self.layout.db_path), snapshot
                )
                if failure is not None:
                    return failure
                logger.info("Database restored from backup: %s", archive.name)
                result = self._confirm_restore(archive, snapshot)
                if not result.success:
                    return result

            if settings_file is not None:
                try:
                    os.replace(settings_file, self.layout.settings_path)
                except OSError as e:
                    error = f"Could not restore settings file {self.layout.settings_path}: {e}"
                    logger.error("%s (source %s)", error, archive)
                    if db_file is None:
                        return RestoreResult(success=False, path=archive, error=error, kind=FailureKind.RESTORE)
                    return self._roll_back(archive, snapshot, error, result.health_check)
                logger.info("Settings restored from backup: %s", archive.name)

            logger.info("Backup restoration completed successfully: %s", archive.name)
            return result
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def _side_files(self, db_path: Path) -> list[Path]:
        return [db_path.with_name(db_path.name + suffix) for suffix in SQLITE_SIDE_FILES]

    def _snapshot_live_db(self) -> Path | None:
        """Copy the current (possibly corrupted) database and its journal files aside.

        The live files are left where they are; they are only dropped once the
        replacement database is in place.
        """
        db_path = self.layout.db_path
        if not db_path.exists():
            return None
        snapshot = db_path.with_name(f"{db_path.name}.corrupted.{int(time.time() * 1000)}")
        atomic_copy(db_path, snapshot)
        for side, copy in zip(self._side_files(db_path), self._side_files(snapshot)):
            if side.exists():
                shutil.copyfile(side, copy)
        logger.info("Current database backed up to %s", snapshot)
        return snapshot

    def _swap_database(
        self, source: Path, replace: Callable[[], Any], snapshot: Path | None
    ) -> RestoreResult | None:
        """Put the restored database file in place; returns a failed result on error."""
        db_path = self.layout.db_path
        try:
            replace()
        except OSError as e:
            # Nothing live has been touched yet
            error = f"Could not replace database {db_path}: {e}"
            logger.error("%s (source %s)", error, source)
            return RestoreResult(
                success=False, path=source, error=error, kind=FailureKind.RESTORE, corrupted_copy=snapshot
            )

        # Journal files belong to the old database and must not be replayed onto the new one
        try:
            for side in self._side_files(db_path):
                remove_quietly(side)
        except OSError as e:
            error = f"Could not remove journal files of {db_path}: {e}"
            logger.error("%s (source %s)", error, source)
            return self._roll_back(source, snapshot, error)
        return None

    def _confirm_restore(self, source: Path, snapshot: Path | None) -> RestoreResult:
        health = self.checker.run_health_check_sync()
        if health.is_healthy:
            logger.info("Database restored successfully from %s", source)
            return RestoreResult(
                success=True, path=source, corrupted_copy=snapshot, health_check=health
            )

        error = f"Restored database failed health check: {'; '.join(health.errors)}"
        logger.error("%s (source %s)", error, source)
        return self._roll_back(source, snapshot, error, health)

    def _roll_back(
        self, source: Path, snapshot: Path | None, error: str, health: HealthCheckResult | None = None
    ) -> RestoreResult:
        try:
            self._reinstate(snapshot)
        except OSError as e:
            logger.exception("Could not put the previous database back from %s", snapshot)
            error = f"{error}; previous database kept at {snapshot} ({e})"
        return RestoreResult(
            success=False,
            path=source,
            error=error,
            kind=FailureKind.RESTORE,
            corrupted_copy=snapshot,
            health_check=health,
        )

    def _reinstate(self, snapshot: Path | None) -> None:
        db_path = self.layout.db_path
        if snapshot is None:
            remove_quietly(db_path)
            for side in self._side_files(db_path):
                remove_quietly(side)
            logger.warning("Removed restored database %s (no previous database existed)", db_path)
            return
        atomic_copy(snapshot, db_path)
        for side, copy in zip(self._side_files(db_path), self._side_files(snapshot)):
            if copy.exists():
                shutil.copyfile(copy, side)
            else:
                remove_quietly(side)
        logger.warning("Previous database reinstated from %s", snapshot)
