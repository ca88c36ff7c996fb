"""Failure taxonomy shared by the checker, the backup store and the coordinator.

Internal steps raise UpdateSafetyError subclasses; public operations catch them
at their boundary and hand back a result carrying ``error`` and ``kind``.
"""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    CONNECTION = "connection_failure"
    INTEGRITY = "integrity_failure"
    SCHEMA = "schema_failure"
    WRITE = "write_failure"
    BACKUP_CREATION = "backup_creation_failure"
    BACKUP_VERIFICATION = "backup_verification_failure"
    RESTORE = "restore_failure"
    CRASH_LOOP = "crash_loop_detected"
    LOCK_TIMEOUT = "lock_timeout"


class UpdateSafetyError(Exception):
    """Base class for failures raised inside the update safety subsystem."""

    kind: FailureKind = FailureKind.RESTORE


class BackupCreationError(UpdateSafetyError):
    kind = FailureKind.BACKUP_CREATION


class BackupVerificationError(UpdateSafetyError):
    kind = FailureKind.BACKUP_VERIFICATION


class RestoreError(UpdateSafetyError):
    kind = FailureKind.RESTORE


class BackupLockTimeout(UpdateSafetyError):
    """Another operation holds the backup directory lock."""

    kind = FailureKind.LOCK_TIMEOUT
