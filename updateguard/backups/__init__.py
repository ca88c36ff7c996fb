"""Backup subsystem: full and pre-update snapshots, retention, restore."""

from .models import BackupArtifact, BackupFlavor, BackupMetadata, BackupResult, RestoreResult
from .scheduler import BackupScheduler
from .store import BackupStore
