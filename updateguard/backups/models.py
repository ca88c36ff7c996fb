"""Backup artifacts, sidecar metadata and operation results."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import FailureKind
from ..health.checker import HealthCheckResult

# 2026-10-19-143015-123456  (date, time, microseconds; sorts lexically)
STAMP_FORMAT = "%Y-%m-%d-%H%M%S-%f"
STAMP_PATTERN = r"\d{4}-\d{2}-\d{2}-\d{6}-\d{6}(?:-\d+)?"

FULL_PREFIX = "backup-"
FULL_SUFFIX = ".zip"
PRE_UPDATE_PREFIX = "pre-update-v"
PRE_UPDATE_SUFFIX = ".db"
META_SUFFIX = ".meta"

FULL_NAME = re.compile(rf"^backup-(?P<stamp>{STAMP_PATTERN})\.zip$")
PRE_UPDATE_NAME = re.compile(rf"^pre-update-v(?P<version>.+)-(?P<stamp>{STAMP_PATTERN})\.db$")


class BackupFlavor(str, Enum):
    FULL = "full"  # compressed archive: database + settings
    PRE_UPDATE = "pre_update"  # raw database copy


@dataclass
class BackupMetadata:
    """Sidecar written next to each artifact as ``<artifact>.meta``."""

    timestamp: str
    version: str
    size: int
    files: list[str] = field(default_factory=list)
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "timestamp": self.timestamp,
            "version": self.version,
            "size": self.size,
            "files": list(self.files),
        }
        if self.notes is not None:
            d["notes"] = self.notes
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupMetadata:
        files = data.get("files", [])
        if not isinstance(files, list):
            raise ValueError("'files' must be a list")
        return cls(
            timestamp=str(data["timestamp"]),
            version=str(data["version"]),
            size=int(data["size"]),
            files=[str(f) for f in files],
            notes=data.get("notes"),
        )


@dataclass
class BackupArtifact:
    path: Path
    flavor: BackupFlavor
    mtime: float
    stamp: str

    @property
    def meta_path(self) -> Path:
        return sidecar_path(self.path)

    @property
    def sort_key(self) -> tuple[float, str]:
        return (self.mtime, self.stamp)

    @classmethod
    def from_path(cls, path: Path) -> BackupArtifact | None:
        """Recognize an artifact by name; None for anything else in the directory."""
        for pattern, flavor in ((FULL_NAME, BackupFlavor.FULL), (PRE_UPDATE_NAME, BackupFlavor.PRE_UPDATE)):
            match = pattern.match(path.name)
            if match:
                return cls(path=path, flavor=flavor, mtime=path.stat().st_mtime, stamp=match["stamp"])
        return None


def sidecar_path(artifact: Path) -> Path:
    return artifact.with_name(artifact.name + META_SUFFIX)


def full_backup_name(stamp: str) -> str:
    return f"{FULL_PREFIX}{stamp}{FULL_SUFFIX}"


def pre_update_backup_name(version: str, stamp: str) -> str:
    return f"{PRE_UPDATE_PREFIX}{version}-{stamp}{PRE_UPDATE_SUFFIX}"


# ── Results ──────────────────────────────────────────────────────────────────


@dataclass
class BackupResult:
    success: bool
    path: Path | None = None
    error: str | None = None
    kind: FailureKind | None = None
    metadata: BackupMetadata | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "path": str(self.path) if self.path else None,
            "error": self.error,
            "kind": self.kind.value if self.kind else None,
            "metadata": self.metadata.to_dict() if self.metadata else None,
        }


@dataclass
class RestoreResult:
    success: bool
    path: Path | None = None  # backup the database was restored from
    error: str | None = None
    kind: FailureKind | None = None
    corrupted_copy: Path | None = None
    health_check: HealthCheckResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "path": str(self.path) if self.path else None,
            "error": self.error,
            "kind": self.kind.value if self.kind else None,
            "corrupted_copy": str(self.corrupted_copy) if self.corrupted_copy else None,
            "health_check": self.health_check.to_dict() if self.health_check else None,
        }
