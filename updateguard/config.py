from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_REQUIRED_TABLES = [
    "users",
    "tables",
    "menu_items",
    "categories",
    "orders",
    "order_items",
    "payments",
    "expenses",
    "inventory",
    "settings",
]


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Where the host keeps its data (database, settings file, backups)
    user_data_dir: Path = Path.home() / ".updateguard"
    database_file_name: str = "app.db"
    settings_file_name: str = "config.json"

    # Version of the running application, stamped into backup metadata
    app_version: str = "0.1.0"

    # Crash-loop detection
    crash_window_seconds: int = 120  # 2 minutes
    max_crash_count: int = 3

    # Boot recovery: verify the database and roll back before the host starts
    verify_on_startup: bool = True

    # Retention
    pre_update_keep_count: int = 5
    backup_keep_count: int = 5
    archived_backup_keep_count: int = 10

    # Scheduled full backups
    auto_backup_enabled: bool = True
    backup_interval_hours: float = 3.0
    backup_initial_delay_seconds: int = 120
    archive_compression_level: int = 9

    # Advisory lock over the backup directory
    lock_timeout_seconds: float = 30.0

    # Health check
    required_tables: list[str] = list(DEFAULT_REQUIRED_TABLES)

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8765

    # Logging
    log_level: str = "INFO"

    @field_validator(
        "crash_window_seconds",
        "max_crash_count",
        "pre_update_keep_count",
        "backup_keep_count",
        "archived_backup_keep_count",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("backup_interval_hours", "lock_timeout_seconds")
    @classmethod
    def _positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("archive_compression_level")
    @classmethod
    def _compression_level(cls, value: int) -> int:
        if not 0 <= value <= 9:
            raise ValueError("compression level must be between 0 and 9")
        return value

    @field_validator("required_tables")
    @classmethod
    def _table_names(cls, value: list[str]) -> list[str]:
        bad = [name for name in value if not _IDENTIFIER.match(name)]
        if bad:
            raise ValueError(f"invalid table names: {', '.join(bad)}")
        return value

    @field_validator("log_level")
    @classmethod
    def _log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {value}")
        return level

    def layout(self) -> DataLayout:
        return DataLayout.from_settings(self)


@dataclass(frozen=True)
class DataLayout:
    """Every path the subsystem touches, resolved once from Settings."""

    user_data_dir: Path
    db_path: Path
    settings_path: Path
    backup_dir: Path
    pre_update_dir: Path
    archived_dir: Path
    lock_path: Path
    update_metadata_path: Path
    crash_detection_path: Path

    @classmethod
    def from_settings(cls, settings: Settings) -> DataLayout:
        root = Path(settings.user_data_dir).expanduser()
        backup_dir = root / "backups"
        return cls(
            user_data_dir=root,
            db_path=root / settings.database_file_name,
            settings_path=root / settings.settings_file_name,
            backup_dir=backup_dir,
            pre_update_dir=backup_dir / "pre-update",
            archived_dir=backup_dir / "archived",
            lock_path=backup_dir / ".lock",
            update_metadata_path=backup_dir / "update-metadata.json",
            crash_detection_path=root / "crash-detection.json",
        )

    def ensure(self) -> None:
        """Create the backup directory tree (idempotent)."""
        for directory in (self.user_data_dir, self.backup_dir, self.pre_update_dir, self.archived_dir):
            directory.mkdir(parents=True, exist_ok=True)


settings = Settings()
