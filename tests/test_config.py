"""Tests for settings validation and the derived data layout."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from updateguard.config import DEFAULT_REQUIRED_TABLES, DataLayout, Settings


class TestSettings:
    def test_defaults(self, tmp_path: Path) -> None:
        s = Settings(user_data_dir=tmp_path)
        assert s.crash_window_seconds == 120
        assert s.max_crash_count == 3
        assert s.pre_update_keep_count == 5
        assert s.backup_interval_hours == 3.0
        assert s.required_tables == DEFAULT_REQUIRED_TABLES

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("MAX_CRASH_COUNT", "5")
        monkeypatch.setenv("USER_DATA_DIR", str(tmp_path))
        s = Settings()
        assert s.max_crash_count == 5
        assert s.user_data_dir == tmp_path

    @pytest.mark.parametrize(
        "field", ["crash_window_seconds", "max_crash_count", "pre_update_keep_count", "backup_keep_count"]
    )
    def test_rejects_non_positive(self, field: str) -> None:
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    def test_rejects_bad_table_name(self) -> None:
        with pytest.raises(ValidationError):
            Settings(required_tables=["users", "orders; DROP TABLE users"])

    def test_rejects_compression_level(self) -> None:
        with pytest.raises(ValidationError):
            Settings(archive_compression_level=10)

    def test_log_level_normalized(self) -> None:
        assert Settings(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            Settings(log_level="chatty")


class TestDataLayout:
    def test_paths(self, tmp_path: Path) -> None:
        layout = Settings(user_data_dir=tmp_path, database_file_name="pos.db").layout()
        assert layout.db_path == tmp_path / "pos.db"
        assert layout.settings_path == tmp_path / "config.json"
        assert layout.pre_update_dir == tmp_path / "backups" / "pre-update"
        assert layout.archived_dir == tmp_path / "backups" / "archived"
        assert layout.lock_path == tmp_path / "backups" / ".lock"
        assert layout.update_metadata_path == tmp_path / "backups" / "update-metadata.json"
        assert layout.crash_detection_path == tmp_path / "crash-detection.json"

    def test_ensure_is_idempotent(self, tmp_path: Path) -> None:
        layout = DataLayout.from_settings(Settings(user_data_dir=tmp_path / "root"))
        layout.ensure()
        layout.ensure()
        assert layout.pre_update_dir.is_dir()
        assert layout.archived_dir.is_dir()
