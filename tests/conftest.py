"""Shared test fixtures."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from pathlib import Path

import pytest

from updateguard.backups.store import BackupStore
from updateguard.config import DEFAULT_REQUIRED_TABLES, DataLayout, Settings
from updateguard.health.checker import IntegrityChecker
from updateguard.runtime import UpdateSafetyRuntime, init_update_safety


def make_database(path: Path, tables: Iterable[str] = DEFAULT_REQUIRED_TABLES) -> Path:
    """Create a SQLite file holding the given application tables (empty)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    try:
        with conn:
            for table in tables:
                if table == "settings":
                    conn.execute(
                        "CREATE TABLE settings ("
                        "key TEXT PRIMARY KEY, value TEXT, type TEXT, category TEXT)"
                    )
                else:
                    conn.execute(f'CREATE TABLE "{table}" (id INTEGER PRIMARY KEY, name TEXT)')
    finally:
        conn.close()
    return path


def insert_user(path: Path, name: str) -> None:
    conn = sqlite3.connect(path)
    try:
        with conn:
            conn.execute("INSERT INTO users (name) VALUES (?)", (name,))
    finally:
        conn.close()


def user_names(path: Path) -> list[str]:
    conn = sqlite3.connect(path)
    try:
        return [row[0] for row in conn.execute("SELECT name FROM users ORDER BY id")]
    finally:
        conn.close()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        user_data_dir=tmp_path / "data",
        app_version="1.0.0",
        auto_backup_enabled=False,
        lock_timeout_seconds=2.0,
    )


@pytest.fixture
def layout(settings: Settings) -> DataLayout:
    layout = settings.layout()
    layout.ensure()
    return layout


@pytest.fixture
def db(layout: DataLayout) -> Path:
    """Healthy live database plus a settings file."""
    make_database(layout.db_path)
    layout.settings_path.write_text(json.dumps({"language": "en"}), encoding="utf-8")
    return layout.db_path


@pytest.fixture
def checker(layout: DataLayout):
    checker = IntegrityChecker(layout.db_path)
    yield checker
    checker.close()


@pytest.fixture
def store(layout: DataLayout, checker: IntegrityChecker, settings: Settings):
    store = BackupStore(layout, checker, settings)
    yield store
    store.close()


@pytest.fixture
def runtime(settings: Settings, db: Path):
    runtime: UpdateSafetyRuntime = init_update_safety(settings)
    yield runtime
    runtime.close()
