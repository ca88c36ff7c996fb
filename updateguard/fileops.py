"""Atomic file helpers: write to a temp sibling, fsync, then rename.

No caller ever observes a partially written file under its final name: the
data lands in ``<name>.tmp`` first and only ``os.replace`` publishes it.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"


def temp_path_for(path: Path) -> Path:
    return path.with_name(path.name + TEMP_SUFFIX)


def _fsync_file(path: Path) -> None:
    with open(path, "rb+") as fh:
        fh.flush()
        os.fsync(fh.fileno())


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.warning("Could not remove temp file %s", path)


def atomic_copy(source: Path, destination: Path) -> Path:
    """Copy *source* to *destination* through a temp file in the destination dir.

    The copy does not carry over the source mtime, so the artifact's
    modification time is its creation time.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp = temp_path_for(destination)
    try:
        shutil.copyfile(source, tmp)
        _fsync_file(tmp)
        os.replace(tmp, destination)
    except BaseException:
        _discard(tmp)
        raise
    return destination


def atomic_write_json(path: Path, data: Any) -> None:
    """Atomically write *data* as pretty-printed JSON to *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = temp_path_for(path)
    try:
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        _discard(tmp)
        raise


def read_json(path: Path) -> Any:
    """Read a JSON document. Raises FileNotFoundError / ValueError as usual."""
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


def remove_quietly(path: Path) -> bool:
    """Delete *path* if present. Returns True when something was removed."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
