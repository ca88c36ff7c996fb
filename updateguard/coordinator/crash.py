"""Crash-loop detection across process restarts.

A dead process cannot report its own crash, so crashes are inferred from
timing: a startup that follows the previous one within the crash window is
evidence that the previous run died. Each startup is counted at most once,
either by ``record_startup`` on the next boot or by ``check_crash_history``
during its own boot, whichever sees it first. The record lives in one JSON
file written atomically.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..fileops import atomic_write_json, read_json

logger = logging.getLogger(__name__)

DEFAULT_CRASH_WINDOW_MS = 2 * 60 * 1000
DEFAULT_MAX_CRASH_COUNT = 3


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class CrashDetectionMetadata:
    version: str
    startup_time: int  # epoch ms
    crash_count: int = 0
    last_crash_time: int | None = None
    clean_shutdown: bool = False
    startup_counted: bool = False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "version": self.version,
            "startupTime": self.startup_time,
            "crashCount": self.crash_count,
        }
        if self.last_crash_time is not None:
            d["lastCrashTime"] = self.last_crash_time
        if self.clean_shutdown:
            d["cleanShutdown"] = True
        if self.startup_counted:
            d["startupCounted"] = True
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CrashDetectionMetadata:
        last = data.get("lastCrashTime")
        return cls(
            version=str(data["version"]),
            startup_time=int(data["startupTime"]),
            crash_count=max(int(data.get("crashCount", 0)), 0),
            last_crash_time=int(last) if last is not None else None,
            clean_shutdown=bool(data.get("cleanShutdown", False)),
            startup_counted=bool(data.get("startupCounted", False)),
        )


@dataclass
class CrashHistory:
    crash_count: int
    should_rollback: bool

    def to_dict(self) -> dict[str, Any]:
        return {"crash_count": self.crash_count, "should_rollback": self.should_rollback}


class CrashDetector:
    """Persisted crash counter with a rollback threshold.

    ``clock`` returns epoch milliseconds; tests pass a fake one.
    """

    def __init__(
        self,
        path: Path,
        default_version: str,
        window_ms: int = DEFAULT_CRASH_WINDOW_MS,
        max_crash_count: int = DEFAULT_MAX_CRASH_COUNT,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.path = Path(path)
        self.default_version = default_version
        self.window_ms = window_ms
        self.max_crash_count = max_crash_count
        self._clock = clock or _now_ms

    def _now(self) -> int:
        return int(self._clock())

    # -- persistence -----------------------------------------------------------

    def _read(self) -> CrashDetectionMetadata | None:
        try:
            return CrashDetectionMetadata.from_dict(read_json(self.path))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Crash detection record %s unreadable, starting fresh: %s", self.path, e)
            return None

    def load(self) -> CrashDetectionMetadata:
        """Persisted record, or a fresh one when missing or unreadable."""
        return self._read() or CrashDetectionMetadata(
            version=self.default_version, startup_time=self._now()
        )

    def save(self, data: CrashDetectionMetadata) -> None:
        atomic_write_json(self.path, data.to_dict())

    # -- lifecycle signals -----------------------------------------------------

    def record_startup(self, version: str) -> CrashDetectionMetadata:
        """Called at every boot, before anything else touches the record."""
        previous = self._read()
        now = self._now()
        data = previous or CrashDetectionMetadata(version=version, startup_time=now)

        if data.last_crash_time is None or now - data.last_crash_time > self.window_ms:
            data.crash_count = 0
            data.last_crash_time = None

        if (
            previous is not None
            and not data.clean_shutdown
            and not data.startup_counted
            and 0 <= now - data.startup_time < self.window_ms
        ):
            data.crash_count += 1
            data.last_crash_time = now
            logger.warning(
                "Rapid restart detected (%.1fs after previous startup), crash count %d",
                (now - data.startup_time) / 1000, data.crash_count,
            )

        data.version = version
        data.startup_time = now
        data.clean_shutdown = False
        data.startup_counted = False
        self.save(data)
        logger.info("Startup recorded for version %s (crash count %d)", version, data.crash_count)
        return data

    def record_successful_startup(self) -> CrashDetectionMetadata:
        """The app stayed up past the crash window: forget earlier crashes."""
        data = self.load()
        data.crash_count = 0
        data.last_crash_time = None
        self.save(data)
        logger.info("Successful startup recorded - crash count reset")
        return data

    def record_clean_shutdown(self) -> CrashDetectionMetadata:
        """Graceful exit: the next startup is not evidence of a crash."""
        data = self.load()
        data.crash_count = 0
        data.last_crash_time = None
        data.clean_shutdown = True
        self.save(data)
        logger.info("Clean shutdown recorded")
        return data

    def check_crash_history(self) -> CrashHistory:
        """Count the current startup if it is still inside the crash window."""
        data = self.load()
        now = self._now()

        if not data.startup_counted and 0 <= now - data.startup_time < self.window_ms:
            data.crash_count += 1
            data.last_crash_time = now
            data.startup_counted = True
            self.save(data)

        return self._history(data)

    def status(self) -> CrashHistory:
        """Read-only view of the persisted counter."""
        return self._history(self.load())

    def _history(self, data: CrashDetectionMetadata) -> CrashHistory:
        return CrashHistory(
            crash_count=data.crash_count,
            should_rollback=data.crash_count >= self.max_crash_count,
        )
