"""FastAPI server exposing the update safety services."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .. import __version__
from ..config import Settings
from ..runtime import UpdateSafetyRuntime, init_update_safety, recover_after_update
from .routes import router

logger = logging.getLogger(__name__)


async def _confirm_startup(runtime: UpdateSafetyRuntime, delay: float) -> None:
    await asyncio.sleep(delay)
    await runtime.coordinator.record_successful_startup()
    logger.info("Startup completed successfully - crash detection window closed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize shared services on startup, record a clean exit on shutdown."""
    settings: Settings = app.state.settings
    runtime = init_update_safety(settings)
    app.state.runtime = runtime

    if settings.verify_on_startup:
        try:
            await recover_after_update(runtime)
        except Exception:
            logger.exception("Update recovery failed, refusing to start")
            await runtime.aclose()
            raise

    await runtime.coordinator.record_startup(settings.app_version)
    confirm_task = asyncio.create_task(
        _confirm_startup(runtime, settings.crash_window_seconds), name="startup-confirmation"
    )

    if settings.auto_backup_enabled:
        try:
            await runtime.scheduler.start()
        except Exception:
            logger.exception("Backup scheduler failed to start")
    else:
        logger.info("Automatic backups disabled")

    yield

    # Shutdown
    confirm_task.cancel()
    await asyncio.gather(confirm_task, return_exceptions=True)
    await runtime.coordinator.record_clean_shutdown()
    await runtime.aclose()


def create_app(settings: Settings | None = None) -> FastAPI:
    app = FastAPI(
        title="updateguard - Update Safety & Recovery",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings or Settings()
    app.include_router(router, prefix="/api")
    return app
