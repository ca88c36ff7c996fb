"""API routes for health checks, backups and the update protocol.

Endpoints:
  GET  /api/health                       - full database health check
  GET  /api/health/quick                 - connection + integrity only
  GET  /api/backups                      - full backups, newest first
  POST /api/backups                      - create a full backup
  POST /api/backups/prune                - apply full-backup retention
  POST /api/backups/{timestamp}/restore  - restore a full backup
  GET  /api/updates/backups              - pre-update backups, newest first
  POST /api/updates/backup               - pre-update backup for a version
  GET  /api/updates/gate                 - may the updater proceed?
  POST /api/updates/verify               - post-update integrity + crash history
  POST /api/updates/rollback             - restore the newest pre-update backup
  GET  /api/updates/crash-status         - persisted crash counter
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ..runtime import UpdateSafetyRuntime

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateBackupRequest(BaseModel):
    notes: str | None = None


class PruneRequest(BaseModel):
    keep_count: int | None = Field(default=None, ge=0)


class PreUpdateBackupRequest(BaseModel):
    version: str = Field(min_length=1)


def _runtime(request: Request) -> UpdateSafetyRuntime:
    return request.app.state.runtime


# ── Health ───────────────────────────────────────────────────────────────────


@router.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    result = await _runtime(request).checker.run_health_check()
    return result.to_dict()


@router.get("/health/quick")
async def quick_health_check(request: Request) -> dict[str, Any]:
    healthy = await _runtime(request).checker.quick_health_check()
    return {"healthy": healthy}


# ── Full backups ─────────────────────────────────────────────────────────────


@router.get("/backups")
async def list_backups(request: Request) -> dict[str, Any]:
    backups = await _runtime(request).store.list_backups()
    return {"backups": [b.to_dict() for b in backups]}


@router.post("/backups")
async def create_backup(request: Request, body: CreateBackupRequest | None = None) -> dict[str, Any]:
    notes = body.notes if body else None
    result = await _runtime(request).store.create_backup(notes)
    if not result.success:
        raise HTTPException(status_code=500, detail=result.error)
    return result.to_dict()


@router.post("/backups/prune")
async def prune_backups(request: Request, body: PruneRequest | None = None) -> dict[str, Any]:
    runtime = _runtime(request)
    keep = body.keep_count if body and body.keep_count is not None else runtime.settings.backup_keep_count
    removed = await runtime.store.clean_old_backups(keep)
    return {"removed": removed, "keep_count": keep}


@router.post("/backups/{timestamp}/restore")
async def restore_backup(timestamp: str, request: Request) -> dict[str, Any]:
    store = _runtime(request).store
    if store.find_backup(timestamp) is None:
        raise HTTPException(status_code=404, detail=f"Backup not found: {timestamp}")
    result = await store.restore_backup(timestamp)
    if not result.success:
        raise HTTPException(status_code=500, detail=result.error)
    return result.to_dict()


# ── Update protocol ──────────────────────────────────────────────────────────


@router.get("/updates/backups")
async def list_pre_update_backups(request: Request) -> dict[str, Any]:
    backups = await _runtime(request).store.list_pre_update_backups()
    return {"backups": [b.to_dict() for b in backups]}


@router.post("/updates/backup")
async def create_pre_update_backup(body: PreUpdateBackupRequest, request: Request) -> dict[str, Any]:
    result = await _runtime(request).coordinator.create_pre_update_backup(body.version)
    if not result.success:
        raise HTTPException(status_code=500, detail=result.error)
    return result.to_dict()


@router.get("/updates/gate")
async def update_gate(request: Request) -> dict[str, Any]:
    coordinator = _runtime(request).coordinator
    ready = await coordinator.verify_backup_exists()
    return {"ready": ready, "phase": coordinator.phase.value}


@router.post("/updates/verify")
async def verify_post_update(request: Request) -> dict[str, Any]:
    coordinator = _runtime(request).coordinator
    ok = await coordinator.verify_post_update_integrity()
    return {
        "ok": ok,
        "phase": coordinator.phase.value,
        "kind": coordinator.last_failure.value if coordinator.last_failure else None,
    }


@router.post("/updates/rollback")
async def rollback(request: Request) -> dict[str, Any]:
    result = await _runtime(request).coordinator.handle_update_failure()
    if not result.success:
        logger.error("Rollback requested over API failed: %s", result.error)
        raise HTTPException(status_code=500, detail=result.error)
    return result.to_dict()


@router.get("/updates/crash-status")
async def crash_status(request: Request) -> dict[str, Any]:
    coordinator = _runtime(request).coordinator
    history = await coordinator.crash_status()
    return {**history.to_dict(), "phase": coordinator.phase.value}
