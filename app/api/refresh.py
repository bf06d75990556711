"""
API endpoints for triggering and inspecting report refreshes
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from core.pipeline import FAILED, SKIPPED
from core.scheduler import SchedulerService

logger = logging.getLogger(__name__)

router = APIRouter()

_FALSE_FLAGS = {"0", "false", "no", "off"}


def get_scheduler_service(request: Request) -> SchedulerService:
    service = getattr(request.app.state, "scheduler", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Refresh service not initialized")
    return service


def is_forced(force: Optional[str]) -> bool:
    """``?force`` / ``?force=1`` force a run; ``?force=0`` does not."""
    if force is None:
        return False
    return force.strip().lower() not in _FALSE_FLAGS


@router.get("/refresh")
async def refresh_reports(request: Request, force: Optional[str] = None):
    """Run the pipeline now (gated by the local schedule unless forced)"""
    service = get_scheduler_service(request)
    forced = is_forced(force)

    result = await service.run_refresh(force=forced)

    if result.status == SKIPPED:
        return Response(status_code=204)
    if result.status == FAILED:
        return JSONResponse(status_code=500, content={"ok": False, "error": result.error or "Unknown error"})
    return {
        "ok": True,
        "snapshotPath": result.snapshot_path,
        "manifestCount": result.manifest_count,
        "forced": forced,
    }


@router.get("/status")
async def refresh_status(request: Request):
    """Scheduler state and the most recent run outcome"""
    return get_scheduler_service(request).status()
