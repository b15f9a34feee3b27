"""Maintenance routes — manual trigger and run-state inspection."""
# ruff: noqa: B008  — Depends() in function defaults is standard FastAPI

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends

from src.api.deps import get_caller, get_orchestrator, ok
from src.schemas.scheduling import CallerContext
from src.scheduling.maintenance import MaintenanceOrchestrator
from src.scheduling.store import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/run")
async def run_maintenance(
    caller: CallerContext = Depends(get_caller),
    orchestrator: MaintenanceOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    require_admin(caller, "trigger maintenance")
    logger.info("Manual maintenance triggered by user %s (clinic %s)", caller.user_id, caller.clinic_id)
    run = await orchestrator.run(trigger="manual")
    if run.skipped:
        return ok("Maintenance already running, run skipped", run)
    return ok(f"Maintenance finished with {len(run.errors)} errors", run)


@router.get("/status")
async def maintenance_status(
    caller: CallerContext = Depends(get_caller),
    orchestrator: MaintenanceOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return ok("Maintenance status", orchestrator.state.snapshot())


@router.post("/reset")
async def reset_statistics(
    caller: CallerContext = Depends(get_caller),
    orchestrator: MaintenanceOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    require_admin(caller, "reset maintenance statistics")
    orchestrator.state.reset()
    return ok("Maintenance statistics reset", orchestrator.state.snapshot())
