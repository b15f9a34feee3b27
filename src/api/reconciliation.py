"""Reconciliation routes — orphan sessions, detection, retroactive appointments."""
# ruff: noqa: B008  — Depends() in function defaults is standard FastAPI

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_caller, ok
from src.db.engine import get_session
from src.schemas.scheduling import (
    AppointmentRead,
    BatchRetroactiveRequest,
    CallerContext,
    DetectRequest,
    OrphanSession,
    RetroactiveCreate,
)
from src.scheduling.reconciliation import MatchWindow, reconciliation_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.get("/orphans")
async def list_orphans(
    lookback_days: int | None = Query(default=None, ge=1, le=365),
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    orphans = await reconciliation_engine.find_orphans(db, caller.clinic_id, lookback_days=lookback_days)
    return ok(f"{len(orphans)} orphan sessions", [OrphanSession.model_validate(s) for s in orphans])


@router.post("/detect")
async def detect(
    payload: DetectRequest,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    report = await reconciliation_engine.detect(
        db,
        caller.clinic_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        auto_create_retroactive=payload.auto_create_retroactive,
        window=MatchWindow.from_settings(payload.window_before_minutes, payload.window_after_minutes),
        created_by=caller.user_id,
    )
    created = sum(1 for r in report.retroactive if r.created)
    return ok(
        f"{len(report.matched)} matched, {len(report.orphans)} orphans, {created} retroactive created",
        report,
    )


@router.post("/retroactive", status_code=status.HTTP_201_CREATED)
async def create_retroactive(
    payload: RetroactiveCreate,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    appointment, created = await reconciliation_engine.convert_orphan(
        db,
        caller.clinic_id,
        payload.session_id,
        created_by=caller.user_id,
        scheduled_time=payload.scheduled_time,
        duration_minutes=payload.duration_minutes,
        notes=payload.notes,
    )
    message = "Retroactive appointment created" if created else "Session already has an appointment"
    return ok(message, AppointmentRead.model_validate(appointment), created=created)


@router.post("/retroactive/batch")
async def create_retroactive_batch(
    payload: BatchRetroactiveRequest,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    report = await reconciliation_engine.convert_orphans_batch(db, caller, payload.session_ids)
    return ok(f"{report.created} created, {len(report.errors)} errors", report)


@router.get("/pending-actions")
async def pending_actions(
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    actions = await reconciliation_engine.pending_actions(db, caller)
    return ok(f"{actions.total} pending actions", actions)
