"""Rescheduling routes — suggest alternatives, apply an approved plan."""
# ruff: noqa: B008  — Depends() in function defaults is standard FastAPI

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_caller, ok
from src.db.engine import get_session
from src.schemas.scheduling import CallerContext, RescheduleApplyRequest, RescheduleSuggestRequest
from src.scheduling.rescheduling import rescheduling_engine

router = APIRouter(prefix="/rescheduling", tags=["rescheduling"])


@router.post("/suggest")
async def suggest(
    payload: RescheduleSuggestRequest,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    suggestions = await rescheduling_engine.suggest_alternatives(
        db,
        caller,
        payload.appointment_ids,
        payload.therapist_id,
        days_ahead=payload.days_ahead,
        same_week_only=payload.same_week_only,
        limit=payload.limit,
    )
    return ok(f"Suggestions for {len(suggestions)} appointments", suggestions)


@router.post("/apply")
async def apply(
    payload: RescheduleApplyRequest,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    outcome = await rescheduling_engine.apply(db, caller, payload.items)
    return ok(f"{len(outcome.success)} rescheduled, {len(outcome.failed)} failed", outcome)
