"""Recurring template routes — rule lifecycle, generation, and series edits."""
# ruff: noqa: B008  — Depends() in function defaults is standard FastAPI

from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_caller, ok
from src.db.engine import get_session
from src.schemas.scheduling import (
    AppointmentRead,
    CallerContext,
    DeactivateRequest,
    GenerateRequest,
    GenerationReport,
    PauseRequest,
    SeriesUpdate,
    TemplateCreate,
    TemplateRead,
    TemplateUpdate,
)
from src.scheduling.generator import template_service
from src.scheduling.store import appointment_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/templates", tags=["templates"])


def _generation(report: GenerationReport | None) -> dict[str, Any] | None:
    if report is None:
        return None
    return {
        "summary": report.summary,
        "generated": report.generated,
        "conflicts": report.conflicts,
        **report.model_dump(mode="json"),
    }


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_template(
    payload: TemplateCreate,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    template, report = await template_service.create_template(db, caller, payload)
    message = "Recurring template created"
    if report is not None:
        message = f"{message}: {report.summary}"
    return ok(message, TemplateRead.model_validate(template), generation=_generation(report))


@router.get("/")
async def list_templates(
    active_only: bool = True,
    patient_id: int | None = None,
    therapist_id: int | None = None,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    templates = await template_service.list_templates(db, caller, active_only, patient_id, therapist_id)
    return ok(f"{len(templates)} templates", [TemplateRead.model_validate(t) for t in templates])


@router.get("/{template_id}")
async def get_template(
    template_id: uuid.UUID,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    template = await template_service.get_template(db, caller, template_id)
    return ok("Recurring template", TemplateRead.model_validate(template))


@router.patch("/{template_id}")
async def update_template(
    template_id: uuid.UUID,
    payload: TemplateUpdate,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    template = await template_service.update_template(db, caller, template_id, payload)
    return ok("Recurring template updated", TemplateRead.model_validate(template))


@router.post("/{template_id}/pause")
async def pause_template(
    template_id: uuid.UUID,
    payload: PauseRequest,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    template = await template_service.pause(db, caller, template_id, payload)
    return ok("Recurring template paused", TemplateRead.model_validate(template))


@router.post("/{template_id}/resume")
async def resume_template(
    template_id: uuid.UUID,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    template, report = await template_service.resume(db, caller, template_id)
    return ok(
        f"Recurring template resumed: {report.summary}",
        TemplateRead.model_validate(template),
        generation=_generation(report),
    )


@router.post("/{template_id}/deactivate")
async def deactivate_template(
    template_id: uuid.UUID,
    payload: DeactivateRequest,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    template = await template_service.deactivate(db, caller, template_id, payload)
    return ok("Recurring template deactivated", TemplateRead.model_validate(template))


@router.post("/{template_id}/generate")
async def generate_appointments(
    template_id: uuid.UUID,
    payload: GenerateRequest,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    report = await template_service.generate(db, template_id, caller=caller, weeks_ahead=payload.weeks_ahead)
    return ok(report.summary, _generation(report))


@router.get("/{template_id}/conflicts")
async def preview_conflicts(
    template_id: uuid.UUID,
    weeks_ahead: int | None = Query(default=None, ge=1, le=52),
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    results = await template_service.check_conflicts(db, caller, template_id, weeks_ahead)
    conflicts = [r for r in results if not r.success]
    return ok(f"{len(conflicts)} of {len(results)} occurrences conflict", results)


@router.get("/{template_id}/appointments")
async def template_appointments(
    template_id: uuid.UUID,
    from_date: date | None = None,
    appointment_status: str | None = Query(default=None, alias="status"),
    limit: int | None = Query(default=None, ge=1, le=500),
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    appointments = await appointment_store.template_appointments(
        db, caller, template_id, from_date, appointment_status, limit
    )
    return ok(f"{len(appointments)} appointments", [AppointmentRead.model_validate(a) for a in appointments])


@router.get("/{template_id}/next")
async def next_occurrences(
    template_id: uuid.UUID,
    limit: int = Query(default=5, ge=1, le=50),
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    appointments = await appointment_store.next_occurrences(db, caller, template_id, limit)
    return ok("Next occurrences", [AppointmentRead.model_validate(a) for a in appointments])


@router.patch("/{template_id}/series")
async def update_series(
    template_id: uuid.UUID,
    payload: SeriesUpdate,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    result = await appointment_store.update_series(db, caller, template_id, payload)
    return ok(f"{result['updated']} future appointments updated", result)


@router.delete("/{template_id}/series")
async def delete_series(
    template_id: uuid.UUID,
    from_date: date | None = None,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    deleted = await appointment_store.delete_series(db, caller, template_id, from_date)
    return ok(f"{deleted} appointments deleted", {"deleted": deleted})
