"""Appointment routes — booking, lifecycle transitions, and reports."""
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
    AppointmentCreate,
    AppointmentFilters,
    AppointmentRead,
    AppointmentUpdate,
    CallerContext,
    CancelRequest,
    CompleteRequest,
    ConflictCheckRequest,
    JustifyRequest,
    MarkMissedRequest,
)
from src.scheduling.directory import clinic_directory
from src.scheduling.errors import summarize_appointment
from src.scheduling.store import appointment_store, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["appointments"])


def _read(appointment: Any) -> AppointmentRead:
    return AppointmentRead.model_validate(appointment)


# ── Collection ───────────────────────────────────────────────────────


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_appointment(
    payload: AppointmentCreate,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    appointment = await appointment_store.create(db, caller, payload)
    return ok("Appointment created", _read(appointment))


@router.get("/")
async def list_appointments(
    therapist_id: int | None = None,
    patient_id: int | None = None,
    appointment_status: str | None = Query(default=None, alias="status"),
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    filters = AppointmentFilters(
        therapist_id=therapist_id,
        patient_id=patient_id,
        status=appointment_status,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    appointments = await appointment_store.list_appointments(db, caller, filters)
    return ok(f"{len(appointments)} appointments", [_read(a) for a in appointments])


@router.get("/statistics")
async def statistics(
    date_from: date | None = None,
    date_to: date | None = None,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    stats = await appointment_store.clinic_statistics(db, caller, date_from, date_to)
    return ok("Appointment statistics", stats)


@router.post("/mark-missed")
async def mark_missed(
    payload: MarkMissedRequest,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    require_admin(caller, "run the missed-appointment sweep")
    marked = await appointment_store.mark_missed(db, payload.hours_after, clinic_id=caller.clinic_id)
    return ok(f"{len(marked)} appointments marked as missed", [_read(a) for a in marked])


@router.post("/check-conflicts")
async def check_conflicts(
    payload: ConflictCheckRequest,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    await clinic_directory.validate_references(db, caller.clinic_id, payload.patient_id, payload.therapist_id)
    conflicts = await appointment_store.detector.find_conflicts(
        db,
        payload.patient_id,
        payload.therapist_id,
        payload.scheduled_date,
        payload.scheduled_time,
        payload.duration_minutes,
        exclude_id=payload.exclude_id,
    )
    return ok(
        "Conflicts found" if conflicts else "No conflicts",
        {"has_conflict": bool(conflicts), "conflicts": [summarize_appointment(a) for a in conflicts]},
    )


@router.get("/therapists/{therapist_id}/upcoming")
async def upcoming_for_therapist(
    therapist_id: int,
    days: int = Query(default=7, ge=1, le=60),
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    appointments = await appointment_store.upcoming_for_therapist(db, caller, therapist_id, days)
    return ok(f"{len(appointments)} upcoming appointments", [_read(a) for a in appointments])


# ── Single appointment ───────────────────────────────────────────────


@router.get("/{appointment_id}")
async def get_appointment(
    appointment_id: uuid.UUID,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    appointment = await appointment_store.get(db, caller, appointment_id)
    return ok("Appointment", _read(appointment))


@router.patch("/{appointment_id}")
async def update_appointment(
    appointment_id: uuid.UUID,
    payload: AppointmentUpdate,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    appointment = await appointment_store.update(db, caller, appointment_id, payload)
    return ok("Appointment updated", _read(appointment))


@router.post("/{appointment_id}/complete")
async def complete_appointment(
    appointment_id: uuid.UUID,
    payload: CompleteRequest,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    appointment = await appointment_store.complete_with_notes(db, caller, appointment_id, payload.notes)
    return ok("Appointment completed", _read(appointment))


@router.post("/{appointment_id}/cancel")
async def cancel_appointment(
    appointment_id: uuid.UUID,
    payload: CancelRequest,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    appointment = await appointment_store.cancel(db, caller, appointment_id, payload)
    return ok("Appointment cancelled", _read(appointment))


@router.post("/{appointment_id}/justify")
async def justify_absence(
    appointment_id: uuid.UUID,
    payload: JustifyRequest,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    appointment = await appointment_store.add_justification(db, caller, appointment_id, payload.reason)
    return ok("Justification recorded", _read(appointment))


@router.delete("/{appointment_id}")
async def delete_appointment(
    appointment_id: uuid.UUID,
    db: AsyncSession = Depends(get_session),
    caller: CallerContext = Depends(get_caller),
) -> dict[str, Any]:
    await appointment_store.delete(db, caller, appointment_id)
    return ok("Appointment permanently deleted", {"id": appointment_id})
