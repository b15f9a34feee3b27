"""Rescheduling suggestions for appointments invalidated by a therapist absence.

Advisory only: every appointment is resolved on its own against the state
at the moment its update runs. Two suggestions applied in one batch may
target the same slot; the conflict re-check in ``apply`` rejects the
second one.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, date, datetime, time, timedelta
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.events import emit
from src.integrations.availability.client import availability_client
from src.models.appointment import Appointment
from src.models.enums import AppointmentStatus
from src.schemas.events import EventType, SystemEvent
from src.schemas.scheduling import (
    AppointmentRead,
    AvailableSlot,
    CallerContext,
    ItemError,
    RescheduleItem,
    RescheduleOutcome,
    RescheduleSuggestionSet,
    ScoredSlot,
)
from src.scheduling.conflicts import ConflictDetector, conflict_detector
from src.scheduling.directory import ClinicDirectory, clinic_directory
from src.scheduling.errors import (
    ConflictError,
    NotFoundError,
    SchedulingError,
    ValidationError,
    summarize_appointment,
)
from src.scheduling.queries import load_appointment, lock_participants
from src.scheduling.store import require_admin
from src.scheduling.validation import validate_booking

logger = logging.getLogger(__name__)

RESCHEDULE_NOTE = "[Rescheduled automatically on {day} due to therapist absence]"


class AvailabilitySearch(Protocol):
    async def search_slots(
        self,
        clinic_id: int,
        discipline_ids: list[int],
        start_date: date,
        end_date: date,
        duration_minutes: int,
        preferred_therapist_id: int | None = None,
    ) -> list[AvailableSlot]: ...


def search_window(original_date: date, days_ahead: int, same_week_only: bool = False) -> tuple[date, date]:
    """Start the day after the original; stop ``days_ahead`` later or at week end.

    The week ends on the Sunday after the original date (a Sunday original
    runs to the following Sunday).
    """
    start = original_date + timedelta(days=1)
    end = start + timedelta(days=days_ahead)
    if same_week_only:
        days_until_sunday = 7 - (original_date.weekday() + 1) % 7
        end = min(end, original_date + timedelta(days=days_until_sunday))
    return start, end


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def score_slot(slot: AvailableSlot, original_date: date, original_time: time) -> ScoredSlot:
    """Score 0..100: closer in days and time is better, with bonuses.

    - minus min(5 * |day offset|, 50)
    - minus min(time offset in minutes / 10, 30)
    - plus 10 each for same weekday, matching specialty, preferred therapist
    """
    day_offset = (slot.available_date - original_date).days
    time_offset = abs(_minutes(slot.available_time) - _minutes(original_time))

    score = 100.0
    score -= min(abs(day_offset) * 5, 50)
    score -= min(time_offset / 10, 30)
    if slot.available_date.weekday() == original_date.weekday():
        score += 10
    if slot.has_specialty:
        score += 10
    if slot.is_preferred:
        score += 10

    return ScoredSlot(
        **slot.model_dump(),
        score=max(0.0, min(100.0, score)),
        day_offset=day_offset,
        time_offset_minutes=time_offset,
    )


def rank_slots(
    slots: list[AvailableSlot],
    original_date: date,
    original_time: time,
    limit: int,
) -> list[ScoredSlot]:
    scored = [score_slot(s, original_date, original_time) for s in slots]
    scored.sort(key=lambda s: (-s.score, s.available_date, s.available_time))
    return scored[:limit]


class ReschedulingEngine:
    """Suggest and apply alternative slots."""

    def __init__(
        self,
        search: AvailabilitySearch | None = None,
        detector: ConflictDetector | None = None,
        directory: ClinicDirectory | None = None,
    ) -> None:
        self._search = search or availability_client
        self._detector = detector or conflict_detector
        self._directory = directory or clinic_directory

    async def suggest_alternatives(
        self,
        db: AsyncSession,
        caller: CallerContext,
        appointment_ids: list[uuid.UUID],
        therapist_id: int,
        days_ahead: int | None = None,
        same_week_only: bool = False,
        limit: int | None = None,
    ) -> list[RescheduleSuggestionSet]:
        """Top-scored open slots for each appointment, best first."""
        cfg = settings.rescheduling
        days_ahead = days_ahead or cfg.reschedule_days_ahead
        limit = limit or cfg.reschedule_max_suggestions

        suggestions: list[RescheduleSuggestionSet] = []
        for appointment_id in appointment_ids:
            appointment = await load_appointment(db, caller.clinic_id, appointment_id)
            if appointment is None:
                suggestions.append(RescheduleSuggestionSet(
                    appointment_id=appointment_id, error="Appointment not found"
                ))
                continue

            entry = RescheduleSuggestionSet(
                appointment_id=appointment.id,
                original_date=appointment.scheduled_date,
                original_time=appointment.scheduled_time,
            )
            if appointment.therapist_id != therapist_id:
                entry.error = f"Appointment is not assigned to therapist {therapist_id}"
                suggestions.append(entry)
                continue

            patient = await self._directory.get_patient(db, caller.clinic_id, appointment.patient_id)
            preferred = patient.preferred_therapist_id if patient is not None else None

            start, end = search_window(appointment.scheduled_date, days_ahead, same_week_only)
            slots = await self._search.search_slots(
                caller.clinic_id,
                [appointment.discipline_id] if appointment.discipline_id else [],
                start,
                end,
                appointment.duration_minutes,
                preferred_therapist_id=preferred,
            )
            if preferred is not None:
                slots = [
                    s.model_copy(update={"is_preferred": True}) if s.therapist_id == preferred else s
                    for s in slots
                ]

            entry.suggestions = rank_slots(
                slots, appointment.scheduled_date, appointment.scheduled_time, limit
            )
            suggestions.append(entry)

        logger.info(
            "Rescheduling suggestions: therapist=%s appointments=%d with_options=%d",
            therapist_id,
            len(appointment_ids),
            sum(1 for s in suggestions if s.suggestions),
        )
        return suggestions

    async def apply(
        self,
        db: AsyncSession,
        caller: CallerContext,
        plan: list[RescheduleItem],
        now: datetime | None = None,
    ) -> RescheduleOutcome:
        """Move each approved appointment; a failure never rolls back the others."""
        require_admin(caller, "apply rescheduling")
        outcome = RescheduleOutcome()

        for item in plan:
            try:
                async with db.begin_nested():
                    appointment = await self._apply_one(db, caller, item, now)
            except SchedulingError as exc:
                outcome.failed.append(ItemError(item_id=str(item.appointment_id), error=exc.message))
                continue
            except Exception as exc:
                logger.exception("Rescheduling failed for appointment %s", item.appointment_id)
                outcome.failed.append(ItemError(item_id=str(item.appointment_id), error=str(exc)))
                continue
            outcome.success.append(AppointmentRead.model_validate(appointment))

        logger.info(
            "Rescheduling applied by %s: %d moved, %d failed",
            caller.user_id,
            len(outcome.success),
            len(outcome.failed),
        )
        return outcome

    async def _apply_one(
        self,
        db: AsyncSession,
        caller: CallerContext,
        item: RescheduleItem,
        now: datetime | None,
    ) -> Appointment:
        appointment = await load_appointment(db, caller.clinic_id, item.appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment", item.appointment_id)
        if appointment.status != AppointmentStatus.SCHEDULED.value:
            raise ValidationError(f"A {appointment.status} appointment cannot be rescheduled")

        therapist_id = item.new_therapist_id or appointment.therapist_id
        validate_booking(item.new_date, item.new_time, appointment.duration_minutes, now)
        if therapist_id != appointment.therapist_id and not await self._directory.therapist_in_clinic(
            db, caller.clinic_id, therapist_id
        ):
            raise ValidationError("Therapist not found or not active in this clinic")

        await lock_participants(db, appointment.patient_id, therapist_id)
        conflicts = await self._detector.find_conflicts(
            db,
            appointment.patient_id,
            therapist_id,
            item.new_date,
            item.new_time,
            appointment.duration_minutes,
            exclude_id=appointment.id,
        )
        if conflicts:
            raise ConflictError(conflicts)

        previous = {
            "old_date": appointment.scheduled_date.isoformat(),
            "old_time": appointment.scheduled_time.strftime("%H:%M"),
            "old_therapist_id": appointment.therapist_id,
        }
        note = RESCHEDULE_NOTE.format(day=datetime.now(UTC).date().isoformat())
        appointment.scheduled_date = item.new_date
        appointment.scheduled_time = item.new_time
        appointment.therapist_id = therapist_id
        appointment.notes = f"{appointment.notes}\n\n{note}" if appointment.notes else note
        await db.flush()

        await emit(SystemEvent(
            event_type=EventType.APPOINTMENT_RESCHEDULED,
            clinic_id=caller.clinic_id,
            actor_id=caller.actor_id,
            actor_role=caller.role.value,
            data={**summarize_appointment(appointment), **previous},
            source_module="scheduling.rescheduling",
        ))
        logger.info(
            "Appointment rescheduled: id=%s %s %s -> %s %s",
            appointment.id,
            previous["old_date"],
            previous["old_time"],
            item.new_date,
            item.new_time,
        )
        return appointment


# Module-level singleton
rescheduling_engine = ReschedulingEngine()
