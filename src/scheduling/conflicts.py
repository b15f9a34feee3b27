"""Conflict detection — does a proposed booking overlap an active appointment.

Intervals are half-open ``[start, start + duration)``: an appointment ending
at 10:00 and another starting at 10:00 do not conflict. Only scheduled and
completed appointments occupy a slot; missed and cancelled ones free it.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, time, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from src.models.appointment import Appointment
from src.scheduling.queries import same_day_active_appointments

logger = logging.getLogger(__name__)


def appointment_interval(
    scheduled_date: date,
    scheduled_time: time,
    duration_minutes: int,
) -> tuple[datetime, datetime]:
    start = datetime.combine(scheduled_date, scheduled_time)
    return start, start + timedelta(minutes=duration_minutes)


def intervals_overlap(
    start1: datetime,
    end1: datetime,
    start2: datetime,
    end2: datetime,
) -> bool:
    """Half-open overlap test; touching intervals do not overlap."""
    return start1 < end2 and end1 > start2


class ConflictDetector:
    """Read-only check against the appointment store. Store errors propagate."""

    async def find_conflicts(
        self,
        db: AsyncSession,
        patient_id: int,
        therapist_id: int,
        scheduled_date: date,
        scheduled_time: time,
        duration_minutes: int,
        exclude_id: uuid.UUID | None = None,
    ) -> list[Appointment]:
        """Return every active appointment that overlaps the proposed slot.

        Compares against appointments of the same patient *or* the same
        therapist on that date. ``exclude_id`` skips the record being updated.
        """
        start, end = appointment_interval(scheduled_date, scheduled_time, duration_minutes)
        candidates = await same_day_active_appointments(
            db, patient_id, therapist_id, scheduled_date, exclude_id=exclude_id
        )

        conflicts = []
        for other in candidates:
            other_start, other_end = appointment_interval(
                other.scheduled_date, other.scheduled_time, other.duration_minutes
            )
            if intervals_overlap(start, end, other_start, other_end):
                conflicts.append(other)

        if conflicts:
            logger.debug(
                "Conflict for patient=%s therapist=%s at %s %s: %d overlapping",
                patient_id,
                therapist_id,
                scheduled_date,
                scheduled_time,
                len(conflicts),
            )
        return conflicts

    async def has_conflict(
        self,
        db: AsyncSession,
        patient_id: int,
        therapist_id: int,
        scheduled_date: date,
        scheduled_time: time,
        duration_minutes: int,
        exclude_id: uuid.UUID | None = None,
    ) -> bool:
        conflicts = await self.find_conflicts(
            db, patient_id, therapist_id, scheduled_date, scheduled_time, duration_minutes, exclude_id
        )
        return bool(conflicts)


# Module-level singleton
conflict_detector = ConflictDetector()
