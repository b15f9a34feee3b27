"""Appointment store — CRUD and the status state machine over calendar entries.

Transitions:
    scheduled → completed   (reconciliation, or manual completion with notes)
    scheduled → missed      (missed sweep)
    missed    → missed      (justification attached, no status change)
    scheduled | missed → cancelled
    any → removed           (admin-only permanent delete)

Nothing ever moves completed or cancelled back to scheduled. Every caller-
facing operation is scoped to the caller's clinic through the patient.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.events import emit
from src.models.appointment import Appointment
from src.models.enums import CANCELLABLE_STATUSES, AppointmentStatus, DetectionSource
from src.schemas.events import EventType, SystemEvent
from src.schemas.scheduling import (
    AppointmentCreate,
    AppointmentFilters,
    AppointmentUpdate,
    CallerContext,
    CancelRequest,
    SeriesUpdate,
)
from src.scheduling.conflicts import ConflictDetector, appointment_interval, conflict_detector
from src.scheduling.directory import ClinicDirectory, clinic_directory
from src.scheduling.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    summarize_appointment,
)
from src.scheduling.queries import (
    appointments_in_clinic,
    load_appointment,
    load_template,
    lock_participants,
)
from src.scheduling.validation import validate_booking

logger = logging.getLogger(__name__)

_SLOT_FIELDS = ("scheduled_date", "scheduled_time", "duration_minutes", "therapist_id")


def require_admin(caller: CallerContext, action: str) -> None:
    if not caller.is_admin:
        raise PermissionDeniedError(f"Only clinic administrators can {action}")


def summarize_status_counts(rows: list[tuple[int, str, int]]) -> dict[str, Any]:
    """Fold (therapist_id, status, count) rows into clinic statistics.

    completion_rate = completed / (completed + missed)
    attendance_rate = completed / (total - cancelled)
    """

    def _rates(counts: dict[str, int]) -> dict[str, Any]:
        total = sum(counts.values())
        completed = counts.get(AppointmentStatus.COMPLETED.value, 0)
        missed = counts.get(AppointmentStatus.MISSED.value, 0)
        cancelled = counts.get(AppointmentStatus.CANCELLED.value, 0)
        attended_base = total - cancelled
        return {
            "total": total,
            **{s.value: counts.get(s.value, 0) for s in AppointmentStatus},
            "completion_rate": round(completed / (completed + missed), 4) if completed + missed else None,
            "attendance_rate": round(completed / attended_base, 4) if attended_base else None,
        }

    overall: dict[str, int] = defaultdict(int)
    per_therapist: dict[int, dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for therapist_id, status, count in rows:
        overall[status] += count
        per_therapist[therapist_id][status] += count

    return {
        **_rates(overall),
        "by_therapist": [
            {"therapist_id": tid, **_rates(counts)}
            for tid, counts in sorted(per_therapist.items())
        ],
    }


class AppointmentStore:
    """Appointment lifecycle operations."""

    def __init__(
        self,
        detector: ConflictDetector | None = None,
        directory: ClinicDirectory | None = None,
    ) -> None:
        self._detector = detector or conflict_detector
        self._directory = directory or clinic_directory

    @property
    def detector(self) -> ConflictDetector:
        return self._detector

    # ── Booking ──────────────────────────────────────────────────────

    async def book(
        self,
        db: AsyncSession,
        *,
        patient_id: int,
        therapist_id: int,
        scheduled_date: date,
        scheduled_time: time,
        duration_minutes: int,
        discipline_id: int | None = None,
        recurring_template_id: uuid.UUID | None = None,
        created_by: int | None = None,
        notes: str | None = None,
    ) -> Appointment:
        """Check for overlaps and insert a scheduled appointment.

        The participant locks are held until the surrounding transaction
        commits, so no other writer can book either participant between the
        check and the insert. Raises ConflictError with the overlapping rows.
        """
        await lock_participants(db, patient_id, therapist_id)
        conflicts = await self._detector.find_conflicts(
            db, patient_id, therapist_id, scheduled_date, scheduled_time, duration_minutes
        )
        if conflicts:
            raise ConflictError(conflicts)

        appointment = Appointment(
            patient_id=patient_id,
            therapist_id=therapist_id,
            discipline_id=discipline_id,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            duration_minutes=duration_minutes,
            status=AppointmentStatus.SCHEDULED.value,
            detection_source=DetectionSource.MANUAL.value,
            is_retroactive=False,
            recurring_template_id=recurring_template_id,
            created_by=created_by,
            notes=notes,
        )
        db.add(appointment)
        await db.flush()
        return appointment

    async def create(
        self,
        db: AsyncSession,
        caller: CallerContext,
        payload: AppointmentCreate,
        now: datetime | None = None,
    ) -> Appointment:
        validate_booking(payload.scheduled_date, payload.scheduled_time, payload.duration_minutes, now)
        await self._directory.validate_references(
            db, caller.clinic_id, payload.patient_id, payload.therapist_id, payload.discipline_id
        )

        appointment = await self.book(
            db,
            patient_id=payload.patient_id,
            therapist_id=payload.therapist_id,
            discipline_id=payload.discipline_id,
            scheduled_date=payload.scheduled_date,
            scheduled_time=payload.scheduled_time,
            duration_minutes=payload.duration_minutes,
            created_by=caller.user_id,
            notes=payload.notes,
        )

        await self._emit(EventType.APPOINTMENT_CREATED, caller, appointment)
        logger.info(
            "Appointment created: id=%s patient=%s therapist=%s at=%s %s",
            appointment.id,
            appointment.patient_id,
            appointment.therapist_id,
            appointment.scheduled_date,
            appointment.scheduled_time,
        )
        return appointment

    # ── Reads ────────────────────────────────────────────────────────

    async def get(self, db: AsyncSession, caller: CallerContext, appointment_id: uuid.UUID) -> Appointment:
        appointment = await load_appointment(db, caller.clinic_id, appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment", appointment_id)
        return appointment

    async def list_appointments(
        self,
        db: AsyncSession,
        caller: CallerContext,
        filters: AppointmentFilters,
    ) -> list[Appointment]:
        stmt = appointments_in_clinic(caller.clinic_id)
        if filters.therapist_id is not None:
            stmt = stmt.where(Appointment.therapist_id == filters.therapist_id)
        if filters.patient_id is not None:
            stmt = stmt.where(Appointment.patient_id == filters.patient_id)
        if filters.status is not None:
            stmt = stmt.where(Appointment.status == filters.status)
        if filters.date_from is not None:
            stmt = stmt.where(Appointment.scheduled_date >= filters.date_from)
        if filters.date_to is not None:
            stmt = stmt.where(Appointment.scheduled_date <= filters.date_to)

        limit = min(filters.limit, settings.scheduling.list_limit)
        result = await db.execute(
            stmt.order_by(Appointment.scheduled_date, Appointment.scheduled_time)
            .limit(limit)
            .offset(filters.offset)
        )
        return list(result.scalars().all())

    async def upcoming_for_therapist(
        self,
        db: AsyncSession,
        caller: CallerContext,
        therapist_id: int,
        days: int = 7,
        today: date | None = None,
    ) -> list[Appointment]:
        today = today or date.today()
        result = await db.execute(
            appointments_in_clinic(caller.clinic_id)
            .where(
                Appointment.therapist_id == therapist_id,
                Appointment.status == AppointmentStatus.SCHEDULED.value,
                Appointment.scheduled_date >= today,
                Appointment.scheduled_date <= today + timedelta(days=days),
            )
            .order_by(Appointment.scheduled_date, Appointment.scheduled_time)
        )
        return list(result.scalars().all())

    async def clinic_statistics(
        self,
        db: AsyncSession,
        caller: CallerContext,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> dict[str, Any]:
        scoped = appointments_in_clinic(caller.clinic_id)
        if date_from is not None:
            scoped = scoped.where(Appointment.scheduled_date >= date_from)
        if date_to is not None:
            scoped = scoped.where(Appointment.scheduled_date <= date_to)
        sub = scoped.subquery()

        result = await db.execute(
            select(sub.c.therapist_id, sub.c.status, func.count())
            .group_by(sub.c.therapist_id, sub.c.status)
        )
        stats = summarize_status_counts([tuple(row) for row in result.all()])
        stats["period"] = {
            "from": date_from.isoformat() if date_from else None,
            "to": date_to.isoformat() if date_to else None,
        }
        return stats

    # ── Mutations ────────────────────────────────────────────────────

    async def update(
        self,
        db: AsyncSession,
        caller: CallerContext,
        appointment_id: uuid.UUID,
        payload: AppointmentUpdate,
        now: datetime | None = None,
    ) -> Appointment:
        """Apply a partial update; re-check conflicts only when the slot moves."""
        appointment = await self.get(db, caller, appointment_id)
        changes = {
            k: v for k, v in payload.changes().items() if getattr(appointment, k) != v
        }
        if not changes:
            return appointment

        slot_changed = any(k in changes for k in _SLOT_FIELDS)
        if slot_changed:
            if appointment.status != AppointmentStatus.SCHEDULED.value:
                raise ValidationError(
                    f"A {appointment.status} appointment cannot be moved"
                )
            new_date = changes.get("scheduled_date", appointment.scheduled_date)
            new_time = changes.get("scheduled_time", appointment.scheduled_time)
            new_duration = changes.get("duration_minutes", appointment.duration_minutes)
            new_therapist = changes.get("therapist_id", appointment.therapist_id)

            validate_booking(new_date, new_time, new_duration, now)
            if "therapist_id" in changes and not await self._directory.therapist_in_clinic(
                db, caller.clinic_id, new_therapist
            ):
                raise ValidationError("Therapist not found or not active in this clinic")

            await lock_participants(db, appointment.patient_id, new_therapist)
            conflicts = await self._detector.find_conflicts(
                db,
                appointment.patient_id,
                new_therapist,
                new_date,
                new_time,
                new_duration,
                exclude_id=appointment.id,
            )
            if conflicts:
                raise ConflictError(conflicts)

        for field, value in changes.items():
            setattr(appointment, field, value)
        await db.flush()

        await self._emit(
            EventType.APPOINTMENT_UPDATED,
            caller,
            appointment,
            changed_fields=sorted(changes),
        )
        logger.info("Appointment updated: id=%s fields=%s", appointment.id, sorted(changes))
        return appointment

    async def complete_with_notes(
        self,
        db: AsyncSession,
        caller: CallerContext,
        appointment_id: uuid.UUID,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> Appointment:
        """Manual completion. On an already completed appointment only notes change."""
        appointment = await self.get(db, caller, appointment_id)
        now = now or datetime.now()

        if appointment.status == AppointmentStatus.COMPLETED.value:
            if notes:
                appointment.notes = notes
                await db.flush()
            return appointment
        if appointment.status != AppointmentStatus.SCHEDULED.value:
            raise ValidationError(f"A {appointment.status} appointment cannot be completed")

        start, _ = appointment_interval(
            appointment.scheduled_date, appointment.scheduled_time, appointment.duration_minutes
        )
        if start > now:
            raise ValidationError("Future appointments cannot be completed")

        appointment.status = AppointmentStatus.COMPLETED.value
        appointment.completed_at = datetime.now(UTC)
        if notes:
            appointment.notes = notes
        await db.flush()

        await self._emit(EventType.APPOINTMENT_COMPLETED, caller, appointment, manual=True)
        logger.info("Appointment completed manually: id=%s by=%s", appointment.id, caller.user_id)
        return appointment

    async def cancel(
        self,
        db: AsyncSession,
        caller: CallerContext,
        appointment_id: uuid.UUID,
        request: CancelRequest,
    ) -> Appointment:
        appointment = await self.get(db, caller, appointment_id)
        if appointment.status not in CANCELLABLE_STATUSES:
            raise ValidationError(f"A {appointment.status} appointment cannot be cancelled")

        appointment.status = AppointmentStatus.CANCELLED.value
        appointment.cancellation_reason_type = request.reason_type.value
        appointment.cancellation_reason = request.reason or "Cancelled by clinic"
        appointment.cancelled_by = caller.user_id
        appointment.cancelled_at = datetime.now(UTC)
        await db.flush()

        await self._emit(
            EventType.APPOINTMENT_CANCELLED,
            caller,
            appointment,
            reason_type=request.reason_type.value,
        )
        logger.info(
            "Appointment cancelled: id=%s reason=%s by=%s",
            appointment.id,
            request.reason_type.value,
            caller.user_id,
        )
        return appointment

    async def add_justification(
        self,
        db: AsyncSession,
        caller: CallerContext,
        appointment_id: uuid.UUID,
        reason: str,
    ) -> Appointment:
        """Attach an absence justification. The status stays missed."""
        appointment = await self.get(db, caller, appointment_id)
        if appointment.status != AppointmentStatus.MISSED.value:
            raise ValidationError("Only missed appointments can be justified")

        appointment.missed_reason = reason
        appointment.justified_by = caller.user_id
        appointment.justified_at = datetime.now(UTC)
        await db.flush()

        await self._emit(EventType.APPOINTMENT_JUSTIFIED, caller, appointment)
        return appointment

    async def delete(self, db: AsyncSession, caller: CallerContext, appointment_id: uuid.UUID) -> None:
        """Permanent, irreversible removal. Prefer cancel for normal lifecycle."""
        require_admin(caller, "permanently delete appointments")
        appointment = await self.get(db, caller, appointment_id)
        snapshot = summarize_appointment(appointment)

        await db.delete(appointment)
        await db.flush()

        await emit(SystemEvent(
            event_type=EventType.APPOINTMENT_DELETED,
            clinic_id=caller.clinic_id,
            actor_id=caller.actor_id,
            actor_role=caller.role.value,
            data=snapshot,
            source_module="scheduling.store",
        ))
        logger.warning("Appointment permanently deleted: id=%s by=%s", snapshot["id"], caller.user_id)

    async def mark_missed(
        self,
        db: AsyncSession,
        hours_after: int,
        clinic_id: int,
        now: datetime | None = None,
    ) -> list[Appointment]:
        """Bulk scheduled → missed for one clinic's appointments whose start + hours_after < now."""
        now = now or datetime.now()
        cutoff = now - timedelta(hours=hours_after)

        result = await db.execute(
            appointments_in_clinic(clinic_id).where(
                Appointment.status == AppointmentStatus.SCHEDULED.value,
                Appointment.scheduled_date <= cutoff.date(),
            )
        )

        marked: list[Appointment] = []
        for appointment in result.scalars().all():
            start, _ = appointment_interval(
                appointment.scheduled_date, appointment.scheduled_time, appointment.duration_minutes
            )
            if start < cutoff:
                appointment.status = AppointmentStatus.MISSED.value
                marked.append(appointment)

        if marked:
            await db.flush()
            await emit(SystemEvent(
                event_type=EventType.APPOINTMENT_MISSED,
                clinic_id=clinic_id,
                actor_id="system",
                data={
                    "count": len(marked),
                    "appointment_ids": [str(a.id) for a in marked],
                    "hours_after": hours_after,
                },
                source_module="scheduling.store",
            ))
        logger.info(
            "Missed sweep clinic=%s: %d appointments marked (hours_after=%d)", clinic_id, len(marked), hours_after
        )
        return marked

    async def link_to_session(
        self,
        db: AsyncSession,
        appointment: Appointment,
        session_id: int,
    ) -> Appointment:
        """scheduled → completed with a back-reference to a performed session."""
        if appointment.status != AppointmentStatus.SCHEDULED.value:
            raise ValidationError(f"A {appointment.status} appointment cannot be linked")
        if appointment.progress_record_id is not None:
            raise ValidationError("Appointment is already linked to a session")

        appointment.status = AppointmentStatus.COMPLETED.value
        appointment.progress_record_id = session_id
        appointment.detection_source = DetectionSource.AUTO_DETECTED.value
        appointment.completed_at = datetime.now(UTC)
        await db.flush()
        return appointment

    # ── Template series ──────────────────────────────────────────────

    async def template_appointments(
        self,
        db: AsyncSession,
        caller: CallerContext,
        template_id: uuid.UUID,
        from_date: date | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[Appointment]:
        await self._require_template(db, caller, template_id)
        stmt = appointments_in_clinic(caller.clinic_id).where(
            Appointment.recurring_template_id == template_id
        )
        if from_date is not None:
            stmt = stmt.where(Appointment.scheduled_date >= from_date)
        if status is not None:
            stmt = stmt.where(Appointment.status == status)
        stmt = stmt.order_by(Appointment.scheduled_date, Appointment.scheduled_time)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def next_occurrences(
        self,
        db: AsyncSession,
        caller: CallerContext,
        template_id: uuid.UUID,
        limit: int = 5,
        today: date | None = None,
    ) -> list[Appointment]:
        return await self.template_appointments(
            db,
            caller,
            template_id,
            from_date=today or date.today(),
            status=AppointmentStatus.SCHEDULED.value,
            limit=limit,
        )

    async def update_series(
        self,
        db: AsyncSession,
        caller: CallerContext,
        template_id: uuid.UUID,
        payload: SeriesUpdate,
        today: date | None = None,
    ) -> dict[str, Any]:
        """Apply time/duration/notes to every future scheduled appointment of a template.

        Appointments whose new slot would overlap another booking are left
        unchanged and reported under ``skipped``.
        """
        changes = payload.changes()
        future = await self.template_appointments(
            db,
            caller,
            template_id,
            from_date=today or date.today(),
            status=AppointmentStatus.SCHEDULED.value,
        )

        updated = 0
        skipped: list[dict[str, Any]] = []
        for appointment in future:
            new_time = changes.get("scheduled_time", appointment.scheduled_time)
            new_duration = changes.get("duration_minutes", appointment.duration_minutes)
            if new_time != appointment.scheduled_time or new_duration != appointment.duration_minutes:
                await lock_participants(db, appointment.patient_id, appointment.therapist_id)
                conflicts = await self._detector.find_conflicts(
                    db,
                    appointment.patient_id,
                    appointment.therapist_id,
                    appointment.scheduled_date,
                    new_time,
                    new_duration,
                    exclude_id=appointment.id,
                )
                if conflicts:
                    skipped.append({
                        **summarize_appointment(appointment),
                        "conflicts": [str(c.id) for c in conflicts],
                    })
                    continue
            for field, value in changes.items():
                setattr(appointment, field, value)
            updated += 1

        await db.flush()
        logger.info(
            "Series updated: template=%s updated=%d skipped=%d", template_id, updated, len(skipped)
        )
        return {"updated": updated, "skipped": skipped}

    async def delete_series(
        self,
        db: AsyncSession,
        caller: CallerContext,
        template_id: uuid.UUID,
        from_date: date | None = None,
    ) -> int:
        """Remove scheduled and missed appointments of a template from a date on."""
        require_admin(caller, "delete appointment series")
        await self._require_template(db, caller, template_id)
        from_date = from_date or date.today()

        ids_result = await db.execute(
            appointments_in_clinic(caller.clinic_id)
            .with_only_columns(Appointment.id)
            .where(
                Appointment.recurring_template_id == template_id,
                Appointment.scheduled_date >= from_date,
                Appointment.status.in_(
                    (AppointmentStatus.SCHEDULED.value, AppointmentStatus.MISSED.value)
                ),
            )
        )
        ids = [row[0] for row in ids_result.all()]
        if not ids:
            return 0

        del_result = await db.execute(delete(Appointment).where(Appointment.id.in_(ids)))
        count = del_result.rowcount  # type: ignore[attr-defined]
        logger.warning(
            "Series deleted: template=%s from=%s count=%d by=%s",
            template_id,
            from_date,
            count,
            caller.user_id,
        )
        return count

    # ── Helpers ──────────────────────────────────────────────────────

    async def _require_template(self, db: AsyncSession, caller: CallerContext, template_id: uuid.UUID) -> None:
        if await load_template(db, caller.clinic_id, template_id) is None:
            raise NotFoundError("Recurring template", template_id)

    @staticmethod
    async def _emit(
        event_type: EventType,
        caller: CallerContext,
        appointment: Appointment,
        **extra: Any,
    ) -> None:
        await emit(SystemEvent(
            event_type=event_type,
            clinic_id=caller.clinic_id,
            actor_id=caller.actor_id,
            actor_role=caller.role.value,
            data={**summarize_appointment(appointment), **extra},
            source_module="scheduling.store",
        ))


# Module-level singleton
appointment_store = AppointmentStore()
