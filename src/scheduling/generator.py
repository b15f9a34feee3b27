"""Recurring template generator — expands weekly rules into appointments.

Generation is driven by the ``last_generation_date`` watermark: each run only
examines occurrences after it, so repeated runs (manual or periodic) never
duplicate appointments. A conflicting occurrence is recorded and skipped;
it never aborts the run.

Day-of-week numbering follows the clinic platform: 0=Sunday … 6=Saturday.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, date, datetime, timedelta
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.events import emit
from src.models.recurring_template import RecurringTemplate
from src.schemas.events import EventType, SystemEvent
from src.schemas.scheduling import (
    CallerContext,
    DeactivateRequest,
    GenerationReport,
    OccurrenceResult,
    PauseRequest,
    TemplateCreate,
    TemplateUpdate,
)
from src.scheduling.directory import ClinicDirectory, clinic_directory
from src.scheduling.errors import ConflictError, NotFoundError, ValidationError
from src.scheduling.queries import load_template, templates_in_clinic
from src.scheduling.store import AppointmentStore, appointment_store

logger = logging.getLogger(__name__)


def clinic_weekday(d: date) -> int:
    """Weekday with Sunday as 0."""
    return (d.weekday() + 1) % 7


def occurrence_dates(
    start_date: date,
    end_date: date | None,
    day_of_week: int,
    weeks_ahead: int,
    last_generation_date: date | None = None,
    today: date | None = None,
) -> list[date]:
    """Dates matching ``day_of_week`` inside the generation window.

    Window: from ``max(last_generation_date + 1, start_date, today)`` up to,
    but excluding, ``max(start_date, today) + weeks_ahead`` weeks, and never
    past ``end_date``. Before the series starts this is exactly
    ``[start_date, start_date + weeks_ahead weeks)``; afterwards the horizon
    rolls forward with ``today`` and past dates are never produced.
    """
    today = today or date.today()
    anchor = max(start_date, today)
    lower = max(anchor, last_generation_date + timedelta(days=1)) if last_generation_date else anchor
    upper = anchor + timedelta(weeks=weeks_ahead) - timedelta(days=1)
    if end_date is not None:
        upper = min(upper, end_date)
    if lower > upper:
        return []

    first = lower + timedelta(days=(day_of_week - clinic_weekday(lower)) % 7)
    dates = []
    current = first
    while current <= upper:
        dates.append(current)
        current += timedelta(weeks=1)
    return dates


def is_due(template: RecurringTemplate, today: date) -> bool:
    """True when an unexamined occurrence falls inside the template's horizon."""
    if not template.is_active or template.is_paused:
        return False
    return bool(occurrence_dates(
        template.start_date,
        template.end_date,
        template.day_of_week,
        template.generate_weeks_ahead,
        template.last_generation_date,
        today,
    ))


class TemplateService:
    """Template lifecycle and appointment generation."""

    def __init__(
        self,
        store: AppointmentStore | None = None,
        directory: ClinicDirectory | None = None,
    ) -> None:
        self._store = store or appointment_store
        self._directory = directory or clinic_directory

    # ── Template CRUD ────────────────────────────────────────────────

    async def create_template(
        self,
        db: AsyncSession,
        caller: CallerContext,
        payload: TemplateCreate,
        today: date | None = None,
    ) -> tuple[RecurringTemplate, GenerationReport | None]:
        """Create a template and, unless ``generate_now`` is off, generate its first window."""
        await self._directory.validate_references(
            db, caller.clinic_id, payload.patient_id, payload.therapist_id, payload.discipline_id
        )

        template = RecurringTemplate(
            patient_id=payload.patient_id,
            therapist_id=payload.therapist_id,
            discipline_id=payload.discipline_id,
            day_of_week=payload.day_of_week,
            scheduled_time=payload.scheduled_time,
            duration_minutes=payload.duration_minutes,
            start_date=payload.start_date,
            end_date=payload.end_date,
            generate_weeks_ahead=payload.generate_weeks_ahead,
            skip_holidays=payload.skip_holidays,
            is_active=True,
            is_paused=False,
            created_by=caller.user_id,
            notes=payload.notes,
        )
        db.add(template)
        await db.flush()

        await self._emit(EventType.TEMPLATE_CREATED, template, caller)
        logger.info(
            "Recurring template created: id=%s patient=%s therapist=%s dow=%d at %s",
            template.id,
            template.patient_id,
            template.therapist_id,
            template.day_of_week,
            template.scheduled_time,
        )

        report = None
        if payload.generate_now:
            report = await self.generate(db, template.id, caller=caller, today=today)
        return template, report

    async def get_template(
        self,
        db: AsyncSession,
        caller: CallerContext,
        template_id: uuid.UUID,
    ) -> RecurringTemplate:
        template = await load_template(db, caller.clinic_id, template_id)
        if template is None:
            raise NotFoundError("Recurring template", template_id)
        return template

    async def list_templates(
        self,
        db: AsyncSession,
        caller: CallerContext,
        active_only: bool = True,
        patient_id: int | None = None,
        therapist_id: int | None = None,
    ) -> list[RecurringTemplate]:
        stmt = templates_in_clinic(caller.clinic_id)
        if active_only:
            stmt = stmt.where(RecurringTemplate.is_active.is_(True))
        if patient_id is not None:
            stmt = stmt.where(RecurringTemplate.patient_id == patient_id)
        if therapist_id is not None:
            stmt = stmt.where(RecurringTemplate.therapist_id == therapist_id)
        result = await db.execute(
            stmt.order_by(RecurringTemplate.day_of_week, RecurringTemplate.scheduled_time)
        )
        return list(result.scalars().all())

    async def update_template(
        self,
        db: AsyncSession,
        caller: CallerContext,
        template_id: uuid.UUID,
        payload: TemplateUpdate,
    ) -> RecurringTemplate:
        """Change the rule. Already generated appointments are left alone."""
        template = await self.get_template(db, caller, template_id)
        if not template.is_active:
            raise ValidationError("Inactive templates cannot be edited")

        changes = payload.changes()
        start = changes.get("start_date", template.start_date)
        end = changes.get("end_date", template.end_date)
        if end is not None and end < start:
            raise ValidationError("end_date must be on or after start_date")
        if "therapist_id" in changes and not await self._directory.therapist_in_clinic(
            db, caller.clinic_id, changes["therapist_id"]
        ):
            raise ValidationError("Therapist not found or not active in this clinic")
        if changes.get("discipline_id") is not None and not await self._directory.discipline_exists(
            db, changes["discipline_id"]
        ):
            raise ValidationError("Discipline not found")

        for field, value in changes.items():
            setattr(template, field, value)
        await db.flush()

        await self._emit(EventType.TEMPLATE_UPDATED, template, caller, changed_fields=sorted(changes))
        logger.info("Recurring template updated: id=%s fields=%s", template.id, sorted(changes))
        return template

    async def pause(
        self,
        db: AsyncSession,
        caller: CallerContext,
        template_id: uuid.UUID,
        request: PauseRequest,
    ) -> RecurringTemplate:
        template = await self.get_template(db, caller, template_id)
        if not template.is_active:
            raise ValidationError("Inactive templates cannot be paused")

        template.is_paused = True
        template.paused_until = request.pause_until
        template.pause_reason = request.reason
        await db.flush()

        await self._emit(
            EventType.TEMPLATE_PAUSED,
            template,
            caller,
            pause_until=request.pause_until.isoformat() if request.pause_until else None,
        )
        logger.info("Recurring template paused: id=%s until=%s", template.id, request.pause_until)
        return template

    async def resume(
        self,
        db: AsyncSession,
        caller: CallerContext,
        template_id: uuid.UUID,
        today: date | None = None,
    ) -> tuple[RecurringTemplate, GenerationReport]:
        template = await self.get_template(db, caller, template_id)
        if not template.is_active:
            raise ValidationError("Inactive templates cannot be resumed")

        template.is_paused = False
        template.paused_until = None
        template.pause_reason = None
        await db.flush()
        await self._emit(EventType.TEMPLATE_RESUMED, template, caller)

        report = await self.generate(db, template.id, caller=caller, today=today)
        return template, report

    async def deactivate(
        self,
        db: AsyncSession,
        caller: CallerContext,
        template_id: uuid.UUID,
        request: DeactivateRequest,
    ) -> RecurringTemplate:
        """Stop generation for good. Existing appointments stay as they are."""
        template = await self.get_template(db, caller, template_id)
        template.is_active = False
        template.deactivated_by = caller.user_id
        template.deactivated_at = datetime.now(UTC)
        template.deactivation_reason = request.reason
        await db.flush()

        await self._emit(EventType.TEMPLATE_DEACTIVATED, template, caller)
        logger.info("Recurring template deactivated: id=%s by=%s", template.id, caller.user_id)
        return template

    # ── Generation ───────────────────────────────────────────────────

    async def generate(
        self,
        db: AsyncSession,
        template_id: uuid.UUID,
        caller: CallerContext | None = None,
        weeks_ahead: int | None = None,
        today: date | None = None,
    ) -> GenerationReport:
        """Create appointments for every occurrence after the watermark.

        ``caller=None`` is the maintenance path and skips the clinic scope.
        The watermark advances to the latest occurrence examined, whatever
        the individual outcomes.
        """
        template = await load_template(db, caller.clinic_id if caller else None, template_id)
        if template is None:
            raise NotFoundError("Recurring template", template_id)
        if not template.is_active:
            raise ValidationError("Template is inactive")
        if template.is_paused:
            raise ValidationError("Template is paused")

        horizon = weeks_ahead or template.generate_weeks_ahead
        if horizon > settings.scheduling.max_weeks_ahead:
            raise ValidationError(
                f"weeks_ahead cannot exceed {settings.scheduling.max_weeks_ahead}"
            )

        dates = occurrence_dates(
            template.start_date,
            template.end_date,
            template.day_of_week,
            horizon,
            template.last_generation_date,
            today,
        )
        holidays = settings.scheduling.holiday_dates if template.skip_holidays else set()

        report = GenerationReport(template_id=template.id)
        for occurrence in dates:
            if occurrence in holidays:
                logger.debug("Template %s: skipping holiday %s", template.id, occurrence)
                continue
            try:
                appointment = await self._store.book(
                    db,
                    patient_id=template.patient_id,
                    therapist_id=template.therapist_id,
                    discipline_id=template.discipline_id,
                    scheduled_date=occurrence,
                    scheduled_time=template.scheduled_time,
                    duration_minutes=template.duration_minutes,
                    recurring_template_id=template.id,
                    created_by=template.created_by,
                    notes=template.notes,
                )
            except ConflictError as exc:
                logger.warning(
                    "Template %s: occurrence %s conflicts with %d appointment(s)",
                    template.id,
                    occurrence,
                    len(exc.conflicts),
                )
                report.results.append(OccurrenceResult(
                    occurrence_date=occurrence,
                    success=False,
                    reason=f"conflict with {len(exc.conflicts)} existing appointment(s)",
                ))
                continue
            report.results.append(OccurrenceResult(
                occurrence_date=occurrence, success=True, appointment_id=appointment.id,
            ))

        if dates and (template.last_generation_date is None or dates[-1] > template.last_generation_date):
            template.last_generation_date = dates[-1]
        report.last_generation_date = template.last_generation_date
        await db.flush()

        if dates:
            await emit(SystemEvent(
                event_type=EventType.APPOINTMENTS_GENERATED,
                clinic_id=caller.clinic_id if caller else None,
                actor_id=caller.actor_id if caller else "system",
                data={
                    "template_id": str(template.id),
                    "patient_id": template.patient_id,
                    "therapist_id": template.therapist_id,
                    "generated": report.generated,
                    "conflicts": report.conflicts,
                },
                source_module="scheduling.generator",
            ))
        logger.info("Template %s: %s", template.id, report.summary)
        return report

    async def check_conflicts(
        self,
        db: AsyncSession,
        caller: CallerContext,
        template_id: uuid.UUID,
        weeks_ahead: int | None = None,
        today: date | None = None,
    ) -> list[OccurrenceResult]:
        """Preview the upcoming window without writing anything."""
        template = await self.get_template(db, caller, template_id)
        dates = occurrence_dates(
            template.start_date,
            template.end_date,
            template.day_of_week,
            weeks_ahead or template.generate_weeks_ahead,
            None,
            today,
        )

        detector = self._store.detector
        results = []
        for occurrence in dates:
            conflicts = await detector.find_conflicts(
                db,
                template.patient_id,
                template.therapist_id,
                occurrence,
                template.scheduled_time,
                template.duration_minutes,
            )
            # The template's own appointment on that date is not a conflict
            others = [c for c in conflicts if c.recurring_template_id != template.id]
            results.append(OccurrenceResult(
                occurrence_date=occurrence,
                success=not others,
                reason=", ".join(str(c.id) for c in others) or None,
            ))
        return results

    # ── Maintenance ──────────────────────────────────────────────────

    async def templates_due_for_generation(
        self,
        db: AsyncSession,
        today: date | None = None,
    ) -> list[RecurringTemplate]:
        today = today or date.today()
        result = await db.execute(
            select(RecurringTemplate).where(
                RecurringTemplate.is_active.is_(True),
                RecurringTemplate.is_paused.is_(False),
                or_(RecurringTemplate.end_date.is_(None), RecurringTemplate.end_date >= today),
            )
        )
        return [t for t in result.scalars().all() if is_due(t, today)]

    async def deactivate_expired(self, db: AsyncSession, today: date | None = None) -> int:
        """Deactivate active templates whose end date has passed."""
        today = today or date.today()
        result = await db.execute(
            select(RecurringTemplate).where(
                RecurringTemplate.is_active.is_(True),
                RecurringTemplate.end_date.is_not(None),
                RecurringTemplate.end_date < today,
            )
        )
        expired = list(result.scalars().all())
        now = datetime.now(UTC)
        for template in expired:
            template.is_active = False
            template.deactivated_at = now
            template.deactivation_reason = "End date reached"
        if expired:
            await db.flush()
            logger.info("Deactivated %d expired templates", len(expired))
        return len(expired)

    async def resume_expired_pauses(
        self,
        db: AsyncSession,
        today: date | None = None,
    ) -> list[RecurringTemplate]:
        """Unpause templates whose ``paused_until`` has arrived."""
        today = today or date.today()
        result = await db.execute(
            select(RecurringTemplate).where(
                RecurringTemplate.is_active.is_(True),
                RecurringTemplate.is_paused.is_(True),
                RecurringTemplate.paused_until.is_not(None),
                RecurringTemplate.paused_until <= today,
            )
        )
        resumed = list(result.scalars().all())
        for template in resumed:
            template.is_paused = False
            template.paused_until = None
            template.pause_reason = None
        if resumed:
            await db.flush()
            logger.info("Resumed %d templates whose pause expired", len(resumed))
        return resumed

    # ── Helpers ──────────────────────────────────────────────────────

    @staticmethod
    async def _emit(
        event_type: EventType,
        template: RecurringTemplate,
        caller: CallerContext,
        **extra: Any,
    ) -> None:
        await emit(SystemEvent(
            event_type=event_type,
            clinic_id=caller.clinic_id,
            actor_id=caller.actor_id,
            actor_role=caller.role.value,
            data={
                "template_id": str(template.id),
                "patient_id": template.patient_id,
                "therapist_id": template.therapist_id,
                **extra,
            },
            source_module="scheduling.generator",
        ))


# Module-level singleton
template_service = TemplateService()
