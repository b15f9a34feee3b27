"""Session reconciliation — closes the loop between calendar intent and care delivered.

Appointments record what was planned; the performed-session log records
what actually happened. Two passes keep them consistent:

- Forward matching: scheduled, unlinked appointments are completed when a
  performed session for the same patient, therapist, and day was logged
  within the tolerance window around the scheduled start (default -1h / +3h).
  The closest pair wins, and each session links to at most one appointment.
- Orphan detection: performed sessions with no appointment are surfaced
  and can be converted into retroactive completed appointments.

Each item is processed independently. A failure is recorded in the report's
error list and the batch carries on.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta

from sqlalchemy import exists, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.events import emit
from src.models.appointment import Appointment
from src.models.enums import AppointmentStatus, DetectionSource
from src.models.external import Patient, PerformedSession
from src.schemas.events import EventType, SystemEvent
from src.schemas.scheduling import (
    AppointmentRead,
    BatchRetroactiveReport,
    CallerContext,
    DetectionReport,
    ItemError,
    OrphanSession,
    PendingActions,
    ReconciliationReport,
    RetroactiveResult,
    SessionMatch,
)
from src.scheduling.conflicts import appointment_interval
from src.scheduling.errors import NotFoundError, SchedulingError, ValidationError
from src.scheduling.queries import appointments_in_clinic
from src.scheduling.store import AppointmentStore, appointment_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchWindow:
    """Tolerance around a scheduled start inside which a logged session counts."""

    before_minutes: int = 60
    after_minutes: int = 180

    @classmethod
    def from_settings(
        cls,
        before_minutes: int | None = None,
        after_minutes: int | None = None,
    ) -> MatchWindow:
        cfg = settings.reconciliation
        return cls(
            before_minutes=cfg.match_window_before_minutes if before_minutes is None else before_minutes,
            after_minutes=cfg.match_window_after_minutes if after_minutes is None else after_minutes,
        )

    def bounds(self, scheduled_start: datetime) -> tuple[datetime, datetime]:
        return (
            scheduled_start - timedelta(minutes=self.before_minutes),
            scheduled_start + timedelta(minutes=self.after_minutes),
        )

    def contains(self, scheduled_start: datetime, logged_at: datetime) -> bool:
        lower, upper = self.bounds(scheduled_start)
        return lower <= logged_at <= upper


@dataclass(frozen=True)
class PlannedMatch:
    appointment: Appointment
    session: PerformedSession
    delta_minutes: float


def _scheduled_start(appointment: Appointment) -> datetime:
    start, _ = appointment_interval(
        appointment.scheduled_date, appointment.scheduled_time, appointment.duration_minutes
    )
    return start


def _same_day_in_window(
    scheduled_start: datetime,
    session: PerformedSession,
    window: MatchWindow,
) -> bool:
    return session.session_date == scheduled_start.date() and window.contains(scheduled_start, session.created_at)


def _delta_minutes(scheduled_start: datetime, session: PerformedSession) -> float:
    return abs((session.created_at - scheduled_start).total_seconds()) / 60


def find_best_match(
    scheduled_start: datetime,
    candidates: Iterable[PerformedSession],
    window: MatchWindow,
) -> PerformedSession | None:
    """Closest same-day session logged inside the window; ties go to the lowest id."""
    eligible = [s for s in candidates if _same_day_in_window(scheduled_start, s, window)]
    if not eligible:
        return None
    return min(eligible, key=lambda s: (_delta_minutes(scheduled_start, s), s.id))


def plan_matches(
    appointments: Sequence[Appointment],
    sessions: Sequence[PerformedSession],
    window: MatchWindow,
) -> tuple[list[PlannedMatch], list[ItemError]]:
    """Pair appointments with sessions, closest pairs first.

    A candidate is a session for the same patient and therapist, recorded
    for the appointment's day and logged inside the window around its
    start. Candidates are taken in order of |created_at - S|; once either
    side is used its other pairs are dropped. Sessions missing a date or
    creation time are reported, not matched.
    """
    errors: list[ItemError] = []
    by_pair: dict[tuple[int, int], list[PerformedSession]] = {}
    for session in sessions:
        if session.session_date is None or session.created_at is None:
            errors.append(ItemError(item_id=f"session:{session.id}", error="missing session_date or created_at"))
            continue
        by_pair.setdefault((session.patient_id, session.therapist_id), []).append(session)

    candidates: list[tuple[float, int, int, PlannedMatch]] = []
    for index, appointment in enumerate(appointments):
        start = _scheduled_start(appointment)
        for session in by_pair.get((appointment.patient_id, appointment.therapist_id), []):
            if not _same_day_in_window(start, session, window):
                continue
            delta = _delta_minutes(start, session)
            candidates.append((
                delta,
                session.id,
                index,
                PlannedMatch(appointment=appointment, session=session, delta_minutes=round(delta, 2)),
            ))

    candidates.sort(key=lambda c: c[:3])
    used_appointments: set[int] = set()
    used_sessions: set[int] = set()
    planned: list[PlannedMatch] = []
    for _, session_id, index, match in candidates:
        if index in used_appointments or session_id in used_sessions:
            continue
        used_appointments.add(index)
        used_sessions.add(session_id)
        planned.append(match)
    return planned, errors


def _retroactive_time(session: PerformedSession, default: time) -> time:
    """Logging time when it was logged on the session day, else the clinic default."""
    logged = session.created_at
    if logged is None or logged.date() != session.session_date or logged.time() == time(0, 0):
        return default
    return logged.time().replace(second=0, microsecond=0)


def _unlinked_session_clause():
    return ~exists().where(Appointment.progress_record_id == PerformedSession.id)


class ReconciliationEngine:
    """Forward matching, orphan detection, and retroactive conversion."""

    def __init__(self, store: AppointmentStore | None = None) -> None:
        self._store = store or appointment_store

    # ── Forward matching ─────────────────────────────────────────────

    async def forward_match(
        self,
        db: AsyncSession,
        clinic_id: int,
        lookback_days: int | None = None,
        window: MatchWindow | None = None,
        today: date | None = None,
        date_from: date | None = None,
    ) -> ReconciliationReport:
        """Complete scheduled appointments that have a matching performed session."""
        window = window or MatchWindow.from_settings()
        today = today or date.today()
        if date_from is None:
            lookback = lookback_days if lookback_days is not None else settings.reconciliation.forward_lookback_days
            date_from = today - timedelta(days=lookback)

        appointments = await self._unlinked_scheduled(db, clinic_id, date_from, today)
        report = ReconciliationReport(clinic_id=clinic_id, examined=len(appointments))
        if not appointments:
            return report

        starts = [_scheduled_start(a) for a in appointments]
        earliest, _ = window.bounds(min(starts))
        _, latest = window.bounds(max(starts))
        sessions = await self._unlinked_sessions(db, clinic_id, earliest, latest)

        planned, plan_errors = plan_matches(appointments, sessions, window)
        report.errors.extend(plan_errors)

        for match in planned:
            try:
                async with db.begin_nested():
                    await self._store.link_to_session(db, match.appointment, match.session.id)
            except Exception as exc:
                logger.exception(
                    "Forward match failed: appointment=%s session=%s",
                    match.appointment.id,
                    match.session.id,
                )
                report.errors.append(ItemError(item_id=str(match.appointment.id), error=str(exc)))
                continue
            report.matched.append(SessionMatch(
                appointment_id=match.appointment.id,
                session_id=match.session.id,
                delta_minutes=match.delta_minutes,
            ))

        if report.matched:
            await emit(SystemEvent(
                event_type=EventType.SESSION_MATCHED,
                clinic_id=clinic_id,
                actor_id="system",
                data={
                    "matched": len(report.matched),
                    "appointment_ids": [str(m.appointment_id) for m in report.matched],
                },
                source_module="scheduling.reconciliation",
            ))
        logger.info(
            "Forward matching clinic=%s: examined=%d matched=%d errors=%d",
            clinic_id,
            report.examined,
            len(report.matched),
            len(report.errors),
        )
        return report

    async def _unlinked_scheduled(
        self,
        db: AsyncSession,
        clinic_id: int,
        date_from: date,
        date_to: date,
    ) -> list[Appointment]:
        result = await db.execute(
            appointments_in_clinic(clinic_id)
            .where(
                Appointment.status == AppointmentStatus.SCHEDULED.value,
                Appointment.progress_record_id.is_(None),
                Appointment.scheduled_date >= date_from,
                Appointment.scheduled_date <= date_to,
            )
            .order_by(Appointment.scheduled_date, Appointment.scheduled_time)
        )
        return list(result.scalars().all())

    async def _unlinked_sessions(
        self,
        db: AsyncSession,
        clinic_id: int,
        since: datetime,
        until: datetime,
    ) -> list[PerformedSession]:
        result = await db.execute(
            select(PerformedSession)
            .join(Patient, Patient.id == PerformedSession.patient_id)
            .where(
                Patient.clinic_id == clinic_id,
                PerformedSession.session_date >= since.date(),
                PerformedSession.session_date <= until.date(),
                PerformedSession.created_at >= since,
                PerformedSession.created_at <= until,
                _unlinked_session_clause(),
            )
            .order_by(PerformedSession.created_at)
        )
        return list(result.scalars().all())

    # ── Orphans ──────────────────────────────────────────────────────

    async def find_orphans(
        self,
        db: AsyncSession,
        clinic_id: int,
        lookback_days: int | None = None,
        now: datetime | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        announce: bool = False,
    ) -> list[PerformedSession]:
        """Performed sessions logged since ``since`` with no appointment documenting them.

        A session is covered when an appointment links to it, or when a
        completed appointment exists for the same patient, therapist, and day.
        Pass ``announce=True`` to publish ORPHANS_DETECTED for a non-empty result.
        """
        now = now or datetime.now()
        if since is None:
            lookback = lookback_days if lookback_days is not None else settings.reconciliation.orphan_lookback_days
            since = now - timedelta(days=lookback)

        stmt = (
            select(PerformedSession)
            .join(Patient, Patient.id == PerformedSession.patient_id)
            .where(
                Patient.clinic_id == clinic_id,
                PerformedSession.created_at >= since,
                _unlinked_session_clause(),
                ~exists().where(
                    Appointment.patient_id == PerformedSession.patient_id,
                    Appointment.therapist_id == PerformedSession.therapist_id,
                    Appointment.scheduled_date == PerformedSession.session_date,
                    Appointment.status == AppointmentStatus.COMPLETED.value,
                ),
            )
            .order_by(PerformedSession.session_date.desc(), PerformedSession.created_at.desc())
        )
        if until is not None:
            stmt = stmt.where(PerformedSession.created_at < until)

        result = await db.execute(stmt)
        orphans = list(result.scalars().all())

        if orphans and announce:
            await emit(SystemEvent(
                event_type=EventType.ORPHANS_DETECTED,
                clinic_id=clinic_id,
                actor_id="system",
                data={"count": len(orphans), "session_ids": [s.id for s in orphans]},
                source_module="scheduling.reconciliation",
            ))
        logger.info("Orphan detection clinic=%s since=%s: %d orphans", clinic_id, since, len(orphans))
        return orphans

    async def convert_orphan(
        self,
        db: AsyncSession,
        clinic_id: int,
        session_id: int,
        created_by: int | None = None,
        scheduled_time: time | None = None,
        duration_minutes: int | None = None,
        notes: str | None = None,
    ) -> tuple[Appointment, bool]:
        """Create a completed, retroactive appointment for a performed session.

        Returns ``(appointment, created)``. If an appointment already
        documents the session, it is returned with ``created=False`` and
        nothing is inserted. Retroactive appointments bypass conflict checks.
        """
        session = await self._load_session(db, clinic_id, session_id)
        if session is None:
            raise NotFoundError("Performed session", session_id)
        if session.session_date is None:
            raise ValidationError("Performed session has no session date")

        existing = await self._documenting_appointment(db, session)
        if existing is not None:
            logger.debug("Session %s already documented by appointment %s", session_id, existing.id)
            return existing, False

        cfg = settings.reconciliation
        appointment = Appointment(
            patient_id=session.patient_id,
            therapist_id=session.therapist_id,
            scheduled_date=session.session_date,
            scheduled_time=scheduled_time or _retroactive_time(session, cfg.retroactive_default_time),
            duration_minutes=duration_minutes or cfg.retroactive_default_duration,
            status=AppointmentStatus.COMPLETED.value,
            detection_source=DetectionSource.ORPHAN_CONVERTED.value,
            is_retroactive=True,
            progress_record_id=session.id,
            completed_at=datetime.now(UTC),
            created_by=created_by,
            notes=notes or "Created retroactively from a performed session",
        )
        try:
            async with db.begin_nested():
                db.add(appointment)
                await db.flush()
        except IntegrityError:
            # Another writer linked the session first
            existing = await self._documenting_appointment(db, session)
            if existing is None:
                raise
            return existing, False

        await emit(SystemEvent(
            event_type=EventType.RETROACTIVE_CREATED,
            clinic_id=clinic_id,
            actor_id=str(created_by) if created_by else "system",
            data={
                "appointment_id": str(appointment.id),
                "session_id": session.id,
                "patient_id": session.patient_id,
                "therapist_id": session.therapist_id,
            },
            source_module="scheduling.reconciliation",
        ))
        logger.info(
            "Retroactive appointment created: id=%s session=%s patient=%s",
            appointment.id,
            session.id,
            session.patient_id,
        )
        return appointment, True

    async def convert_orphans_batch(
        self,
        db: AsyncSession,
        caller: CallerContext,
        session_ids: list[int],
    ) -> BatchRetroactiveReport:
        limit = settings.reconciliation.batch_retroactive_limit
        if len(session_ids) > limit:
            raise ValidationError(f"At most {limit} sessions can be converted at once")
        return await self._convert_many(db, caller.clinic_id, session_ids, created_by=caller.user_id)

    async def _convert_many(
        self,
        db: AsyncSession,
        clinic_id: int,
        session_ids: Iterable[int],
        created_by: int | None = None,
    ) -> BatchRetroactiveReport:
        report = BatchRetroactiveReport()
        for session_id in session_ids:
            try:
                appointment, created = await self.convert_orphan(
                    db, clinic_id, session_id, created_by=created_by
                )
            except SchedulingError as exc:
                report.results.append(RetroactiveResult(session_id=session_id, success=False, error=exc.message))
                report.errors.append(ItemError(item_id=str(session_id), error=exc.message))
                continue
            except Exception as exc:
                logger.exception("Retroactive conversion failed for session %s", session_id)
                report.results.append(RetroactiveResult(session_id=session_id, success=False, error=str(exc)))
                report.errors.append(ItemError(item_id=str(session_id), error=str(exc)))
                continue
            report.results.append(RetroactiveResult(
                session_id=session_id,
                success=True,
                created=created,
                appointment_id=appointment.id,
            ))
        return report

    # ── Combined detection ───────────────────────────────────────────

    async def detect(
        self,
        db: AsyncSession,
        clinic_id: int,
        start_date: date | None = None,
        end_date: date | None = None,
        auto_create_retroactive: bool = False,
        window: MatchWindow | None = None,
        created_by: int | None = None,
    ) -> DetectionReport:
        """Forward match and orphan listing over a date range (default: last 30 days)."""
        end_date = end_date or date.today()
        start_date = start_date or end_date - timedelta(days=settings.reconciliation.forward_lookback_days)
        if start_date > end_date:
            raise ValidationError("start_date must be on or before end_date")

        report = DetectionReport(clinic_id=clinic_id, period_start=start_date, period_end=end_date)

        forward = await self.forward_match(
            db, clinic_id, window=window, today=end_date, date_from=start_date
        )
        report.matched = forward.matched
        report.errors.extend(forward.errors)

        orphans = await self.find_orphans(
            db,
            clinic_id,
            since=datetime.combine(start_date, time.min),
            until=datetime.combine(end_date + timedelta(days=1), time.min),
            announce=True,
        )
        report.orphans = [OrphanSession.model_validate(s) for s in orphans]

        if auto_create_retroactive and orphans:
            converted = await self._convert_many(
                db, clinic_id, [s.id for s in orphans], created_by=created_by
            )
            report.retroactive = converted.results
            report.errors.extend(converted.errors)

        logger.info(
            "Detection clinic=%s %s..%s: matched=%d orphans=%d retroactive=%d errors=%d",
            clinic_id,
            start_date,
            end_date,
            len(report.matched),
            len(report.orphans),
            sum(1 for r in report.retroactive if r.created),
            len(report.errors),
        )
        return report

    async def pending_actions(
        self,
        db: AsyncSession,
        caller: CallerContext,
        now: datetime | None = None,
    ) -> PendingActions:
        """What operators still need to resolve for the caller's clinic."""
        now = now or datetime.now()
        cfg = settings.reconciliation

        old_orphans = await self.find_orphans(
            db,
            caller.clinic_id,
            since=now - timedelta(days=cfg.forward_lookback_days + cfg.pending_orphan_age_days),
            until=now - timedelta(days=cfg.pending_orphan_age_days),
        )

        missed_result = await db.execute(
            appointments_in_clinic(caller.clinic_id)
            .where(
                Appointment.status == AppointmentStatus.MISSED.value,
                Appointment.missed_reason.is_(None),
            )
            .order_by(Appointment.scheduled_date.desc())
            .limit(settings.scheduling.list_limit)
        )
        unjustified = list(missed_result.scalars().all())

        today_start = datetime.now(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
        detected_result = await db.execute(
            appointments_in_clinic(caller.clinic_id)
            .with_only_columns(func.count(Appointment.id))
            .where(
                Appointment.detection_source.in_(
                    (DetectionSource.AUTO_DETECTED.value, DetectionSource.ORPHAN_CONVERTED.value)
                ),
                Appointment.completed_at >= today_start,
            )
        )

        return PendingActions(
            old_orphans=[OrphanSession.model_validate(s) for s in old_orphans],
            unjustified_missed=[AppointmentRead.model_validate(a) for a in unjustified],
            detected_today=detected_result.scalar() or 0,
        )

    # ── Helpers ──────────────────────────────────────────────────────

    async def _load_session(
        self,
        db: AsyncSession,
        clinic_id: int,
        session_id: int,
    ) -> PerformedSession | None:
        result = await db.execute(
            select(PerformedSession)
            .join(Patient, Patient.id == PerformedSession.patient_id)
            .where(PerformedSession.id == session_id, Patient.clinic_id == clinic_id)
        )
        return result.scalar_one_or_none()

    async def _documenting_appointment(
        self,
        db: AsyncSession,
        session: PerformedSession,
    ) -> Appointment | None:
        """Appointment already linked to the session, or completed for its pair and day."""
        result = await db.execute(
            select(Appointment)
            .where(Appointment.progress_record_id == session.id)
            .limit(1)
        )
        linked = result.scalar_one_or_none()
        if linked is not None:
            return linked

        result = await db.execute(
            select(Appointment)
            .where(
                Appointment.patient_id == session.patient_id,
                Appointment.therapist_id == session.therapist_id,
                Appointment.scheduled_date == session.session_date,
                Appointment.status == AppointmentStatus.COMPLETED.value,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()


# Module-level singleton
reconciliation_engine = ReconciliationEngine()
