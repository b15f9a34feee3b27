"""Tests for the recurring template generator.

Covers:
- Occurrence window: first window from start_date, rolling horizon, end_date cap
- Watermark: repeated runs never revisit examined dates
- is_due for active, paused, ended, and fully generated templates
- generate(): conflicts recorded and skipped, holidays skipped silently,
  watermark advances regardless of outcomes
- Inactive / paused templates are refused
- Template lifecycle: create, pause, resume, deactivate, conflict preview
- Maintenance helpers: due templates, expired templates, expired pauses
"""

from __future__ import annotations

import uuid
from datetime import date, time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.config import settings
from src.models.appointment import Appointment
from src.models.enums import AppointmentStatus, DetectionSource, UserRole
from src.models.recurring_template import RecurringTemplate
from src.schemas.events import EventType
from src.schemas.scheduling import CallerContext, DeactivateRequest, GenerationReport, PauseRequest, TemplateCreate
from src.scheduling.errors import ConflictError, NotFoundError, ValidationError
from src.scheduling.generator import TemplateService, clinic_weekday, is_due, occurrence_dates

TUESDAY = 2

# ── Helpers ──────────────────────────────────────────────────────────


def _make_template(**overrides) -> RecurringTemplate:
    data = {
        "id": uuid.uuid4(),
        "patient_id": 7,
        "therapist_id": 3,
        "discipline_id": None,
        "day_of_week": TUESDAY,
        "scheduled_time": time(10, 0),
        "duration_minutes": 60,
        "start_date": date(2024, 1, 1),
        "end_date": date(2024, 1, 31),
        "generate_weeks_ahead": 4,
        "skip_holidays": False,
        "is_active": True,
        "is_paused": False,
        "last_generation_date": None,
        "created_by": 10,
        "notes": None,
    }
    data.update(overrides)
    return RecurringTemplate(**data)


def _make_appointment(day: date) -> Appointment:
    return Appointment(
        id=uuid.uuid4(),
        patient_id=7,
        therapist_id=3,
        scheduled_date=day,
        scheduled_time=time(10, 0),
        duration_minutes=60,
        status=AppointmentStatus.SCHEDULED.value,
        detection_source=DetectionSource.MANUAL.value,
        is_retroactive=False,
    )


def _make_service(book_side_effect=None) -> tuple[TemplateService, MagicMock]:
    store = MagicMock()
    store.book = AsyncMock(side_effect=book_side_effect or (lambda db, **kw: _make_appointment(kw["scheduled_date"])))
    return TemplateService(store=store, directory=MagicMock()), store


def _make_db() -> AsyncMock:
    db = AsyncMock()
    db.add = MagicMock()
    return db


def _patch_template(template: RecurringTemplate | None):
    return patch(
        "src.scheduling.generator.load_template",
        new_callable=AsyncMock,
        return_value=template,
    )


# ── Occurrence window ────────────────────────────────────────────────


class TestOccurrenceDates:
    def test_clinic_weekday_sunday_is_zero(self):
        assert clinic_weekday(date(2024, 1, 7)) == 0
        assert clinic_weekday(date(2024, 1, 2)) == TUESDAY
        assert clinic_weekday(date(2024, 1, 6)) == 6

    def test_first_window_starts_at_start_date(self):
        dates = occurrence_dates(date(2024, 1, 1), date(2024, 1, 31), TUESDAY, 4, today=date(2023, 12, 20))
        assert dates == [date(2024, 1, 2), date(2024, 1, 9), date(2024, 1, 16), date(2024, 1, 23)]

    def test_watermark_excludes_examined_dates(self):
        dates = occurrence_dates(
            date(2024, 1, 1), date(2024, 1, 31), TUESDAY, 4,
            last_generation_date=date(2024, 1, 23),
            today=date(2024, 1, 10),
        )
        assert dates == [date(2024, 1, 30)]

    def test_end_date_caps_window(self):
        dates = occurrence_dates(date(2024, 1, 1), date(2024, 1, 10), TUESDAY, 4, today=date(2023, 12, 20))
        assert dates == [date(2024, 1, 2), date(2024, 1, 9)]

    def test_past_end_date_yields_nothing(self):
        assert occurrence_dates(date(2024, 1, 1), date(2024, 1, 31), TUESDAY, 4, today=date(2024, 2, 5)) == []

    def test_horizon_rolls_with_today(self):
        dates = occurrence_dates(date(2024, 1, 1), None, TUESDAY, 2, today=date(2024, 3, 1))
        assert dates == [date(2024, 3, 5), date(2024, 3, 12)]
        assert all(d >= date(2024, 3, 1) for d in dates)

    def test_occurrence_on_lower_bound_included(self):
        dates = occurrence_dates(date(2024, 1, 2), None, TUESDAY, 1, today=date(2024, 1, 2))
        assert dates == [date(2024, 1, 2)]


class TestIsDue:
    def test_never_generated_is_due(self):
        assert is_due(_make_template(), date(2023, 12, 20)) is True

    def test_paused_or_inactive_not_due(self):
        assert is_due(_make_template(is_paused=True), date(2023, 12, 20)) is False
        assert is_due(_make_template(is_active=False), date(2023, 12, 20)) is False

    def test_ended_template_not_due(self):
        assert is_due(_make_template(), date(2024, 2, 5)) is False

    def test_remaining_occurrence_is_due(self):
        template = _make_template(last_generation_date=date(2024, 1, 23))
        assert is_due(template, date(2024, 1, 10)) is True

    def test_fully_generated_not_due(self):
        template = _make_template(last_generation_date=date(2024, 1, 30))
        assert is_due(template, date(2024, 1, 10)) is False


# ── Generation ───────────────────────────────────────────────────────


class TestGenerate:
    @pytest.mark.asyncio()
    async def test_generates_first_window(self):
        service, store = _make_service()
        template = _make_template()
        db = _make_db()

        with (
            _patch_template(template),
            patch("src.scheduling.generator.emit", new_callable=AsyncMock) as mock_emit,
        ):
            report = await service.generate(db, template.id, today=date(2023, 12, 20))

        assert report.generated == 4
        assert report.conflicts == 0
        assert template.last_generation_date == date(2024, 1, 23)
        assert report.last_generation_date == date(2024, 1, 23)
        booked = [c.kwargs["scheduled_date"] for c in store.book.await_args_list]
        assert booked == [date(2024, 1, 2), date(2024, 1, 9), date(2024, 1, 16), date(2024, 1, 23)]
        assert store.book.await_args_list[0].kwargs["recurring_template_id"] == template.id

        event = mock_emit.call_args[0][0]
        assert event.event_type == EventType.APPOINTMENTS_GENERATED
        assert event.data["generated"] == 4
        assert event.actor_id == "system"

    @pytest.mark.asyncio()
    async def test_conflict_recorded_and_skipped(self):
        def book(db, **kw):
            if kw["scheduled_date"] == date(2024, 1, 9):
                raise ConflictError([_make_appointment(date(2024, 1, 9))])
            return _make_appointment(kw["scheduled_date"])

        service, store = _make_service(book)
        template = _make_template()

        with _patch_template(template), patch("src.scheduling.generator.emit", new_callable=AsyncMock):
            report = await service.generate(_make_db(), template.id, today=date(2023, 12, 20))

        assert report.summary == "3 generated, 1 conflicts"
        failed = [r for r in report.results if not r.success]
        assert failed[0].occurrence_date == date(2024, 1, 9)
        assert "conflict" in failed[0].reason
        # Watermark still covers the conflicting date
        assert template.last_generation_date == date(2024, 1, 23)

    @pytest.mark.asyncio()
    async def test_rerun_generates_nothing_new(self):
        service, store = _make_service()
        template = _make_template(last_generation_date=date(2024, 1, 23))

        with _patch_template(template), patch("src.scheduling.generator.emit", new_callable=AsyncMock) as mock_emit:
            report = await service.generate(_make_db(), template.id, today=date(2023, 12, 20))

        assert report.generated == 0
        store.book.assert_not_awaited()
        mock_emit.assert_not_awaited()
        assert template.last_generation_date == date(2024, 1, 23)

    @pytest.mark.asyncio()
    async def test_holidays_skipped_silently(self):
        service, store = _make_service()
        template = _make_template(skip_holidays=True)

        with (
            _patch_template(template),
            patch("src.scheduling.generator.emit", new_callable=AsyncMock),
            patch.object(settings.scheduling, "holidays", "2024-01-16"),
        ):
            report = await service.generate(_make_db(), template.id, today=date(2023, 12, 20))

        assert report.generated == 3
        assert report.conflicts == 0
        assert date(2024, 1, 16) not in [r.occurrence_date for r in report.results]
        assert template.last_generation_date == date(2024, 1, 23)

    @pytest.mark.asyncio()
    async def test_holidays_ignored_without_skip_flag(self):
        service, store = _make_service()
        template = _make_template(skip_holidays=False)

        with (
            _patch_template(template),
            patch("src.scheduling.generator.emit", new_callable=AsyncMock),
            patch.object(settings.scheduling, "holidays", "2024-01-16"),
        ):
            report = await service.generate(_make_db(), template.id, today=date(2023, 12, 20))

        assert report.generated == 4

    @pytest.mark.asyncio()
    async def test_paused_template_refused(self):
        service, store = _make_service()
        template = _make_template(is_paused=True)

        with _patch_template(template), pytest.raises(ValidationError, match="paused"):
            await service.generate(_make_db(), template.id, today=date(2023, 12, 20))
        store.book.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_inactive_template_refused(self):
        service, _ = _make_service()
        template = _make_template(is_active=False)

        with _patch_template(template), pytest.raises(ValidationError, match="inactive"):
            await service.generate(_make_db(), template.id, today=date(2023, 12, 20))

    @pytest.mark.asyncio()
    async def test_missing_template(self):
        service, _ = _make_service()
        with _patch_template(None), pytest.raises(NotFoundError):
            await service.generate(_make_db(), uuid.uuid4())

    @pytest.mark.asyncio()
    async def test_weeks_ahead_over_limit(self):
        service, _ = _make_service()
        template = _make_template()
        with _patch_template(template), pytest.raises(ValidationError, match="weeks_ahead"):
            await service.generate(_make_db(), template.id, weeks_ahead=53, today=date(2023, 12, 20))

    @pytest.mark.asyncio()
    async def test_caller_scopes_template_lookup(self):
        service, _ = _make_service()
        template = _make_template()
        caller = CallerContext(clinic_id=4, user_id=10, role=UserRole.ADMIN)
        db = _make_db()

        with (
            _patch_template(template) as mock_load,
            patch("src.scheduling.generator.emit", new_callable=AsyncMock) as mock_emit,
        ):
            await service.generate(db, template.id, caller=caller, today=date(2023, 12, 20))

        mock_load.assert_awaited_once_with(db, 4, template.id)
        assert mock_emit.call_args[0][0].clinic_id == 4


# ── Template lifecycle ───────────────────────────────────────────────


def _admin() -> CallerContext:
    return CallerContext(clinic_id=1, user_id=10, role=UserRole.ADMIN)


def _rows_db(rows: list) -> AsyncMock:
    db = _make_db()
    result = MagicMock()
    result.scalars.return_value.all.return_value = rows
    db.execute = AsyncMock(return_value=result)
    return db


def _create_payload(**overrides) -> TemplateCreate:
    data = {
        "patient_id": 7,
        "therapist_id": 3,
        "day_of_week": TUESDAY,
        "scheduled_time": time(10, 0),
        "start_date": date(2024, 1, 1),
        "end_date": date(2024, 1, 31),
    }
    data.update(overrides)
    return TemplateCreate(**data)


class TestTemplateLifecycle:
    @pytest.mark.asyncio()
    async def test_create_validates_then_generates_first_window(self):
        service, _ = _make_service()
        service._directory.validate_references = AsyncMock()
        report = GenerationReport(template_id=uuid.uuid4())
        db = _make_db()

        with (
            patch.object(service, "generate", new_callable=AsyncMock, return_value=report) as mock_generate,
            patch("src.scheduling.generator.emit", new_callable=AsyncMock) as mock_emit,
        ):
            template, generated = await service.create_template(db, _admin(), _create_payload(), today=date(2023, 12, 20))

        service._directory.validate_references.assert_awaited_once_with(db, 1, 7, 3, None)
        db.add.assert_called_once_with(template)
        assert template.is_active is True
        assert template.is_paused is False
        assert template.created_by == 10
        assert generated is report
        mock_generate.assert_awaited_once_with(db, template.id, caller=_admin(), today=date(2023, 12, 20))
        assert mock_emit.call_args[0][0].event_type == EventType.TEMPLATE_CREATED

    @pytest.mark.asyncio()
    async def test_create_without_generation(self):
        service, _ = _make_service()
        service._directory.validate_references = AsyncMock()

        with (
            patch.object(service, "generate", new_callable=AsyncMock) as mock_generate,
            patch("src.scheduling.generator.emit", new_callable=AsyncMock),
        ):
            _, generated = await service.create_template(_make_db(), _admin(), _create_payload(generate_now=False))

        assert generated is None
        mock_generate.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_create_with_unknown_references_writes_nothing(self):
        service, _ = _make_service()
        service._directory.validate_references = AsyncMock(side_effect=ValidationError("Patient not found"))
        db = _make_db()

        with pytest.raises(ValidationError):
            await service.create_template(db, _admin(), _create_payload())

        db.add.assert_not_called()

    @pytest.mark.asyncio()
    async def test_pause_records_reason_and_until(self):
        service, _ = _make_service()
        template = _make_template()

        with _patch_template(template), patch("src.scheduling.generator.emit", new_callable=AsyncMock) as mock_emit:
            await service.pause(
                _make_db(), _admin(), template.id, PauseRequest(reason="holiday", pause_until=date(2024, 1, 20))
            )

        assert template.is_paused is True
        assert template.paused_until == date(2024, 1, 20)
        assert template.pause_reason == "holiday"
        event = mock_emit.call_args[0][0]
        assert event.event_type == EventType.TEMPLATE_PAUSED
        assert event.data["pause_until"] == "2024-01-20"

    @pytest.mark.asyncio()
    async def test_inactive_template_cannot_pause_or_resume(self):
        service, _ = _make_service()
        template = _make_template(is_active=False)

        with _patch_template(template), pytest.raises(ValidationError, match="paused"):
            await service.pause(_make_db(), _admin(), template.id, PauseRequest())
        with _patch_template(template), pytest.raises(ValidationError, match="resumed"):
            await service.resume(_make_db(), _admin(), template.id)

    @pytest.mark.asyncio()
    async def test_resume_clears_pause_and_generates(self):
        service, _ = _make_service()
        template = _make_template(is_paused=True, paused_until=date(2024, 1, 20), pause_reason="holiday")
        report = GenerationReport(template_id=template.id)
        db = _make_db()

        with (
            _patch_template(template),
            patch.object(service, "generate", new_callable=AsyncMock, return_value=report) as mock_generate,
            patch("src.scheduling.generator.emit", new_callable=AsyncMock) as mock_emit,
        ):
            _, generated = await service.resume(db, _admin(), template.id, today=date(2024, 1, 10))

        assert template.is_paused is False
        assert template.paused_until is None
        assert template.pause_reason is None
        assert generated is report
        mock_generate.assert_awaited_once_with(db, template.id, caller=_admin(), today=date(2024, 1, 10))
        assert mock_emit.call_args[0][0].event_type == EventType.TEMPLATE_RESUMED

    @pytest.mark.asyncio()
    async def test_deactivate_records_audit_fields(self):
        service, _ = _make_service()
        template = _make_template()

        with _patch_template(template), patch("src.scheduling.generator.emit", new_callable=AsyncMock) as mock_emit:
            await service.deactivate(_make_db(), _admin(), template.id, DeactivateRequest(reason="discharged"))

        assert template.is_active is False
        assert template.deactivated_by == 10
        assert template.deactivated_at is not None
        assert template.deactivation_reason == "discharged"
        assert mock_emit.call_args[0][0].event_type == EventType.TEMPLATE_DEACTIVATED

    @pytest.mark.asyncio()
    async def test_check_conflicts_previews_without_writing(self):
        service, store = _make_service()
        template = _make_template()
        own = _make_appointment(date(2024, 1, 9))
        own.recurring_template_id = template.id
        other = _make_appointment(date(2024, 1, 16))
        store.detector.find_conflicts = AsyncMock(side_effect=[[], [own], [other], []])
        db = _make_db()

        with _patch_template(template):
            results = await service.check_conflicts(db, _admin(), template.id, today=date(2023, 12, 20))

        assert [r.occurrence_date for r in results] == [
            date(2024, 1, 2), date(2024, 1, 9), date(2024, 1, 16), date(2024, 1, 23),
        ]
        assert [r.success for r in results] == [True, True, False, True]
        assert results[2].reason == str(other.id)
        store.book.assert_not_awaited()
        db.add.assert_not_called()
        db.flush.assert_not_awaited()


# ── Maintenance helpers ──────────────────────────────────────────────


class TestMaintenanceHelpers:
    @pytest.mark.asyncio()
    async def test_due_templates_filtered_by_remaining_occurrences(self):
        service, _ = _make_service()
        due = _make_template()
        done = _make_template(last_generation_date=date(2024, 1, 30))

        result = await service.templates_due_for_generation(_rows_db([due, done]), date(2024, 1, 10))

        assert result == [due]

    @pytest.mark.asyncio()
    async def test_deactivate_expired(self):
        service, _ = _make_service()
        ended = [_make_template(end_date=date(2024, 1, 31)), _make_template(end_date=date(2024, 2, 1))]
        db = _rows_db(ended)

        count = await service.deactivate_expired(db, date(2024, 2, 5))

        assert count == 2
        assert all(t.is_active is False for t in ended)
        assert all(t.deactivation_reason == "End date reached" for t in ended)
        db.flush.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_deactivate_expired_nothing_to_do(self):
        service, _ = _make_service()
        db = _rows_db([])

        assert await service.deactivate_expired(db, date(2024, 2, 5)) == 0
        db.flush.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_resume_expired_pauses(self):
        service, _ = _make_service()
        paused = _make_template(is_paused=True, paused_until=date(2024, 1, 8), pause_reason="travel")
        db = _rows_db([paused])

        resumed = await service.resume_expired_pauses(db, date(2024, 1, 8))

        assert resumed == [paused]
        assert paused.is_paused is False
        assert paused.paused_until is None
        assert paused.pause_reason is None
        db.flush.assert_awaited_once()
