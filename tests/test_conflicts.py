"""Tests for conflict detection.

Covers:
- Half-open interval overlap (back-to-back bookings are allowed)
- Overlap against the same therapist or the same patient
- exclude_id is forwarded to the store query
- Booking scenario: 09:00–10:00 then 09:30–10:30 for the same therapist
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.models.enums import AppointmentStatus
from src.scheduling.conflicts import ConflictDetector, appointment_interval, intervals_overlap

# ── Helpers ──────────────────────────────────────────────────────────


def _make_appointment(
    scheduled_time: time,
    duration: int = 60,
    patient_id: int = 7,
    therapist_id: int = 3,
    scheduled_date: date = date(2024, 2, 5),
) -> MagicMock:
    appt = MagicMock()
    appt.id = uuid.uuid4()
    appt.patient_id = patient_id
    appt.therapist_id = therapist_id
    appt.scheduled_date = scheduled_date
    appt.scheduled_time = scheduled_time
    appt.duration_minutes = duration
    appt.status = AppointmentStatus.SCHEDULED.value
    return appt


def _patch_candidates(candidates: list[MagicMock]):
    return patch(
        "src.scheduling.conflicts.same_day_active_appointments",
        new_callable=AsyncMock,
        return_value=candidates,
    )


# ── Interval arithmetic ──────────────────────────────────────────────


class TestIntervals:
    def test_interval_end_is_start_plus_duration(self):
        start, end = appointment_interval(date(2024, 2, 5), time(9, 30), 45)
        assert start == datetime(2024, 2, 5, 9, 30)
        assert end == datetime(2024, 2, 5, 10, 15)

    def test_overlapping(self):
        assert intervals_overlap(
            datetime(2024, 2, 5, 9), datetime(2024, 2, 5, 10),
            datetime(2024, 2, 5, 9, 30), datetime(2024, 2, 5, 10, 30),
        )

    def test_back_to_back_does_not_overlap(self):
        assert not intervals_overlap(
            datetime(2024, 2, 5, 9), datetime(2024, 2, 5, 10),
            datetime(2024, 2, 5, 10), datetime(2024, 2, 5, 11),
        )

    def test_contained_interval_overlaps(self):
        assert intervals_overlap(
            datetime(2024, 2, 5, 9), datetime(2024, 2, 5, 12),
            datetime(2024, 2, 5, 10), datetime(2024, 2, 5, 10, 30),
        )

    def test_disjoint(self):
        assert not intervals_overlap(
            datetime(2024, 2, 5, 8), datetime(2024, 2, 5, 9),
            datetime(2024, 2, 5, 14), datetime(2024, 2, 5, 15),
        )


# ── ConflictDetector ─────────────────────────────────────────────────


class TestFindConflicts:
    @pytest.mark.asyncio()
    async def test_overlap_with_same_therapist(self):
        """09:00–10:00 booked, 09:30–10:30 requested → conflict with the first."""
        existing = _make_appointment(time(9, 0), patient_id=99)
        detector = ConflictDetector()

        with _patch_candidates([existing]):
            conflicts = await detector.find_conflicts(
                AsyncMock(), 7, 3, date(2024, 2, 5), time(9, 30), 60
            )

        assert conflicts == [existing]

    @pytest.mark.asyncio()
    async def test_back_to_back_is_free(self):
        existing = _make_appointment(time(9, 0))
        detector = ConflictDetector()

        with _patch_candidates([existing]):
            conflicts = await detector.find_conflicts(
                AsyncMock(), 7, 3, date(2024, 2, 5), time(10, 0), 60
            )

        assert conflicts == []

    @pytest.mark.asyncio()
    async def test_ending_exactly_at_start_is_free(self):
        existing = _make_appointment(time(11, 0))
        detector = ConflictDetector()

        with _patch_candidates([existing]):
            assert not await detector.has_conflict(
                AsyncMock(), 7, 3, date(2024, 2, 5), time(10, 0), 60
            )

    @pytest.mark.asyncio()
    async def test_patient_double_booking_with_other_therapist(self):
        """Same patient, different therapist, overlapping slot → conflict."""
        existing = _make_appointment(time(14, 0), therapist_id=5)
        detector = ConflictDetector()

        with _patch_candidates([existing]):
            assert await detector.has_conflict(
                AsyncMock(), 7, 3, date(2024, 2, 5), time(14, 30), 30
            )

    @pytest.mark.asyncio()
    async def test_only_overlapping_candidates_returned(self):
        morning = _make_appointment(time(8, 0))
        clash = _make_appointment(time(10, 30), duration=30)
        evening = _make_appointment(time(18, 0))
        detector = ConflictDetector()

        with _patch_candidates([morning, clash, evening]):
            conflicts = await detector.find_conflicts(
                AsyncMock(), 7, 3, date(2024, 2, 5), time(10, 0), 60
            )

        assert conflicts == [clash]

    @pytest.mark.asyncio()
    async def test_exclude_id_forwarded(self):
        own_id = uuid.uuid4()
        detector = ConflictDetector()
        db = AsyncMock()

        with _patch_candidates([]) as mock_query:
            await detector.find_conflicts(db, 7, 3, date(2024, 2, 5), time(9, 0), 60, exclude_id=own_id)

        mock_query.assert_awaited_once_with(db, 7, 3, date(2024, 2, 5), exclude_id=own_id)
