"""Boundary checks for booking dates and times, run before any store call."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta

from src.config import settings
from src.scheduling.errors import ValidationError


def booking_problems(
    scheduled_date: date,
    scheduled_time: time,
    duration_minutes: int,
    now: datetime | None = None,
    allow_past: bool = False,
) -> list[str]:
    """Collect every rule a proposed booking breaks.

    A booking may start at most ``past_tolerance_minutes`` in the past and at
    most ``max_days_ahead`` days in the future. ``now`` is naive local time.
    """
    cfg = settings.scheduling
    now = now or datetime.now()
    problems: list[str] = []

    start = datetime.combine(scheduled_date, scheduled_time)
    if not allow_past and start < now - timedelta(minutes=cfg.past_tolerance_minutes):
        problems.append("Appointment cannot be scheduled in the past")
    if scheduled_date > now.date() + timedelta(days=cfg.max_days_ahead):
        problems.append(f"Appointment cannot be more than {cfg.max_days_ahead} days ahead")
    if not cfg.min_duration_minutes <= duration_minutes <= cfg.max_duration_minutes:
        problems.append(
            f"Duration must be between {cfg.min_duration_minutes} and "
            f"{cfg.max_duration_minutes} minutes"
        )
    return problems


def validate_booking(
    scheduled_date: date,
    scheduled_time: time,
    duration_minutes: int,
    now: datetime | None = None,
    allow_past: bool = False,
) -> None:
    """Raise ValidationError listing all broken rules, if any."""
    problems = booking_problems(scheduled_date, scheduled_time, duration_minutes, now, allow_past)
    if problems:
        raise ValidationError(problems[0], messages=problems)
