"""RecurringTemplate model — a weekly rule that generates appointments."""

from __future__ import annotations

from datetime import date, datetime, time
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, Date, DateTime, Integer, SmallInteger, String, Text, Time
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models.base import Base, TimestampMixin
from src.models.enums import RecurrenceType

if TYPE_CHECKING:
    from src.models.appointment import Appointment


class RecurringTemplate(TimestampMixin, Base):
    """Weekly recurrence for one patient/therapist pair.

    ``last_generation_date`` is the generation watermark: occurrences on or
    before it have already been examined and are never generated again.
    """

    __tablename__ = "recurring_templates"
    __table_args__ = (
        CheckConstraint("end_date IS NULL OR end_date >= start_date", name="end_after_start"),
        CheckConstraint("day_of_week BETWEEN 0 AND 6", name="day_of_week_range"),
    )

    patient_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    therapist_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    discipline_id: Mapped[int | None] = mapped_column(Integer)

    # Rule
    recurrence_type: Mapped[str] = mapped_column(
        String(20), default=RecurrenceType.WEEKLY.value, nullable=False
    )
    day_of_week: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, comment="0=Sunday … 6=Saturday"
    )
    scheduled_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)
    generate_weeks_ahead: Mapped[int] = mapped_column(Integer, default=4, nullable=False)
    skip_holidays: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # State
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    is_paused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    paused_until: Mapped[date | None] = mapped_column(Date)
    pause_reason: Mapped[str | None] = mapped_column(Text)
    last_generation_date: Mapped[date | None] = mapped_column(Date)

    deactivated_by: Mapped[int | None] = mapped_column(Integer)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    deactivation_reason: Mapped[str | None] = mapped_column(Text)

    created_by: Mapped[int | None] = mapped_column(Integer)
    notes: Mapped[str | None] = mapped_column(Text)

    appointments: Mapped[list[Appointment]] = relationship(
        "Appointment", back_populates="template"
    )

    def __repr__(self) -> str:
        return (
            f"<RecurringTemplate id={self.id} patient={self.patient_id} "
            f"therapist={self.therapist_id} dow={self.day_of_week}>"
        )
