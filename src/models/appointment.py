"""Appointment model — a calendar entry for intended patient–therapist contact."""

from __future__ import annotations

import uuid
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, Time, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models.base import Base, TimestampMixin
from src.models.enums import AppointmentStatus, DetectionSource

if TYPE_CHECKING:
    from src.models.recurring_template import RecurringTemplate


class Appointment(TimestampMixin, Base):
    """A scheduled (or retroactively documented) therapy appointment.

    Tenancy is derived from the patient: the clinic owning ``patient_id``
    owns the appointment.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_therapist_date", "therapist_id", "scheduled_date"),
        Index("ix_appointments_patient_date", "patient_id", "scheduled_date"),
        # A performed session documents at most one appointment
        Index(
            "uq_appointments_progress_record",
            "progress_record_id",
            unique=True,
            postgresql_where=text("progress_record_id IS NOT NULL"),
        ),
    )

    # Participants (external platform ids)
    patient_id: Mapped[int] = mapped_column(Integer, nullable=False)
    therapist_id: Mapped[int] = mapped_column(Integer, nullable=False)
    discipline_id: Mapped[int | None] = mapped_column(Integer)

    # Slot
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    scheduled_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20), default=AppointmentStatus.SCHEDULED.value, nullable=False, index=True
    )
    detection_source: Mapped[str] = mapped_column(
        String(20), default=DetectionSource.MANUAL.value, nullable=False
    )
    is_retroactive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Links
    progress_record_id: Mapped[int | None] = mapped_column(
        Integer, comment="performed_sessions.id that documents this appointment"
    )
    recurring_template_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("recurring_templates.id", ondelete="SET NULL"),
        index=True,
    )

    # Absence justification (status stays missed)
    missed_reason: Mapped[str | None] = mapped_column(Text)
    justified_by: Mapped[int | None] = mapped_column(Integer)
    justified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Cancellation
    cancellation_reason_type: Mapped[str | None] = mapped_column(String(50))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    cancelled_by: Mapped[int | None] = mapped_column(Integer)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_by: Mapped[int | None] = mapped_column(Integer)
    notes: Mapped[str | None] = mapped_column(Text)

    template: Mapped[RecurringTemplate | None] = relationship(
        "RecurringTemplate", back_populates="appointments"
    )

    @property
    def starts_at(self) -> datetime:
        """Naive local start of the slot."""
        return datetime.combine(self.scheduled_date, self.scheduled_time)

    @property
    def ends_at(self) -> datetime:
        return self.starts_at + timedelta(minutes=self.duration_minutes)

    def __repr__(self) -> str:
        return (
            f"<Appointment id={self.id} status={self.status} "
            f"at={self.scheduled_date} {self.scheduled_time}>"
        )
