"""SQLAlchemy ORM models for the scheduling engine.

Import all models here so Alembic and Base.metadata discover them.
"""

from __future__ import annotations

from src.models.appointment import Appointment
from src.models.base import Base
from src.models.enums import (
    ACTIVE_STATUSES,
    CANCELLABLE_STATUSES,
    AppointmentStatus,
    CancellationReason,
    DetectionSource,
    RecurrenceType,
    UserRole,
)
from src.models.external import (
    EXTERNAL_TABLES,
    Clinic,
    ClinicUser,
    Discipline,
    Patient,
    PerformedSession,
)
from src.models.recurring_template import RecurringTemplate

__all__ = [
    # Base
    "Base",
    # Owned models
    "Appointment",
    "RecurringTemplate",
    # External, read-only
    "Clinic",
    "ClinicUser",
    "Discipline",
    "Patient",
    "PerformedSession",
    "EXTERNAL_TABLES",
    # Enums
    "AppointmentStatus",
    "DetectionSource",
    "RecurrenceType",
    "CancellationReason",
    "UserRole",
    "ACTIVE_STATUSES",
    "CANCELLABLE_STATUSES",
]
