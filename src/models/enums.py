"""Domain enums used across SQLAlchemy models and Pydantic schemas.

All enums use the str mixin so they serialize as plain strings in JSON and
are stored as VARCHAR columns.
"""

from __future__ import annotations

from enum import Enum


class AppointmentStatus(str, Enum):
    """Appointment lifecycle.

    scheduled → completed | missed | cancelled; missed → cancelled.
    completed and cancelled never move back to scheduled.
    """

    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"


# Statuses that occupy a slot for conflict detection
ACTIVE_STATUSES: tuple[str, ...] = (
    AppointmentStatus.SCHEDULED.value,
    AppointmentStatus.COMPLETED.value,
)

# Statuses an explicit cancel may start from
CANCELLABLE_STATUSES: tuple[str, ...] = (
    AppointmentStatus.SCHEDULED.value,
    AppointmentStatus.MISSED.value,
)


class DetectionSource(str, Enum):
    """How an appointment came to exist."""

    MANUAL = "manual"
    AUTO_DETECTED = "auto_detected"  # completed by forward matching
    ORPHAN_CONVERTED = "orphan_converted"  # synthesized from an orphan session


class RecurrenceType(str, Enum):
    """Recurrence rule of a template. Only weekly rules are generated."""

    WEEKLY = "weekly"


class CancellationReason(str, Enum):
    """Reason categories offered when cancelling."""

    PATIENT_REQUEST = "patient_request"
    THERAPIST_UNAVAILABLE = "therapist_unavailable"
    CLINIC_CLOSED = "clinic_closed"
    ILLNESS = "illness"
    RESCHEDULED = "rescheduled"
    OTHER = "other"


class UserRole(str, Enum):
    """Roles carried by the caller context."""

    ADMIN = "admin"
    THERAPIST = "therapist"
    STAFF = "staff"
