"""Scheduling error taxonomy.

Services raise these; the FastAPI exception handler in ``src.main`` turns
them into ``{"success": false, "errors": [{"msg": ...}]}`` responses.
Batch jobs catch them per item and record the message instead.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import status

if TYPE_CHECKING:
    from src.models.appointment import Appointment


class SchedulingError(Exception):
    """Base class for business and validation failures."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "SCHEDULING_ERROR"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        messages: list[str] | None = None,
    ) -> None:
        self.message = message
        self.details = details or {}
        self.messages = messages or [message]
        super().__init__(message)

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": False,
            "error_code": self.error_code,
            "errors": [{"msg": m} for m in self.messages],
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(SchedulingError):
    """Malformed or missing input, or a transition the state machine forbids."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "VALIDATION_ERROR"


class NotFoundError(SchedulingError):
    """Absent, or outside the caller's clinic."""

    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} not found", details={"id": str(entity_id)})


class ConflictError(SchedulingError):
    """Overlapping booking. Carries the competing appointments."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "SCHEDULING_CONFLICT"

    def __init__(self, conflicts: list[Appointment], message: str | None = None) -> None:
        self.conflicts = conflicts
        super().__init__(
            message or "Time slot conflicts with an existing appointment",
            details={"conflicts": [summarize_appointment(a) for a in conflicts]},
        )


class UnauthorizedError(SchedulingError):
    """Caller identity missing or unreadable."""

    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "UNAUTHORIZED"


class PermissionDeniedError(SchedulingError):
    """Role or ownership check failed."""

    status_code = status.HTTP_403_FORBIDDEN
    error_code = "PERMISSION_DENIED"


class UnexpectedError(SchedulingError):
    """Store or internal failure. Clients only see a generic message."""

    error_code = "UNEXPECTED_ERROR"

    def to_response(self) -> dict[str, Any]:
        return {
            "success": False,
            "error_code": self.error_code,
            "errors": [{"msg": "Internal server error"}],
        }


def summarize_appointment(appointment: Appointment) -> dict[str, Any]:
    """Minimal JSON-safe view of an appointment for error payloads and reports."""
    return {
        "id": str(appointment.id),
        "patient_id": appointment.patient_id,
        "therapist_id": appointment.therapist_id,
        "scheduled_date": appointment.scheduled_date.isoformat(),
        "scheduled_time": appointment.scheduled_time.strftime("%H:%M"),
        "duration_minutes": appointment.duration_minutes,
        "status": appointment.status,
    }
