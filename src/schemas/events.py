"""SystemEvent schema — the event type that flows through the scheduling engine.

Every state change emits a SystemEvent. Subscribers (the notification
dispatcher, and anything registered at startup) consume them asynchronously.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """All event types emitted by the system."""

    # Appointments
    APPOINTMENT_CREATED = "appointment.created"
    APPOINTMENT_UPDATED = "appointment.updated"
    APPOINTMENT_COMPLETED = "appointment.completed"
    APPOINTMENT_CANCELLED = "appointment.cancelled"
    APPOINTMENT_MISSED = "appointment.missed"
    APPOINTMENT_JUSTIFIED = "appointment.justified"
    APPOINTMENT_DELETED = "appointment.deleted"
    APPOINTMENT_RESCHEDULED = "appointment.rescheduled"

    # Recurring templates
    TEMPLATE_CREATED = "template.created"
    TEMPLATE_UPDATED = "template.updated"
    TEMPLATE_PAUSED = "template.paused"
    TEMPLATE_RESUMED = "template.resumed"
    TEMPLATE_DEACTIVATED = "template.deactivated"
    APPOINTMENTS_GENERATED = "template.appointments_generated"

    # Reconciliation
    SESSION_MATCHED = "reconciliation.session_matched"
    ORPHANS_DETECTED = "reconciliation.orphans_detected"
    RETROACTIVE_CREATED = "reconciliation.retroactive_created"

    # Maintenance
    MAINTENANCE_STARTED = "maintenance.started"
    MAINTENANCE_COMPLETED = "maintenance.completed"
    MAINTENANCE_FAILED = "maintenance.failed"
    MAINTENANCE_DIGEST = "maintenance.digest"

    # Integrations
    EXTERNAL_API_CALL = "integration.api_call"
    EXTERNAL_API_RESPONSE = "integration.api_response"


class SystemEvent(BaseModel):
    """Immutable event record.

    ``clinic_id`` scopes the event to a tenant; ``actor_id`` is the user who
    triggered it, or "system" for the maintenance loop.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Context
    clinic_id: int | None = None
    actor_id: str | None = None
    actor_role: str | None = None

    # Flexible payload
    data: dict[str, Any] = Field(default_factory=dict)

    # Metadata
    source_module: str | None = Field(default=None, description="Module that emitted this event")

    model_config = {"frozen": True}
