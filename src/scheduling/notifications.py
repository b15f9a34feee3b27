"""Notification dispatcher — maps scheduling events to counter increments.

Subscribed to the event bus at startup. Rules decide which events notify
whom; delivery goes through the notification client.

Never raises — failures are logged but never propagate to the event system.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from src.config import settings
from src.integrations.notifications.client import NotificationClient, notification_client
from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)


def _therapist_about_patient(event: SystemEvent) -> list[tuple[int, int]]:
    therapist_id = event.data.get("therapist_id")
    patient_id = event.data.get("patient_id")
    if therapist_id is None or patient_id is None:
        return []
    return [(int(therapist_id), int(patient_id))]


@dataclass(frozen=True)
class NotificationRule:
    """Which events produce which notification type, and for whom."""

    name: str
    event_types: list[EventType]
    notification_type: str
    recipients: Callable[[SystemEvent], list[tuple[int, int]]]  # (user_id, subject_id)


NOTIFICATION_RULES: list[NotificationRule] = [
    NotificationRule(
        name="New appointment",
        event_types=[EventType.APPOINTMENT_CREATED, EventType.APPOINTMENT_RESCHEDULED],
        notification_type="appointment_new",
        recipients=_therapist_about_patient,
    ),
    NotificationRule(
        name="Cancelled appointment",
        event_types=[EventType.APPOINTMENT_CANCELLED],
        notification_type="appointment_cancelled",
        recipients=_therapist_about_patient,
    ),
    NotificationRule(
        name="Recurring appointments generated",
        event_types=[EventType.APPOINTMENTS_GENERATED],
        notification_type="appointment_reminder",
        recipients=lambda e: _therapist_about_patient(e) if e.data.get("generated", 0) > 0 else [],
    ),
]


class NotificationDispatcher:
    """Evaluates events against notification rules and sends matches."""

    def __init__(self, client: NotificationClient | None = None) -> None:
        self._client = client or notification_client

    @property
    def watched_types(self) -> list[EventType]:
        """Event types this dispatcher cares about — for targeted subscription."""
        types: set[EventType] = set()
        for rule in NOTIFICATION_RULES:
            types.update(rule.event_types)
        return list(types)

    async def on_event(self, event: SystemEvent) -> None:
        """Never raises — failures are logged and swallowed."""
        if not settings.maintenance.maintenance_notify:
            return

        for rule in NOTIFICATION_RULES:
            if event.event_type not in rule.event_types:
                continue
            try:
                recipients = rule.recipients(event)
            except Exception:
                logger.exception("Notification rule failed: %s", rule.name)
                continue

            for user_id, subject_id in recipients:
                await self.send(user_id, subject_id, rule.notification_type)

    async def send(self, user_id: int, subject_id: int, notification_type: str) -> bool:
        try:
            return await self._client.increment(user_id, subject_id, notification_type)
        except Exception:
            logger.exception("Failed to notify user %s (%s)", user_id, notification_type)
            return False


# Module-level singleton
notification_dispatcher = NotificationDispatcher()
