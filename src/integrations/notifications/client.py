"""Async httpx client for the platform's notification counters."""

from __future__ import annotations

import logging

import httpx

from src.config import settings

logger = logging.getLogger(__name__)


class NotificationClient:
    """Increments unread counters on the notification service.

    Endpoint: POST {base_url}/notifications/increment
    Body: {"user_id", "subject_id", "type"}

    Delivery is best-effort: every failure is logged and reported as
    ``False``; nothing here raises into the caller.
    """

    def __init__(self) -> None:
        cfg = settings.integrations
        self._base_url = cfg.notification_api_url.rstrip("/")
        self._api_key = cfg.integration_api_key
        self._timeout = httpx.Timeout(cfg.http_timeout_seconds, connect=5.0)

    @property
    def enabled(self) -> bool:
        return bool(self._base_url)

    async def increment(self, user_id: int, subject_id: int, notification_type: str) -> bool:
        """Bump the unread counter for ``user_id``. Returns True on success."""
        if not self.enabled:
            logger.debug("Notification service not configured, dropping %s for user %s", notification_type, user_id)
            return False

        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._base_url}/notifications/increment",
                    json={"user_id": user_id, "subject_id": subject_id, "type": notification_type},
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.TimeoutException:
            logger.warning("Notification timeout: type=%s user=%s", notification_type, user_id)
            return False
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Notification HTTP error %s: type=%s user=%s",
                exc.response.status_code,
                notification_type,
                user_id,
            )
            return False
        except httpx.HTTPError as exc:
            logger.warning("Notification transport error: type=%s user=%s: %s", notification_type, user_id, exc)
            return False

        logger.debug("Notification sent: type=%s user=%s subject=%s", notification_type, user_id, subject_id)
        return True


# Module-level singleton
notification_client = NotificationClient()
