"""Async httpx client for the clinic availability-search service."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from src.config import settings
from src.events import emit
from src.schemas.events import EventType, SystemEvent
from src.schemas.scheduling import AvailableSlot

logger = logging.getLogger(__name__)


class AvailabilityClient:
    """Thin async wrapper around the open-slot search endpoint.

    Endpoint: GET {base_url}/slots
    Auth: Authorization: Bearer {api_key} (optional)

    Returns candidate slots annotated with specialty/preference flags.
    Any transport failure yields an empty list: rescheduling suggestions
    are advisory and must not fail because the search is down.
    """

    def __init__(self) -> None:
        cfg = settings.integrations
        self._base_url = cfg.availability_api_url.rstrip("/")
        self._api_key = cfg.integration_api_key
        self._timeout = httpx.Timeout(cfg.http_timeout_seconds, connect=5.0)

    @property
    def _bypass_mode(self) -> bool:
        """Return True if no service URL is configured (dev/test bypass)."""
        return not self._base_url

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}

    async def search_slots(
        self,
        clinic_id: int,
        discipline_ids: list[int],
        start_date: date,
        end_date: date,
        duration_minutes: int,
        preferred_therapist_id: int | None = None,
    ) -> list[AvailableSlot]:
        if self._bypass_mode:
            logger.debug("Availability search bypass mode active (no URL configured)")
            return []

        params: dict[str, Any] = {
            "clinic_id": clinic_id,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "duration_minutes": duration_minutes,
        }
        if discipline_ids:
            params["discipline_ids"] = ",".join(str(d) for d in discipline_ids)
        if preferred_therapist_id is not None:
            params["preferred_therapist_id"] = preferred_therapist_id

        await emit(SystemEvent(
            event_type=EventType.EXTERNAL_API_CALL,
            clinic_id=clinic_id,
            data={"integration": "availability", "start_date": params["start_date"], "end_date": params["end_date"]},
            source_module="integrations.availability.client",
        ))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(
                    f"{self._base_url}/slots",
                    params=params,
                    headers=self._headers(),
                )
                response.raise_for_status()
                payload = response.json()

        except httpx.TimeoutException:
            logger.warning("Availability search timeout for clinic %s", clinic_id)
            await self._emit_error(clinic_id, "timeout")
            return []

        except httpx.HTTPStatusError as exc:
            logger.warning("Availability search HTTP error %s for clinic %s", exc.response.status_code, clinic_id)
            await self._emit_error(clinic_id, f"http_{exc.response.status_code}")
            return []

        except httpx.HTTPError as exc:
            logger.warning("Availability search transport error for clinic %s: %s", clinic_id, exc)
            await self._emit_error(clinic_id, "transport")
            return []

        slots = self._parse_response(payload)

        await emit(SystemEvent(
            event_type=EventType.EXTERNAL_API_RESPONSE,
            clinic_id=clinic_id,
            data={"integration": "availability", "slots": len(slots)},
            source_module="integrations.availability.client",
        ))
        return slots

    def _parse_response(self, payload: Any) -> list[AvailableSlot]:
        """Accept either a bare list or ``{"slots": [...]}``; skip malformed rows."""
        rows = payload.get("slots", []) if isinstance(payload, dict) else payload
        if not isinstance(rows, list):
            logger.warning("Unexpected availability payload type: %s", type(payload).__name__)
            return []

        slots: list[AvailableSlot] = []
        for row in rows:
            try:
                slots.append(AvailableSlot.model_validate(row))
            except PydanticValidationError:
                logger.debug("Skipping malformed availability slot: %s", row)
        return slots

    async def _emit_error(self, clinic_id: int, error: str) -> None:
        await emit(SystemEvent(
            event_type=EventType.EXTERNAL_API_RESPONSE,
            clinic_id=clinic_id,
            data={"integration": "availability", "error": error},
            source_module="integrations.availability.client",
        ))


# Module-level singleton
availability_client = AvailabilityClient()
