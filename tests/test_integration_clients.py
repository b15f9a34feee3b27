"""Tests for the availability search and notification HTTP clients.

Covers:
- Availability: slots parsed from a list or a {"slots": [...]} body
- Availability: malformed rows skipped, query params built
- Availability: timeout / HTTP status error → empty list (advisory, never raises)
- Availability: bypass mode without a URL skips HTTP entirely
- Notifications: success, HTTP errors → False, disabled client → False
"""

from __future__ import annotations

from datetime import date, time
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from src.integrations.availability.client import AvailabilityClient
from src.integrations.notifications.client import NotificationClient

# ── Helpers ──────────────────────────────────────────────────────────


def _make_response(payload, status_code: int = 200) -> MagicMock:
    """Build a mock httpx.Response."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    resp.raise_for_status = MagicMock()  # no-op for 200
    return resp


def _wire(mock_client_cls: MagicMock) -> AsyncMock:
    mock_http = AsyncMock()
    mock_client_cls.return_value.__aenter__ = AsyncMock(return_value=mock_http)
    mock_client_cls.return_value.__aexit__ = AsyncMock(return_value=False)
    return mock_http


def _availability_client() -> AvailabilityClient:
    client = AvailabilityClient()
    client._base_url = "http://availability.test"  # not bypass mode
    client._api_key = "test-key"
    return client


SLOT = {
    "therapist_id": 4,
    "available_date": "2024-02-06",
    "available_time": "10:00",
    "duration_minutes": 60,
    "has_specialty": True,
}

# ── Availability ─────────────────────────────────────────────────────


class TestAvailabilitySearch:
    @pytest.mark.asyncio()
    async def test_parses_slot_list(self):
        client = _availability_client()

        with (
            patch("src.integrations.availability.client.emit", new_callable=AsyncMock) as mock_emit,
            patch("httpx.AsyncClient") as mock_client_cls,
        ):
            mock_http = _wire(mock_client_cls)
            mock_http.get = AsyncMock(return_value=_make_response([SLOT]))

            slots = await client.search_slots(1, [2, 5], date(2024, 2, 6), date(2024, 2, 20), 60, preferred_therapist_id=4)

        assert len(slots) == 1
        assert slots[0].available_time == time(10, 0)
        assert slots[0].has_specialty is True

        _, kwargs = mock_http.get.call_args
        assert kwargs["params"]["discipline_ids"] == "2,5"
        assert kwargs["params"]["preferred_therapist_id"] == 4
        assert kwargs["headers"] == {"Authorization": "Bearer test-key"}
        assert mock_emit.await_count == 2  # call + response

    @pytest.mark.asyncio()
    async def test_wrapped_payload_and_malformed_rows(self):
        client = _availability_client()
        payload = {"slots": [SLOT, {"therapist_id": "x"}]}

        with (
            patch("src.integrations.availability.client.emit", new_callable=AsyncMock),
            patch("httpx.AsyncClient") as mock_client_cls,
        ):
            mock_http = _wire(mock_client_cls)
            mock_http.get = AsyncMock(return_value=_make_response(payload))

            slots = await client.search_slots(1, [], date(2024, 2, 6), date(2024, 2, 20), 60)

        assert [s.therapist_id for s in slots] == [4]
        _, kwargs = mock_http.get.call_args
        assert "discipline_ids" not in kwargs["params"]

    @pytest.mark.asyncio()
    async def test_timeout_returns_empty(self):
        client = _availability_client()

        with (
            patch("src.integrations.availability.client.emit", new_callable=AsyncMock) as mock_emit,
            patch("httpx.AsyncClient") as mock_client_cls,
        ):
            mock_http = _wire(mock_client_cls)
            mock_http.get = AsyncMock(side_effect=httpx.TimeoutException("timeout"))

            slots = await client.search_slots(1, [], date(2024, 2, 6), date(2024, 2, 20), 60)

        assert slots == []
        assert mock_emit.call_args[0][0].data["error"] == "timeout"

    @pytest.mark.asyncio()
    async def test_http_status_error_returns_empty(self):
        client = _availability_client()
        request = httpx.Request("GET", "http://availability.test/slots")
        error = httpx.HTTPStatusError("boom", request=request, response=httpx.Response(503, request=request))
        response = _make_response({})
        response.raise_for_status = MagicMock(side_effect=error)

        with (
            patch("src.integrations.availability.client.emit", new_callable=AsyncMock) as mock_emit,
            patch("httpx.AsyncClient") as mock_client_cls,
        ):
            mock_http = _wire(mock_client_cls)
            mock_http.get = AsyncMock(return_value=response)

            slots = await client.search_slots(1, [], date(2024, 2, 6), date(2024, 2, 20), 60)

        assert slots == []
        assert mock_emit.call_args[0][0].data["error"] == "http_503"

    @pytest.mark.asyncio()
    async def test_bypass_mode_skips_http(self):
        client = AvailabilityClient()
        client._base_url = ""

        with patch("httpx.AsyncClient") as mock_client_cls:
            slots = await client.search_slots(1, [], date(2024, 2, 6), date(2024, 2, 20), 60)

        assert slots == []
        mock_client_cls.assert_not_called()


# ── Notifications ────────────────────────────────────────────────────


class TestNotificationClient:
    @pytest.mark.asyncio()
    async def test_increment_posts_counter(self):
        client = NotificationClient()
        client._base_url = "http://notify.test"

        with patch("httpx.AsyncClient") as mock_client_cls:
            mock_http = _wire(mock_client_cls)
            mock_http.post = AsyncMock(return_value=_make_response({}))

            sent = await client.increment(3, 7, "appointment_new")

        assert sent is True
        args, kwargs = mock_http.post.call_args
        assert args[0] == "http://notify.test/notifications/increment"
        assert kwargs["json"] == {"user_id": 3, "subject_id": 7, "type": "appointment_new"}

    @pytest.mark.asyncio()
    async def test_transport_error_returns_false(self):
        client = NotificationClient()
        client._base_url = "http://notify.test"

        with patch("httpx.AsyncClient") as mock_client_cls:
            mock_http = _wire(mock_client_cls)
            mock_http.post = AsyncMock(side_effect=httpx.ConnectError("refused"))

            sent = await client.increment(3, 7, "appointment_new")

        assert sent is False

    @pytest.mark.asyncio()
    async def test_disabled_client_sends_nothing(self):
        client = NotificationClient()
        client._base_url = ""

        with patch("httpx.AsyncClient") as mock_client_cls:
            sent = await client.increment(3, 7, "appointment_new")

        assert sent is False
        assert client.enabled is False
        mock_client_cls.assert_not_called()
