"""Request dependencies shared by the scheduling routers.

Authentication happens upstream; the gateway forwards the caller's clinic,
user id, and role as headers. A missing header or unknown role is a 401.
"""

from __future__ import annotations

from typing import Any

from fastapi import Header, Request
from fastapi.encoders import jsonable_encoder

from src.models.enums import UserRole
from src.schemas.scheduling import CallerContext
from src.scheduling.errors import UnauthorizedError
from src.scheduling.maintenance import MaintenanceOrchestrator


async def get_caller(
    x_clinic_id: int | None = Header(default=None),
    x_user_id: int | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> CallerContext:
    """FastAPI dependency — build the caller context from gateway headers."""
    if x_clinic_id is None or x_user_id is None or not x_user_role:
        raise UnauthorizedError("Missing caller headers")
    try:
        role = UserRole(x_user_role.lower())
    except ValueError:
        raise UnauthorizedError(f"Unknown role: {x_user_role}") from None
    return CallerContext(clinic_id=x_clinic_id, user_id=x_user_id, role=role)


def get_orchestrator(request: Request) -> MaintenanceOrchestrator:
    """The orchestrator created in the app lifespan."""
    return request.app.state.maintenance


def ok(message: str, data: Any = None, **extra: Any) -> dict[str, Any]:
    """Success envelope: ``{"success": true, "message": ..., "data": ...}``."""
    return jsonable_encoder({"success": True, "message": message, "data": data, **extra})
