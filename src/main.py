"""FastAPI application entry point — wires everything together.

Usage:
    python -m src.main

Serves the scheduling API and runs the maintenance loop in the background.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.api import appointments, maintenance, reconciliation, rescheduling, templates
from src.config import settings
from src.db.engine import db_lifespan
from src.events import start_event_system, stop_event_system, subscribe
from src.scheduling.errors import SchedulingError, UnexpectedError
from src.scheduling.maintenance import MaintenanceOrchestrator, MaintenanceScheduler, MaintenanceState
from src.scheduling.notifications import notification_dispatcher

# ── Logging setup ────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    stream=sys.stdout,
)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = logging.getLogger(__name__)

# ── FastAPI lifespan ─────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    logger.info("Starting scheduling engine (env=%s)", settings.environment)

    # 1. Database
    async with db_lifespan():
        logger.info("Database initialized")

        # 2. Event system
        await start_event_system()
        logger.info("Event system started")

        # 3. Notifications (best-effort)
        subscribe(notification_dispatcher.on_event, event_types=notification_dispatcher.watched_types)
        logger.info("Notification dispatcher registered")

        # 4. Maintenance
        app.state.maintenance = MaintenanceOrchestrator(
            MaintenanceState(error_history_limit=settings.maintenance.error_history_limit)
        )
        scheduler = MaintenanceScheduler(app.state.maintenance)
        if settings.maintenance.maintenance_enabled:
            scheduler.start()
        else:
            logger.warning("MAINTENANCE_ENABLED is false — only manual maintenance runs")

        try:
            yield
        finally:
            # Shutdown in reverse order
            logger.info("Shutting down scheduling engine...")

            await scheduler.stop()

            await stop_event_system()
            logger.info("Event system stopped")

    logger.info("Scheduling engine shutdown complete")


# ── FastAPI app ──────────────────────────────────────────────────────

app = FastAPI(
    title="Clinic Scheduling API",
    description="Appointments, recurring templates, and session reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(appointments.router)
app.include_router(templates.router)
app.include_router(reconciliation.router)
app.include_router(rescheduling.router)
app.include_router(maintenance.router)


# ── Error handling ───────────────────────────────────────────────────


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    if exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"msg": err["msg"], "loc": [str(part) for part in err.get("loc", ())]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"success": False, "error_code": "VALIDATION_ERROR", "errors": errors},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = UnexpectedError(str(exc))
    return JSONResponse(status_code=error.status_code, content=error.to_response())


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {
        "status": "ok",
        "environment": settings.environment,
    }


# ── Entry point ──────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
