"""Maintenance orchestrator — the periodic job that keeps calendars honest.

Each run executes, in order:
1. Reconciliation per active clinic (forward matching + orphan detection)
2. Missed-appointment sweep per active clinic
3. Template upkeep: resume expired pauses, deactivate ended templates,
   generate appointments for due templates
4. Notification digest (best-effort)

Every clinic and template is its own unit of work with its own session:
a failure is recorded in the run's error list and the run moves on. Only a
failure of the scaffolding itself (e.g. listing clinics) fails the run.

Run state lives in an explicit ``MaintenanceState`` owned by the app.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.db.engine import async_session_factory, get_redis
from src.events import emit
from src.models.appointment import Appointment
from src.schemas.events import EventType, SystemEvent
from src.schemas.scheduling import ItemError, MaintenanceRun
from src.scheduling.generator import TemplateService, template_service
from src.scheduling.notifications import NotificationDispatcher, notification_dispatcher
from src.scheduling.queries import active_clinic_ids
from src.scheduling.reconciliation import ReconciliationEngine, reconciliation_engine
from src.scheduling.store import AppointmentStore, appointment_store

logger = logging.getLogger(__name__)

_LOCK_NAME = "scheduling:maintenance"

_COUNTERS = (
    "templates_processed",
    "appointments_generated",
    "generation_conflicts",
    "sessions_reconciled",
    "orphans_found",
    "missed_marked",
)


@dataclass
class MaintenanceState:
    """Running flag, last result, and cumulative counters across runs."""

    error_history_limit: int = 50
    is_running: bool = False
    last_run: datetime | None = None
    last_result: MaintenanceRun | None = None
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    totals: dict[str, int] = field(default_factory=lambda: dict.fromkeys(_COUNTERS, 0))
    error_history: deque[dict[str, Any]] = field(default_factory=deque)

    def __post_init__(self) -> None:
        self.error_history = deque(self.error_history, maxlen=self.error_history_limit)

    def record(self, run: MaintenanceRun) -> None:
        self.last_run = run.started_at
        self.last_result = run
        self.total_runs += 1
        if run.success:
            self.successful_runs += 1
        else:
            self.failed_runs += 1
        for name in _COUNTERS:
            self.totals[name] += getattr(run, name)
        for error in run.errors:
            self.error_history.append({
                "at": run.started_at.isoformat(),
                "item_id": error.item_id,
                "error": error.error,
            })

    def snapshot(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_result": self.last_result.model_dump(mode="json") if self.last_result else None,
            "total_runs": self.total_runs,
            "successful_runs": self.successful_runs,
            "failed_runs": self.failed_runs,
            **self.totals,
            "recent_errors": list(self.error_history),
        }

    def reset(self) -> None:
        """Clear statistics. The running flag is left alone."""
        self.last_run = None
        self.last_result = None
        self.total_runs = 0
        self.successful_runs = 0
        self.failed_runs = 0
        self.totals = dict.fromkeys(_COUNTERS, 0)
        self.error_history.clear()


class MaintenanceOrchestrator:
    """Runs the maintenance pipeline against a shared ``MaintenanceState``."""

    def __init__(
        self,
        state: MaintenanceState,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        store: AppointmentStore | None = None,
        templates: TemplateService | None = None,
        reconciliation: ReconciliationEngine | None = None,
        dispatcher: NotificationDispatcher | None = None,
        redis: aioredis.Redis | None = None,
    ) -> None:
        self.state = state
        self._session_factory = session_factory or async_session_factory
        self._store = store or appointment_store
        self._templates = templates or template_service
        self._reconciliation = reconciliation or reconciliation_engine
        self._dispatcher = dispatcher or notification_dispatcher
        self._redis = redis

    async def run(self, trigger: str = "scheduled", today: date | None = None) -> MaintenanceRun:
        """Execute one maintenance pass. Overlapping calls return a skipped run."""
        run = MaintenanceRun(trigger=trigger, started_at=datetime.now(UTC))
        if self.state.is_running:
            logger.warning("Maintenance already running, %s trigger skipped", trigger)
            run.skipped = True
            return run

        lock = None
        if settings.maintenance.distributed_lock:
            lock = (self._redis or get_redis()).lock(_LOCK_NAME, timeout=settings.maintenance.lock_timeout_seconds)
            try:
                acquired = await lock.acquire(blocking=False)
            except Exception:
                logger.exception("Could not reach Redis for the maintenance lock")
                acquired = False
            if not acquired:
                logger.info("Maintenance lock held elsewhere, %s trigger skipped", trigger)
                run.skipped = True
                return run

        self.state.is_running = True
        try:
            await emit(SystemEvent(
                event_type=EventType.MAINTENANCE_STARTED,
                actor_id="system",
                data={"trigger": trigger},
                source_module="scheduling.maintenance",
            ))
            await self._execute(run, today or date.today())
        except Exception as exc:
            logger.exception("Maintenance run aborted")
            run.success = False
            run.errors.append(ItemError(item_id="maintenance", error=str(exc)))
        finally:
            run.finished_at = datetime.now(UTC)
            run.duration_seconds = round((run.finished_at - run.started_at).total_seconds(), 3)
            self.state.record(run)
            self.state.is_running = False
            if lock is not None:
                try:
                    await lock.release()
                except Exception:
                    logger.warning("Failed to release maintenance lock", exc_info=True)

        await emit(SystemEvent(
            event_type=EventType.MAINTENANCE_COMPLETED if run.success else EventType.MAINTENANCE_FAILED,
            actor_id="system",
            data=run.model_dump(mode="json", exclude={"errors"}) | {"errors": len(run.errors)},
            source_module="scheduling.maintenance",
        ))
        logger.info(
            "Maintenance %s in %.2fs: clinics=%d reconciled=%d orphans=%d missed=%d "
            "generated=%d conflicts=%d errors=%d",
            "completed" if run.success else "failed",
            run.duration_seconds,
            run.clinics_processed,
            run.sessions_reconciled,
            run.orphans_found,
            run.missed_marked,
            run.appointments_generated,
            run.generation_conflicts,
            len(run.errors),
        )
        return run

    async def _execute(self, run: MaintenanceRun, today: date) -> None:
        async with self._session_factory() as db:
            clinic_ids = await active_clinic_ids(db)

        # 1. Reconciliation
        for clinic_id in clinic_ids:
            await self._reconcile_clinic(run, clinic_id, today)

        # 2. Missed sweep
        missed: list[Appointment] = []
        for clinic_id in clinic_ids:
            missed.extend(await self._sweep_missed(run, clinic_id))

        # 3. Templates
        await self._template_upkeep(run, today)

        # 4. Notifications
        if settings.maintenance.maintenance_notify:
            await self._notify(run, missed)

    async def _reconcile_clinic(self, run: MaintenanceRun, clinic_id: int, today: date) -> None:
        try:
            async with self._session_factory() as db:
                report = await self._reconciliation.forward_match(db, clinic_id, today=today)
                orphans = await self._reconciliation.find_orphans(db, clinic_id, announce=True)
                await db.commit()
        except Exception as exc:
            logger.exception("Reconciliation failed for clinic %s", clinic_id)
            run.errors.append(ItemError(item_id=f"clinic:{clinic_id}", error=str(exc)))
            return

        run.clinics_processed += 1
        run.sessions_reconciled += len(report.matched)
        run.orphans_found += len(orphans)
        run.errors.extend(
            ItemError(item_id=f"clinic:{clinic_id}:{e.item_id}", error=e.error) for e in report.errors
        )

    async def _sweep_missed(self, run: MaintenanceRun, clinic_id: int) -> list[Appointment]:
        try:
            async with self._session_factory() as db:
                missed = await self._store.mark_missed(
                    db, settings.maintenance.missed_after_hours, clinic_id=clinic_id
                )
                await db.commit()
        except Exception as exc:
            logger.exception("Missed sweep failed for clinic %s", clinic_id)
            run.errors.append(ItemError(item_id=f"missed:{clinic_id}", error=str(exc)))
            return []
        run.missed_marked += len(missed)
        return missed

    async def _template_upkeep(self, run: MaintenanceRun, today: date) -> None:
        try:
            async with self._session_factory() as db:
                resumed = await self._templates.resume_expired_pauses(db, today)
                run.templates_expired = await self._templates.deactivate_expired(db, today)
                await db.commit()
            run.templates_resumed = len(resumed)
        except Exception as exc:
            logger.exception("Template housekeeping failed")
            run.errors.append(ItemError(item_id="template_housekeeping", error=str(exc)))

        async with self._session_factory() as db:
            due = await self._templates.templates_due_for_generation(db, today)
            due_ids = [t.id for t in due]

        for template_id in due_ids:
            try:
                async with self._session_factory() as db:
                    report = await self._templates.generate(db, template_id, today=today)
                    await db.commit()
            except Exception as exc:
                logger.exception("Generation failed for template %s", template_id)
                run.errors.append(ItemError(item_id=f"template:{template_id}", error=str(exc)))
                continue
            run.templates_processed += 1
            run.appointments_generated += report.generated
            run.generation_conflicts += report.conflicts

    async def _notify(self, run: MaintenanceRun, missed: list[Appointment]) -> None:
        for appointment in missed:
            if await self._dispatcher.send(appointment.therapist_id, appointment.patient_id, "appointment_missed"):
                run.notifications_sent += 1

        await emit(SystemEvent(
            event_type=EventType.MAINTENANCE_DIGEST,
            actor_id="system",
            data={
                "missed_marked": run.missed_marked,
                "appointments_generated": run.appointments_generated,
                "generation_conflicts": run.generation_conflicts,
                "orphans_found": run.orphans_found,
                "notifications_sent": run.notifications_sent,
            },
            source_module="scheduling.maintenance",
        ))


class MaintenanceScheduler:
    """Background loop running the orchestrator every ``interval_minutes``."""

    def __init__(self, orchestrator: MaintenanceOrchestrator, interval_minutes: int | None = None) -> None:
        self._orchestrator = orchestrator
        self._interval = (interval_minutes or settings.maintenance.maintenance_interval_minutes) * 60
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Maintenance scheduler started (every %d min)", self._interval // 60)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Maintenance scheduler stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._orchestrator.run(trigger="scheduled")
            except Exception:
                logger.exception("Unhandled error in maintenance loop")
