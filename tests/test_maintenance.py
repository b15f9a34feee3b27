"""Tests for the maintenance orchestrator.

Covers:
- Full run: reconciliation and missed sweep per active clinic, template upkeep, digest
- Per-clinic sweep, reconciliation and per-template failures are recorded and the run continues
- Scaffolding failure fails the run without raising
- Overlapping runs and a held distributed lock are skipped
- State: cumulative counters, bounded error history, reset
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest

from src.config import settings
from src.schemas.events import EventType
from src.schemas.scheduling import (
    GenerationReport,
    ItemError,
    MaintenanceRun,
    OccurrenceResult,
    ReconciliationReport,
    SessionMatch,
)
from src.scheduling.maintenance import MaintenanceOrchestrator, MaintenanceState

TODAY = date(2024, 2, 5)

# ── Helpers ──────────────────────────────────────────────────────────


def _make_session_factory() -> tuple[MagicMock, AsyncMock]:
    db = AsyncMock()
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=db)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory, db


def _report(clinic_id: int, matched: int = 1) -> ReconciliationReport:
    return ReconciliationReport(
        clinic_id=clinic_id,
        examined=matched,
        matched=[
            SessionMatch(appointment_id=uuid.uuid4(), session_id=i, delta_minutes=5)
            for i in range(matched)
        ],
    )


def _generation(template_id: uuid.UUID, generated: int = 2, conflicts: int = 1) -> GenerationReport:
    results = [OccurrenceResult(occurrence_date=TODAY, success=True) for _ in range(generated)]
    results += [OccurrenceResult(occurrence_date=TODAY, success=False) for _ in range(conflicts)]
    return GenerationReport(template_id=template_id, results=results)


def _make_orchestrator(state: MaintenanceState | None = None):
    factory, db = _make_session_factory()

    reconciliation = MagicMock()
    reconciliation.forward_match = AsyncMock(side_effect=lambda db, clinic_id, **kw: _report(clinic_id))
    reconciliation.find_orphans = AsyncMock(return_value=[MagicMock()])

    store = MagicMock()
    store.mark_missed = AsyncMock(return_value=[MagicMock(therapist_id=3, patient_id=7)])

    template_id = uuid.uuid4()
    templates = MagicMock()
    templates.resume_expired_pauses = AsyncMock(return_value=[MagicMock()])
    templates.deactivate_expired = AsyncMock(return_value=1)
    templates.templates_due_for_generation = AsyncMock(return_value=[MagicMock(id=template_id)])
    templates.generate = AsyncMock(side_effect=lambda db, tid, **kw: _generation(tid))

    dispatcher = MagicMock()
    dispatcher.send = AsyncMock(return_value=True)

    orchestrator = MaintenanceOrchestrator(
        state or MaintenanceState(),
        session_factory=factory,
        store=store,
        templates=templates,
        reconciliation=reconciliation,
        dispatcher=dispatcher,
        redis=MagicMock(),
    )
    mocks = {
        "db": db,
        "reconciliation": reconciliation,
        "store": store,
        "templates": templates,
        "dispatcher": dispatcher,
    }
    return orchestrator, mocks


def _patch_clinics(clinic_ids: list[int] | None = None, **kwargs):
    if "side_effect" not in kwargs:
        kwargs["return_value"] = clinic_ids or []
    return patch("src.scheduling.maintenance.active_clinic_ids", new_callable=AsyncMock, **kwargs)


def _emitted(mock_emit: AsyncMock) -> list[EventType]:
    return [c.args[0].event_type for c in mock_emit.await_args_list]


# ── Orchestrator ─────────────────────────────────────────────────────


class TestRun:
    @pytest.mark.asyncio()
    async def test_full_run_counts_everything(self):
        orchestrator, mocks = _make_orchestrator()

        with (
            _patch_clinics([1, 2]),
            patch("src.scheduling.maintenance.emit", new_callable=AsyncMock) as mock_emit,
        ):
            run = await orchestrator.run(trigger="manual", today=TODAY)

        assert run.success is True
        assert run.skipped is False
        assert run.clinics_processed == 2
        assert run.sessions_reconciled == 2
        assert run.orphans_found == 2
        assert run.missed_marked == 2
        assert run.templates_resumed == 1
        assert run.templates_expired == 1
        assert run.templates_processed == 1
        assert run.appointments_generated == 2
        assert run.generation_conflicts == 1
        assert run.notifications_sent == 2
        assert run.duration_seconds is not None

        hours = settings.maintenance.missed_after_hours
        assert mocks["store"].mark_missed.await_args_list == [
            call(mocks["db"], hours, clinic_id=1),
            call(mocks["db"], hours, clinic_id=2),
        ]
        assert mocks["reconciliation"].find_orphans.await_args_list == [
            call(mocks["db"], 1, announce=True),
            call(mocks["db"], 2, announce=True),
        ]
        assert mocks["dispatcher"].send.await_args_list == [call(3, 7, "appointment_missed")] * 2
        assert _emitted(mock_emit) == [
            EventType.MAINTENANCE_STARTED,
            EventType.MAINTENANCE_DIGEST,
            EventType.MAINTENANCE_COMPLETED,
        ]

        state = orchestrator.state
        assert state.total_runs == 1
        assert state.successful_runs == 1
        assert state.is_running is False
        assert state.totals["appointments_generated"] == 2

    @pytest.mark.asyncio()
    async def test_clinic_failure_does_not_stop_run(self):
        orchestrator, mocks = _make_orchestrator()
        mocks["reconciliation"].forward_match.side_effect = [RuntimeError("clinic db down"), _report(2)]

        with _patch_clinics([1, 2]), patch("src.scheduling.maintenance.emit", new_callable=AsyncMock):
            run = await orchestrator.run(today=TODAY)

        assert run.success is True
        assert run.clinics_processed == 1
        assert run.errors[0].item_id == "clinic:1"
        assert run.appointments_generated == 2
        assert len(orchestrator.state.error_history) == 1

    @pytest.mark.asyncio()
    async def test_missed_sweep_failure_isolated_per_clinic(self):
        orchestrator, mocks = _make_orchestrator()
        mocks["store"].mark_missed.side_effect = [
            RuntimeError("lock timeout"),
            [MagicMock(therapist_id=4, patient_id=8)],
        ]

        with _patch_clinics([1, 2]), patch("src.scheduling.maintenance.emit", new_callable=AsyncMock):
            run = await orchestrator.run(today=TODAY)

        assert run.success is True
        assert run.missed_marked == 1
        assert [e.item_id for e in run.errors] == ["missed:1"]
        mocks["dispatcher"].send.assert_awaited_once_with(4, 8, "appointment_missed")

    @pytest.mark.asyncio()
    async def test_no_active_clinics_sweeps_nothing(self):
        orchestrator, mocks = _make_orchestrator()

        with _patch_clinics([]), patch("src.scheduling.maintenance.emit", new_callable=AsyncMock):
            run = await orchestrator.run(today=TODAY)

        mocks["store"].mark_missed.assert_not_awaited()
        assert run.missed_marked == 0

    @pytest.mark.asyncio()
    async def test_template_failure_recorded(self):
        orchestrator, mocks = _make_orchestrator()
        mocks["templates"].generate.side_effect = RuntimeError("boom")

        with _patch_clinics([1]), patch("src.scheduling.maintenance.emit", new_callable=AsyncMock):
            run = await orchestrator.run(today=TODAY)

        assert run.templates_processed == 0
        assert run.errors[0].item_id.startswith("template:")

    @pytest.mark.asyncio()
    async def test_scaffolding_failure_fails_run(self):
        orchestrator, _ = _make_orchestrator()

        with (
            _patch_clinics(side_effect=RuntimeError("no database")),
            patch("src.scheduling.maintenance.emit", new_callable=AsyncMock) as mock_emit,
        ):
            run = await orchestrator.run(today=TODAY)

        assert run.success is False
        assert run.errors[0].item_id == "maintenance"
        assert orchestrator.state.failed_runs == 1
        assert orchestrator.state.is_running is False
        assert _emitted(mock_emit)[-1] == EventType.MAINTENANCE_FAILED

    @pytest.mark.asyncio()
    async def test_overlapping_run_skipped(self):
        state = MaintenanceState()
        state.is_running = True
        orchestrator, _ = _make_orchestrator(state)

        with _patch_clinics([1]) as mock_clinics:
            run = await orchestrator.run(today=TODAY)

        assert run.skipped is True
        mock_clinics.assert_not_awaited()
        assert state.total_runs == 0

    @pytest.mark.asyncio()
    async def test_held_lock_skips_run(self):
        orchestrator, _ = _make_orchestrator()
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=False)
        orchestrator._redis.lock.return_value = lock

        with (
            patch.object(settings.maintenance, "distributed_lock", True),
            _patch_clinics([1]) as mock_clinics,
        ):
            run = await orchestrator.run(today=TODAY)

        assert run.skipped is True
        mock_clinics.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_lock_released_after_run(self):
        orchestrator, _ = _make_orchestrator()
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=True)
        lock.release = AsyncMock()
        orchestrator._redis.lock.return_value = lock

        with (
            patch.object(settings.maintenance, "distributed_lock", True),
            _patch_clinics([]),
            patch("src.scheduling.maintenance.emit", new_callable=AsyncMock),
        ):
            run = await orchestrator.run(today=TODAY)

        assert run.skipped is False
        lock.release.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_notifications_disabled(self):
        orchestrator, mocks = _make_orchestrator()

        with (
            patch.object(settings.maintenance, "maintenance_notify", False),
            _patch_clinics([1]),
            patch("src.scheduling.maintenance.emit", new_callable=AsyncMock) as mock_emit,
        ):
            run = await orchestrator.run(today=TODAY)

        mocks["dispatcher"].send.assert_not_awaited()
        assert run.notifications_sent == 0
        assert EventType.MAINTENANCE_DIGEST not in _emitted(mock_emit)


# ── State ────────────────────────────────────────────────────────────


class TestState:
    def _run(self, success: bool = True, errors: int = 0) -> MaintenanceRun:
        return MaintenanceRun(
            started_at=datetime(2024, 2, 5, 3, 0, tzinfo=UTC),
            success=success,
            missed_marked=2,
            errors=[ItemError(item_id=f"clinic:{i}", error="x") for i in range(errors)],
        )

    def test_record_accumulates(self):
        state = MaintenanceState()
        state.record(self._run())
        state.record(self._run(success=False))

        snapshot = state.snapshot()
        assert snapshot["total_runs"] == 2
        assert snapshot["successful_runs"] == 1
        assert snapshot["failed_runs"] == 1
        assert snapshot["missed_marked"] == 4
        assert snapshot["last_run"] == "2024-02-05T03:00:00+00:00"

    def test_error_history_is_bounded(self):
        state = MaintenanceState(error_history_limit=3)
        state.record(self._run(errors=5))
        assert len(state.snapshot()["recent_errors"]) == 3
        assert state.snapshot()["recent_errors"][-1]["item_id"] == "clinic:4"

    def test_reset_keeps_running_flag(self):
        state = MaintenanceState()
        state.record(self._run(errors=1))
        state.is_running = True

        state.reset()

        assert state.total_runs == 0
        assert state.last_result is None
        assert state.totals["missed_marked"] == 0
        assert list(state.error_history) == []
        assert state.is_running is True
