"""Pydantic schemas for the scheduling engine.

Request payloads reject unknown keys (``extra="forbid"``): every field a
caller may set is enumerated here. Result models are what services return
and what the API serializes.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.models.enums import CancellationReason, UserRole

_FORBID = ConfigDict(extra="forbid")

# Fields that may be omitted on update but never explicitly set to null
_NON_NULLABLE_UPDATE_FIELDS = (
    "therapist_id",
    "scheduled_date",
    "scheduled_time",
    "duration_minutes",
    "day_of_week",
    "start_date",
    "generate_weeks_ahead",
    "skip_holidays",
)


class _PartialUpdate(BaseModel):
    """Base for partial updates: only fields the caller sent are applied."""

    model_config = _FORBID

    @model_validator(mode="after")
    def _reject_nulls(self) -> _PartialUpdate:
        for name in _NON_NULLABLE_UPDATE_FIELDS:
            if name in self.model_fields_set and getattr(self, name, None) is None:
                msg = f"{name} cannot be null"
                raise ValueError(msg)
        return self

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# ---------------------------------------------------------------------------
# Caller
# ---------------------------------------------------------------------------


class CallerContext(BaseModel):
    """Authenticated caller, as asserted by the upstream gateway."""

    model_config = ConfigDict(frozen=True)

    clinic_id: int
    user_id: int
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def actor_id(self) -> str:
        return str(self.user_id)


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------


class AppointmentCreate(BaseModel):
    model_config = _FORBID

    patient_id: int
    therapist_id: int
    discipline_id: int | None = None
    scheduled_date: date
    scheduled_time: time
    duration_minutes: int = Field(default=60, ge=15, le=480)
    notes: str | None = Field(default=None, max_length=2000)


class AppointmentUpdate(_PartialUpdate):
    """Every field an appointment update may touch."""

    therapist_id: int | None = None
    discipline_id: int | None = None
    scheduled_date: date | None = None
    scheduled_time: time | None = None
    duration_minutes: int | None = Field(default=None, ge=15, le=480)
    notes: str | None = Field(default=None, max_length=2000)


class AppointmentFilters(BaseModel):
    model_config = _FORBID

    therapist_id: int | None = None
    patient_id: int | None = None
    status: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    limit: int = Field(default=100, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class CompleteRequest(BaseModel):
    model_config = _FORBID

    notes: str | None = Field(default=None, max_length=2000)


class CancelRequest(BaseModel):
    model_config = _FORBID

    reason_type: CancellationReason = CancellationReason.OTHER
    reason: str | None = Field(default=None, max_length=1000)


class JustifyRequest(BaseModel):
    model_config = _FORBID

    reason: str = Field(min_length=1, max_length=1000)


class MarkMissedRequest(BaseModel):
    model_config = _FORBID

    hours_after: int = Field(default=2, ge=0, le=168)


class ConflictCheckRequest(BaseModel):
    model_config = _FORBID

    patient_id: int
    therapist_id: int
    scheduled_date: date
    scheduled_time: time
    duration_minutes: int = Field(default=60, ge=15, le=480)
    exclude_id: uuid.UUID | None = None


class AppointmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    patient_id: int
    therapist_id: int
    discipline_id: int | None = None
    scheduled_date: date
    scheduled_time: time
    duration_minutes: int
    status: str
    detection_source: str
    is_retroactive: bool
    progress_record_id: int | None = None
    recurring_template_id: uuid.UUID | None = None
    missed_reason: str | None = None
    justified_by: int | None = None
    justified_at: datetime | None = None
    cancellation_reason_type: str | None = None
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None
    completed_at: datetime | None = None
    created_by: int | None = None
    notes: str | None = None


# ---------------------------------------------------------------------------
# Recurring templates
# ---------------------------------------------------------------------------


class TemplateCreate(BaseModel):
    model_config = _FORBID

    patient_id: int
    therapist_id: int
    discipline_id: int | None = None
    day_of_week: int = Field(ge=0, le=6, description="0=Sunday … 6=Saturday")
    scheduled_time: time
    duration_minutes: int = Field(default=60, ge=15, le=480)
    start_date: date
    end_date: date | None = None
    generate_weeks_ahead: int = Field(default=4, ge=1, le=52)
    skip_holidays: bool = False
    notes: str | None = Field(default=None, max_length=2000)
    generate_now: bool = True

    @model_validator(mode="after")
    def _check_dates(self) -> TemplateCreate:
        if self.end_date is not None and self.end_date < self.start_date:
            msg = "end_date must be on or after start_date"
            raise ValueError(msg)
        return self


class TemplateUpdate(_PartialUpdate):
    therapist_id: int | None = None
    discipline_id: int | None = None
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    scheduled_time: time | None = None
    duration_minutes: int | None = Field(default=None, ge=15, le=480)
    start_date: date | None = None
    end_date: date | None = None
    generate_weeks_ahead: int | None = Field(default=None, ge=1, le=52)
    skip_holidays: bool | None = None
    notes: str | None = Field(default=None, max_length=2000)


class PauseRequest(BaseModel):
    model_config = _FORBID

    reason: str | None = Field(default=None, max_length=1000)
    pause_until: date | None = None


class DeactivateRequest(BaseModel):
    model_config = _FORBID

    reason: str | None = Field(default=None, max_length=1000)


class GenerateRequest(BaseModel):
    model_config = _FORBID

    weeks_ahead: int | None = Field(default=None, ge=1, le=52)


class SeriesUpdate(_PartialUpdate):
    """Changes applied to every future scheduled appointment of a template."""

    scheduled_time: time | None = None
    duration_minutes: int | None = Field(default=None, ge=15, le=480)
    notes: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _require_change(self) -> SeriesUpdate:
        if not self.model_fields_set:
            msg = "at least one field must be provided"
            raise ValueError(msg)
        return self


class TemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    patient_id: int
    therapist_id: int
    discipline_id: int | None = None
    recurrence_type: str
    day_of_week: int
    scheduled_time: time
    duration_minutes: int
    start_date: date
    end_date: date | None = None
    generate_weeks_ahead: int
    skip_holidays: bool
    is_active: bool
    is_paused: bool
    paused_until: date | None = None
    pause_reason: str | None = None
    last_generation_date: date | None = None
    deactivation_reason: str | None = None
    created_by: int | None = None
    notes: str | None = None


class OccurrenceResult(BaseModel):
    occurrence_date: date
    success: bool
    appointment_id: uuid.UUID | None = None
    reason: str | None = None


class GenerationReport(BaseModel):
    template_id: uuid.UUID
    results: list[OccurrenceResult] = Field(default_factory=list)
    last_generation_date: date | None = None

    @property
    def generated(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def conflicts(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def summary(self) -> str:
        return f"{self.generated} generated, {self.conflicts} conflicts"


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class ItemError(BaseModel):
    item_id: str
    error: str


class SessionMatch(BaseModel):
    appointment_id: uuid.UUID
    session_id: int
    delta_minutes: float


class ReconciliationReport(BaseModel):
    clinic_id: int
    examined: int = 0
    matched: list[SessionMatch] = Field(default_factory=list)
    errors: list[ItemError] = Field(default_factory=list)


class OrphanSession(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    therapist_id: int
    session_date: date
    created_at: datetime


class RetroactiveCreate(BaseModel):
    model_config = _FORBID

    session_id: int
    scheduled_time: time | None = None
    duration_minutes: int | None = Field(default=None, ge=15, le=480)
    notes: str | None = Field(default=None, max_length=2000)


class BatchRetroactiveRequest(BaseModel):
    model_config = _FORBID

    session_ids: list[int] = Field(min_length=1)


class RetroactiveResult(BaseModel):
    session_id: int
    success: bool
    created: bool = False
    appointment_id: uuid.UUID | None = None
    error: str | None = None


class BatchRetroactiveReport(BaseModel):
    results: list[RetroactiveResult] = Field(default_factory=list)
    errors: list[ItemError] = Field(default_factory=list)

    @property
    def created(self) -> int:
        return sum(1 for r in self.results if r.created)


class DetectRequest(BaseModel):
    model_config = _FORBID

    start_date: date | None = None
    end_date: date | None = None
    auto_create_retroactive: bool = False
    window_before_minutes: int | None = Field(default=None, ge=0, le=720)
    window_after_minutes: int | None = Field(default=None, ge=0, le=720)


class DetectionReport(BaseModel):
    clinic_id: int
    period_start: date
    period_end: date
    matched: list[SessionMatch] = Field(default_factory=list)
    orphans: list[OrphanSession] = Field(default_factory=list)
    retroactive: list[RetroactiveResult] = Field(default_factory=list)
    errors: list[ItemError] = Field(default_factory=list)


class PendingActions(BaseModel):
    old_orphans: list[OrphanSession] = Field(default_factory=list)
    unjustified_missed: list[AppointmentRead] = Field(default_factory=list)
    detected_today: int = 0

    @property
    def total(self) -> int:
        return len(self.old_orphans) + len(self.unjustified_missed)


# ---------------------------------------------------------------------------
# Rescheduling
# ---------------------------------------------------------------------------


class AvailableSlot(BaseModel):
    """Open slot returned by the availability search service."""

    therapist_id: int
    available_date: date
    available_time: time
    duration_minutes: int = 60
    therapist_name: str | None = None
    has_specialty: bool = False
    is_preferred: bool = False


class ScoredSlot(AvailableSlot):
    score: float
    day_offset: int
    time_offset_minutes: int


class RescheduleSuggestRequest(BaseModel):
    model_config = _FORBID

    appointment_ids: list[uuid.UUID] = Field(min_length=1)
    therapist_id: int
    days_ahead: int = Field(default=14, ge=1, le=90)
    same_week_only: bool = False
    limit: int = Field(default=5, ge=1, le=20)


class RescheduleSuggestionSet(BaseModel):
    appointment_id: uuid.UUID
    original_date: date | None = None
    original_time: time | None = None
    suggestions: list[ScoredSlot] = Field(default_factory=list)
    error: str | None = None


class RescheduleItem(BaseModel):
    model_config = _FORBID

    appointment_id: uuid.UUID
    new_date: date
    new_time: time
    new_therapist_id: int | None = None


class RescheduleApplyRequest(BaseModel):
    model_config = _FORBID

    items: list[RescheduleItem] = Field(min_length=1)


class RescheduleOutcome(BaseModel):
    success: list[AppointmentRead] = Field(default_factory=list)
    failed: list[ItemError] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


class MaintenanceRun(BaseModel):
    """Counters for one orchestrator execution."""

    trigger: str = "scheduled"
    started_at: datetime
    finished_at: datetime | None = None
    duration_seconds: float | None = None
    skipped: bool = False
    success: bool = True
    clinics_processed: int = 0
    sessions_reconciled: int = 0
    orphans_found: int = 0
    missed_marked: int = 0
    templates_processed: int = 0
    appointments_generated: int = 0
    generation_conflicts: int = 0
    templates_resumed: int = 0
    templates_expired: int = 0
    notifications_sent: int = 0
    errors: list[ItemError] = Field(default_factory=list)
