"""Shared query helpers for the scheduling services.

Every appointment/template lookup made on behalf of a caller goes through the
``*_in_clinic`` builders, which join the owning patient and filter on its
clinic. Rows of another clinic are indistinguishable from missing rows.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date

from sqlalchemy import Select, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.appointment import Appointment
from src.models.enums import ACTIVE_STATUSES
from src.models.external import Clinic, Patient
from src.models.recurring_template import RecurringTemplate

logger = logging.getLogger(__name__)

# Advisory-lock namespaces for pg_advisory_xact_lock(int, int)
_LOCK_THERAPIST = 7101
_LOCK_PATIENT = 7102


def appointments_in_clinic(clinic_id: int) -> Select[tuple[Appointment]]:
    return (
        select(Appointment)
        .join(Patient, Patient.id == Appointment.patient_id)
        .where(Patient.clinic_id == clinic_id)
    )


def templates_in_clinic(clinic_id: int) -> Select[tuple[RecurringTemplate]]:
    return (
        select(RecurringTemplate)
        .join(Patient, Patient.id == RecurringTemplate.patient_id)
        .where(Patient.clinic_id == clinic_id)
    )


async def load_appointment(
    db: AsyncSession,
    clinic_id: int,
    appointment_id: uuid.UUID,
) -> Appointment | None:
    result = await db.execute(
        appointments_in_clinic(clinic_id).where(Appointment.id == appointment_id)
    )
    return result.scalar_one_or_none()


async def load_template(
    db: AsyncSession,
    clinic_id: int | None,
    template_id: uuid.UUID,
) -> RecurringTemplate | None:
    """Load a template; ``clinic_id=None`` is the unscoped system path."""
    if clinic_id is None:
        stmt = select(RecurringTemplate).where(RecurringTemplate.id == template_id)
    else:
        stmt = templates_in_clinic(clinic_id).where(RecurringTemplate.id == template_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def same_day_active_appointments(
    db: AsyncSession,
    patient_id: int,
    therapist_id: int,
    scheduled_date: date,
    exclude_id: uuid.UUID | None = None,
) -> list[Appointment]:
    """Active appointments sharing the patient or the therapist on one date."""
    stmt = select(Appointment).where(
        Appointment.scheduled_date == scheduled_date,
        Appointment.status.in_(ACTIVE_STATUSES),
        or_(
            Appointment.patient_id == patient_id,
            Appointment.therapist_id == therapist_id,
        ),
    )
    if exclude_id is not None:
        stmt = stmt.where(Appointment.id != exclude_id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def lock_participants(db: AsyncSession, patient_id: int, therapist_id: int) -> None:
    """Serialize bookings for a therapist and a patient until the transaction ends.

    Closes the window between the conflict check and the insert: a second
    writer for the same participant blocks here until the first commits.
    Therapist lock is always taken first so two writers cannot deadlock.
    """
    await db.execute(select(func.pg_advisory_xact_lock(_LOCK_THERAPIST, therapist_id)))
    await db.execute(select(func.pg_advisory_xact_lock(_LOCK_PATIENT, patient_id)))


async def active_clinic_ids(db: AsyncSession) -> list[int]:
    result = await db.execute(
        select(Clinic.id).where(Clinic.is_active.is_(True)).order_by(Clinic.id)
    )
    return [row[0] for row in result.all()]
