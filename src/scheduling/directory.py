"""Patient/program directory — existence checks against platform tables.

The patient, user, and discipline tables belong to the clinic platform;
this module only reads them to validate references before a write.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.enums import UserRole
from src.models.external import ClinicUser, Discipline, Patient
from src.scheduling.errors import ValidationError

logger = logging.getLogger(__name__)


class ClinicDirectory:
    """Reference validation for appointments and templates."""

    async def get_patient(self, db: AsyncSession, clinic_id: int, patient_id: int) -> Patient | None:
        result = await db.execute(
            select(Patient).where(Patient.id == patient_id, Patient.clinic_id == clinic_id)
        )
        return result.scalar_one_or_none()

    async def therapist_in_clinic(self, db: AsyncSession, clinic_id: int, therapist_id: int) -> bool:
        result = await db.execute(
            select(ClinicUser.id).where(
                ClinicUser.id == therapist_id,
                ClinicUser.clinic_id == clinic_id,
                ClinicUser.role == UserRole.THERAPIST.value,
                ClinicUser.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none() is not None

    async def discipline_exists(self, db: AsyncSession, discipline_id: int) -> bool:
        result = await db.execute(select(Discipline.id).where(Discipline.id == discipline_id))
        return result.scalar_one_or_none() is not None

    async def validate_references(
        self,
        db: AsyncSession,
        clinic_id: int,
        patient_id: int,
        therapist_id: int,
        discipline_id: int | None = None,
    ) -> Patient:
        """Check patient, therapist, and discipline; return the patient.

        Raises ValidationError listing every missing reference.
        """
        problems: list[str] = []

        patient = await self.get_patient(db, clinic_id, patient_id)
        if patient is None:
            problems.append("Patient not found in this clinic")
        if not await self.therapist_in_clinic(db, clinic_id, therapist_id):
            problems.append("Therapist not found or not active in this clinic")
        if discipline_id is not None and not await self.discipline_exists(db, discipline_id):
            problems.append("Discipline not found")

        if problems:
            logger.info(
                "Reference validation failed: clinic=%s patient=%s therapist=%s: %s",
                clinic_id,
                patient_id,
                therapist_id,
                problems,
            )
            raise ValidationError(problems[0], messages=problems)
        return patient  # type: ignore[return-value]


# Module-level singleton
clinic_directory = ClinicDirectory()
