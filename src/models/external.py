"""Read-only mappings of tables owned by the clinic platform.

Patients, therapists, disciplines, clinics, and the performed-session log are
maintained by the patient/program service. This service only queries them:
tenancy is derived from ``Patient.clinic_id`` and reconciliation reads
``PerformedSession``. They are excluded from migrations and create_all.
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class Clinic(Base):
    """A tenant."""

    __tablename__ = "clinics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Clinic id={self.id} name={self.name}>"


class Patient(Base):
    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    clinic_id: Mapped[int] = mapped_column(Integer, ForeignKey("clinics.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    preferred_therapist_id: Mapped[int | None] = mapped_column(Integer)


class ClinicUser(Base):
    """Platform user; therapists are users with role='therapist'."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    clinic_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("clinics.id"))
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(String(30), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Discipline(Base):
    __tablename__ = "disciplines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)


class PerformedSession(Base):
    """Independently logged treatment encounter — proof that care happened.

    ``session_date`` is the calendar day the care took place. ``created_at``
    is when the therapist logged it, and is the timestamp matched against
    a scheduled start.
    """

    __tablename__ = "performed_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    patient_id: Mapped[int] = mapped_column(Integer, ForeignKey("patients.id"), nullable=False)
    therapist_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    program_id: Mapped[int | None] = mapped_column(Integer)
    session_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<PerformedSession id={self.id} patient={self.patient_id} "
            f"therapist={self.therapist_id} on={self.session_date}>"
        )


# Tables owned by the clinic platform; never migrated here
EXTERNAL_TABLES: frozenset[str] = frozenset(
    {"clinics", "patients", "users", "disciplines", "performed_sessions"}
)
