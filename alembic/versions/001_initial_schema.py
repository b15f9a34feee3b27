"""Initial schema — recurring_templates and appointments.

Revision ID: 001
Revises: None
Create Date: 2026-10-18

Clinic, patient, user, discipline, and performed-session tables belong to
the clinic platform and are not created here.
"""
from __future__ import annotations

from typing import Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, tuple[str, ...], None] = None
depends_on: Union[str, tuple[str, ...], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    # ── Templates ──────────────────────────────────────────────────────

    op.create_table(
        "recurring_templates",
        sa.Column("patient_id", sa.Integer(), nullable=False, index=True),
        sa.Column("therapist_id", sa.Integer(), nullable=False, index=True),
        sa.Column("discipline_id", sa.Integer()),
        sa.Column("recurrence_type", sa.String(20), nullable=False),
        sa.Column("day_of_week", sa.SmallInteger(), nullable=False, comment="0=Sunday … 6=Saturday"),
        sa.Column("scheduled_time", sa.Time(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("generate_weeks_ahead", sa.Integer(), nullable=False),
        sa.Column("skip_holidays", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, index=True),
        sa.Column("is_paused", sa.Boolean(), nullable=False),
        sa.Column("paused_until", sa.Date()),
        sa.Column("pause_reason", sa.Text()),
        sa.Column("last_generation_date", sa.Date()),
        sa.Column("deactivated_by", sa.Integer()),
        sa.Column("deactivated_at", sa.DateTime(timezone=True)),
        sa.Column("deactivation_reason", sa.Text()),
        sa.Column("created_by", sa.Integer()),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_recurring_templates"),
        sa.CheckConstraint(
            "end_date IS NULL OR end_date >= start_date",
            name="ck_recurring_templates_end_after_start",
        ),
        sa.CheckConstraint(
            "day_of_week BETWEEN 0 AND 6",
            name="ck_recurring_templates_day_of_week_range",
        ),
    )

    # ── Appointments ───────────────────────────────────────────────────

    op.create_table(
        "appointments",
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column("therapist_id", sa.Integer(), nullable=False),
        sa.Column("discipline_id", sa.Integer()),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("scheduled_time", sa.Time(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, index=True),
        sa.Column("detection_source", sa.String(20), nullable=False),
        sa.Column("is_retroactive", sa.Boolean(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column(
            "progress_record_id",
            sa.Integer(),
            comment="performed_sessions.id that documents this appointment",
        ),
        sa.Column(
            "recurring_template_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(
                "recurring_templates.id",
                ondelete="SET NULL",
                name="fk_appointments_recurring_template_id_recurring_templates",
            ),
            index=True,
        ),
        sa.Column("missed_reason", sa.Text()),
        sa.Column("justified_by", sa.Integer()),
        sa.Column("justified_at", sa.DateTime(timezone=True)),
        sa.Column("cancellation_reason_type", sa.String(50)),
        sa.Column("cancellation_reason", sa.Text()),
        sa.Column("cancelled_by", sa.Integer()),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("created_by", sa.Integer()),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_appointments"),
    )

    op.create_index("ix_appointments_therapist_date", "appointments", ["therapist_id", "scheduled_date"])
    op.create_index("ix_appointments_patient_date", "appointments", ["patient_id", "scheduled_date"])
    op.create_index(
        "uq_appointments_progress_record",
        "appointments",
        ["progress_record_id"],
        unique=True,
        postgresql_where=sa.text("progress_record_id IS NOT NULL"),
    )


def downgrade() -> None:
    # Drop in reverse dependency order
    op.drop_index("uq_appointments_progress_record", table_name="appointments")
    op.drop_index("ix_appointments_patient_date", table_name="appointments")
    op.drop_index("ix_appointments_therapist_date", table_name="appointments")
    op.drop_table("appointments")
    op.drop_table("recurring_templates")
