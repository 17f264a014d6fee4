"""Schedules, weekly shift patterns and per-day exceptions

Revision ID: 0002_schedules
Revises: 0001_initial
Create Date: 2026-10-05 00:10:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0002_schedules"
down_revision: Union[str, None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

schedule_exception_type = postgresql.ENUM(
    "VACATION",
    "DAY_OFF",
    "MODIFIED_SHIFT",
    "EXTRA_SHIFT",
    name="schedule_exception_type",
    create_type=False,
)


def upgrade() -> None:
    schedule_exception_type.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "schedules",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=False),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_schedules_user_id", "schedules", ["user_id"])
    op.create_index("ix_schedules_branch_id", "schedules", ["branch_id"])
    op.create_index(
        "uq_schedules_user_active",
        "schedules",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("valid_to IS NULL AND confirmed_at IS NOT NULL"),
    )

    op.create_table(
        "shifts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("schedule_id", sa.Integer(), nullable=False),
        sa.Column("weekday", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(timezone=False), nullable=False),
        sa.Column("end_time", sa.Time(timezone=False), nullable=False),
        sa.Column("valid_from", sa.Date(), nullable=False),
        sa.Column("valid_to", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["schedule_id"], ["schedules.id"], ondelete="CASCADE"),
        sa.CheckConstraint("weekday BETWEEN 1 AND 7", name="ck_shifts_weekday_range"),
        sa.CheckConstraint("start_time < end_time", name="ck_shifts_time_order"),
    )
    op.create_index("ix_shifts_schedule_weekday", "shifts", ["schedule_id", "weekday"])

    op.create_table(
        "schedule_exceptions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("schedule_id", sa.Integer(), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("type", schedule_exception_type, nullable=False),
        sa.Column("start_time", sa.Time(timezone=False), nullable=True),
        sa.Column("end_time", sa.Time(timezone=False), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["schedule_id"], ["schedules.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_schedule_exceptions_schedule_day", "schedule_exceptions", ["schedule_id", "day"])
    op.create_index(
        "uq_schedule_exceptions_vacation_day",
        "schedule_exceptions",
        ["schedule_id", "day"],
        unique=True,
        postgresql_where=sa.text("type = 'VACATION'"),
    )


def downgrade() -> None:
    op.drop_index("uq_schedule_exceptions_vacation_day", table_name="schedule_exceptions")
    op.drop_index("ix_schedule_exceptions_schedule_day", table_name="schedule_exceptions")
    op.drop_table("schedule_exceptions")
    op.drop_index("ix_shifts_schedule_weekday", table_name="shifts")
    op.drop_table("shifts")
    op.drop_index("uq_schedules_user_active", table_name="schedules")
    op.drop_index("ix_schedules_branch_id", table_name="schedules")
    op.drop_index("ix_schedules_user_id", table_name="schedules")
    op.drop_table("schedules")
    schedule_exception_type.drop(op.get_bind(), checkfirst=True)
