"""Incidents with dedup keys and the audit log

Revision ID: 0003_incidents_audit
Revises: 0002_schedules
Create Date: 2026-10-05 00:20:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0003_incidents_audit"
down_revision: Union[str, None] = "0002_schedules"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

incident_type = postgresql.ENUM(
    "FORGOT_IN",
    "NO_SHOW",
    "IN_EARLY",
    "IN_LATE",
    "OUT_EARLY",
    "OUT_LATE",
    "FORGOT_OUT",
    "WRONG_IN",
    "WRONG_OUT",
    "ADMIN_NOTE",
    name="incident_type",
    create_type=False,
)
incident_origin = postgresql.ENUM("SYSTEM", "EMPLOYEE", "ADMIN", name="incident_origin", create_type=False)
incident_response = postgresql.ENUM("PENDING", "ADMITTED", "DENIED", name="incident_response", create_type=False)
audit_actor_type = postgresql.ENUM("ADMIN", "EMPLOYEE", "SYSTEM", name="audit_actor_type", create_type=False)


def upgrade() -> None:
    bind = op.get_bind()
    incident_type.create(bind, checkfirst=True)
    incident_origin.create(bind, checkfirst=True)
    incident_response.create(bind, checkfirst=True)
    audit_actor_type.create(bind, checkfirst=True)

    op.create_table(
        "incidents",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("type", incident_type, nullable=False),
        sa.Column("origin", incident_origin, nullable=False),
        sa.Column("admitted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("response", incident_response, nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("expected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("membership_id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=False),
        sa.Column("record_id", sa.Integer(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("dedup_key", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["membership_id"], ["memberships.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["record_id"], ["records.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("dedup_key", name="uq_incidents_dedup_key"),
    )
    op.create_index("ix_incidents_user_id", "incidents", ["user_id"])
    op.create_index("ix_incidents_branch_id", "incidents", ["branch_id"])
    op.create_index(
        "ix_incidents_membership_type_occurred",
        "incidents",
        ["membership_id", "type", "occurred_at"],
    )
    op.create_index("ix_incidents_company_occurred", "incidents", ["company_id", "occurred_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_incidents_company_occurred", table_name="incidents")
    op.drop_index("ix_incidents_membership_type_occurred", table_name="incidents")
    op.drop_index("ix_incidents_branch_id", table_name="incidents")
    op.drop_index("ix_incidents_user_id", table_name="incidents")
    op.drop_table("incidents")

    bind = op.get_bind()
    audit_actor_type.drop(bind, checkfirst=True)
    incident_response.drop(bind, checkfirst=True)
    incident_origin.drop(bind, checkfirst=True)
    incident_type.drop(bind, checkfirst=True)
