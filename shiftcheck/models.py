from __future__ import annotations

import enum
from datetime import date, datetime, time, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shiftcheck.db import Base


class Role(str, enum.Enum):
    SUPERADMIN = "SUPERADMIN"
    ADMIN_EMPRESA = "ADMIN_EMPRESA"
    ADMIN_SUCURSAL = "ADMIN_SUCURSAL"
    EMPLEADO = "EMPLEADO"


class RecordType(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"


class ExceptionType(str, enum.Enum):
    VACATION = "VACATION"
    DAY_OFF = "DAY_OFF"
    MODIFIED_SHIFT = "MODIFIED_SHIFT"
    EXTRA_SHIFT = "EXTRA_SHIFT"


class IncidentType(str, enum.Enum):
    FORGOT_IN = "FORGOT_IN"
    NO_SHOW = "NO_SHOW"
    IN_EARLY = "IN_EARLY"
    IN_LATE = "IN_LATE"
    OUT_EARLY = "OUT_EARLY"
    OUT_LATE = "OUT_LATE"
    FORGOT_OUT = "FORGOT_OUT"
    WRONG_IN = "WRONG_IN"
    WRONG_OUT = "WRONG_OUT"
    ADMIN_NOTE = "ADMIN_NOTE"


class IncidentOrigin(str, enum.Enum):
    SYSTEM = "SYSTEM"
    EMPLOYEE = "EMPLOYEE"
    ADMIN = "ADMIN"


class IncidentResponse(str, enum.Enum):
    PENDING = "PENDING"
    ADMITTED = "ADMITTED"
    DENIED = "DENIED"


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    EMPLOYEE = "EMPLOYEE"
    SYSTEM = "SYSTEM"


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    branches: Mapped[list[Branch]] = relationship(back_populates="company")


class Branch(Base):
    __tablename__ = "branches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    company: Mapped[Company] = relationship(back_populates="branches")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    memberships: Mapped[list[Membership]] = relationship(back_populates="user")
    schedules: Mapped[list[Schedule]] = relationship(back_populates="user")


class Membership(Base):
    __tablename__ = "memberships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    branch_id: Mapped[int | None] = mapped_column(
        ForeignKey("branches.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    role: Mapped[Role] = mapped_column(
        Enum(Role, name="membership_role"),
        nullable=False,
        default=Role.EMPLEADO,
        server_default=text("'EMPLEADO'"),
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    user: Mapped[User] = relationship(back_populates="memberships")


class Schedule(Base):
    __tablename__ = "schedules"
    __table_args__ = (
        Index(
            "uq_schedules_user_active",
            "user_id",
            unique=True,
            postgresql_where=text("valid_to IS NULL AND confirmed_at IS NOT NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    branch_id: Mapped[int] = mapped_column(ForeignKey("branches.id", ondelete="CASCADE"), nullable=False, index=True)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    user: Mapped[User] = relationship(back_populates="schedules")
    shifts: Mapped[list[Shift]] = relationship(back_populates="schedule")
    exceptions: Mapped[list[ScheduleException]] = relationship(back_populates="schedule")

    @property
    def is_draft(self) -> bool:
        return self.confirmed_at is None


class Shift(Base):
    __tablename__ = "shifts"
    __table_args__ = (
        Index("ix_shifts_schedule_weekday", "schedule_id", "weekday"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    schedule_id: Mapped[int] = mapped_column(
        ForeignKey("schedules.id", ondelete="CASCADE"),
        nullable=False,
    )
    weekday: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[time] = mapped_column(Time(timezone=False), nullable=False)
    end_time: Mapped[time] = mapped_column(Time(timezone=False), nullable=False)
    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    schedule: Mapped[Schedule] = relationship(back_populates="shifts")


class ScheduleException(Base):
    __tablename__ = "schedule_exceptions"
    __table_args__ = (
        Index("ix_schedule_exceptions_schedule_day", "schedule_id", "day"),
        Index(
            "uq_schedule_exceptions_vacation_day",
            "schedule_id",
            "day",
            unique=True,
            postgresql_where=text("type = 'VACATION'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    schedule_id: Mapped[int] = mapped_column(
        ForeignKey("schedules.id", ondelete="CASCADE"),
        nullable=False,
    )
    day: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[ExceptionType] = mapped_column(Enum(ExceptionType, name="schedule_exception_type"), nullable=False)
    start_time: Mapped[time | None] = mapped_column(Time(timezone=False), nullable=True)
    end_time: Mapped[time | None] = mapped_column(Time(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    schedule: Mapped[Schedule] = relationship(back_populates="exceptions")


class Record(Base):
    __tablename__ = "records"
    __table_args__ = (
        Index("ix_records_membership_created", "membership_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    type: Mapped[RecordType] = mapped_column(Enum(RecordType, name="record_type"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    membership_id: Mapped[int] = mapped_column(
        ForeignKey("memberships.id", ondelete="CASCADE"),
        nullable=False,
    )
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    branch_id: Mapped[int] = mapped_column(ForeignKey("branches.id", ondelete="CASCADE"), nullable=False)
    is_corrective: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class Incident(Base):
    __tablename__ = "incidents"
    __table_args__ = (
        Index("ix_incidents_membership_type_occurred", "membership_id", "type", "occurred_at"),
        Index("ix_incidents_company_occurred", "company_id", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    type: Mapped[IncidentType] = mapped_column(Enum(IncidentType, name="incident_type"), nullable=False)
    origin: Mapped[IncidentOrigin] = mapped_column(
        Enum(IncidentOrigin, name="incident_origin"),
        nullable=False,
        default=IncidentOrigin.SYSTEM,
    )
    admitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    response: Mapped[IncidentResponse] = mapped_column(
        Enum(IncidentResponse, name="incident_response"),
        nullable=False,
        default=IncidentResponse.PENDING,
        server_default=text("'PENDING'"),
    )
    expected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    membership_id: Mapped[int] = mapped_column(
        ForeignKey("memberships.id", ondelete="CASCADE"),
        nullable=False,
    )
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    branch_id: Mapped[int] = mapped_column(
        ForeignKey("branches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    record_id: Mapped[int | None] = mapped_column(
        ForeignKey("records.id", ondelete="SET NULL"),
        nullable=True,
    )
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    dedup_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    record: Mapped[Record | None] = relationship()


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    actor_type: Mapped[AuditActorType] = mapped_column(Enum(AuditActorType, name="audit_actor_type"), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )
