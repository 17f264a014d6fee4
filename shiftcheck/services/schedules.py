from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from shiftcheck.clock import Clock
from shiftcheck.errors import bad_request, conflict, forbidden, not_found
from shiftcheck.models import Branch, Role, Schedule
from shiftcheck.security import Principal
from shiftcheck.services.exception_store import load_exceptions_for_range
from shiftcheck.services.expected_shift import (
    ExpectedDay,
    find_schedule_for_date,
    resolve_turns,
)
from shiftcheck.services.shift_store import WeeklyMinutes, calculate_weekly_minutes, load_shifts_for_schedule
from shiftcheck.services.tenancy import ensure_tenant_scope, resolve_membership, role_at_least
from shiftcheck.services.time_utils import local_date, monday_of, normalize_ts

logger = logging.getLogger("shiftcheck.schedules")


@dataclass(frozen=True, slots=True)
class ScheduleWeek:
    schedule_id: int | None
    week_start: date
    days: list[ExpectedDay] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "week_start": self.week_start.isoformat(),
            "days": [item.to_dict() for item in self.days],
        }


def get_schedule_or_404(db: Session, schedule_id: int) -> Schedule:
    schedule = db.get(Schedule, schedule_id)
    if schedule is None:
        raise not_found("SCHEDULE_NOT_FOUND", "Schedule not found.")
    return schedule


def ensure_schedule_access(db: Session, principal: Principal, schedule_id: int) -> Schedule:
    schedule = get_schedule_or_404(db, schedule_id)
    branch = db.get(Branch, schedule.branch_id)
    if branch is None:
        raise not_found("BRANCH_NOT_FOUND", "Branch not found.")
    ensure_tenant_scope(principal, branch.company_id, branch.id)
    return schedule


def create_draft_schedule(
    db: Session,
    *,
    principal: Principal,
    company_id: int,
    branch_id: int,
    user_id: int,
    clock: Clock,
) -> Schedule:
    if not role_at_least(principal.role, Role.ADMIN_SUCURSAL):
        raise forbidden("Only administrators can create schedules.")
    ensure_tenant_scope(principal, company_id, branch_id)

    membership = resolve_membership(db, user_id=user_id, company_id=company_id, branch_id=branch_id)
    if membership is None:
        raise bad_request("USER_NOT_IN_BRANCH", "User has no active membership in this company/branch.")

    schedule = Schedule(user_id=user_id, branch_id=branch_id, valid_from=clock.now_utc())
    db.add(schedule)
    db.commit()
    logger.info(
        "schedule_draft_created",
        extra={"schedule_id": schedule.id, "user_id": user_id, "branch_id": branch_id},
    )
    return schedule


def confirm_schedule(db: Session, *, schedule_id: int, clock: Clock) -> Schedule:
    schedule = db.scalar(select(Schedule).where(Schedule.id == schedule_id).with_for_update())
    if schedule is None:
        raise not_found("SCHEDULE_NOT_FOUND", "Schedule not found.")
    if schedule.confirmed_at is not None:
        if schedule.valid_to is None:
            return schedule
        raise conflict("SCHEDULE_CLOSED", "A closed schedule cannot be confirmed again.")

    now_utc = clock.now_utc()
    previous = list(
        db.scalars(
            select(Schedule)
            .where(
                Schedule.user_id == schedule.user_id,
                Schedule.id != schedule.id,
                Schedule.confirmed_at.is_not(None),
                Schedule.valid_to.is_(None),
            )
            .with_for_update()
        ).all()
    )
    for item in previous:
        item.valid_to = now_utc
    db.flush()

    schedule.valid_from = now_utc
    schedule.valid_to = None
    schedule.confirmed_at = now_utc
    db.commit()
    logger.info(
        "schedule_confirmed",
        extra={
            "schedule_id": schedule.id,
            "user_id": schedule.user_id,
            "closed_schedule_ids": [item.id for item in previous],
        },
    )
    return schedule


def list_active_schedules(db: Session, now_utc: datetime) -> list[Schedule]:
    now_utc = normalize_ts(now_utc)
    return list(
        db.scalars(
            select(Schedule)
            .where(
                Schedule.confirmed_at.is_not(None),
                Schedule.valid_from <= now_utc,
                (Schedule.valid_to.is_(None)) | (Schedule.valid_to > now_utc),
            )
            .order_by(Schedule.id.asc())
        ).all()
    )


def get_active_schedule_week(
    db: Session,
    *,
    user_id: int,
    week_start: date | None,
    clock: Clock,
) -> ScheduleWeek:
    today = local_date(clock.now_utc())
    monday = monday_of(week_start or today)

    schedule = find_schedule_for_date(db, user_id=user_id, branch_id=None, day=today)
    if schedule is None:
        return ScheduleWeek(schedule_id=None, week_start=monday, days=[])

    sunday = monday + timedelta(days=6)
    shifts = load_shifts_for_schedule(db, schedule.id)
    exceptions = load_exceptions_for_range(db, schedule.id, monday, sunday)
    days = [
        resolve_turns(monday + timedelta(days=offset), shifts, exceptions, schedule_id=schedule.id)
        for offset in range(7)
    ]
    return ScheduleWeek(schedule_id=schedule.id, week_start=monday, days=days)


def get_weekly_minutes(db: Session, *, schedule_id: int, clock: Clock) -> WeeklyMinutes:
    get_schedule_or_404(db, schedule_id)
    shifts = load_shifts_for_schedule(db, schedule_id)
    return calculate_weekly_minutes(shifts, local_date(clock.now_utc()))
