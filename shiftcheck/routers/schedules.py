from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from shiftcheck.audit import audit_change
from shiftcheck.clock import Clock, get_clock
from shiftcheck.db import get_db
from shiftcheck.errors import not_found
from shiftcheck.models import Role, Shift
from shiftcheck.schemas import (
    ExceptionBatchCreate,
    ExpectedDayRead,
    ScheduleDraftCreate,
    ScheduleExceptionRead,
    ScheduleRead,
    ScheduleWeekRead,
    ShiftChangeRequest,
    ShiftCreate,
    ShiftDeleteRequest,
    ShiftRead,
    VacationCreate,
    VacationDeleteRead,
    VacationDeleteRequest,
    WeeklyMinutesRead,
)
from shiftcheck.security import Principal, get_current_principal, require_roles
from shiftcheck.services.exception_store import (
    ExceptionInput,
    add_exceptions,
    add_vacation,
    delete_vacations,
    remove_exception,
)
from shiftcheck.services.expected_shift import get_expected_shift_for_date
from shiftcheck.services.schedules import (
    confirm_schedule,
    create_draft_schedule,
    ensure_schedule_access,
    get_active_schedule_week,
    get_weekly_minutes,
)
from shiftcheck.services.shift_store import add_shift, change_shift_from, delete_shifts
from shiftcheck.services.tenancy import ensure_user_visible
from shiftcheck.services.time_utils import parse_hhmm

router = APIRouter(tags=["schedules"])

require_admin = require_roles(Role.ADMIN_SUCURSAL)


@router.post("/api/schedules", response_model=ScheduleRead, status_code=status.HTTP_201_CREATED)
def create_schedule_draft(
    payload: ScheduleDraftCreate,
    request: Request,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> ScheduleRead:
    schedule = create_draft_schedule(
        db,
        principal=principal,
        company_id=payload.company_id,
        branch_id=payload.branch_id,
        user_id=payload.user_id,
        clock=clock,
    )
    audit_change(
        db,
        request,
        principal,
        clock,
        action="SCHEDULE_DRAFT_CREATE",
        entity_type="schedule",
        entity_id=schedule.id,
        details={"user_id": payload.user_id, "branch_id": payload.branch_id},
    )
    return ScheduleRead.model_validate(schedule)


@router.post("/api/schedules/{schedule_id}/shifts", response_model=ShiftRead, status_code=status.HTTP_201_CREATED)
def create_shift(
    schedule_id: int,
    payload: ShiftCreate,
    request: Request,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> ShiftRead:
    ensure_schedule_access(db, principal, schedule_id)
    shift = add_shift(
        db,
        schedule_id=schedule_id,
        weekday=payload.weekday,
        start_time=parse_hhmm(payload.start_time),
        end_time=parse_hhmm(payload.end_time),
        valid_from=payload.valid_from,
        valid_to=payload.valid_to,
        clock=clock,
    )
    audit_change(
        db,
        request,
        principal,
        clock,
        action="SHIFT_ADD",
        entity_type="shift",
        entity_id=shift.id,
        details={"schedule_id": schedule_id, "weekday": payload.weekday},
    )
    return ShiftRead.model_validate(shift)


@router.post("/api/shifts/{shift_id}/change", response_model=ShiftRead)
def change_shift(
    shift_id: int,
    payload: ShiftChangeRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> ShiftRead:
    shift = db.get(Shift, shift_id)
    if shift is None:
        raise not_found("SHIFT_NOT_FOUND", "Shift not found.")
    ensure_schedule_access(db, principal, shift.schedule_id)
    replacement = change_shift_from(
        db,
        shift_id=shift_id,
        from_date=payload.from_date,
        start_time=parse_hhmm(payload.start_time),
        end_time=parse_hhmm(payload.end_time),
        clock=clock,
    )
    audit_change(
        db,
        request,
        principal,
        clock,
        action="SHIFT_CHANGE",
        entity_type="shift",
        entity_id=shift_id,
        details={"replacement_shift_id": replacement.id, "from_date": payload.from_date.isoformat()},
    )
    return ShiftRead.model_validate(replacement)


@router.post("/api/schedules/{schedule_id}/shifts/delete")
def remove_shifts(
    schedule_id: int,
    payload: ShiftDeleteRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> dict[str, Any]:
    ensure_schedule_access(db, principal, schedule_id)
    result = delete_shifts(
        db,
        schedule_id=schedule_id,
        mode=payload.mode,
        day=payload.day,
        start_time=parse_hhmm(payload.start_time),
        end_time=parse_hhmm(payload.end_time),
        clock=clock,
    )
    entity_type = "shift" if isinstance(result, Shift) else "schedule_exception"
    audit_change(
        db,
        request,
        principal,
        clock,
        action="SHIFT_DELETE",
        entity_type=entity_type,
        entity_id=result.id,
        details={"mode": payload.mode, "day": payload.day.isoformat()},
    )
    return {"ok": True, "mode": payload.mode, "entity_type": entity_type, "entity_id": result.id}


@router.post(
    "/api/schedules/{schedule_id}/exceptions",
    response_model=list[ScheduleExceptionRead],
    status_code=status.HTTP_201_CREATED,
)
def create_exceptions(
    schedule_id: int,
    payload: ExceptionBatchCreate,
    request: Request,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> list[ScheduleExceptionRead]:
    ensure_schedule_access(db, principal, schedule_id)
    items = [
        ExceptionInput(
            type=item.type,
            day=item.day,
            start_time=parse_hhmm(item.start_time) if item.start_time else None,
            end_time=parse_hhmm(item.end_time) if item.end_time else None,
        )
        for item in payload.items
    ]
    created = add_exceptions(db, schedule_id=schedule_id, items=items, clock=clock)
    audit_change(
        db,
        request,
        principal,
        clock,
        action="SCHEDULE_EXCEPTIONS_ADD",
        entity_type="schedule",
        entity_id=schedule_id,
        details={"count": len(created)},
    )
    return [ScheduleExceptionRead.model_validate(item) for item in created]


@router.delete("/api/schedules/{schedule_id}/exceptions/{exception_id}")
def delete_exception(
    schedule_id: int,
    exception_id: int,
    request: Request,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> dict[str, bool]:
    ensure_schedule_access(db, principal, schedule_id)
    remove_exception(db, schedule_id=schedule_id, exception_id=exception_id, clock=clock)
    audit_change(
        db,
        request,
        principal,
        clock,
        action="SCHEDULE_EXCEPTION_REMOVE",
        entity_type="schedule_exception",
        entity_id=exception_id,
    )
    return {"ok": True}


@router.post(
    "/api/schedules/{schedule_id}/vacations",
    response_model=ScheduleExceptionRead,
    status_code=status.HTTP_201_CREATED,
)
def create_vacation(
    schedule_id: int,
    payload: VacationCreate,
    request: Request,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> ScheduleExceptionRead:
    ensure_schedule_access(db, principal, schedule_id)
    vacation = add_vacation(db, schedule_id=schedule_id, day=payload.day, clock=clock)
    audit_change(
        db,
        request,
        principal,
        clock,
        action="VACATION_ADD",
        entity_type="schedule_exception",
        entity_id=vacation.id,
        details={"day": payload.day.isoformat()},
    )
    return ScheduleExceptionRead.model_validate(vacation)


@router.post("/api/schedules/{schedule_id}/vacations/delete", response_model=VacationDeleteRead)
def remove_vacations(
    schedule_id: int,
    payload: VacationDeleteRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> VacationDeleteRead:
    ensure_schedule_access(db, principal, schedule_id)
    deleted = delete_vacations(db, schedule_id=schedule_id, day=payload.day, mode=payload.mode, clock=clock)
    audit_change(
        db,
        request,
        principal,
        clock,
        action="VACATION_DELETE",
        entity_type="schedule",
        entity_id=schedule_id,
        details={"day": payload.day.isoformat(), "mode": payload.mode, "deleted": deleted},
    )
    return VacationDeleteRead(deleted=deleted)


@router.get("/api/schedules/{schedule_id}/weekly-minutes", response_model=WeeklyMinutesRead)
def read_weekly_minutes(
    schedule_id: int,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> WeeklyMinutesRead:
    ensure_schedule_access(db, principal, schedule_id)
    weekly = get_weekly_minutes(db, schedule_id=schedule_id, clock=clock)
    return WeeklyMinutesRead(hours=weekly.hours, minutes=weekly.minutes, total_minutes=weekly.total_minutes)


@router.post("/api/schedules/{schedule_id}/confirm", response_model=ScheduleRead)
def confirm_schedule_draft(
    schedule_id: int,
    request: Request,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> ScheduleRead:
    ensure_schedule_access(db, principal, schedule_id)
    schedule = confirm_schedule(db, schedule_id=schedule_id, clock=clock)
    audit_change(
        db,
        request,
        principal,
        clock,
        action="SCHEDULE_CONFIRM",
        entity_type="schedule",
        entity_id=schedule_id,
        details={"user_id": schedule.user_id},
    )
    return ScheduleRead.model_validate(schedule)


@router.get("/api/users/{user_id}/schedule/week", response_model=ScheduleWeekRead)
def read_schedule_week(
    user_id: int,
    week_start: date | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> ScheduleWeekRead:
    ensure_user_visible(db, principal, user_id)
    week = get_active_schedule_week(db, user_id=user_id, week_start=week_start, clock=clock)
    return ScheduleWeekRead.model_validate(week.to_dict())


@router.get("/api/users/{user_id}/schedule/expected", response_model=ExpectedDayRead)
def read_expected_shift(
    user_id: int,
    day: date,
    branch_id: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> ExpectedDayRead:
    ensure_user_visible(db, principal, user_id)
    expected = get_expected_shift_for_date(db, user_id=user_id, branch_id=branch_id, day=day)
    return ExpectedDayRead.model_validate(expected.to_dict())
