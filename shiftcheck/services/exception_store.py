from __future__ import annotations

from dataclasses import dataclass
from datetime import date, time
import enum
import logging

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from shiftcheck.clock import Clock
from shiftcheck.errors import bad_request, not_found
from shiftcheck.models import ExceptionType, Schedule, ScheduleException
from shiftcheck.services.time_utils import local_date

logger = logging.getLogger("shiftcheck.schedules")

VACATION_FORWARD_YEARS = 2


class VacationDeleteMode(str, enum.Enum):
    SINGLE = "single"
    FORWARD = "forward"


@dataclass(frozen=True, slots=True)
class ExceptionInput:
    type: ExceptionType
    day: date
    start_time: time | None = None
    end_time: time | None = None


def load_exceptions_for_date(db: Session, schedule_id: int, day: date) -> list[ScheduleException]:
    return list(
        db.scalars(
            select(ScheduleException)
            .where(ScheduleException.schedule_id == schedule_id, ScheduleException.day == day)
            .order_by(ScheduleException.id.asc())
        ).all()
    )


def load_exceptions_for_range(
    db: Session,
    schedule_id: int,
    start_day: date,
    end_day: date,
) -> list[ScheduleException]:
    return list(
        db.scalars(
            select(ScheduleException)
            .where(
                ScheduleException.schedule_id == schedule_id,
                ScheduleException.day >= start_day,
                ScheduleException.day <= end_day,
            )
            .order_by(ScheduleException.day.asc(), ScheduleException.id.asc())
        ).all()
    )


def _ensure_schedule(db: Session, schedule_id: int) -> Schedule:
    schedule = db.get(Schedule, schedule_id)
    if schedule is None:
        raise not_found("SCHEDULE_NOT_FOUND", "Schedule not found.")
    return schedule


def _ensure_not_past(day: date, clock: Clock) -> None:
    if day < local_date(clock.now_utc()):
        raise bad_request("PAST_DATE_IMMUTABLE", "Past dates cannot be modified.")


def _validate_exception(item: ExceptionInput) -> None:
    if item.type in {ExceptionType.MODIFIED_SHIFT, ExceptionType.EXTRA_SHIFT}:
        if item.start_time is None or item.end_time is None:
            raise bad_request("EXCEPTION_TIMES_REQUIRED", f"{item.type.value} requires start and end times.")
        if item.start_time >= item.end_time:
            raise bad_request("INVALID_TIME_RANGE", "Exception start must be earlier than its end.")


def _existing_vacation(db: Session, schedule_id: int, day: date) -> ScheduleException | None:
    return db.scalar(
        select(ScheduleException).where(
            ScheduleException.schedule_id == schedule_id,
            ScheduleException.day == day,
            ScheduleException.type == ExceptionType.VACATION,
        )
    )


def _add_vacation_row(db: Session, schedule_id: int, day: date) -> ScheduleException:
    existing = _existing_vacation(db, schedule_id, day)
    if existing is not None:
        return existing
    vacation = ScheduleException(schedule_id=schedule_id, day=day, type=ExceptionType.VACATION)
    db.add(vacation)
    db.flush()
    return vacation


def add_vacation(db: Session, *, schedule_id: int, day: date, clock: Clock) -> ScheduleException:
    _ensure_schedule(db, schedule_id)
    _ensure_not_past(day, clock)
    vacation = _add_vacation_row(db, schedule_id, day)
    db.commit()
    logger.info("vacation_added", extra={"schedule_id": schedule_id, "day": day.isoformat()})
    return vacation


def add_exceptions(
    db: Session,
    *,
    schedule_id: int,
    items: list[ExceptionInput],
    clock: Clock,
) -> list[ScheduleException]:
    _ensure_schedule(db, schedule_id)
    for item in items:
        _ensure_not_past(item.day, clock)
        _validate_exception(item)

    created: list[ScheduleException] = []
    for item in items:
        if item.type == ExceptionType.VACATION:
            created.append(_add_vacation_row(db, schedule_id, item.day))
            continue
        exception = ScheduleException(
            schedule_id=schedule_id,
            day=item.day,
            type=item.type,
            start_time=item.start_time,
            end_time=item.end_time,
        )
        db.add(exception)
        created.append(exception)
    db.commit()
    logger.info("exceptions_added", extra={"schedule_id": schedule_id, "count": len(created)})
    return created


def remove_exception(db: Session, *, schedule_id: int, exception_id: int, clock: Clock) -> None:
    exception = db.get(ScheduleException, exception_id)
    if exception is None or exception.schedule_id != schedule_id:
        raise not_found("EXCEPTION_NOT_FOUND", "Exception not found.")
    _ensure_not_past(exception.day, clock)
    db.delete(exception)
    db.commit()
    logger.info("exception_removed", extra={"schedule_id": schedule_id, "exception_id": exception_id})


def _add_years(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        # 29 February
        return day.replace(year=day.year + years, day=28)


def delete_vacations(
    db: Session,
    *,
    schedule_id: int,
    day: date,
    mode: VacationDeleteMode | str,
    clock: Clock,
) -> int:
    try:
        mode = VacationDeleteMode(mode)
    except ValueError:
        raise bad_request("INVALID_DELETE_MODE", f"Unsupported vacation delete mode '{mode}'.") from None
    _ensure_schedule(db, schedule_id)
    _ensure_not_past(day, clock)

    stmt = delete(ScheduleException).where(
        ScheduleException.schedule_id == schedule_id,
        ScheduleException.type == ExceptionType.VACATION,
    )
    if mode == VacationDeleteMode.SINGLE:
        stmt = stmt.where(ScheduleException.day == day)
    else:
        stmt = stmt.where(
            ScheduleException.day >= day,
            ScheduleException.day <= _add_years(day, VACATION_FORWARD_YEARS),
        )
    result = db.execute(stmt)
    db.commit()
    deleted = int(result.rowcount or 0)
    logger.info(
        "vacations_deleted",
        extra={"schedule_id": schedule_id, "day": day.isoformat(), "mode": mode.value, "deleted": deleted},
    )
    return deleted
