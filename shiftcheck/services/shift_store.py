from __future__ import annotations

from dataclasses import dataclass
from datetime import date, time, timedelta
import enum
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from shiftcheck.clock import Clock
from shiftcheck.errors import bad_request, not_found
from shiftcheck.models import ExceptionType, Schedule, ScheduleException, Shift
from shiftcheck.services.time_utils import domain_weekday, is_valid_weekday, local_date, minutes_of_day

logger = logging.getLogger("shiftcheck.schedules")


class DeleteShiftMode(str, enum.Enum):
    ONLY_THIS_BLOCK = "ONLY_THIS_BLOCK"
    FROM_THIS_DAY_ON = "FROM_THIS_DAY_ON"


@dataclass(frozen=True, slots=True)
class WeeklyMinutes:
    total_minutes: int

    @property
    def hours(self) -> int:
        return self.total_minutes // 60

    @property
    def minutes(self) -> int:
        return self.total_minutes % 60


def load_shifts_for_schedule(db: Session, schedule_id: int, weekday: int | None = None) -> list[Shift]:
    stmt = select(Shift).where(Shift.schedule_id == schedule_id)
    if weekday is not None:
        stmt = stmt.where(Shift.weekday == weekday)
    return list(db.scalars(stmt.order_by(Shift.weekday.asc(), Shift.start_time.asc(), Shift.id.asc())).all())


def time_ranges_overlap(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    return a_start < b_end and a_end > b_start


def validity_windows_intersect(
    a_from: date,
    a_to: date | None,
    b_from: date,
    b_to: date | None,
) -> bool:
    if a_to is not None and a_to < b_from:
        return False
    if b_to is not None and b_to < a_from:
        return False
    return True


def shift_valid_on(shift: Shift, day: date) -> bool:
    if shift.valid_from > day:
        return False
    return shift.valid_to is None or shift.valid_to >= day


def _get_schedule_or_404(db: Session, schedule_id: int) -> Schedule:
    schedule = db.get(Schedule, schedule_id)
    if schedule is None:
        raise not_found("SCHEDULE_NOT_FOUND", "Schedule not found.")
    return schedule


def _validate_shift_fields(
    *,
    weekday: int,
    start_time: time,
    end_time: time,
    valid_from: date | None,
    valid_to: date | None,
    today: date,
) -> date:
    if not is_valid_weekday(weekday):
        raise bad_request("INVALID_WEEKDAY", "Weekday must be between 1 (Monday) and 7 (Sunday).")
    if start_time >= end_time:
        raise bad_request("INVALID_TIME_RANGE", "Shift start must be earlier than its end.")
    if valid_from is None:
        raise bad_request("VALID_FROM_REQUIRED", "Shift valid_from is required.")
    if valid_to is not None and valid_to < valid_from:
        raise bad_request("INVALID_VALIDITY_RANGE", "Shift valid_to cannot be earlier than valid_from.")
    if valid_from < today:
        raise bad_request("PAST_DATE_IMMUTABLE", "Shifts cannot start in the past.")
    return valid_from


def _ensure_no_overlap(
    db: Session,
    *,
    schedule_id: int,
    weekday: int,
    start_time: time,
    end_time: time,
    valid_from: date,
    valid_to: date | None,
    ignore_shift_id: int | None = None,
) -> None:
    for existing in load_shifts_for_schedule(db, schedule_id, weekday):
        if ignore_shift_id is not None and existing.id == ignore_shift_id:
            continue
        if not validity_windows_intersect(existing.valid_from, existing.valid_to, valid_from, valid_to):
            continue
        if time_ranges_overlap(existing.start_time, existing.end_time, start_time, end_time):
            raise bad_request(
                "SHIFT_OVERLAP",
                f"Shift overlaps an existing shift ({existing.start_time:%H:%M}-{existing.end_time:%H:%M}).",
            )


def add_shift(
    db: Session,
    *,
    schedule_id: int,
    weekday: int,
    start_time: time,
    end_time: time,
    valid_from: date | None,
    valid_to: date | None = None,
    clock: Clock,
    commit: bool = True,
) -> Shift:
    today = local_date(clock.now_utc())
    valid_from = _validate_shift_fields(
        weekday=weekday,
        start_time=start_time,
        end_time=end_time,
        valid_from=valid_from,
        valid_to=valid_to,
        today=today,
    )
    _get_schedule_or_404(db, schedule_id)
    _ensure_no_overlap(
        db,
        schedule_id=schedule_id,
        weekday=weekday,
        start_time=start_time,
        end_time=end_time,
        valid_from=valid_from,
        valid_to=valid_to,
    )

    shift = Shift(
        schedule_id=schedule_id,
        weekday=weekday,
        start_time=start_time,
        end_time=end_time,
        valid_from=valid_from,
        valid_to=valid_to,
    )
    db.add(shift)
    if commit:
        db.commit()
    else:
        db.flush()
    logger.info(
        "shift_added",
        extra={"schedule_id": schedule_id, "weekday": weekday, "valid_from": valid_from.isoformat()},
    )
    return shift


def change_shift_from(
    db: Session,
    *,
    shift_id: int,
    from_date: date,
    start_time: time,
    end_time: time,
    clock: Clock,
) -> Shift:
    shift = db.get(Shift, shift_id)
    if shift is None:
        raise not_found("SHIFT_NOT_FOUND", "Shift not found.")

    today = local_date(clock.now_utc())
    _validate_shift_fields(
        weekday=shift.weekday,
        start_time=start_time,
        end_time=end_time,
        valid_from=from_date,
        valid_to=shift.valid_to,
        today=today,
    )
    if not shift_valid_on(shift, from_date):
        raise bad_request("SHIFT_NOT_ACTIVE", "Shift is not valid on the requested date.")

    _ensure_no_overlap(
        db,
        schedule_id=shift.schedule_id,
        weekday=shift.weekday,
        start_time=start_time,
        end_time=end_time,
        valid_from=from_date,
        valid_to=shift.valid_to,
        ignore_shift_id=shift.id,
    )

    replacement = Shift(
        schedule_id=shift.schedule_id,
        weekday=shift.weekday,
        start_time=start_time,
        end_time=end_time,
        valid_from=from_date,
        valid_to=shift.valid_to,
    )
    shift.valid_to = from_date - timedelta(days=1)
    db.add(replacement)
    db.commit()
    logger.info(
        "shift_changed",
        extra={"shift_id": shift.id, "replacement_shift_id": replacement.id, "from_date": from_date.isoformat()},
    )
    return replacement


def find_active_shift(
    db: Session,
    *,
    schedule_id: int,
    day: date,
    start_time: time,
    end_time: time,
) -> Shift | None:
    matches = [
        shift
        for shift in load_shifts_for_schedule(db, schedule_id, domain_weekday(day))
        if shift.start_time == start_time and shift.end_time == end_time and shift_valid_on(shift, day)
    ]
    if not matches:
        return None
    return max(matches, key=lambda item: (item.valid_from, item.id))


def delete_shifts(
    db: Session,
    *,
    schedule_id: int,
    mode: DeleteShiftMode | str,
    day: date,
    start_time: time,
    end_time: time,
    clock: Clock,
) -> Shift | ScheduleException:
    try:
        mode = DeleteShiftMode(mode)
    except ValueError:
        raise bad_request("INVALID_DELETE_MODE", f"Unsupported delete mode '{mode}'.") from None

    if day < local_date(clock.now_utc()):
        raise bad_request("PAST_DATE_IMMUTABLE", "Shifts cannot be removed for past dates.")
    if start_time >= end_time:
        raise bad_request("INVALID_TIME_RANGE", "Shift start must be earlier than its end.")
    _get_schedule_or_404(db, schedule_id)

    if mode == DeleteShiftMode.ONLY_THIS_BLOCK:
        exception = ScheduleException(
            schedule_id=schedule_id,
            day=day,
            type=ExceptionType.MODIFIED_SHIFT,
            start_time=start_time,
            end_time=end_time,
        )
        db.add(exception)
        db.commit()
        logger.info(
            "shift_block_removed",
            extra={"schedule_id": schedule_id, "day": day.isoformat(), "mode": mode.value},
        )
        return exception

    shift = find_active_shift(db, schedule_id=schedule_id, day=day, start_time=start_time, end_time=end_time)
    if shift is None:
        raise not_found("SHIFT_NOT_FOUND", "No active shift matches that weekday and time.")
    shift.valid_to = day - timedelta(days=1)
    db.commit()
    logger.info(
        "shift_closed",
        extra={"schedule_id": schedule_id, "shift_id": shift.id, "valid_to": shift.valid_to.isoformat()},
    )
    return shift


def calculate_weekly_minutes(shifts: list[Shift], today: date) -> WeeklyMinutes:
    total = 0
    for shift in shifts:
        if not shift_valid_on(shift, today):
            continue
        total += minutes_of_day(shift.end_time) - minutes_of_day(shift.start_time)
    return WeeklyMinutes(total_minutes=total)
