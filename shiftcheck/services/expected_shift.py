from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from shiftcheck.models import ExceptionType, Schedule, ScheduleException, Shift
from shiftcheck.services.exception_store import load_exceptions_for_date
from shiftcheck.services.shift_store import load_shifts_for_schedule, shift_valid_on
from shiftcheck.services.time_utils import (
    combine_local_utc,
    domain_weekday,
    format_hhmm,
    is_valid_weekday,
    local_date,
)

TURN_SOURCE_REGULAR = "regular"
TURN_SOURCE_EXTRA = "extra"


@dataclass(frozen=True, slots=True)
class Turn:
    start: time
    end: time
    source: str = TURN_SOURCE_REGULAR

    def start_utc(self, day: date) -> datetime:
        return combine_local_utc(day, self.start)

    def end_utc(self, day: date) -> datetime:
        return combine_local_utc(day, self.end)


@dataclass(frozen=True, slots=True)
class ExpectedDay:
    day: date
    weekday: int
    turns: tuple[Turn, ...] = field(default_factory=tuple)
    is_day_off: bool = False
    is_vacation: bool = False
    schedule_id: int | None = None

    @property
    def has_turns(self) -> bool:
        return bool(self.turns)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "weekday": self.weekday,
            "turns": [
                {"start_time": format_hhmm(turn.start), "end_time": format_hhmm(turn.end), "source": turn.source}
                for turn in self.turns
            ],
            "is_day_off": self.is_day_off,
            "is_vacation": self.is_vacation,
            "schedule_id": self.schedule_id,
        }


def resolve_turns(
    day: date,
    shifts: Iterable[Shift],
    exceptions: Iterable[ScheduleException],
    schedule_id: int | None = None,
) -> ExpectedDay:
    weekday = domain_weekday(day)
    if not is_valid_weekday(weekday):
        return ExpectedDay(day=day, weekday=weekday, schedule_id=schedule_id)

    day_exceptions = [item for item in exceptions if item.day == day]
    exception_types = {item.type for item in day_exceptions}
    if ExceptionType.VACATION in exception_types:
        return ExpectedDay(day=day, weekday=weekday, is_vacation=True, schedule_id=schedule_id)
    if ExceptionType.DAY_OFF in exception_types:
        return ExpectedDay(day=day, weekday=weekday, is_day_off=True, schedule_id=schedule_id)

    turns = [
        Turn(start=shift.start_time, end=shift.end_time)
        for shift in shifts
        if shift.weekday == weekday and shift_valid_on(shift, day)
    ]

    for item in day_exceptions:
        if item.type != ExceptionType.MODIFIED_SHIFT:
            continue
        turns = [turn for turn in turns if not (turn.start == item.start_time and turn.end == item.end_time)]

    for item in day_exceptions:
        if item.type != ExceptionType.EXTRA_SHIFT or item.start_time is None or item.end_time is None:
            continue
        turns.append(Turn(start=item.start_time, end=item.end_time, source=TURN_SOURCE_EXTRA))

    turns.sort(key=lambda turn: (turn.start, turn.end))
    return ExpectedDay(day=day, weekday=weekday, turns=tuple(turns), schedule_id=schedule_id)


def resolve_schedule_day(db: Session, schedule: Schedule, day: date) -> ExpectedDay:
    shifts = load_shifts_for_schedule(db, schedule.id, domain_weekday(day))
    exceptions = load_exceptions_for_date(db, schedule.id, day)
    return resolve_turns(day, shifts, exceptions, schedule_id=schedule.id)


def schedule_contains_day(schedule: Schedule, day: date) -> bool:
    if schedule.confirmed_at is None:
        return False
    if local_date(schedule.valid_from) > day:
        return False
    return schedule.valid_to is None or day < local_date(schedule.valid_to)


def find_schedule_for_date(db: Session, *, user_id: int, branch_id: int | None, day: date) -> Schedule | None:
    stmt = select(Schedule).where(Schedule.user_id == user_id, Schedule.confirmed_at.is_not(None))
    if branch_id is not None:
        stmt = stmt.where(Schedule.branch_id == branch_id)
    candidates = [item for item in db.scalars(stmt).all() if schedule_contains_day(item, day)]
    if not candidates:
        return None
    return max(candidates, key=lambda item: (item.valid_from, item.id))


def get_expected_shift_for_date(db: Session, *, user_id: int, branch_id: int | None, day: date) -> ExpectedDay:
    """Single source of truth for "was this user expected to work on this date"."""
    schedule = find_schedule_for_date(db, user_id=user_id, branch_id=branch_id, day=day)
    if schedule is None:
        return ExpectedDay(day=day, weekday=domain_weekday(day))
    return resolve_schedule_day(db, schedule, day)
