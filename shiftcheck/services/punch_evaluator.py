from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, time
import enum
from typing import Any

from sqlalchemy.orm import Session

from shiftcheck.models import RecordType
from shiftcheck.services.expected_shift import Turn, get_expected_shift_for_date
from shiftcheck.services.time_utils import combine_local_utc, format_hhmm, minutes_of_day, to_local

TOLERANCE_MINUTES = 15


class PunchStatus(str, enum.Enum):
    OK = "OK"
    EARLY = "EARLY"
    LATE = "LATE"
    NO_SHIFT = "NO_SHIFT"


@dataclass(frozen=True, slots=True)
class PunchEvaluation:
    status: PunchStatus
    expected_time: time | None = None
    diff_minutes: int | None = None
    expected_at_utc: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "expected_time": format_hhmm(self.expected_time),
            "diff_minutes": self.diff_minutes,
            "expected_at_utc": self.expected_at_utc.isoformat() if self.expected_at_utc is not None else None,
        }


NO_SHIFT_EVALUATION = PunchEvaluation(status=PunchStatus.NO_SHIFT)


def classify_diff(diff_minutes: int) -> PunchStatus:
    if abs(diff_minutes) <= TOLERANCE_MINUTES:
        return PunchStatus.OK
    if diff_minutes < 0:
        return PunchStatus.EARLY
    return PunchStatus.LATE


def evaluate_against_turns(
    turns: Sequence[Turn],
    local_dt: datetime,
    direction: RecordType,
) -> PunchEvaluation:
    if not turns:
        return NO_SHIFT_EVALUATION

    actual_minutes = minutes_of_day(local_dt)
    boundaries = [turn.start if direction == RecordType.IN else turn.end for turn in turns]
    # min() keeps the first boundary on ties
    best_boundary = min(boundaries, key=lambda value: abs(actual_minutes - minutes_of_day(value)))
    best_diff = actual_minutes - minutes_of_day(best_boundary)
    return PunchEvaluation(
        status=classify_diff(best_diff),
        expected_time=best_boundary,
        diff_minutes=best_diff,
        expected_at_utc=combine_local_utc(local_dt.date(), best_boundary),
    )


def evaluate_punch(
    db: Session,
    *,
    user_id: int,
    branch_id: int | None,
    ts_utc: datetime,
    direction: RecordType,
) -> PunchEvaluation:
    local_dt = to_local(ts_utc)
    expected = get_expected_shift_for_date(db, user_id=user_id, branch_id=branch_id, day=local_dt.date())
    return evaluate_against_turns(expected.turns, local_dt, direction)
