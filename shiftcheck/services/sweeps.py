"""
Periodic sweeps that raise incidents for punches that never happened.

Every sweep walks the confirmed schedules that contain "now", resolves the
turns of yesterday and today, and applies one creation rule per turn. Each
schedule (or, for FORGOT_OUT, each pending OUT_LATE) is handled inside its
own savepoint so one broken row is logged and skipped without losing the
rest of the run. Incidents are keyed by ``TYPE:<membership>:<anchor>`` and
inserted with ``ON CONFLICT DO NOTHING``, which makes re-running a sweep
harmless.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, fields
from datetime import date, datetime, timedelta
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from shiftcheck.clock import Clock
from shiftcheck.db import SessionLocal
from shiftcheck.models import Incident, IncidentResponse, IncidentType, Membership, RecordType, Schedule
from shiftcheck.services.expected_shift import Turn, resolve_schedule_day, schedule_contains_day
from shiftcheck.services.incidents import (
    build_dedup_key,
    create_incident_once,
    delete_in_late_for_turn,
    has_incident_expected_at,
)
from shiftcheck.services.records import has_in_between, has_out_after, last_record
from shiftcheck.services.schedules import list_active_schedules
from shiftcheck.services.time_utils import local_date, local_day_bounds_utc, normalize_ts

logger = logging.getLogger("shiftcheck.sweeps")

FORGOT_IN_DELAY = timedelta(minutes=15)
OUT_LATE_DELAY = timedelta(minutes=15)
FORGOT_OUT_DELAY = timedelta(hours=3)


@dataclass(slots=True)
class SweepReport:
    forgot_in: int = 0
    no_show: int = 0
    out_late: int = 0
    forgot_out: int = 0
    in_late_removed: int = 0
    failures: int = 0

    @property
    def created(self) -> int:
        return self.forgot_in + self.no_show + self.out_late + self.forgot_out

    def merge(self, other: SweepReport) -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))

    def to_dict(self) -> dict[str, int]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


@dataclass(frozen=True, slots=True)
class TurnWindow:
    schedule: Schedule
    membership: Membership
    day: date
    turn: Turn
    start_utc: datetime
    end_utc: datetime
    # an IN at or after this instant (and before end_utc) counts for the turn
    window_start_utc: datetime


def candidate_days(now_utc: datetime) -> list[date]:
    today = local_date(now_utc)
    return [today - timedelta(days=1), today]


def _schedule_membership(db: Session, schedule: Schedule) -> Membership | None:
    return db.scalar(
        select(Membership)
        .where(
            Membership.user_id == schedule.user_id,
            Membership.branch_id == schedule.branch_id,
            Membership.active.is_(True),
        )
        .order_by(Membership.id.asc())
        .limit(1)
    )


def iter_turn_windows(db: Session, schedule: Schedule, now_utc: datetime) -> Iterator[TurnWindow]:
    membership = _schedule_membership(db, schedule)
    if membership is None:
        logger.debug("sweep_schedule_without_membership", extra={"schedule_id": schedule.id})
        return

    for day in candidate_days(now_utc):
        if not schedule_contains_day(schedule, day):
            continue
        expected = resolve_schedule_day(db, schedule, day)
        previous_end, _ = local_day_bounds_utc(day)
        for turn in expected.turns:
            start_utc = turn.start_utc(day)
            end_utc = turn.end_utc(day)
            yield TurnWindow(
                schedule=schedule,
                membership=membership,
                day=day,
                turn=turn,
                start_utc=start_utc,
                end_utc=end_utc,
                window_start_utc=min(previous_end, start_utc),
            )
            previous_end = end_utc


def _create_for_window(
    db: Session,
    window: TurnWindow,
    *,
    incident_type: IncidentType,
    anchor: datetime,
    expected_at: datetime,
    now_utc: datetime,
) -> Incident | None:
    return create_incident_once(
        db,
        type=incident_type,
        user_id=window.schedule.user_id,
        membership_id=window.membership.id,
        company_id=window.membership.company_id,
        branch_id=window.schedule.branch_id,
        occurred_at=now_utc,
        expected_at=expected_at,
        dedup_key=build_dedup_key(incident_type, window.membership.id, anchor),
    )


def _has_in_for_turn(db: Session, window: TurnWindow) -> bool:
    return has_in_between(db, window.membership.id, window.window_start_utc, window.end_utc)


def _turn_already_flagged(db: Session, window: TurnWindow) -> bool:
    membership_id = window.membership.id
    if has_incident_expected_at(
        db,
        membership_id=membership_id,
        types=(IncidentType.FORGOT_IN, IncidentType.IN_LATE),
        expected_at=window.start_utc,
    ):
        return True
    return has_incident_expected_at(
        db,
        membership_id=membership_id,
        types=(IncidentType.NO_SHOW,),
        expected_at=window.end_utc,
    )


def _forgot_in_for_schedule(db: Session, schedule: Schedule, now_utc: datetime, report: SweepReport) -> None:
    for window in iter_turn_windows(db, schedule, now_utc):
        if now_utc < window.start_utc + FORGOT_IN_DELAY:
            continue
        if _has_in_for_turn(db, window):
            continue
        if _turn_already_flagged(db, window):
            continue
        created = _create_for_window(
            db,
            window,
            incident_type=IncidentType.FORGOT_IN,
            anchor=window.start_utc,
            expected_at=window.start_utc,
            now_utc=now_utc,
        )
        if created is not None:
            report.forgot_in += 1


def _no_show_for_schedule(db: Session, schedule: Schedule, now_utc: datetime, report: SweepReport) -> None:
    for window in iter_turn_windows(db, schedule, now_utc):
        if now_utc < window.end_utc:
            continue
        if _has_in_for_turn(db, window):
            continue
        created = _create_for_window(
            db,
            window,
            incident_type=IncidentType.NO_SHOW,
            anchor=window.end_utc,
            expected_at=window.end_utc,
            now_utc=now_utc,
        )
        if created is None:
            continue
        report.no_show += 1
        report.in_late_removed += delete_in_late_for_turn(
            db,
            membership_id=window.membership.id,
            expected_start=window.start_utc,
        )


def _out_late_for_schedule(db: Session, schedule: Schedule, now_utc: datetime, report: SweepReport) -> None:
    for window in iter_turn_windows(db, schedule, now_utc):
        if now_utc < window.end_utc + OUT_LATE_DELAY:
            continue
        latest = last_record(db, window.membership.id)
        if latest is None or latest.type != RecordType.IN:
            continue
        latest_at = normalize_ts(latest.created_at)
        if latest_at < window.window_start_utc or latest_at >= window.end_utc:
            continue
        if has_out_after(db, window.membership.id, window.end_utc):
            continue
        if has_incident_expected_at(
            db,
            membership_id=window.membership.id,
            types=(IncidentType.OUT_LATE,),
            expected_at=window.end_utc,
        ):
            continue
        created = _create_for_window(
            db,
            window,
            incident_type=IncidentType.OUT_LATE,
            anchor=window.end_utc,
            expected_at=window.end_utc,
            now_utc=now_utc,
        )
        if created is not None:
            report.out_late += 1


ScheduleHandler = Callable[[Session, Schedule, datetime, SweepReport], None]


def _run_per_schedule(
    db: Session,
    *,
    sweep_name: str,
    handler: ScheduleHandler,
    now_utc: datetime,
    report: SweepReport,
) -> None:
    for schedule in list_active_schedules(db, now_utc):
        partial = SweepReport()
        try:
            with db.begin_nested():
                handler(db, schedule, now_utc, partial)
        except Exception:
            report.failures += 1
            logger.exception(
                "sweep_item_failed",
                extra={"sweep": sweep_name, "schedule_id": schedule.id, "user_id": schedule.user_id},
            )
            continue
        report.merge(partial)
    db.commit()


def run_forgot_in_sweep(db: Session, clock: Clock, report: SweepReport | None = None) -> SweepReport:
    report = report or SweepReport()
    _run_per_schedule(
        db,
        sweep_name="forgot_in",
        handler=_forgot_in_for_schedule,
        now_utc=clock.now_utc(),
        report=report,
    )
    return report


def run_no_show_sweep(db: Session, clock: Clock, report: SweepReport | None = None) -> SweepReport:
    report = report or SweepReport()
    _run_per_schedule(
        db,
        sweep_name="no_show",
        handler=_no_show_for_schedule,
        now_utc=clock.now_utc(),
        report=report,
    )
    return report


def run_out_late_sweep(db: Session, clock: Clock, report: SweepReport | None = None) -> SweepReport:
    report = report or SweepReport()
    _run_per_schedule(
        db,
        sweep_name="out_late",
        handler=_out_late_for_schedule,
        now_utc=clock.now_utc(),
        report=report,
    )
    return report


def _open_out_late_incidents(db: Session, cutoff_utc: datetime) -> list[Incident]:
    return list(
        db.scalars(
            select(Incident)
            .where(
                Incident.type == IncidentType.OUT_LATE,
                Incident.response != IncidentResponse.DENIED,
                Incident.expected_at.is_not(None),
                Incident.expected_at <= cutoff_utc,
            )
            .order_by(Incident.expected_at.asc(), Incident.id.asc())
        ).all()
    )


def _forgot_out_for_incident(db: Session, out_late: Incident, now_utc: datetime) -> Incident | None:
    expected_at = normalize_ts(out_late.expected_at)
    if has_out_after(db, out_late.membership_id, expected_at):
        return None
    if has_incident_expected_at(
        db,
        membership_id=out_late.membership_id,
        types=(IncidentType.FORGOT_OUT,),
        expected_at=expected_at,
    ):
        return None
    return create_incident_once(
        db,
        type=IncidentType.FORGOT_OUT,
        user_id=out_late.user_id,
        membership_id=out_late.membership_id,
        company_id=out_late.company_id,
        branch_id=out_late.branch_id,
        occurred_at=now_utc,
        expected_at=expected_at,
        dedup_key=build_dedup_key(IncidentType.FORGOT_OUT, out_late.membership_id, out_late.id),
    )


def run_forgot_out_sweep(db: Session, clock: Clock, report: SweepReport | None = None) -> SweepReport:
    report = report or SweepReport()
    now_utc = clock.now_utc()
    for out_late in _open_out_late_incidents(db, now_utc - FORGOT_OUT_DELAY):
        try:
            with db.begin_nested():
                created = _forgot_out_for_incident(db, out_late, now_utc)
        except Exception:
            report.failures += 1
            logger.exception(
                "sweep_item_failed",
                extra={"sweep": "forgot_out", "incident_id": out_late.id, "membership_id": out_late.membership_id},
            )
            continue
        if created is not None:
            report.forgot_out += 1
    db.commit()
    return report


def _run_all(db: Session, clock: Clock) -> SweepReport:
    report = SweepReport()
    run_forgot_in_sweep(db, clock, report)
    run_no_show_sweep(db, clock, report)
    run_out_late_sweep(db, clock, report)
    run_forgot_out_sweep(db, clock, report)
    if report.created or report.failures:
        logger.info("sweep_run_complete", extra=report.to_dict())
    return report


def run_all_sweeps(clock: Clock, db: Session | None = None) -> SweepReport:
    if db is not None:
        return _run_all(db, clock)
    with SessionLocal() as session:
        return _run_all(session, clock)
