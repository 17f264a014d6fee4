from __future__ import annotations

import unittest
from contextlib import nullcontext
from datetime import date, datetime, time, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from shiftcheck.clock import FixedClock
from shiftcheck.models import Incident, IncidentResponse, IncidentType, Membership, Record, RecordType, Role, Schedule
from shiftcheck.services.expected_shift import ExpectedDay, Turn
from shiftcheck.services.sweeps import (
    SweepReport,
    candidate_days,
    run_all_sweeps,
    run_forgot_in_sweep,
    run_forgot_out_sweep,
    run_no_show_sweep,
    run_out_late_sweep,
)

MONDAY = date(2025, 6, 9)
TURN_START_UTC = datetime(2025, 6, 9, 7, 0, tzinfo=timezone.utc)
TURN_END_UTC = datetime(2025, 6, 9, 15, 0, tzinfo=timezone.utc)


class _SweepDB:
    def __init__(self) -> None:
        self.commits = 0
        self.savepoints = 0

    def begin_nested(self):
        self.savepoints += 1
        return nullcontext()

    def commit(self) -> None:
        self.commits += 1


class _DedupStore:
    """Mimics the unique dedup_key constraint behind create_incident_once."""

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.keys: set[str] = set()
        self.created: list[SimpleNamespace] = []

    def __call__(self, db, **kwargs):
        self.calls.append(kwargs)
        key = kwargs["dedup_key"]
        if key in self.keys:
            return None
        self.keys.add(key)
        incident = SimpleNamespace(id=len(self.keys), **kwargs)
        self.created.append(incident)
        return incident

    def has_expected(self, db, *, membership_id, types, expected_at) -> bool:
        return any(
            item.membership_id == membership_id and item.type in types and item.expected_at == expected_at
            for item in self.created
        )


def _schedule(schedule_id: int = 1) -> Schedule:
    return Schedule(
        id=schedule_id,
        user_id=3,
        branch_id=2,
        valid_from=datetime(2025, 6, 1, 8, 0, tzinfo=timezone.utc),
        valid_to=None,
        confirmed_at=datetime(2025, 6, 1, 8, 0, tzinfo=timezone.utc),
    )


def _membership() -> Membership:
    return Membership(id=10, user_id=3, company_id=1, branch_id=2, role=Role.EMPLEADO, active=True)


def _monday_nine_to_five(db, schedule, day):
    if day == MONDAY:
        return ExpectedDay(day=day, weekday=1, turns=(Turn(start=time(9, 0), end=time(17, 0)),), schedule_id=schedule.id)
    return ExpectedDay(day=day, weekday=day.isoweekday(), schedule_id=schedule.id)


def _monday_split_day(db, schedule, day):
    if day == MONDAY:
        turns = (Turn(start=time(9, 0), end=time(13, 0)), Turn(start=time(15, 0), end=time(19, 0)))
        return ExpectedDay(day=day, weekday=1, turns=turns, schedule_id=schedule.id)
    return ExpectedDay(day=day, weekday=day.isoweekday(), schedule_id=schedule.id)


class CandidateDaysTests(unittest.TestCase):
    def test_yesterday_and_today_in_local_time(self) -> None:
        now = datetime(2025, 6, 9, 22, 30, tzinfo=timezone.utc)

        self.assertEqual(candidate_days(now), [date(2025, 6, 9), date(2025, 6, 10)])


class TurnSweepTests(unittest.TestCase):
    def _run(
        self,
        sweep,
        now: datetime,
        *,
        store: _DedupStore | None = None,
        has_in: bool = False,
        has_incident: bool = False,
        incident_lookup=None,
        latest: Record | None = None,
        has_out: bool = False,
        schedules: list[Schedule] | None = None,
        resolver=_monday_nine_to_five,
    ):
        db = _SweepDB()
        store = store or _DedupStore()
        delete_mock = MagicMock(return_value=1)
        lookup_mock = MagicMock(return_value=has_incident, side_effect=incident_lookup)
        with (
            patch("shiftcheck.services.sweeps.list_active_schedules", return_value=schedules or [_schedule()]),
            patch("shiftcheck.services.sweeps._schedule_membership", return_value=_membership()),
            patch("shiftcheck.services.sweeps.resolve_schedule_day", side_effect=resolver),
            patch("shiftcheck.services.sweeps.has_in_between", return_value=has_in),
            patch("shiftcheck.services.sweeps.has_incident_expected_at", lookup_mock),
            patch("shiftcheck.services.sweeps.last_record", return_value=latest),
            patch("shiftcheck.services.sweeps.has_out_after", return_value=has_out),
            patch("shiftcheck.services.sweeps.create_incident_once", side_effect=store),
            patch("shiftcheck.services.sweeps.delete_in_late_for_turn", delete_mock),
        ):
            report = sweep(db, FixedClock(now))
        return db, report, store, delete_mock

    def test_forgot_in_waits_for_tolerance(self) -> None:
        _, report, store, _ = self._run(run_forgot_in_sweep, TURN_START_UTC + timedelta(minutes=14))

        self.assertEqual(report.forgot_in, 0)
        self.assertEqual(store.calls, [])

    def test_forgot_in_created_once_tolerance_has_passed(self) -> None:
        db, report, store, _ = self._run(run_forgot_in_sweep, TURN_START_UTC + timedelta(minutes=15))

        self.assertEqual(report.forgot_in, 1)
        call = store.calls[0]
        self.assertEqual(call["type"], IncidentType.FORGOT_IN)
        self.assertEqual(call["expected_at"], TURN_START_UTC)
        self.assertEqual(call["dedup_key"], "FORGOT_IN:10:2025-06-09T07:00:00+00:00")
        self.assertEqual(call["membership_id"], 10)
        self.assertEqual(db.commits, 1)

    def test_forgot_in_rerun_is_idempotent(self) -> None:
        store = _DedupStore()
        now = TURN_START_UTC + timedelta(minutes=20)

        _, first, _, _ = self._run(run_forgot_in_sweep, now, store=store)
        _, second, _, _ = self._run(run_forgot_in_sweep, now + timedelta(minutes=15), store=store)

        self.assertEqual(first.forgot_in, 1)
        self.assertEqual(second.forgot_in, 0)
        self.assertEqual(len(store.keys), 1)

    def test_forgot_in_skipped_when_in_exists(self) -> None:
        _, report, store, _ = self._run(run_forgot_in_sweep, TURN_START_UTC + timedelta(minutes=30), has_in=True)

        self.assertEqual(report.forgot_in, 0)
        self.assertEqual(store.calls, [])

    def test_forgot_in_skipped_when_turn_already_flagged(self) -> None:
        _, report, store, _ = self._run(
            run_forgot_in_sweep,
            TURN_START_UTC + timedelta(minutes=30),
            has_incident=True,
        )

        self.assertEqual(report.forgot_in, 0)
        self.assertEqual(store.calls, [])

    def test_late_first_tick_flags_every_missed_turn_of_a_split_day(self) -> None:
        store = _DedupStore()
        first_tick = datetime(2025, 6, 9, 14, 0, tzinfo=timezone.utc)

        _, first, _, _ = self._run(
            run_forgot_in_sweep,
            first_tick,
            store=store,
            resolver=_monday_split_day,
            incident_lookup=store.has_expected,
        )
        _, second, _, _ = self._run(
            run_forgot_in_sweep,
            first_tick + timedelta(minutes=15),
            store=store,
            resolver=_monday_split_day,
            incident_lookup=store.has_expected,
        )

        self.assertEqual(first.forgot_in, 2)
        self.assertEqual(second.forgot_in, 0)
        self.assertEqual(
            sorted(item.expected_at for item in store.created),
            [TURN_START_UTC, datetime(2025, 6, 9, 13, 0, tzinfo=timezone.utc)],
        )

    def test_no_show_after_turn_end_removes_in_late(self) -> None:
        _, report, store, delete_mock = self._run(run_no_show_sweep, TURN_END_UTC)

        self.assertEqual(report.no_show, 1)
        self.assertEqual(report.in_late_removed, 1)
        self.assertEqual(store.calls[0]["type"], IncidentType.NO_SHOW)
        self.assertEqual(store.calls[0]["expected_at"], TURN_END_UTC)
        self.assertEqual(delete_mock.call_args.kwargs["expected_start"], TURN_START_UTC)

    def test_no_show_not_raised_before_turn_end(self) -> None:
        _, report, _, delete_mock = self._run(run_no_show_sweep, TURN_END_UTC - timedelta(minutes=1))

        self.assertEqual(report.no_show, 0)
        delete_mock.assert_not_called()

    def test_out_late_for_open_in_inside_turn(self) -> None:
        latest = Record(id=1, type=RecordType.IN, membership_id=10, created_at=TURN_START_UTC + timedelta(minutes=2))

        _, report, store, _ = self._run(
            run_out_late_sweep,
            TURN_END_UTC + timedelta(minutes=15),
            latest=latest,
        )

        self.assertEqual(report.out_late, 1)
        self.assertEqual(store.calls[0]["type"], IncidentType.OUT_LATE)
        self.assertEqual(store.calls[0]["dedup_key"], "OUT_LATE:10:2025-06-09T15:00:00+00:00")

    def test_out_late_ignores_in_from_before_the_day(self) -> None:
        latest = Record(id=1, type=RecordType.IN, membership_id=10, created_at=datetime(2025, 6, 8, 20, 0, tzinfo=timezone.utc))

        _, report, store, _ = self._run(
            run_out_late_sweep,
            TURN_END_UTC + timedelta(minutes=30),
            latest=latest,
        )

        self.assertEqual(report.out_late, 0)
        self.assertEqual(store.calls, [])

    def test_out_late_skipped_when_out_recorded(self) -> None:
        latest = Record(id=1, type=RecordType.IN, membership_id=10, created_at=TURN_START_UTC)

        _, report, _, _ = self._run(
            run_out_late_sweep,
            TURN_END_UTC + timedelta(minutes=30),
            latest=latest,
            has_out=True,
        )

        self.assertEqual(report.out_late, 0)

    def test_failing_schedule_does_not_block_the_others(self) -> None:
        broken = _schedule(1)
        healthy = _schedule(2)

        def resolver(db, schedule, day):
            if schedule.id == 1:
                raise RuntimeError("corrupt shift row")
            return _monday_nine_to_five(db, schedule, day)

        db, report, store, _ = self._run(
            run_forgot_in_sweep,
            TURN_START_UTC + timedelta(minutes=30),
            schedules=[broken, healthy],
            resolver=resolver,
        )

        self.assertEqual(report.failures, 1)
        self.assertEqual(report.forgot_in, 1)
        self.assertEqual(db.savepoints, 2)
        self.assertEqual(db.commits, 1)


class ForgotOutSweepTests(unittest.TestCase):
    def _out_late(self) -> Incident:
        return Incident(
            id=42,
            type=IncidentType.OUT_LATE,
            response=IncidentResponse.PENDING,
            user_id=3,
            membership_id=10,
            company_id=1,
            branch_id=2,
            expected_at=TURN_END_UTC,
            occurred_at=TURN_END_UTC + timedelta(minutes=15),
        )

    def _run(self, now: datetime, *, store: _DedupStore, has_out: bool = False, pending=None):
        db = _SweepDB()
        pending_mock = MagicMock(return_value=[self._out_late()] if pending is None else pending)
        with (
            patch("shiftcheck.services.sweeps._open_out_late_incidents", pending_mock),
            patch("shiftcheck.services.sweeps.has_out_after", return_value=has_out),
            patch("shiftcheck.services.sweeps.has_incident_expected_at", return_value=False),
            patch("shiftcheck.services.sweeps.create_incident_once", side_effect=store),
        ):
            report = run_forgot_out_sweep(db, FixedClock(now))
        return report, pending_mock

    def test_forgot_out_created_once_across_runs(self) -> None:
        store = _DedupStore()
        now = TURN_END_UTC + timedelta(hours=3, minutes=10)

        first, pending_mock = self._run(now, store=store)
        second, _ = self._run(now + timedelta(minutes=15), store=store)

        self.assertEqual(pending_mock.call_args.args[1], now - timedelta(hours=3))
        self.assertEqual(first.forgot_out, 1)
        self.assertEqual(second.forgot_out, 0)
        self.assertEqual(store.calls[0]["type"], IncidentType.FORGOT_OUT)
        self.assertEqual(store.calls[0]["dedup_key"], "FORGOT_OUT:10:42")
        self.assertEqual(store.calls[0]["expected_at"], TURN_END_UTC)

    def test_out_recorded_after_expected_end_prevents_forgot_out(self) -> None:
        store = _DedupStore()

        report, _ = self._run(TURN_END_UTC + timedelta(hours=4), store=store, has_out=True)

        self.assertEqual(report.forgot_out, 0)
        self.assertEqual(store.calls, [])


class RunAllSweepsTests(unittest.TestCase):
    def test_runs_every_sweep_with_one_shared_report(self) -> None:
        order: list[str] = []

        def _tracker(name):
            def _run(db, clock, report):
                order.append(name)
                report.forgot_in += 1
                return report

            return _run

        with (
            patch("shiftcheck.services.sweeps.run_forgot_in_sweep", side_effect=_tracker("forgot_in")),
            patch("shiftcheck.services.sweeps.run_no_show_sweep", side_effect=_tracker("no_show")),
            patch("shiftcheck.services.sweeps.run_out_late_sweep", side_effect=_tracker("out_late")),
            patch("shiftcheck.services.sweeps.run_forgot_out_sweep", side_effect=_tracker("forgot_out")),
        ):
            report = run_all_sweeps(FixedClock(TURN_END_UTC), db=_SweepDB())

        self.assertEqual(order, ["forgot_in", "no_show", "out_late", "forgot_out"])
        self.assertIsInstance(report, SweepReport)
        self.assertEqual(report.created, 4)


if __name__ == "__main__":
    unittest.main()
