from __future__ import annotations

import unittest
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch

from shiftcheck.audit import audit_change
from shiftcheck.clock import FixedClock
from shiftcheck.models import AuditActorType, AuditLog, Membership, Record, RecordType, Role
from shiftcheck.security import Principal
from shiftcheck.services.records import insert_corrective_record

NOW = datetime(2025, 6, 9, 16, 0, tzinfo=timezone.utc)


class _DummyDB:
    def __init__(self, *, fail_commit: bool = False) -> None:
        self.added: list[object] = []
        self.commits = 0
        self.rollbacks = 0
        self.fail_commit = fail_commit

    def add(self, obj) -> None:
        self.added.append(obj)

    def flush(self) -> None:
        for index, obj in enumerate(self.added, start=1):
            if getattr(obj, "id", None) is None:
                obj.id = index

    def commit(self) -> None:
        if self.fail_commit:
            raise RuntimeError("database unavailable")
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1


def _membership() -> Membership:
    return Membership(id=5, user_id=3, company_id=1, branch_id=2, role=Role.EMPLEADO, active=True)


def _record(record_type: RecordType, created_at: datetime) -> Record:
    return Record(id=70, type=record_type, membership_id=5, created_at=created_at)


class CorrectiveRecordTests(unittest.TestCase):
    def _insert(self, record_type: RecordType, previous: Record | None, created_at: datetime = NOW):
        db = _DummyDB()
        with patch("shiftcheck.services.records.last_record", return_value=previous):
            record = insert_corrective_record(
                db,
                type=record_type,
                membership=_membership(),
                branch_id=2,
                created_at=created_at,
            )
        return db, record

    def test_corrective_out_closes_open_in(self) -> None:
        db, record = self._insert(RecordType.OUT, _record(RecordType.IN, datetime(2025, 6, 9, 7, 0, tzinfo=timezone.utc)))

        self.assertIsNotNone(record)
        self.assertTrue(record.is_corrective)
        self.assertEqual(record.type, RecordType.OUT)
        self.assertEqual(record.created_at, NOW)
        self.assertEqual(db.added, [record])

    def test_same_type_as_last_record_is_skipped(self) -> None:
        db, record = self._insert(RecordType.OUT, _record(RecordType.OUT, datetime(2025, 6, 9, 15, 0, tzinfo=timezone.utc)))

        self.assertIsNone(record)
        self.assertEqual(db.added, [])

    def test_out_without_any_record_is_skipped(self) -> None:
        db, record = self._insert(RecordType.OUT, None)

        self.assertIsNone(record)
        self.assertEqual(db.added, [])

    def test_timestamp_never_precedes_previous_record(self) -> None:
        later = datetime(2025, 6, 9, 16, 30, tzinfo=timezone.utc)

        _, record = self._insert(RecordType.IN, _record(RecordType.OUT, later))

        self.assertEqual(record.created_at, later)


class AuditLogTests(unittest.TestCase):
    def _request(self):
        return SimpleNamespace(state=SimpleNamespace(request_id="req-1"))

    def test_admin_change_is_committed_with_clock_time(self) -> None:
        db = _DummyDB()
        admin = Principal(user_id=9, role=Role.ADMIN_SUCURSAL, company_id=1, branch_id=2)

        with self.assertLogs("shiftcheck.audit", level="INFO") as logs:
            entry = audit_change(
                db,  # type: ignore[arg-type]
                self._request(),  # type: ignore[arg-type]
                admin,
                FixedClock(NOW),
                action="SCHEDULE_CONFIRM",
                entity_type="schedule",
                entity_id=1,
            )

        self.assertEqual(db.commits, 1)
        self.assertIs(db.added[0], entry)
        self.assertIsInstance(entry, AuditLog)
        self.assertEqual(entry.ts_utc, NOW)
        self.assertEqual(entry.actor_type, AuditActorType.ADMIN)
        self.assertEqual((entry.actor_id, entry.entity_id), ("9", "1"))
        self.assertTrue(entry.success)
        self.assertEqual(entry.details, {})
        self.assertEqual(logs.records[0].request_id, "req-1")

    def test_failed_audit_write_is_rolled_back_and_not_raised(self) -> None:
        db = _DummyDB(fail_commit=True)
        employee = Principal(user_id=3, role=Role.EMPLEADO, company_id=1, branch_id=2)

        with self.assertLogs("shiftcheck.audit", level="ERROR"):
            entry = audit_change(
                db,  # type: ignore[arg-type]
                self._request(),  # type: ignore[arg-type]
                employee,
                FixedClock(NOW),
                action="INCIDENT_RESPOND",
                entity_type="incident",
                entity_id=4,
                details={"answer": "YES"},
            )

        self.assertIsNone(entry)
        self.assertEqual(db.rollbacks, 1)


if __name__ == "__main__":
    unittest.main()
