from __future__ import annotations

import unittest
from collections.abc import Generator
from datetime import date, datetime, time, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient

from shiftcheck.clock import FixedClock, get_clock
from shiftcheck.db import get_db
from shiftcheck.main import app
from shiftcheck.models import (
    Incident,
    IncidentOrigin,
    IncidentResponse,
    IncidentType,
    Record,
    RecordType,
    Role,
    Schedule,
    Shift,
)
from shiftcheck.security import Principal, get_current_principal
from shiftcheck.services.expected_shift import ExpectedDay
from shiftcheck.services.incidents import ResponseOutcome
from shiftcheck.services.punch_evaluator import PunchEvaluation, PunchStatus
from shiftcheck.services.punches import PunchOutcome

NOW = datetime(2025, 6, 9, 6, 40, tzinfo=timezone.utc)
EMPLOYEE = Principal(user_id=3, role=Role.EMPLEADO, company_id=1, branch_id=2)
BRANCH_ADMIN = Principal(user_id=9, role=Role.ADMIN_SUCURSAL, company_id=1, branch_id=2)


class _DummyDB:
    def __init__(self) -> None:
        self.rows: list[object] = []

    def add(self, obj: object) -> None:
        self.rows.append(obj)

    def commit(self) -> None:
        return

    def rollback(self) -> None:
        return


def _override_get_db(fake_db):
    def _override() -> Generator[object, None, None]:
        yield fake_db

    return _override


def _incident(response: IncidentResponse = IncidentResponse.PENDING) -> Incident:
    return Incident(
        id=42,
        type=IncidentType.IN_EARLY,
        origin=IncidentOrigin.SYSTEM,
        admitted=False,
        response=response,
        expected_at=datetime(2025, 6, 9, 7, 0, tzinfo=timezone.utc),
        occurred_at=NOW,
        user_id=3,
        membership_id=5,
        company_id=1,
        branch_id=2,
        record_id=70,
        note=None,
    )


class EndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self.fake_db = _DummyDB()
        app.dependency_overrides[get_db] = _override_get_db(self.fake_db)
        app.dependency_overrides[get_clock] = lambda: FixedClock(NOW)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def _as(self, principal: Principal) -> TestClient:
        app.dependency_overrides[get_current_principal] = lambda: principal
        return TestClient(app)

    def test_missing_bearer_token_is_rejected(self) -> None:
        client = TestClient(app)

        response = client.post("/api/punches", json={"company_id": 1, "branch_id": 2, "direction": "IN"})

        self.assertEqual(response.status_code, 401)
        body = response.json()
        self.assertEqual(body["error"]["code"], "INVALID_TOKEN")
        self.assertIn("request_id", body["error"])

    def test_punch_returns_record_and_evaluation(self) -> None:
        outcome = PunchOutcome(
            record=Record(id=70, type=RecordType.IN, created_at=NOW),
            evaluation=PunchEvaluation(
                status=PunchStatus.EARLY,
                expected_time=time(9, 0),
                diff_minutes=-20,
                expected_at_utc=datetime(2025, 6, 9, 7, 0, tzinfo=timezone.utc),
            ),
            incident=_incident(),
        )
        client = self._as(EMPLOYEE)

        with patch("shiftcheck.routers.punches.record_punch", return_value=outcome) as punch_mock:
            response = client.post(
                "/api/punches",
                json={"company_id": 1, "branch_id": 2, "direction": "IN"},
                headers={"X-Request-Id": "req-1"},
            )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.headers["X-Request-Id"], "req-1")
        payload = response.json()
        self.assertEqual(payload["record_id"], 70)
        self.assertEqual(payload["evaluation"]["status"], "EARLY")
        self.assertEqual(payload["evaluation"]["expected_time"], "09:00")
        self.assertEqual(payload["incident_type"], "IN_EARLY")
        self.assertEqual(punch_mock.call_args.kwargs["principal"], EMPLOYEE)

    def test_invalid_punch_direction_is_validation_error(self) -> None:
        client = self._as(EMPLOYEE)

        response = client.post("/api/punches", json={"company_id": 1, "branch_id": 2, "direction": "UP"})

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_employee_cannot_list_company_incidents(self) -> None:
        client = self._as(EMPLOYEE)

        response = client.get("/api/incidents", params={"company_id": 1})

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_admin_lists_incidents_within_own_branch(self) -> None:
        client = self._as(BRANCH_ADMIN)

        with patch("shiftcheck.routers.incidents.list_incidents", return_value=[_incident()]) as list_mock:
            response = client.get("/api/incidents", params={"company_id": 1})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()[0]["type"], "IN_EARLY")
        self.assertEqual(list_mock.call_args.kwargs["branch_id"], 2)

    def test_no_op_response_is_not_audited(self) -> None:
        client = self._as(EMPLOYEE)
        answered = _incident(IncidentResponse.ADMITTED)

        with (
            patch(
                "shiftcheck.routers.incidents.respond_to_incident",
                return_value=ResponseOutcome(action="NO_OP", incident=answered),
            ),
            patch("shiftcheck.routers.incidents.audit_change") as audit_mock,
        ):
            response = client.post("/api/incidents/42/respond", json={"answer": "NO"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["action"], "NO_OP")
        self.assertEqual(response.json()["incident"]["response"], "ADMITTED")
        audit_mock.assert_not_called()

    def test_applied_response_is_audited(self) -> None:
        client = self._as(EMPLOYEE)
        corrective = Record(id=71, type=RecordType.OUT, created_at=NOW, is_corrective=True)

        with (
            patch(
                "shiftcheck.routers.incidents.respond_to_incident",
                return_value=ResponseOutcome(action="DELETED", corrective_record=corrective),
            ),
            patch("shiftcheck.routers.incidents.audit_change") as audit_mock,
        ):
            response = client.post("/api/incidents/42/respond", json={"answer": "NO"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["corrective_record_id"], 71)
        self.assertIsNone(response.json()["incident"])
        self.assertEqual(audit_mock.call_args.kwargs["action"], "INCIDENT_RESPOND")

    def test_expected_shift_for_vacation_day(self) -> None:
        client = self._as(EMPLOYEE)
        vacation = ExpectedDay(day=date(2025, 6, 10), weekday=2, is_vacation=True, schedule_id=1)

        with patch("shiftcheck.routers.schedules.get_expected_shift_for_date", return_value=vacation):
            response = client.get("/api/users/3/schedule/expected", params={"day": "2025-06-10"})

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["date"], "2025-06-10")
        self.assertEqual(payload["turns"], [])
        self.assertTrue(payload["is_vacation"])

    def test_employee_cannot_read_someone_elses_week(self) -> None:
        client = self._as(EMPLOYEE)

        response = client.get("/api/users/4/schedule/week")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "TENANT_FORBIDDEN")

    def test_admin_adds_shift_and_change_is_audited(self) -> None:
        client = self._as(BRANCH_ADMIN)
        shift = Shift(
            id=11,
            schedule_id=1,
            weekday=1,
            start_time=time(9, 0),
            end_time=time(13, 0),
            valid_from=date(2025, 6, 16),
            valid_to=None,
        )

        with (
            patch("shiftcheck.routers.schedules.ensure_schedule_access", return_value=Schedule(id=1)),
            patch("shiftcheck.routers.schedules.add_shift", return_value=shift) as add_mock,
            patch("shiftcheck.routers.schedules.audit_change") as audit_mock,
        ):
            response = client.post(
                "/api/schedules/1/shifts",
                json={"weekday": 1, "start_time": "09:00", "end_time": "13:00", "valid_from": "2025-06-16"},
            )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["id"], 11)
        self.assertEqual(add_mock.call_args.kwargs["start_time"], time(9, 0))
        self.assertEqual(audit_mock.call_args.kwargs["action"], "SHIFT_ADD")

    def test_bad_shift_time_format_is_bad_request(self) -> None:
        client = self._as(BRANCH_ADMIN)

        with patch("shiftcheck.routers.schedules.ensure_schedule_access", return_value=Schedule(id=1)):
            response = client.post(
                "/api/schedules/1/shifts",
                json={"weekday": 1, "start_time": "9h00", "end_time": "13:00", "valid_from": "2025-06-16"},
            )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "INVALID_TIME_FORMAT")

    def test_health_reports_schema_guard_and_sweep_worker(self) -> None:
        client = TestClient(app)

        response = client.get("/health")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "ok")
        self.assertIn("schema_guard", payload)
        self.assertIn("interval_seconds", payload["sweep_worker"])


if __name__ == "__main__":
    unittest.main()
