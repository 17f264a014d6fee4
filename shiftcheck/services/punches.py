from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy.orm import Session

from shiftcheck.clock import Clock
from shiftcheck.errors import bad_request, conflict
from shiftcheck.models import Incident, Record, RecordType
from shiftcheck.security import Principal
from shiftcheck.services.incidents import create_incident_from_evaluation
from shiftcheck.services.punch_evaluator import PunchEvaluation, PunchStatus, evaluate_punch
from shiftcheck.services.records import create_record, last_record
from shiftcheck.services.tenancy import ensure_tenant_scope, lock_membership

logger = logging.getLogger("shiftcheck.punches")


@dataclass(slots=True)
class PunchOutcome:
    record: Record
    evaluation: PunchEvaluation
    incident: Incident | None = None
    requires_confirmation: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record.id,
            "type": self.record.type.value,
            "created_at": self.record.created_at.isoformat(),
            "evaluation": self.evaluation.to_dict(),
            "incident_id": self.incident.id if self.incident is not None else None,
            "incident_type": self.incident.type.value if self.incident is not None else None,
            "requires_confirmation": self.requires_confirmation,
        }


def _parse_direction(direction: RecordType | str) -> RecordType:
    try:
        return RecordType(direction)
    except ValueError:
        raise bad_request("INVALID_DIRECTION", "Punch direction must be IN or OUT.") from None


def _ensure_alternation(previous: Record | None, direction: RecordType) -> None:
    if direction == RecordType.IN and previous is not None and previous.type == RecordType.IN:
        raise conflict("ALREADY_CHECKED_IN", "There is already an open IN record.")
    if direction == RecordType.OUT and (previous is None or previous.type != RecordType.IN):
        raise conflict("NOT_CHECKED_IN", "An OUT record needs a preceding open IN.")


def record_punch(
    db: Session,
    *,
    principal: Principal,
    company_id: int,
    branch_id: int,
    direction: RecordType | str,
    clock: Clock,
) -> PunchOutcome:
    direction = _parse_direction(direction)
    ensure_tenant_scope(principal, company_id, branch_id)

    try:
        membership = lock_membership(db, user_id=principal.user_id, company_id=company_id, branch_id=branch_id)
        _ensure_alternation(last_record(db, membership.id), direction)

        now_utc = clock.now_utc()
        evaluation = evaluate_punch(
            db,
            user_id=principal.user_id,
            branch_id=branch_id,
            ts_utc=now_utc,
            direction=direction,
        )
        record = create_record(
            db,
            type=direction,
            user_id=principal.user_id,
            membership_id=membership.id,
            company_id=company_id,
            branch_id=branch_id,
            created_at=now_utc,
        )
        incident = create_incident_from_evaluation(db, record=record, evaluation=evaluation, direction=direction)
        db.commit()
    except Exception:
        db.rollback()
        raise

    outcome = PunchOutcome(
        record=record,
        evaluation=evaluation,
        incident=incident,
        requires_confirmation=direction == RecordType.IN and evaluation.status == PunchStatus.NO_SHIFT,
    )
    logger.info(
        "punch_recorded",
        extra={
            "membership_id": membership.id,
            "record_id": record.id,
            "direction": direction.value,
            "status": evaluation.status.value,
            "diff_minutes": evaluation.diff_minutes,
            "incident_id": incident.id if incident is not None else None,
        },
    )
    return outcome


def preview_punch(
    db: Session,
    *,
    user_id: int,
    branch_id: int,
    direction: RecordType | str,
    clock: Clock,
) -> PunchEvaluation:
    return evaluate_punch(
        db,
        user_id=user_id,
        branch_id=branch_id,
        ts_utc=clock.now_utc(),
        direction=_parse_direction(direction),
    )
