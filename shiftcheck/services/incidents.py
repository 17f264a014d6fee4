from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
import enum
import logging

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.orm import Session

from shiftcheck.clock import Clock
from shiftcheck.errors import bad_request, conflict, forbidden, not_found
from shiftcheck.models import (
    Incident,
    IncidentOrigin,
    IncidentResponse,
    IncidentType,
    Membership,
    Record,
    RecordType,
    Role,
)
from shiftcheck.security import Principal
from shiftcheck.services.punch_evaluator import PunchEvaluation, PunchStatus, evaluate_punch
from shiftcheck.services.records import insert_corrective_record, last_record
from shiftcheck.services.tenancy import ensure_tenant_scope, lock_membership, role_at_least
from shiftcheck.services.time_utils import normalize_ts

logger = logging.getLogger("shiftcheck.incidents")

_EVALUATION_INCIDENT_TYPES: dict[tuple[PunchStatus, RecordType], IncidentType] = {
    (PunchStatus.EARLY, RecordType.IN): IncidentType.IN_EARLY,
    (PunchStatus.LATE, RecordType.IN): IncidentType.IN_LATE,
    (PunchStatus.EARLY, RecordType.OUT): IncidentType.OUT_EARLY,
    (PunchStatus.LATE, RecordType.OUT): IncidentType.OUT_LATE,
}


class IncidentAnswer(str, enum.Enum):
    YES = "YES"
    NO = "NO"


@dataclass(slots=True)
class ResponseOutcome:
    action: str
    incident: Incident | None = None
    created_incident: Incident | None = None
    corrective_record: Record | None = None

    @property
    def changed(self) -> bool:
        return self.action != "NO_OP"


def build_dedup_key(incident_type: IncidentType, membership_id: int, anchor: datetime | str | int) -> str:
    if isinstance(anchor, datetime):
        anchor = normalize_ts(anchor).isoformat()
    return f"{incident_type.value}:{membership_id}:{anchor}"


def create_incident_once(
    db: Session,
    *,
    type: IncidentType,
    user_id: int,
    membership_id: int,
    company_id: int,
    branch_id: int,
    occurred_at: datetime,
    dedup_key: str | None,
    origin: IncidentOrigin = IncidentOrigin.SYSTEM,
    admitted: bool = False,
    response: IncidentResponse = IncidentResponse.PENDING,
    expected_at: datetime | None = None,
    record_id: int | None = None,
    note: str | None = None,
) -> Incident | None:
    """Insert an incident unless one with the same dedup key already exists.

    The existence check and the write are one ``INSERT ... ON CONFLICT DO NOTHING``
    statement, so concurrent sweeps cannot both create the same incident.
    Returns ``None`` when the key was already taken.
    """
    values = {
        "type": type,
        "origin": origin,
        "admitted": admitted,
        "response": response,
        "expected_at": normalize_ts(expected_at) if expected_at is not None else None,
        "occurred_at": normalize_ts(occurred_at),
        "user_id": user_id,
        "membership_id": membership_id,
        "company_id": company_id,
        "branch_id": branch_id,
        "record_id": record_id,
        "note": note,
        "dedup_key": dedup_key,
    }
    if dedup_key is None:
        incident = Incident(**values)
        db.add(incident)
        db.flush()
    else:
        stmt = (
            pg_insert(Incident)
            .values(**values)
            .on_conflict_do_nothing(index_elements=[Incident.dedup_key])
            .returning(Incident.id)
        )
        incident_id = db.scalar(stmt)
        if incident_id is None:
            logger.info(
                "incident_deduplicated",
                extra={"incident_type": type.value, "membership_id": membership_id, "dedup_key": dedup_key},
            )
            return None
        incident = db.get(Incident, incident_id)

    logger.info(
        "incident_created",
        extra={
            "incident_id": incident.id if incident is not None else None,
            "incident_type": type.value,
            "origin": origin.value,
            "membership_id": membership_id,
            "dedup_key": dedup_key,
        },
    )
    return incident


def has_incident_expected_at(
    db: Session,
    *,
    membership_id: int,
    types: Iterable[IncidentType],
    expected_at: datetime,
) -> bool:
    found = db.scalar(
        select(Incident.id)
        .where(
            Incident.membership_id == membership_id,
            Incident.type.in_(list(types)),
            Incident.expected_at == normalize_ts(expected_at),
        )
        .limit(1)
    )
    return found is not None


def incident_type_for_evaluation(evaluation: PunchEvaluation, direction: RecordType) -> IncidentType | None:
    return _EVALUATION_INCIDENT_TYPES.get((evaluation.status, direction))


def create_incident_from_evaluation(
    db: Session,
    *,
    record: Record,
    evaluation: PunchEvaluation,
    direction: RecordType,
) -> Incident | None:
    incident_type = incident_type_for_evaluation(evaluation, direction)
    if incident_type is None:
        return None
    return create_incident_once(
        db,
        type=incident_type,
        user_id=record.user_id,
        membership_id=record.membership_id,
        company_id=record.company_id,
        branch_id=record.branch_id,
        occurred_at=record.created_at,
        expected_at=evaluation.expected_at_utc,
        record_id=record.id,
        dedup_key=build_dedup_key(incident_type, record.membership_id, f"record:{record.id}"),
    )


def is_disciplinary(incident: Incident) -> bool:
    return incident.type != IncidentType.ADMIN_NOTE


def delete_in_late_for_turn(db: Session, *, membership_id: int, expected_start: datetime) -> int:
    result = db.execute(
        delete(Incident).where(
            Incident.membership_id == membership_id,
            Incident.type == IncidentType.IN_LATE,
            Incident.expected_at == normalize_ts(expected_start),
        )
    )
    return int(result.rowcount or 0)


def _lock_incident(db: Session, incident_id: int) -> Incident | None:
    return db.scalar(select(Incident).where(Incident.id == incident_id).with_for_update())


def _lock_membership_by_id(db: Session, membership_id: int) -> Membership:
    membership = db.scalar(select(Membership).where(Membership.id == membership_id).with_for_update())
    if membership is None:
        raise not_found("MEMBERSHIP_NOT_FOUND", "Membership not found.")
    return membership


def _employee_incident(
    db: Session,
    *,
    source: Incident,
    type: IncidentType,
    occurred_at: datetime,
    record_id: int | None = None,
) -> Incident | None:
    return create_incident_once(
        db,
        type=type,
        origin=IncidentOrigin.EMPLOYEE,
        admitted=True,
        response=IncidentResponse.ADMITTED,
        user_id=source.user_id,
        membership_id=source.membership_id,
        company_id=source.company_id,
        branch_id=source.branch_id,
        occurred_at=occurred_at,
        expected_at=source.expected_at,
        record_id=record_id,
        dedup_key=build_dedup_key(type, source.membership_id, source.id),
    )


def _admit(incident: Incident, *, admitted: bool = True) -> ResponseOutcome:
    incident.response = IncidentResponse.ADMITTED
    if admitted:
        incident.admitted = True
    return ResponseOutcome(action="ADMITTED", incident=incident)


def respond_to_incident(
    db: Session,
    *,
    incident_id: int,
    answer: IncidentAnswer | str,
    principal: Principal,
    clock: Clock,
) -> ResponseOutcome:
    try:
        answer = IncidentAnswer(answer)
    except ValueError:
        raise bad_request("INVALID_ANSWER", "Answer must be YES or NO.") from None

    incident = _lock_incident(db, incident_id)
    if incident is None:
        raise not_found("INCIDENT_NOT_FOUND", "Incident not found.")
    if incident.user_id != principal.user_id:
        raise forbidden("Only the affected employee can respond to this incident.")
    if incident.response != IncidentResponse.PENDING:
        return ResponseOutcome(action="NO_OP", incident=incident)

    now_utc = clock.now_utc()
    outcome = ResponseOutcome(action="NO_OP", incident=incident)

    if incident.type == IncidentType.IN_EARLY:
        if answer == IncidentAnswer.YES:
            outcome = _admit(incident)
        else:
            outcome = _replace_with_correction(
                db,
                incident=incident,
                replacement_type=IncidentType.WRONG_IN,
                corrective_type=RecordType.OUT,
                now_utc=now_utc,
            )
    elif incident.type == IncidentType.OUT_EARLY:
        if answer == IncidentAnswer.YES:
            outcome = _replace_with_correction(
                db,
                incident=incident,
                replacement_type=IncidentType.WRONG_OUT,
                corrective_type=RecordType.IN,
                now_utc=now_utc,
            )
        else:
            outcome = _admit(incident)
    elif incident.type == IncidentType.OUT_LATE:
        if answer == IncidentAnswer.YES:
            # still working: acknowledged, not admitted as a fault
            outcome = _admit(incident, admitted=False)
        else:
            membership = _lock_membership_by_id(db, incident.membership_id)
            forgot_out = _employee_incident(
                db,
                source=incident,
                type=IncidentType.FORGOT_OUT,
                occurred_at=now_utc,
            )
            record = insert_corrective_record(
                db,
                type=RecordType.OUT,
                membership=membership,
                branch_id=incident.branch_id,
                created_at=now_utc,
            )
            incident.response = IncidentResponse.DENIED
            outcome = ResponseOutcome(
                action="DENIED",
                incident=incident,
                created_incident=forgot_out,
                corrective_record=record,
            )
    elif incident.type == IncidentType.FORGOT_OUT:
        if answer == IncidentAnswer.NO:
            membership = _lock_membership_by_id(db, incident.membership_id)
            record = insert_corrective_record(
                db,
                type=RecordType.OUT,
                membership=membership,
                branch_id=incident.branch_id,
                created_at=now_utc,
            )
            incident.response = IncidentResponse.DENIED
            outcome = ResponseOutcome(action="DENIED", incident=incident, corrective_record=record)

    if not outcome.changed:
        return outcome

    db.commit()
    logger.info(
        "incident_response_applied",
        extra={
            "incident_id": incident_id,
            "incident_type": incident.type.value,
            "answer": answer.value,
            "action": outcome.action,
            "user_id": principal.user_id,
        },
    )
    return outcome


def _replace_with_correction(
    db: Session,
    *,
    incident: Incident,
    replacement_type: IncidentType,
    corrective_type: RecordType,
    now_utc: datetime,
) -> ResponseOutcome:
    membership = _lock_membership_by_id(db, incident.membership_id)
    replacement = _employee_incident(
        db,
        source=incident,
        type=replacement_type,
        occurred_at=now_utc,
        record_id=incident.record_id,
    )
    record = insert_corrective_record(
        db,
        type=corrective_type,
        membership=membership,
        branch_id=incident.branch_id,
        created_at=now_utc,
    )
    db.delete(incident)
    return ResponseOutcome(
        action="DELETED",
        incident=None,
        created_incident=replacement,
        corrective_record=record,
    )


def confirm_unscheduled_punch(
    db: Session,
    *,
    principal: Principal,
    company_id: int,
    branch_id: int,
    answer: IncidentAnswer | str,
    clock: Clock,
) -> ResponseOutcome:
    """Employee answer to "were you supposed to work now?" after an IN with no expected turn."""
    try:
        answer = IncidentAnswer(answer)
    except ValueError:
        raise bad_request("INVALID_ANSWER", "Answer must be YES or NO.") from None
    ensure_tenant_scope(principal, company_id, branch_id)

    membership = lock_membership(db, user_id=principal.user_id, company_id=company_id, branch_id=branch_id)
    previous = last_record(db, membership.id)
    if previous is None or previous.type != RecordType.IN:
        raise conflict("NO_OPEN_IN", "There is no open IN record to confirm.")

    evaluation = evaluate_punch(
        db,
        user_id=principal.user_id,
        branch_id=branch_id,
        ts_utc=previous.created_at,
        direction=RecordType.IN,
    )
    if evaluation.status != PunchStatus.NO_SHIFT:
        raise conflict("PUNCH_WAS_SCHEDULED", "The open IN record matches an expected turn.")

    if answer == IncidentAnswer.YES:
        return ResponseOutcome(action="NO_OP")

    now_utc = clock.now_utc()
    wrong_in = create_incident_once(
        db,
        type=IncidentType.WRONG_IN,
        origin=IncidentOrigin.EMPLOYEE,
        admitted=True,
        response=IncidentResponse.ADMITTED,
        user_id=membership.user_id,
        membership_id=membership.id,
        company_id=membership.company_id,
        branch_id=branch_id,
        occurred_at=now_utc,
        record_id=previous.id,
        dedup_key=build_dedup_key(IncidentType.WRONG_IN, membership.id, f"record:{previous.id}"),
    )
    record = insert_corrective_record(
        db,
        type=RecordType.OUT,
        membership=membership,
        branch_id=branch_id,
        created_at=now_utc,
    )
    db.commit()
    logger.info(
        "unscheduled_punch_rejected",
        extra={"membership_id": membership.id, "record_id": previous.id, "user_id": principal.user_id},
    )
    return ResponseOutcome(action="DENIED", created_incident=wrong_in, corrective_record=record)


def add_admin_note(
    db: Session,
    *,
    principal: Principal,
    company_id: int,
    branch_id: int,
    user_id: int,
    membership_id: int,
    note: str,
    clock: Clock,
) -> Incident:
    if not role_at_least(principal.role, Role.ADMIN_SUCURSAL):
        raise forbidden("Only administrators can add notes.")
    ensure_tenant_scope(principal, company_id, branch_id)

    cleaned = (note or "").strip()
    if not cleaned:
        raise bad_request("NOTE_REQUIRED", "Note text is required.")

    membership = db.get(Membership, membership_id)
    if membership is None or membership.user_id != user_id or membership.company_id != company_id:
        raise not_found("MEMBERSHIP_NOT_FOUND", "Membership not found for this user and company.")
    if membership.branch_id != branch_id:
        raise forbidden("Membership belongs to another branch.", code="TENANT_FORBIDDEN")

    incident = create_incident_once(
        db,
        type=IncidentType.ADMIN_NOTE,
        origin=IncidentOrigin.ADMIN,
        admitted=True,
        response=IncidentResponse.ADMITTED,
        user_id=user_id,
        membership_id=membership_id,
        company_id=company_id,
        branch_id=branch_id,
        occurred_at=clock.now_utc(),
        note=cleaned,
        dedup_key=None,
    )
    db.commit()
    return incident


def list_incidents(
    db: Session,
    *,
    company_id: int,
    branch_id: int | None = None,
    user_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> list[Incident]:
    stmt = select(Incident).where(Incident.company_id == company_id)
    if branch_id is not None:
        stmt = stmt.where(Incident.branch_id == branch_id)
    if user_id is not None:
        stmt = stmt.where(Incident.user_id == user_id)
    if date_from is not None:
        stmt = stmt.where(Incident.occurred_at >= normalize_ts(date_from))
    if date_to is not None:
        stmt = stmt.where(Incident.occurred_at <= normalize_ts(date_to))
    return list(db.scalars(stmt.order_by(Incident.occurred_at.desc(), Incident.id.desc())).all())
