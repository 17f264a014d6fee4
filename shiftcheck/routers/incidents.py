from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from shiftcheck.audit import audit_change
from shiftcheck.clock import Clock, get_clock
from shiftcheck.db import get_db
from shiftcheck.models import Role
from shiftcheck.schemas import AdminNoteCreate, IncidentAnswerRead, IncidentAnswerRequest, IncidentRead
from shiftcheck.security import Principal, get_current_principal, require_roles
from shiftcheck.services.incidents import ResponseOutcome, add_admin_note, list_incidents, respond_to_incident
from shiftcheck.services.tenancy import ensure_tenant_scope, scoped_branch_id

router = APIRouter(tags=["incidents"])


def to_answer_read(outcome: ResponseOutcome) -> IncidentAnswerRead:
    return IncidentAnswerRead(
        action=outcome.action,
        incident=IncidentRead.model_validate(outcome.incident) if outcome.incident is not None else None,
        created_incident=(
            IncidentRead.model_validate(outcome.created_incident) if outcome.created_incident is not None else None
        ),
        corrective_record_id=outcome.corrective_record.id if outcome.corrective_record is not None else None,
    )


@router.get("/api/incidents", response_model=list[IncidentRead])
def read_incidents(
    company_id: int = Query(ge=1),
    branch_id: int | None = Query(default=None, ge=1),
    user_id: int | None = Query(default=None, ge=1),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    principal: Principal = Depends(require_roles(Role.ADMIN_SUCURSAL)),
    db: Session = Depends(get_db),
) -> list[IncidentRead]:
    branch_id = scoped_branch_id(principal, branch_id)
    ensure_tenant_scope(principal, company_id, branch_id)
    incidents = list_incidents(
        db,
        company_id=company_id,
        branch_id=branch_id,
        user_id=user_id,
        date_from=date_from,
        date_to=date_to,
    )
    return [IncidentRead.model_validate(item) for item in incidents]


@router.get("/api/incidents/mine", response_model=list[IncidentRead])
def read_my_incidents(
    company_id: int = Query(ge=1),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> list[IncidentRead]:
    ensure_tenant_scope(principal, company_id)
    incidents = list_incidents(
        db,
        company_id=company_id,
        user_id=principal.user_id,
        date_from=date_from,
        date_to=date_to,
    )
    return [IncidentRead.model_validate(item) for item in incidents]


@router.post("/api/incidents/notes", response_model=IncidentRead, status_code=status.HTTP_201_CREATED)
def create_admin_note(
    payload: AdminNoteCreate,
    request: Request,
    principal: Principal = Depends(require_roles(Role.ADMIN_SUCURSAL)),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> IncidentRead:
    incident = add_admin_note(
        db,
        principal=principal,
        company_id=payload.company_id,
        branch_id=payload.branch_id,
        user_id=payload.user_id,
        membership_id=payload.membership_id,
        note=payload.note,
        clock=clock,
    )
    audit_change(
        db,
        request,
        principal,
        clock,
        action="INCIDENT_NOTE_ADD",
        entity_type="incident",
        entity_id=incident.id,
        details={"user_id": payload.user_id, "branch_id": payload.branch_id},
    )
    return IncidentRead.model_validate(incident)


@router.post("/api/incidents/{incident_id}/respond", response_model=IncidentAnswerRead)
def respond(
    incident_id: int,
    payload: IncidentAnswerRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> IncidentAnswerRead:
    outcome = respond_to_incident(
        db,
        incident_id=incident_id,
        answer=payload.answer,
        principal=principal,
        clock=clock,
    )
    if outcome.changed:
        audit_change(
            db,
            request,
            principal,
            clock,
            action="INCIDENT_RESPOND",
            entity_type="incident",
            entity_id=incident_id,
            details={"answer": payload.answer, "action": outcome.action},
        )
    return to_answer_read(outcome)
