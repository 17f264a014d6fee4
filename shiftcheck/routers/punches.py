from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from shiftcheck.clock import Clock, get_clock
from shiftcheck.db import get_db
from shiftcheck.routers.incidents import to_answer_read
from shiftcheck.schemas import (
    IncidentAnswerRead,
    PunchCreate,
    PunchEvaluationRead,
    PunchPreviewRequest,
    PunchRead,
    UnscheduledPunchConfirm,
)
from shiftcheck.security import Principal, get_current_principal
from shiftcheck.services.incidents import confirm_unscheduled_punch
from shiftcheck.services.punches import preview_punch, record_punch

router = APIRouter(tags=["punches"])


@router.post("/api/punches", response_model=PunchRead, status_code=status.HTTP_201_CREATED)
def create_punch(
    payload: PunchCreate,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> PunchRead:
    outcome = record_punch(
        db,
        principal=principal,
        company_id=payload.company_id,
        branch_id=payload.branch_id,
        direction=payload.direction,
        clock=clock,
    )
    request.state.record_id = outcome.record.id
    return PunchRead.model_validate(outcome.to_dict())


@router.post("/api/punches/preview", response_model=PunchEvaluationRead)
def preview(
    payload: PunchPreviewRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> PunchEvaluationRead:
    evaluation = preview_punch(
        db,
        user_id=principal.user_id,
        branch_id=payload.branch_id,
        direction=payload.direction,
        clock=clock,
    )
    return PunchEvaluationRead.model_validate(evaluation.to_dict())


@router.post("/api/punches/confirm-unscheduled", response_model=IncidentAnswerRead)
def confirm_unscheduled(
    payload: UnscheduledPunchConfirm,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> IncidentAnswerRead:
    outcome = confirm_unscheduled_punch(
        db,
        principal=principal,
        company_id=payload.company_id,
        branch_id=payload.branch_id,
        answer=payload.answer,
        clock=clock,
    )
    return to_answer_read(outcome)
