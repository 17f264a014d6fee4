from datetime import date, datetime, time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from shiftcheck.models import (
    ExceptionType,
    IncidentOrigin,
    IncidentResponse,
    IncidentType,
    RecordType,
)


class ScheduleDraftCreate(BaseModel):
    company_id: int = Field(ge=1)
    branch_id: int = Field(ge=1)
    user_id: int = Field(ge=1)


class ScheduleRead(BaseModel):
    id: int
    user_id: int
    branch_id: int
    valid_from: datetime
    valid_to: datetime | None
    confirmed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class ShiftCreate(BaseModel):
    weekday: int
    start_time: str = Field(min_length=4, max_length=5)
    end_time: str = Field(min_length=4, max_length=5)
    valid_from: date | None = None
    valid_to: date | None = None


class ShiftChangeRequest(BaseModel):
    from_date: date
    start_time: str = Field(min_length=4, max_length=5)
    end_time: str = Field(min_length=4, max_length=5)


class ShiftDeleteRequest(BaseModel):
    mode: str
    day: date
    start_time: str = Field(min_length=4, max_length=5)
    end_time: str = Field(min_length=4, max_length=5)


class ShiftRead(BaseModel):
    id: int
    schedule_id: int
    weekday: int
    start_time: time
    end_time: time
    valid_from: date
    valid_to: date | None

    model_config = ConfigDict(from_attributes=True)


class ExceptionCreate(BaseModel):
    type: ExceptionType
    day: date
    start_time: str | None = Field(default=None, min_length=4, max_length=5)
    end_time: str | None = Field(default=None, min_length=4, max_length=5)


class ExceptionBatchCreate(BaseModel):
    items: list[ExceptionCreate] = Field(min_length=1, max_length=366)


class ScheduleExceptionRead(BaseModel):
    id: int
    schedule_id: int
    day: date
    type: ExceptionType
    start_time: time | None
    end_time: time | None

    model_config = ConfigDict(from_attributes=True)


class VacationCreate(BaseModel):
    day: date


class VacationDeleteRequest(BaseModel):
    day: date
    mode: str = "single"


class VacationDeleteRead(BaseModel):
    deleted: int


class WeeklyMinutesRead(BaseModel):
    hours: int
    minutes: int
    total_minutes: int


class TurnRead(BaseModel):
    start_time: str
    end_time: str
    source: str


class ExpectedDayRead(BaseModel):
    date: date
    weekday: int
    turns: list[TurnRead] = Field(default_factory=list)
    is_day_off: bool
    is_vacation: bool
    schedule_id: int | None = None


class ScheduleWeekRead(BaseModel):
    schedule_id: int | None
    week_start: date
    days: list[ExpectedDayRead] = Field(default_factory=list)


class IncidentRead(BaseModel):
    id: int
    type: IncidentType
    origin: IncidentOrigin
    admitted: bool
    response: IncidentResponse
    expected_at: datetime | None
    occurred_at: datetime
    user_id: int
    membership_id: int
    company_id: int
    branch_id: int
    record_id: int | None
    note: str | None

    model_config = ConfigDict(from_attributes=True)


class AdminNoteCreate(BaseModel):
    company_id: int = Field(ge=1)
    branch_id: int = Field(ge=1)
    user_id: int = Field(ge=1)
    membership_id: int = Field(ge=1)
    note: str = Field(min_length=1, max_length=2000)


class IncidentAnswerRequest(BaseModel):
    answer: Literal["YES", "NO"]


class IncidentAnswerRead(BaseModel):
    action: str
    incident: IncidentRead | None = None
    created_incident: IncidentRead | None = None
    corrective_record_id: int | None = None


class PunchCreate(BaseModel):
    company_id: int = Field(ge=1)
    branch_id: int = Field(ge=1)
    direction: RecordType


class PunchPreviewRequest(BaseModel):
    branch_id: int = Field(ge=1)
    direction: RecordType


class PunchEvaluationRead(BaseModel):
    status: Literal["OK", "EARLY", "LATE", "NO_SHIFT"]
    expected_time: str | None = None
    diff_minutes: int | None = None
    expected_at_utc: datetime | None = None


class PunchRead(BaseModel):
    record_id: int
    type: RecordType
    created_at: datetime
    evaluation: PunchEvaluationRead
    incident_id: int | None = None
    incident_type: IncidentType | None = None
    requires_confirmation: bool = False


class UnscheduledPunchConfirm(BaseModel):
    company_id: int = Field(ge=1)
    branch_id: int = Field(ge=1)
    answer: Literal["YES", "NO"]
