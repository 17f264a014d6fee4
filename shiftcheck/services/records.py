from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from shiftcheck.models import Membership, Record, RecordType
from shiftcheck.services.time_utils import normalize_ts

logger = logging.getLogger("shiftcheck.punches")


def last_record(db: Session, membership_id: int) -> Record | None:
    return db.scalar(
        select(Record)
        .where(Record.membership_id == membership_id)
        .order_by(Record.created_at.desc(), Record.id.desc())
        .limit(1)
    )


def create_record(
    db: Session,
    *,
    type: RecordType,
    user_id: int,
    membership_id: int,
    company_id: int,
    branch_id: int,
    created_at: datetime,
    is_corrective: bool = False,
) -> Record:
    record = Record(
        type=type,
        user_id=user_id,
        membership_id=membership_id,
        company_id=company_id,
        branch_id=branch_id,
        created_at=normalize_ts(created_at),
        is_corrective=is_corrective,
    )
    db.add(record)
    db.flush()
    return record


def insert_corrective_record(
    db: Session,
    *,
    type: RecordType,
    membership: Membership,
    branch_id: int,
    created_at: datetime,
) -> Record | None:
    previous = last_record(db, membership.id)
    if previous is not None and previous.type == type:
        logger.warning(
            "corrective_record_skipped",
            extra={
                "membership_id": membership.id,
                "record_type": type.value,
                "last_record_id": previous.id,
            },
        )
        return None
    if previous is None and type == RecordType.OUT:
        logger.warning(
            "corrective_record_skipped",
            extra={"membership_id": membership.id, "record_type": type.value, "last_record_id": None},
        )
        return None

    created_at = normalize_ts(created_at)
    if previous is not None and normalize_ts(previous.created_at) > created_at:
        created_at = normalize_ts(previous.created_at)

    record = create_record(
        db,
        type=type,
        user_id=membership.user_id,
        membership_id=membership.id,
        company_id=membership.company_id,
        branch_id=branch_id,
        created_at=created_at,
        is_corrective=True,
    )
    logger.info(
        "corrective_record_created",
        extra={"membership_id": membership.id, "record_id": record.id, "record_type": type.value},
    )
    return record


def has_in_between(db: Session, membership_id: int, start_utc: datetime, end_utc: datetime) -> bool:
    found = db.scalar(
        select(Record.id)
        .where(
            Record.membership_id == membership_id,
            Record.type == RecordType.IN,
            Record.created_at >= start_utc,
            Record.created_at < end_utc,
        )
        .limit(1)
    )
    return found is not None


def has_out_after(db: Session, membership_id: int, since_utc: datetime) -> bool:
    found = db.scalar(
        select(Record.id)
        .where(
            Record.membership_id == membership_id,
            Record.type == RecordType.OUT,
            Record.created_at >= since_utc,
        )
        .limit(1)
    )
    return found is not None
