from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session

from shiftcheck.clock import Clock
from shiftcheck.models import AuditLog
from shiftcheck.security import Principal

logger = logging.getLogger("shiftcheck.audit")


def audit_change(
    db: Session,
    request: Request,
    principal: Principal,
    clock: Clock,
    *,
    action: str,
    entity_type: str,
    entity_id: int | str | None,
    details: dict[str, Any] | None = None,
) -> AuditLog | None:
    """Persist who changed which schedule or incident. Losing an entry never fails the request."""
    entry = AuditLog(
        ts_utc=clock.now_utc(),
        actor_type=principal.audit_actor_type,
        actor_id=str(principal.user_id),
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        success=True,
        details=details or {},
    )
    context = {
        "request_id": getattr(request.state, "request_id", None),
        "action": action,
        "actor_id": entry.actor_id,
        "entity_type": entity_type,
        "entity_id": entry.entity_id,
    }
    db.add(entry)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("audit_log_write_failed", extra=context)
        return None

    logger.info("audit_event", extra={**context, "details": entry.details})
    return entry
