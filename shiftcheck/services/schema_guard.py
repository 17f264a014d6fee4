from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

EXPECTED_ALEMBIC_HEAD = "0003_incidents_audit"

REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "memberships": {"id", "user_id", "company_id", "branch_id", "role", "active"},
    "schedules": {"id", "user_id", "branch_id", "valid_from", "valid_to", "confirmed_at"},
    "shifts": {"id", "schedule_id", "weekday", "start_time", "end_time", "valid_from", "valid_to"},
    "schedule_exceptions": {"id", "schedule_id", "day", "type", "start_time", "end_time"},
    "records": {"id", "type", "membership_id", "is_corrective", "created_at"},
    "incidents": {"id", "type", "origin", "response", "expected_at", "occurred_at", "dedup_key"},
    "alembic_version": {"version_num"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "incident_type": {"FORGOT_IN", "NO_SHOW", "OUT_LATE", "FORGOT_OUT", "WRONG_IN", "WRONG_OUT", "ADMIN_NOTE"},
    "incident_response": {"PENDING", "ADMITTED", "DENIED"},
    "schedule_exception_type": {"VACATION", "DAY_OFF", "MODIFIED_SHIFT", "EXTRA_SHIFT"},
}


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    alembic_revision: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "alembic_revision": self.alembic_revision,
            "issues": list(self.issues),
            "warnings": list(self.warnings),
        }


def _check_columns(inspector: Any, issues: list[str]) -> None:
    for table_name, required in REQUIRED_TABLE_COLUMNS.items():
        try:
            present = {str(column.get("name")) for column in inspector.get_columns(table_name)}
        except Exception as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue
        missing = sorted(required - present)
        if missing:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing)}")


def _enum_labels(inspector: Any, warnings: list[str]) -> dict[str, set[str]]:
    try:
        enums = inspector.get_enums() or []
    except Exception as exc:
        warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        return {}
    labels_by_name: dict[str, set[str]] = {}
    for item in enums:
        name = str(item.get("name") or "").strip()
        labels = item.get("labels")
        if name and isinstance(labels, list):
            labels_by_name[name] = {str(label) for label in labels}
    return labels_by_name


def _check_enums(inspector: Any, issues: list[str], warnings: list[str]) -> None:
    labels_by_name = _enum_labels(inspector, warnings)
    for enum_name, required in REQUIRED_ENUM_VALUES.items():
        labels = labels_by_name.get(enum_name)
        if labels is None:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing = sorted(required - labels)
        if missing:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing)}")


def _read_alembic_revision(engine: Engine, issues: list[str], warnings: list[str]) -> str | None:
    try:
        with engine.connect() as connection:
            value = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except Exception as exc:
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")
        return None
    revision = str(value).strip() if value is not None else ""
    if not revision:
        issues.append("ALEMBIC_VERSION_EMPTY")
        return None
    if revision != EXPECTED_ALEMBIC_HEAD:
        warnings.append(f"ALEMBIC_REVISION_MISMATCH:{revision}!={EXPECTED_ALEMBIC_HEAD}")
    return revision


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)

    inspector = inspect(engine)
    _check_columns(inspector, issues)
    _check_enums(inspector, issues, warnings)
    revision = _read_alembic_revision(engine, issues, warnings)

    return SchemaGuardResult(
        ok=not issues,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
        alembic_revision=revision,
    )
