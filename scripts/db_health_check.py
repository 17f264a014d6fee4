#!/usr/bin/env python
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection

from shiftcheck.services.schema_guard import EXPECTED_ALEMBIC_HEAD
from shiftcheck.settings import get_settings

MULTIPLE_ACTIVE_SCHEDULES_SQL = """
    select user_id, count(*)
    from schedules
    where valid_to is null and confirmed_at is not null
    group by user_id
    having count(*) > 1
"""

OVERLAPPING_SHIFTS_SQL = """
    select a.id, b.id, a.schedule_id, a.weekday
    from shifts a
    join shifts b
      on a.schedule_id = b.schedule_id
     and a.weekday = b.weekday
     and a.id < b.id
    where a.start_time < b.end_time
      and a.end_time > b.start_time
      and (a.valid_to is null or a.valid_to >= b.valid_from)
      and (b.valid_to is null or b.valid_to >= a.valid_from)
    limit 50
"""

CONSECUTIVE_SAME_TYPE_RECORDS_SQL = """
    select membership_id, id, type
    from (
        select
            id,
            membership_id,
            type,
            lag(type) over (partition by membership_id order by created_at, id) as previous_type
        from records
    ) ordered
    where previous_type = type
    limit 50
"""


def _rows(conn: Connection, sql: str) -> list[list[Any]]:
    return [list(row) for row in conn.execute(text(sql)).fetchall()]


def run() -> dict[str, Any]:
    database_url = get_settings().database_url
    engine = create_engine(database_url)
    report: dict[str, Any] = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict[str, Any]) -> None:
        report["checks"].append({"name": name, "status": status, "details": details})

    with engine.connect() as conn:
        tables = set(
            conn.execute(
                text("select table_name from information_schema.tables where table_schema = 'public'")
            ).scalars()
        )

        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = list(conn.execute(text("select version_num from alembic_version")).scalars())
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_ALEMBIC_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_ALEMBIC_HEAD, "current": current_versions},
        )

        if "schedules" in tables:
            rows = _rows(conn, MULTIPLE_ACTIVE_SCHEDULES_SQL)
            add("multiple_active_schedules", "fail" if rows else "ok", {"rows": rows})

        if "shifts" in tables:
            rows = _rows(conn, OVERLAPPING_SHIFTS_SQL)
            add("overlapping_shifts", "fail" if rows else "ok", {"rows": rows})

        if "records" in tables:
            rows = _rows(conn, CONSECUTIVE_SAME_TYPE_RECORDS_SQL)
            add("consecutive_same_type_records", "warn" if rows else "ok", {"rows": rows})

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2, default=str))
