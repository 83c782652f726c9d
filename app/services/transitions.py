from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping

from sqlalchemy import bindparam, text
from sqlalchemy.orm import Session

from app.models.status import sources_for

_TABLES = {"orders", "service_orders", "withdrawals", "refunds"}


def guarded_status_update(
    db: Session,
    table: str,
    row_id: int,
    transitions: Mapping,
    target: str | Enum,
    *,
    set_sql: str = "",
    where_sql: str = "",
    params: dict[str, Any] | None = None,
    from_statuses: Iterable[str | Enum] | None = None,
) -> bool:
    """
    Moves one row to `target` only if its persisted status is a legal source
    (optionally narrowed to `from_statuses`). The check and the write are one
    UPDATE, so concurrent callers cannot both win. Returns True for the caller
    that performed the transition.
    """
    if table not in _TABLES:
        raise ValueError(f"unknown table {table}")

    target_value = target.value if isinstance(target, Enum) else str(target)
    sources = sources_for(transitions, target_value)
    if from_statuses is not None:
        allowed = {s.value if isinstance(s, Enum) else str(s) for s in from_statuses}
        sources = [s for s in sources if s in allowed]
    if not sources:
        return False

    extra_set = f", {set_sql}" if set_sql else ""
    extra_where = f" and ({where_sql})" if where_sql else ""
    stmt = text(
        f"""
        update {table}
           set status = :target,
               updated_at = :now{extra_set}
         where id = :id
           and status in :sources{extra_where}
        """
    ).bindparams(bindparam("sources", expanding=True))

    res = db.execute(
        stmt,
        {
            **(params or {}),
            "id": int(row_id),
            "target": target_value,
            "sources": sources,
            "now": datetime.now(timezone.utc),
        },
    )
    return res.rowcount == 1


def current_status(db: Session, table: str, row_id: int) -> str | None:
    if table not in _TABLES:
        raise ValueError(f"unknown table {table}")

    row = db.execute(text(f"select status from {table} where id = :id limit 1"), {"id": int(row_id)}).fetchone()
    return str(row[0]) if row else None
