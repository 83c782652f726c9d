from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.marketplace import AuditLog


def append_audit(
    db: Session,
    *,
    actor_id: int | None,
    action: str,
    target_type: str,
    target_id: int | str | None,
    details: dict[str, Any] | None = None,
) -> None:
    """
    Adds an audit row to the caller's transaction; the caller commits.
    actor_id=None marks a system action (e.g. a processor event).
    """
    db.add(
        AuditLog(
            actor_id=int(actor_id) if actor_id is not None else None,
            action=str(action),
            target_type=str(target_type),
            target_id=str(target_id) if target_id is not None else None,
            details=details or {},
            created_at=datetime.now(timezone.utc),
        )
    )
    db.flush()


def list_audit_for_target(db: Session, target_type: str, target_id: int | str) -> list[dict[str, Any]]:
    rows = db.scalars(
        select(AuditLog)
        .where(AuditLog.target_type == str(target_type), AuditLog.target_id == str(target_id))
        .order_by(AuditLog.id.asc())
    ).all()

    return [
        {
            "id": int(r.id),
            "actor_id": int(r.actor_id) if r.actor_id is not None else None,
            "action": r.action,
            "details": r.details or {},
            "created_at": r.created_at.isoformat() if r.created_at else None,
        }
        for r in rows
    ]
