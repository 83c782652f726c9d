# app/api/routes/payouts.py
#
# Admin view of creator payout attempts; failed rows are reconciled by hand.
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.auth import require_admin
from app.core.db import get_db
from app.core.errors import ValidationFailed
from app.models.status import PayoutStatus
from app.services.payouts import list_payouts

router = APIRouter()


@router.get("/payouts/admin")
def admin_list_payouts(
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    status: Optional[str] = Query(None, description="queued/sending/sent/skipped/failed"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    st = (status or "").strip().lower() or None
    if st:
        try:
            PayoutStatus(st)
        except ValueError:
            raise ValidationFailed(f"Unknown payout status: {st}")
    return list_payouts(db, status=st, page=page, page_size=page_size)
