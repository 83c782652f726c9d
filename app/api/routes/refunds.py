# app/api/routes/refunds.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_context
from app.core.auth import require_admin, require_user
from app.core.db import get_db
from app.schemas.refunds import RefundRequest, RejectRefundRequest
from app.services import refunds as refund_service
from app.services.context import ServiceContext
from app.services.effects import EffectQueue

router = APIRouter()


# -----------------------------
# Buyer
# -----------------------------
@router.post("/refunds/request", status_code=201)
def request_refund(
    body: RefundRequest,
    user: dict = Depends(require_user),
    db: Session = Depends(get_db),
):
    r = refund_service.request_refund(db, user["user_id"], body.order_id, body.reason)
    return {"ok": True, "refund": r}


@router.get("/refunds/order/{order_id}")
def refund_for_order(
    order_id: int,
    user: dict = Depends(require_user),
    db: Session = Depends(get_db),
):
    return {"ok": True, "refund": refund_service.get_for_order(db, user["user_id"], order_id)}


# -----------------------------
# Admin
# -----------------------------
@router.get("/refunds/admin")
def admin_list(
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    status: Optional[str] = Query(None, description="requested/approved/processed/rejected"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    return refund_service.list_all(db, status=(status or "").strip().lower() or None, page=page, page_size=page_size)


@router.post("/refunds/admin/{refund_id}/approve")
def admin_approve(
    refund_id: int,
    background_tasks: BackgroundTasks,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    effects = EffectQueue()
    r = refund_service.approve(db, ctx, effects, refund_id, admin["user_id"])
    background_tasks.add_task(effects.flush)
    return {"ok": True, "refund": r}


@router.post("/refunds/admin/{refund_id}/reject")
def admin_reject(
    refund_id: int,
    background_tasks: BackgroundTasks,
    body: RejectRefundRequest | None = None,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    effects = EffectQueue()
    r = refund_service.reject(db, ctx, effects, refund_id, admin["user_id"], body.admin_note if body else None)
    background_tasks.add_task(effects.flush)
    return {"ok": True, "refund": r}
