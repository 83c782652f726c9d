# app/api/routes/withdrawals.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_context
from app.core.auth import require_admin, require_creator
from app.core.db import get_db
from app.schemas.withdrawals import (
    BalanceResponse,
    CompleteWithdrawalRequest,
    RejectWithdrawalRequest,
    WithdrawalRequest,
)
from app.services import withdrawals as ledger
from app.services.context import ServiceContext
from app.services.effects import EffectQueue

router = APIRouter()


# -----------------------------
# Creator
# -----------------------------
@router.get("/withdrawals/balance", response_model=BalanceResponse)
def balance(user: dict = Depends(require_creator), db: Session = Depends(get_db)):
    return ledger.get_balance(db, user["user_id"])


@router.get("/withdrawals/my")
def my_withdrawals(
    user: dict = Depends(require_creator),
    db: Session = Depends(get_db),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    return ledger.list_for_creator(db, user["user_id"], page=page, page_size=page_size)


@router.post("/withdrawals/request", status_code=201)
def request_withdrawal(
    body: WithdrawalRequest,
    user: dict = Depends(require_creator),
    db: Session = Depends(get_db),
):
    w = ledger.request_withdrawal(
        db,
        user["user_id"],
        body.amount,
        payout_method=body.payout_method,
        note=body.note,
        payout_details=body.payout_details,
    )
    return {"ok": True, "withdrawal": w}


# -----------------------------
# Admin
# -----------------------------
@router.get("/withdrawals/admin")
def admin_list(
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    status: Optional[str] = Query(None, description="pending/approved/processing/completed/rejected"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    return ledger.list_all(db, status=(status or "").strip().lower() or None, page=page, page_size=page_size)


@router.post("/withdrawals/admin/{withdrawal_id}/approve")
def admin_approve(
    withdrawal_id: int,
    background_tasks: BackgroundTasks,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    effects = EffectQueue()
    w = ledger.approve(db, ctx, effects, withdrawal_id, admin["user_id"])
    background_tasks.add_task(effects.flush)
    return {"ok": True, "withdrawal": w}


@router.post("/withdrawals/admin/{withdrawal_id}/reject")
def admin_reject(
    withdrawal_id: int,
    body: RejectWithdrawalRequest,
    background_tasks: BackgroundTasks,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    effects = EffectQueue()
    w = ledger.reject(db, ctx, effects, withdrawal_id, admin["user_id"], body.admin_note)
    background_tasks.add_task(effects.flush)
    return {"ok": True, "withdrawal": w}


@router.post("/withdrawals/admin/{withdrawal_id}/process")
def admin_process(
    withdrawal_id: int,
    background_tasks: BackgroundTasks,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    effects = EffectQueue()
    w = ledger.mark_processing(db, ctx, effects, withdrawal_id, admin["user_id"])
    background_tasks.add_task(effects.flush)
    return {"ok": True, "withdrawal": w}


@router.post("/withdrawals/admin/{withdrawal_id}/complete")
def admin_complete(
    withdrawal_id: int,
    background_tasks: BackgroundTasks,
    body: CompleteWithdrawalRequest | None = None,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    effects = EffectQueue()
    w = ledger.complete(
        db, ctx, effects, withdrawal_id, admin["user_id"],
        stripe_transfer_id=body.stripe_transfer_id if body else None,
    )
    background_tasks.add_task(effects.flush)
    return {"ok": True, "withdrawal": w}
