# app/services/withdrawals.py
#
# Creator balance ledger and the withdrawal state machine.
#
#   balance = sum(creator payout of items in paid orders)
#           - sum(withdrawals pending / approved / processing / completed)
#
# The balance is never stored; it is recomputed on every read. At most one
# pending request per creator is enforced by a partial unique index.
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core import config
from app.core.errors import DuplicatePendingWithdrawal, NotFound, ValidationFailed
from app.core.log import component_logger
from app.core.money import fmt_cents, to_cents
from app.models.marketplace import Withdrawal
from app.models.status import (
    WITHDRAWAL_RESERVED_STATUSES,
    WITHDRAWAL_TRANSITIONS,
    WithdrawalStatus,
    ensure_transition,
)
from app.services.audit import append_audit
from app.services.context import ServiceContext
from app.services.effects import EffectQueue
from app.services.transitions import guarded_status_update

_log = component_logger("withdrawals")

PAYOUT_METHODS = ("stripe_connect", "bank_transfer")


# -----------------------------
# Balance
# -----------------------------
def _earned_cents(db: Session, creator_id: int) -> int:
    v = db.execute(
        text(
            """
            select coalesce(sum(oi.creator_payout_cents), 0)
              from order_items oi
              join orders o on o.id = oi.order_id
             where oi.creator_id = :c
               and o.status = :paid
            """
        ),
        {"c": int(creator_id), "paid": "paid"},
    ).scalar()
    return int(v or 0)


def _reserved_cents(db: Session, creator_id: int) -> int:
    v = db.execute(
        text(
            """
            select coalesce(sum(amount_cents), 0)
              from withdrawals
             where creator_id = :c
               and status in :statuses
            """
        ).bindparams(bindparam("statuses", expanding=True)),
        {"c": int(creator_id), "statuses": [s.value for s in WITHDRAWAL_RESERVED_STATUSES]},
    ).scalar()
    return int(v or 0)


def _pending_count(db: Session, creator_id: int) -> int:
    v = db.execute(
        text("select count(*) from withdrawals where creator_id = :c and status = :st"),
        {"c": int(creator_id), "st": WithdrawalStatus.PENDING.value},
    ).scalar()
    return int(v or 0)


def get_balance(db: Session, creator_id: int) -> dict[str, Any]:
    earned = _earned_cents(db, creator_id)
    reserved = _reserved_cents(db, creator_id)
    available = max(0, earned - reserved)
    return {
        "total_earnings_cents": earned,
        "total_withdrawn_cents": reserved,
        "available_balance_cents": available,
        "total_earnings": fmt_cents(earned),
        "total_withdrawn": fmt_cents(reserved),
        "available_balance": fmt_cents(available),
        "pending_withdrawals": _pending_count(db, creator_id),
        "currency": config.CURRENCY,
    }


# -----------------------------
# Serialization
# -----------------------------
def _withdrawal_dict(w: Withdrawal) -> dict[str, Any]:
    return {
        "id": int(w.id),
        "creator_id": int(w.creator_id),
        "amount_cents": int(w.amount_cents),
        "amount": fmt_cents(w.amount_cents),
        "currency": w.currency,
        "status": w.status,
        "payout_method": w.payout_method,
        "payout_details": w.payout_details or {},
        "note": w.note,
        "admin_note": w.admin_note,
        "processed_by": int(w.processed_by) if w.processed_by is not None else None,
        "processed_at": w.processed_at.isoformat() if w.processed_at else None,
        "completed_at": w.completed_at.isoformat() if w.completed_at else None,
        "stripe_transfer_id": w.stripe_transfer_id,
        "created_at": w.created_at.isoformat() if w.created_at else None,
    }


def _get(db: Session, withdrawal_id: int) -> Withdrawal:
    w = db.get(Withdrawal, int(withdrawal_id))
    if not w:
        raise NotFound("Withdrawal not found")
    return w


# -----------------------------
# Request (creator)
# -----------------------------
def _payout_details(db: Session, creator_id: int, method: str, details: dict[str, Any] | None) -> dict[str, Any]:
    if method == "stripe_connect":
        acct = db.execute(
            text("select stripe_account_id from creator_profiles where user_id = :u limit 1"),
            {"u": int(creator_id)},
        ).scalar()
        return {"stripe_account_id": acct}
    return dict(details or {})


def insert_pending_withdrawal(
    db: Session,
    *,
    creator_id: int,
    amount_cents: int,
    payout_method: str,
    payout_details: dict[str, Any],
    note: str | None,
) -> Withdrawal:
    """The unique index is the real guard; a concurrent winner surfaces here as a conflict."""
    now = datetime.now(timezone.utc)
    w = Withdrawal(
        creator_id=int(creator_id),
        amount_cents=int(amount_cents),
        currency=config.CURRENCY,
        status=WithdrawalStatus.PENDING.value,
        payout_method=payout_method,
        payout_details=payout_details,
        note=note,
        created_at=now,
        updated_at=now,
    )
    try:
        with db.begin_nested():
            db.add(w)
            db.flush()
    except IntegrityError:
        raise DuplicatePendingWithdrawal()
    return w


def request_withdrawal(
    db: Session,
    creator_id: int,
    amount: Decimal,
    payout_method: str = "stripe_connect",
    note: str | None = None,
    payout_details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    try:
        amount_cents = to_cents(amount)
    except (ArithmeticError, ValueError):
        raise ValidationFailed("Invalid withdrawal amount")

    if amount_cents < to_cents(config.MIN_WITHDRAWAL_AMOUNT):
        raise ValidationFailed(
            f"Minimum withdrawal amount is ${fmt_cents(to_cents(config.MIN_WITHDRAWAL_AMOUNT))}",
            code="below_minimum",
        )
    if amount_cents > to_cents(config.MAX_WITHDRAWAL_AMOUNT):
        raise ValidationFailed(
            f"Maximum withdrawal amount is ${fmt_cents(to_cents(config.MAX_WITHDRAWAL_AMOUNT))}",
            code="above_maximum",
        )

    if payout_method not in PAYOUT_METHODS:
        raise ValidationFailed("Unsupported payout method")

    # fast path for a clear message; the index decides under races
    if _pending_count(db, creator_id) > 0:
        raise DuplicatePendingWithdrawal()

    balance = get_balance(db, creator_id)
    if amount_cents > balance["available_balance_cents"]:
        raise ValidationFailed("Insufficient balance", code="insufficient_balance")

    w = insert_pending_withdrawal(
        db,
        creator_id=creator_id,
        amount_cents=amount_cents,
        payout_method=payout_method,
        payout_details=_payout_details(db, creator_id, payout_method, payout_details),
        note=(note or "").strip() or None,
    )
    db.commit()
    _log("withdrawal requested", "creator", creator_id, fmt_cents(amount_cents))
    return _withdrawal_dict(w)


# -----------------------------
# Admin transitions
# -----------------------------
def _creator_contact(db: Session, creator_id: int) -> tuple[str | None, str | None]:
    row = db.execute(
        text("select email, name from users where id = :id limit 1"),
        {"id": int(creator_id)},
    ).fetchone()
    return (row[0], row[1]) if row else (None, None)


def _transition(
    db: Session,
    ctx: ServiceContext,
    effects: EffectQueue,
    withdrawal_id: int,
    admin_id: int,
    target: WithdrawalStatus,
    *,
    set_sql: str = "",
    params: dict[str, Any] | None = None,
    details: dict[str, Any] | None = None,
    reason: str | None = None,
) -> dict[str, Any]:
    w = _get(db, withdrawal_id)
    ensure_transition(WITHDRAWAL_TRANSITIONS, w.status, target, noun="withdrawal")

    won = guarded_status_update(
        db, "withdrawals", w.id, WITHDRAWAL_TRANSITIONS, target, set_sql=set_sql, params=params
    )
    if not won:
        # someone else moved it between our read and the update
        db.refresh(w)
        ensure_transition(WITHDRAWAL_TRANSITIONS, w.status, target, noun="withdrawal")

    append_audit(
        db,
        actor_id=admin_id,
        action=f"withdrawal_{target.value}",
        target_type="withdrawal",
        target_id=w.id,
        details={"amount_cents": int(w.amount_cents), "creator_id": int(w.creator_id), **(details or {})},
    )
    db.commit()
    db.refresh(w)
    _log("withdrawal", w.id, "->", target.value, "by admin", admin_id)

    creator_id = int(w.creator_id)
    amount_cents = int(w.amount_cents)
    effects.defer(
        f"notify:withdrawal_{target.value}:{w.id}",
        ctx.notifier.notify,
        creator_id,
        f"withdrawal_{target.value}",
        {"withdrawal_id": int(w.id), "amount_cents": amount_cents, "reason": reason},
    )
    if target != WithdrawalStatus.PROCESSING:
        email, name = _creator_contact(db, creator_id)
        effects.defer(
            f"email:withdrawal_{target.value}:{w.id}",
            ctx.mailer.send_withdrawal_update,
            email,
            name,
            amount_cents,
            target.value,
            reason,
        )

    return _withdrawal_dict(w)


def approve(db: Session, ctx: ServiceContext, effects: EffectQueue, withdrawal_id: int, admin_id: int):
    return _transition(
        db, ctx, effects, withdrawal_id, admin_id, WithdrawalStatus.APPROVED,
        set_sql="processed_by = :admin, processed_at = :at",
        params={"admin": int(admin_id), "at": datetime.now(timezone.utc)},
    )


def reject(db: Session, ctx: ServiceContext, effects: EffectQueue, withdrawal_id: int, admin_id: int,
           admin_note: str | None):
    note = (admin_note or "").strip()
    if not note:
        raise ValidationFailed("A rejection reason is required")

    return _transition(
        db, ctx, effects, withdrawal_id, admin_id, WithdrawalStatus.REJECTED,
        set_sql="processed_by = :admin, processed_at = :at, admin_note = :note",
        params={"admin": int(admin_id), "at": datetime.now(timezone.utc), "note": note},
        details={"reason": note},
        reason=note,
    )


def mark_processing(db: Session, ctx: ServiceContext, effects: EffectQueue, withdrawal_id: int, admin_id: int):
    return _transition(db, ctx, effects, withdrawal_id, admin_id, WithdrawalStatus.PROCESSING)


def complete(db: Session, ctx: ServiceContext, effects: EffectQueue, withdrawal_id: int, admin_id: int,
             stripe_transfer_id: str | None = None):
    transfer_id = (stripe_transfer_id or "").strip() or None
    return _transition(
        db, ctx, effects, withdrawal_id, admin_id, WithdrawalStatus.COMPLETED,
        set_sql="completed_at = :at, stripe_transfer_id = coalesce(:tid, stripe_transfer_id)",
        params={"at": datetime.now(timezone.utc), "tid": transfer_id},
        details={"stripe_transfer_id": transfer_id},
    )


# -----------------------------
# Lists
# -----------------------------
def _page(db: Session, where_sql: str, params: dict[str, Any], page: int, page_size: int) -> dict[str, Any]:
    page = max(1, int(page))
    page_size = max(1, min(int(page_size), 100))

    total = int(db.execute(text(f"select count(*) from withdrawals where {where_sql}"), params).scalar() or 0)
    ids = db.execute(
        text(
            f"""
            select id
              from withdrawals
             where {where_sql}
             order by created_at desc, id desc
             limit :limit offset :offset
            """
        ),
        {**params, "limit": page_size, "offset": (page - 1) * page_size},
    ).scalars().all()

    items = [_withdrawal_dict(db.get(Withdrawal, int(i))) for i in ids]
    return {"ok": True, "page": page, "page_size": page_size, "total": total, "items": items}


def list_for_creator(db: Session, creator_id: int, page: int = 1, page_size: int = 20) -> dict[str, Any]:
    return _page(db, "creator_id = :c", {"c": int(creator_id)}, page, page_size)


def list_all(db: Session, status: str | None = None, page: int = 1, page_size: int = 20) -> dict[str, Any]:
    if status:
        try:
            WithdrawalStatus(status)
        except ValueError:
            raise ValidationFailed(f"Unknown withdrawal status: {status}")
        return _page(db, "status = :st", {"st": status}, page, page_size)
    return _page(db, "1 = 1", {}, page, page_size)
