# app/services/refunds.py
#
# Buyer refund requests and their admin review, plus the order side of every
# refund (ours, or one issued in the Stripe dashboard and reported by webhook):
# paid -> refunded, licenses deactivated, one audit row.
#
#   requested -> approved -> processed
#   requested -> rejected
#   approved  -> requested    (processor refund failed)
#
# At most one request per order, enforced by a unique column.
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core import config
from app.core.errors import (
    Conflict,
    DuplicateRefundRequest,
    Forbidden,
    NotFound,
    PaymentProviderError,
    ValidationFailed,
)
from app.core.log import component_logger
from app.core.money import fmt_cents
from app.models.marketplace import Order, Refund
from app.models.status import ORDER_TRANSITIONS, REFUND_TRANSITIONS, OrderStatus, RefundStatus, ensure_transition
from app.services.audit import append_audit
from app.services.context import ServiceContext
from app.services.effects import EffectQueue
from app.services.transitions import guarded_status_update

_log = component_logger("refunds")

DEFAULT_REJECTION_NOTE = "Refund request denied"


def _aware(dt: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# -----------------------------
# Order side (shared with the webhook)
# -----------------------------
def deactivate_order_licenses(db: Session, order_id: int) -> int:
    res = db.execute(
        text(
            """
            update licenses
               set is_active = :no,
                   deactivated_at = :now
             where order_id = :oid
               and is_active = :yes
            """
        ),
        {"oid": int(order_id), "no": False, "yes": True, "now": datetime.now(timezone.utc)},
    )
    return int(res.rowcount or 0)


def mark_order_refunded(db: Session, order_id: int, *, actor_id: int | None, details: dict[str, Any]) -> bool:
    """
    Guarded paid -> refunded. Only the caller that wins the UPDATE deactivates
    licenses and writes the audit row; the caller commits.
    """
    won = guarded_status_update(db, "orders", order_id, ORDER_TRANSITIONS, OrderStatus.REFUNDED)
    if not won:
        return False

    deactivated = deactivate_order_licenses(db, order_id)
    append_audit(
        db,
        actor_id=actor_id,
        action="order_refunded",
        target_type="order",
        target_id=order_id,
        details={**details, "licenses_deactivated": deactivated},
    )
    return True


# -----------------------------
# Serialization
# -----------------------------
def _refund_dict(r: Refund, order_number: str | None = None) -> dict[str, Any]:
    return {
        "id": int(r.id),
        "order_id": int(r.order_id),
        "order_number": order_number,
        "buyer_id": int(r.buyer_id),
        "reason": r.reason,
        "status": r.status,
        "amount_cents": int(r.amount_cents),
        "amount": fmt_cents(r.amount_cents),
        "currency": r.currency,
        "stripe_refund_id": r.stripe_refund_id,
        "admin_note": r.admin_note,
        "processed_by": int(r.processed_by) if r.processed_by is not None else None,
        "processed_at": r.processed_at.isoformat() if r.processed_at else None,
        "created_at": r.created_at.isoformat() if r.created_at else None,
    }


def _order_number(db: Session, order_id: int) -> str | None:
    return db.execute(
        text("select order_number from orders where id = :id limit 1"), {"id": int(order_id)}
    ).scalar()


def _get(db: Session, refund_id: int) -> Refund:
    r = db.get(Refund, int(refund_id))
    if not r:
        raise NotFound("Refund request not found")
    return r


# -----------------------------
# Buyer
# -----------------------------
def request_refund(db: Session, buyer_id: int, order_id: int, reason: str | None) -> dict[str, Any]:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("A refund reason is required")
    if len(reason) > 1000:
        raise ValidationFailed("Refund reason is too long")

    order = db.get(Order, int(order_id))
    if not order:
        raise NotFound("Order not found")
    if int(order.buyer_id) != int(buyer_id):
        raise Forbidden("You can only request refunds for your own orders")
    if order.status != OrderStatus.PAID.value:
        raise ValidationFailed("Only paid orders can be refunded", code="not_refundable")
    if int(order.total_cents) <= 0:
        raise ValidationFailed("This order has nothing to refund", code="not_refundable")

    # fast path for a clear message; the unique column decides under races
    exists = db.execute(
        text("select 1 from refunds where order_id = :oid limit 1"), {"oid": int(order.id)}
    ).fetchone()
    if exists:
        raise DuplicateRefundRequest()

    now = datetime.now(timezone.utc)
    paid_at = _aware(order.paid_at) or now
    if now - paid_at > timedelta(days=config.REFUND_WINDOW_DAYS):
        raise ValidationFailed(
            f"Refund window has expired ({config.REFUND_WINDOW_DAYS} days after purchase)",
            code="refund_window_expired",
        )

    r = Refund(
        order_id=int(order.id),
        buyer_id=int(buyer_id),
        reason=reason,
        status=RefundStatus.REQUESTED.value,
        amount_cents=int(order.total_cents),
        currency=order.currency,
        created_at=now,
        updated_at=now,
    )
    try:
        with db.begin_nested():
            db.add(r)
            db.flush()
    except IntegrityError:
        raise DuplicateRefundRequest()

    db.commit()
    _log("refund requested", "order", order.order_number, fmt_cents(r.amount_cents))
    return _refund_dict(r, order.order_number)


def get_for_order(db: Session, buyer_id: int, order_id: int) -> dict[str, Any] | None:
    r = db.execute(
        text("select id from refunds where order_id = :oid and buyer_id = :b limit 1"),
        {"oid": int(order_id), "b": int(buyer_id)},
    ).scalar()
    if r is None:
        return None
    return _refund_dict(db.get(Refund, int(r)), _order_number(db, order_id))


# -----------------------------
# Admin
# -----------------------------
def _buyer_contact(db: Session, buyer_id: int) -> tuple[str | None, str | None]:
    row = db.execute(
        text("select email, name from users where id = :id limit 1"),
        {"id": int(buyer_id)},
    ).fetchone()
    return (row[0], row[1]) if row else (None, None)


def _notify_buyer(ctx: ServiceContext, effects: EffectQueue, db: Session, r: Refund, order_number: str | None,
                  status: str) -> None:
    effects.defer(
        f"notify:refund_{status}:{r.id}",
        ctx.notifier.notify,
        int(r.buyer_id),
        f"refund_{status}",
        {"refund_id": int(r.id), "order_number": order_number, "amount_cents": int(r.amount_cents),
         "admin_note": r.admin_note},
    )
    email, name = _buyer_contact(db, r.buyer_id)
    effects.defer(
        f"email:refund_{status}:{r.id}",
        ctx.mailer.send_refund_update,
        email,
        name,
        order_number,
        int(r.amount_cents),
        status,
        r.admin_note,
    )


def approve(db: Session, ctx: ServiceContext, effects: EffectQueue, refund_id: int, admin_id: int):
    r = _get(db, refund_id)
    ensure_transition(REFUND_TRANSITIONS, r.status, RefundStatus.APPROVED, noun="refund")

    order = db.get(Order, int(r.order_id))
    if order.status != OrderStatus.PAID.value:
        raise ValidationFailed(
            f"Order is {order.status} and can no longer be refunded",
            code="not_refundable",
            extra={"order_status": order.status},
        )

    # claim the request before money moves, so two admins cannot both refund
    won = guarded_status_update(
        db, "refunds", r.id, REFUND_TRANSITIONS, RefundStatus.APPROVED,
        set_sql="processed_by = :admin", params={"admin": int(admin_id)},
        from_statuses=[RefundStatus.REQUESTED],
    )
    if not won:
        db.refresh(r)
        ensure_transition(REFUND_TRANSITIONS, r.status, RefundStatus.APPROVED, noun="refund")
        raise Conflict("Refund changed concurrently; retry")
    db.commit()

    order_id, order_number, charge_ref = int(order.id), order.order_number, order.stripe_charge_id
    amount_cents = int(r.amount_cents)

    stripe_refund_id = None
    if ctx.payments.enabled and charge_ref:
        try:
            stripe_refund_id = ctx.payments.create_refund(
                charge_ref=charge_ref,
                amount_cents=amount_cents,
                metadata={"refundId": str(r.id), "orderId": str(order_id)},
                idempotency_key=f"refund-{r.id}",
            )
        except PaymentProviderError:
            guarded_status_update(
                db, "refunds", r.id, REFUND_TRANSITIONS, RefundStatus.REQUESTED,
                set_sql="processed_by = null", from_statuses=[RefundStatus.APPROVED],
            )
            db.commit()
            raise
    else:
        _log("no processor charge; recording refund without a provider call", "order", order_number)

    now = datetime.now(timezone.utc)
    guarded_status_update(
        db, "refunds", r.id, REFUND_TRANSITIONS, RefundStatus.PROCESSED,
        set_sql="stripe_refund_id = :rid, processed_at = :at",
        params={"rid": stripe_refund_id, "at": now},
    )
    # the charge.refunded webhook that follows finds the order already refunded
    order_moved = mark_order_refunded(
        db, order_id, actor_id=admin_id,
        details={"refund_id": int(r.id), "stripe_refund_id": stripe_refund_id, "amount_cents": amount_cents},
    )
    append_audit(
        db,
        actor_id=admin_id,
        action="refund_approved",
        target_type="refund",
        target_id=r.id,
        details={
            "order_id": order_id,
            "order_number": order_number,
            "amount_cents": amount_cents,
            "stripe_refund_id": stripe_refund_id,
            "order_refunded": order_moved,
        },
    )
    db.commit()
    db.refresh(r)
    _log("refund", r.id, "processed by admin", admin_id, fmt_cents(amount_cents))

    _notify_buyer(ctx, effects, db, r, order_number, "approved")
    return _refund_dict(r, order_number)


def reject(db: Session, ctx: ServiceContext, effects: EffectQueue, refund_id: int, admin_id: int,
           admin_note: str | None = None):
    r = _get(db, refund_id)
    ensure_transition(REFUND_TRANSITIONS, r.status, RefundStatus.REJECTED, noun="refund")
    note = (admin_note or "").strip() or DEFAULT_REJECTION_NOTE

    won = guarded_status_update(
        db, "refunds", r.id, REFUND_TRANSITIONS, RefundStatus.REJECTED,
        set_sql="admin_note = :note, processed_by = :admin, processed_at = :at",
        params={"note": note, "admin": int(admin_id), "at": datetime.now(timezone.utc)},
    )
    if not won:
        db.refresh(r)
        ensure_transition(REFUND_TRANSITIONS, r.status, RefundStatus.REJECTED, noun="refund")
        raise Conflict("Refund changed concurrently; retry")

    append_audit(
        db,
        actor_id=admin_id,
        action="refund_rejected",
        target_type="refund",
        target_id=r.id,
        details={"order_id": int(r.order_id), "amount_cents": int(r.amount_cents), "reason": note},
    )
    db.commit()
    db.refresh(r)

    order_number = _order_number(db, r.order_id)
    _notify_buyer(ctx, effects, db, r, order_number, "rejected")
    return _refund_dict(r, order_number)


def list_all(db: Session, status: str | None = None, page: int = 1, page_size: int = 20) -> dict[str, Any]:
    page = max(1, int(page))
    page_size = max(1, min(int(page_size), 100))

    where_sql, params = "1 = 1", {}
    if status:
        try:
            RefundStatus(status)
        except ValueError:
            raise ValidationFailed(f"Unknown refund status: {status}")
        where_sql, params = "r.status = :st", {"st": status}

    total = int(db.execute(text(f"select count(*) from refunds r where {where_sql}"), params).scalar() or 0)
    rows = db.execute(
        text(
            f"""
            select r.id, o.order_number
              from refunds r
              join orders o on o.id = r.order_id
             where {where_sql}
             order by r.created_at desc, r.id desc
             limit :limit offset :offset
            """
        ),
        {**params, "limit": page_size, "offset": (page - 1) * page_size},
    ).fetchall()

    items = [_refund_dict(db.get(Refund, int(rid)), number) for rid, number in rows]
    return {"ok": True, "page": page, "page_size": page_size, "total": total, "items": items}
