# app/services/service_orders.py
#
# Commissioned-work lifecycle after checkout. Payment (is_paid) and work
# (status) move independently; the creator is paid only once the buyer accepts
# delivery or an admin resolves a dispute in the creator's favour, and
# payment_released guards that release.
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationFailed
from app.core.log import component_logger
from app.core.money import fmt_cents
from app.models.marketplace import ServiceOrder
from app.models.status import SERVICE_ORDER_TRANSITIONS, ServiceOrderStatus as S, ensure_transition
from app.services.audit import append_audit
from app.services.context import ServiceContext
from app.services.effects import EffectQueue
from app.services.payouts import queue_payout
from app.services.transitions import guarded_status_update

_log = component_logger("service_orders")

DISPUTE_OUTCOMES = {
    "refund": S.CANCELLED,
    "release_payment": S.COMPLETED,
    "partial_refund": S.COMPLETED,
    "redo": S.IN_PROGRESS,
}


def serialize(so: ServiceOrder) -> dict[str, Any]:
    return {
        "id": int(so.id),
        "order_number": so.order_number,
        "package_id": int(so.package_id),
        "package_name": so.package_name,
        "buyer_id": int(so.buyer_id),
        "creator_id": int(so.creator_id),
        "price_cents": int(so.price_cents),
        "price": fmt_cents(so.price_cents),
        "platform_fee_cents": int(so.platform_fee_cents),
        "creator_payout_cents": int(so.creator_payout_cents),
        "delivery_days": int(so.delivery_days),
        "revisions": int(so.revisions),
        "revisions_used": int(so.revisions_used),
        "requirements": so.requirements,
        "status": so.status,
        "is_paid": bool(so.is_paid),
        "payment_released": bool(so.payment_released),
        "delivery_note": so.delivery_note,
        "dispute_reason": so.dispute_reason,
        "dispute_outcome": so.dispute_outcome,
        "paid_at": so.paid_at.isoformat() if so.paid_at else None,
        "delivered_at": so.delivered_at.isoformat() if so.delivered_at else None,
        "completed_at": so.completed_at.isoformat() if so.completed_at else None,
        "created_at": so.created_at.isoformat() if so.created_at else None,
    }


def get_for_party(db: Session, so_id: int, user_id: int, role: str | None = None) -> ServiceOrder:
    so = db.get(ServiceOrder, int(so_id))
    if not so:
        raise NotFound("Service order not found")
    if role == "admin":
        return so
    if int(user_id) not in (int(so.buyer_id), int(so.creator_id)):
        raise Forbidden("You are not a party to this service order")
    return so


def _as_creator(so: ServiceOrder, user_id: int) -> None:
    if int(so.creator_id) != int(user_id):
        raise Forbidden("Only the creator can do this")


def _as_buyer(so: ServiceOrder, user_id: int) -> None:
    if int(so.buyer_id) != int(user_id):
        raise Forbidden("Only the buyer can do this")


def _move(
    db: Session,
    so: ServiceOrder,
    target: S,
    *,
    from_statuses: Iterable[S] | None = None,
    set_sql: str = "",
    where_sql: str = "",
    params: dict[str, Any] | None = None,
) -> None:
    ensure_transition(SERVICE_ORDER_TRANSITIONS, so.status, target, noun="service order")
    if from_statuses is not None and S(so.status) not in set(from_statuses):
        raise InvalidTransition(
            f"Cannot move service order from {so.status} to {target.value}",
            extra={"current_status": so.status, "target_status": target.value},
        )

    won = guarded_status_update(
        db, "service_orders", so.id, SERVICE_ORDER_TRANSITIONS, target,
        set_sql=set_sql, where_sql=where_sql, params=params, from_statuses=from_statuses,
    )
    if not won:
        db.refresh(so)
        ensure_transition(SERVICE_ORDER_TRANSITIONS, so.status, target, noun="service order")
        raise Conflict("Service order changed concurrently; retry")


def _notify(ctx: ServiceContext, effects: EffectQueue, user_id: int, kind: str, so: ServiceOrder,
            **payload: Any) -> None:
    effects.defer(
        f"notify:{kind}:{so.id}:{user_id}",
        ctx.notifier.notify,
        int(user_id),
        kind,
        {"service_order_id": int(so.id), "order_number": so.order_number, "status": so.status, **payload},
    )


def _refund_due(db: Session, so: ServiceOrder, actor_id: int | None, reason: str | None) -> None:
    # refunds are issued by hand in the processor dashboard
    if so.is_paid and not so.payment_released:
        append_audit(
            db,
            actor_id=actor_id,
            action="service_order_refund_due",
            target_type="service_order",
            target_id=so.id,
            details={"amount_cents": int(so.price_cents), "charge_id": so.stripe_charge_id, "reason": reason},
        )


def _release_payment(db: Session, so: ServiceOrder) -> int | None:
    """Flips payment_released once and queues the creator payout. Returns the payout id."""
    res = db.execute(
        text(
            """
            update service_orders
               set payment_released = :yes
             where id = :id
               and payment_released = :no
               and is_paid = :yes
            """
        ),
        {"id": int(so.id), "yes": True, "no": False},
    )
    if res.rowcount != 1:
        _log("payment not released (unpaid or already released)", "service_order", so.id, level=logging.WARNING)
        return None

    db.execute(
        text(
            """
            update service_packages
               set completed_count = completed_count + 1,
                   revenue_cents = revenue_cents + :amt
             where id = :id
            """
        ),
        {"id": int(so.package_id), "amt": int(so.price_cents)},
    )

    return queue_payout(
        db,
        creator_id=int(so.creator_id),
        amount_cents=int(so.creator_payout_cents),
        source_charge_id=so.stripe_charge_id,
        service_order_id=int(so.id),
    )


def _defer_payout(ctx: ServiceContext, effects: EffectQueue, so: ServiceOrder, payout_id: int | None) -> None:
    if payout_id is None:
        return
    effects.defer(f"payout:{payout_id}", ctx.dispatcher.execute, payout_id)
    _notify(ctx, effects, so.creator_id, "payout_released", so, amount_cents=int(so.creator_payout_cents))


# -----------------------------
# Creator actions
# -----------------------------
def accept(db: Session, ctx: ServiceContext, effects: EffectQueue, so_id: int, user_id: int) -> dict[str, Any]:
    so = get_for_party(db, so_id, user_id)
    _as_creator(so, user_id)
    _move(db, so, S.ACCEPTED)
    db.commit()
    db.refresh(so)
    _notify(ctx, effects, so.buyer_id, "service_order_update", so)
    return serialize(so)


def reject(db: Session, ctx: ServiceContext, effects: EffectQueue, so_id: int, user_id: int,
           reason: str | None = None) -> dict[str, Any]:
    so = get_for_party(db, so_id, user_id)
    _as_creator(so, user_id)
    _move(db, so, S.REJECTED)
    db.refresh(so)
    _refund_due(db, so, user_id, reason or "rejected by creator")
    db.commit()
    _notify(ctx, effects, so.buyer_id, "service_order_update", so, reason=reason)
    return serialize(so)


def start(db: Session, ctx: ServiceContext, effects: EffectQueue, so_id: int, user_id: int) -> dict[str, Any]:
    so = get_for_party(db, so_id, user_id)
    _as_creator(so, user_id)
    if not so.is_paid:
        raise ValidationFailed("Service order has not been paid yet", code="not_paid")
    _move(db, so, S.IN_PROGRESS, from_statuses=[S.ACCEPTED, S.REVISION_REQUESTED])
    db.commit()
    db.refresh(so)
    _notify(ctx, effects, so.buyer_id, "service_order_update", so)
    return serialize(so)


def deliver(db: Session, ctx: ServiceContext, effects: EffectQueue, so_id: int, user_id: int,
            delivery_note: str | None = None) -> dict[str, Any]:
    so = get_for_party(db, so_id, user_id)
    _as_creator(so, user_id)
    _move(
        db, so, S.DELIVERED,
        set_sql="delivered_at = :at, delivery_note = :note",
        params={"at": datetime.now(timezone.utc), "note": (delivery_note or "").strip() or None},
    )
    db.commit()
    db.refresh(so)
    _notify(ctx, effects, so.buyer_id, "service_order_update", so)
    return serialize(so)


# -----------------------------
# Buyer actions
# -----------------------------
def request_revision(db: Session, ctx: ServiceContext, effects: EffectQueue, so_id: int,
                     user_id: int) -> dict[str, Any]:
    so = get_for_party(db, so_id, user_id)
    _as_buyer(so, user_id)
    if int(so.revisions_used) >= int(so.revisions):
        raise ValidationFailed(f"All {so.revisions} revisions have been used", code="revisions_exhausted")

    _move(
        db, so, S.REVISION_REQUESTED,
        set_sql="revisions_used = revisions_used + 1",
        where_sql="revisions_used < revisions",
    )
    db.commit()
    db.refresh(so)
    _notify(ctx, effects, so.creator_id, "service_order_update", so)
    return serialize(so)


def complete(db: Session, ctx: ServiceContext, effects: EffectQueue, so_id: int, user_id: int) -> dict[str, Any]:
    so = get_for_party(db, so_id, user_id)
    _as_buyer(so, user_id)
    _move(
        db, so, S.COMPLETED,
        from_statuses=[S.DELIVERED],
        set_sql="completed_at = :at",
        params={"at": datetime.now(timezone.utc)},
    )
    db.refresh(so)
    payout_id = _release_payment(db, so)
    db.commit()
    db.refresh(so)

    _notify(ctx, effects, so.creator_id, "service_order_update", so)
    _defer_payout(ctx, effects, so, payout_id)
    return serialize(so)


def open_dispute(db: Session, ctx: ServiceContext, effects: EffectQueue, so_id: int, user_id: int,
                 reason: str) -> dict[str, Any]:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("A dispute reason is required")

    so = get_for_party(db, so_id, user_id)
    _as_buyer(so, user_id)
    if so.dispute_reason:
        raise ValidationFailed("A dispute is already open on this order", code="dispute_exists")

    _move(db, so, S.DISPUTED, set_sql="dispute_reason = :reason", params={"reason": reason})
    append_audit(
        db,
        actor_id=user_id,
        action="dispute_opened",
        target_type="service_order",
        target_id=so.id,
        details={"reason": reason},
    )
    db.commit()
    db.refresh(so)
    _notify(ctx, effects, so.creator_id, "service_order_update", so, reason=reason)
    return serialize(so)


# -----------------------------
# Either party
# -----------------------------
def cancel(db: Session, ctx: ServiceContext, effects: EffectQueue, so_id: int, user_id: int,
           reason: str | None = None) -> dict[str, Any]:
    so = get_for_party(db, so_id, user_id)
    if so.status == S.DISPUTED.value:
        raise ValidationFailed("Cannot cancel a disputed order. Wait for admin resolution.", code="disputed")

    _move(db, so, S.CANCELLED, from_statuses=[s for s in S if s != S.DISPUTED])
    db.refresh(so)
    _refund_due(db, so, user_id, reason or "cancelled")
    db.commit()

    other = so.creator_id if int(user_id) == int(so.buyer_id) else so.buyer_id
    _notify(ctx, effects, other, "service_order_cancelled", so, reason=reason)
    return serialize(so)


# -----------------------------
# Admin
# -----------------------------
def resolve_dispute(db: Session, ctx: ServiceContext, effects: EffectQueue, so_id: int, admin_id: int,
                    outcome: str, resolution: str | None = None) -> dict[str, Any]:
    target = DISPUTE_OUTCOMES.get(outcome)
    if target is None:
        raise ValidationFailed("Invalid dispute outcome")

    so = db.get(ServiceOrder, int(so_id))
    if not so:
        raise NotFound("Service order not found")
    if so.status != S.DISPUTED.value:
        raise ValidationFailed("Order is not in disputed state", code="not_disputed")

    now = datetime.now(timezone.utc)
    set_sql = "dispute_outcome = :outcome"
    params: dict[str, Any] = {"outcome": outcome}
    if target == S.COMPLETED:
        set_sql += ", completed_at = :at"
        params["at"] = now

    _move(db, so, target, from_statuses=[S.DISPUTED], set_sql=set_sql, params=params)
    db.refresh(so)

    if outcome in ("refund", "partial_refund"):
        _refund_due(db, so, admin_id, f"dispute {outcome}")
    payout_id = None
    if target == S.COMPLETED:
        payout_id = _release_payment(db, so)

    append_audit(
        db,
        actor_id=admin_id,
        action="dispute_resolved",
        target_type="service_order",
        target_id=so.id,
        details={"outcome": outcome, "resolution": resolution, "payout_id": payout_id},
    )
    db.commit()
    db.refresh(so)
    _log("dispute resolved", so.order_number, outcome, "by admin", admin_id)

    for party in (so.buyer_id, so.creator_id):
        _notify(ctx, effects, party, "service_order_update", so, outcome=outcome)
    _defer_payout(ctx, effects, so, payout_id)
    return serialize(so)


def list_for_user(db: Session, user_id: int, as_role: str = "buyer") -> list[dict[str, Any]]:
    col = ServiceOrder.creator_id if as_role == "creator" else ServiceOrder.buyer_id
    rows = db.query(ServiceOrder).filter(col == int(user_id)).order_by(ServiceOrder.id.desc()).all()
    return [serialize(r) for r in rows]
