# app/services/fulfillment.py
#
# The single place where a captured payment becomes durable effects.
# Both the processor webhook and simulate-mode checkout call these functions.
#
# Shape of every call:
#   1) guarded transition (one UPDATE); losers return "already fulfilled"
#   2) winner writes licenses / counters / payout rows / coupon usage
#   3) commit
#   4) payouts, notifications and emails are deferred onto the effect queue
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core import config
from app.core.errors import NotFound
from app.core.log import component_logger
from app.models.marketplace import License
from app.models.status import ORDER_TRANSITIONS, OrderStatus
from app.services.audit import append_audit
from app.services.context import ServiceContext
from app.services.effects import EffectQueue
from app.services.payouts import queue_payout
from app.services.transitions import current_status, guarded_status_update

_log = component_logger("fulfillment")


def new_license_key() -> str:
    return f"{config.LICENSE_KEY_PREFIX}-{str(uuid4()).upper()}"


def _load_order(db: Session, order_id: int):
    return db.execute(
        text(
            """
            select id, order_number, buyer_id, buyer_email, subtotal_cents, discount_cents,
                   coupon_id, total_cents, stripe_charge_id
              from orders
             where id = :id
             limit 1
            """
        ),
        {"id": int(order_id)},
    ).fetchone()


def _load_items(db: Session, order_id: int):
    return db.execute(
        text(
            """
            select id, template_id, title, price_cents, creator_id, creator_payout_cents
              from order_items
             where order_id = :oid
             order by position asc, id asc
            """
        ),
        {"oid": int(order_id)},
    ).fetchall()


def _buyer_name(db: Session, user_id: int) -> str | None:
    row = db.execute(text("select name from users where id = :id limit 1"), {"id": int(user_id)}).fetchone()
    return row[0] if row else None


def _bump_template_stats(db: Session, template_id: int, price_cents: int) -> None:
    db.execute(
        text(
            """
            update templates
               set purchases = purchases + 1,
                   revenue_cents = revenue_cents + :amt
             where id = :id
            """
        ),
        {"id": int(template_id), "amt": int(price_cents)},
    )


def _bump_creator_stats(db: Session, creator_id: int, payout_cents: int) -> None:
    """Aggregate counters on the creator profile; a failure here must not undo the sale."""
    try:
        with db.begin_nested():
            db.execute(
                text(
                    """
                    update creator_profiles
                       set total_sales = total_sales + 1,
                           total_revenue_cents = total_revenue_cents + :amt
                     where user_id = :u
                    """
                ),
                {"u": int(creator_id), "amt": int(payout_cents)},
            )
    except SQLAlchemyError as e:
        _log("creator stats update failed", "creator", creator_id, type(e).__name__, str(e), level=logging.WARNING)


def fulfill_template_order(
    db: Session,
    ctx: ServiceContext,
    effects: EffectQueue,
    order_id: int,
    charge_id: str | None = None,
) -> dict[str, Any]:
    now = datetime.now(timezone.utc)

    won = guarded_status_update(
        db,
        "orders",
        order_id,
        ORDER_TRANSITIONS,
        OrderStatus.PAID,
        set_sql="paid_at = :paid_at, stripe_charge_id = coalesce(:charge, stripe_charge_id)",
        params={"paid_at": now, "charge": charge_id},
    )
    if not won:
        status = current_status(db, "orders", order_id)
        if status is None:
            raise NotFound("Order not found")
        _log("order not fulfillable; no-op", "order", order_id, "status", status)
        return {"ok": True, "order_id": int(order_id), "already_fulfilled": True, "status": status}

    order = _load_order(db, order_id)
    oid, order_number, buyer_id, buyer_email, subtotal, discount, coupon_id, total, stored_charge = order
    items = _load_items(db, oid)

    license_keys: list[str] = []
    payout_ids: list[int] = []
    creators: dict[int, list[str]] = {}

    for item_id, template_id, title, price_cents, creator_id, payout_cents in items:
        key = new_license_key()
        db.add(
            License(
                license_key=key,
                buyer_id=int(buyer_id),
                template_id=int(template_id),
                order_id=int(oid),
                order_item_id=int(item_id),
                license_type="personal",
                is_active=True,
                created_at=now,
            )
        )
        license_keys.append(key)

        _bump_template_stats(db, template_id, price_cents)

        pid = queue_payout(
            db,
            creator_id=int(creator_id),
            amount_cents=int(payout_cents),
            source_charge_id=stored_charge,
            order_id=int(oid),
            order_item_id=int(item_id),
        )
        if pid is not None:
            payout_ids.append(pid)

        _bump_creator_stats(db, creator_id, payout_cents)
        creators.setdefault(int(creator_id), []).append(str(title))

    if coupon_id is not None:
        ctx.coupons.record_usage(db, int(coupon_id), int(buyer_id), int(oid), int(discount or 0))

    db.flush()
    db.commit()
    _log("order paid", order_number, "licenses", len(license_keys), "payouts", len(payout_ids))

    for pid in payout_ids:
        effects.defer(f"payout:{pid}", ctx.dispatcher.execute, pid)

    effects.defer(
        f"notify:order_paid:{oid}",
        ctx.notifier.notify,
        int(buyer_id),
        "order_paid",
        {"order_id": int(oid), "order_number": order_number, "license_keys": license_keys},
    )
    for creator_id, titles in creators.items():
        effects.defer(
            f"notify:creator_sale:{oid}:{creator_id}",
            ctx.notifier.notify,
            creator_id,
            "creator_sale",
            {"order_id": int(oid), "titles": titles},
        )

    effects.defer(
        f"email:purchase_confirmation:{oid}",
        ctx.mailer.send_purchase_confirmation,
        buyer_email,
        _buyer_name(db, buyer_id),
        {
            "id": int(oid),
            "order_number": order_number,
            "items": [{"title": r[2], "price_cents": int(r[3])} for r in items],
            "discount_cents": int(discount or 0),
            "total_cents": int(total),
        },
    )

    return {
        "ok": True,
        "order_id": int(oid),
        "order_number": order_number,
        "already_fulfilled": False,
        "license_keys": license_keys,
        "payout_ids": payout_ids,
    }


def fulfill_service_order(
    db: Session,
    ctx: ServiceContext,
    effects: EffectQueue,
    service_order_id: int,
    charge_id: str | None = None,
) -> dict[str, Any]:
    """
    Marks the service order paid. The creator payout is released later, when
    the buyer accepts delivery (or an admin resolves a dispute in their favour).
    """
    now = datetime.now(timezone.utc)

    res = db.execute(
        text(
            """
            update service_orders
               set is_paid = :yes,
                   paid_at = :now,
                   updated_at = :now,
                   stripe_charge_id = coalesce(:charge, stripe_charge_id)
             where id = :id
               and is_paid = :no
            """
        ),
        {"id": int(service_order_id), "yes": True, "no": False, "now": now, "charge": charge_id},
    )

    row = db.execute(
        text(
            """
            select id, order_number, package_id, buyer_id, creator_id, status, price_cents
              from service_orders
             where id = :id
             limit 1
            """
        ),
        {"id": int(service_order_id)},
    ).fetchone()
    if not row:
        raise NotFound("Service order not found")

    so_id, order_number, package_id, buyer_id, creator_id, status, price_cents = row

    if res.rowcount != 1:
        _log("service order already paid; no-op", "service_order", so_id)
        return {"ok": True, "service_order_id": int(so_id), "already_fulfilled": True, "status": status}

    if status in ("cancelled", "rejected"):
        # the order closed before the money arrived; nothing will deliver it
        _log("payment captured for a", status, "service order", so_id, level=logging.WARNING)
        append_audit(
            db,
            actor_id=None,
            action="service_order_refund_due",
            target_type="service_order",
            target_id=so_id,
            details={"amount_cents": int(price_cents), "charge_id": charge_id, "reason": f"paid after {status}"},
        )

    db.execute(
        text("update service_packages set orders_count = orders_count + 1 where id = :id"),
        {"id": int(package_id)},
    )
    db.commit()
    _log("service order paid", order_number)

    payload = {"service_order_id": int(so_id), "order_number": order_number}
    effects.defer(f"notify:service_order_paid:{so_id}:creator", ctx.notifier.notify,
                  int(creator_id), "service_order_paid", payload)
    effects.defer(f"notify:service_order_paid:{so_id}:buyer", ctx.notifier.notify,
                  int(buyer_id), "service_order_paid", payload)

    return {
        "ok": True,
        "service_order_id": int(so_id),
        "order_number": order_number,
        "already_fulfilled": False,
    }
