# app/services/checkout.py
#
# Checkout session builder: persists a pending order from a priced draft and
# either opens a hosted Stripe Checkout session or, in simulate mode, fulfills
# the order in place through the same function the webhook uses.
from __future__ import annotations

import random
import time
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from app.core import config
from app.core.errors import PaymentProviderError
from app.core.log import component_logger
from app.models.marketplace import Order, OrderItem, ServiceOrder
from app.models.status import ORDER_TRANSITIONS, SERVICE_ORDER_TRANSITIONS, OrderStatus, ServiceOrderStatus
from app.services.context import ServiceContext
from app.services.effects import EffectQueue
from app.services.fulfillment import fulfill_service_order, fulfill_template_order
from app.services.pricing import build_service_draft, build_template_draft
from app.services.transitions import guarded_status_update

_log = component_logger("checkout")


def new_order_number(prefix: str) -> str:
    # unique enough in practice; the column is unique if it ever collides
    return f"{prefix}-{int(time.time() * 1000)}-{random.randint(0, 99999):05d}"


def _success_url(kind: str, simulated: bool = False) -> str:
    url = f"{config.CLIENT_URL}/checkout/success?type={kind}"
    return f"{url}&demo=true" if simulated else url


def _cancel_url() -> str:
    return f"{config.CLIENT_URL}/checkout/cancel"


def create_template_checkout(
    db: Session,
    ctx: ServiceContext,
    effects: EffectQueue,
    *,
    buyer_id: int,
    buyer_email: str | None,
    items: list[dict[str, Any]],
    coupon_code: str | None = None,
) -> dict[str, Any]:
    draft = build_template_draft(db, buyer_id, items, coupon_code, ctx.coupons)
    simulated = not ctx.payments.enabled
    # a coupon can cover the whole subtotal; there is nothing to charge
    free = draft.total_cents == 0
    now = datetime.now(timezone.utc)

    order = Order(
        order_number=new_order_number(config.ORDER_NUMBER_PREFIX),
        buyer_id=int(buyer_id),
        buyer_email=buyer_email,
        subtotal_cents=draft.subtotal_cents,
        discount_cents=draft.discount_cents,
        coupon_code=draft.coupon_code,
        coupon_id=draft.coupon_id,
        total_cents=draft.total_cents,
        currency=config.CURRENCY,
        status="pending",
        payment_mode="simulated" if simulated else ("free" if free else "stripe"),
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    db.flush()

    for pos, i in enumerate(draft.items):
        db.add(
            OrderItem(
                order_id=order.id,
                position=pos,
                kind=i.kind,
                template_id=i.catalog_item_id,
                title=i.title,
                price_cents=i.price_cents,
                creator_id=i.creator_id,
                platform_fee_cents=i.platform_fee_cents,
                creator_payout_cents=i.creator_payout_cents,
            )
        )
    db.commit()

    order_id = int(order.id)
    order_number = order.order_number

    if simulated:
        _log("simulate mode: fulfilling order in place", order_number)
        fulfill_template_order(db, ctx, effects, order_id)
        return {
            "ok": True,
            "session_url": _success_url("template", simulated=True),
            "order_id": order_id,
            "order_number": order_number,
            "simulated": True,
        }

    if free:
        _log("zero total: fulfilling order without a session", order_number)
        fulfill_template_order(db, ctx, effects, order_id)
        return {
            "ok": True,
            "session_url": _success_url("template"),
            "order_id": order_id,
            "order_number": order_number,
            "simulated": False,
        }

    line_items = [
        {
            "price_data": {
                "currency": config.CURRENCY,
                "product_data": {
                    "name": i.title,
                    "description": f"{i.platform} template" if i.platform else "Template",
                },
                "unit_amount": i.price_cents,
            },
            "quantity": 1,
        }
        for i in draft.items
    ]

    try:
        session = ctx.payments.create_checkout_session(
            line_items=line_items,
            metadata={"orderId": str(order_id), "type": "template_purchase"},
            success_url=_success_url("template"),
            cancel_url=_cancel_url(),
            customer_email=buyer_email,
            discount_cents=draft.discount_cents,
            currency=config.CURRENCY,
        )
    except PaymentProviderError:
        # no session exists, so this order can never be paid
        guarded_status_update(db, "orders", order_id, ORDER_TRANSITIONS, OrderStatus.FAILED)
        db.commit()
        raise

    order.stripe_session_id = session.id
    order.updated_at = datetime.now(timezone.utc)
    db.commit()
    _log("checkout session created", order_number, session.id)

    return {
        "ok": True,
        "session_url": session.url,
        "order_id": order_id,
        "order_number": order_number,
        "simulated": False,
    }


def create_service_checkout(
    db: Session,
    ctx: ServiceContext,
    effects: EffectQueue,
    *,
    buyer_id: int,
    buyer_email: str | None,
    package_id: int,
    requirements: str | None = None,
) -> dict[str, Any]:
    draft = build_service_draft(db, package_id)
    simulated = not ctx.payments.enabled
    now = datetime.now(timezone.utc)

    so = ServiceOrder(
        order_number=new_order_number(config.SERVICE_ORDER_NUMBER_PREFIX),
        package_id=draft.package_id,
        buyer_id=int(buyer_id),
        buyer_email=buyer_email,
        creator_id=draft.creator_id,
        package_name=draft.package_name,
        price_cents=draft.price_cents,
        platform_fee_cents=draft.platform_fee_cents,
        creator_payout_cents=draft.creator_payout_cents,
        currency=config.CURRENCY,
        delivery_days=draft.delivery_days,
        revisions=draft.revisions,
        revisions_used=0,
        requirements=(requirements or "").strip() or None,
        status="requested",
        is_paid=False,
        payment_mode="simulated" if simulated else "stripe",
        payment_released=False,
        created_at=now,
        updated_at=now,
    )
    db.add(so)
    db.commit()

    so_id = int(so.id)

    if simulated:
        _log("simulate mode: marking service order paid", so.order_number)
        fulfill_service_order(db, ctx, effects, so_id)
        return {
            "ok": True,
            "session_url": _success_url("service", simulated=True),
            "service_order_id": so_id,
            "order_number": so.order_number,
            "simulated": True,
        }

    try:
        session = ctx.payments.create_checkout_session(
            line_items=[
                {
                    "price_data": {
                        "currency": config.CURRENCY,
                        "product_data": {
                            "name": draft.package_name,
                            "description": f"Service: {draft.package_name} ({draft.delivery_days} day delivery)",
                        },
                        "unit_amount": draft.price_cents,
                    },
                    "quantity": 1,
                }
            ],
            metadata={"serviceOrderId": str(so_id), "type": "service_purchase"},
            success_url=_success_url("service"),
            cancel_url=_cancel_url(),
            customer_email=buyer_email,
            currency=config.CURRENCY,
        )
    except PaymentProviderError:
        guarded_status_update(
            db, "service_orders", so_id, SERVICE_ORDER_TRANSITIONS, ServiceOrderStatus.CANCELLED,
            from_statuses=[ServiceOrderStatus.REQUESTED],
        )
        db.commit()
        raise

    so.stripe_session_id = session.id
    so.updated_at = datetime.now(timezone.utc)
    db.commit()
    _log("service checkout session created", so.order_number, session.id)

    return {
        "ok": True,
        "session_url": session.url,
        "service_order_id": so_id,
        "order_number": so.order_number,
        "simulated": False,
    }
