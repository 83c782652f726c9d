# app/services/pricing.py
#
# Read-only: turns a cart into an immutable order draft with prices, the
# platform fee split and any coupon discount snapshotted at checkout time.
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core import config
from app.core.errors import ValidationFailed
from app.core.money import percent_of
from app.services.coupons import CouponService


@dataclass(frozen=True)
class DraftItem:
    kind: str
    catalog_item_id: int
    title: str
    price_cents: int
    creator_id: int
    platform_fee_cents: int
    creator_payout_cents: int
    platform: str | None = None


@dataclass(frozen=True)
class OrderDraft:
    items: tuple[DraftItem, ...]
    subtotal_cents: int
    discount_cents: int
    total_cents: int
    coupon_code: str | None = None
    coupon_id: int | None = None


@dataclass(frozen=True)
class ServiceDraft:
    package_id: int
    package_name: str
    creator_id: int
    price_cents: int
    platform_fee_cents: int
    creator_payout_cents: int
    delivery_days: int
    revisions: int


def split_fee(price_cents: int, fee_percent: Decimal) -> tuple[int, int]:
    """(platform_fee, creator_payout); fee rounds half-up, payout takes the remainder."""
    fee = percent_of(int(price_cents), fee_percent)
    return fee, int(price_cents) - fee


def _buyer_owns(db: Session, buyer_id: int, template_id: int) -> bool:
    row = db.execute(
        text(
            """
            select 1
              from licenses
             where buyer_id = :b
               and template_id = :t
               and is_active = :active
             limit 1
            """
        ),
        {"b": int(buyer_id), "t": int(template_id), "active": True},
    ).fetchone()
    return row is not None


def build_template_draft(
    db: Session,
    buyer_id: int,
    items: list[dict[str, Any]],
    coupon_code: str | None = None,
    coupons: CouponService | None = None,
    fee_percent: Decimal | None = None,
) -> OrderDraft:
    if not items:
        raise ValidationFailed("Cart is empty")

    fee_percent = config.TEMPLATE_PLATFORM_FEE_PERCENT if fee_percent is None else fee_percent

    seen: set[int] = set()
    draft_items: list[DraftItem] = []
    for raw in items:
        try:
            template_id = int(raw["catalog_item_id"])
        except (KeyError, TypeError, ValueError):
            raise ValidationFailed("Each item needs a catalog_item_id")

        if template_id in seen:
            raise ValidationFailed("The same template appears more than once in the cart", code="duplicate_item")
        seen.add(template_id)

        t = db.execute(
            text(
                """
                select id, title, platform, price_cents, creator_id, status
                  from templates
                 where id = :id
                 limit 1
                """
            ),
            {"id": template_id},
        ).fetchone()

        if not t or t[5] != "approved":
            raise ValidationFailed("Template not available", code="unavailable")

        if _buyer_owns(db, buyer_id, template_id):
            raise ValidationFailed(f'You already own "{t[1]}"', code="already_owned")

        fee, payout = split_fee(int(t[3]), fee_percent)
        draft_items.append(
            DraftItem(
                kind="template",
                catalog_item_id=int(t[0]),
                title=str(t[1]),
                platform=t[2],
                price_cents=int(t[3]),
                creator_id=int(t[4]),
                platform_fee_cents=fee,
                creator_payout_cents=payout,
            )
        )

    subtotal = sum(i.price_cents for i in draft_items)

    discount = 0
    coupon_id = None
    code = None
    if coupon_code and coupon_code.strip():
        res = (coupons or CouponService()).validate(db, buyer_id, coupon_code, subtotal, "templates")
        discount = res.discount_cents
        coupon_id = res.coupon_id
        code = res.code

    return OrderDraft(
        items=tuple(draft_items),
        subtotal_cents=subtotal,
        discount_cents=discount,
        total_cents=subtotal - discount,
        coupon_code=code,
        coupon_id=coupon_id,
    )


def build_service_draft(db: Session, package_id: int, fee_percent: Decimal | None = None) -> ServiceDraft:
    fee_percent = config.SERVICE_PLATFORM_FEE_PERCENT if fee_percent is None else fee_percent

    p = db.execute(
        text(
            """
            select id, name, creator_id, price_cents, delivery_days, revisions, is_active
              from service_packages
             where id = :id
             limit 1
            """
        ),
        {"id": int(package_id)},
    ).fetchone()

    if not p or not p[6]:
        raise ValidationFailed("Service package not available", code="unavailable")

    fee, payout = split_fee(int(p[3]), fee_percent)
    return ServiceDraft(
        package_id=int(p[0]),
        package_name=str(p[1]),
        creator_id=int(p[2]),
        price_cents=int(p[3]),
        platform_fee_cents=fee,
        creator_payout_cents=payout,
        delivery_days=int(p[4] or 0),
        revisions=int(p[5] or 0),
    )
