from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import ValidationFailed
from app.core.log import component_logger
from app.core.money import fmt_cents, percent_of
from app.models.marketplace import Coupon, CouponUsage

_log = component_logger("coupons")


@dataclass(frozen=True)
class CouponValidation:
    valid: bool
    coupon_id: int
    code: str
    discount_cents: int


def _aware(dt: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


class CouponService:
    """
    Validation and redemption of coupons created elsewhere.
    category is "templates" or "services".
    """

    def validate(self, db: Session, buyer_id: int, code: str, subtotal_cents: int,
                 category: str = "templates") -> CouponValidation:
        code = normalize_code(code)
        if not code:
            raise ValidationFailed("Invalid coupon code", code="invalid_coupon")

        c = db.scalars(select(Coupon).where(Coupon.code == code).limit(1)).first()
        if not c:
            raise ValidationFailed("Invalid coupon code", code="invalid_coupon")

        if not c.is_active:
            raise ValidationFailed("This coupon is no longer active", code="invalid_coupon")

        now = datetime.now(timezone.utc)
        starts_at = _aware(c.starts_at)
        expires_at = _aware(c.expires_at)
        if starts_at and now < starts_at:
            raise ValidationFailed("This coupon is not yet active", code="invalid_coupon")
        if expires_at and now > expires_at:
            raise ValidationFailed("This coupon has expired", code="invalid_coupon")

        if c.usage_limit and int(c.used_count or 0) >= int(c.usage_limit):
            raise ValidationFailed("This coupon has reached its usage limit", code="invalid_coupon")

        used_by_buyer = db.scalar(
            select(func.count(CouponUsage.id)).where(
                CouponUsage.coupon_id == c.id,
                CouponUsage.user_id == int(buyer_id),
            )
        ) or 0
        if c.per_user_limit and int(used_by_buyer) >= int(c.per_user_limit):
            raise ValidationFailed("You have already used this coupon", code="invalid_coupon")

        if c.applicable_to not in ("all", category):
            raise ValidationFailed(f"This coupon is only valid for {c.applicable_to}", code="invalid_coupon")

        if int(subtotal_cents) < int(c.min_order_cents or 0):
            raise ValidationFailed(
                f"Minimum order amount is ${fmt_cents(c.min_order_cents)}",
                code="invalid_coupon",
            )

        if c.discount_type == "percentage":
            discount = percent_of(int(subtotal_cents), int(c.discount_value))
            if c.max_discount_cents:
                discount = min(discount, int(c.max_discount_cents))
        else:
            discount = int(c.discount_value)

        discount = max(0, min(discount, int(subtotal_cents)))

        return CouponValidation(valid=True, coupon_id=int(c.id), code=c.code, discount_cents=discount)

    def record_usage(self, db: Session, coupon_id: int, user_id: int, order_id: int, discount_cents: int) -> bool:
        """
        Records one redemption for (coupon, order) inside the caller's
        transaction. Returns False when this order already redeemed the coupon.

        The payment has already been captured when this runs, so a usage limit
        reached in the meantime is logged, not raised.
        """
        try:
            with db.begin_nested():
                db.add(
                    CouponUsage(
                        coupon_id=int(coupon_id),
                        user_id=int(user_id),
                        order_id=int(order_id),
                        discount_cents=int(discount_cents),
                        created_at=datetime.now(timezone.utc),
                    )
                )
                db.flush()
        except IntegrityError:
            _log("coupon usage already recorded", "coupon", coupon_id, "order", order_id)
            return False

        res = db.execute(
            text(
                """
                update coupons
                   set used_count = used_count + 1
                 where id = :id
                   and (usage_limit is null or usage_limit = 0 or used_count < usage_limit)
                """
            ),
            {"id": int(coupon_id)},
        )
        if res.rowcount != 1:
            _log("coupon usage limit reached after payment", "coupon", coupon_id, "order", order_id,
                 level=logging.WARNING)
        return True
