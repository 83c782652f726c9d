from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.sql import func

from app.models.base import Base, IdType


# -----------------------------
# People & catalog (read by the payment pipeline, owned elsewhere)
# -----------------------------
class User(Base):
    __tablename__ = "users"

    id = Column(IdType, primary_key=True)
    email = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=True)
    role = Column(Text, nullable=False, default="buyer")  # buyer | creator | admin
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class CreatorProfile(Base):
    __tablename__ = "creator_profiles"

    id = Column(IdType, primary_key=True)
    user_id = Column(IdType, ForeignKey("users.id", ondelete="cascade"), nullable=False, unique=True)
    display_name = Column(Text, nullable=True)
    stripe_account_id = Column(Text, nullable=True)
    total_sales = Column(Integer, nullable=False, default=0)
    total_revenue_cents = Column(BigInteger, nullable=False, default=0)


class Template(Base):
    __tablename__ = "templates"

    id = Column(IdType, primary_key=True)
    creator_id = Column(IdType, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    platform = Column(Text, nullable=True)
    price_cents = Column(BigInteger, nullable=False)
    status = Column(Text, nullable=False, default="draft")  # only "approved" is purchasable
    purchases = Column(Integer, nullable=False, default=0)
    revenue_cents = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ServicePackage(Base):
    __tablename__ = "service_packages"

    id = Column(IdType, primary_key=True)
    creator_id = Column(IdType, ForeignKey("users.id"), nullable=False, index=True)
    template_id = Column(IdType, ForeignKey("templates.id"), nullable=True)
    name = Column(Text, nullable=False)
    price_cents = Column(BigInteger, nullable=False)
    delivery_days = Column(Integer, nullable=False, default=7)
    revisions = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    orders_count = Column(Integer, nullable=False, default=0)
    completed_count = Column(Integer, nullable=False, default=0)
    revenue_cents = Column(BigInteger, nullable=False, default=0)


# -----------------------------
# Orders & entitlements
# -----------------------------
class Order(Base):
    __tablename__ = "orders"

    id = Column(IdType, primary_key=True)
    order_number = Column(Text, nullable=False, unique=True)
    buyer_id = Column(IdType, ForeignKey("users.id"), nullable=False, index=True)
    buyer_email = Column(Text, nullable=True)
    subtotal_cents = Column(BigInteger, nullable=False)
    discount_cents = Column(BigInteger, nullable=False, default=0)
    coupon_code = Column(Text, nullable=True)
    coupon_id = Column(IdType, ForeignKey("coupons.id"), nullable=True)
    total_cents = Column(BigInteger, nullable=False)
    currency = Column(Text, nullable=False, default="usd")
    status = Column(Text, nullable=False, default="pending", index=True)
    payment_mode = Column(Text, nullable=False, default="stripe")  # stripe | simulated | free
    stripe_session_id = Column(Text, nullable=True, index=True)
    stripe_charge_id = Column(Text, nullable=True, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(IdType, primary_key=True)
    order_id = Column(IdType, ForeignKey("orders.id", ondelete="cascade"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    kind = Column(Text, nullable=False, default="template")
    template_id = Column(IdType, ForeignKey("templates.id"), nullable=False)
    title = Column(Text, nullable=False)
    price_cents = Column(BigInteger, nullable=False)
    creator_id = Column(IdType, ForeignKey("users.id"), nullable=False, index=True)
    platform_fee_cents = Column(BigInteger, nullable=False)
    creator_payout_cents = Column(BigInteger, nullable=False)


class ServiceOrder(Base):
    __tablename__ = "service_orders"

    id = Column(IdType, primary_key=True)
    order_number = Column(Text, nullable=False, unique=True)
    package_id = Column(IdType, ForeignKey("service_packages.id"), nullable=False, index=True)
    buyer_id = Column(IdType, ForeignKey("users.id"), nullable=False, index=True)
    buyer_email = Column(Text, nullable=True)
    creator_id = Column(IdType, ForeignKey("users.id"), nullable=False, index=True)
    package_name = Column(Text, nullable=False)
    price_cents = Column(BigInteger, nullable=False)
    platform_fee_cents = Column(BigInteger, nullable=False)
    creator_payout_cents = Column(BigInteger, nullable=False)
    currency = Column(Text, nullable=False, default="usd")
    delivery_days = Column(Integer, nullable=False)
    revisions = Column(Integer, nullable=False, default=0)
    revisions_used = Column(Integer, nullable=False, default=0)
    requirements = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default="requested", index=True)
    is_paid = Column(Boolean, nullable=False, default=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    payment_mode = Column(Text, nullable=False, default="stripe")
    payment_released = Column(Boolean, nullable=False, default=False)
    stripe_session_id = Column(Text, nullable=True, index=True)
    stripe_charge_id = Column(Text, nullable=True, index=True)
    delivery_note = Column(Text, nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    dispute_reason = Column(Text, nullable=True)
    dispute_outcome = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)


class License(Base):
    __tablename__ = "licenses"

    id = Column(IdType, primary_key=True)
    license_key = Column(Text, nullable=False, unique=True)
    buyer_id = Column(IdType, ForeignKey("users.id"), nullable=False)
    template_id = Column(IdType, ForeignKey("templates.id"), nullable=False)
    order_id = Column(IdType, ForeignKey("orders.id"), nullable=False, index=True)
    # one license per paid line item, even if fulfillment runs twice
    order_item_id = Column(IdType, ForeignKey("order_items.id"), nullable=False, unique=True)
    license_type = Column(Text, nullable=False, default="personal")
    is_active = Column(Boolean, nullable=False, default=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_licenses_buyer_template", "buyer_id", "template_id"),)


# -----------------------------
# Creator money
# -----------------------------
class Withdrawal(Base):
    __tablename__ = "withdrawals"

    id = Column(IdType, primary_key=True)
    creator_id = Column(IdType, ForeignKey("users.id"), nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(Text, nullable=False, default="usd")
    status = Column(Text, nullable=False, default="pending")
    payout_method = Column(Text, nullable=False, default="stripe_connect")
    payout_details = Column(JSON, nullable=True)
    note = Column(Text, nullable=True)
    admin_note = Column(Text, nullable=True)
    processed_by = Column(IdType, ForeignKey("users.id"), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    stripe_transfer_id = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_withdrawals_creator_status", "creator_id", "status"),
        # at most one pending request per creator, enforced by storage
        Index(
            "uq_withdrawals_one_pending_per_creator",
            "creator_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(IdType, primary_key=True)
    # one request per order, ever
    order_id = Column(IdType, ForeignKey("orders.id"), nullable=False, unique=True)
    buyer_id = Column(IdType, ForeignKey("users.id"), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="requested")
    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(Text, nullable=False, default="usd")
    stripe_refund_id = Column(Text, nullable=True)
    admin_note = Column(Text, nullable=True)
    processed_by = Column(IdType, ForeignKey("users.id"), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_refunds_buyer_created", "buyer_id", "created_at"),
        Index("ix_refunds_status_created", "status", "created_at"),
    )


class PayoutTransfer(Base):
    __tablename__ = "payout_transfers"

    id = Column(IdType, primary_key=True)
    creator_id = Column(IdType, ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(IdType, ForeignKey("orders.id"), nullable=True)
    order_item_id = Column(IdType, ForeignKey("order_items.id"), nullable=True, unique=True)
    service_order_id = Column(IdType, ForeignKey("service_orders.id"), nullable=True, unique=True)
    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(Text, nullable=False, default="usd")
    source_charge_id = Column(Text, nullable=True)
    destination_account = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default="queued", index=True)
    transfer_id = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)


# -----------------------------
# Coupons (validated/redeemed at checkout; created elsewhere)
# -----------------------------
class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(IdType, primary_key=True)
    code = Column(Text, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    discount_type = Column(Text, nullable=False, default="percentage")  # percentage | fixed
    # whole percent for "percentage", cents for "fixed"
    discount_value = Column(BigInteger, nullable=False)
    min_order_cents = Column(BigInteger, nullable=False, default=0)
    max_discount_cents = Column(BigInteger, nullable=True)
    usage_limit = Column(Integer, nullable=True)
    per_user_limit = Column(Integer, nullable=False, default=1)
    used_count = Column(Integer, nullable=False, default=0)
    applicable_to = Column(Text, nullable=False, default="all")  # all | templates | services
    starts_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class CouponUsage(Base):
    __tablename__ = "coupon_usages"

    id = Column(IdType, primary_key=True)
    coupon_id = Column(IdType, ForeignKey("coupons.id"), nullable=False)
    user_id = Column(IdType, ForeignKey("users.id"), nullable=False)
    order_id = Column(IdType, ForeignKey("orders.id"), nullable=False)
    discount_cents = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("coupon_id", "order_id", name="uq_coupon_usages_coupon_order"),
        Index("ix_coupon_usages_coupon_user", "coupon_id", "user_id"),
    )


# -----------------------------
# Platform collaborators
# -----------------------------
class Notification(Base):
    __tablename__ = "notifications"

    id = Column(IdType, primary_key=True)
    user_id = Column(IdType, ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(IdType, primary_key=True)
    actor_id = Column(IdType, ForeignKey("users.id"), nullable=True)  # null = system
    action = Column(Text, nullable=False, index=True)
    target_type = Column(Text, nullable=False)
    target_id = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_audit_logs_target", "target_type", "target_id"),)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(IdType, primary_key=True)
    event_id = Column(Text, nullable=False, unique=True)
    event_type = Column(Text, nullable=True)
    delivery_count = Column(Integer, nullable=False, default=1)
    last_outcome = Column(Text, nullable=True)
    first_received_at = Column(DateTime(timezone=True), nullable=True)
    last_received_at = Column(DateTime(timezone=True), nullable=True)
