"""
Test doubles and small helpers shared across the test modules.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import text

from app.core.errors import PaymentProviderError
from app.core.security import create_access_token
from app.models.marketplace import Coupon
from app.services.payments import CheckoutSessionHandle, StripePayments
from app.services.payouts import TransferResult

WEBHOOK_SECRET = "whsec_test_secret"
TEST_SECRET_KEY = "sk_test_" + "x" * 24


# ============================================================================
# Fake collaborators
# ============================================================================


class FakePayments(StripePayments):
    """Real signature verification, recorded checkout sessions and refunds."""

    def __init__(self, enabled: bool = False, fail: bool = False):
        super().__init__(TEST_SECRET_KEY if enabled else "", WEBHOOK_SECRET, tolerance=300)
        self._enabled = enabled
        self.fail = fail
        self.refund_fail = False
        self.sessions: list[dict[str, Any]] = []
        self.refunds: list[dict[str, Any]] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    def create_checkout_session(self, **kwargs: Any) -> CheckoutSessionHandle:
        if self.fail:
            raise PaymentProviderError("Payment provider error: card_declined")
        n = len(self.sessions) + 1
        self.sessions.append(kwargs)
        return CheckoutSessionHandle(id=f"cs_test_{n}", url=f"https://checkout.stripe.test/cs_test_{n}")

    def create_refund(self, **kwargs: Any) -> str:
        self.refunds.append(kwargs)
        if self.refund_fail:
            raise PaymentProviderError("Stripe refund failed: charge_already_refunded")
        return f"re_{len(self.refunds)}"


@dataclass
class FakeGateway:
    fail: bool = False
    calls: list[dict[str, Any]] = field(default_factory=list)

    def transfer(self, charge_id, destination_account, amount_cents, metadata) -> TransferResult:
        self.calls.append(
            {
                "charge_id": charge_id,
                "destination": destination_account,
                "amount_cents": amount_cents,
                "metadata": metadata,
            }
        )
        if self.fail:
            raise RuntimeError("connect account restricted")
        return TransferResult(status="sent", transfer_id=f"tr_{len(self.calls)}")


# ============================================================================
# Data
# ============================================================================


def add_coupon(db, **overrides) -> Coupon:
    values = dict(
        code="SAVE10",
        discount_type="percentage",
        discount_value=10,
        min_order_cents=0,
        max_discount_cents=None,
        usage_limit=None,
        per_user_limit=1,
        used_count=0,
        applicable_to="all",
        is_active=True,
    )
    values.update(overrides)
    c = Coupon(**values)
    db.add(c)
    db.commit()
    return c


def scalar(db, sql: str, **params: Any):
    return db.execute(text(sql), params).scalar()


# ============================================================================
# Webhooks / HTTP
# ============================================================================


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = int(timestamp if timestamp is not None else time.time())
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def make_event(event_type: str, obj: dict[str, Any], event_id: str = "evt_1") -> dict[str, Any]:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


def session_completed(order_id: int, event_id: str = "evt_paid", payment_intent: str = "pi_123") -> dict[str, Any]:
    return make_event(
        "checkout.session.completed",
        {
            "id": "cs_test_1",
            "object": "checkout.session",
            "payment_status": "paid",
            "payment_intent": payment_intent,
            "metadata": {"orderId": str(order_id), "type": "template_purchase"},
        },
        event_id=event_id,
    )


def post_event(client, event: dict[str, Any], secret: str = WEBHOOK_SECRET):
    body = json.dumps(event)
    return client.post(
        "/webhooks/payment",
        content=body,
        headers={"Stripe-Signature": sign_payload(body, secret), "Content-Type": "application/json"},
    )


def auth_headers(user_id: int, email: str, role: str) -> dict[str, str]:
    token = create_access_token(user_id=user_id, email=email, role=role)
    return {"Authorization": f"Bearer {token}"}
