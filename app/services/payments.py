# app/services/payments.py
#
# Thin wrapper over the Stripe SDK for what the checkout, refund and webhook
# paths need: hosted checkout sessions, refunds and signature verification.
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import stripe

from app.core import config
from app.core.errors import PaymentProviderError, WebhookSignatureError
from app.core.log import component_logger

_log = component_logger("payments")


@dataclass(frozen=True)
class CheckoutSessionHandle:
    id: str
    url: str | None


class StripePayments:
    def __init__(self, secret_key: str | None, webhook_secret: str | None, *, tolerance: int = 300):
        self.secret_key = (secret_key or "").strip()
        self.webhook_secret = (webhook_secret or "").strip()
        self.tolerance = int(tolerance)

    @staticmethod
    def from_env() -> "StripePayments":
        return StripePayments(
            config.STRIPE_SECRET_KEY,
            config.STRIPE_WEBHOOK_SECRET,
            tolerance=config.STRIPE_WEBHOOK_TOLERANCE,
        )

    @property
    def enabled(self) -> bool:
        """False means simulate mode: orders are fulfilled without a checkout round-trip."""
        return config.stripe_is_configured(self.secret_key)

    @property
    def webhooks_enabled(self) -> bool:
        return bool(self.webhook_secret)

    # -----------------------------
    # Checkout
    # -----------------------------
    def create_checkout_session(
        self,
        *,
        line_items: list[dict[str, Any]],
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: str | None = None,
        discount_cents: int = 0,
        currency: str = "usd",
    ) -> CheckoutSessionHandle:
        session_kwargs: dict[str, Any] = {
            "mode": "payment",
            "line_items": line_items,
            "metadata": metadata,
            # payment_intent events (e.g. payment_failed) carry the same binding
            "payment_intent_data": {"metadata": metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
            "api_key": self.secret_key,
        }
        if customer_email:
            session_kwargs["customer_email"] = customer_email

        try:
            if discount_cents > 0:
                # Stripe has no negative line items; a one-off coupon carries the discount
                coupon = stripe.Coupon.create(
                    amount_off=int(discount_cents),
                    currency=currency,
                    duration="once",
                    max_redemptions=1,
                    api_key=self.secret_key,
                )
                session_kwargs["discounts"] = [{"coupon": coupon["id"]}]

            session = stripe.checkout.Session.create(**session_kwargs)
        except stripe.StripeError as e:
            _log("checkout session create failed:", type(e).__name__, str(e), level=logging.ERROR)
            raise PaymentProviderError(f"Payment provider error: {getattr(e, 'user_message', None) or str(e)}")

        return CheckoutSessionHandle(id=str(session["id"]), url=session["url"])

    # -----------------------------
    # Refunds
    # -----------------------------
    def create_refund(
        self,
        *,
        charge_ref: str,
        amount_cents: int,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        """Refunds a captured payment. `charge_ref` is the stored payment intent (pi_) or charge (ch_) id."""
        kwargs: dict[str, Any] = {
            "amount": int(amount_cents),
            "metadata": metadata,
            "api_key": self.secret_key,
            "idempotency_key": idempotency_key,
        }
        if charge_ref.startswith("ch_"):
            kwargs["charge"] = charge_ref
        else:
            kwargs["payment_intent"] = charge_ref

        try:
            refund = stripe.Refund.create(**kwargs)
        except stripe.StripeError as e:
            _log("refund create failed:", charge_ref, type(e).__name__, str(e), level=logging.ERROR)
            raise PaymentProviderError(f"Stripe refund failed: {getattr(e, 'user_message', None) or str(e)}")

        return str(refund["id"])

    # -----------------------------
    # Webhooks
    # -----------------------------
    def verify_event(self, payload: bytes, sig_header: str | None) -> dict[str, Any]:
        """
        Verifies the Stripe-Signature header over the raw body and returns the
        parsed event. Raises WebhookSignatureError (400) on any failure.
        """
        if not sig_header:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        if not self.webhook_secret:
            raise WebhookSignatureError("Webhook signing secret is not configured")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise WebhookSignatureError("Webhook payload is not valid UTF-8")

        try:
            stripe.WebhookSignature.verify_header(body, sig_header, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            _log("invalid stripe signature:", str(e), level=logging.WARNING)
            raise WebhookSignatureError("Invalid Stripe signature")

        try:
            event = json.loads(body)
        except ValueError:
            raise WebhookSignatureError("Invalid JSON payload")

        if not isinstance(event, dict) or not event.get("type"):
            raise WebhookSignatureError("Payload is not a Stripe event")

        return event
