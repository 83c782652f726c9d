# app/services/webhooks.py
#
# Stripe event consumer. Signature verification happens before this runs
# (StripePayments.verify_event). Every handler is idempotent: a replayed or
# out-of-order delivery either finds the row already in its target state or
# loses the guarded UPDATE, and does nothing.
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import bindparam, text
from sqlalchemy.orm import Session

from app.core.log import component_logger
from app.models.status import ORDER_TRANSITIONS, SERVICE_ORDER_TRANSITIONS, OrderStatus, ServiceOrderStatus
from app.services.audit import append_audit, list_audit_for_target
from app.services.context import ServiceContext
from app.services.effects import EffectQueue
from app.services.fulfillment import fulfill_service_order, fulfill_template_order
from app.services.refunds import mark_order_refunded
from app.services.transitions import guarded_status_update

_log = component_logger("payment_webhook")

TEMPLATE_PURCHASE = "template_purchase"
SERVICE_PURCHASE = "service_purchase"
PAID_SESSION_STATUSES = ("paid", "no_payment_required")


# -----------------------------
# Small helpers
# -----------------------------
def _int_or_none(v: Any) -> int | None:
    if v is None or v == "":
        return None
    try:
        return int(str(v))
    except ValueError:
        return None


def _target_from_metadata(obj: dict) -> tuple[str | None, int | None]:
    """
    Strong binding: the order id comes from metadata set at session creation.
    Returns (kind, id) where kind is template_purchase | service_purchase.
    """
    md = obj.get("metadata") or {}
    kind = md.get("type")
    if kind == TEMPLATE_PURCHASE:
        return kind, _int_or_none(md.get("orderId"))
    if kind == SERVICE_PURCHASE:
        return kind, _int_or_none(md.get("serviceOrderId"))
    return None, None


def _ignored(message: str, **extra: Any) -> dict[str, Any]:
    return {"ok": True, "ignored": True, "message": message, **extra}


# -----------------------------
# webhook_events bookkeeping
# -----------------------------
def record_delivery(db: Session, event_id: str | None, event_type: str | None) -> None:
    if not event_id:
        return

    now = datetime.now(timezone.utc)
    db.execute(
        text(
            """
            insert into webhook_events
                (event_id, event_type, delivery_count, last_outcome, first_received_at, last_received_at)
            values
                (:eid, :et, 1, :outcome, :now, :now)
            on conflict (event_id)
            do update set
                delivery_count = webhook_events.delivery_count + 1,
                last_received_at = excluded.last_received_at
            """
        ),
        {"eid": str(event_id), "et": event_type, "outcome": "received", "now": now},
    )


def record_outcome(db: Session, event_id: str | None, outcome: str) -> None:
    if not event_id:
        return
    db.execute(
        text("update webhook_events set last_outcome = :o where event_id = :eid"),
        {"eid": str(event_id), "o": str(outcome)[:200]},
    )


class WebhookEventProcessor:
    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx
        self._handlers: dict[str, Callable[[Session, EffectQueue, dict], dict[str, Any]]] = {
            "checkout.session.completed": self._on_session_paid,
            "checkout.session.async_payment_succeeded": self._on_session_paid,
            "checkout.session.expired": self._on_session_expired,
            "checkout.session.async_payment_failed": self._on_payment_failed,
            "payment_intent.payment_failed": self._on_payment_failed,
            "charge.refunded": self._on_charge_refunded,
            "charge.dispute.created": self._on_dispute_created,
        }

    def process(self, db: Session, event: dict[str, Any], effects: EffectQueue) -> dict[str, Any]:
        event_id = event.get("id")
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}

        record_delivery(db, event_id, event_type)
        db.commit()

        handler = self._handlers.get(str(event_type))
        if handler is None:
            _log("unhandled event type; ignoring", event_type)
            record_outcome(db, event_id, "unhandled")
            db.commit()
            return _ignored("Unhandled event type", event_type=event_type)

        _log("event", event_type, "id", event_id, "object", obj.get("id"))
        try:
            result = handler(db, effects, obj)
        except Exception as e:
            db.rollback()
            effects.discard()
            record_outcome(db, event_id, f"error: {type(e).__name__}")
            db.commit()
            raise

        outcome = "ignored" if result.get("ignored") else ("noop" if result.get("already_fulfilled") else "processed")
        record_outcome(db, event_id, outcome)
        db.commit()
        return {**result, "event_type": event_type}

    # -------------------------
    # checkout.session.completed / async_payment_succeeded
    # -------------------------
    def _on_session_paid(self, db: Session, effects: EffectQueue, obj: dict) -> dict[str, Any]:
        payment_status = (obj.get("payment_status") or "").lower()
        # a fully discounted session completes without a charge
        if payment_status and payment_status not in PAID_SESSION_STATUSES:
            _log("not paid yet; ignoring", "session", obj.get("id"), "payment_status", payment_status)
            return _ignored("Payment not paid", payment_status=payment_status)

        kind, target_id = _target_from_metadata(obj)
        charge_id = obj.get("payment_intent")
        if isinstance(charge_id, dict):
            charge_id = charge_id.get("id")

        if kind == TEMPLATE_PURCHASE and target_id:
            if not self._exists(db, "orders", target_id):
                _log("order not found; ignoring", target_id, level=logging.WARNING)
                return _ignored("Order not found")
            return fulfill_template_order(db, self.ctx, effects, target_id, charge_id)

        if kind == SERVICE_PURCHASE and target_id:
            if not self._exists(db, "service_orders", target_id):
                _log("service order not found; ignoring", target_id, level=logging.WARNING)
                return _ignored("Service order not found")
            return fulfill_service_order(db, self.ctx, effects, target_id, charge_id)

        _log("session without order metadata; ignoring", obj.get("id"), level=logging.WARNING)
        return _ignored("Missing order metadata")

    # -------------------------
    # checkout.session.expired
    # -------------------------
    def _on_session_expired(self, db: Session, effects: EffectQueue, obj: dict) -> dict[str, Any]:
        kind, target_id = _target_from_metadata(obj)

        if kind == TEMPLATE_PURCHASE and target_id:
            if not self._exists(db, "orders", target_id):
                _log("order not found; ignoring", target_id, level=logging.WARNING)
                return _ignored("Order not found")
            won = guarded_status_update(
                db, "orders", target_id, ORDER_TRANSITIONS, OrderStatus.EXPIRED,
                from_statuses=[OrderStatus.PENDING],
            )
            if not won:
                return {"ok": True, "order_id": target_id, "already_fulfilled": True}
            db.commit()
            self._notify_order_status(db, effects, target_id, "order_expired", OrderStatus.EXPIRED.value)
            return {"ok": True, "order_id": target_id, "status": OrderStatus.EXPIRED.value}

        if kind == SERVICE_PURCHASE and target_id:
            if not self._exists(db, "service_orders", target_id):
                _log("service order not found; ignoring", target_id, level=logging.WARNING)
                return _ignored("Service order not found")
            won = guarded_status_update(
                db, "service_orders", target_id, SERVICE_ORDER_TRANSITIONS, ServiceOrderStatus.CANCELLED,
                from_statuses=[ServiceOrderStatus.REQUESTED],
                where_sql="is_paid = :no",
                params={"no": False},
            )
            if not won:
                return {"ok": True, "service_order_id": target_id, "already_fulfilled": True}
            db.commit()
            buyer_id = db.execute(
                text("select buyer_id from service_orders where id = :id"), {"id": target_id}
            ).scalar()
            effects.defer(
                f"notify:service_order_cancelled:{target_id}",
                self.ctx.notifier.notify,
                int(buyer_id),
                "service_order_cancelled",
                {"service_order_id": target_id, "reason": "checkout_expired"},
            )
            return {"ok": True, "service_order_id": target_id, "status": ServiceOrderStatus.CANCELLED.value}

        return _ignored("Missing order metadata")

    # -------------------------
    # payment_intent.payment_failed / checkout.session.async_payment_failed
    # -------------------------
    def _on_payment_failed(self, db: Session, effects: EffectQueue, obj: dict) -> dict[str, Any]:
        kind, target_id = _target_from_metadata(obj)

        if kind == SERVICE_PURCHASE and target_id:
            # the buyer can retry inside the same session; expiry cancels it
            _log("service payment failed; no status change", target_id)
            return _ignored("Service order keeps its status", service_order_id=target_id)

        if kind != TEMPLATE_PURCHASE or not target_id:
            return _ignored("Missing order metadata")

        if not self._exists(db, "orders", target_id):
            _log("order not found; ignoring", target_id, level=logging.WARNING)
            return _ignored("Order not found")

        won = guarded_status_update(db, "orders", target_id, ORDER_TRANSITIONS, OrderStatus.FAILED)
        if not won:
            return {"ok": True, "order_id": target_id, "already_fulfilled": True}
        db.commit()
        self._notify_order_status(db, effects, target_id, "payment_failed", OrderStatus.FAILED.value)
        return {"ok": True, "order_id": target_id, "status": OrderStatus.FAILED.value}

    # -------------------------
    # charge.refunded
    # -------------------------
    def _on_charge_refunded(self, db: Session, effects: EffectQueue, obj: dict) -> dict[str, Any]:
        refs = self._charge_refs(obj.get("id"), obj.get("payment_intent"))
        if not refs:
            return _ignored("Missing charge id")

        order_id = self._find_by_charge(db, "orders", refs)
        if order_id is not None:
            if obj.get("refunded") is False:
                # partial refund: the charge stays captured, so the order keeps its licenses
                recorded = self._audit_once(
                    db, "order_partially_refunded", "order", order_id, "amount_refunded", obj.get("amount_refunded"),
                    {"charge_id": obj.get("id"), "amount": obj.get("amount")},
                )
                db.commit()
                _log("partial refund recorded; order stays paid", order_id, obj.get("amount_refunded"))
                return {"ok": True, "order_id": order_id, "partial": True, "already_fulfilled": not recorded}

            won = mark_order_refunded(
                db, order_id, actor_id=None,
                details={"charge_id": obj.get("id"), "amount_refunded": obj.get("amount_refunded")},
            )
            if not won:
                _log("order not refundable; no-op", order_id)
                return {"ok": True, "order_id": order_id, "already_fulfilled": True}
            db.commit()
            self._notify_order_status(db, effects, order_id, "order_refunded", OrderStatus.REFUNDED.value)
            return {"ok": True, "order_id": order_id, "status": OrderStatus.REFUNDED.value}

        so_id = self._find_by_charge(db, "service_orders", refs)
        if so_id is not None:
            recorded = self._audit_once(
                db, "service_order_refunded", "service_order", so_id, "charge_id", obj.get("id"),
                {"amount_refunded": obj.get("amount_refunded")},
            )
            db.commit()
            return {"ok": True, "service_order_id": so_id, "already_fulfilled": not recorded}

        _log("refund for unknown charge; ignoring", refs, level=logging.WARNING)
        return _ignored("Charge not found")

    # -------------------------
    # charge.dispute.created
    # -------------------------
    def _on_dispute_created(self, db: Session, effects: EffectQueue, obj: dict) -> dict[str, Any]:
        refs = self._charge_refs(obj.get("charge"), obj.get("payment_intent"))
        if not refs:
            return _ignored("Missing charge id")

        details = {"reason": obj.get("reason"), "amount": obj.get("amount"), "charge_id": obj.get("charge")}

        order_id = self._find_by_charge(db, "orders", refs)
        if order_id is not None:
            recorded = self._audit_once(db, "payment_disputed", "order", order_id, "dispute_id", obj.get("id"), details)
            db.commit()
            return {"ok": True, "order_id": order_id, "already_fulfilled": not recorded}

        so_id = self._find_by_charge(db, "service_orders", refs)
        if so_id is not None:
            recorded = self._audit_once(
                db, "payment_disputed", "service_order", so_id, "dispute_id", obj.get("id"), details
            )
            db.commit()
            return {"ok": True, "service_order_id": so_id, "already_fulfilled": not recorded}

        _log("dispute for unknown charge; ignoring", refs, level=logging.WARNING)
        return _ignored("Charge not found")

    # -------------------------
    # lookups / shared effects
    # -------------------------
    @staticmethod
    def _exists(db: Session, table: str, row_id: int) -> bool:
        sql = {
            "orders": "select 1 from orders where id = :id limit 1",
            "service_orders": "select 1 from service_orders where id = :id limit 1",
        }[table]
        return db.execute(text(sql), {"id": int(row_id)}).fetchone() is not None

    @staticmethod
    def _charge_refs(charge_id: Any, payment_intent: Any) -> list[str]:
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        return [str(v) for v in (charge_id, payment_intent) if v]

    @staticmethod
    def _find_by_charge(db: Session, table: str, refs: list[str]) -> int | None:
        # fulfillment stores the payment intent id; older rows may hold the charge id
        sql = {
            "orders": "select id from orders where stripe_charge_id in :refs order by id desc limit 1",
            "service_orders": "select id from service_orders where stripe_charge_id in :refs order by id desc limit 1",
        }[table]
        row = db.execute(
            text(sql).bindparams(bindparam("refs", expanding=True)),
            {"refs": refs},
        ).fetchone()
        return int(row[0]) if row else None

    @staticmethod
    def _audit_once(db: Session, action: str, target_type: str, target_id: int,
                    key: str, value: Any, details: dict[str, Any]) -> bool:
        for entry in list_audit_for_target(db, target_type, target_id):
            if entry["action"] == action and entry["details"].get(key) == value:
                return False
        append_audit(
            db,
            actor_id=None,
            action=action,
            target_type=target_type,
            target_id=target_id,
            details={**details, key: value},
        )
        return True

    def _notify_order_status(self, db: Session, effects: EffectQueue, order_id: int, kind: str, status: str) -> None:
        row = db.execute(
            text(
                """
                select o.buyer_id, o.buyer_email, o.order_number, u.name
                  from orders o
                  left join users u on u.id = o.buyer_id
                 where o.id = :id
                 limit 1
                """
            ),
            {"id": int(order_id)},
        ).fetchone()
        if not row:
            return
        buyer_id, buyer_email, order_number, name = row

        effects.defer(
            f"notify:{kind}:{order_id}",
            self.ctx.notifier.notify,
            int(buyer_id),
            kind,
            {"order_id": int(order_id), "order_number": order_number},
        )
        effects.defer(
            f"email:order_{status}:{order_id}",
            self.ctx.mailer.send_order_status,
            buyer_email,
            name,
            order_number,
            status,
        )
