from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from app.core.log import component_logger
from app.models.marketplace import Notification

_log = component_logger("notifications")

_TITLES = {
    "order_paid": "Purchase confirmed",
    "creator_sale": "You made a sale",
    "order_expired": "Checkout expired",
    "payment_failed": "Payment failed",
    "order_refunded": "Order refunded",
    "refund_approved": "Refund approved",
    "refund_rejected": "Refund rejected",
    "service_order_paid": "Service order paid",
    "service_order_cancelled": "Service order cancelled",
    "service_order_update": "Service order update",
    "withdrawal_approved": "Withdrawal approved",
    "withdrawal_rejected": "Withdrawal rejected",
    "withdrawal_completed": "Payout sent",
    "payout_released": "Payment released",
}


class Notifier:
    """
    In-app notifications. Runs as a background effect, so it opens its own
    session instead of borrowing the request's.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def notify(self, user_id: int, kind: str, payload: dict[str, Any] | None = None, message: str | None = None) -> int:
        db: Session = self.session_factory()
        try:
            n = Notification(
                user_id=int(user_id),
                kind=str(kind),
                title=_TITLES.get(kind, kind.replace("_", " ").capitalize()),
                message=message,
                payload=payload or {},
                is_read=False,
                created_at=datetime.now(timezone.utc),
            )
            db.add(n)
            db.commit()
            _log("notified", "user", user_id, "kind", kind)
            return int(n.id)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
