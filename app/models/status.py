# app/models/status.py
#
# Closed status sets plus the transitions each entity may take.
# Anything not listed in a table is rejected.
from __future__ import annotations

from enum import Enum
from typing import Mapping

from app.core.errors import InvalidTransition


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"
    REFUNDED = "refunded"


class ServiceOrderStatus(str, Enum):
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    REVISION_REQUESTED = "revision_requested"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class RefundStatus(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    PROCESSED = "processed"
    REJECTED = "rejected"


class PayoutStatus(str, Enum):
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


# A payment can still succeed after a failed attempt or a late session expiry:
# money was captured, so the order is fulfilled.
ORDER_TRANSITIONS: Mapping[OrderStatus, frozenset] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.EXPIRED, OrderStatus.FAILED}),
    OrderStatus.FAILED: frozenset({OrderStatus.PAID, OrderStatus.EXPIRED}),
    OrderStatus.EXPIRED: frozenset({OrderStatus.PAID}),
    OrderStatus.PAID: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.REFUNDED: frozenset(),
}

S = ServiceOrderStatus
SERVICE_ORDER_TRANSITIONS: Mapping[ServiceOrderStatus, frozenset] = {
    S.REQUESTED: frozenset({S.ACCEPTED, S.REJECTED, S.CANCELLED}),
    S.ACCEPTED: frozenset({S.IN_PROGRESS, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.DELIVERED, S.CANCELLED, S.DISPUTED}),
    S.DELIVERED: frozenset({S.COMPLETED, S.REVISION_REQUESTED, S.DISPUTED, S.CANCELLED}),
    S.REVISION_REQUESTED: frozenset({S.DELIVERED, S.IN_PROGRESS, S.DISPUTED, S.CANCELLED}),
    S.DISPUTED: frozenset({S.COMPLETED, S.CANCELLED, S.IN_PROGRESS}),
    S.COMPLETED: frozenset(),
    S.REJECTED: frozenset(),
    S.CANCELLED: frozenset(),
}
del S

WITHDRAWAL_TRANSITIONS: Mapping[WithdrawalStatus, frozenset] = {
    WithdrawalStatus.PENDING: frozenset({WithdrawalStatus.APPROVED, WithdrawalStatus.REJECTED}),
    WithdrawalStatus.APPROVED: frozenset({WithdrawalStatus.PROCESSING, WithdrawalStatus.COMPLETED}),
    WithdrawalStatus.PROCESSING: frozenset({WithdrawalStatus.COMPLETED}),
    WithdrawalStatus.COMPLETED: frozenset(),
    WithdrawalStatus.REJECTED: frozenset(),
}

# approved is the short window while the processor refund is in flight;
# a provider error puts the request back to requested
REFUND_TRANSITIONS: Mapping[RefundStatus, frozenset] = {
    RefundStatus.REQUESTED: frozenset({RefundStatus.APPROVED, RefundStatus.REJECTED}),
    RefundStatus.APPROVED: frozenset({RefundStatus.PROCESSED, RefundStatus.REQUESTED}),
    RefundStatus.PROCESSED: frozenset(),
    RefundStatus.REJECTED: frozenset(),
}

# Statuses that count against a creator's balance
WITHDRAWAL_RESERVED_STATUSES = (
    WithdrawalStatus.PENDING,
    WithdrawalStatus.APPROVED,
    WithdrawalStatus.PROCESSING,
    WithdrawalStatus.COMPLETED,
)


def can_transition(table: Mapping, current: str | Enum, target: str | Enum) -> bool:
    enum_cls = type(next(iter(table)))
    try:
        cur = enum_cls(current)
        tgt = enum_cls(target)
    except ValueError:
        return False
    return tgt in table.get(cur, frozenset())


def sources_for(table: Mapping, target: str | Enum) -> list[str]:
    """All statuses from which `target` is reachable in one step (for guarded UPDATEs)."""
    enum_cls = type(next(iter(table)))
    tgt = enum_cls(target)
    return sorted(src.value for src, targets in table.items() if tgt in targets)


def ensure_transition(table: Mapping, current: str | Enum, target: str | Enum, *, noun: str) -> None:
    if not can_transition(table, current, target):
        cur = current.value if isinstance(current, Enum) else current
        tgt = target.value if isinstance(target, Enum) else target
        raise InvalidTransition(
            f"Cannot move {noun} from {cur} to {tgt}",
            extra={"current_status": cur, "target_status": tgt},
        )
