# app/services/payouts.py
#
# Creator payouts: a gateway that moves money to a connected account, and a
# dispatcher that records every attempt in payout_transfers so failures can be
# reconciled by hand. A payout is queued inside the transaction that marks the
# order paid (unique per line item / service order) and executed afterwards.
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

import stripe
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.core import config
from app.core.log import component_logger
from app.core.money import fmt_cents
from app.models.marketplace import PayoutTransfer
from app.models.status import PayoutStatus
from app.services.audit import append_audit

_log = component_logger("payouts")


@dataclass(frozen=True)
class TransferResult:
    status: str  # sent | skipped
    transfer_id: str | None = None
    reason: str | None = None


class PayoutGateway(Protocol):
    def transfer(
        self,
        charge_id: str | None,
        destination_account: str | None,
        amount_cents: int,
        metadata: dict[str, str],
    ) -> TransferResult: ...


class StripeConnectGateway:
    """Transfers to a Stripe Connect account, funded by the buyer's charge."""

    def __init__(self, secret_key: str, currency: str = "usd"):
        self.secret_key = secret_key
        self.currency = currency

    def _resolve_source_charge(self, charge_id: str | None) -> str | None:
        # transfers need a ch_ id; we store the payment intent id
        if not charge_id:
            return None
        if charge_id.startswith("pi_"):
            pi = stripe.PaymentIntent.retrieve(charge_id, api_key=self.secret_key)
            latest = pi["latest_charge"]
            return str(latest) if latest else None
        return charge_id

    def transfer(self, charge_id, destination_account, amount_cents, metadata) -> TransferResult:
        if not destination_account:
            _log("creator has no connected account; skipping transfer", level=logging.WARNING)
            return TransferResult(status=PayoutStatus.SKIPPED.value, reason="no_connected_account")

        kwargs: dict[str, Any] = {
            "amount": int(amount_cents),
            "currency": self.currency,
            "destination": destination_account,
            "metadata": metadata,
            "api_key": self.secret_key,
        }
        source = self._resolve_source_charge(charge_id)
        if source:
            kwargs["source_transaction"] = source

        transfer = stripe.Transfer.create(**kwargs)
        return TransferResult(status=PayoutStatus.SENT.value, transfer_id=str(transfer["id"]))


class SimulatedGateway:
    """Used when no processor is configured: logs what would have been sent."""

    def transfer(self, charge_id, destination_account, amount_cents, metadata) -> TransferResult:
        _log("simulate: would transfer", fmt_cents(amount_cents), "to", destination_account or "(none)")
        return TransferResult(status=PayoutStatus.SKIPPED.value, reason="simulated")


def gateway_from_env() -> PayoutGateway:
    if config.stripe_is_configured():
        return StripeConnectGateway(config.STRIPE_SECRET_KEY, config.CURRENCY)
    return SimulatedGateway()


# -----------------------------
# Queueing (inside the caller's transaction)
# -----------------------------
def connected_account_for(db: Session, creator_id: int) -> str | None:
    row = db.execute(
        text("select stripe_account_id from creator_profiles where user_id = :u limit 1"),
        {"u": int(creator_id)},
    ).fetchone()
    return str(row[0]).strip() if row and row[0] else None


def queue_payout(
    db: Session,
    *,
    creator_id: int,
    amount_cents: int,
    source_charge_id: str | None,
    order_id: int | None = None,
    order_item_id: int | None = None,
    service_order_id: int | None = None,
) -> int | None:
    """
    Inserts a queued payout row. Returns None when one already exists for the
    same line item / service order.
    """
    now = datetime.now(timezone.utc)
    try:
        with db.begin_nested():
            p = PayoutTransfer(
                creator_id=int(creator_id),
                order_id=order_id,
                order_item_id=order_item_id,
                service_order_id=service_order_id,
                amount_cents=int(amount_cents),
                currency=config.CURRENCY,
                source_charge_id=source_charge_id,
                destination_account=connected_account_for(db, creator_id),
                status=PayoutStatus.QUEUED.value,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
            db.add(p)
            db.flush()
    except IntegrityError:
        _log("payout already queued; skipping", "item", order_item_id, "service_order", service_order_id)
        return None

    return int(p.id)


# -----------------------------
# Execution (background effect)
# -----------------------------
class PayoutDispatcher:
    def __init__(self, session_factory: sessionmaker, gateway: PayoutGateway):
        self.session_factory = session_factory
        self.gateway = gateway

    def _claim(self, db: Session, payout_id: int):
        """queued -> sending; only one caller can win."""
        res = db.execute(
            text(
                """
                update payout_transfers
                   set status = :sending,
                       attempts = attempts + 1,
                       updated_at = :now
                 where id = :id
                   and status = :queued
                """
            ),
            {
                "id": int(payout_id),
                "sending": PayoutStatus.SENDING.value,
                "queued": PayoutStatus.QUEUED.value,
                "now": datetime.now(timezone.utc),
            },
        )
        if res.rowcount != 1:
            return None

        return db.execute(
            text(
                """
                select id, creator_id, order_id, order_item_id, service_order_id,
                       amount_cents, source_charge_id, destination_account
                  from payout_transfers
                 where id = :id
                """
            ),
            {"id": int(payout_id)},
        ).fetchone()

    def _finish(self, db: Session, payout_id: int, status: str, transfer_id: str | None, error: str | None) -> None:
        db.execute(
            text(
                """
                update payout_transfers
                   set status = :st,
                       transfer_id = :tid,
                       error = :err,
                       updated_at = :now
                 where id = :id
                """
            ),
            {
                "id": int(payout_id),
                "st": status,
                "tid": transfer_id,
                "err": (error[:2000] if error else None),
                "now": datetime.now(timezone.utc),
            },
        )

    def execute(self, payout_id: int) -> dict[str, Any]:
        """
        Attempts the transfer once. Failures are recorded on the payout row and
        in the audit log, then returned; nothing is raised to the caller.
        """
        db: Session = self.session_factory()
        try:
            row = self._claim(db, payout_id)
            db.commit()
            if not row:
                _log("payout not queued (already attempted?)", payout_id)
                return {"ok": True, "payout_id": int(payout_id), "status": "not_queued"}

            pid, creator_id, order_id, item_id, service_order_id, amount_cents, charge_id, destination = row
            metadata = {
                "payout_id": str(pid),
                "creator_id": str(creator_id),
            }
            if order_id is not None:
                metadata["order_id"] = str(order_id)
            if item_id is not None:
                metadata["order_item_id"] = str(item_id)
            if service_order_id is not None:
                metadata["service_order_id"] = str(service_order_id)

            try:
                result = self.gateway.transfer(charge_id, destination, int(amount_cents), metadata)
            except Exception as e:
                err = f"{type(e).__name__}: {str(e)}"
                _log("payout transfer failed", "payout", pid, "creator", creator_id, err, level=logging.WARNING)
                self._finish(db, pid, PayoutStatus.FAILED.value, None, err)
                append_audit(
                    db,
                    actor_id=None,
                    action="payout_failed",
                    target_type="payout",
                    target_id=pid,
                    details={"creator_id": int(creator_id), "amount_cents": int(amount_cents), "error": err},
                )
                db.commit()
                return {"ok": False, "payout_id": int(pid), "status": PayoutStatus.FAILED.value, "error": err}

            self._finish(db, pid, result.status, result.transfer_id, result.reason)
            db.commit()
            _log("payout", pid, result.status, "creator", creator_id, fmt_cents(amount_cents), result.transfer_id or "")
            return {
                "ok": True,
                "payout_id": int(pid),
                "status": result.status,
                "transfer_id": result.transfer_id,
            }
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def list_payouts(db: Session, *, status: str | None = None, page: int = 1, page_size: int = 20) -> dict[str, Any]:
    params: dict[str, Any] = {"limit": int(page_size), "offset": int((page - 1) * page_size)}
    where_sql = "1 = 1"
    if status:
        where_sql = "status = :st"
        params["st"] = status

    rows = db.execute(
        text(
            f"""
            select id, creator_id, order_id, order_item_id, service_order_id, amount_cents,
                   status, transfer_id, error, attempts, created_at,
                   count(*) over() as total_count
              from payout_transfers
             where {where_sql}
             order by id desc
             limit :limit offset :offset
            """
        ),
        params,
    ).fetchall()

    total = int(rows[0][-1]) if rows else 0
    items = [
        {
            "id": int(r[0]),
            "creator_id": int(r[1]),
            "order_id": int(r[2]) if r[2] is not None else None,
            "order_item_id": int(r[3]) if r[3] is not None else None,
            "service_order_id": int(r[4]) if r[4] is not None else None,
            "amount_cents": int(r[5]),
            "amount": fmt_cents(r[5]),
            "status": r[6],
            "transfer_id": r[7],
            "error": r[8],
            "attempts": int(r[9] or 0),
            "created_at": str(r[10]) if r[10] else None,
        }
        for r in rows or []
    ]
    return {"ok": True, "page": int(page), "page_size": int(page_size), "total": total, "items": items}
