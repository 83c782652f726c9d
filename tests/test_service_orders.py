"""
Service order lifecycle: creator/buyer actions, revisions, disputes and the
one-time release of the creator payout.
"""

from __future__ import annotations

import pytest

from app.core.errors import Forbidden, InvalidTransition, ValidationFailed
from app.services import service_orders as lifecycle
from app.services.audit import list_audit_for_target
from app.services.checkout import create_service_checkout
from app.services.effects import EffectQueue
from app.services.fulfillment import fulfill_service_order
from tests.helpers import auth_headers, scalar


def _order(db, ctx, seed) -> int:
    res = create_service_checkout(
        db, ctx, EffectQueue(),
        buyer_id=seed.buyer_id,
        buyer_email="buyer@example.com",
        package_id=seed.package_id,
        requirements="Brand kit attached",
    )
    return res["service_order_id"]


@pytest.fixture
def paid_order(db, ctx, seed) -> int:
    # simulate mode marks the order paid at checkout
    return _order(db, ctx, seed)


@pytest.fixture
def delivered_order(db, ctx, seed, paid_order) -> int:
    e = EffectQueue()
    lifecycle.accept(db, ctx, e, paid_order, seed.creator_id)
    lifecycle.start(db, ctx, e, paid_order, seed.creator_id)
    lifecycle.deliver(db, ctx, e, paid_order, seed.creator_id, delivery_note="Final files")
    return paid_order


def _audit_count(db, action) -> int:
    return scalar(db, "select count(*) from audit_logs where action = :a", a=action)


class TestHappyPath:
    async def test_revision_then_completion_pays_creator_once(self, db, ctx, gateway, seed, delivered_order):
        so_id = delivered_order
        e = EffectQueue()

        so = lifecycle.request_revision(db, ctx, e, so_id, seed.buyer_id)
        assert so["status"] == "revision_requested"
        assert so["revisions_used"] == 1

        lifecycle.start(db, ctx, e, so_id, seed.creator_id)
        lifecycle.deliver(db, ctx, e, so_id, seed.creator_id)

        with pytest.raises(ValidationFailed) as exc:
            lifecycle.request_revision(db, ctx, e, so_id, seed.buyer_id)
        assert exc.value.detail["code"] == "revisions_exhausted"

        effects = EffectQueue()
        so = lifecycle.complete(db, ctx, effects, so_id, seed.buyer_id)

        assert so["status"] == "completed"
        assert so["payment_released"] is True
        assert any(n.startswith("payout:") for n in effects.names)

        await effects.flush()
        assert [c["amount_cents"] for c in gateway.calls] == [16000]
        assert gateway.calls[0]["metadata"]["service_order_id"] == str(so_id)
        assert scalar(db, "select completed_count from service_packages where id = :id", id=seed.package_id) == 1
        assert scalar(db, "select revenue_cents from service_packages where id = :id", id=seed.package_id) == 20000

        with pytest.raises(InvalidTransition):
            lifecycle.complete(db, ctx, EffectQueue(), so_id, seed.buyer_id)
        assert scalar(db, "select count(*) from payout_transfers where service_order_id = :id", id=so_id) == 1

    def test_delivery_note_is_saved(self, db, seed, delivered_order):
        assert scalar(db, "select delivery_note from service_orders where id = :id", id=delivered_order) == "Final files"
        assert scalar(db, "select delivered_at from service_orders where id = :id", id=delivered_order) is not None


class TestGuards:
    def test_work_cannot_start_before_payment(self, db, live_ctx, seed):
        so_id = _order(db, live_ctx, seed)
        lifecycle.accept(db, live_ctx, EffectQueue(), so_id, seed.creator_id)

        with pytest.raises(ValidationFailed) as exc:
            lifecycle.start(db, live_ctx, EffectQueue(), so_id, seed.creator_id)
        assert exc.value.detail["code"] == "not_paid"

    def test_only_the_creator_accepts(self, db, ctx, seed, paid_order):
        with pytest.raises(Forbidden):
            lifecycle.accept(db, ctx, EffectQueue(), paid_order, seed.buyer_id)

    def test_only_the_buyer_completes(self, db, ctx, seed, delivered_order):
        with pytest.raises(Forbidden):
            lifecycle.complete(db, ctx, EffectQueue(), delivered_order, seed.creator_id)

    def test_strangers_cannot_read(self, db, seed, paid_order):
        with pytest.raises(Forbidden):
            lifecycle.get_for_party(db, paid_order, seed.other_buyer_id)
        assert lifecycle.get_for_party(db, paid_order, seed.admin_id, role="admin").id == paid_order

    def test_completion_needs_delivery(self, db, ctx, seed, paid_order):
        lifecycle.accept(db, ctx, EffectQueue(), paid_order, seed.creator_id)
        lifecycle.start(db, ctx, EffectQueue(), paid_order, seed.creator_id)

        with pytest.raises(InvalidTransition):
            lifecycle.complete(db, ctx, EffectQueue(), paid_order, seed.buyer_id)
        assert scalar(db, "select count(*) from payout_transfers") == 0


class TestRejectAndCancel:
    def test_rejecting_a_paid_order_records_refund_due(self, db, ctx, seed, paid_order):
        so = lifecycle.reject(db, ctx, EffectQueue(), paid_order, seed.creator_id, reason="Fully booked")

        assert so["status"] == "rejected"
        assert _audit_count(db, "service_order_refund_due") == 1

    def test_cancelling_an_unpaid_order_owes_nothing(self, db, live_ctx, seed):
        so_id = _order(db, live_ctx, seed)

        so = lifecycle.cancel(db, live_ctx, EffectQueue(), so_id, seed.buyer_id)

        assert so["status"] == "cancelled"
        assert _audit_count(db, "service_order_refund_due") == 0

    def test_cancel_notifies_the_other_party(self, db, ctx, seed, paid_order):
        effects = EffectQueue()
        lifecycle.cancel(db, ctx, effects, paid_order, seed.creator_id, reason="Out of office")

        assert effects.names == [f"notify:service_order_cancelled:{paid_order}:{seed.buyer_id}"]

    @pytest.mark.parametrize("close", ["cancel", "reject"])
    def test_payment_after_close_records_refund_due(self, db, live_ctx, seed, close):
        so_id = _order(db, live_ctx, seed)
        if close == "cancel":
            lifecycle.cancel(db, live_ctx, EffectQueue(), so_id, seed.buyer_id)
        else:
            lifecycle.reject(db, live_ctx, EffectQueue(), so_id, seed.creator_id)
        assert _audit_count(db, "service_order_refund_due") == 0

        # the checkout session was still open and the buyer paid anyway
        res = fulfill_service_order(db, live_ctx, EffectQueue(), so_id, "pi_late")
        assert res["already_fulfilled"] is False
        fulfill_service_order(db, live_ctx, EffectQueue(), so_id, "pi_late")

        assert bool(scalar(db, "select is_paid from service_orders where id = :id", id=so_id)) is True
        assert scalar(db, "select status from service_orders where id = :id", id=so_id) in ("cancelled", "rejected")
        assert _audit_count(db, "service_order_refund_due") == 1
        due = [e for e in list_audit_for_target(db, "service_order", so_id) if e["action"] == "service_order_refund_due"]
        assert due[0]["details"]["charge_id"] == "pi_late"
        assert due[0]["details"]["amount_cents"] == 20000

    def test_completed_orders_cannot_be_cancelled(self, db, ctx, seed, delivered_order):
        lifecycle.complete(db, ctx, EffectQueue(), delivered_order, seed.buyer_id)
        with pytest.raises(InvalidTransition):
            lifecycle.cancel(db, ctx, EffectQueue(), delivered_order, seed.buyer_id)


class TestDisputes:
    def test_open_dispute(self, db, ctx, seed, delivered_order):
        so = lifecycle.open_dispute(db, ctx, EffectQueue(), delivered_order, seed.buyer_id, "Files are broken")

        assert so["status"] == "disputed"
        assert so["dispute_reason"] == "Files are broken"
        assert _audit_count(db, "dispute_opened") == 1

    def test_reason_is_required(self, db, ctx, seed, delivered_order):
        with pytest.raises(ValidationFailed):
            lifecycle.open_dispute(db, ctx, EffectQueue(), delivered_order, seed.buyer_id, "   ")

    def test_disputed_order_cannot_be_cancelled(self, db, ctx, seed, delivered_order):
        lifecycle.open_dispute(db, ctx, EffectQueue(), delivered_order, seed.buyer_id, "Late")
        with pytest.raises(ValidationFailed):
            lifecycle.cancel(db, ctx, EffectQueue(), delivered_order, seed.buyer_id)

    def test_release_payment(self, db, ctx, seed, delivered_order):
        lifecycle.open_dispute(db, ctx, EffectQueue(), delivered_order, seed.buyer_id, "Late")

        effects = EffectQueue()
        so = lifecycle.resolve_dispute(db, ctx, effects, delivered_order, seed.admin_id, "release_payment",
                                       resolution="Delivered within the agreed scope")

        assert so["status"] == "completed"
        assert so["dispute_outcome"] == "release_payment"
        assert so["payment_released"] is True
        assert any(n.startswith("payout:") for n in effects.names)
        assert _audit_count(db, "dispute_resolved") == 1
        assert _audit_count(db, "service_order_refund_due") == 0

    def test_refund(self, db, ctx, seed, delivered_order):
        lifecycle.open_dispute(db, ctx, EffectQueue(), delivered_order, seed.buyer_id, "Wrong template")

        so = lifecycle.resolve_dispute(db, ctx, EffectQueue(), delivered_order, seed.admin_id, "refund")

        assert so["status"] == "cancelled"
        assert so["payment_released"] is False
        assert _audit_count(db, "service_order_refund_due") == 1
        assert scalar(db, "select count(*) from payout_transfers") == 0

    def test_redo_reopens_work_but_not_the_dispute(self, db, ctx, seed, delivered_order):
        lifecycle.open_dispute(db, ctx, EffectQueue(), delivered_order, seed.buyer_id, "Missing pages")
        so = lifecycle.resolve_dispute(db, ctx, EffectQueue(), delivered_order, seed.admin_id, "redo")
        assert so["status"] == "in_progress"

        lifecycle.deliver(db, ctx, EffectQueue(), delivered_order, seed.creator_id)
        with pytest.raises(ValidationFailed) as exc:
            lifecycle.open_dispute(db, ctx, EffectQueue(), delivered_order, seed.buyer_id, "Again")
        assert exc.value.detail["code"] == "dispute_exists"

    def test_only_disputed_orders_resolve(self, db, ctx, seed, delivered_order):
        with pytest.raises(ValidationFailed) as exc:
            lifecycle.resolve_dispute(db, ctx, EffectQueue(), delivered_order, seed.admin_id, "refund")
        assert exc.value.detail["code"] == "not_disputed"

    def test_unknown_outcome(self, db, ctx, seed, delivered_order):
        with pytest.raises(ValidationFailed):
            lifecycle.resolve_dispute(db, ctx, EffectQueue(), delivered_order, seed.admin_id, "split")


class TestRoutes:
    def test_party_views(self, client, seed, paid_order, buyer_headers, creator_headers):
        mine = client.get("/service-orders/mine", headers=buyer_headers).json()
        assert [i["id"] for i in mine["items"]] == [paid_order]

        as_creator = client.get("/service-orders/mine?as_role=creator", headers=creator_headers).json()
        assert [i["id"] for i in as_creator["items"]] == [paid_order]

        other = auth_headers(seed.other_buyer_id, "other@example.com", "buyer")
        assert client.get(f"/service-orders/{paid_order}", headers=other).status_code == 403

    def test_accept_and_start(self, client, paid_order, creator_headers, buyer_headers):
        assert client.post(f"/service-orders/{paid_order}/accept", headers=buyer_headers).status_code == 403

        res = client.post(f"/service-orders/{paid_order}/accept", headers=creator_headers)
        assert res.status_code == 200
        assert res.json()["service_order"]["status"] == "accepted"

        res = client.post(f"/service-orders/{paid_order}/start", headers=creator_headers)
        assert res.json()["service_order"]["status"] == "in_progress"

    def test_resolve_requires_admin(self, client, delivered_order, buyer_headers, admin_headers):
        client.post(f"/service-orders/{delivered_order}/dispute", json={"reason": "Late"}, headers=buyer_headers)

        body = {"outcome": "release_payment"}
        url = f"/service-orders/admin/{delivered_order}/resolve-dispute"
        assert client.post(url, json=body, headers=buyer_headers).status_code == 403

        res = client.post(url, json=body, headers=admin_headers)
        assert res.status_code == 200
        assert res.json()["service_order"]["status"] == "completed"
