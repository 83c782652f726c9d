"""
Buyer refund requests and their admin review: the processor refund, the
order moving to refunded, and the one-request-per-order rule.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.models.marketplace import Order
from tests.helpers import auth_headers, make_event, post_event, scalar, session_completed

REASON = "The template does not match the preview"


def _checkout(client, headers, template_id):
    res = client.post("/checkout/template", json={"items": [{"catalog_item_id": template_id}]}, headers=headers)
    assert res.status_code == 200, res.text
    return res.json()["order_id"]


def _request(client, headers, order_id, reason=REASON):
    return client.post("/refunds/request", json={"order_id": order_id, "reason": reason}, headers=headers)


def _status(db, table, row_id):
    return scalar(db, f"select status from {table} where id = :id", id=row_id)


def _audit_count(db, action) -> int:
    return scalar(db, "select count(*) from audit_logs where action = :a", a=action)


@pytest.fixture
def paid_order_id(live_client, buyer_headers, seed):
    order_id = _checkout(live_client, buyer_headers, seed.template_id)
    res = post_event(live_client, session_completed(order_id, event_id="evt_paid", payment_intent="pi_123"))
    assert res.status_code == 200, res.text
    return order_id


@pytest.fixture
def refund_id(live_client, buyer_headers, paid_order_id):
    res = _request(live_client, buyer_headers, paid_order_id)
    assert res.status_code == 201, res.text
    return res.json()["refund"]["id"]


# -----------------------------
# Buyer request
# -----------------------------
class TestRequest:
    def test_request_is_recorded(self, live_client, db, buyer_headers, paid_order_id, refund_id):
        body = live_client.get(f"/refunds/order/{paid_order_id}", headers=buyer_headers).json()

        assert body["refund"]["id"] == refund_id
        assert body["refund"]["status"] == "requested"
        assert body["refund"]["amount_cents"] == 4900
        assert body["refund"]["reason"] == REASON
        # nothing moves until an admin approves
        assert _status(db, "orders", paid_order_id) == "paid"

    def test_no_request_yet(self, live_client, buyer_headers, paid_order_id):
        body = live_client.get(f"/refunds/order/{paid_order_id}", headers=buyer_headers).json()
        assert body["refund"] is None

    def test_only_the_buyer_can_request(self, live_client, seed, paid_order_id):
        other = auth_headers(seed.other_buyer_id, "other@example.com", "buyer")
        res = _request(live_client, other, paid_order_id)
        assert res.status_code == 403

    def test_unpaid_order_is_not_refundable(self, live_client, buyer_headers, seed):
        order_id = _checkout(live_client, buyer_headers, seed.template2_id)

        res = _request(live_client, buyer_headers, order_id)

        assert res.status_code == 400
        assert res.json()["detail"]["code"] == "not_refundable"

    def test_unknown_order(self, live_client, buyer_headers, seed):
        assert _request(live_client, buyer_headers, 987654).status_code == 404

    def test_one_request_per_order(self, live_client, db, buyer_headers, paid_order_id, refund_id):
        res = _request(live_client, buyer_headers, paid_order_id, reason="Asking again")

        assert res.status_code == 409
        assert res.json()["detail"]["code"] == "duplicate_refund_request"
        assert scalar(db, "select count(*) from refunds") == 1

    def test_reason_is_required(self, live_client, buyer_headers, paid_order_id):
        assert _request(live_client, buyer_headers, paid_order_id, reason="").status_code == 422
        assert _request(live_client, buyer_headers, paid_order_id, reason="   ").status_code == 400

    def test_window_expires(self, live_client, db, buyer_headers, paid_order_id):
        order = db.get(Order, paid_order_id)
        order.paid_at = datetime.now(timezone.utc) - timedelta(days=15)
        db.commit()

        res = _request(live_client, buyer_headers, paid_order_id)

        assert res.status_code == 400
        assert res.json()["detail"]["code"] == "refund_window_expired"
        assert "14 days" in res.json()["detail"]["message"]
        assert scalar(db, "select count(*) from refunds") == 0


# -----------------------------
# Admin approval
# -----------------------------
class TestApprove:
    def test_approve_refunds_through_the_processor(
        self, live_client, db, live_payments, seed, admin_headers, paid_order_id, refund_id
    ):
        res = live_client.post(f"/refunds/admin/{refund_id}/approve", headers=admin_headers)

        assert res.status_code == 200, res.text
        refund = res.json()["refund"]
        assert refund["status"] == "processed"
        assert refund["stripe_refund_id"] == "re_1"
        assert refund["processed_by"] == seed.admin_id

        (call,) = live_payments.refunds
        assert call["charge_ref"] == "pi_123"
        assert call["amount_cents"] == 4900
        assert call["idempotency_key"] == f"refund-{refund_id}"

        assert _status(db, "orders", paid_order_id) == "refunded"
        assert scalar(db, "select count(*) from licenses where is_active = :y", y=True) == 0
        assert _audit_count(db, "refund_approved") == 1
        assert _audit_count(db, "order_refunded") == 1
        assert scalar(
            db, "select count(*) from notifications where user_id = :u and kind = 'refund_approved'", u=seed.buyer_id
        ) == 1

    def test_processor_webhook_that_follows_is_a_noop(self, live_client, db, admin_headers, paid_order_id, refund_id):
        live_client.post(f"/refunds/admin/{refund_id}/approve", headers=admin_headers)

        event = make_event(
            "charge.refunded",
            {"id": "ch_1", "payment_intent": "pi_123", "amount_refunded": 4900, "refunded": True},
            event_id="evt_refund",
        )
        res = post_event(live_client, event)

        assert res.status_code == 200
        assert res.json()["result"]["already_fulfilled"] is True
        assert _audit_count(db, "order_refunded") == 1

    def test_provider_failure_keeps_the_request_open(
        self, live_client, db, live_payments, admin_headers, paid_order_id, refund_id
    ):
        live_payments.refund_fail = True
        res = live_client.post(f"/refunds/admin/{refund_id}/approve", headers=admin_headers)

        assert res.status_code == 502
        assert _status(db, "refunds", refund_id) == "requested"
        assert _status(db, "orders", paid_order_id) == "paid"
        assert _audit_count(db, "refund_approved") == 0

        live_payments.refund_fail = False
        res = live_client.post(f"/refunds/admin/{refund_id}/approve", headers=admin_headers)

        assert res.status_code == 200
        assert _status(db, "orders", paid_order_id) == "refunded"
        # the retry reuses the key, so the processor cannot refund twice
        assert {c["idempotency_key"] for c in live_payments.refunds} == {f"refund-{refund_id}"}

    def test_simulated_order_needs_no_provider_call(self, client, db, payments, seed, buyer_headers, admin_headers):
        order_id = _checkout(client, buyer_headers, seed.template_id)
        refund_id = _request(client, buyer_headers, order_id).json()["refund"]["id"]

        res = client.post(f"/refunds/admin/{refund_id}/approve", headers=admin_headers)

        assert res.status_code == 200
        assert res.json()["refund"]["stripe_refund_id"] is None
        assert payments.refunds == []
        assert _status(db, "orders", order_id) == "refunded"

    def test_order_refunded_elsewhere_cannot_be_approved(
        self, live_client, db, live_payments, admin_headers, paid_order_id, refund_id
    ):
        # refunded from the processor dashboard before anyone reviewed the request
        post_event(live_client, make_event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_123"}))

        res = live_client.post(f"/refunds/admin/{refund_id}/approve", headers=admin_headers)

        assert res.status_code == 400
        assert res.json()["detail"]["code"] == "not_refundable"
        assert live_payments.refunds == []
        assert _status(db, "refunds", refund_id) == "requested"

    def test_processed_request_is_final(self, live_client, admin_headers, refund_id):
        live_client.post(f"/refunds/admin/{refund_id}/approve", headers=admin_headers)

        res = live_client.post(f"/refunds/admin/{refund_id}/reject", headers=admin_headers)

        assert res.status_code == 409
        assert res.json()["detail"]["code"] == "invalid_transition"

    def test_only_admins_review(self, live_client, buyer_headers, refund_id):
        assert live_client.post(f"/refunds/admin/{refund_id}/approve", headers=buyer_headers).status_code == 403
        assert live_client.get("/refunds/admin", headers=buyer_headers).status_code == 403


# -----------------------------
# Admin rejection
# -----------------------------
class TestReject:
    def test_reject_with_note(self, live_client, db, seed, admin_headers, paid_order_id, refund_id):
        res = live_client.post(
            f"/refunds/admin/{refund_id}/reject",
            json={"admin_note": "Files were downloaded and used"},
            headers=admin_headers,
        )

        assert res.status_code == 200
        assert res.json()["refund"]["status"] == "rejected"
        assert res.json()["refund"]["admin_note"] == "Files were downloaded and used"
        assert _status(db, "orders", paid_order_id) == "paid"
        assert scalar(db, "select count(*) from licenses where is_active = :y", y=True) == 1
        assert _audit_count(db, "refund_rejected") == 1
        assert scalar(
            db, "select count(*) from notifications where user_id = :u and kind = 'refund_rejected'", u=seed.buyer_id
        ) == 1

    def test_default_note(self, live_client, admin_headers, refund_id):
        res = live_client.post(f"/refunds/admin/{refund_id}/reject", headers=admin_headers)
        assert res.json()["refund"]["admin_note"] == "Refund request denied"

    def test_rejected_order_still_refunds_from_the_dashboard(
        self, live_client, db, admin_headers, paid_order_id, refund_id
    ):
        live_client.post(f"/refunds/admin/{refund_id}/reject", headers=admin_headers)

        post_event(live_client, make_event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_123"}))

        assert _status(db, "orders", paid_order_id) == "refunded"
        assert _status(db, "refunds", refund_id) == "rejected"


# -----------------------------
# Admin list
# -----------------------------
def test_admin_list_filters_by_status(live_client, admin_headers, refund_id):
    requested = live_client.get("/refunds/admin?status=requested", headers=admin_headers).json()
    assert requested["total"] == 1
    assert requested["items"][0]["id"] == refund_id
    assert requested["items"][0]["order_number"]

    live_client.post(f"/refunds/admin/{refund_id}/approve", headers=admin_headers)

    assert live_client.get("/refunds/admin?status=requested", headers=admin_headers).json()["total"] == 0
    assert live_client.get("/refunds/admin?status=PROCESSED", headers=admin_headers).json()["total"] == 1
    assert live_client.get("/refunds/admin?status=bogus", headers=admin_headers).status_code == 400


def test_webhook_and_admin_share_the_order_transition(live_client, db, admin_headers, paid_order_id, refund_id):
    live_client.post(f"/refunds/admin/{refund_id}/approve", headers=admin_headers)

    # a late checkout.session.completed replay cannot resurrect a refunded order
    res = post_event(live_client, session_completed(paid_order_id, event_id="evt_paid_again"))

    assert res.json()["result"]["already_fulfilled"] is True
    assert _status(db, "orders", paid_order_id) == "refunded"
