"""
Creator balance ledger and the withdrawal request / admin review flow.
"""

from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import text

from app.core.errors import DuplicatePendingWithdrawal, InvalidTransition, ValidationFailed
from app.services import withdrawals as ledger
from app.services.checkout import create_template_checkout
from app.services.effects import EffectQueue
from tests.helpers import scalar


@pytest.fixture
def earnings(db, ctx, seed):
    """Two paid sales: 3430 + 2030 cents owed to the creator."""
    create_template_checkout(
        db, ctx, EffectQueue(),
        buyer_id=seed.buyer_id,
        buyer_email="buyer@example.com",
        items=[{"catalog_item_id": seed.template_id}, {"catalog_item_id": seed.template2_id}],
    )
    return 5460


def _request(client, headers, amount, **extra):
    return client.post("/withdrawals/request", json={"amount": str(amount), **extra}, headers=headers)


# -----------------------------
# Balance
# -----------------------------
class TestBalance:
    def test_no_sales(self, db, seed):
        bal = ledger.get_balance(db, seed.creator_id)
        assert bal["total_earnings_cents"] == 0
        assert bal["available_balance_cents"] == 0
        assert bal["available_balance"] == "0.00"

    def test_only_paid_orders_count(self, db, live_ctx, seed, earnings):
        # a second, unpaid order for another buyer
        create_template_checkout(
            db, live_ctx, EffectQueue(),
            buyer_id=seed.other_buyer_id,
            buyer_email="other@example.com",
            items=[{"catalog_item_id": seed.template_id}],
        )
        bal = ledger.get_balance(db, seed.creator_id)
        assert bal["total_earnings_cents"] == earnings
        assert bal["total_earnings"] == "54.60"

    def test_reserved_statuses_are_subtracted(self, db, seed, earnings):
        ledger.request_withdrawal(db, seed.creator_id, Decimal("20"))

        bal = ledger.get_balance(db, seed.creator_id)
        assert bal["total_withdrawn_cents"] == 2000
        assert bal["available_balance_cents"] == earnings - 2000
        assert bal["pending_withdrawals"] == 1


# -----------------------------
# Requests
# -----------------------------
class TestRequest:
    def test_below_minimum(self, client, db, creator_headers, earnings):
        res = _request(client, creator_headers, 5)

        assert res.status_code == 400
        assert res.json()["detail"]["code"] == "below_minimum"
        assert res.json()["detail"]["message"] == "Minimum withdrawal amount is $10.00"
        assert scalar(db, "select count(*) from withdrawals") == 0

    def test_above_maximum(self, db, seed, earnings):
        with pytest.raises(ValidationFailed) as exc:
            ledger.request_withdrawal(db, seed.creator_id, Decimal("100000.01"))
        assert exc.value.detail["code"] == "above_maximum"

    def test_insufficient_balance(self, client, creator_headers, earnings):
        res = _request(client, creator_headers, "54.61")

        assert res.status_code == 400
        assert res.json()["detail"]["code"] == "insufficient_balance"

    def test_whole_balance_can_be_requested(self, client, creator_headers, earnings):
        res = _request(client, creator_headers, "54.60")

        assert res.status_code == 201
        body = res.json()["withdrawal"]
        assert body["amount_cents"] == earnings
        assert body["status"] == "pending"
        assert body["payout_details"] == {"stripe_account_id": "acct_creator"}

    def test_second_pending_request_conflicts(self, client, db, creator_headers, earnings):
        assert _request(client, creator_headers, 20).status_code == 201
        before = client.get("/withdrawals/balance", headers=creator_headers).json()

        res = _request(client, creator_headers, 10)

        assert res.status_code == 409
        assert res.json()["detail"]["code"] == "duplicate_pending_withdrawal"
        assert client.get("/withdrawals/balance", headers=creator_headers).json() == before
        assert before["available_balance_cents"] == earnings - 2000
        assert scalar(db, "select count(*) from withdrawals") == 1

    def test_storage_allows_one_pending_row(self, db, seed, earnings):
        ledger.insert_pending_withdrawal(
            db, creator_id=seed.creator_id, amount_cents=1000,
            payout_method="stripe_connect", payout_details={}, note=None,
        )
        with pytest.raises(DuplicatePendingWithdrawal):
            ledger.insert_pending_withdrawal(
                db, creator_id=seed.creator_id, amount_cents=1500,
                payout_method="stripe_connect", payout_details={}, note=None,
            )
        db.commit()
        assert scalar(db, "select count(*) from withdrawals where status = 'pending'") == 1

    def test_bank_transfer_keeps_details(self, db, seed, earnings):
        w = ledger.request_withdrawal(
            db, seed.creator_id, Decimal("10"),
            payout_method="bank_transfer",
            payout_details={"iban": "DE89370400440532013000"},
            note="  monthly  ",
        )
        assert w["payout_details"] == {"iban": "DE89370400440532013000"}
        assert w["note"] == "monthly"

    def test_unsupported_method(self, db, seed, earnings):
        with pytest.raises(ValidationFailed):
            ledger.request_withdrawal(db, seed.creator_id, Decimal("10"), payout_method="paypal")

    def test_buyers_cannot_withdraw(self, client, buyer_headers):
        assert _request(client, buyer_headers, 20).status_code == 403

    def test_requires_authentication(self, client, seed):
        assert client.get("/withdrawals/balance").status_code == 401


# -----------------------------
# Admin review
# -----------------------------
@pytest.fixture
def pending_withdrawal(db, seed, earnings):
    return ledger.request_withdrawal(db, seed.creator_id, Decimal("20"))["id"]


class TestAdminReview:
    def test_full_payout_path(self, client, db, admin_headers, creator_headers, seed, pending_withdrawal):
        wid = pending_withdrawal

        res = client.post(f"/withdrawals/admin/{wid}/approve", headers=admin_headers)
        assert res.status_code == 200
        assert res.json()["withdrawal"]["status"] == "approved"
        assert res.json()["withdrawal"]["processed_by"] == seed.admin_id

        assert client.post(f"/withdrawals/admin/{wid}/process", headers=admin_headers).json()["withdrawal"][
            "status"
        ] == "processing"

        res = client.post(
            f"/withdrawals/admin/{wid}/complete", json={"stripe_transfer_id": "tr_manual_1"}, headers=admin_headers
        )
        assert res.json()["withdrawal"]["status"] == "completed"
        assert res.json()["withdrawal"]["stripe_transfer_id"] == "tr_manual_1"

        actions = db.execute(
            text(
                "select action, actor_id from audit_logs where target_type = 'withdrawal' order by id"
            )
        ).fetchall()
        assert [tuple(a) for a in actions] == [
            ("withdrawal_approved", seed.admin_id),
            ("withdrawal_processing", seed.admin_id),
            ("withdrawal_completed", seed.admin_id),
        ]

        # completed money stays out of the balance
        bal = client.get("/withdrawals/balance", headers=creator_headers).json()
        assert bal["available_balance_cents"] == 5460 - 2000
        assert scalar(
            db, "select count(*) from notifications where user_id = :u and kind like 'withdrawal_%'", u=seed.creator_id
        ) == 3

    def test_approved_can_complete_directly(self, db, ctx, seed, pending_withdrawal):
        ledger.approve(db, ctx, EffectQueue(), pending_withdrawal, seed.admin_id)
        w = ledger.complete(db, ctx, EffectQueue(), pending_withdrawal, seed.admin_id)
        assert w["status"] == "completed"
        assert w["completed_at"] is not None

    def test_reject_releases_the_reservation(self, client, db, admin_headers, creator_headers, pending_withdrawal):
        res = client.post(
            f"/withdrawals/admin/{pending_withdrawal}/reject",
            json={"admin_note": "Connect account not verified"},
            headers=admin_headers,
        )
        assert res.status_code == 200
        assert res.json()["withdrawal"]["status"] == "rejected"
        assert res.json()["withdrawal"]["admin_note"] == "Connect account not verified"

        bal = client.get("/withdrawals/balance", headers=creator_headers).json()
        assert bal["available_balance_cents"] == 5460
        assert bal["pending_withdrawals"] == 0

        # a new request is allowed once nothing is pending
        assert _request(client, creator_headers, 10).status_code == 201

    def test_reject_requires_a_reason(self, client, db, ctx, seed, admin_headers, pending_withdrawal):
        res = client.post(f"/withdrawals/admin/{pending_withdrawal}/reject", json={"admin_note": ""},
                          headers=admin_headers)
        assert res.status_code == 422

        with pytest.raises(ValidationFailed):
            ledger.reject(db, ctx, EffectQueue(), pending_withdrawal, seed.admin_id, "   ")

    @pytest.mark.parametrize("action", ["process", "complete"])
    def test_pending_cannot_skip_approval(self, client, admin_headers, pending_withdrawal, action):
        res = client.post(f"/withdrawals/admin/{pending_withdrawal}/{action}", headers=admin_headers)
        assert res.status_code == 409
        assert res.json()["detail"]["code"] == "invalid_transition"

    def test_terminal_states_are_final(self, db, ctx, seed, pending_withdrawal):
        ledger.reject(db, ctx, EffectQueue(), pending_withdrawal, seed.admin_id, "duplicate")
        with pytest.raises(InvalidTransition):
            ledger.approve(db, ctx, EffectQueue(), pending_withdrawal, seed.admin_id)

    def test_processing_sends_no_email(self, db, ctx, seed, pending_withdrawal):
        ledger.approve(db, ctx, EffectQueue(), pending_withdrawal, seed.admin_id)
        effects = EffectQueue()
        ledger.mark_processing(db, ctx, effects, pending_withdrawal, seed.admin_id)
        assert effects.names == [f"notify:withdrawal_processing:{pending_withdrawal}"]

    def test_only_admins_review(self, client, creator_headers, pending_withdrawal):
        res = client.post(f"/withdrawals/admin/{pending_withdrawal}/approve", headers=creator_headers)
        assert res.status_code == 403

    def test_unknown_withdrawal(self, client, admin_headers, seed):
        assert client.post("/withdrawals/admin/999/approve", headers=admin_headers).status_code == 404


class TestLists:
    def test_creator_sees_own_history(self, client, creator_headers, pending_withdrawal):
        body = client.get("/withdrawals/my", headers=creator_headers).json()
        assert body["total"] == 1
        assert body["items"][0]["id"] == pending_withdrawal

    def test_admin_filters_by_status(self, client, admin_headers, pending_withdrawal):
        assert client.get("/withdrawals/admin?status=pending", headers=admin_headers).json()["total"] == 1
        assert client.get("/withdrawals/admin?status=completed", headers=admin_headers).json()["total"] == 0
        assert client.get("/withdrawals/admin?status=bogus", headers=admin_headers).status_code == 400
