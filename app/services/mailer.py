from __future__ import annotations

import re
import html
from datetime import datetime, timezone
from typing import Any

from app.core.config import BRAND_NAME, CLIENT_URL, SUPPORT_EMAIL
from app.core.log import component_logger
from app.core.money import fmt_cents
from app.email_templates.marketplace import MARKETPLACE_EMAIL_HTML
from app.services.postmark_email import PostmarkEmailService

_log = component_logger("mailer")


def _simple_render_double_curly(template: str, vars: dict[str, Any]) -> str:
    def repl(m: re.Match) -> str:
        key = (m.group(1) or "").strip()
        val = vars.get(key, "")
        return "" if val is None else str(val)

    return re.sub(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}", repl, template)


class Mailer:
    """
    Transactional emails for the payment pipeline. Every method is meant to run
    as a background effect; when Postmark is not configured the message is
    logged and skipped.
    """

    def __init__(self, service: PostmarkEmailService | None):
        self.service = service

    @staticmethod
    def from_env() -> "Mailer":
        return Mailer(PostmarkEmailService.from_config())

    def render(self, *, subject: str, recipient_name: str | None, heading: str, intro: str,
               details: list[tuple[str, str]] | None = None, cta_url: str | None = None,
               cta_label: str = "Open dashboard", eyebrow: str = "") -> str:
        rows = "".join(
            f"<div><strong>{html.escape(k)}:</strong> {html.escape(v)}</div>" for k, v in (details or [])
        )
        return _simple_render_double_curly(
            MARKETPLACE_EMAIL_HTML,
            {
                "subject": html.escape(subject),
                "preheader": html.escape(intro),
                "eyebrow": html.escape(eyebrow or "Marketplace"),
                "heading": html.escape(heading),
                "recipient_name": html.escape(recipient_name or "there"),
                "intro": html.escape(intro),
                "details_html": rows,
                "cta_url": cta_url or f"{CLIENT_URL}/dashboard",
                "cta_label": html.escape(cta_label),
                "support_email": SUPPORT_EMAIL,
                "brand_name": BRAND_NAME,
                "year": datetime.now(timezone.utc).year,
            },
        )

    async def _send(self, *, to: str | None, subject: str, html_body: str, tag: str,
                    metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        if not to:
            _log("no recipient; skipping", tag)
            return {"ok": False, "skipped": True, "reason": "no_recipient"}

        if self.service is None:
            _log("postmark not configured; would send", tag, "to", to)
            return {"ok": False, "skipped": True, "reason": "not_configured"}

        res = await self.service.send(
            to_email=to,
            subject=subject,
            html_body=html_body,
            tag=tag,
            metadata=metadata,
        )
        return {"ok": True, "postmark": res}

    async def send_purchase_confirmation(self, to: str | None, name: str | None, order: dict[str, Any]):
        subject = f"Your order {order['order_number']} is confirmed"
        details = [(i["title"], fmt_cents(i["price_cents"])) for i in order.get("items", [])]
        if order.get("discount_cents"):
            details.append(("Discount", f"-{fmt_cents(order['discount_cents'])}"))
        details.append(("Total", fmt_cents(order["total_cents"])))
        body = self.render(
            subject=subject,
            recipient_name=name,
            eyebrow="Receipt",
            heading="Thanks for your purchase",
            intro="your payment went through and your licenses are ready to download.",
            details=details,
            cta_url=f"{CLIENT_URL}/dashboard/buyer",
            cta_label="View my purchases",
        )
        return await self._send(to=to, subject=subject, html_body=body, tag="purchase-confirmation",
                                metadata={"order_id": order["id"]})

    async def send_order_status(self, to: str | None, name: str | None, order_number: str, status: str):
        intros = {
            "expired": "your checkout session expired before payment was completed. Nothing was charged.",
            "failed": "we could not process your payment. Nothing was charged; you can try again anytime.",
            "refunded": "your order was refunded and its licenses have been deactivated.",
        }
        subject = f"Order {order_number}: {status}"
        body = self.render(
            subject=subject,
            recipient_name=name,
            eyebrow="Order update",
            heading=f"Order {order_number}",
            intro=intros.get(status, f"your order is now {status}."),
            cta_url=f"{CLIENT_URL}/dashboard/buyer",
        )
        return await self._send(to=to, subject=subject, html_body=body, tag=f"order-{status}",
                                metadata={"order_number": order_number})

    async def send_withdrawal_update(self, to: str | None, name: str | None, amount_cents: int, status: str,
                                     reason: str | None = None):
        headings = {
            "approved": "Your withdrawal was approved",
            "rejected": "Your withdrawal was rejected",
            "completed": "Your payout is on its way",
        }
        details = [("Amount", fmt_cents(amount_cents))]
        if reason:
            details.append(("Reason", reason))
        subject = headings.get(status, f"Withdrawal {status}")
        body = self.render(
            subject=subject,
            recipient_name=name,
            eyebrow="Payouts",
            heading=subject,
            intro=f"your withdrawal request is now {status}.",
            details=details,
            cta_url=f"{CLIENT_URL}/dashboard/creator",
        )
        return await self._send(to=to, subject=subject, html_body=body, tag=f"withdrawal-{status}")

    async def send_refund_update(self, to: str | None, name: str | None, order_number: str | None,
                                 amount_cents: int, status: str, note: str | None = None):
        intros = {
            "approved": "your refund was approved. The money goes back to your original payment method "
                        "and the order's licenses have been deactivated.",
            "rejected": "your refund request was reviewed and could not be approved.",
        }
        details = [("Order", order_number or "-"), ("Amount", fmt_cents(amount_cents))]
        if note:
            details.append(("Note", note))
        subject = f"Refund {status}"
        body = self.render(
            subject=subject,
            recipient_name=name,
            eyebrow="Refunds",
            heading=f"Refund for order {order_number}" if order_number else subject,
            intro=intros.get(status, f"your refund request is now {status}."),
            details=details,
            cta_url=f"{CLIENT_URL}/dashboard/buyer",
        )
        return await self._send(to=to, subject=subject, html_body=body, tag=f"refund-{status}",
                                metadata={"order_number": order_number})
