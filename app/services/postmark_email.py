from __future__ import annotations

import httpx
from dataclasses import dataclass
from typing import Any

from app.core import config

POSTMARK_API_URL = "https://api.postmarkapp.com/email"


@dataclass(frozen=True)
class PostmarkConfig:
    server_token: str
    from_email: str
    sender_name: str = ""
    message_stream: str = "outbound"
    reply_to: str = ""

    @property
    def from_header(self) -> str:
        return f"{self.sender_name} <{self.from_email}>" if self.sender_name else self.from_email


class PostmarkError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, error_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class PostmarkEmailService:
    """
    Transactional sender for marketplace receipts and payout updates.
    Configured from POSTMARK_SERVER_TOKEN / POSTMARK_FROM_EMAIL; the optional
    POSTMARK_MESSAGE_STREAM and POSTMARK_REPLY_TO refine it.
    """

    def __init__(self, cfg: PostmarkConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.cfg = cfg
        self._transport = transport

    @staticmethod
    def from_config() -> "PostmarkEmailService | None":
        """None when Postmark is not configured (emails are then skipped)."""
        if not config.POSTMARK_SERVER_TOKEN or not config.POSTMARK_FROM_EMAIL:
            return None

        return PostmarkEmailService(
            PostmarkConfig(
                server_token=config.POSTMARK_SERVER_TOKEN,
                from_email=config.POSTMARK_FROM_EMAIL,
                sender_name=config.BRAND_NAME,
                message_stream=config.POSTMARK_MESSAGE_STREAM,
                reply_to=config.POSTMARK_REPLY_TO,
            )
        )

    def build_payload(
        self,
        *,
        to_email: str,
        subject: str,
        html_body: str,
        tag: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "From": self.cfg.from_header,
            "To": to_email,
            "Subject": subject,
            "HtmlBody": html_body,
            "MessageStream": self.cfg.message_stream,
        }
        if self.cfg.reply_to:
            payload["ReplyTo"] = self.cfg.reply_to
        if tag:
            payload["Tag"] = tag
        if metadata:
            # Postmark metadata values must be strings
            payload["Metadata"] = {str(k): str(v) for k, v in metadata.items() if v is not None}
        return payload

    async def send(self, **kwargs: Any) -> dict[str, Any]:
        payload = self.build_payload(**kwargs)
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-Postmark-Server-Token": self.cfg.server_token,
        }

        async with httpx.AsyncClient(timeout=20, transport=self._transport) as client:
            r = await client.post(POSTMARK_API_URL, json=payload, headers=headers)

        if r.status_code < 200 or r.status_code >= 300:
            error_code = None
            try:
                error_code = r.json().get("ErrorCode")
            except ValueError:
                pass
            raise PostmarkError(
                f"Postmark error {r.status_code}: {r.text}", status_code=r.status_code, error_code=error_code
            )

        body = r.json()
        return {"message_id": body.get("MessageID"), "to": body.get("To"), "submitted_at": body.get("SubmittedAt")}
