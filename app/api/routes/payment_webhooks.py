# app/api/routes/payment_webhooks.py
#
# Unauthenticated, signature-verified entry point for Stripe events.
#   400 -> bad signature / payload (Stripe should not retry)
#   500 -> handler crashed (Stripe retries; handlers are idempotent)
#   200 -> processed, no-op or ignored
from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import get_context
from app.core.db import get_db
from app.core.log import component_logger
from app.services.context import ServiceContext
from app.services.effects import EffectQueue
from app.services.webhooks import WebhookEventProcessor

router = APIRouter()

_log = component_logger("payment_webhook")


@router.post("/webhooks/payment")
async def payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    # blocking work goes to the threadpool, as it would for a sync route
    payload = await request.body()
    event = await run_in_threadpool(ctx.payments.verify_event, payload, request.headers.get("stripe-signature"))

    effects = EffectQueue()
    try:
        result = await run_in_threadpool(WebhookEventProcessor(ctx).process, db, event, effects)
    except Exception as e:
        _log("handler failed", event.get("type"), event.get("id"), type(e).__name__, str(e), level=logging.ERROR)
        return JSONResponse(
            status_code=500,
            content={"received": False, "message": "Webhook handler failed"},
        )

    background_tasks.add_task(effects.flush)
    return {"received": True, "result": result}
