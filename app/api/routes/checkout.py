# app/api/routes/checkout.py
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_context
from app.core.auth import require_user
from app.core.db import get_db
from app.schemas.checkout import (
    ServiceCheckoutRequest,
    ServiceCheckoutResponse,
    TemplateCheckoutRequest,
    TemplateCheckoutResponse,
)
from app.services.checkout import create_service_checkout, create_template_checkout
from app.services.context import ServiceContext
from app.services.effects import EffectQueue

router = APIRouter()


@router.post("/checkout/template", response_model=TemplateCheckoutResponse)
def checkout_template(
    body: TemplateCheckoutRequest,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_user),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    effects = EffectQueue()
    result = create_template_checkout(
        db,
        ctx,
        effects,
        buyer_id=user["user_id"],
        buyer_email=user["email"],
        items=[i.model_dump() for i in body.items],
        coupon_code=body.coupon_code,
    )
    background_tasks.add_task(effects.flush)
    return result


@router.post("/checkout/service", response_model=ServiceCheckoutResponse)
def checkout_service(
    body: ServiceCheckoutRequest,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_user),
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
):
    effects = EffectQueue()
    result = create_service_checkout(
        db,
        ctx,
        effects,
        buyer_id=user["user_id"],
        buyer_email=user["email"],
        package_id=body.package_id,
        requirements=body.requirements,
    )
    background_tasks.add_task(effects.flush)
    return result
