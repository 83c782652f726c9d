# app/api/routes/service_orders.py
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_context
from app.core.auth import require_admin, require_user
from app.core.db import get_db
from app.schemas.service_orders import DeliverBody, DisputeBody, ReasonBody, ResolveDisputeBody
from app.services import service_orders as lifecycle
from app.services.context import ServiceContext
from app.services.effects import EffectQueue

router = APIRouter()


@router.get("/service-orders/mine")
def my_service_orders(
    user: dict = Depends(require_user),
    db: Session = Depends(get_db),
    as_role: str = Query("buyer", pattern="^(buyer|creator)$"),
):
    return {"ok": True, "items": lifecycle.list_for_user(db, user["user_id"], as_role=as_role)}


@router.get("/service-orders/{so_id}")
def get_service_order(so_id: int, user: dict = Depends(require_user), db: Session = Depends(get_db)):
    so = lifecycle.get_for_party(db, so_id, user["user_id"], role=user["role"])
    return {"ok": True, "service_order": lifecycle.serialize(so)}


def _run(background_tasks: BackgroundTasks, fn, db: Session, ctx: ServiceContext, *args, **kwargs) -> dict:
    effects = EffectQueue()
    so = fn(db, ctx, effects, *args, **kwargs)
    background_tasks.add_task(effects.flush)
    return {"ok": True, "service_order": so}


@router.post("/service-orders/{so_id}/accept")
def accept(so_id: int, background_tasks: BackgroundTasks, user: dict = Depends(require_user),
           db: Session = Depends(get_db), ctx: ServiceContext = Depends(get_context)):
    return _run(background_tasks, lifecycle.accept, db, ctx, so_id, user["user_id"])


@router.post("/service-orders/{so_id}/reject")
def reject(so_id: int, background_tasks: BackgroundTasks, body: ReasonBody | None = None,
           user: dict = Depends(require_user), db: Session = Depends(get_db),
           ctx: ServiceContext = Depends(get_context)):
    return _run(background_tasks, lifecycle.reject, db, ctx, so_id, user["user_id"],
                reason=body.reason if body else None)


@router.post("/service-orders/{so_id}/start")
def start(so_id: int, background_tasks: BackgroundTasks, user: dict = Depends(require_user),
          db: Session = Depends(get_db), ctx: ServiceContext = Depends(get_context)):
    return _run(background_tasks, lifecycle.start, db, ctx, so_id, user["user_id"])


@router.post("/service-orders/{so_id}/deliver")
def deliver(so_id: int, background_tasks: BackgroundTasks, body: DeliverBody | None = None,
            user: dict = Depends(require_user), db: Session = Depends(get_db),
            ctx: ServiceContext = Depends(get_context)):
    return _run(background_tasks, lifecycle.deliver, db, ctx, so_id, user["user_id"],
                delivery_note=body.delivery_note if body else None)


@router.post("/service-orders/{so_id}/request-revision")
def request_revision(so_id: int, background_tasks: BackgroundTasks, user: dict = Depends(require_user),
                     db: Session = Depends(get_db), ctx: ServiceContext = Depends(get_context)):
    return _run(background_tasks, lifecycle.request_revision, db, ctx, so_id, user["user_id"])


@router.post("/service-orders/{so_id}/complete")
def complete(so_id: int, background_tasks: BackgroundTasks, user: dict = Depends(require_user),
             db: Session = Depends(get_db), ctx: ServiceContext = Depends(get_context)):
    return _run(background_tasks, lifecycle.complete, db, ctx, so_id, user["user_id"])


@router.post("/service-orders/{so_id}/cancel")
def cancel(so_id: int, background_tasks: BackgroundTasks, body: ReasonBody | None = None,
           user: dict = Depends(require_user), db: Session = Depends(get_db),
           ctx: ServiceContext = Depends(get_context)):
    return _run(background_tasks, lifecycle.cancel, db, ctx, so_id, user["user_id"],
                reason=body.reason if body else None)


@router.post("/service-orders/{so_id}/dispute")
def open_dispute(so_id: int, body: DisputeBody, background_tasks: BackgroundTasks,
                 user: dict = Depends(require_user), db: Session = Depends(get_db),
                 ctx: ServiceContext = Depends(get_context)):
    return _run(background_tasks, lifecycle.open_dispute, db, ctx, so_id, user["user_id"], body.reason)


@router.post("/service-orders/admin/{so_id}/resolve-dispute")
def resolve_dispute(so_id: int, body: ResolveDisputeBody, background_tasks: BackgroundTasks,
                    admin: dict = Depends(require_admin), db: Session = Depends(get_db),
                    ctx: ServiceContext = Depends(get_context)):
    return _run(background_tasks, lifecycle.resolve_dispute, db, ctx, so_id, admin["user_id"],
                body.outcome, resolution=body.resolution)
