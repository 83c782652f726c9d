import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.deps import get_payments
from app.core.db import get_db
from app.core.log import component_logger
from app.services.payments import StripePayments

router = APIRouter()

_log = component_logger("health")


@router.get("/health")
def health(db: Session = Depends(get_db), payments: StripePayments = Depends(get_payments)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        _log("database ping failed", type(e).__name__, str(e), level=logging.ERROR)
        return {"ok": False, "database": False, "error": str(e)}
    return {
        "ok": True,
        "database": True,
        "payments_mode": "stripe" if payments.enabled else "simulated",
    }
