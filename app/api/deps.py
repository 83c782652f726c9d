from __future__ import annotations

from fastapi import Depends
from sqlalchemy.orm import sessionmaker

from app.core.db import get_session_factory
from app.services.context import ServiceContext
from app.services.mailer import Mailer
from app.services.payments import StripePayments
from app.services.payouts import PayoutGateway, gateway_from_env


def get_payments() -> StripePayments:
    return StripePayments.from_env()


def get_payout_gateway() -> PayoutGateway:
    return gateway_from_env()


def get_mailer() -> Mailer:
    return Mailer.from_env()


def get_context(
    session_factory: sessionmaker = Depends(get_session_factory),
    payments: StripePayments = Depends(get_payments),
    gateway: PayoutGateway = Depends(get_payout_gateway),
    mailer: Mailer = Depends(get_mailer),
) -> ServiceContext:
    return ServiceContext(
        session_factory=session_factory,
        payments=payments,
        payout_gateway=gateway,
        mailer=mailer,
    )
