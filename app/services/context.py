from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy.orm import sessionmaker

from app.services.coupons import CouponService
from app.services.mailer import Mailer
from app.services.notifications import Notifier
from app.services.payments import StripePayments
from app.services.payouts import PayoutDispatcher, PayoutGateway


@dataclass
class ServiceContext:
    """Collaborators shared by checkout, fulfillment, webhooks and the ledger."""

    session_factory: sessionmaker
    payments: StripePayments
    payout_gateway: PayoutGateway
    mailer: Mailer
    coupons: CouponService = field(default_factory=CouponService)
    notifier: Notifier | None = None
    dispatcher: PayoutDispatcher | None = None

    def __post_init__(self) -> None:
        if self.notifier is None:
            self.notifier = Notifier(self.session_factory)
        if self.dispatcher is None:
            self.dispatcher = PayoutDispatcher(self.session_factory, self.payout_gateway)
