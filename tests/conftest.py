"""
Shared pytest fixtures for the marketplace payment tests.

- in-memory SQLite database (StaticPool, fresh schema per test)
- seeded users / creator profile / catalog rows
- service context wired to fake Stripe collaborators (tests/helpers.py)
- a FastAPI TestClient with the app's dependencies overridden
"""

from __future__ import annotations

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ.pop("POSTMARK_SERVER_TOKEN", None)

from dataclasses import dataclass

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.deps import get_mailer, get_payments, get_payout_gateway
from app.core.db import get_db, get_session_factory
from app.main import app
from app.models.base import Base
from app.models.marketplace import CreatorProfile, ServicePackage, Template, User
from app.services.context import ServiceContext
from app.services.effects import EffectQueue
from app.services.mailer import Mailer
from tests.helpers import FakeGateway, FakePayments, auth_headers


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@dataclass
class Seed:
    buyer_id: int
    other_buyer_id: int
    creator_id: int
    admin_id: int
    template_id: int
    template2_id: int
    draft_template_id: int
    package_id: int


@pytest.fixture
def seed(db) -> Seed:
    buyer = User(email="buyer@example.com", name="Bea Buyer", role="buyer", is_active=True)
    other = User(email="other@example.com", name="Oli Other", role="buyer", is_active=True)
    creator = User(email="creator@example.com", name="Cam Creator", role="creator", is_active=True)
    admin = User(email="admin@example.com", name="Ada Admin", role="admin", is_active=True)
    db.add_all([buyer, other, creator, admin])
    db.flush()

    db.add(
        CreatorProfile(
            user_id=creator.id,
            display_name="Cam Studio",
            stripe_account_id="acct_creator",
            total_sales=0,
            total_revenue_cents=0,
        )
    )
    t1 = Template(creator_id=creator.id, title="Landing Kit", platform="webflow", price_cents=4900,
                  status="approved", purchases=0, revenue_cents=0)
    t2 = Template(creator_id=creator.id, title="Portfolio Pro", platform="framer", price_cents=2900,
                  status="approved", purchases=0, revenue_cents=0)
    t3 = Template(creator_id=creator.id, title="Unreviewed", platform="wix", price_cents=1900,
                  status="pending", purchases=0, revenue_cents=0)
    db.add_all([t1, t2, t3])
    db.flush()

    pkg = ServicePackage(creator_id=creator.id, template_id=t1.id, name="Custom setup", price_cents=20000,
                         delivery_days=5, revisions=1, is_active=True, orders_count=0,
                         completed_count=0, revenue_cents=0)
    db.add(pkg)
    db.commit()

    return Seed(
        buyer_id=buyer.id,
        other_buyer_id=other.id,
        creator_id=creator.id,
        admin_id=admin.id,
        template_id=t1.id,
        template2_id=t2.id,
        draft_template_id=t3.id,
        package_id=pkg.id,
    )


# ============================================================================
# Service-level context
# ============================================================================


@pytest.fixture
def payments() -> FakePayments:
    # simulate mode unless a test swaps in an enabled instance
    return FakePayments(enabled=False)


@pytest.fixture
def live_payments() -> FakePayments:
    return FakePayments(enabled=True)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


def _context(session_factory, payments, gateway) -> ServiceContext:
    return ServiceContext(
        session_factory=session_factory,
        payments=payments,
        payout_gateway=gateway,
        mailer=Mailer(None),
    )


@pytest.fixture
def ctx(session_factory, payments, gateway) -> ServiceContext:
    return _context(session_factory, payments, gateway)


@pytest.fixture
def live_ctx(session_factory, live_payments, gateway) -> ServiceContext:
    return _context(session_factory, live_payments, gateway)


@pytest.fixture
def effects() -> EffectQueue:
    return EffectQueue()


# ============================================================================
# HTTP
# ============================================================================


def _client(session_factory, payments, gateway) -> TestClient:
    def _get_db():
        s = session_factory()
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_payments] = lambda: payments
    app.dependency_overrides[get_payout_gateway] = lambda: gateway
    app.dependency_overrides[get_mailer] = lambda: Mailer(None)
    # no `with`: the lifespan would create the schema on the module-level engine
    return TestClient(app)


@pytest.fixture
def client(session_factory, payments, gateway):
    yield _client(session_factory, payments, gateway)
    app.dependency_overrides.clear()


@pytest.fixture
def live_client(session_factory, live_payments, gateway):
    yield _client(session_factory, live_payments, gateway)
    app.dependency_overrides.clear()


@pytest.fixture
def buyer_headers(seed):
    return auth_headers(seed.buyer_id, "buyer@example.com", "buyer")


@pytest.fixture
def creator_headers(seed):
    return auth_headers(seed.creator_id, "creator@example.com", "creator")


@pytest.fixture
def admin_headers(seed):
    return auth_headers(seed.admin_id, "admin@example.com", "admin")
