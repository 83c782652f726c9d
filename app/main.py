from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import checkout
from app.api.routes import health
from app.api.routes import orders
from app.api.routes import payment_webhooks
from app.api.routes import payouts
from app.api.routes import refunds
from app.api.routes import service_orders
from app.api.routes import withdrawals
from app.core.config import CORS_ORIGINS
from app.core.db import ensure_schema_once
from app.core.log import configure_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    ensure_schema_once()
    yield


app = FastAPI(title="Marketplace Payments API", lifespan=lifespan)

origins = [o.strip().rstrip("/") for o in CORS_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,  # exact matches
    allow_origin_regex=r"^https?://([a-z0-9-]+\.)*localhost(:\d+)?$|^https?://127\.0\.0\.1(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(health.router, tags=["Health"])
app.include_router(checkout.router, tags=["Checkout"])
app.include_router(payment_webhooks.router, tags=["Payment Webhooks"])
app.include_router(orders.router, tags=["Orders"])
app.include_router(service_orders.router, tags=["Service Orders"])
app.include_router(withdrawals.router, tags=["Withdrawals"])
app.include_router(payouts.router, tags=["Payouts"])
app.include_router(refunds.router, tags=["Refunds"])
