from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field


class WithdrawalRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    payout_method: Literal["stripe_connect", "bank_transfer"] = "stripe_connect"
    payout_details: dict[str, Any] | None = None
    note: str | None = Field(None, max_length=1000)


class RejectWithdrawalRequest(BaseModel):
    admin_note: str = Field(..., min_length=1, max_length=1000)


class CompleteWithdrawalRequest(BaseModel):
    stripe_transfer_id: str | None = Field(None, max_length=255)


class BalanceResponse(BaseModel):
    total_earnings_cents: int
    total_withdrawn_cents: int
    available_balance_cents: int
    total_earnings: str
    total_withdrawn: str
    available_balance: str
    pending_withdrawals: int
    currency: str
