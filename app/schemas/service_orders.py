from typing import Literal

from pydantic import BaseModel, Field


class ReasonBody(BaseModel):
    reason: str | None = Field(None, max_length=2000)


class DeliverBody(BaseModel):
    delivery_note: str | None = Field(None, max_length=5000)


class DisputeBody(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class ResolveDisputeBody(BaseModel):
    outcome: Literal["refund", "release_payment", "partial_refund", "redo"]
    resolution: str | None = Field(None, max_length=2000)
