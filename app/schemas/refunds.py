from pydantic import BaseModel, Field


class RefundRequest(BaseModel):
    order_id: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=1000)


class RejectRefundRequest(BaseModel):
    admin_note: str | None = Field(None, max_length=500)
