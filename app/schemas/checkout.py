from pydantic import BaseModel, Field


class CartItem(BaseModel):
    catalog_item_id: int = Field(..., ge=1)


class TemplateCheckoutRequest(BaseModel):
    items: list[CartItem] = Field(..., min_length=1, max_length=50)
    coupon_code: str | None = Field(None, max_length=64)


class TemplateCheckoutResponse(BaseModel):
    ok: bool
    session_url: str | None = None
    order_id: int
    order_number: str
    simulated: bool = False


class ServiceCheckoutRequest(BaseModel):
    package_id: int = Field(..., ge=1)
    requirements: str | None = Field(None, max_length=5000)


class ServiceCheckoutResponse(BaseModel):
    ok: bool
    session_url: str | None = None
    service_order_id: int
    order_number: str
    simulated: bool = False
