"""Order Schemas — checkout and order-management contracts.

Invariants:
    - Money fields are Decimal end to end (serialized as strings, never floats)
    - OrderCreate needs at least one line item and an ISO 4217 alpha currency
    - Line items carry no price; unit prices are resolved server-side at checkout
    - Redirect URLs default to PUBLIC_BASE_URL pages when the caller omits them
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.core.domain_types import (
    OrderItemType,
    OrderStatus,
    PaymentOutcome,
    PaymentProvider,
)


class LineItemIn(BaseModel):
    product_ref: str = Field(min_length=1, max_length=128)
    quantity: int = Field(1, ge=1, le=10_000)
    item_type: OrderItemType = OrderItemType.PRODUCT
    title: str | None = Field(None, max_length=255)


class OrderCreate(BaseModel):
    """Checkout request — the caller's identity comes from headers, not the body."""
    items: list[LineItemIn] = Field(min_length=1, max_length=100)
    currency: str = Field(pattern=r"^[A-Za-z]{3}$")
    provider: PaymentProvider
    discount_code: str | None = Field(None, max_length=64)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator("discount_code")
    @classmethod
    def blank_code_is_none(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return v.strip()


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    position: int
    item_type: str
    product_ref: str
    title: str | None
    quantity: int
    unit_price: Decimal


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str | None
    status: OrderStatus
    currency: str
    subtotal: Decimal
    discount_code: str | None
    discount_amount: Decimal
    total: Decimal
    payment_provider: PaymentProvider
    payment_id: str | None
    failure_reason: str | None
    created_at: datetime
    paid_at: datetime | None
    cancelled_at: datetime | None
    refunded_at: datetime | None
    items: list[OrderItemResponse]


class RedirectCreate(BaseModel):
    email: str | None = Field(None, max_length=254)
    locale: str = Field("en", pattern=r"^[a-z]{2}(-[A-Za-z]{2})?$")
    description: str | None = Field(None, max_length=100)
    success_url: str | None = Field(None, max_length=2048)
    fail_url: str | None = Field(None, max_length=2048)


class RedirectResponse(BaseModel):
    order_id: int
    provider: str
    status: OrderStatus
    redirect_url: str


class OrderAction(BaseModel):
    reason: str | None = Field(None, max_length=500)


class PollRequest(BaseModel):
    timeout: float | None = Field(None, gt=0, le=60)


class PollResponse(BaseModel):
    order_id: int
    status: OrderStatus
    provider_status: PaymentOutcome | None
    conclusive: bool
    detail: str | None = None
