"""Discount Schemas — quote-time validation request and camelCase response.

Invariants:
    - Accepts both camelCase (cartTotal) and snake_case (cart_total) input
    - Rejections always carry a machine-readable reason next to the message
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.core.discount_rules import DiscountResult
from app.core.domain_types import DiscountRejection


class DiscountValidateRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    code: str = Field(min_length=1, max_length=64)
    cart_total: Decimal = Field(ge=0, max_digits=12, decimal_places=2)


class DiscountValidateResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    is_valid: bool
    code: str | None = None
    discount_amount: Decimal | None = None
    discount_percentage: Decimal | None = None
    reason: DiscountRejection | None = None
    message: str | None = None

    @classmethod
    def from_result(cls, result: DiscountResult) -> "DiscountValidateResponse":
        if not result.is_valid:
            return cls(
                is_valid=False, code=result.code,
                reason=result.reason, message=result.message,
            )
        return cls(
            is_valid=True,
            code=result.code,
            discount_amount=result.discount_amount,
            discount_percentage=result.discount_percentage,
        )
