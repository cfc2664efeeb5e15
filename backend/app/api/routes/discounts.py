"""Discount Routes — quote-time code validation.

Invariants:
    - Always 200 for a well-formed request: rejection is a result, not an error
    - Response never includes a discount amount for a rejected code
"""

from fastapi import APIRouter, Depends

from app.api.deps import get_discount_validator, get_principal
from app.core.domain_types import Principal
from app.schemas.discount import DiscountValidateRequest, DiscountValidateResponse
from app.services.discount_validator import DiscountValidator

router = APIRouter(prefix="/api/v1/discounts", tags=["discounts"])


@router.post(
    "/validate",
    response_model=DiscountValidateResponse,
    response_model_exclude_none=True,
)
async def validate_discount(
    body: DiscountValidateRequest,
    principal: Principal = Depends(get_principal),
    validator: DiscountValidator = Depends(get_discount_validator),
):
    result = await validator.validate(body.code, body.cart_total, principal.user_id)
    return DiscountValidateResponse.from_result(result)
