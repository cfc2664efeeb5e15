"""Order Routes — checkout, redirect hand-off, manual transitions, status polling.

Invariants:
    - Routes delegate every state change to OrderLedger (no status writes here)
    - Owners and admins may read, redirect and cancel; complete, refund and poll are admin-only
    - Unit prices come from the price source and a submitted discount code is re-validated
      server-side; no client-sent amount is trusted
"""

import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, status

from app.api.deps import (
    get_discount_validator,
    get_order_ledger,
    get_price_source,
    get_principal,
)
from app.config import get_settings
from app.core.domain_types import OrderId, Principal
from app.core.errors import ErrorContext, ForbiddenError, ValidationError
from app.models.order import Order
from app.schemas.order import (
    OrderAction,
    OrderCreate,
    OrderResponse,
    PollRequest,
    PollResponse,
    RedirectCreate,
    RedirectResponse,
)
from app.services.discount_validator import DiscountValidator
from app.services.order_ledger import OrderDraft, OrderLedger, cart_subtotal
from app.services.payment_gateway import CustomerInfo
from app.services.pricing import PriceSource, price_items

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/orders", tags=["orders"])


def _ensure_can_access(order: Order, principal: Principal) -> None:
    if not principal.can_act_for(order.user_id):
        raise ForbiddenError(
            "Order belongs to another user", ErrorContext(order_id=order.id),
        )


def _ensure_admin(principal: Principal) -> None:
    if not principal.is_admin:
        raise ForbiddenError("Administrator capability required")


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    body: OrderCreate,
    principal: Principal = Depends(get_principal),
    ledger: OrderLedger = Depends(get_order_ledger),
    discounts: DiscountValidator = Depends(get_discount_validator),
    prices: PriceSource = Depends(get_price_source),
):
    """Create a pending order; prices and the discount are computed here, never by the client."""
    items = await price_items(prices, body.items)
    discount_code, discount_amount = None, Decimal("0.00")
    if body.discount_code:
        cart_total = cart_subtotal(items)
        result = await discounts.validate(
            body.discount_code, cart_total, principal.user_id,
        )
        if not result.is_valid:
            raise ValidationError(
                f"Discount code rejected: {result.message}",
                "DISCOUNT_REJECTED",
                ErrorContext(
                    user_message=result.message,
                    reason=result.reason.value,
                ),
            )
        discount_code, discount_amount = result.code, result.discount_amount

    draft = OrderDraft(
        items=items,
        currency=body.currency,
        provider=body.provider,
        user_id=principal.user_id,
        discount_code=discount_code,
        discount_amount=discount_amount,
    )
    return await ledger.create_order(draft)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    principal: Principal = Depends(get_principal),
    ledger: OrderLedger = Depends(get_order_ledger),
):
    order = await ledger.get(OrderId(order_id))
    _ensure_can_access(order, principal)
    return order


@router.post("/{order_id}/redirect", response_model=RedirectResponse)
async def issue_redirect(
    order_id: int,
    body: RedirectCreate,
    principal: Principal = Depends(get_principal),
    ledger: OrderLedger = Depends(get_order_ledger),
):
    """Hand the customer off to the provider: pending → processing."""
    _ensure_can_access(await ledger.get(OrderId(order_id)), principal)
    base_url = get_settings().public_base_url.rstrip("/")
    issued = await ledger.issue_redirect(
        OrderId(order_id),
        CustomerInfo(email=body.email, locale=body.locale),
        success_url=body.success_url or f"{base_url}/checkout/success?order={order_id}",
        fail_url=body.fail_url or f"{base_url}/checkout/fail?order={order_id}",
        description=body.description,
    )
    return RedirectResponse(
        order_id=issued.order_id,
        provider=issued.provider,
        status=issued.status,
        redirect_url=issued.redirect_url,
    )


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: int,
    body: OrderAction | None = None,
    principal: Principal = Depends(get_principal),
    ledger: OrderLedger = Depends(get_order_ledger),
):
    _ensure_can_access(await ledger.get(OrderId(order_id)), principal)
    return await ledger.cancel(OrderId(order_id), body.reason if body else None)


@router.post("/{order_id}/complete", response_model=OrderResponse)
async def complete_order(
    order_id: int,
    principal: Principal = Depends(get_principal),
    ledger: OrderLedger = Depends(get_order_ledger),
):
    _ensure_admin(principal)
    return await ledger.complete(OrderId(order_id))


@router.post("/{order_id}/refund", response_model=OrderResponse)
async def refund_order(
    order_id: int,
    body: OrderAction | None = None,
    principal: Principal = Depends(get_principal),
    ledger: OrderLedger = Depends(get_order_ledger),
):
    _ensure_admin(principal)
    return await ledger.refund(OrderId(order_id), body.reason if body else None)


@router.post("/{order_id}/poll", response_model=PollResponse)
async def poll_order(
    order_id: int,
    body: PollRequest | None = None,
    principal: Principal = Depends(get_principal),
    ledger: OrderLedger = Depends(get_order_ledger),
):
    """Ask the provider for the payment status; inconclusive answers change nothing."""
    _ensure_admin(principal)
    result = await ledger.poll_status(OrderId(order_id), body.timeout if body else None)
    return PollResponse(
        order_id=result.order_id,
        status=result.status,
        provider_status=result.provider_status,
        conclusive=result.conclusive,
        detail=result.detail,
    )
