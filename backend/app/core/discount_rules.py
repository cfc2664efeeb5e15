"""Discount Rules — pure evaluation of a discount against a cart, a user, and a moment.

Invariants:
    - evaluate_discount is PURE: usage counts are passed in, never queried here
    - Checks short-circuit in a fixed order; each failure has its own DiscountRejection
    - discount_amount is always within [0, cart_total] and quantized to cents
    - discount_percentage is set only for percentage discounts

Design Decisions:
    - Result value over exceptions: every caller needs the specific reason to render it
    - REJECTION_MESSAGES keyed by enum: UI text lives next to the reason code,
      callers branch on `reason`, never on `message`
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from app.core.clock import ensure_utc
from app.core.domain_types import (
    DiscountRejection,
    DiscountStatus,
    DiscountType,
    to_money,
)


REJECTION_MESSAGES: dict[DiscountRejection, str] = {
    DiscountRejection.INVALID_CODE: "invalid code",
    DiscountRejection.NOT_YET_ACTIVE: "not yet active",
    DiscountRejection.EXPIRED: "expired",
    DiscountRejection.USAGE_LIMIT_REACHED: "usage limit reached",
    DiscountRejection.ALREADY_USED: "already used by you",
    DiscountRejection.BELONGS_TO_ANOTHER_USER: "belongs to another user",
}


@dataclass(frozen=True)
class DiscountSnapshot:
    """Discount fields the rules read — decoupled from the ORM row."""
    code: str
    discount_type: DiscountType
    value: Decimal
    status: DiscountStatus = DiscountStatus.ACTIVE
    start_date: datetime | None = None
    end_date: datetime | None = None
    max_usage: int | None = None
    max_usage_per_user: int | None = None
    owner_user_id: str | None = None


@dataclass(frozen=True)
class DiscountResult:
    is_valid: bool
    code: str | None = None
    discount_amount: Decimal = Decimal("0.00")
    discount_percentage: Decimal | None = None
    reason: DiscountRejection | None = None
    message: str | None = None

    @classmethod
    def rejected(cls, reason: DiscountRejection, code: str | None = None) -> "DiscountResult":
        return cls(
            is_valid=False, code=code, reason=reason,
            message=REJECTION_MESSAGES[reason],
        )


def compute_discount_amount(
    discount_type: DiscountType, value: Decimal, cart_total: Decimal,
) -> Decimal:
    """Raw amount clamped to the cart total (a discount never makes an order negative)."""
    if discount_type is DiscountType.PERCENTAGE:
        raw = cart_total * value / Decimal(100)
    else:
        raw = value
    clamped = min(max(raw, Decimal(0)), cart_total)
    return to_money(clamped)


def evaluate_discount(
    discount: DiscountSnapshot | None,
    *,
    user_id: str | None,
    cart_total: Decimal,
    now: datetime,
    global_uses: int = 0,
    user_uses: int = 0,
) -> DiscountResult:
    """Run the checks in order and stop at the first failure."""
    if discount is None or discount.status is not DiscountStatus.ACTIVE:
        return DiscountResult.rejected(DiscountRejection.INVALID_CODE)

    code = discount.code
    now = ensure_utc(now)
    start_date = ensure_utc(discount.start_date)
    end_date = ensure_utc(discount.end_date)

    if start_date is not None and start_date > now:
        return DiscountResult.rejected(DiscountRejection.NOT_YET_ACTIVE, code)

    if end_date is not None and end_date < now:
        return DiscountResult.rejected(DiscountRejection.EXPIRED, code)

    if discount.max_usage is not None and global_uses >= discount.max_usage:
        return DiscountResult.rejected(DiscountRejection.USAGE_LIMIT_REACHED, code)

    if (
        discount.max_usage_per_user is not None
        and user_uses >= discount.max_usage_per_user
    ):
        return DiscountResult.rejected(DiscountRejection.ALREADY_USED, code)

    if discount.owner_user_id is not None and discount.owner_user_id != user_id:
        return DiscountResult.rejected(DiscountRejection.BELONGS_TO_ANOTHER_USER, code)

    amount = compute_discount_amount(discount.discount_type, discount.value, cart_total)
    percentage = (
        discount.value if discount.discount_type is DiscountType.PERCENTAGE else None
    )
    return DiscountResult(
        is_valid=True,
        code=code,
        discount_amount=amount,
        discount_percentage=percentage,
    )
