"""Discount Validator — loads a code, counts its usage, and delegates to the pure rules.

Invariants:
    - Read-only: never writes discounts or orders
    - Lookup is case-insensitive (codes stored upper-cased)
    - Usage = number of COMPLETED orders carrying the code; no counter column to drift
    - Usage queries run only when the discount carries the matching limit
"""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utc_now
from app.core.discount_rules import DiscountResult, DiscountSnapshot, evaluate_discount
from app.core.domain_types import DiscountStatus, DiscountType, OrderStatus
from app.core.errors import PaymentRequestError
from app.models.discount import Discount, normalize_code
from app.models.order import Order

logger = logging.getLogger(__name__)


def _snapshot(row: Discount) -> DiscountSnapshot:
    return DiscountSnapshot(
        code=row.code,
        discount_type=DiscountType(row.discount_type),
        value=row.value,
        status=DiscountStatus(row.status),
        start_date=row.start_date,
        end_date=row.end_date,
        max_usage=row.max_usage,
        max_usage_per_user=row.max_usage_per_user,
        owner_user_id=row.owner_user_id,
    )


class DiscountValidator:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def validate(
        self,
        code: str,
        cart_total: Decimal,
        user_id: str | None,
        now: datetime | None = None,
    ) -> DiscountResult:
        if cart_total < 0:
            raise PaymentRequestError(f"Cart total cannot be negative: {cart_total}")
        normalized = normalize_code(code or "")
        if not normalized:
            return evaluate_discount(None, user_id=user_id, cart_total=cart_total, now=utc_now())

        row = (await self.db.execute(
            select(Discount).where(Discount.code == normalized),
        )).scalar_one_or_none()
        discount = _snapshot(row) if row else None

        global_uses = 0
        user_uses = 0
        if discount is not None and discount.max_usage is not None:
            global_uses = await self._count_uses(normalized)
        if (
            discount is not None
            and discount.max_usage_per_user is not None
            and user_id is not None
        ):
            user_uses = await self._count_uses(normalized, user_id)

        result = evaluate_discount(
            discount,
            user_id=user_id,
            cart_total=cart_total,
            now=now or utc_now(),
            global_uses=global_uses,
            user_uses=user_uses,
        )
        if not result.is_valid:
            logger.info(
                f"Discount rejected: {result.reason.value}",
                extra={"discount_code": normalized},
            )
        return result

    async def _count_uses(self, code: str, user_id: str | None = None) -> int:
        query = (
            select(func.count(Order.id))
            .where(Order.discount_code == code)
            .where(Order.status == OrderStatus.COMPLETED.value)
        )
        if user_id is not None:
            query = query.where(Order.user_id == user_id)
        return (await self.db.execute(query)).scalar_one()
