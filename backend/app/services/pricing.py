"""Pricing — server-side unit prices for checkout line items.

Invariants:
    - Unit prices come only from a PriceSource; whatever the client sends is never read
    - A line the source cannot price fails the whole checkout (no partial orders)

Design Decisions:
    - Protocol over ABC: the embedding application swaps in its catalog
      (app.state.price_source) without inheriting from anything here
    - StaticPriceList keys are "<item_type>:<product_ref>" or bare "<product_ref>";
      the typed key wins so a product and a service may share a ref
"""

import logging
from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Protocol

from app.core.domain_types import OrderItemType, to_money
from app.core.errors import ErrorContext, PaymentRequestError
from app.services.order_ledger import LineItemDraft

logger = logging.getLogger(__name__)


class PriceSource(Protocol):
    """Contract for catalog price lookup — implemented by the embedding application."""
    async def resolve_price(
        self, product_ref: str, item_type: OrderItemType,
    ) -> Decimal | None: ...


class CartLine(Protocol):
    """What checkout asks for: a catalog reference and a quantity, never a price."""
    product_ref: str
    quantity: int
    item_type: OrderItemType
    title: str | None


class StaticPriceList:
    """Fixed price table, loaded from CATALOG_PRICES by default."""

    def __init__(self, prices: Mapping[str, Decimal | str] | None = None):
        self._prices = {key: to_money(value) for key, value in (prices or {}).items()}

    async def resolve_price(
        self, product_ref: str, item_type: OrderItemType,
    ) -> Decimal | None:
        typed = self._prices.get(f"{OrderItemType(item_type).value}:{product_ref}")
        return typed if typed is not None else self._prices.get(product_ref)


async def price_items(source: PriceSource, lines: Iterable[CartLine]) -> list[LineItemDraft]:
    items = []
    for line in lines:
        price = await source.resolve_price(line.product_ref, line.item_type)
        if price is None:
            logger.warning(
                f"No catalog price for '{line.product_ref}'",
                extra={"product_ref": line.product_ref},
            )
            raise PaymentRequestError(
                f"Unknown {line.item_type.value} '{line.product_ref}'",
                ErrorContext(debug_info={"product_ref": line.product_ref}),
            )
        items.append(LineItemDraft(
            product_ref=line.product_ref,
            unit_price=price,
            quantity=line.quantity,
            item_type=line.item_type,
            title=line.title,
        ))
    return items
