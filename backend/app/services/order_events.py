"""Order Events — in-process publish/subscribe for committed order transitions.

Invariants:
    - publish() is called only after the transition is committed
    - A failing subscriber is logged and skipped: it never undoes the transition
      and never prevents the remaining subscribers from running
    - Subscribers registered per event type; publishing an unsubscribed type is a no-op

Design Decisions:
    - Explicit bus instance wired in main.py lifespan (no module-level singleton)
    - Frozen dataclasses as events: subscribers cannot mutate what others receive
"""

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderPaid:
    order_id: int
    user_id: str | None
    total: Decimal
    currency: str
    provider: str
    payment_id: str | None
    paid_at: datetime
    discount_code: str | None = None
    product_refs: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class OrderFailed:
    order_id: int
    user_id: str | None
    reason: str | None


@dataclass(frozen=True)
class OrderCancelled:
    order_id: int
    user_id: str | None
    reason: str | None


@dataclass(frozen=True)
class OrderCompleted:
    order_id: int
    user_id: str | None


@dataclass(frozen=True)
class OrderRefunded:
    order_id: int
    user_id: str | None
    total: Decimal
    currency: str
    reason: str | None


OrderEventType = OrderPaid | OrderFailed | OrderCancelled | OrderCompleted | OrderRefunded
Subscriber = Callable[[OrderEventType], Awaitable[None]]


class OrderEventBus:
    """Fan-out of order events to async subscribers (entitlement grant, receipts, ...)."""

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Subscriber]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Subscriber) -> None:
        self._subscribers[event_type].append(handler)

    async def publish(self, event: OrderEventType) -> None:
        for handler in list(self._subscribers.get(type(event), ())):
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    f"Order event subscriber failed: {type(event).__name__}: {e}",
                    extra={"order_id": event.order_id},
                    exc_info=True,
                )
