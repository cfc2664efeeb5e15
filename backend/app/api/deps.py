"""Route Dependencies — caller identity and per-request service construction.

Invariants:
    - Identity comes only from the upstream auth proxy headers (X-User-Id, X-User-Roles)
    - Shared collaborators (gateway registry, event bus, order locks, price source)
      live on app.state, created once in the lifespan; services are built per request
      around one DB session
"""

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.domain_types import Principal, UserId
from app.infrastructure.database import get_db
from app.services.discount_validator import DiscountValidator
from app.services.order_ledger import OrderLedger
from app.services.payment_gateway import GatewayRegistry
from app.services.pricing import PriceSource
from app.services.subscription_scheduler import SubscriptionScheduler


def get_principal(
    x_user_id: str | None = Header(None),
    x_user_roles: str | None = Header(None),
) -> Principal:
    roles = frozenset(
        role.strip().lower() for role in (x_user_roles or "").split(",") if role.strip()
    )
    user_id = x_user_id.strip() if x_user_id and x_user_id.strip() else None
    return Principal(user_id=UserId(user_id) if user_id else None, roles=roles)


def get_gateways(request: Request) -> GatewayRegistry:
    return request.app.state.gateways


def get_price_source(request: Request) -> PriceSource:
    return request.app.state.price_source


def get_order_ledger(
    request: Request, db: AsyncSession = Depends(get_db),
) -> OrderLedger:
    return OrderLedger(
        db,
        request.app.state.gateways,
        request.app.state.order_events,
        request.app.state.order_locks,
        status_timeout=get_settings().status_check_timeout_seconds,
    )


def get_discount_validator(db: AsyncSession = Depends(get_db)) -> DiscountValidator:
    return DiscountValidator(db)


def get_subscription_scheduler(
    db: AsyncSession = Depends(get_db),
) -> SubscriptionScheduler:
    return SubscriptionScheduler(db)
