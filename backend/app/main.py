"""Billing API — FastAPI application entry point.

Invariants:
    - Routes registered explicitly (no auto-discovery)
    - Global error handlers map BillingError → structured JSON responses
    - CORS configured from settings (not hardcoded)
    - Database, provider HTTP client, gateway registry, order event bus, order locks
      and price source created once in the lifespan and exposed on app.state

Design Decisions:
    - Lifespan over @app.on_event: FastAPI recommended pattern, cleaner cleanup
    - Order-event subscribers (entitlements, receipts) are attached to
      app.state.order_events by the embedding application
    - app.state.price_source defaults to the CATALOG_PRICES table; an embedding
      application with its own catalog replaces it after startup
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.error_handlers import register_error_handlers
from app.api.routes import discounts, health, orders, payments, subscriptions
from app.config import get_settings
from app.infrastructure.database import init_db
from app.infrastructure.observability import setup_logging
from app.infrastructure.provider_http import ProviderHttpClient
from app.services.order_events import OrderEventBus
from app.services.order_ledger import OrderLocks
from app.services.payment_gateway import build_gateway_registry
from app.services.pricing import StaticPriceList

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    db = init_db(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    http = ProviderHttpClient(
        httpx.AsyncClient(),
        max_retries=settings.provider_max_retries,
        base_delay_ms=settings.provider_base_delay_ms,
        max_delay_ms=settings.provider_max_delay_ms,
    )
    app.state.gateways = build_gateway_registry(settings, http)
    app.state.order_events = OrderEventBus()
    app.state.order_locks = OrderLocks()
    app.state.price_source = StaticPriceList(settings.catalog_prices)
    logger.info(
        "Billing API started",
        extra={"provider": ",".join(p.value for p in app.state.gateways.providers)},
    )
    yield
    logger.info("Billing API shutting down")
    await http.aclose()
    await db.dispose()


app = FastAPI(title="Billing API", version="1.0.0", lifespan=lifespan)

settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(discounts.router)
app.include_router(subscriptions.router)

register_error_handlers(app)
