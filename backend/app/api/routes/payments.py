"""Payment Notification Routes — provider callbacks (Robokassa ResultURL, YooMoney HTTP notifications).

Invariants:
    - Responds in the provider's own format, never with the JSON error envelope
    - Success and duplicates → provider acknowledgement (stops the provider's retries)
    - Validation, authenticity and state failures → non-2xx rejection, order untouched
    - Transient failures → 503 so the provider retries later
    - Payload is read from the form body (POST) merged over the query string (GET)

Design Decisions:
    - Body parsed with parse_qsl: providers post application/x-www-form-urlencoded only
"""

import logging
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from app.api.deps import get_gateways, get_order_ledger
from app.core.errors import (
    AuthenticityError,
    StateError,
    TransientError,
    UnknownProviderError,
    ValidationError,
)
from app.services.order_ledger import OrderLedger
from app.services.payment_gateway import GatewayRegistry, ProviderResponse

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


def _to_response(provider_response: ProviderResponse) -> Response:
    return Response(
        content=provider_response.body,
        status_code=provider_response.status_code,
        media_type=provider_response.media_type,
    )


async def _read_payload(request: Request) -> dict[str, str]:
    payload = dict(request.query_params)
    body = (await request.body()).decode("utf-8", errors="replace")
    if body:
        payload.update(parse_qsl(body, keep_blank_values=True))
    return payload


@router.api_route("/{provider}/notifications", methods=["GET", "POST"])
async def receive_notification(
    provider: str,
    request: Request,
    gateways: GatewayRegistry = Depends(get_gateways),
    ledger: OrderLedger = Depends(get_order_ledger),
):
    try:
        gateway = gateways.get(provider)
    except UnknownProviderError:
        logger.warning(
            "Notification for unknown provider", extra={"provider": provider},
        )
        return Response("unknown provider", status_code=404, media_type="text/plain")

    payload = await _read_payload(request)
    try:
        result = await ledger.apply_notification(provider, payload)
    except AuthenticityError as e:
        return _to_response(gateway.reject(e.message))
    except (ValidationError, StateError) as e:
        logger.warning(
            f"Notification rejected: {e.message}",
            extra={"provider": provider, "error_code": e.code,
                   "order_id": e.context.order_id},
        )
        rejection = gateway.reject(e.message)
        return Response(
            content=rejection.body,
            status_code=e.http_status,
            media_type=rejection.media_type,
        )
    except TransientError as e:
        logger.error(
            f"Notification deferred: {e.message}",
            extra={"provider": provider, "error_code": e.code},
        )
        return Response("temporarily unavailable", status_code=503, media_type="text/plain")

    return _to_response(gateway.acknowledge(result.notification))
