"""Subscription Routes — pause, resume, cancel and renewal bookkeeping.

Invariants:
    - Authorization (owner or admin) is enforced by SubscriptionScheduler, not here
    - Instants leave the service as ISO-8601 strings (camelCase keys)
"""

from uuid import UUID

from fastapi import APIRouter, Depends

from app.api.deps import get_principal, get_subscription_scheduler
from app.core.domain_types import Principal, SubscriptionId
from app.core.errors import ForbiddenError
from app.schemas.subscription import (
    CancelRequest,
    ResumeResponse,
    SubscriptionResponse,
)
from app.services.subscription_scheduler import SubscriptionScheduler

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


@router.post("/{subscription_id}/pause", response_model=SubscriptionResponse)
async def pause_subscription(
    subscription_id: UUID,
    principal: Principal = Depends(get_principal),
    scheduler: SubscriptionScheduler = Depends(get_subscription_scheduler),
):
    subscription = await scheduler.pause(SubscriptionId(subscription_id), principal)
    return SubscriptionResponse.from_model(subscription)


@router.post("/{subscription_id}/resume", response_model=ResumeResponse)
async def resume_subscription(
    subscription_id: UUID,
    principal: Principal = Depends(get_principal),
    scheduler: SubscriptionScheduler = Depends(get_subscription_scheduler),
):
    """Re-apply the runway left at pause time: nextPaymentDate = now + days remaining."""
    subscription, plan = await scheduler.resume(SubscriptionId(subscription_id), principal)
    return ResumeResponse(
        next_payment_date=plan.next_payment_date,
        days_remaining=plan.days_remaining,
        subscription=SubscriptionResponse.from_model(subscription),
    )


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: UUID,
    body: CancelRequest | None = None,
    principal: Principal = Depends(get_principal),
    scheduler: SubscriptionScheduler = Depends(get_subscription_scheduler),
):
    subscription = await scheduler.cancel(
        SubscriptionId(subscription_id), principal, immediate=body.immediate if body else False,
    )
    return SubscriptionResponse.from_model(subscription)


@router.post("/{subscription_id}/renew", response_model=SubscriptionResponse)
async def renew_subscription(
    subscription_id: UUID,
    principal: Principal = Depends(get_principal),
    scheduler: SubscriptionScheduler = Depends(get_subscription_scheduler),
):
    """Record a successful recurring charge (billing back-office only)."""
    if not principal.is_admin:
        raise ForbiddenError("Administrator capability required")
    subscription = await scheduler.record_renewal(SubscriptionId(subscription_id), principal)
    return SubscriptionResponse.from_model(subscription)
