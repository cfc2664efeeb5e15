"""Subscription Scheduler — authorized pause/resume/cancel/renewal over the subscription store.

Invariants:
    - Only the owner or an admin may change a subscription (ForbiddenError otherwise)
    - Status guards live in core/subscription_schedule.py; this module loads, checks, persists
    - Every write commits in the same unit of work that read the row
"""

import logging
from datetime import datetime
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utc_now
from app.core.domain_types import (
    BillingPeriod,
    Principal,
    SubscriptionId,
    SubscriptionStatus,
)
from app.core.errors import ErrorContext, ForbiddenError, ResourceNotFoundError
from app.core.subscription_schedule import (
    ResumePlan,
    plan_cancel,
    plan_pause,
    plan_renewal,
    plan_resume,
)
from app.models.subscription import Subscription

logger = logging.getLogger(__name__)


class SubscriptionScheduler:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load_for(
        self, subscription_id: SubscriptionId, principal: Principal,
    ) -> Subscription:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .with_for_update(),
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise ResourceNotFoundError("Subscription", str(subscription_id))
        if not principal.can_act_for(subscription.user_id):
            logger.warning(
                "Subscription change refused for non-owner",
                extra={"subscription_id": str(subscription_id), "security_event": True},
            )
            raise ForbiddenError(
                "Only the subscription owner or an administrator may do this",
                ErrorContext(subscription_id=str(subscription_id)),
            )
        return subscription

    async def pause(
        self, subscription_id: SubscriptionId, principal: Principal, now: datetime | None = None,
    ) -> Subscription:
        subscription = await self._load_for(subscription_id, principal)
        plan = plan_pause(SubscriptionStatus(subscription.status), now or utc_now())
        subscription.status = plan.status.value
        subscription.paused_at = plan.paused_at
        await self.db.commit()
        logger.info(
            "Subscription paused",
            extra={"subscription_id": str(subscription.id)},
        )
        return subscription

    async def resume(
        self, subscription_id: SubscriptionId, principal: Principal, now: datetime | None = None,
    ) -> tuple[Subscription, ResumePlan]:
        subscription = await self._load_for(subscription_id, principal)
        plan = plan_resume(
            SubscriptionStatus(subscription.status),
            subscription.next_payment_date,
            subscription.paused_at,
            now or utc_now(),
        )
        subscription.status = plan.status.value
        subscription.next_payment_date = plan.next_payment_date
        subscription.paused_at = None
        subscription.resumed_at = plan.resumed_at
        await self.db.commit()
        logger.info(
            f"Subscription resumed with {plan.days_remaining} days remaining",
            extra={"subscription_id": str(subscription.id)},
        )
        return subscription, plan

    async def cancel(
        self,
        subscription_id: SubscriptionId,
        principal: Principal,
        immediate: bool = False,
        now: datetime | None = None,
    ) -> Subscription:
        subscription = await self._load_for(subscription_id, principal)
        plan = plan_cancel(
            SubscriptionStatus(subscription.status),
            subscription.next_payment_date,
            now or utc_now(),
            immediate,
        )
        subscription.status = plan.status.value
        subscription.canceled_at = plan.canceled_at
        subscription.end_date = plan.end_date
        subscription.paused_at = None
        await self.db.commit()
        logger.info(
            f"Subscription canceled, access ends {plan.end_date.isoformat()}",
            extra={"subscription_id": str(subscription.id)},
        )
        return subscription

    async def record_renewal(
        self, subscription_id: SubscriptionId, principal: Principal,
    ) -> Subscription:
        """Advance next_payment_date by one billing period after a successful charge."""
        subscription = await self._load_for(subscription_id, principal)
        subscription.next_payment_date = plan_renewal(
            SubscriptionStatus(subscription.status),
            subscription.next_payment_date,
            BillingPeriod(subscription.period),
        )
        await self.db.commit()
        logger.info(
            "Subscription renewed",
            extra={"subscription_id": str(subscription.id)},
        )
        return subscription
