"""Subscription Schemas — management responses with ISO-8601 instants at the boundary.

Invariants:
    - Internally instants are aware datetimes; they become strings only here
    - pausedAt/resumedAt are exposed under `metadata`
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.core.clock import ensure_utc
from app.core.domain_types import SubscriptionStatus
from app.models.subscription import Subscription


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubscriptionMetadata(_CamelModel):
    paused_at: datetime | None = None
    resumed_at: datetime | None = None


class SubscriptionResponse(_CamelModel):
    id: UUID
    user_id: str
    plan_ref: str
    status: SubscriptionStatus
    next_payment_date: datetime
    canceled_at: datetime | None = None
    end_date: datetime | None = None
    metadata: SubscriptionMetadata

    @classmethod
    def from_model(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            user_id=subscription.user_id,
            plan_ref=subscription.plan_ref,
            status=SubscriptionStatus(subscription.status),
            next_payment_date=ensure_utc(subscription.next_payment_date),
            canceled_at=ensure_utc(subscription.canceled_at),
            end_date=ensure_utc(subscription.end_date),
            metadata=SubscriptionMetadata(
                paused_at=ensure_utc(subscription.paused_at),
                resumed_at=ensure_utc(subscription.resumed_at),
            ),
        )


class ResumeResponse(_CamelModel):
    next_payment_date: datetime
    days_remaining: int
    subscription: SubscriptionResponse


class CancelRequest(_CamelModel):
    immediate: bool = False
