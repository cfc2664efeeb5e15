"""Subscription Schedule — pure pause/resume/cancel planning with date proration.

Invariants:
    - plan_* functions are PURE: they return the new field values, the shell persists them
    - pause requires ACTIVE, resume requires PAUSED; anything else raises InvalidStateError
    - pause never touches next_payment_date (it is the reference point for resume)
    - resume re-applies the runway left at pause time:
      days_remaining = max(0, floor((next_payment_date - paused_at) / 1 day))
      next_payment_date = now + days_remaining

Design Decisions:
    - Whole days, floored: a subscriber never gains a partial day by pausing
    - relativedelta for month-based periods: calendar-correct month ends (Jan 31 + 1 month = Feb 28/29)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

from app.core.clock import ensure_utc
from app.core.domain_types import BillingPeriod, SubscriptionStatus
from app.core.errors import InvalidStateError


ONE_DAY = timedelta(days=1)

PERIOD_DELTAS: dict[BillingPeriod, relativedelta] = {
    BillingPeriod.DAILY: relativedelta(days=1),
    BillingPeriod.WEEKLY: relativedelta(weeks=1),
    BillingPeriod.MONTHLY: relativedelta(months=1),
    BillingPeriod.QUARTERLY: relativedelta(months=3),
    BillingPeriod.ANNUAL: relativedelta(years=1),
}


@dataclass(frozen=True)
class PausePlan:
    status: SubscriptionStatus
    paused_at: datetime


@dataclass(frozen=True)
class ResumePlan:
    status: SubscriptionStatus
    next_payment_date: datetime
    resumed_at: datetime
    days_remaining: int


@dataclass(frozen=True)
class CancelPlan:
    status: SubscriptionStatus
    canceled_at: datetime
    end_date: datetime


def plan_pause(status: SubscriptionStatus, now: datetime) -> PausePlan:
    if status is not SubscriptionStatus.ACTIVE:
        raise InvalidStateError(status.value, "pause")
    return PausePlan(status=SubscriptionStatus.PAUSED, paused_at=ensure_utc(now))


def remaining_days(next_payment_date: datetime, paused_at: datetime) -> int:
    """Whole days of runway left when the subscription was paused."""
    delta = ensure_utc(next_payment_date) - ensure_utc(paused_at)
    return max(0, delta // ONE_DAY)


def plan_resume(
    status: SubscriptionStatus,
    next_payment_date: datetime,
    paused_at: datetime | None,
    now: datetime,
) -> ResumePlan:
    if status is not SubscriptionStatus.PAUSED:
        raise InvalidStateError(status.value, "resume")
    now = ensure_utc(now)
    # A paused row without a pause instant predates pause tracking: resume from now
    days = remaining_days(next_payment_date, paused_at) if paused_at else 0
    return ResumePlan(
        status=SubscriptionStatus.ACTIVE,
        next_payment_date=now + timedelta(days=days),
        resumed_at=now,
        days_remaining=days,
    )


def plan_cancel(
    status: SubscriptionStatus,
    next_payment_date: datetime,
    now: datetime,
    immediate: bool,
) -> CancelPlan:
    """Immediate cancel ends access now; otherwise at the end of the paid period."""
    if status is SubscriptionStatus.CANCELED:
        raise InvalidStateError(status.value, "cancel")
    now = ensure_utc(now)
    if immediate or status is SubscriptionStatus.PAUSED:
        end_date = now
    else:
        end_date = ensure_utc(next_payment_date)
    return CancelPlan(
        status=SubscriptionStatus.CANCELED, canceled_at=now, end_date=end_date,
    )


def advance_billing_date(current: datetime, period: BillingPeriod) -> datetime:
    """Next charge date after a successful renewal."""
    return ensure_utc(current) + PERIOD_DELTAS[period]


def plan_renewal(
    status: SubscriptionStatus, next_payment_date: datetime, period: BillingPeriod,
) -> datetime:
    if status is not SubscriptionStatus.ACTIVE:
        raise InvalidStateError(status.value, "renew")
    return advance_billing_date(next_payment_date, period)
