"""Domain Types — rich types that replace bare primitives across the codebase.

Invariants:
    - OrderId, UserId, SubscriptionId wrap primitives — never pass bare ints/UUIDs in domain logic
    - Money amounts are Decimal quantized to cents (CENT) — never float
    - All valid states encoded as Enums — no raw string matching

Design Decisions:
    - NewType over dataclass wrappers: zero runtime cost, full type-checker support
    - str Enums: serialize to JSON and store in String columns without custom encoders
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import NewType
from uuid import UUID


# ─── Identity Types ──────────────────────────────────────────────

OrderId = NewType("OrderId", int)
UserId = NewType("UserId", str)
SubscriptionId = NewType("SubscriptionId", UUID)


# ─── Money ───────────────────────────────────────────────────────

CENT = Decimal("0.01")


def to_money(value: Decimal | int | str) -> Decimal:
    """Quantize to cents, rounding half-up (provider convention)."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


# ─── Enums ───────────────────────────────────────────────────────

class OrderStatus(str, Enum):
    """Order lifecycle states — maps to DB `status` column."""
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# paid_at is set iff the order is in one of these
SETTLED_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.COMPLETED})


class OrderEvent(str, Enum):
    """Events that drive the order transition table."""
    REDIRECT_ISSUED = "redirect_issued"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CANCEL = "cancel"
    COMPLETE = "complete"
    REFUND = "refund"


class OrderItemType(str, Enum):
    PRODUCT = "product"
    SERVICE = "service"
    SUBSCRIPTION = "subscription"


class PaymentProvider(str, Enum):
    """Provider identifiers stored on the Order; keys of the gateway registry."""
    ROBOKASSA = "robokassa"
    YOOMONEY = "yoomoney"


class PaymentOutcome(str, Enum):
    """Provider-reported payment result, normalized across providers."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"
    UNKNOWN = "unknown"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class DiscountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class DiscountSource(str, Enum):
    """How a discount came to exist — reward codes are bound to one user."""
    MANUAL = "manual"
    REWARD = "reward"


class DiscountRejection(str, Enum):
    """Machine-readable rejection reasons, in evaluation order."""
    INVALID_CODE = "invalid_code"
    NOT_YET_ACTIVE = "not_yet_active"
    EXPIRED = "expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    ALREADY_USED = "already_used"
    BELONGS_TO_ANOTHER_USER = "belongs_to_another_user"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELED = "canceled"


class BillingPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"


# ─── Caller Identity ─────────────────────────────────────────────

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as asserted by the upstream auth proxy."""
    user_id: UserId | None
    roles: frozenset[str] = frozenset()

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles

    def can_act_for(self, owner_id: str | None) -> bool:
        """Owner or admin. Anonymous callers own nothing."""
        if self.is_admin:
            return True
        return self.user_id is not None and self.user_id == owner_id
