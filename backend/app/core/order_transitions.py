"""Order Transitions — the order state machine and notification decision rules.

Invariants:
    - TRANSITIONS is the single source of truth for legal (status, event) pairs
    - next_status raises InvalidTransitionError for anything not in the table
    - decide_notification is PURE: returns a decision descriptor, does NOT mutate the order
    - Amount/currency mismatch leaves the order unchanged (never auto-fails it)
    - A repeat notification with the same provider payment id is a no-op success

Design Decisions:
    - Decision descriptor (NotificationDecision) over exceptions for business outcomes:
      the shell maps each action to a DB write, an acknowledgement, or a typed error
    - Snapshot dataclass instead of the ORM model: core never imports from models/
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from app.core.domain_types import (
    OrderEvent,
    OrderId,
    OrderStatus,
    PaymentOutcome,
    SETTLED_STATUSES,
    to_money,
)
from app.core.errors import InvalidTransitionError


TRANSITIONS: dict[tuple[OrderStatus, OrderEvent], OrderStatus] = {
    (OrderStatus.PENDING, OrderEvent.REDIRECT_ISSUED): OrderStatus.PROCESSING,
    (OrderStatus.PROCESSING, OrderEvent.PAYMENT_SUCCEEDED): OrderStatus.PAID,
    (OrderStatus.PROCESSING, OrderEvent.PAYMENT_FAILED): OrderStatus.FAILED,
    (OrderStatus.PENDING, OrderEvent.CANCEL): OrderStatus.CANCELLED,
    (OrderStatus.PROCESSING, OrderEvent.CANCEL): OrderStatus.CANCELLED,
    (OrderStatus.PAID, OrderEvent.COMPLETE): OrderStatus.COMPLETED,
    (OrderStatus.PAID, OrderEvent.REFUND): OrderStatus.REFUNDED,
    (OrderStatus.COMPLETED, OrderEvent.REFUND): OrderStatus.REFUNDED,
}

# Statuses a success notification has already been applied to
_SUCCESS_APPLIED = SETTLED_STATUSES | {OrderStatus.REFUNDED}


def next_status(current: OrderStatus, event: OrderEvent) -> OrderStatus:
    """Look up the target status or raise with the current status attached."""
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidTransitionError(current.value, event.value)
    return target


def can_transition(current: OrderStatus, event: OrderEvent) -> bool:
    return (current, event) in TRANSITIONS


@dataclass(frozen=True)
class OrderSnapshot:
    """The fields of an Order that notification rules need."""
    order_id: OrderId
    status: OrderStatus
    total: Decimal
    currency: str
    payment_id: str | None


@dataclass(frozen=True)
class NotificationFacts:
    """Provider-neutral facts extracted from a verified notification or status check."""
    amount: Decimal | None
    currency: str | None
    provider_payment_id: str | None
    outcome: PaymentOutcome
    net_amount: Decimal | None = None
    fee_tolerance: Decimal = Decimal(0)


class DecisionAction(str, Enum):
    APPLY = "apply"
    DUPLICATE = "duplicate"
    IGNORE_PENDING = "ignore_pending"
    AMOUNT_MISMATCH = "amount_mismatch"
    PAYMENT_ID_CONFLICT = "payment_id_conflict"
    ILLEGAL = "illegal"


@dataclass(frozen=True)
class NotificationDecision:
    action: DecisionAction
    event: OrderEvent | None = None
    target: OrderStatus | None = None
    reason: str | None = None


def _outcome_event(outcome: PaymentOutcome) -> OrderEvent | None:
    if outcome is PaymentOutcome.SUCCEEDED:
        return OrderEvent.PAYMENT_SUCCEEDED
    if outcome is PaymentOutcome.FAILED:
        return OrderEvent.PAYMENT_FAILED
    return None


def amounts_match(order: OrderSnapshot, facts: NotificationFacts) -> bool:
    """Amount compared at cent precision; currency compared case-insensitively.

    When the charged amount is unsigned, the signed net amount must also lie in
    [total * (1 - fee_tolerance), total].
    """
    if facts.amount is None or facts.currency is None:
        return False
    total = to_money(order.total)
    if to_money(facts.amount) != total or facts.currency.upper() != order.currency.upper():
        return False
    if facts.net_amount is None:
        return True
    floor = to_money(total * (1 - facts.fee_tolerance))
    return floor <= to_money(facts.net_amount) <= total


def describe_received(facts: NotificationFacts) -> str:
    received = f"{facts.amount} {facts.currency}"
    if facts.net_amount is not None:
        received += f" (credited {facts.net_amount})"
    return received


def _already_applied(order: OrderSnapshot, event: OrderEvent) -> bool:
    if event is OrderEvent.PAYMENT_SUCCEEDED:
        return order.status in _SUCCESS_APPLIED
    return order.status is OrderStatus.FAILED


def decide_notification(
    order: OrderSnapshot, facts: NotificationFacts,
) -> NotificationDecision:
    """Decide what a verified notification does to the order. Pure — no mutation."""
    event = _outcome_event(facts.outcome)
    if event is None:
        return NotificationDecision(
            DecisionAction.IGNORE_PENDING,
            reason=f"provider reports payment {facts.outcome.value}",
        )

    if not amounts_match(order, facts):
        return NotificationDecision(
            DecisionAction.AMOUNT_MISMATCH,
            event=event,
            reason=(
                f"expected {to_money(order.total)} {order.currency}, "
                f"received {describe_received(facts)}"
            ),
        )

    if _already_applied(order, event):
        if order.payment_id is None or facts.provider_payment_id in (None, order.payment_id):
            return NotificationDecision(
                DecisionAction.DUPLICATE, event=event, target=order.status,
            )
        return NotificationDecision(
            DecisionAction.PAYMENT_ID_CONFLICT,
            event=event,
            reason=(
                f"stored payment id {order.payment_id}, "
                f"received {facts.provider_payment_id}"
            ),
        )

    if not can_transition(order.status, event):
        return NotificationDecision(
            DecisionAction.ILLEGAL,
            event=event,
            reason=f"order is {order.status.value}",
        )

    return NotificationDecision(
        DecisionAction.APPLY, event=event, target=next_status(order.status, event),
    )
