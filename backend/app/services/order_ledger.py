"""Order Ledger — the only writer of Order.status; applies provider outcomes exactly once.

Invariants:
    - Every status write is a compare-and-swap: UPDATE ... WHERE id = :id AND status = :expected
    - Side effects (OrderPaid and friends) are published only by the writer whose CAS hit one row
    - Per-order asyncio.Lock (OrderLocks) serializes read-decide-write inside one process;
      the CAS covers concurrent processes
    - Unknown order, bad signature, amount mismatch, payment-id conflict → order untouched
    - paid_at is set on entering paid and cleared on refund (set iff status in {paid, completed})

Design Decisions:
    - Decisions come from core/order_transitions.py (pure); this module only does IO
    - Provider HTTP (poll_status) happens outside the order lock: a slow provider must not
      block notifications for the same order
    - Cancellation reason travels on the OrderCancelled event and in the log; the
      failure_reason column is reserved for provider-reported failures
"""

import asyncio
import logging
import weakref
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utc_now
from app.core.domain_types import (
    OrderEvent,
    OrderId,
    OrderItemType,
    OrderStatus,
    PaymentOutcome,
    PaymentProvider,
    SETTLED_STATUSES,
    to_money,
)
from app.core.errors import (
    AmountMismatchError,
    AuthenticityError,
    ErrorContext,
    InvalidTransitionError,
    PaymentIdConflictError,
    PaymentRequestError,
    ResourceNotFoundError,
)
from app.core.order_transitions import (
    DecisionAction,
    NotificationDecision,
    NotificationFacts,
    OrderSnapshot,
    decide_notification,
    describe_received,
    next_status,
)
from app.models.discount import normalize_code
from app.models.order import Order, OrderItem
from app.services.order_events import (
    OrderCancelled,
    OrderCompleted,
    OrderEventBus,
    OrderFailed,
    OrderPaid,
    OrderRefunded,
)
from app.services.payment_gateway import (
    CustomerInfo,
    GatewayRegistry,
    ParsedNotification,
    RedirectRequest,
)

logger = logging.getLogger(__name__)

DEFAULT_STATUS_TIMEOUT = 10.0


class OrderLocks:
    """One asyncio.Lock per order id, dropped once no coroutine references it."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[OrderId, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @asynccontextmanager
    async def hold(self, order_id: OrderId) -> AsyncIterator[None]:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        async with lock:
            yield


# ─── Inputs / results ────────────────────────────────────────────

@dataclass(frozen=True)
class LineItemDraft:
    product_ref: str
    unit_price: Decimal
    quantity: int = 1
    item_type: OrderItemType = OrderItemType.PRODUCT
    title: str | None = None


@dataclass(frozen=True)
class OrderDraft:
    items: list[LineItemDraft]
    currency: str
    provider: PaymentProvider
    user_id: str | None = None
    discount_code: str | None = None
    discount_amount: Decimal = Decimal("0.00")


def cart_subtotal(items: Sequence[LineItemDraft]) -> Decimal:
    """Sum of line totals, each unit price quantized to cents first."""
    return to_money(sum(
        (to_money(item.unit_price) * item.quantity for item in items),
        Decimal(0),
    ))


@dataclass(frozen=True)
class RedirectIssued:
    order_id: OrderId
    provider: str
    redirect_url: str
    status: OrderStatus


@dataclass(frozen=True)
class NotificationResult:
    order_id: OrderId
    action: DecisionAction
    status: OrderStatus
    notification: ParsedNotification

    @property
    def changed(self) -> bool:
        return self.action is DecisionAction.APPLY


@dataclass(frozen=True)
class PollResult:
    order_id: OrderId
    status: OrderStatus
    provider_status: PaymentOutcome | None
    action: DecisionAction | None = None
    detail: str | None = None

    @property
    def conclusive(self) -> bool:
        return self.provider_status in (PaymentOutcome.SUCCEEDED, PaymentOutcome.FAILED)


@dataclass
class _Applied:
    action: DecisionAction
    status: OrderStatus
    events: list = field(default_factory=list)


def _snapshot(order: Order) -> OrderSnapshot:
    return OrderSnapshot(
        order_id=OrderId(order.id),
        status=OrderStatus(order.status),
        total=order.total,
        currency=order.currency,
        payment_id=order.payment_id,
    )


def _security_extra(order_id: OrderId, provider: str, **extra) -> dict:
    return {"order_id": order_id, "provider": provider, "security_event": True, **extra}


class OrderLedger:
    """Order lifecycle operations over one database session."""

    def __init__(
        self,
        db: AsyncSession,
        gateways: GatewayRegistry,
        events: OrderEventBus,
        locks: OrderLocks,
        status_timeout: float = DEFAULT_STATUS_TIMEOUT,
    ):
        self.db = db
        self.gateways = gateways
        self.events = events
        self.locks = locks
        self.status_timeout = status_timeout

    # ─── Reads ───────────────────────────────────────────────────

    async def get(self, order_id: OrderId) -> Order:
        return await self._load(order_id)

    async def _load(self, order_id: OrderId) -> Order:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True),
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise ResourceNotFoundError("Order", str(order_id))
        return order

    # ─── Creation ────────────────────────────────────────────────

    async def create_order(self, draft: OrderDraft) -> Order:
        """Persist a pending order with totals computed from the line items."""
        if not draft.items:
            raise PaymentRequestError("An order needs at least one line item")
        for item in draft.items:
            if item.quantity < 1:
                raise PaymentRequestError(
                    f"Quantity for '{item.product_ref}' must be at least 1",
                )
            if item.unit_price < 0:
                raise PaymentRequestError(
                    f"Unit price for '{item.product_ref}' cannot be negative",
                )
        currency = draft.currency.strip().upper()
        if len(currency) != 3:
            raise PaymentRequestError(f"Invalid currency code '{draft.currency}'")
        # Fails fast for providers that are unknown or unconfigured
        self.gateways.get(draft.provider)

        subtotal = cart_subtotal(draft.items)
        discount = to_money(min(max(draft.discount_amount, Decimal(0)), subtotal))
        order = Order(
            user_id=draft.user_id,
            status=OrderStatus.PENDING.value,
            currency=currency,
            subtotal=subtotal,
            discount_code=normalize_code(draft.discount_code) if draft.discount_code else None,
            discount_amount=discount,
            total=subtotal - discount,
            payment_provider=PaymentProvider(draft.provider).value,
            items=[
                OrderItem(
                    position=position,
                    item_type=item.item_type.value,
                    product_ref=item.product_ref,
                    title=item.title,
                    quantity=item.quantity,
                    unit_price=to_money(item.unit_price),
                )
                for position, item in enumerate(draft.items)
            ],
        )
        self.db.add(order)
        await self.db.commit()
        await self.db.refresh(order)
        logger.info(
            f"Order created: total {order.total} {order.currency}",
            extra={"order_id": order.id, "provider": order.payment_provider},
        )
        return order

    # ─── Redirect ────────────────────────────────────────────────

    async def issue_redirect(
        self,
        order_id: OrderId,
        customer: CustomerInfo,
        success_url: str,
        fail_url: str,
        description: str | None = None,
    ) -> RedirectIssued:
        """Build the provider URL and move pending → processing."""
        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            gateway = self.gateways.get(order.payment_provider)
            current = OrderStatus(order.status)
            url = gateway.build_redirect(RedirectRequest(
                order_id=order.id,
                amount=order.total,
                currency=order.currency,
                description=description or "",
                customer=customer,
                success_url=success_url,
                fail_url=fail_url,
            ))
            if current is not OrderStatus.PROCESSING:
                target = next_status(current, OrderEvent.REDIRECT_ISSUED)
                await self._swap_or_raise(order, current, OrderEvent.REDIRECT_ISSUED, {
                    "status": target.value,
                })
            logger.info(
                "Payment redirect issued",
                extra={"order_id": order.id, "provider": order.payment_provider},
            )
            return RedirectIssued(
                order_id=order.id,
                provider=order.payment_provider,
                redirect_url=url,
                status=OrderStatus(order.status),
            )

    # ─── Provider outcomes ───────────────────────────────────────

    async def apply_notification(
        self, provider: str, payload: dict[str, str],
    ) -> NotificationResult:
        """Verify and apply an inbound provider notification. Idempotent per payment id."""
        gateway = self.gateways.get(provider)
        parsed = gateway.parse_notification(payload)
        provider_name = gateway.provider.value

        async with self.locks.hold(parsed.order_id):
            order = await self._load(parsed.order_id)
            if order.payment_provider != provider_name:
                logger.warning(
                    f"Notification from {provider_name} for an order paid via "
                    f"{order.payment_provider}",
                    extra=_security_extra(order.id, provider_name),
                )
                raise AuthenticityError(
                    "Notification provider does not match the order",
                    "PROVIDER_MISMATCH",
                    ErrorContext(order_id=order.id, provider=provider_name),
                )
            if not parsed.is_verified:
                logger.warning(
                    "Notification signature mismatch",
                    extra=_security_extra(order.id, provider_name),
                )
                raise AuthenticityError(
                    "Notification signature is invalid",
                    context=ErrorContext(order_id=order.id, provider=provider_name),
                )

            decision = decide_notification(_snapshot(order), parsed.facts())
            applied = await self._apply_decision(
                order, decision, parsed.facts(), parsed.raw,
            )

        await self._publish(applied.events)
        return NotificationResult(
            order_id=order.id,
            action=applied.action,
            status=applied.status,
            notification=parsed,
        )

    async def poll_status(
        self, order_id: OrderId, timeout: float | None = None,
    ) -> PollResult:
        """Ask the provider directly; a conclusive answer goes through the notification path."""
        order = await self._load(order_id)
        current = OrderStatus(order.status)
        if current is not OrderStatus.PROCESSING:
            return PollResult(
                order.id, current, None, detail="order is not awaiting payment",
            )

        gateway = self.gateways.get(order.payment_provider)
        check = await gateway.check_status(
            str(order.id), timeout=timeout or self.status_timeout,
        )
        if not check.is_conclusive:
            logger.info(
                f"Status check inconclusive: {check.status.value}",
                extra={"order_id": order.id, "provider": order.payment_provider},
            )
            return PollResult(
                order.id, current, check.status, detail=check.detail or "inconclusive",
            )

        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            # Operation history carries no charged amount: fall back to the order's own
            if check.amount is None:
                amount, currency = order.total, order.currency
            else:
                amount, currency = check.amount, check.currency or order.currency
            facts = NotificationFacts(
                amount=amount,
                currency=currency,
                provider_payment_id=check.provider_payment_id,
                outcome=check.status,
            )
            decision = decide_notification(_snapshot(order), facts)
            applied = await self._apply_decision(
                order, decision, facts, {"source": "status_check", "detail": check.detail},
            )

        await self._publish(applied.events)
        return PollResult(
            order.id, applied.status, check.status,
            action=applied.action, detail=check.detail,
        )

    async def _apply_decision(
        self,
        order: Order,
        decision: NotificationDecision,
        facts: NotificationFacts,
        raw: dict,
    ) -> _Applied:
        provider = order.payment_provider
        current = OrderStatus(order.status)
        action = decision.action

        if action is DecisionAction.IGNORE_PENDING:
            logger.info(
                f"Payment not final yet: {decision.reason}",
                extra={"order_id": order.id, "provider": provider},
            )
            return _Applied(action, current)

        if action is DecisionAction.DUPLICATE:
            logger.info(
                "Duplicate payment outcome ignored",
                extra={"order_id": order.id, "provider": provider,
                       "payment_id": facts.provider_payment_id},
            )
            return _Applied(action, current)

        if action is DecisionAction.AMOUNT_MISMATCH:
            logger.warning(
                f"Payment amount mismatch: {decision.reason}",
                extra={"order_id": order.id, "provider": provider,
                       "security_event": True},
            )
            raise AmountMismatchError(
                order.id,
                f"{to_money(order.total)} {order.currency}",
                describe_received(facts),
            )

        if action is DecisionAction.PAYMENT_ID_CONFLICT:
            logger.warning(
                f"Conflicting provider payment id: {decision.reason}",
                extra=_security_extra(order.id, provider,
                                      payment_id=facts.provider_payment_id),
            )
            raise PaymentIdConflictError(
                order.id, order.payment_id, facts.provider_payment_id,
            )

        if action is DecisionAction.ILLEGAL:
            logger.warning(
                f"Payment outcome for order in wrong state: {decision.reason}",
                extra={"order_id": order.id, "provider": provider,
                       "status": current.value},
            )
            raise InvalidTransitionError(current.value, decision.event.value)

        now = utc_now()
        values: dict = {
            "status": decision.target.value,
            "payment_id": facts.provider_payment_id or order.payment_id,
            "payment_data": raw,
        }
        if decision.target in SETTLED_STATUSES:
            values["paid_at"] = now
        elif decision.target is OrderStatus.FAILED:
            values["failure_reason"] = str(raw.get("detail") or "provider reported failure")

        won = await self._compare_and_swap(order, current, values)
        if not won:
            # Another writer moved the order first; it owns the side effects
            order = await self._load(order.id)
            logger.info(
                "Lost transition race; outcome already applied",
                extra={"order_id": order.id, "status": order.status},
            )
            return _Applied(DecisionAction.DUPLICATE, OrderStatus(order.status))

        logger.info(
            f"Order {current.value} → {order.status}",
            extra={"order_id": order.id, "provider": provider,
                   "payment_id": order.payment_id},
        )
        if decision.target is OrderStatus.PAID:
            event = OrderPaid(
                order_id=order.id,
                user_id=order.user_id,
                total=order.total,
                currency=order.currency,
                provider=provider,
                payment_id=order.payment_id,
                paid_at=now,
                discount_code=order.discount_code,
                product_refs=tuple(item.product_ref for item in order.items),
            )
        else:
            event = OrderFailed(order.id, order.user_id, order.failure_reason)
        return _Applied(action, OrderStatus(order.status), [event])

    # ─── Manual transitions ──────────────────────────────────────

    async def cancel(self, order_id: OrderId, reason: str | None = None) -> Order:
        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            await self._transition(order, OrderEvent.CANCEL, {"cancelled_at": utc_now()})
        logger.info(
            f"Order cancelled: {reason or 'no reason given'}",
            extra={"order_id": order.id},
        )
        await self.events.publish(OrderCancelled(order.id, order.user_id, reason))
        return order

    async def complete(self, order_id: OrderId) -> Order:
        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            await self._transition(order, OrderEvent.COMPLETE, {})
        await self.events.publish(OrderCompleted(order.id, order.user_id))
        return order

    async def refund(self, order_id: OrderId, reason: str | None = None) -> Order:
        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            await self._transition(order, OrderEvent.REFUND, {
                "refunded_at": utc_now(),
                "paid_at": None,
            })
        logger.info(
            f"Order refunded: {reason or 'no reason given'}",
            extra={"order_id": order.id, "payment_id": order.payment_id},
        )
        await self.events.publish(OrderRefunded(
            order.id, order.user_id, order.total, order.currency, reason,
        ))
        return order

    async def _transition(self, order: Order, event: OrderEvent, extra: dict) -> None:
        current = OrderStatus(order.status)
        target = next_status(current, event)
        await self._swap_or_raise(order, current, event, {"status": target.value, **extra})

    # ─── Writes ──────────────────────────────────────────────────

    async def _swap_or_raise(
        self, order: Order, expected: OrderStatus, event: OrderEvent, values: dict,
    ) -> None:
        if not await self._compare_and_swap(order, expected, values):
            order = await self._load(order.id)
            raise InvalidTransitionError(order.status, event.value)

    async def _compare_and_swap(
        self, order: Order, expected: OrderStatus, values: dict,
    ) -> bool:
        """Conditional update keyed on the status we decided from. True iff we won."""
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == expected.value)
            .values(updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False),
        )
        if result.rowcount != 1:
            await self.db.rollback()
            return False
        await self.db.commit()
        await self.db.refresh(order)
        return True

    async def _publish(self, events: list) -> None:
        for event in events:
            await self.events.publish(event)
