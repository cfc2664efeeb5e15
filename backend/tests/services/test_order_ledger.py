"""Order Ledger — creation, redirect hand-off, exactly-once notification handling, polling.

Invariants:
    - A verified success notification moves processing → paid exactly once
    - Replays with the same payment id are no-op successes (single OrderPaid)
    - Forged, mismatched and conflicting notifications leave the order untouched
    - Concurrent duplicate notifications produce one transition and one OrderPaid
    - Inconclusive status checks leave the order in processing
    - paid_at is set iff status in {paid, completed}
"""

import asyncio
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select, update

from app.core.domain_types import (
    SETTLED_STATUSES,
    OrderId,
    OrderItemType,
    OrderStatus,
    PaymentProvider,
)
from app.core.errors import (
    AmountMismatchError,
    AuthenticityError,
    InvalidTransitionError,
    NotificationFieldsError,
    PaymentIdConflictError,
    PaymentRequestError,
    ResourceNotFoundError,
    UnknownProviderError,
)
from app.core.order_transitions import DecisionAction
from app.models.order import Order
from app.services.order_events import OrderCancelled, OrderFailed, OrderRefunded
from app.services.order_ledger import (
    LineItemDraft,
    OrderDraft,
    OrderLedger,
    cart_subtotal,
)
from app.services.payment_gateway import CustomerInfo

from tests.services.signed_payloads import (
    op_state_xml,
    robokassa_result_payload,
    yoomoney_payload,
)


def _draft(provider=PaymentProvider.ROBOKASSA, **overrides):
    base = dict(
        items=[
            LineItemDraft(product_ref="course-py", unit_price=Decimal("400.00")),
            LineItemDraft(
                product_ref="consult", unit_price=Decimal("50.00"), quantity=2,
                item_type=OrderItemType.SERVICE,
            ),
        ],
        currency="rub",
        provider=provider,
        user_id="user-a",
    )
    return OrderDraft(**{**base, **overrides})


async def _processing_order(ledger: OrderLedger, provider=PaymentProvider.ROBOKASSA):
    order = await ledger.create_order(_draft(provider))
    await ledger.issue_redirect(
        order.id, CustomerInfo(email="a@example.com"),
        "https://shop.example/ok", "https://shop.example/fail",
    )
    return order


async def _reload(test_db, order_id: int) -> Order:
    result = await test_db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True),
    )
    return result.scalar_one()


# ─── create_order ────────────────────────────────────────────────

async def test_create_order_computes_totals(ledger):
    order = await ledger.create_order(_draft())
    assert order.status == "pending"
    assert order.currency == "RUB"
    assert order.subtotal == Decimal("500.00")
    assert order.total == Decimal("500.00")
    assert [i.product_ref for i in order.items] == ["course-py", "consult"]
    assert order.paid_at is None


async def test_subtotal_quantizes_each_unit_price(ledger):
    items = [LineItemDraft(product_ref="sticker", unit_price=Decimal("0.005"), quantity=3)]
    assert cart_subtotal(items) == Decimal("0.03")
    order = await ledger.create_order(_draft(items=items))
    assert order.subtotal == cart_subtotal(items)
    assert order.items[0].unit_price == Decimal("0.01")


async def test_create_order_applies_discount(ledger):
    order = await ledger.create_order(_draft(
        discount_code="summer20", discount_amount=Decimal("100.00"),
    ))
    assert order.discount_code == "SUMMER20"
    assert order.total == Decimal("400.00")


async def test_discount_never_makes_total_negative(ledger):
    order = await ledger.create_order(_draft(discount_amount=Decimal("9999")))
    assert order.discount_amount == Decimal("500.00")
    assert order.total == Decimal("0.00")


async def test_create_order_requires_items(ledger):
    with pytest.raises(PaymentRequestError):
        await ledger.create_order(_draft(items=[]))


async def test_create_order_rejects_unconfigured_provider(ledger):
    ledger.gateways._gateways.pop(PaymentProvider.YOOMONEY)
    with pytest.raises(UnknownProviderError):
        await ledger.create_order(_draft(PaymentProvider.YOOMONEY))


# ─── issue_redirect ──────────────────────────────────────────────

async def test_issue_redirect_moves_to_processing(ledger):
    order = await ledger.create_order(_draft())
    issued = await ledger.issue_redirect(
        order.id, CustomerInfo(), "https://shop.example/ok", "https://shop.example/fail",
    )
    assert issued.status is OrderStatus.PROCESSING
    assert issued.redirect_url.startswith("https://auth.robokassa.ru/")
    assert f"InvId={order.id}" in issued.redirect_url


async def test_reissuing_redirect_keeps_processing(ledger):
    order = await _processing_order(ledger)
    issued = await ledger.issue_redirect(
        order.id, CustomerInfo(), "https://shop.example/ok", "https://shop.example/fail",
    )
    assert issued.status is OrderStatus.PROCESSING


async def test_redirect_for_cancelled_order_rejected(ledger):
    order = await ledger.create_order(_draft())
    await ledger.cancel(order.id)
    with pytest.raises(InvalidTransitionError) as exc:
        await ledger.issue_redirect(order.id, CustomerInfo(), "https://a", "https://b")
    assert exc.value.current_status == "cancelled"


async def test_redirect_for_zero_total_rejected_without_transition(ledger, test_db):
    order = await ledger.create_order(_draft(discount_amount=Decimal("500.00")))
    with pytest.raises(PaymentRequestError):
        await ledger.issue_redirect(order.id, CustomerInfo(), "https://a", "https://b")
    assert (await _reload(test_db, order.id)).status == "pending"


# ─── apply_notification ──────────────────────────────────────────

async def test_verified_success_marks_paid(ledger, paid_events):
    order = await _processing_order(ledger)
    result = await ledger.apply_notification(
        "robokassa", robokassa_result_payload(order.id, "500.000000"),
    )
    assert result.action is DecisionAction.APPLY
    assert result.status is OrderStatus.PAID
    paid = await ledger.get(order.id)
    assert paid.paid_at is not None
    assert paid.payment_id == str(order.id)
    assert paid.payment_data["OutSum"] == "500.000000"
    assert len(paid_events) == 1
    assert paid_events[0].product_refs == ("course-py", "consult")


async def test_replayed_notification_is_idempotent(ledger, paid_events):
    order = await _processing_order(ledger)
    payload = robokassa_result_payload(order.id, "500.00")
    await ledger.apply_notification("robokassa", payload)
    first_paid_at = (await ledger.get(order.id)).paid_at

    again = await ledger.apply_notification("robokassa", payload)

    assert again.action is DecisionAction.DUPLICATE
    assert again.status is OrderStatus.PAID
    assert (await ledger.get(order.id)).paid_at == first_paid_at
    assert len(paid_events) == 1


async def test_forged_notification_leaves_order_untouched(ledger, test_db, paid_events):
    order = await _processing_order(ledger)
    payload = robokassa_result_payload(order.id, "500.00")
    payload["SignatureValue"] = "F" * 32
    with pytest.raises(AuthenticityError):
        await ledger.apply_notification("robokassa", payload)
    assert (await _reload(test_db, order.id)).status == "processing"
    assert paid_events == []


async def test_unknown_order_is_not_found(ledger):
    with pytest.raises(ResourceNotFoundError):
        await ledger.apply_notification("robokassa", robokassa_result_payload(999, "1.00"))


async def test_malformed_notification_rejected(ledger):
    with pytest.raises(NotificationFieldsError):
        await ledger.apply_notification("robokassa", {"InvId": "1"})


async def test_amount_mismatch_leaves_order_processing(ledger, test_db, paid_events):
    order = await _processing_order(ledger)
    with pytest.raises(AmountMismatchError) as exc:
        await ledger.apply_notification(
            "robokassa", robokassa_result_payload(order.id, "499.99"),
        )
    assert exc.value.expected == "500.00 RUB"
    assert (await _reload(test_db, order.id)).status == "processing"
    assert paid_events == []


async def test_unsigned_withdraw_amount_cannot_cover_small_payment(
    ledger, test_db, paid_events,
):
    order = await _processing_order(ledger, PaymentProvider.YOOMONEY)
    payload = yoomoney_payload(order.id, "1.00", withdraw_amount="500.00")
    with pytest.raises(AmountMismatchError):
        await ledger.apply_notification("yoomoney", payload)
    assert (await _reload(test_db, order.id)).status == "processing"
    assert paid_events == []


async def test_commission_within_tolerance_is_paid(ledger, paid_events):
    order = await _processing_order(ledger, PaymentProvider.YOOMONEY)
    payload = yoomoney_payload(order.id, "485.00", withdraw_amount="500.00")
    result = await ledger.apply_notification("yoomoney", payload)
    assert result.status is OrderStatus.PAID
    assert len(paid_events) == 1


async def test_notification_from_other_provider_rejected(ledger, test_db):
    order = await _processing_order(ledger, PaymentProvider.ROBOKASSA)
    with pytest.raises(AuthenticityError) as exc:
        await ledger.apply_notification("yoomoney", yoomoney_payload(order.id, "500.00"))
    assert exc.value.code == "PROVIDER_MISMATCH"
    assert (await _reload(test_db, order.id)).status == "processing"


async def test_different_payment_id_after_paid_is_conflict(ledger, test_db, paid_events):
    order = await _processing_order(ledger, PaymentProvider.YOOMONEY)
    await ledger.apply_notification("yoomoney", yoomoney_payload(order.id, "500.00", "op-1"))

    with pytest.raises(PaymentIdConflictError):
        await ledger.apply_notification(
            "yoomoney", yoomoney_payload(order.id, "500.00", "op-2"),
        )

    stored = await _reload(test_db, order.id)
    assert stored.payment_id == "op-1"
    assert stored.status == "paid"
    assert len(paid_events) == 1


async def test_held_payment_is_acknowledged_without_transition(ledger, paid_events):
    order = await _processing_order(ledger, PaymentProvider.YOOMONEY)
    result = await ledger.apply_notification(
        "yoomoney", yoomoney_payload(order.id, "500.00", unaccepted="true"),
    )
    assert result.action is DecisionAction.IGNORE_PENDING
    assert result.status is OrderStatus.PROCESSING
    assert paid_events == []


async def test_success_for_cancelled_order_is_rejected(ledger, test_db):
    order = await _processing_order(ledger)
    await ledger.cancel(order.id, "customer changed mind")
    with pytest.raises(InvalidTransitionError):
        await ledger.apply_notification(
            "robokassa", robokassa_result_payload(order.id, "500.00"),
        )
    assert (await _reload(test_db, order.id)).status == "cancelled"


async def test_concurrent_duplicates_emit_one_order_paid(
    test_session_factory, gateways, order_events, order_locks, paid_events,
):
    async with test_session_factory() as setup_db:
        setup = OrderLedger(setup_db, gateways, order_events, order_locks)
        order = await _processing_order(setup)

    payload = robokassa_result_payload(order.id, "500.00")
    async with test_session_factory() as db_a, test_session_factory() as db_b:
        ledger_a = OrderLedger(db_a, gateways, order_events, order_locks)
        ledger_b = OrderLedger(db_b, gateways, order_events, order_locks)
        results = await asyncio.gather(
            ledger_a.apply_notification("robokassa", payload),
            ledger_b.apply_notification("robokassa", payload),
        )

    assert sorted(r.action.value for r in results) == ["apply", "duplicate"]
    assert all(r.status is OrderStatus.PAID for r in results)
    assert len(paid_events) == 1


async def test_lost_compare_and_swap_reports_duplicate(ledger, test_db, paid_events):
    order = await _processing_order(ledger)
    # Another process settles the order between our read and our write
    await test_db.execute(
        update(Order).where(Order.id == order.id).values(status="paid", payment_id=str(order.id)),
    )
    await test_db.commit()

    won = await ledger._compare_and_swap(order, OrderStatus.PROCESSING, {"status": "paid"})

    assert won is False
    assert paid_events == []


# ─── poll_status ─────────────────────────────────────────────────

async def test_poll_success_applies_paid(ledger, provider_api, paid_events):
    order = await _processing_order(ledger)
    provider_api.handler = lambda request: httpx.Response(200, text=op_state_xml(100))
    result = await ledger.poll_status(order.id)
    assert result.conclusive
    assert result.status is OrderStatus.PAID
    assert len(paid_events) == 1


async def test_poll_failure_applies_failed(ledger, provider_api, order_events):
    failed = []

    async def record(event):
        failed.append(event)

    order_events.subscribe(OrderFailed, record)
    order = await _processing_order(ledger)
    provider_api.handler = lambda request: httpx.Response(200, text=op_state_xml(10))

    result = await ledger.poll_status(order.id)

    assert result.status is OrderStatus.FAILED
    assert (await ledger.get(order.id)).failure_reason == "state code 10"
    assert len(failed) == 1


async def test_poll_timeout_leaves_processing(ledger, provider_api, test_db):
    async def slow(request):
        await asyncio.sleep(5)
        return httpx.Response(200, text=op_state_xml(100))

    order = await _processing_order(ledger)
    provider_api.handler = slow
    result = await ledger.poll_status(order.id, timeout=0.05)
    assert not result.conclusive
    assert result.status is OrderStatus.PROCESSING
    assert (await _reload(test_db, order.id)).status == "processing"


async def test_poll_yoomoney_uses_order_total(ledger, provider_api, paid_events):
    order = await _processing_order(ledger, PaymentProvider.YOOMONEY)
    provider_api.handler = lambda request: httpx.Response(200, json={
        "operations": [{"operation_id": "op-77", "status": "success"}],
    })
    result = await ledger.poll_status(order.id)
    assert result.status is OrderStatus.PAID
    assert (await ledger.get(order.id)).payment_id == "op-77"


async def test_poll_amount_mismatch_raises(ledger, provider_api):
    order = await _processing_order(ledger)
    provider_api.handler = lambda request: httpx.Response(
        200, text=op_state_xml(100, out_sum="1.00"),
    )
    with pytest.raises(AmountMismatchError):
        await ledger.poll_status(order.id)


async def test_poll_pending_order_does_not_call_provider(ledger, provider_api):
    order = await ledger.create_order(_draft())
    result = await ledger.poll_status(order.id)
    assert result.provider_status is None
    assert provider_api.requests == []


# ─── cancel / complete / refund ──────────────────────────────────

async def test_cancel_pending_order(ledger, order_events):
    cancelled = []

    async def record(event):
        cancelled.append(event)

    order_events.subscribe(OrderCancelled, record)
    order = await ledger.create_order(_draft())
    result = await ledger.cancel(order.id, "duplicate cart")
    assert result.status == "cancelled"
    assert result.cancelled_at is not None
    assert cancelled[0].reason == "duplicate cart"


async def test_cancel_after_payment_rejected_with_current_status(ledger):
    order = await _processing_order(ledger)
    await ledger.apply_notification("robokassa", robokassa_result_payload(order.id, "500.00"))
    with pytest.raises(InvalidTransitionError) as exc:
        await ledger.cancel(order.id)
    assert exc.value.current_status == "paid"


async def test_complete_then_refund_clears_paid_at(ledger, order_events):
    refunded = []

    async def record(event):
        refunded.append(event)

    order_events.subscribe(OrderRefunded, record)
    order = await _processing_order(ledger)
    await ledger.apply_notification("robokassa", robokassa_result_payload(order.id, "500.00"))

    completed = await ledger.complete(order.id)
    assert completed.status == "completed"
    assert completed.paid_at is not None

    result = await ledger.refund(order.id, "chargeback")
    assert result.status == "refunded"
    assert result.paid_at is None
    assert result.refunded_at is not None
    assert refunded[0].total == Decimal("500.00")


async def test_paid_at_tracks_settled_statuses(ledger, provider_api, test_db):
    order = await _processing_order(ledger)
    failed = await _processing_order(ledger)
    await ledger.apply_notification("robokassa", robokassa_result_payload(order.id, "500.00"))
    provider_api.handler = lambda request: httpx.Response(200, text=op_state_xml(10))
    await ledger.poll_status(failed.id)
    await ledger.complete(order.id)
    seen = []
    for order_id in (order.id, failed.id):
        row = await _reload(test_db, order_id)
        seen.append((row.status, row.paid_at))
    await ledger.refund(order.id)
    row = await _reload(test_db, order.id)
    seen.append((row.status, row.paid_at))

    assert [status for status, _ in seen] == ["completed", "failed", "refunded"]
    for status, paid_at in seen:
        assert (paid_at is not None) == (OrderStatus(status) in SETTLED_STATUSES)


async def test_refund_twice_rejected(ledger):
    order = await _processing_order(ledger)
    await ledger.apply_notification("robokassa", robokassa_result_payload(order.id, "500.00"))
    await ledger.refund(order.id)
    with pytest.raises(InvalidTransitionError):
        await ledger.refund(order.id)


async def test_failing_subscriber_does_not_undo_payment(ledger, order_events, test_db):
    from app.services.order_events import OrderPaid

    async def explode(event):
        raise RuntimeError("mailer down")

    order_events.subscribe(OrderPaid, explode)
    order = await _processing_order(ledger)
    await ledger.apply_notification("robokassa", robokassa_result_payload(order.id, "500.00"))
    assert (await _reload(test_db, order.id)).status == "paid"


async def test_get_unknown_order(ledger):
    with pytest.raises(ResourceNotFoundError) as exc:
        await ledger.get(OrderId(12345))
    assert "12345" in str(exc.value)
