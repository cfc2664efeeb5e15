"""Payment Gateways — redirect construction, notification parsing, status polling, registry.

Invariants:
    - Redirect URLs carry a signature the provider can recompute from the same fields
    - Tampered notifications parse but come back unverified
    - Missing notification fields raise NotificationFieldsError
    - Status checks never raise for timeouts or outages: they report UNKNOWN
    - Registry never falls back to another provider
"""

import asyncio
import hashlib
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from app.config import Settings
from app.core.domain_types import PaymentOutcome, PaymentProvider
from app.core.errors import (
    ConfigurationError,
    NotificationFieldsError,
    PaymentRequestError,
    UnknownProviderError,
)
from app.services.payment_gateway import (
    CustomerInfo,
    RedirectRequest,
    YooMoneyGateway,
    build_gateway_registry,
)

from tests.services.signed_payloads import (
    ROBOKASSA_LOGIN,
    ROBOKASSA_PASSWORD1,
    YOOMONEY_RECEIVER,
    YOOMONEY_SECRET,
    op_state_xml,
    robokassa_result_payload,
    yoomoney_payload,
)


def _request(**overrides):
    base = dict(
        order_id=5,
        amount=Decimal("500"),
        currency="RUB",
        description="Course: Python basics",
        customer=CustomerInfo(email="buyer@example.com", locale="en"),
        success_url="https://shop.example/success",
        fail_url="https://shop.example/fail",
    )
    return RedirectRequest(**{**base, **overrides})


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


# ─── Registry ────────────────────────────────────────────────────

def test_registry_has_both_configured_providers(gateways):
    assert set(gateways.providers) == {PaymentProvider.ROBOKASSA, PaymentProvider.YOOMONEY}
    assert gateways.get("robokassa").provider is PaymentProvider.ROBOKASSA


def test_registry_rejects_unknown_provider(gateways):
    with pytest.raises(UnknownProviderError) as exc:
        gateways.get("paypal")
    assert exc.value.http_status == 500


def test_unconfigured_provider_is_not_registered(provider_http):
    settings = Settings(
        robokassa_merchant_login="", robokassa_password1="", robokassa_password2="",
        yoomoney_receiver=YOOMONEY_RECEIVER, yoomoney_notification_secret=YOOMONEY_SECRET,
    )
    registry = build_gateway_registry(settings, provider_http)
    assert "robokassa" not in registry
    with pytest.raises(UnknownProviderError):
        registry.get(PaymentProvider.ROBOKASSA)


def test_unsupported_hash_algorithm_is_configuration_error(settings, provider_http):
    settings = settings.model_copy(update={"robokassa_hash_algorithm": "crc32"})
    registry = build_gateway_registry(settings, provider_http)
    assert "robokassa" not in registry


# ─── Robokassa redirect ──────────────────────────────────────────

def test_robokassa_redirect_is_signed_with_password1(gateways):
    url = gateways.get("robokassa").build_redirect(_request())
    assert url.startswith("https://auth.robokassa.ru/Merchant/Index.aspx?")
    params = _query(url)
    expected = hashlib.md5(
        f"{ROBOKASSA_LOGIN}:500.00:5:{ROBOKASSA_PASSWORD1}".encode(),
    ).hexdigest()
    assert params["SignatureValue"] == expected
    assert params["MerchantLogin"] == ROBOKASSA_LOGIN
    assert params["OutSum"] == "500.00"
    assert params["InvId"] == "5"
    assert params["IsTest"] == "1"
    assert params["Email"] == "buyer@example.com"
    assert params["Culture"] == "en"
    assert params["FailURL"] == "https://shop.example/fail"


def test_robokassa_redirect_russian_locale(gateways):
    url = gateways.get("robokassa").build_redirect(
        _request(customer=CustomerInfo(locale="ru")),
    )
    params = _query(url)
    assert params["Culture"] == "ru"
    assert "Email" not in params


def test_empty_description_falls_back_to_order_number(gateways):
    url = gateways.get("robokassa").build_redirect(_request(description="  "))
    assert _query(url)["Description"] == "Payment for order 5"


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1")])
def test_non_positive_amount_rejected(gateways, amount):
    with pytest.raises(PaymentRequestError):
        gateways.get("robokassa").build_redirect(_request(amount=amount))


def test_missing_order_id_rejected(gateways):
    with pytest.raises(PaymentRequestError):
        gateways.get("yoomoney").build_redirect(_request(order_id=0))


def test_foreign_currency_rejected(gateways):
    with pytest.raises(PaymentRequestError):
        gateways.get("robokassa").build_redirect(_request(currency="USD"))


# ─── YooMoney redirect ───────────────────────────────────────────

def test_yoomoney_quickpay_redirect(gateways):
    url = gateways.get("yoomoney").build_redirect(_request())
    assert url.startswith("https://yoomoney.ru/quickpay/confirm?")
    params = _query(url)
    assert params["receiver"] == YOOMONEY_RECEIVER
    assert params["quickpay-form"] == "button"
    assert params["sum"] == "500.00"
    assert params["label"] == "5"
    assert params["successURL"] == "https://shop.example/success"
    assert "failURL" not in params


# ─── Robokassa notifications ─────────────────────────────────────

def test_robokassa_valid_notification(gateways):
    parsed = gateways.get("robokassa").parse_notification(
        robokassa_result_payload(5, "500.000000"),
    )
    assert parsed.is_verified
    assert parsed.order_id == 5
    assert parsed.amount == Decimal("500.000000")
    assert parsed.currency == "RUB"
    assert parsed.outcome is PaymentOutcome.SUCCEEDED
    assert parsed.provider_payment_id == "5"


def test_robokassa_tampered_amount_is_unverified(gateways):
    payload = robokassa_result_payload(5, "500.00")
    payload["OutSum"] = "5.00"
    assert not gateways.get("robokassa").parse_notification(payload).is_verified


def test_robokassa_shp_parameters_are_signed(gateways):
    payload = robokassa_result_payload(5, "500.00", Shp_user="42", Shp_course="py")
    gateway = gateways.get("robokassa")
    assert gateway.parse_notification(payload).is_verified
    payload["Shp_user"] = "43"
    assert not gateway.parse_notification(payload).is_verified


def test_robokassa_missing_signature_is_malformed(gateways):
    with pytest.raises(NotificationFieldsError):
        gateways.get("robokassa").parse_notification({"OutSum": "1.00", "InvId": "5"})


def test_robokassa_non_numeric_invoice_is_malformed(gateways):
    payload = robokassa_result_payload(5, "500.00")
    payload["InvId"] = "abc"
    with pytest.raises(NotificationFieldsError):
        gateways.get("robokassa").parse_notification(payload)


def test_robokassa_acknowledge_and_reject(gateways):
    gateway = gateways.get("robokassa")
    parsed = gateway.parse_notification(robokassa_result_payload(5, "500.00"))
    ack = gateway.acknowledge(parsed)
    assert (ack.status_code, ack.body) == (200, "OK5")
    rejection = gateway.reject("Notification signature is invalid")
    assert (rejection.status_code, rejection.body) == (400, "bad sign")


# ─── YooMoney notifications ──────────────────────────────────────

def test_yoomoney_valid_notification_uses_withdraw_amount(gateways):
    payload = yoomoney_payload(9, "485.00", withdraw_amount="500.00")
    parsed = gateways.get("yoomoney").parse_notification(payload)
    assert parsed.is_verified
    assert parsed.order_id == 9
    assert parsed.amount == Decimal("500.00")
    assert parsed.currency == "RUB"
    assert parsed.provider_payment_id == "op-1001"
    assert parsed.net_amount == Decimal("485.00")
    assert parsed.facts().fee_tolerance == Decimal("0.05")


def test_yoomoney_without_withdraw_amount_uses_amount(gateways):
    payload = yoomoney_payload(9, "500.00")
    del payload["withdraw_amount"]
    parsed = gateways.get("yoomoney").parse_notification(payload)
    assert parsed.amount == Decimal("500.00")


def test_yoomoney_held_payment_is_pending(gateways):
    payload = yoomoney_payload(9, "500.00", unaccepted="true")
    parsed = gateways.get("yoomoney").parse_notification(payload)
    assert parsed.outcome is PaymentOutcome.PENDING


def test_yoomoney_protected_payment_is_pending(gateways):
    parsed = gateways.get("yoomoney").parse_notification(
        yoomoney_payload(9, "500.00", codepro="true"),
    )
    assert parsed.is_verified
    assert parsed.outcome is PaymentOutcome.PENDING


def test_yoomoney_wrong_hash_is_unverified(gateways):
    payload = yoomoney_payload(9, "500.00")
    payload["sha1_hash"] = "0" * 40
    assert not gateways.get("yoomoney").parse_notification(payload).is_verified


def test_yoomoney_missing_label_is_malformed(gateways):
    payload = yoomoney_payload(9, "500.00")
    del payload["label"]
    with pytest.raises(NotificationFieldsError):
        gateways.get("yoomoney").parse_notification(payload)


def test_yoomoney_acknowledges_with_empty_body(gateways):
    gateway = gateways.get("yoomoney")
    ack = gateway.acknowledge(gateway.parse_notification(yoomoney_payload(9, "500.00")))
    assert (ack.status_code, ack.body) == (200, "")


# ─── Status checks ───────────────────────────────────────────────

@pytest.mark.parametrize("state_code,expected", [
    (5, PaymentOutcome.PENDING),
    (10, PaymentOutcome.FAILED),
    (50, PaymentOutcome.PENDING),
    (60, PaymentOutcome.FAILED),
    (80, PaymentOutcome.PENDING),
    (100, PaymentOutcome.SUCCEEDED),
])
async def test_robokassa_op_state_codes(gateways, provider_api, state_code, expected):
    provider_api.handler = lambda request: httpx.Response(200, text=op_state_xml(state_code))
    check = await gateways.get("robokassa").check_status("5", timeout=1.0)
    assert check.status is expected
    assert check.amount == Decimal("500.00")


async def test_robokassa_op_state_request_is_signed(gateways, provider_api):
    provider_api.handler = lambda request: httpx.Response(200, text=op_state_xml(100))
    await gateways.get("robokassa").check_status("5", timeout=1.0)
    params = provider_api.requests[0].url.params
    assert params["InvoiceID"] == "5"
    assert params["Signature"] == hashlib.md5(b"demo-shop:5:pass-two").hexdigest()


async def test_robokassa_unknown_invoice_is_pending(gateways, provider_api):
    provider_api.handler = lambda request: httpx.Response(
        200, text=op_state_xml(0, result_code=3),
    )
    check = await gateways.get("robokassa").check_status("5", timeout=1.0)
    assert check.status is PaymentOutcome.PENDING


async def test_provider_outage_is_unknown(gateways, provider_api):
    provider_api.handler = lambda request: httpx.Response(503)
    check = await gateways.get("robokassa").check_status("5", timeout=1.0)
    assert check.status is PaymentOutcome.UNKNOWN
    assert len(provider_api.requests) == 2


async def test_garbled_xml_is_unknown(gateways, provider_api):
    provider_api.handler = lambda request: httpx.Response(200, text="<html>oops")
    check = await gateways.get("robokassa").check_status("5", timeout=1.0)
    assert check.status is PaymentOutcome.UNKNOWN


@pytest.mark.parametrize("out_sum", ["1,5", "abc", "NaN"])
async def test_unreadable_out_sum_is_unknown(gateways, provider_api, out_sum):
    provider_api.handler = lambda request: httpx.Response(
        200, text=op_state_xml(100, out_sum=out_sum),
    )
    check = await gateways.get("robokassa").check_status("7", timeout=1.0)
    assert check.status is PaymentOutcome.UNKNOWN
    assert check.detail == "unreadable provider response"


async def test_status_check_timeout_is_unknown_not_failed(gateways, provider_api):
    async def slow(request):
        await asyncio.sleep(5)
        return httpx.Response(200, text=op_state_xml(100))

    provider_api.handler = slow
    check = await gateways.get("robokassa").check_status("5", timeout=0.05)
    assert check.status is PaymentOutcome.UNKNOWN
    assert not check.is_conclusive


async def test_transport_timeout_is_unknown(gateways, provider_api):
    def raise_timeout(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    provider_api.handler = raise_timeout
    check = await gateways.get("yoomoney").check_status("9", timeout=1.0)
    assert check.status is PaymentOutcome.UNKNOWN


async def test_yoomoney_operation_history_success(gateways, provider_api):
    provider_api.handler = lambda request: httpx.Response(200, json={
        "operations": [{"operation_id": "op-1001", "status": "success", "label": "9"}],
    })
    check = await gateways.get("yoomoney").check_status("9", timeout=1.0)
    assert check.status is PaymentOutcome.SUCCEEDED
    assert check.provider_payment_id == "op-1001"
    assert check.amount is None
    request = provider_api.requests[0]
    assert request.headers["Authorization"] == "Bearer yoo-token"
    assert b"label=9" in request.content


@pytest.mark.parametrize("body,expected", [
    ({"operations": []}, PaymentOutcome.PENDING),
    ({"operations": [{"status": "refused"}]}, PaymentOutcome.FAILED),
    ({"operations": [{"status": "in_progress"}]}, PaymentOutcome.PENDING),
    ({"error": "invalid_token"}, PaymentOutcome.UNKNOWN),
])
async def test_yoomoney_operation_statuses(gateways, provider_api, body, expected):
    provider_api.handler = lambda request: httpx.Response(200, json=body)
    check = await gateways.get("yoomoney").check_status("9", timeout=1.0)
    assert check.status is expected


async def test_yoomoney_status_without_token_is_configuration_error(provider_http):
    gateway = YooMoneyGateway(YOOMONEY_RECEIVER, YOOMONEY_SECRET, provider_http)
    with pytest.raises(ConfigurationError):
        await gateway.check_status("9", timeout=1.0)
