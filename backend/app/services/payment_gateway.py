"""Payment Gateways — per-provider redirect construction, notification parsing, status polling.

Invariants:
    - One PaymentGateway subclass per provider; GatewayRegistry maps PaymentProvider → instance
    - Unknown or unconfigured provider → UnknownProviderError (never a default provider)
    - build_redirect and parse_notification are pure computations (no IO)
    - parse_notification never raises for a bad signature: it returns is_verified=False and
      the ledger turns that into an AuthenticityError; missing fields raise NotificationFieldsError
    - check_status never raises for timeouts or provider outages: it returns UNKNOWN

Design Decisions:
    - Static strategy table (GATEWAY_FACTORIES) over string switches: each provider is
      independently testable and swappable
    - Credentials injected at construction (build_gateway_registry): no global settings lookups
    - Providers only send notifications for successful (or held) payments; failures are
      learned through check_status polling
"""

import logging
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from urllib.parse import urlencode

from app.config import Settings
from app.core import signature_codec as codec
from app.core.domain_types import PaymentOutcome, PaymentProvider, to_money
from app.core.errors import (
    ConfigurationError,
    NotificationFieldsError,
    PaymentRequestError,
    TransientError,
    UnknownProviderError,
)
from app.core.order_transitions import NotificationFacts
from app.infrastructure.provider_http import ProviderHttpClient

logger = logging.getLogger(__name__)


# ─── Value types ─────────────────────────────────────────────────

@dataclass(frozen=True)
class CustomerInfo:
    email: str | None = None
    locale: str = "en"


@dataclass(frozen=True)
class RedirectRequest:
    order_id: int
    amount: Decimal
    currency: str
    description: str
    customer: CustomerInfo
    success_url: str
    fail_url: str


@dataclass(frozen=True)
class ParsedNotification:
    """Provider-neutral view of an inbound notification."""
    provider: PaymentProvider
    order_id: int
    amount: Decimal
    currency: str
    provider_payment_id: str | None
    outcome: PaymentOutcome
    is_verified: bool
    raw: dict = field(default_factory=dict)
    # Signed credited amount when the charged amount is not itself signed
    net_amount: Decimal | None = None
    fee_tolerance: Decimal = Decimal(0)

    def facts(self) -> NotificationFacts:
        return NotificationFacts(
            amount=self.amount,
            currency=self.currency,
            provider_payment_id=self.provider_payment_id,
            outcome=self.outcome,
            net_amount=self.net_amount,
            fee_tolerance=self.fee_tolerance,
        )


@dataclass(frozen=True)
class StatusCheck:
    """Result of polling the provider. UNKNOWN means "inconclusive, retry later"."""
    status: PaymentOutcome
    provider_payment_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    detail: str | None = None

    @property
    def is_conclusive(self) -> bool:
        return self.status in (PaymentOutcome.SUCCEEDED, PaymentOutcome.FAILED)


@dataclass(frozen=True)
class ProviderResponse:
    """Body the notification endpoint returns to the provider."""
    status_code: int
    body: str
    media_type: str = "text/plain"


def _require(provider: PaymentProvider, payload: Mapping[str, str], names: tuple[str, ...]) -> None:
    missing = [name for name in names if payload.get(name) is None]
    if missing:
        raise NotificationFieldsError(
            provider.value,
            f"{provider.value} notification missing fields: {', '.join(missing)}",
        )


def _parse_amount(provider: PaymentProvider, raw: str) -> Decimal:
    try:
        amount = Decimal(raw)
    except (InvalidOperation, TypeError):
        raise NotificationFieldsError(provider.value, f"Unparsable amount '{raw}'")
    if not amount.is_finite():
        raise NotificationFieldsError(provider.value, f"Unparsable amount '{raw}'")
    return amount


def _parse_order_id(provider: PaymentProvider, raw: str) -> int:
    try:
        return int(str(raw).strip())
    except ValueError:
        raise NotificationFieldsError(
            provider.value, f"Order reference '{raw}' is not an order id",
        )


def _validate_request(request: RedirectRequest) -> str:
    if not request.order_id:
        raise PaymentRequestError("Order ID is required for a payment redirect")
    if request.amount is None or request.amount <= 0:
        raise PaymentRequestError(f"Invalid payment amount: {request.amount}")
    description = (request.description or "").strip()
    return description or f"Payment for order {request.order_id}"


# ─── Strategy interface ──────────────────────────────────────────

class PaymentGateway(ABC):
    """One payment provider behind a uniform interface."""

    provider: PaymentProvider

    def __init__(self, http: ProviderHttpClient, currency: str):
        self.http = http
        self.currency = currency.upper()

    @abstractmethod
    def build_redirect(self, request: RedirectRequest) -> str:
        """Absolute URL the customer is sent to."""

    @abstractmethod
    def parse_notification(self, payload: Mapping[str, str]) -> ParsedNotification:
        """Extract fields and verify the signature."""

    @abstractmethod
    async def check_status(self, payment_ref: str, *, timeout: float) -> StatusCheck:
        """Poll the provider. Never raises for timeouts or outages."""

    def acknowledge(self, notification: ParsedNotification) -> ProviderResponse:
        return ProviderResponse(200, "OK")

    def reject(self, reason: str) -> ProviderResponse:
        return ProviderResponse(400, reason)

    def _ensure_currency(self, currency: str) -> None:
        if currency.upper() != self.currency:
            raise PaymentRequestError(
                f"{self.provider.value} only accepts {self.currency} payments, got {currency}",
            )

    async def _poll(self, fetch: Callable, payment_ref: str, timeout: float) -> StatusCheck:
        """Run a provider fetch, turning outages and bad payloads into UNKNOWN."""
        try:
            return await fetch(payment_ref, timeout)
        except TransientError as e:
            logger.warning(
                f"Status check inconclusive: {e.message}",
                extra={"provider": self.provider.value, "error_code": e.code},
            )
            return StatusCheck(PaymentOutcome.UNKNOWN, detail=e.message)
        except (ET.ParseError, ValueError, KeyError, InvalidOperation) as e:
            logger.warning(
                f"Unreadable status response: {e}",
                extra={"provider": self.provider.value},
            )
            return StatusCheck(PaymentOutcome.UNKNOWN, detail="unreadable provider response")


# ─── Robokassa ───────────────────────────────────────────────────

ROBOKASSA_PAYMENT_URL = "https://auth.robokassa.ru/Merchant/Index.aspx"
ROBOKASSA_OP_STATE_URL = (
    "https://auth.robokassa.ru/Merchant/WebService/Service.asmx/OpStateExt"
)

# OpState State/Code → normalized outcome
ROBOKASSA_STATE_CODES: dict[int, PaymentOutcome] = {
    5: PaymentOutcome.PENDING,     # invoice created, not paid
    10: PaymentOutcome.FAILED,     # cancelled, no money received
    50: PaymentOutcome.PENDING,    # money received, being credited
    60: PaymentOutcome.FAILED,     # returned to the payer
    80: PaymentOutcome.PENDING,    # suspended by security check
    100: PaymentOutcome.SUCCEEDED,
}


def _strip_namespaces(root: ET.Element) -> ET.Element:
    for element in root.iter():
        if "}" in element.tag:
            element.tag = element.tag.split("}", 1)[1]
    return root


class RobokassaGateway(PaymentGateway):
    """Robokassa merchant interface: md5-family signatures, ResultURL notifications."""

    provider = PaymentProvider.ROBOKASSA

    def __init__(
        self,
        merchant_login: str,
        password1: str,
        password2: str,
        http: ProviderHttpClient,
        hash_algorithm: str = "md5",
        test_mode: bool = True,
        currency: str = "RUB",
    ):
        if not merchant_login or not password1 or not password2:
            raise ConfigurationError(
                "Robokassa requires merchant login, password1 and password2",
            )
        if hash_algorithm not in codec.DIGESTS:
            raise ConfigurationError(
                f"Robokassa hash algorithm '{hash_algorithm}' is not supported",
            )
        super().__init__(http, currency)
        self.merchant_login = merchant_login
        self.password1 = password1
        self.password2 = password2
        self.test_mode = test_mode
        self.redirect_scheme = codec.ROBOKASSA_REDIRECT.with_algorithm(hash_algorithm)
        self.result_scheme = codec.ROBOKASSA_RESULT.with_algorithm(hash_algorithm)
        self.op_state_scheme = codec.ROBOKASSA_OP_STATE.with_algorithm(hash_algorithm)

    def build_redirect(self, request: RedirectRequest) -> str:
        description = _validate_request(request)
        self._ensure_currency(request.currency)
        out_sum = str(to_money(request.amount))
        signature = codec.sign(
            self.redirect_scheme,
            {
                "MerchantLogin": self.merchant_login,
                "OutSum": out_sum,
                "InvId": request.order_id,
            },
            self.password1,
        )
        params = {
            "MerchantLogin": self.merchant_login,
            "OutSum": out_sum,
            "InvId": str(request.order_id),
            "Description": description,
            "SignatureValue": signature,
            "Culture": "ru" if request.customer.locale.startswith("ru") else "en",
            "SuccessURL": request.success_url,
            "FailURL": request.fail_url,
        }
        if request.customer.email:
            params["Email"] = request.customer.email
        if self.test_mode:
            params["IsTest"] = "1"
        return f"{ROBOKASSA_PAYMENT_URL}?{urlencode(params)}"

    def parse_notification(self, payload: Mapping[str, str]) -> ParsedNotification:
        _require(self.provider, payload, ("OutSum", "InvId", "SignatureValue"))
        order_id = _parse_order_id(self.provider, payload["InvId"])
        amount = _parse_amount(self.provider, payload["OutSum"])

        # Custom Shp_ parameters are signed too, sorted by name, as "key=value"
        shp_keys = tuple(sorted(k for k in payload if k.lower().startswith("shp_")))
        scheme = self.result_scheme.with_fields(self.result_scheme.fields + shp_keys)
        fields: dict[str, object] = {
            "OutSum": payload["OutSum"],
            "InvId": payload["InvId"],
        }
        fields.update({k: f"{k}={payload[k]}" for k in shp_keys})

        is_verified = codec.verify(
            scheme, fields, self.password2, payload["SignatureValue"],
        )
        return ParsedNotification(
            provider=self.provider,
            order_id=order_id,
            amount=amount,
            currency=self.currency,
            provider_payment_id=str(order_id),
            outcome=PaymentOutcome.SUCCEEDED,
            is_verified=is_verified,
            raw=dict(payload),
        )

    def acknowledge(self, notification: ParsedNotification) -> ProviderResponse:
        return ProviderResponse(200, f"OK{notification.order_id}")

    def reject(self, reason: str) -> ProviderResponse:
        return ProviderResponse(400, "bad sign" if "signature" in reason.lower() else reason)

    async def check_status(self, payment_ref: str, *, timeout: float) -> StatusCheck:
        return await self._poll(self._fetch_op_state, payment_ref, timeout)

    async def _fetch_op_state(self, payment_ref: str, timeout: float) -> StatusCheck:
        signature = codec.sign(
            self.op_state_scheme,
            {"MerchantLogin": self.merchant_login, "InvoiceID": payment_ref},
            self.password2,
        )
        params = {
            "MerchantLogin": self.merchant_login,
            "InvoiceID": payment_ref,
            "Signature": signature,
        }
        if self.test_mode:
            params["IsTest"] = "1"
        response = await self.http.request(
            "GET", ROBOKASSA_OP_STATE_URL, timeout=timeout, params=params,
        )
        root = _strip_namespaces(ET.fromstring(response.text))
        result_code = int(root.findtext("Result/Code", default="-1"))
        if result_code == 3:
            return StatusCheck(PaymentOutcome.PENDING, detail="invoice not found")
        if result_code != 0:
            return StatusCheck(
                PaymentOutcome.UNKNOWN,
                detail=root.findtext("Result/Description") or f"result code {result_code}",
            )
        state_code = int(root.findtext("State/Code", default="-1"))
        status = ROBOKASSA_STATE_CODES.get(state_code, PaymentOutcome.UNKNOWN)
        out_sum = root.findtext("Info/OutSum")
        amount = Decimal(out_sum) if out_sum else None
        if amount is not None and not amount.is_finite():
            raise ValueError(f"non-finite OutSum '{out_sum}'")
        return StatusCheck(
            status=status,
            provider_payment_id=payment_ref,
            amount=amount,
            currency=self.currency if out_sum else None,
            detail=f"state code {state_code}",
        )


# ─── YooMoney ────────────────────────────────────────────────────

YOOMONEY_PAYMENT_URL = "https://yoomoney.ru/quickpay/confirm"
YOOMONEY_OPERATION_HISTORY_URL = "https://yoomoney.ru/api/operation-history"

# ISO 4217 numeric codes YooMoney uses in notifications
YOOMONEY_CURRENCIES: dict[str, str] = {"643": "RUB"}

# Largest commission share between the charged and the credited amount
DEFAULT_YOOMONEY_MAX_FEE_PERCENT = Decimal("5")

YOOMONEY_OPERATION_STATUSES: dict[str, PaymentOutcome] = {
    "success": PaymentOutcome.SUCCEEDED,
    "refused": PaymentOutcome.FAILED,
    "in_progress": PaymentOutcome.PENDING,
}


def _truthy(value: str | None) -> bool:
    return str(value).lower() == "true"


class YooMoneyGateway(PaymentGateway):
    """YooMoney quickpay form with sha1-signed HTTP notifications."""

    provider = PaymentProvider.YOOMONEY

    def __init__(
        self,
        receiver: str,
        notification_secret: str,
        http: ProviderHttpClient,
        api_token: str = "",
        currency: str = "RUB",
        max_fee_percent: Decimal = DEFAULT_YOOMONEY_MAX_FEE_PERCENT,
    ):
        if not receiver or not notification_secret:
            raise ConfigurationError(
                "YooMoney requires a receiver wallet and a notification secret",
            )
        super().__init__(http, currency)
        self.receiver = receiver
        self.notification_secret = notification_secret
        self.api_token = api_token
        self.fee_tolerance = Decimal(max_fee_percent) / 100

    def build_redirect(self, request: RedirectRequest) -> str:
        description = _validate_request(request)
        self._ensure_currency(request.currency)
        # quickpay has no failure redirect; fail_url is not representable here
        params = {
            "receiver": self.receiver,
            "quickpay-form": "button",
            "targets": description,
            "paymentType": "AC",
            "sum": str(to_money(request.amount)),
            "label": str(request.order_id),
            "successURL": request.success_url,
        }
        return f"{YOOMONEY_PAYMENT_URL}?{urlencode(params)}"

    def parse_notification(self, payload: Mapping[str, str]) -> ParsedNotification:
        _require(self.provider, payload, codec.YOOMONEY_NOTIFICATION.required_fields + ("sha1_hash",))
        order_id = _parse_order_id(self.provider, payload["label"])
        is_verified = codec.verify(
            codec.YOOMONEY_NOTIFICATION, payload,
            self.notification_secret, payload["sha1_hash"],
        )
        # withdraw_amount is what the payer was charged but is not signed; the signed
        # amount is net of the commission and bounds it
        net = _parse_amount(self.provider, payload["amount"])
        withdraw = payload.get("withdraw_amount")
        charged = _parse_amount(self.provider, withdraw) if withdraw else net
        currency_code = str(payload["currency"])
        held = _truthy(payload.get("unaccepted")) or _truthy(payload.get("codepro"))
        return ParsedNotification(
            provider=self.provider,
            order_id=order_id,
            amount=charged,
            currency=YOOMONEY_CURRENCIES.get(currency_code, currency_code),
            provider_payment_id=payload["operation_id"],
            outcome=PaymentOutcome.PENDING if held else PaymentOutcome.SUCCEEDED,
            is_verified=is_verified,
            raw=dict(payload),
            net_amount=net,
            fee_tolerance=self.fee_tolerance,
        )

    def acknowledge(self, notification: ParsedNotification) -> ProviderResponse:
        return ProviderResponse(200, "")

    async def check_status(self, payment_ref: str, *, timeout: float) -> StatusCheck:
        if not self.api_token:
            raise ConfigurationError("YooMoney status polling requires an API token")
        return await self._poll(self._fetch_operation, payment_ref, timeout)

    async def _fetch_operation(self, payment_ref: str, timeout: float) -> StatusCheck:
        response = await self.http.request(
            "POST", YOOMONEY_OPERATION_HISTORY_URL, timeout=timeout,
            data={"label": payment_ref, "type": "deposition", "records": "1"},
            headers={"Authorization": f"Bearer {self.api_token}"},
        )
        body = response.json()
        if "error" in body:
            return StatusCheck(PaymentOutcome.UNKNOWN, detail=str(body["error"]))
        operations = body.get("operations") or []
        if not operations:
            return StatusCheck(PaymentOutcome.PENDING, detail="no operation for label")
        operation = operations[0]
        # operation-history reports the credited amount, not what the payer was charged
        return StatusCheck(
            status=YOOMONEY_OPERATION_STATUSES.get(
                operation.get("status"), PaymentOutcome.UNKNOWN,
            ),
            provider_payment_id=operation.get("operation_id"),
            detail=operation.get("status"),
        )


# ─── Registry ────────────────────────────────────────────────────

class GatewayRegistry:
    """Static provider → gateway table."""

    def __init__(self, gateways: Mapping[PaymentProvider, PaymentGateway]):
        self._gateways = dict(gateways)

    def get(self, provider: str | PaymentProvider) -> PaymentGateway:
        try:
            key = PaymentProvider(provider)
        except ValueError:
            raise UnknownProviderError(str(provider))
        gateway = self._gateways.get(key)
        if gateway is None:
            raise UnknownProviderError(key.value)
        return gateway

    @property
    def providers(self) -> list[PaymentProvider]:
        return list(self._gateways)

    def __contains__(self, provider: object) -> bool:
        try:
            return PaymentProvider(provider) in self._gateways
        except ValueError:
            return False


def _robokassa_from_settings(settings: Settings, http: ProviderHttpClient) -> PaymentGateway:
    return RobokassaGateway(
        merchant_login=settings.robokassa_merchant_login,
        password1=settings.robokassa_password1,
        password2=settings.robokassa_password2,
        http=http,
        hash_algorithm=settings.robokassa_hash_algorithm,
        test_mode=settings.robokassa_test_mode,
        currency=settings.robokassa_currency,
    )


def _yoomoney_from_settings(settings: Settings, http: ProviderHttpClient) -> PaymentGateway:
    return YooMoneyGateway(
        receiver=settings.yoomoney_receiver,
        notification_secret=settings.yoomoney_notification_secret,
        http=http,
        api_token=settings.yoomoney_api_token,
        currency=settings.yoomoney_currency,
        max_fee_percent=settings.yoomoney_max_fee_percent,
    )


GATEWAY_FACTORIES: dict[
    PaymentProvider, Callable[[Settings, ProviderHttpClient], PaymentGateway]
] = {
    PaymentProvider.ROBOKASSA: _robokassa_from_settings,
    PaymentProvider.YOOMONEY: _yoomoney_from_settings,
}


def build_gateway_registry(
    settings: Settings, http: ProviderHttpClient,
) -> GatewayRegistry:
    """Register every provider whose credentials are present; log the ones skipped."""
    gateways: dict[PaymentProvider, PaymentGateway] = {}
    for provider, factory in GATEWAY_FACTORIES.items():
        try:
            gateways[provider] = factory(settings, http)
        except ConfigurationError as e:
            logger.info(
                f"Payment provider not registered: {e.message}",
                extra={"provider": provider.value},
            )
    return GatewayRegistry(gateways)
