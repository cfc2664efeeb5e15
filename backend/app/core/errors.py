"""Error Hierarchy — typed, categorized exceptions for all billing failure modes.

Invariants:
    - Every error has a code (str), category (ErrorCategory), severity (ErrorSeverity)
    - Configuration errors are fatal and never retried
    - Authenticity errors never mutate the associated order
    - State errors carry the current status so the caller can self-correct
    - Transient errors are retryable and never converted into a terminal order status
    - No internal details leaked in user-facing messages

Design Decisions:
    - Single hierarchy with BillingError base: FastAPI global handler catches all (ADR: uniform error shape)
    - ErrorContext as dataclass: rich observability without coupling to logging framework
    - Family base classes (ValidationError, StateError, ...) so callers can branch on
      the family without enumerating every leaf
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from datetime import datetime, timezone


class ErrorSeverity(str, Enum):
    """Error severity for observability and client handling."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """High-level error categories for routing and handling."""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    AUTHENTICITY = "authenticity"
    STATE = "state"
    RESOURCE_NOT_FOUND = "resource_not_found"
    AUTHORIZATION = "authorization"
    DATABASE = "database"
    EXTERNAL_API = "external_api"
    TIMEOUT = "timeout"


@dataclass
class ErrorContext:
    """Rich context for error observability and debugging."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    order_id: int | None = None
    subscription_id: str | None = None
    provider: str | None = None
    current_status: str | None = None
    reason: str | None = None
    user_message: str | None = None
    debug_info: dict[str, Any] | None = None
    retry_after_ms: int | None = None


class BillingError(Exception):
    """Base exception for all billing errors."""

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: ErrorContext | None = None,
        http_status: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.http_status = http_status

    def to_response(self) -> dict:
        """Convert to standardized REST error response."""
        return {
            "error": {
                "code": self.code,
                "message": self.context.user_message or self.message,
                "category": self.category.value,
                "severity": self.severity.value,
                "timestamp": self.context.timestamp.isoformat(),
                "context": {
                    "order_id": self.context.order_id,
                    "subscription_id": self.context.subscription_id,
                    "provider": self.context.provider,
                    "current_status": self.context.current_status,
                    "reason": self.context.reason,
                    "retry_after_ms": self.context.retry_after_ms,
                },
            }
        }


# ─── Configuration Errors (fatal) ───────────────────────────────

class ConfigurationError(BillingError):
    """Missing credentials or unknown provider — surfaced immediately, never retried."""
    def __init__(self, message: str, context: ErrorContext | None = None):
        super().__init__(
            message, "CONFIGURATION_ERROR", ErrorCategory.CONFIGURATION,
            ErrorSeverity.CRITICAL, context, 500,
        )


class UnknownProviderError(ConfigurationError):
    """Provider identifier has no registered gateway."""
    def __init__(self, provider: str, context: ErrorContext | None = None):
        ctx = context or ErrorContext()
        ctx.provider = provider
        super().__init__(
            f"Payment provider '{provider}' is not configured", ctx,
        )
        self.code = "UNKNOWN_PROVIDER"
        self.provider = provider


# ─── Validation Errors (400-level) ──────────────────────────────

class ValidationError(BillingError):
    """Caller-supplied data is malformed or inconsistent."""
    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        context: ErrorContext | None = None,
        http_status: int = 400,
    ):
        super().__init__(
            message, code, ErrorCategory.VALIDATION,
            ErrorSeverity.ERROR, context, http_status,
        )


class MalformedFieldSetError(ValidationError):
    """A field required by a signature scheme is missing — caller error, not a bad signature."""
    def __init__(self, scheme: str, missing: list[str], context: ErrorContext | None = None):
        super().__init__(
            f"Signature scheme '{scheme}' is missing fields: {', '.join(missing)}",
            "MALFORMED_SIGNATURE_FIELDS", context,
        )
        self.scheme = scheme
        self.missing = missing


class NotificationFieldsError(ValidationError):
    """Inbound provider notification lacks required fields or has unparsable values."""
    def __init__(self, provider: str, message: str, context: ErrorContext | None = None):
        ctx = context or ErrorContext()
        ctx.provider = provider
        super().__init__(message, "MALFORMED_NOTIFICATION", ctx)


class PaymentRequestError(ValidationError):
    """Redirect request cannot be built from the given order data."""
    def __init__(self, message: str, context: ErrorContext | None = None):
        super().__init__(message, "INVALID_PAYMENT_REQUEST", context)


class AmountMismatchError(ValidationError):
    """Notification amount/currency disagrees with the order's recorded total."""
    def __init__(
        self,
        order_id: int,
        expected: str,
        received: str,
        context: ErrorContext | None = None,
    ):
        ctx = context or ErrorContext()
        ctx.order_id = order_id
        super().__init__(
            f"Amount mismatch for order {order_id}: expected {expected}, received {received}",
            "AMOUNT_MISMATCH", ctx,
        )
        self.expected = expected
        self.received = received


class ResourceNotFoundError(ValidationError):
    """Requested resource does not exist."""
    def __init__(
        self, resource_type: str, resource_id: str, context: ErrorContext | None = None,
    ):
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            "RESOURCE_NOT_FOUND", context, 404,
        )
        self.category = ErrorCategory.RESOURCE_NOT_FOUND


# ─── Authenticity Errors (security-relevant) ────────────────────

class AuthenticityError(BillingError):
    """Signature verification failed — the associated order is not mutated."""
    def __init__(
        self,
        message: str,
        code: str = "SIGNATURE_INVALID",
        context: ErrorContext | None = None,
    ):
        super().__init__(
            message, code, ErrorCategory.AUTHENTICITY,
            ErrorSeverity.WARNING, context, 400,
        )


class PaymentIdConflictError(AuthenticityError):
    """A second, different provider payment id was reported for an already-settled order."""
    def __init__(
        self,
        order_id: int,
        stored_payment_id: str | None,
        received_payment_id: str | None,
        context: ErrorContext | None = None,
    ):
        ctx = context or ErrorContext()
        ctx.order_id = order_id
        super().__init__(
            f"Order {order_id} already settled with a different provider payment id",
            "PAYMENT_ID_CONFLICT", ctx,
        )
        self.stored_payment_id = stored_payment_id
        self.received_payment_id = received_payment_id


# ─── State Errors (409) ─────────────────────────────────────────

class StateError(BillingError):
    """Operation is illegal for the entity's current status."""
    def __init__(
        self,
        message: str,
        current_status: str,
        code: str = "INVALID_STATE",
        context: ErrorContext | None = None,
    ):
        ctx = context or ErrorContext()
        ctx.current_status = current_status
        super().__init__(
            message, code, ErrorCategory.STATE,
            ErrorSeverity.ERROR, ctx, 409,
        )
        self.current_status = current_status


class InvalidTransitionError(StateError):
    """Order transition not present in the transition table."""
    def __init__(self, current_status: str, event: str, context: ErrorContext | None = None):
        super().__init__(
            f"Cannot apply '{event}' to an order in status '{current_status}'",
            current_status, "INVALID_TRANSITION", context,
        )
        self.event = event


class InvalidStateError(StateError):
    """Subscription operation requested from the wrong starting status."""
    def __init__(self, current_status: str, operation: str, context: ErrorContext | None = None):
        super().__init__(
            f"Invalid state for this operation: cannot {operation} a subscription "
            f"in status '{current_status}'",
            current_status, "INVALID_STATE", context,
        )
        self.operation = operation


# ─── Authorization Errors (403) ─────────────────────────────────

class ForbiddenError(BillingError):
    """Requesting user neither owns the resource nor holds an admin capability."""
    def __init__(self, message: str = "Not allowed", context: ErrorContext | None = None):
        super().__init__(
            message, "FORBIDDEN", ErrorCategory.AUTHORIZATION,
            ErrorSeverity.WARNING, context, 403,
        )


# ─── Transient Errors (503, retryable) ──────────────────────────

class TransientError(BillingError):
    """Provider or store temporarily unavailable — caller may retry with backoff."""
    def __init__(
        self,
        message: str,
        code: str = "TRANSIENT_ERROR",
        category: ErrorCategory = ErrorCategory.EXTERNAL_API,
        retry_after_ms: int | None = None,
        context: ErrorContext | None = None,
    ):
        ctx = context or ErrorContext()
        ctx.retry_after_ms = retry_after_ms
        super().__init__(
            message, code, category,
            ErrorSeverity.CRITICAL, ctx, 503,
        )


class DatabaseError(TransientError):
    """Database operation failed."""
    def __init__(self, message: str, operation: str, context: ErrorContext | None = None):
        super().__init__(
            f"Database {operation} failed: {message}",
            "DATABASE_ERROR", ErrorCategory.DATABASE, context=context,
        )
        self.operation = operation
