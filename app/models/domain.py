"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
Provider metadata is the one exception: it is opaque pass-through data.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum


class Provider(str, Enum):
    """Payment providers integrated into the checkout."""

    CARD_RAIL = "card_rail"
    BILL_GATEWAY = "bill_gateway"
    TXN_GATEWAY = "txn_gateway"


class IntentStatus(str, Enum):
    """Normalized payment intent status."""

    CREATED = "created"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        """Terminal statuses need a new intent to change."""
        return self in (IntentStatus.SUCCEEDED, IntentStatus.FAILED, IntentStatus.CANCELED)


class EventChannel(str, Enum):
    """Channel a payment event arrived through."""

    WEBHOOK = "webhook"
    POLL = "poll"
    CLIENT_REDIRECT = "client_redirect"


class OrderStatus(str, Enum):
    """Order lifecycle status as seen by the payment core."""

    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELLED = "payment_cancelled"
    FULFILLING = "fulfilling"
    SHIPPED = "shipped"
    DELIVERED = "delivered"

    @property
    def is_paid(self) -> bool:
        """Paid, or already past payment in the fulfilment pipeline."""
        return self in (
            OrderStatus.PAID,
            OrderStatus.FULFILLING,
            OrderStatus.SHIPPED,
            OrderStatus.DELIVERED,
        )

    @property
    def is_payment_failure(self) -> bool:
        """Payment attempt ended without funds."""
        return self in (OrderStatus.PAYMENT_FAILED, OrderStatus.PAYMENT_CANCELLED)


class ReconciliationAction(str, Enum):
    """What the reconciliation engine did with an event."""

    APPLIED = "applied"
    NO_OP = "no_op"


class ApplyStatus(str, Enum):
    """Result of an order store write."""

    COMMITTED = "committed"
    CONFLICT = "conflict"


# Metadata keys echoed back by every provider
METADATA_ORDER_REF = "order_ref"
METADATA_ACTOR_ID = "actor_id"
METADATA_PURPOSE = "purpose"


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class CustomerContact:
    """Customer contact details forwarded to providers."""

    email: str
    name: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class PaymentRequest:
    """
    Domain-level request to pay for an order.

    Amount is in major units (e.g. 35.50) and is converted to minor units
    by the intent normalizer before any provider sees it.
    """

    provider: Provider
    order_ref: str
    amount: Decimal
    currency: str
    customer: CustomerContact
    description: str = ""
    actor_id: str | None = None
    purpose: str = "order"
    payment_method: str | None = None  # e.g. "card", "fpx", "grabpay"
    return_url: str | None = None


@dataclass(frozen=True)
class IntentRequest:
    """Validated, provider-ready request produced by the intent normalizer."""

    provider: Provider
    order_ref: str
    amount_minor: int
    currency: str
    customer: CustomerContact
    description: str
    metadata: Mapping[str, str]
    idempotency_key: str
    payment_method: str | None = None
    return_url: str | None = None


@dataclass(frozen=True)
class PaymentIntent:
    """Normalized representation of a requested payment."""

    id: str
    provider: Provider
    order_ref: str
    amount_minor: int
    currency: str
    status: IntentStatus
    metadata: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate intent constraints."""
        if self.amount_minor <= 0:
            raise ValueError(f"Intent amount must be positive: {self.amount_minor}")
        if not self.order_ref:
            raise ValueError("order_ref cannot be empty")
        if len(self.currency) != 3 or self.currency != self.currency.lower():
            raise ValueError(f"Invalid currency code: {self.currency}")


@dataclass(frozen=True)
class CreatedIntent:
    """Intent plus whatever the client needs to complete the payment."""

    intent: PaymentIntent
    client_secret: str | None = None
    redirect_url: str | None = None


@dataclass(frozen=True)
class ProviderStatus:
    """Provider-reported status of a single payment."""

    provider: Provider
    provider_payment_id: str
    reported_status: str
    status: IntentStatus
    raw_payload: bytes = b""
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookClaim:
    """Parsed webhook payload after the provider's validation step."""

    provider: Provider
    provider_payment_id: str
    reported_status: str
    status: IntentStatus
    event_type: str
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentEvent:
    """Normalized notification from a provider. Consumed once by reconciliation."""

    provider: Provider
    provider_payment_id: str
    reported_status: str
    raw_payload: bytes
    received_via: EventChannel
    received_at: datetime = field(default_factory=utc_now)
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def order_ref_hint(self) -> str | None:
        """Order reference echoed back through provider metadata."""
        value = self.metadata.get(METADATA_ORDER_REF)
        return value or None


@dataclass(frozen=True)
class CredentialToken:
    """Provider authentication token with its computed expiry."""

    value: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        """Token is usable strictly before its expiry."""
        return now < self.expires_at


@dataclass(frozen=True)
class OrderSnapshot:
    """Current payment-relevant state of an order."""

    order_ref: str
    status: OrderStatus
    payment_id: str | None
    paid_at: datetime | None
    amount_minor: int | None = None
    currency: str | None = None


@dataclass(frozen=True)
class PaymentOutcome:
    """Order transition decided by the reconciliation engine."""

    order_ref: str
    new_status: OrderStatus
    expected_status: OrderStatus
    provider: Provider
    provider_payment_id: str
    intent_status: IntentStatus
    paid_at: datetime | None = None


@dataclass(frozen=True)
class PaymentRecordEffect:
    """Side effect: persist the confirmed payment against the order."""

    order_ref: str
    provider: Provider
    provider_payment_id: str
    amount_minor: int
    currency: str


@dataclass(frozen=True)
class CommissionEffect:
    """Side effect: create the commission owed on a confirmed payment."""

    order_ref: str
    provider_payment_id: str
    amount_minor: int
    currency: str
    rate_bps: int


SideEffect = PaymentRecordEffect | CommissionEffect


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of applying one payment event."""

    action: ReconciliationAction
    order_ref: str | None
    order_status: OrderStatus | None
    conflict: bool = False
    reason: str | None = None
