"""
Intent Normalizer - Validates payment requests once, before any provider call.

Amounts arrive in major units and leave as integer minor units; currencies are
lower-cased and checked against the provider allow-list. Adapters trust the
IntentRequest they receive.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from uuid import uuid4

from structlog import get_logger

from app.exceptions import ValidationError
from app.models.domain import (
    METADATA_ACTOR_ID,
    METADATA_ORDER_REF,
    METADATA_PURPOSE,
    CreatedIntent,
    IntentRequest,
    PaymentRequest,
)
from app.observability.metrics import metrics
from app.services.order_store import IntentStore
from app.services.payment_provider import PaymentProvider
from app.services.provider_registry import ProviderRegistry

logger = get_logger(__name__)

MINOR_UNIT_EXPONENT = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = 100
MAX_ORDER_REF_LENGTH = 128
# Ten billion major units; well inside the BIGINT amount columns
MAX_AMOUNT_MINOR = 10**12


def to_minor_units(amount: Decimal) -> int:
    """
    Convert a major-unit amount to integer minor units.

    Rounds half-up to two decimal places first, so 35.505 becomes 3551.

    Raises:
        ValidationError: If the amount is not finite, not positive after rounding,
            or above MAX_AMOUNT_MINOR
    """
    try:
        if not amount.is_finite():
            raise ValidationError("amount", f"must be a finite number, got {amount}")
        rounded = amount.quantize(MINOR_UNIT_EXPONENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValidationError("amount", f"cannot be represented: {amount}") from exc

    amount_minor = int(rounded * MINOR_UNITS_PER_MAJOR)
    if amount_minor <= 0:
        raise ValidationError("amount", f"must be positive, got {amount}")
    if amount_minor > MAX_AMOUNT_MINOR:
        raise ValidationError("amount", f"exceeds the maximum payable amount, got {amount}")
    return amount_minor


class IntentNormalizer:
    """Single entry point for creating payment intents."""

    def __init__(self, providers: ProviderRegistry, intents: IntentStore) -> None:
        self._providers = providers
        self._intents = intents

    def normalize(self, request: PaymentRequest, adapter: PaymentProvider) -> IntentRequest:
        """
        Validate a request for an adapter.

        Raises:
            ValidationError: On a bad order reference, amount or currency
        """
        order_ref = request.order_ref.strip()
        if not order_ref:
            raise ValidationError("order_ref", "cannot be empty")
        if len(order_ref) > MAX_ORDER_REF_LENGTH:
            raise ValidationError("order_ref", f"longer than {MAX_ORDER_REF_LENGTH} characters")

        amount_minor = to_minor_units(request.amount)

        currency = request.currency.strip().lower()
        if currency not in adapter.allowed_currencies:
            raise ValidationError(
                "currency",
                f"{currency!r} not accepted by {adapter.provider.value}; "
                f"allowed: {', '.join(sorted(adapter.allowed_currencies))}",
            )

        if not request.customer.email:
            raise ValidationError("customer.email", "cannot be empty")

        metadata = {METADATA_ORDER_REF: order_ref, METADATA_PURPOSE: request.purpose}
        if request.actor_id:
            metadata[METADATA_ACTOR_ID] = request.actor_id

        return IntentRequest(
            provider=adapter.provider,
            order_ref=order_ref,
            amount_minor=amount_minor,
            currency=currency,
            customer=request.customer,
            description=request.description or f"Order {order_ref}",
            metadata=metadata,
            idempotency_key=f"{adapter.provider.value}-{order_ref}-{uuid4().hex}",
            payment_method=request.payment_method,
            return_url=request.return_url,
        )

    async def create_intent(self, request: PaymentRequest) -> CreatedIntent:
        """
        Validate, create the intent with the provider, and record it.

        Raises:
            ProviderNotConfiguredError: If the provider is not configured
            ValidationError: Before any network call, on invalid input
            CredentialError: If provider credentials cannot be obtained
            GatewayError: If the provider rejects the request
        """
        adapter = self._providers.get(request.provider)
        intent_request = self.normalize(request, adapter)

        logger.info(
            "creating_payment_intent",
            provider=adapter.provider.value,
            order_ref=intent_request.order_ref,
            amount_minor=intent_request.amount_minor,
            currency=intent_request.currency,
        )

        created = await adapter.create_payment(intent_request)
        await self._intents.record_intent(created.intent, intent_request.idempotency_key)
        metrics.record_intent_created(adapter.provider.value, intent_request.amount_minor)

        logger.info(
            "payment_intent_created",
            provider=adapter.provider.value,
            provider_payment_id=created.intent.id,
            order_ref=intent_request.order_ref,
            status=created.intent.status.value,
        )
        return created

