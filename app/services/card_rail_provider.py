"""
Card Rail Provider Implementation (Stripe PaymentIntents).

NO DICTIONARIES - All data uses strongly typed models.
"""

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import stripe
from structlog import get_logger

from app.exceptions import (
    GatewayAuthError,
    GatewayError,
    InvalidSignatureError,
    InvalidStateError,
)
from app.models.domain import (
    CreatedIntent,
    IntentRequest,
    IntentStatus,
    PaymentIntent,
    Provider,
    ProviderStatus,
    WebhookClaim,
)
from app.observability.metrics import track_provider_call

logger = get_logger(__name__)

T = TypeVar("T")

SIGNATURE_HEADER = "stripe-signature"

# payment_intent.payment_failed leaves the intent in requires_payment_method;
# the webhook adapter reports it under this pseudo-status instead.
PAYMENT_FAILED_STATUS = "payment_failed"

_STATUS_MAP: dict[str, IntentStatus] = {
    "succeeded": IntentStatus.SUCCEEDED,
    "canceled": IntentStatus.CANCELED,
    PAYMENT_FAILED_STATUS: IntentStatus.FAILED,
    "requires_payment_method": IntentStatus.CREATED,
    "requires_confirmation": IntentStatus.REQUIRES_ACTION,
    "requires_action": IntentStatus.REQUIRES_ACTION,
    "processing": IntentStatus.REQUIRES_ACTION,
    "requires_capture": IntentStatus.REQUIRES_ACTION,
}


@dataclass(frozen=True)
class PaymentMethodUpdate:
    """Result of rebinding a payment intent to another instrument."""

    payment_id: str
    client_secret: str
    status: IntentStatus
    reported_status: str


class CardRailProvider:
    """
    Card rail payment provider backed by Stripe.

    Implements the PaymentProvider protocol. The client confirms the payment
    with the returned client secret; the secret API key never leaves the server.
    """

    provider = Provider.CARD_RAIL
    requires_corroboration = False

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        allowed_currencies: frozenset[str],
        request_timeout_seconds: float,
    ) -> None:
        """
        Initialize card rail provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            allowed_currencies: Lower-case ISO 4217 codes accepted for intents
            request_timeout_seconds: Upper bound for each Stripe API call
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.allowed_currencies = allowed_currencies
        self.request_timeout_seconds = request_timeout_seconds

    def normalize_status(self, reported_status: str) -> IntentStatus:
        """Map a Stripe PaymentIntent status onto IntentStatus."""
        return _STATUS_MAP.get(reported_status, IntentStatus.REQUIRES_ACTION)

    async def create_payment(self, request: IntentRequest) -> CreatedIntent:
        """
        Create a Stripe PaymentIntent.

        Raises:
            GatewayError: If Stripe API call fails
        """
        logger.info(
            "creating_card_rail_payment_intent",
            order_ref=request.order_ref,
            amount_minor=request.amount_minor,
            currency=request.currency,
        )

        params: dict[str, Any] = {
            "amount": request.amount_minor,
            "currency": request.currency,
            "description": request.description,
            "metadata": dict(request.metadata),
            "idempotency_key": request.idempotency_key,
        }
        if request.customer.email:
            params["receipt_email"] = request.customer.email
        if request.payment_method:
            params["payment_method_types"] = [request.payment_method]
        else:
            params["automatic_payment_methods"] = {"enabled": True}

        payment_intent = await self._call("create_payment", stripe.PaymentIntent.create, **params)

        logger.info(
            "card_rail_payment_intent_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )

        status = (
            IntentStatus.CREATED
            if payment_intent.status == "requires_payment_method"
            else IntentStatus.REQUIRES_ACTION
        )
        return CreatedIntent(
            intent=PaymentIntent(
                id=payment_intent.id,
                provider=self.provider,
                order_ref=request.order_ref,
                amount_minor=payment_intent.amount,
                currency=payment_intent.currency.lower(),
                status=status,
                metadata=dict(request.metadata),
            ),
            client_secret=payment_intent.client_secret or "",
        )

    async def get_status(self, provider_ref: str) -> ProviderStatus:
        """
        Get current status of a payment intent from Stripe.

        Raises:
            GatewayError: If Stripe API call fails
        """
        payment_intent = await self._call(
            "get_status", stripe.PaymentIntent.retrieve, provider_ref
        )

        logger.info(
            "card_rail_payment_status_retrieved",
            payment_intent_id=provider_ref,
            status=payment_intent.status,
        )

        return ProviderStatus(
            provider=self.provider,
            provider_payment_id=payment_intent.id,
            reported_status=payment_intent.status,
            status=self.normalize_status(payment_intent.status),
            raw_payload=str(payment_intent).encode("utf-8"),
            metadata=_string_metadata(payment_intent.get("metadata")),
        )

    async def validate_webhook(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> WebhookClaim | None:
        """
        Verify and parse a Stripe webhook event.

        Raises:
            InvalidSignatureError: If signature verification fails
        """
        signature = headers.get(SIGNATURE_HEADER, "")
        if not self.webhook_secret:
            raise InvalidSignatureError(self.provider, "webhook secret not configured")
        if not signature:
            raise InvalidSignatureError(self.provider, "missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignatureError(self.provider, "signature mismatch") from exc
        except ValueError as exc:
            raise InvalidSignatureError(self.provider, f"unparseable payload: {exc}") from exc

        payment_intent = event.data.object
        if payment_intent.get("object") != "payment_intent":
            logger.info(
                "card_rail_webhook_not_payment_event",
                event_id=event.id,
                event_type=event.type,
            )
            return None

        if event.type == "payment_intent.payment_failed":
            reported_status = PAYMENT_FAILED_STATUS
        else:
            reported_status = payment_intent.get("status", "")

        return WebhookClaim(
            provider=self.provider,
            provider_payment_id=payment_intent["id"],
            reported_status=reported_status,
            status=self.normalize_status(reported_status),
            event_type=event.type,
            metadata=_string_metadata(payment_intent.get("metadata")),
        )

    async def update_payment_method(
        self,
        payment_id: str,
        payment_method_id: str | None = None,
        fpx_bank: str | None = None,
    ) -> PaymentMethodUpdate:
        """
        Rebind a payment intent to a different instrument or FPX bank.

        Raises:
            InvalidStateError: If the payment is already terminal
            GatewayError: If Stripe API call fails
        """
        current = await self._call("get_status", stripe.PaymentIntent.retrieve, payment_id)
        if self.normalize_status(current.status).is_terminal:
            logger.warning(
                "card_rail_update_on_terminal_payment",
                payment_intent_id=payment_id,
                status=current.status,
            )
            raise InvalidStateError(payment_id, current.status)

        params: dict[str, Any] = {}
        if payment_method_id:
            params["payment_method"] = payment_method_id
        if fpx_bank:
            params["payment_method_options"] = {"fpx": {"bank": fpx_bank}}

        updated = await self._call(
            "update_payment_method", stripe.PaymentIntent.modify, payment_id, **params
        )

        logger.info(
            "card_rail_payment_method_updated",
            payment_intent_id=payment_id,
            status=updated.status,
            fpx_bank=fpx_bank,
        )

        return PaymentMethodUpdate(
            payment_id=updated.id,
            client_secret=updated.client_secret or "",
            status=self.normalize_status(updated.status),
            reported_status=updated.status,
        )

    async def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking Stripe SDK call off the event loop with a timeout."""
        with track_provider_call(self.provider.value, operation):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs),
                    timeout=self.request_timeout_seconds,
                )
            except TimeoutError as exc:
                logger.error("card_rail_call_timeout", operation=operation)
                raise GatewayError(self.provider, f"{operation} timed out") from exc
            except stripe.AuthenticationError as exc:
                logger.error("card_rail_auth_failed", operation=operation, error=str(exc))
                raise GatewayAuthError(self.provider, "API key rejected") from exc
            except stripe.StripeError as exc:
                logger.error(
                    "card_rail_call_failed",
                    operation=operation,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise GatewayError(
                    self.provider,
                    exc.user_message or str(exc),
                    status_code=exc.http_status,
                ) from exc


def _string_metadata(raw: Any) -> dict[str, str]:
    """Copy provider metadata into a plain str->str mapping."""
    if not raw:
        return {}
    return {str(key): str(value) for key, value in dict(raw).items()}
