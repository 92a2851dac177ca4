"""
Webhook Ingestion - RECEIVED -> VALIDATING -> {ACCEPTED, REJECTED}.

Rejection is a security boundary: a rejected webhook never reaches the
reconciliation engine. Once accepted, the provider always gets a 200, even when
reconciliation turns out to be a no-op.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from structlog import get_logger

from app.exceptions import InvalidSignatureError
from app.models.domain import (
    EventChannel,
    IntentStatus,
    PaymentEvent,
    Provider,
    ReconciliationResult,
    WebhookClaim,
)
from app.observability.metrics import metrics
from app.services.payment_provider import PaymentProvider
from app.services.provider_registry import ProviderRegistry
from app.services.reconciliation import ReconciliationEngine

logger = get_logger(__name__)


class WebhookState(str, Enum):
    """Lifecycle of one inbound webhook request."""

    RECEIVED = "received"
    VALIDATING = "validating"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class WebhookOutcome:
    """Final state of an inbound webhook."""

    state: WebhookState
    reconciliation: ReconciliationResult | None = None
    reason: str | None = None


class WebhookIngestion:
    """Validates inbound webhooks and forwards accepted ones to reconciliation."""

    def __init__(self, providers: ProviderRegistry, engine: ReconciliationEngine) -> None:
        self._providers = providers
        self._engine = engine

    async def ingest(
        self, provider: Provider, raw_body: bytes, headers: Mapping[str, str]
    ) -> WebhookOutcome:
        """
        Process one webhook delivery.

        Args:
            provider: Provider the endpoint belongs to
            raw_body: Request body bytes exactly as received
            headers: Request headers

        Raises:
            ProviderNotConfiguredError: If the provider is not configured
            GatewayError: If corroboration could not reach the provider
        """
        adapter = self._providers.get(provider)
        lowered = {key.lower(): value for key, value in headers.items()}
        logger.info(
            "webhook_received",
            provider=provider.value,
            state=WebhookState.RECEIVED.value,
            body_bytes=len(raw_body),
        )

        logger.debug(
            "webhook_validating", provider=provider.value, state=WebhookState.VALIDATING.value
        )

        try:
            claim = await adapter.validate_webhook(raw_body, lowered)
            if claim is not None and adapter.requires_corroboration:
                claim = await self._corroborate(adapter, claim)
        except InvalidSignatureError as exc:
            logger.warning(
                "webhook_rejected",
                provider=provider.value,
                reason=exc.message,
                security_event=True,
            )
            metrics.record_webhook(provider.value, WebhookState.REJECTED.value)
            return WebhookOutcome(state=WebhookState.REJECTED, reason=exc.message)

        if claim is None:
            logger.info("webhook_ignored", provider=provider.value)
            metrics.record_webhook(provider.value, WebhookState.ACCEPTED.value)
            return WebhookOutcome(state=WebhookState.ACCEPTED, reason="not_a_payment_event")

        event = PaymentEvent(
            provider=provider,
            provider_payment_id=claim.provider_payment_id,
            reported_status=claim.reported_status,
            raw_payload=raw_body,
            received_via=EventChannel.WEBHOOK,
            metadata=claim.metadata,
        )
        result = await self._engine.apply(event)

        logger.info(
            "webhook_accepted",
            provider=provider.value,
            event_type=claim.event_type,
            provider_payment_id=claim.provider_payment_id,
            reconciliation=result.action.value,
        )
        metrics.record_webhook(provider.value, WebhookState.ACCEPTED.value)
        return WebhookOutcome(state=WebhookState.ACCEPTED, reconciliation=result)

    async def _corroborate(self, adapter: PaymentProvider, claim: WebhookClaim) -> WebhookClaim:
        """
        Replace an unsigned claim with what the provider reports server-side.

        Raises:
            InvalidSignatureError: If the provider does not confirm a terminal outcome
                matching the claim
            GatewayError: If the provider cannot be reached
        """
        status = await adapter.get_status(claim.provider_payment_id)

        if not status.status.is_terminal or _succeeded(status.status) != _succeeded(claim.status):
            raise InvalidSignatureError(
                adapter.provider,
                f"claimed {claim.reported_status} but provider reports {status.reported_status}",
            )

        logger.info(
            "webhook_corroborated",
            provider=adapter.provider.value,
            provider_payment_id=claim.provider_payment_id,
            status=status.reported_status,
        )

        metadata = dict(claim.metadata)
        metadata.update(status.metadata)
        return WebhookClaim(
            provider=claim.provider,
            provider_payment_id=status.provider_payment_id,
            reported_status=status.reported_status,
            status=status.status,
            event_type=claim.event_type,
            metadata=metadata,
        )


def _succeeded(status: IntentStatus) -> bool:
    return status == IntentStatus.SUCCEEDED
