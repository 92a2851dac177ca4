"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from collections.abc import Mapping
from typing import Protocol

from app.models.domain import (
    CreatedIntent,
    IntentRequest,
    IntentStatus,
    Provider,
    ProviderStatus,
    WebhookClaim,
)


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Every provider (card rail, bill gateway, transaction gateway) implements this
    interface. Call sites depend only on it, never on a concrete provider.
    """

    provider: Provider
    allowed_currencies: frozenset[str]
    requires_corroboration: bool

    async def create_payment(self, request: IntentRequest) -> CreatedIntent:
        """
        Create a payment with the provider.

        Args:
            request: Validated intent request (amount already in minor units)

        Returns:
            Created intent with the client secret or redirect URL

        Raises:
            GatewayError: If the provider rejects the request
            CredentialError: If provider credentials cannot be obtained
        """
        ...

    async def get_status(self, provider_ref: str) -> ProviderStatus:
        """
        Fetch the current status of a payment.

        Args:
            provider_ref: Provider-side payment reference

        Raises:
            GatewayError: If the provider cannot be queried
        """
        ...

    async def validate_webhook(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> WebhookClaim | None:
        """
        Validate and parse an inbound webhook.

        Args:
            payload: Raw request body, exactly as received
            headers: Request headers (case-insensitive mapping)

        Returns:
            Parsed claim, or None for authentic events that carry no payment status

        Raises:
            InvalidSignatureError: If the payload cannot be trusted
        """
        ...

    def normalize_status(self, reported_status: str) -> IntentStatus:
        """Map a provider-native status string onto IntentStatus."""
        ...
