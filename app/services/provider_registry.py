"""
Provider Registry - Builds the configured payment providers from settings.
"""

from collections.abc import Mapping
from datetime import timedelta

import httpx
from structlog import get_logger

from app.config import Settings
from app.exceptions import ProviderNotConfiguredError
from app.models.domain import Provider
from app.services.bill_gateway_provider import BillGatewayProvider, BillGatewayTokenSource
from app.services.card_rail_provider import CardRailProvider
from app.services.credential_cache import CredentialCache, TokenSource
from app.services.payment_provider import PaymentProvider
from app.services.provider_http import ProviderHttpClient
from app.services.txn_gateway_provider import TxnGatewayProvider

logger = get_logger(__name__)

WEBHOOK_PATH = "/v1/payments/webhooks/{provider}"


class ProviderRegistry:
    """Lookup of configured providers by Provider enum."""

    def __init__(
        self,
        providers: Mapping[Provider, PaymentProvider],
        credentials: CredentialCache,
    ) -> None:
        self._providers = dict(providers)
        self.credentials = credentials

    def get(self, provider: Provider) -> PaymentProvider:
        """
        Get a configured provider.

        Raises:
            ProviderNotConfiguredError: If the provider has no credentials configured
        """
        adapter = self._providers.get(provider)
        if adapter is None:
            raise ProviderNotConfiguredError(provider)
        return adapter

    def card_rail(self) -> CardRailProvider:
        """
        Get the card rail provider for card-specific operations.

        Raises:
            ProviderNotConfiguredError: If the card rail is not configured
        """
        adapter = self.get(Provider.CARD_RAIL)
        if not isinstance(adapter, CardRailProvider):
            raise ProviderNotConfiguredError(Provider.CARD_RAIL)
        return adapter

    @property
    def configured(self) -> list[Provider]:
        """Providers that can take payments, in declaration order."""
        return [provider for provider in Provider if provider in self._providers]


def build_registry(
    settings: Settings, client: httpx.AsyncClient | None = None
) -> ProviderRegistry:
    """
    Build providers for every provider with credentials in settings.

    Args:
        settings: Application settings
        client: Shared HTTP client for REST providers
    """
    timeout = settings.provider_request_timeout_seconds
    providers: dict[Provider, PaymentProvider] = {}
    sources: dict[Provider, TokenSource] = {}

    bill_http = ProviderHttpClient(
        Provider.BILL_GATEWAY, settings.bill_gateway_base_url, timeout, client
    )
    if settings.bill_gateway_api_key:
        sources[Provider.BILL_GATEWAY] = BillGatewayTokenSource(
            bill_http,
            settings.bill_gateway_api_key,
            settings.bill_gateway_token_lifetime_seconds,
        )

    credentials = CredentialCache(
        sources, safety_margin=timedelta(seconds=settings.credential_safety_margin_seconds)
    )

    if settings.card_rail_api_key:
        providers[Provider.CARD_RAIL] = CardRailProvider(
            api_key=settings.card_rail_api_key,
            webhook_secret=settings.card_rail_webhook_secret,
            allowed_currencies=settings.card_rail_allowed_currencies,
            request_timeout_seconds=timeout,
        )

    if settings.bill_gateway_api_key:
        providers[Provider.BILL_GATEWAY] = BillGatewayProvider(
            http=bill_http,
            credentials=credentials,
            api_key=settings.bill_gateway_api_key,
            category=settings.bill_gateway_category,
            webhook_secret=settings.bill_gateway_webhook_secret,
            callback_url=webhook_url(settings, Provider.BILL_GATEWAY),
            allowed_currencies=settings.bill_gateway_allowed_currencies,
        )

    if settings.txn_gateway_secret_key:
        providers[Provider.TXN_GATEWAY] = TxnGatewayProvider(
            http=ProviderHttpClient(
                Provider.TXN_GATEWAY, settings.txn_gateway_base_url, timeout, client
            ),
            secret_key=settings.txn_gateway_secret_key,
            allowed_currencies=settings.txn_gateway_allowed_currencies,
        )

    registry = ProviderRegistry(providers, credentials)
    logger.info("payment_providers_configured", providers=[p.value for p in registry.configured])
    return registry


def webhook_url(settings: Settings, provider: Provider) -> str:
    """Public URL a provider delivers webhooks to."""
    return settings.public_base_url.rstrip("/") + WEBHOOK_PATH.format(provider=provider.value)
