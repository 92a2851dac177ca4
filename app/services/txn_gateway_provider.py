"""
Transaction Gateway Provider Implementation (initialize / verify API).

Webhooks from this gateway carry no verifiable signature, so every claim is
corroborated with a server-side verify call before reconciliation.

NO DICTIONARIES - All data uses strongly typed models.
"""

import json
import secrets
from collections.abc import Mapping
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from urllib.parse import quote

import httpx
from structlog import get_logger

from app.exceptions import GatewayAuthError, GatewayError, InvalidSignatureError
from app.models.domain import (
    CreatedIntent,
    IntentRequest,
    IntentStatus,
    PaymentIntent,
    Provider,
    ProviderStatus,
    WebhookClaim,
)
from app.services.provider_http import ProviderHttpClient

logger = get_logger(__name__)

# Minor units we store per major unit, and subunits the gateway expects per
# major unit. Equal today for every allowed currency; kept explicit.
MINOR_UNITS_PER_MAJOR = 100
GATEWAY_SUBUNITS_PER_MAJOR = 100

_STATUS_MAP: dict[str, IntentStatus] = {
    "success": IntentStatus.SUCCEEDED,
    "failed": IntentStatus.FAILED,
    "reversed": IntentStatus.FAILED,
    "abandoned": IntentStatus.CANCELED,
}


# Webhook event types that imply a transaction status when data.status is absent
_EVENT_STATUS: dict[str, str] = {
    "charge.success": "success",
}


def to_gateway_subunits(amount_minor: int) -> int:
    """Convert stored minor units into the gateway's subunits."""
    major = Decimal(amount_minor) / MINOR_UNITS_PER_MAJOR
    return int((major * GATEWAY_SUBUNITS_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class TxnGatewayProvider:
    """
    Transaction gateway payment provider.

    Implements the PaymentProvider protocol with a static secret key.
    """

    provider = Provider.TXN_GATEWAY
    requires_corroboration = True

    def __init__(
        self,
        http: ProviderHttpClient,
        secret_key: str,
        allowed_currencies: frozenset[str],
    ) -> None:
        """
        Initialize transaction gateway provider.

        Args:
            http: HTTP client bound to the gateway base URL
            secret_key: Gateway secret key (server side only)
            allowed_currencies: Lower-case ISO 4217 codes accepted for intents
        """
        self._http = http
        self._secret_key = secret_key
        self.allowed_currencies = allowed_currencies

    def normalize_status(self, reported_status: str) -> IntentStatus:
        """Map a transaction status onto IntentStatus. Anything else is in progress."""
        return _STATUS_MAP.get(reported_status, IntentStatus.REQUIRES_ACTION)

    async def create_payment(self, request: IntentRequest) -> CreatedIntent:
        """
        Initialize a transaction and return its authorization URL.

        Raises:
            GatewayAuthError: If the secret key is rejected
            GatewayError: If the gateway rejects the transaction
        """
        reference = f"{request.order_ref}-{secrets.token_hex(6)}"

        logger.info(
            "initializing_txn_gateway_transaction",
            order_ref=request.order_ref,
            reference=reference,
            amount_minor=request.amount_minor,
        )

        payload: dict[str, Any] = {
            "email": request.customer.email,
            "amount": str(to_gateway_subunits(request.amount_minor)),
            "currency": request.currency.upper(),
            "reference": reference,
            "metadata": dict(request.metadata),
        }
        if request.return_url:
            payload["callback_url"] = request.return_url

        response = await self._http.request(
            "create_payment",
            "POST",
            "/transaction/initialize",
            json=payload,
            headers=self._headers(),
        )
        data = self._data("create_payment", response)

        authorization_url = data.get("authorization_url")
        if not authorization_url:
            raise GatewayError(self.provider, "initialize returned no authorization URL")

        logger.info(
            "txn_gateway_transaction_initialized",
            reference=data.get("reference", reference),
            order_ref=request.order_ref,
        )

        return CreatedIntent(
            intent=PaymentIntent(
                id=str(data.get("reference") or reference),
                provider=self.provider,
                order_ref=request.order_ref,
                amount_minor=request.amount_minor,
                currency=request.currency,
                status=IntentStatus.REQUIRES_ACTION,
                metadata=dict(request.metadata),
            ),
            client_secret=data.get("access_code"),
            redirect_url=str(authorization_url),
        )

    async def get_status(self, provider_ref: str) -> ProviderStatus:
        """
        Verify a transaction by reference.

        Raises:
            GatewayError: If the verify call fails
        """
        response = await self._http.request(
            "get_status",
            "GET",
            f"/transaction/verify/{quote(provider_ref, safe='')}",
            headers=self._headers(),
        )
        data = self._data("get_status", response)

        reported_status = str(data.get("status", ""))
        logger.info(
            "txn_gateway_status_retrieved",
            reference=provider_ref,
            status=reported_status,
        )

        return ProviderStatus(
            provider=self.provider,
            provider_payment_id=str(data.get("reference") or provider_ref),
            reported_status=reported_status,
            status=self.normalize_status(reported_status),
            raw_payload=response.content,
            metadata=_string_metadata(data.get("metadata")),
        )

    async def validate_webhook(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> WebhookClaim | None:
        """
        Parse a webhook. Only shape is checked here; ingestion corroborates.

        Raises:
            InvalidSignatureError: If the body is not a recognizable event
        """
        try:
            body = json.loads(payload)
        except ValueError as exc:
            raise InvalidSignatureError(self.provider, "body is not JSON") from exc
        if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
            raise InvalidSignatureError(self.provider, "missing event data")

        event_type = str(body.get("event", ""))
        if not event_type.startswith("charge."):
            logger.info("txn_gateway_webhook_not_payment_event", event_type=event_type)
            return None

        data = body["data"]
        reference = data.get("reference")
        if not reference:
            raise InvalidSignatureError(self.provider, "event has no transaction reference")

        reported_status = str(data.get("status") or _EVENT_STATUS.get(event_type, event_type))
        return WebhookClaim(
            provider=self.provider,
            provider_payment_id=str(reference),
            reported_status=reported_status,
            status=self.normalize_status(reported_status),
            event_type=event_type,
            metadata=_string_metadata(data.get("metadata")),
        )

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._secret_key}"}

    def _data(self, operation: str, response: httpx.Response) -> dict[str, Any]:
        """Unwrap the {"status": true, "data": {...}} envelope."""
        if response.status_code == 401:
            logger.error("txn_gateway_auth_failed", operation=operation)
            raise GatewayAuthError(self.provider, "secret key rejected")
        self._http.raise_for_status(operation, response)

        body = self._http.json_body(operation, response)
        data = body.get("data")
        if body.get("status") is not True or not isinstance(data, dict):
            raise GatewayError(
                self.provider,
                f"{operation} unsuccessful: {body.get('message', 'unknown error')}",
                status_code=response.status_code,
            )
        return data


def _string_metadata(raw: Any) -> dict[str, str]:
    """Metadata comes back as an object, a JSON string, or an empty string."""
    if isinstance(raw, str) and raw:
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    if not isinstance(raw, dict):
        return {}
    return {str(key): str(value) for key, value in raw.items() if value is not None}
