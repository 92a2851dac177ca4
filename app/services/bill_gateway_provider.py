"""
Bill Gateway Provider Implementation (hosted bill pages, token auth).

Payments are created as bills; the customer pays on the gateway's hosted
page and is redirected back. Bill statuses are numeric strings:
"1" paid, "2" pending, "3" failed, "4" cancelled.

NO DICTIONARIES - All data uses strongly typed models.
"""

import hashlib
import hmac
import json
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

import httpx
from structlog import get_logger

from app.exceptions import (
    CredentialError,
    GatewayAuthError,
    GatewayError,
    InvalidSignatureError,
)
from app.models.domain import (
    METADATA_ORDER_REF,
    CreatedIntent,
    CredentialToken,
    IntentRequest,
    IntentStatus,
    PaymentIntent,
    Provider,
    ProviderStatus,
    WebhookClaim,
)
from app.services.credential_cache import CredentialCache, IssuedToken
from app.services.provider_http import ProviderHttpClient

logger = get_logger(__name__)

SIGNATURE_HEADER = "x-bizapay-signature"
AUTH_HEADER = "Authentication"

_STATUS_MAP: dict[str, IntentStatus] = {
    "1": IntentStatus.SUCCEEDED,
    "2": IntentStatus.REQUIRES_ACTION,
    "3": IntentStatus.FAILED,
    "4": IntentStatus.CANCELED,
}


def format_major_amount(amount_minor: int) -> str:
    """Bills are priced in major units with two decimals."""
    return str((Decimal(amount_minor) / 100).quantize(Decimal("0.01")))


class BillGatewayTokenSource:
    """Obtains bearer tokens from the gateway's token endpoint."""

    def __init__(self, http: ProviderHttpClient, api_key: str, token_lifetime_seconds: int) -> None:
        self._http = http
        self._api_key = api_key
        self._token_lifetime_seconds = token_lifetime_seconds

    async def fetch_token(self) -> IssuedToken:
        """
        Request a new token.

        Raises:
            CredentialError: If the API key is missing or the request is rejected
        """
        if not self._api_key:
            raise CredentialError(Provider.BILL_GATEWAY, "API key not configured")

        try:
            response = await self._http.request(
                "fetch_token", "POST", "/api/v3/token", data={"apiKey": self._api_key}
            )
        except GatewayError as exc:
            raise CredentialError(Provider.BILL_GATEWAY, exc.message) from exc

        if response.status_code >= 400:
            raise CredentialError(
                Provider.BILL_GATEWAY, f"token endpoint returned HTTP {response.status_code}"
            )

        try:
            body = self._http.json_body("fetch_token", response)
        except GatewayError as exc:
            raise CredentialError(Provider.BILL_GATEWAY, exc.message) from exc

        token = body.get("token")
        if body.get("status") != "ok" or not token:
            raise CredentialError(
                Provider.BILL_GATEWAY, f"token rejected: {body.get('msg', 'unknown error')}"
            )

        return IssuedToken(value=str(token), lifetime_seconds=self._token_lifetime_seconds)


class BillGatewayProvider:
    """
    Bill gateway payment provider.

    Implements the PaymentProvider protocol. Every authenticated call goes
    through the credential cache; a 401 invalidates the token and the call is
    retried exactly once with a fresh one.
    """

    provider = Provider.BILL_GATEWAY
    requires_corroboration = False

    def __init__(
        self,
        http: ProviderHttpClient,
        credentials: CredentialCache,
        api_key: str,
        category: str,
        webhook_secret: str,
        callback_url: str,
        allowed_currencies: frozenset[str],
    ) -> None:
        """
        Initialize bill gateway provider.

        Args:
            http: HTTP client bound to the gateway base URL
            credentials: Shared credential cache
            api_key: Merchant API key
            category: Merchant bill category code
            webhook_secret: Shared secret for callback signatures
            callback_url: Public URL the gateway posts status callbacks to
            allowed_currencies: Lower-case ISO 4217 codes accepted for intents
        """
        self._http = http
        self._credentials = credentials
        self._api_key = api_key
        self._category = category
        self._webhook_secret = webhook_secret
        self._callback_url = callback_url
        self.allowed_currencies = allowed_currencies

    def normalize_status(self, reported_status: str) -> IntentStatus:
        """Map a bill status code onto IntentStatus. Unknown codes stay pending."""
        return _STATUS_MAP.get(reported_status, IntentStatus.REQUIRES_ACTION)

    async def create_payment(self, request: IntentRequest) -> CreatedIntent:
        """
        Create a bill and return its hosted payment page.

        Raises:
            CredentialError: If no token can be obtained
            GatewayAuthError: If the refreshed token is rejected again
            GatewayError: If the gateway rejects the bill
        """
        logger.info(
            "creating_bill_gateway_bill",
            order_ref=request.order_ref,
            amount_minor=request.amount_minor,
        )

        form = {
            "apiKey": self._api_key,
            "category": self._category,
            "name": request.description or f"Order {request.order_ref}",
            "amount": format_major_amount(request.amount_minor),
            "payer_name": request.customer.name or request.customer.email,
            "payer_email": request.customer.email,
            "payer_phone": request.customer.phone or "",
            "callback_url": self._callback_url,
            "ext_reference": request.order_ref,
        }
        if request.return_url:
            form["webreturn_url"] = request.return_url

        response = await self._authorized_post("create_payment", "/api/v3/bill/create", form)
        self._http.raise_for_status("create_payment", response)
        body = self._http.json_body("create_payment", response)

        bill_code = body.get("billCode")
        if body.get("status") != "ok" or not bill_code:
            logger.error(
                "bill_gateway_create_rejected",
                order_ref=request.order_ref,
                error=body.get("msg"),
            )
            raise GatewayError(
                self.provider, f"bill rejected: {body.get('msg', 'unknown error')}"
            )

        logger.info("bill_gateway_bill_created", bill_code=bill_code, order_ref=request.order_ref)

        return CreatedIntent(
            intent=PaymentIntent(
                id=str(bill_code),
                provider=self.provider,
                order_ref=request.order_ref,
                amount_minor=request.amount_minor,
                currency=request.currency,
                status=IntentStatus.REQUIRES_ACTION,
                metadata=dict(request.metadata),
            ),
            redirect_url=body.get("url"),
        )

    async def get_status(self, provider_ref: str) -> ProviderStatus:
        """
        Look up the latest payment attempt on a bill.

        Raises:
            GatewayError: If the bill cannot be found or the lookup fails
        """
        form = {"apiKey": self._api_key, "search_str": provider_ref, "latest": "true"}
        response = await self._authorized_post("get_status", "/api/v3/bill/info", form)
        self._http.raise_for_status("get_status", response)
        body = self._http.json_body("get_status", response)

        bill = _first(body.get("bill"))
        if bill is None:
            raise GatewayError(self.provider, f"bill {provider_ref} not found", status_code=404)

        payment = _first(bill.get("payments"), latest=True) or {}
        reported_status = str(payment.get("status", "2"))

        logger.info(
            "bill_gateway_status_retrieved",
            bill_code=provider_ref,
            status=reported_status,
        )

        metadata: dict[str, str] = {}
        if bill.get("ext_reference"):
            metadata[METADATA_ORDER_REF] = str(bill["ext_reference"])

        return ProviderStatus(
            provider=self.provider,
            provider_payment_id=provider_ref,
            reported_status=reported_status,
            status=self.normalize_status(reported_status),
            raw_payload=response.content,
            metadata=metadata,
        )

    async def validate_webhook(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> WebhookClaim | None:
        """
        Verify the HMAC-SHA256 signature over the raw body and parse the callback.

        Raises:
            InvalidSignatureError: If the signature is missing or wrong
        """
        if not self._webhook_secret:
            raise InvalidSignatureError(self.provider, "webhook secret not configured")

        signature = headers.get(SIGNATURE_HEADER, "")
        if not signature:
            raise InvalidSignatureError(self.provider, "missing signature header")

        expected = hmac.new(
            self._webhook_secret.encode("utf-8"), payload, hashlib.sha256
        ).hexdigest()
        # Headers arrive latin-1 decoded; compare bytes so any header value is comparable
        received = signature.strip().lower().encode("latin-1", "replace")
        if not hmac.compare_digest(expected.encode("ascii"), received):
            raise InvalidSignatureError(self.provider, "signature mismatch")

        try:
            body = json.loads(payload)
        except ValueError as exc:
            raise InvalidSignatureError(self.provider, "body is not JSON") from exc
        if not isinstance(body, dict):
            raise InvalidSignatureError(self.provider, "body is not a JSON object")

        bill_code = body.get("billcode")
        if not bill_code:
            logger.info("bill_gateway_webhook_without_bill", keys=sorted(body.keys()))
            return None

        raw_metadata = body.get("metadata")
        metadata: dict[str, str] = {}
        if isinstance(raw_metadata, dict):
            metadata = {str(k): str(v) for k, v in raw_metadata.items()}
        if body.get("ext_reference"):
            metadata.setdefault(METADATA_ORDER_REF, str(body["ext_reference"]))

        reported_status = str(body.get("status", ""))
        return WebhookClaim(
            provider=self.provider,
            provider_payment_id=str(bill_code),
            reported_status=reported_status,
            status=self.normalize_status(reported_status),
            event_type="bill.status",
            metadata=metadata,
        )

    async def _authorized_post(
        self, operation: str, path: str, form: Mapping[str, str]
    ) -> httpx.Response:
        """POST with the cached token; on 401 refresh once and retry."""
        token = await self._credentials.get_token(self.provider)
        response = await self._post(operation, path, form, token)
        if response.status_code != 401:
            return response

        logger.warning("bill_gateway_token_rejected", operation=operation)
        self._credentials.invalidate(self.provider, token)
        token = await self._credentials.get_token(self.provider)
        response = await self._post(operation, path, form, token)
        if response.status_code == 401:
            logger.error("bill_gateway_token_rejected_after_refresh", operation=operation)
            raise GatewayAuthError(self.provider, "token rejected after refresh")
        return response

    async def _post(
        self, operation: str, path: str, form: Mapping[str, str], token: CredentialToken
    ) -> httpx.Response:
        return await self._http.request(
            operation, "POST", path, data=dict(form), headers={AUTH_HEADER: token.value}
        )


def _first(value: Any, latest: bool = False) -> dict[str, Any] | None:
    """The gateway returns either an object or a list of objects."""
    if isinstance(value, list):
        items = [item for item in value if isinstance(item, dict)]
        if not items:
            return None
        return items[-1] if latest else items[0]
    if isinstance(value, dict):
        return value
    return None
