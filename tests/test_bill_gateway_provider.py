"""
Tests for BillGatewayProvider.

Uses httpx.MockTransport so every request the adapter sends can be inspected.
"""

import hashlib
import hmac
import json
from collections.abc import Callable
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest
from helpers import make_intent_request

from app.exceptions import CredentialError, GatewayAuthError, GatewayError, InvalidSignatureError
from app.models.domain import IntentStatus, Provider
from app.services.bill_gateway_provider import (
    BillGatewayProvider,
    BillGatewayTokenSource,
    format_major_amount,
)
from app.services.credential_cache import CredentialCache
from app.services.provider_http import ProviderHttpClient

WEBHOOK_SECRET = "bill-webhook-secret"


class BillGatewayStub:
    """Records requests and answers them like the gateway would."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.tokens_issued = 0
        self.rejections_left = 0
        self.bill_info: dict = {
            "status": "ok",
            "bill": {
                "billcode": "BILL-9",
                "ext_reference": "ORD-1",
                "payments": [{"status": "3"}, {"status": "1"}],
            },
        }

    def paths(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.path == "/api/v3/token":
            self.tokens_issued += 1
            return httpx.Response(200, json={"status": "ok", "token": f"tok-{self.tokens_issued}"})

        if self.rejections_left > 0:
            self.rejections_left -= 1
            return httpx.Response(401, json={"status": "error", "msg": "token expired"})

        if request.url.path == "/api/v3/bill/create":
            return httpx.Response(
                200,
                json={"status": "ok", "billCode": "BILL-9", "url": "https://bill.test/BILL-9"},
            )
        if request.url.path == "/api/v3/bill/info":
            return httpx.Response(200, json=self.bill_info)
        return httpx.Response(404)


def make_provider(
    handler: Callable[[httpx.Request], httpx.Response],
    webhook_secret: str = WEBHOOK_SECRET,
) -> BillGatewayProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    http = ProviderHttpClient(Provider.BILL_GATEWAY, "https://bill.test", 5.0, client)
    credentials = CredentialCache(
        {Provider.BILL_GATEWAY: BillGatewayTokenSource(http, "merchant-key", 86400)},
        safety_margin=timedelta(hours=1),
    )
    return BillGatewayProvider(
        http=http,
        credentials=credentials,
        api_key="merchant-key",
        category="cat-01",
        webhook_secret=webhook_secret,
        callback_url="https://shop.test/v1/payments/webhooks/bill_gateway",
        allowed_currencies=frozenset({"myr"}),
    )


def form_of(request: httpx.Request) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def stub() -> BillGatewayStub:
    return BillGatewayStub()


class TestFormatMajorAmount:
    """Bills are priced in major units."""

    def test_two_decimals(self):
        assert format_major_amount(3550) == "35.50"

    def test_sub_unit_amount(self):
        assert format_major_amount(5) == "0.05"


class TestCreatePayment:
    """Bill creation."""

    async def test_creates_bill_with_major_amount(self, stub: BillGatewayStub):
        """ORD-1 for 3550 minor units becomes a 35.50 bill referencing the order."""
        provider = make_provider(stub)

        created = await provider.create_payment(
            make_intent_request(return_url="https://shop.test/processing")
        )

        form = form_of(stub.paths("/api/v3/bill/create")[0])
        assert form["amount"] == "35.50"
        assert form["ext_reference"] == "ORD-1"
        assert form["category"] == "cat-01"
        assert form["payer_email"] == "buyer@example.com"
        assert form["callback_url"] == "https://shop.test/v1/payments/webhooks/bill_gateway"
        assert form["webreturn_url"] == "https://shop.test/processing"

        assert created.intent.id == "BILL-9"
        assert created.intent.status == IntentStatus.REQUIRES_ACTION
        assert created.intent.amount_minor == 3550
        assert created.redirect_url == "https://bill.test/BILL-9"

    async def test_sends_cached_token(self, stub: BillGatewayStub):
        """Two calls share one token from the token endpoint."""
        provider = make_provider(stub)

        await provider.create_payment(make_intent_request())
        await provider.get_status("BILL-9")

        assert stub.tokens_issued == 1
        assert all(
            request.headers["Authentication"] == "tok-1"
            for request in stub.requests
            if request.url.path != "/api/v3/token"
        )

    async def test_rejected_bill_raises_gateway_error(self):
        """status != ok surfaces as GatewayError."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/v3/token":
                return httpx.Response(200, json={"status": "ok", "token": "tok"})
            return httpx.Response(200, json={"status": "error", "msg": "invalid category"})

        provider = make_provider(handler)

        with pytest.raises(GatewayError, match="invalid category"):
            await provider.create_payment(make_intent_request())


class TestTokenRefreshOn401:
    """A rejected token is refreshed and the call retried exactly once."""

    async def test_retries_once_with_fresh_token(self, stub: BillGatewayStub):
        stub.rejections_left = 1
        provider = make_provider(stub)

        created = await provider.create_payment(make_intent_request())

        bill_calls = stub.paths("/api/v3/bill/create")
        assert created.intent.id == "BILL-9"
        assert stub.tokens_issued == 2
        assert len(bill_calls) == 2
        assert bill_calls[0].headers["Authentication"] == "tok-1"
        assert bill_calls[1].headers["Authentication"] == "tok-2"

    async def test_second_rejection_raises_auth_error(self, stub: BillGatewayStub):
        stub.rejections_left = 2
        provider = make_provider(stub)

        with pytest.raises(GatewayAuthError):
            await provider.create_payment(make_intent_request())

        assert len(stub.paths("/api/v3/bill/create")) == 2
        assert stub.tokens_issued == 2

    async def test_token_endpoint_rejection_is_credential_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "error", "msg": "bad api key"})

        provider = make_provider(handler)

        with pytest.raises(CredentialError, match="bad api key"):
            await provider.create_payment(make_intent_request())


class TestGetStatus:
    """Bill lookup."""

    async def test_latest_payment_decides_status(self, stub: BillGatewayStub):
        """The last payment attempt wins: a failed attempt then a paid one is paid."""
        provider = make_provider(stub)

        status = await provider.get_status("BILL-9")

        assert status.reported_status == "1"
        assert status.status == IntentStatus.SUCCEEDED
        assert status.metadata == {"order_ref": "ORD-1"}
        assert form_of(stub.paths("/api/v3/bill/info")[0])["search_str"] == "BILL-9"

    async def test_bill_without_payments_is_pending(self, stub: BillGatewayStub):
        stub.bill_info = {"status": "ok", "bill": [{"billcode": "BILL-9", "payments": []}]}
        provider = make_provider(stub)

        status = await provider.get_status("BILL-9")

        assert status.status == IntentStatus.REQUIRES_ACTION

    async def test_unknown_bill_raises(self, stub: BillGatewayStub):
        stub.bill_info = {"status": "ok", "bill": []}
        provider = make_provider(stub)

        with pytest.raises(GatewayError) as exc_info:
            await provider.get_status("BILL-404")

        assert exc_info.value.status_code == 404

    @pytest.mark.parametrize(
        "code,expected",
        [
            ("1", IntentStatus.SUCCEEDED),
            ("2", IntentStatus.REQUIRES_ACTION),
            ("3", IntentStatus.FAILED),
            ("4", IntentStatus.CANCELED),
            ("9", IntentStatus.REQUIRES_ACTION),
        ],
    )
    def test_status_codes(self, stub: BillGatewayStub, code: str, expected: IntentStatus):
        assert make_provider(stub).normalize_status(code) == expected


class TestValidateWebhook:
    """HMAC-SHA256 over the raw body."""

    @pytest.fixture
    def body(self) -> bytes:
        return json.dumps(
            {"billcode": "BILL-9", "status": "1", "ext_reference": "ORD-1"}
        ).encode()

    async def test_valid_signature(self, stub: BillGatewayStub, body: bytes):
        provider = make_provider(stub)

        claim = await provider.validate_webhook(body, {"x-bizapay-signature": sign(body)})

        assert claim is not None
        assert claim.provider_payment_id == "BILL-9"
        assert claim.status == IntentStatus.SUCCEEDED
        assert claim.metadata["order_ref"] == "ORD-1"
        assert stub.requests == []

    async def test_tampered_body_rejected(self, stub: BillGatewayStub, body: bytes):
        provider = make_provider(stub)
        signature = sign(body)
        tampered = body.replace(b'"status": "1"', b'"status": "3"')

        with pytest.raises(InvalidSignatureError):
            await provider.validate_webhook(tampered, {"x-bizapay-signature": signature})

    async def test_missing_signature_rejected(self, stub: BillGatewayStub, body: bytes):
        with pytest.raises(InvalidSignatureError):
            await make_provider(stub).validate_webhook(body, {})

    @pytest.mark.parametrize("signature", ["é" * 64, "Ā" * 64, "zz" * 32])
    async def test_non_hex_signature_rejected(
        self, stub: BillGatewayStub, body: bytes, signature: str
    ):
        with pytest.raises(InvalidSignatureError, match="signature mismatch"):
            await make_provider(stub).validate_webhook(body, {"x-bizapay-signature": signature})

    async def test_unconfigured_secret_rejects_everything(self, stub: BillGatewayStub, body: bytes):
        provider = make_provider(stub, webhook_secret="")

        with pytest.raises(InvalidSignatureError):
            await provider.validate_webhook(body, {"x-bizapay-signature": sign(body)})

    async def test_event_without_bill_is_ignored(self, stub: BillGatewayStub):
        body = json.dumps({"event": "ping"}).encode()

        claim = await make_provider(stub).validate_webhook(
            body, {"x-bizapay-signature": sign(body)}
        )

        assert claim is None
