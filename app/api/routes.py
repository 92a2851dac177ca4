"""
API Routes - FastAPI endpoints for payment operations.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

import asyncio
import contextlib
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    get_engine,
    get_ingestion,
    get_normalizer,
    get_poller,
    get_registry,
    get_scheduler,
)
from app.config import settings
from app.db.session import get_db
from app.exceptions import (
    CredentialError,
    GatewayError,
    InvalidStateError,
    PollCancelledError,
    PollTimeoutError,
    ProviderNotConfiguredError,
    ValidationError,
)
from app.models.api import (
    CreateIntentRequest,
    CreateIntentResponse,
    HealthResponse,
    PaymentStatusResponse,
    UpdatePaymentMethodRequest,
    UpdatePaymentMethodResponse,
    VerifyPaymentResponse,
    WebhookResponse,
)
from app.models.domain import EventChannel, PaymentEvent, Provider
from app.services.intent_normalizer import IntentNormalizer
from app.services.provider_registry import ProviderRegistry
from app.services.reconciliation import ReconciliationEngine
from app.services.status_poller import SERVER_VERIFIED_PROVIDERS, PollScheduler, StatusPoller
from app.services.webhook_ingestion import WebhookIngestion, WebhookState

logger = get_logger(__name__)

router = APIRouter()

# How often the verify endpoint checks whether its caller went away
DISCONNECT_CHECK_SECONDS = 0.5


def _unavailable(exc: ProviderNotConfiguredError | CredentialError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"Payment provider unavailable: {exc.provider.value}",
    )


def _bad_gateway(exc: GatewayError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Payment provider error: {exc.message}",
    )


def _schedule_server_poll(scheduler: PollScheduler, provider: Provider, provider_ref: str) -> None:
    if settings.server_poll_enabled and provider in SERVER_VERIFIED_PROVIDERS:
        scheduler.schedule(provider, provider_ref)


@router.post(
    "/v1/payments/intents",
    response_model=CreateIntentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_intent(
    request: CreateIntentRequest,
    normalizer: IntentNormalizer = Depends(get_normalizer),
    scheduler: PollScheduler = Depends(get_scheduler),
) -> CreateIntentResponse:
    """
    Create a payment intent for an order.

    Returns the client secret (card rail) or the hosted page URL (bill and
    transaction gateways) the client needs to complete the payment.
    """
    try:
        created = await normalizer.create_intent(request.to_domain())
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"field": exc.field, "message": exc.message},
        ) from exc
    except (ProviderNotConfiguredError, CredentialError) as exc:
        logger.error("intent_provider_unavailable", provider=request.provider.value, error=str(exc))
        raise _unavailable(exc) from exc
    except GatewayError as exc:
        logger.error(
            "intent_creation_failed",
            provider=request.provider.value,
            order_ref=request.order_ref,
            error=exc.message,
            status_code=exc.status_code,
        )
        raise _bad_gateway(exc) from exc

    _schedule_server_poll(scheduler, created.intent.provider, created.intent.id)

    publishable_key = None
    if created.intent.provider == Provider.CARD_RAIL:
        publishable_key = settings.card_rail_publishable_key or None
    return CreateIntentResponse.from_created(created, publishable_key=publishable_key)


@router.get(
    "/v1/payments/{provider}/{provider_ref}/status",
    response_model=PaymentStatusResponse,
)
async def get_payment_status(
    provider: Provider,
    provider_ref: str,
    registry: ProviderRegistry = Depends(get_registry),
    engine: ReconciliationEngine = Depends(get_engine),
    scheduler: PollScheduler = Depends(get_scheduler),
) -> PaymentStatusResponse:
    """
    Current status of a payment, as the provider reports it.

    Called by the client's processing page after the provider redirect. A
    terminal status is reconciled right away; a pending one is handed to the
    server-side poller so the order resolves even if the client leaves.
    """
    try:
        adapter = registry.get(provider)
        provider_status = await adapter.get_status(provider_ref)
    except (ProviderNotConfiguredError, CredentialError) as exc:
        raise _unavailable(exc) from exc
    except GatewayError as exc:
        raise _bad_gateway(exc) from exc

    response = PaymentStatusResponse(
        provider=provider,
        provider_ref=provider_ref,
        status=provider_status.status,
        reported_status=provider_status.reported_status,
        terminal=provider_status.status.is_terminal,
    )

    if not provider_status.status.is_terminal:
        _schedule_server_poll(scheduler, provider, provider_ref)
        return response

    result = await engine.apply(
        PaymentEvent(
            provider=provider,
            provider_payment_id=provider_status.provider_payment_id,
            reported_status=provider_status.reported_status,
            raw_payload=provider_status.raw_payload,
            received_via=EventChannel.CLIENT_REDIRECT,
            metadata=provider_status.metadata,
        )
    )
    response.order_ref = result.order_ref
    response.order_status = result.order_status
    return response


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_CHECK_SECONDS)
    cancel_event.set()


@router.post(
    "/v1/payments/{provider}/{provider_ref}/verify",
    response_model=VerifyPaymentResponse,
    responses={202: {"model": VerifyPaymentResponse}},
)
async def verify_payment(
    provider: Provider,
    provider_ref: str,
    request: Request,
    poller: StatusPoller = Depends(get_poller),
) -> VerifyPaymentResponse | JSONResponse:
    """
    Wait, within a bounded window, for a payment to become terminal.

    Returns 202 "verification_incomplete" when the window runs out; that is
    not a payment failure. Polling stops if the caller disconnects.
    """
    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        result = await poller.poll_until_terminal(
            provider,
            provider_ref,
            interval_seconds=settings.client_poll_interval_seconds,
            max_wait_seconds=settings.client_poll_max_wait_seconds,
            cancel_event=cancel_event,
        )
    except ProviderNotConfiguredError as exc:
        raise _unavailable(exc) from exc
    except (PollTimeoutError, PollCancelledError) as exc:
        waited = exc.waited_seconds if isinstance(exc, PollTimeoutError) else 0.0
        incomplete = VerifyPaymentResponse(
            status="verification_incomplete",
            provider=provider,
            provider_ref=provider_ref,
            waited_seconds=waited,
        )
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=incomplete.model_dump(mode="json"),
        )
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher

    return VerifyPaymentResponse(
        status="verified",
        provider=provider,
        provider_ref=provider_ref,
        payment_status=result.status.status,
        terminal=True,
        waited_seconds=result.waited_seconds,
    )


@router.patch(
    "/v1/payments/card_rail/{payment_id}/payment-method",
    response_model=UpdatePaymentMethodResponse,
)
async def update_payment_method(
    payment_id: str,
    request: UpdatePaymentMethodRequest,
    registry: ProviderRegistry = Depends(get_registry),
) -> UpdatePaymentMethodResponse:
    """Rebind a card rail payment to another instrument or FPX bank before confirmation."""
    try:
        adapter = registry.card_rail()
        update = await adapter.update_payment_method(
            payment_id,
            payment_method_id=request.payment_method_id,
            fpx_bank=request.fpx_bank,
        )
    except ProviderNotConfiguredError as exc:
        raise _unavailable(exc) from exc
    except InvalidStateError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Payment is already {exc.status}",
        ) from exc
    except GatewayError as exc:
        raise _bad_gateway(exc) from exc

    return UpdatePaymentMethodResponse(
        payment_id=update.payment_id,
        client_secret=update.client_secret,
        status=update.status,
    )


@router.post("/v1/payments/webhooks/{provider}", response_model=WebhookResponse)
async def payment_webhook(
    provider: Provider,
    request: Request,
    ingestion: WebhookIngestion = Depends(get_ingestion),
) -> WebhookResponse:
    """
    Receive a provider webhook.

    200 once accepted (including no-ops), 400 when rejected, 503 when the
    provider could not be reached to corroborate the event.
    """
    # Signatures cover the exact bytes; read before anything parses the body
    raw_body = await request.body()

    try:
        outcome = await ingestion.ingest(provider, raw_body, request.headers)
    except ProviderNotConfiguredError as exc:
        raise _unavailable(exc) from exc
    except GatewayError as exc:
        logger.error(
            "webhook_corroboration_unavailable",
            provider=provider.value,
            error=exc.message,
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Provider unavailable for verification, retry later",
        ) from exc

    if outcome.state == WebhookState.REJECTED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook",
        )

    return WebhookResponse(
        reconciliation=outcome.reconciliation.action if outcome.reconciliation else None
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        providers=registry.configured,
        timestamp=datetime.now(UTC).isoformat(),
    )
