"""
FastAPI Dependencies - Payment components built at startup.

NO DICTIONARIES - All dependencies return typed objects.
"""

from typing import Any

from fastapi import HTTPException, Request, status

from app.services.intent_normalizer import IntentNormalizer
from app.services.provider_registry import ProviderRegistry
from app.services.reconciliation import ReconciliationEngine
from app.services.status_poller import PollScheduler, StatusPoller
from app.services.webhook_ingestion import WebhookIngestion


def _component(request: Request, name: str) -> Any:
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment service is starting up",
        )
    return component


def get_registry(request: Request) -> ProviderRegistry:
    """Configured payment providers."""
    registry: ProviderRegistry = _component(request, "providers")
    return registry


def get_normalizer(request: Request) -> IntentNormalizer:
    """Intent creation entry point."""
    normalizer: IntentNormalizer = _component(request, "normalizer")
    return normalizer


def get_engine(request: Request) -> ReconciliationEngine:
    """Process-wide reconciliation engine (owns the per-order locks)."""
    engine: ReconciliationEngine = _component(request, "engine")
    return engine


def get_ingestion(request: Request) -> WebhookIngestion:
    """Webhook ingestion."""
    ingestion: WebhookIngestion = _component(request, "ingestion")
    return ingestion


def get_poller(request: Request) -> StatusPoller:
    """Status poller for client-driven verification."""
    poller: StatusPoller = _component(request, "poller")
    return poller


def get_scheduler(request: Request) -> PollScheduler:
    """Background verification scheduler."""
    scheduler: PollScheduler = _component(request, "scheduler")
    return scheduler
