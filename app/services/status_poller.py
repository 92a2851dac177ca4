"""
Status Poller - Bounded, cancellable polling until a payment is terminal.

Two uses: the verify endpoint polls on behalf of a waiting client, and the
PollScheduler keeps verifying redirect-based payments server-side so an order
is resolved even if the customer closes the tab.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from structlog import get_logger

from app.exceptions import (
    CredentialError,
    GatewayError,
    PaymentError,
    PollCancelledError,
    PollTimeoutError,
)
from app.models.domain import EventChannel, PaymentEvent, Provider, ProviderStatus
from app.observability.metrics import metrics
from app.services.provider_registry import ProviderRegistry

logger = get_logger(__name__)

EventSink = Callable[[PaymentEvent], Awaitable[object]]

# Providers whose client redirect can carry a pending status
SERVER_VERIFIED_PROVIDERS = frozenset({Provider.BILL_GATEWAY, Provider.TXN_GATEWAY})


@dataclass(frozen=True)
class PollResult:
    """Terminal status reached by a poll."""

    status: ProviderStatus
    attempts: int
    waited_seconds: float


class StatusPoller:
    """
    Polls a provider at a fixed interval within a wait budget.

    Each status call is bounded by min(request timeout, remaining budget) so a
    slow call cannot overrun the budget.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        on_event: EventSink,
        request_timeout_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize status poller.

        Args:
            providers: Provider registry
            on_event: Receives the single POLL event for a terminal status
            request_timeout_seconds: Upper bound for one status call
            clock: Monotonic clock in seconds
            sleep: Sleep coroutine between attempts
        """
        self._providers = providers
        self._on_event = on_event
        self._request_timeout_seconds = request_timeout_seconds
        self._clock = clock
        self._sleep = sleep

    async def poll_until_terminal(
        self,
        provider: Provider,
        provider_ref: str,
        interval_seconds: float,
        max_wait_seconds: float,
        cancel_event: asyncio.Event | None = None,
    ) -> PollResult:
        """
        Poll until the payment is terminal, then emit one POLL event.

        Raises:
            ProviderNotConfiguredError: If the provider is not configured
            PollTimeoutError: If the budget runs out first
            PollCancelledError: If cancel_event is set before a terminal status
        """
        adapter = self._providers.get(provider)
        started = self._clock()
        deadline = started + max_wait_seconds
        attempts = 0

        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise PollCancelledError(provider, provider_ref)

                remaining = deadline - self._clock()
                if remaining <= 0:
                    break

                attempts += 1
                status = await self._fetch(adapter.get_status, provider, provider_ref, remaining)

                if status is not None and status.status.is_terminal:
                    if cancel_event is not None and cancel_event.is_set():
                        raise PollCancelledError(provider, provider_ref)

                    await self._on_event(
                        PaymentEvent(
                            provider=provider,
                            provider_payment_id=status.provider_payment_id,
                            reported_status=status.reported_status,
                            raw_payload=status.raw_payload,
                            received_via=EventChannel.POLL,
                            metadata=status.metadata,
                        )
                    )
                    waited = self._clock() - started
                    logger.info(
                        "poll_reached_terminal",
                        provider=provider.value,
                        provider_ref=provider_ref,
                        status=status.status.value,
                        attempts=attempts,
                    )
                    metrics.record_poll(provider.value, "terminal")
                    return PollResult(status=status, attempts=attempts, waited_seconds=waited)

                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                await self._sleep(min(interval_seconds, remaining))
        except PollCancelledError:
            logger.info("poll_cancelled", provider=provider.value, provider_ref=provider_ref)
            metrics.record_poll(provider.value, "cancelled")
            raise
        except asyncio.CancelledError:
            logger.info("poll_task_cancelled", provider=provider.value, provider_ref=provider_ref)
            metrics.record_poll(provider.value, "cancelled")
            raise

        waited = self._clock() - started
        logger.warning(
            "poll_timed_out",
            provider=provider.value,
            provider_ref=provider_ref,
            attempts=attempts,
            waited_seconds=waited,
        )
        metrics.record_poll(provider.value, "timeout")
        raise PollTimeoutError(provider, provider_ref, waited)

    async def _fetch(
        self,
        get_status: Callable[[str], Awaitable[ProviderStatus]],
        provider: Provider,
        provider_ref: str,
        remaining: float,
    ) -> ProviderStatus | None:
        """One bounded status call. Transient failures are logged and skipped."""
        timeout = min(self._request_timeout_seconds, remaining)
        try:
            return await asyncio.wait_for(get_status(provider_ref), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "poll_attempt_timed_out",
                provider=provider.value,
                provider_ref=provider_ref,
                timeout_seconds=timeout,
            )
        except (GatewayError, CredentialError) as exc:
            logger.warning(
                "poll_attempt_failed",
                provider=provider.value,
                provider_ref=provider_ref,
                error=exc.message,
                error_type=type(exc).__name__,
            )
        return None


class PollScheduler:
    """
    Background verification, at most one task per (provider, reference).

    Tasks live for the application lifetime and are cancelled on shutdown.
    """

    def __init__(
        self,
        poller: StatusPoller,
        interval_seconds: float,
        max_wait_seconds: float,
    ) -> None:
        self._poller = poller
        self._interval_seconds = interval_seconds
        self._max_wait_seconds = max_wait_seconds
        self._tasks: dict[tuple[Provider, str], asyncio.Task[None]] = {}

    def schedule(self, provider: Provider, provider_ref: str) -> bool:
        """Start verifying a payment. Returns False if it is already being verified."""
        key = (provider, provider_ref)
        if key in self._tasks:
            return False

        task = asyncio.create_task(
            self._run(provider, provider_ref), name=f"poll:{provider.value}:{provider_ref}"
        )
        self._tasks[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        logger.info("server_poll_scheduled", provider=provider.value, provider_ref=provider_ref)
        return True

    def is_scheduled(self, provider: Provider, provider_ref: str) -> bool:
        return (provider, provider_ref) in self._tasks

    async def shutdown(self) -> None:
        """Cancel all running verifications and wait for them to stop."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("poll_scheduler_stopped", cancelled=len(tasks))

    async def _run(self, provider: Provider, provider_ref: str) -> None:
        try:
            await self._poller.poll_until_terminal(
                provider, provider_ref, self._interval_seconds, self._max_wait_seconds
            )
        except PollTimeoutError as exc:
            logger.warning(
                "payment_verification_incomplete",
                provider=provider.value,
                provider_ref=provider_ref,
                waited_seconds=exc.waited_seconds,
            )
        except PaymentError as exc:
            logger.error(
                "server_poll_failed",
                provider=provider.value,
                provider_ref=provider_ref,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        except Exception as exc:
            # Nobody awaits this task; the failure must at least reach the logs
            logger.exception(
                "server_poll_crashed",
                provider=provider.value,
                provider_ref=provider_ref,
                error_type=type(exc).__name__,
            )
            metrics.record_error(type(exc).__name__, "server_poll")

    def _forget(self, key: tuple[Provider, str], task: asyncio.Task[None]) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
