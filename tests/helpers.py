"""
Shared test doubles and builders.

- In-memory order/intent store with row-lock semantics
- Scriptable fake payment provider
- Registry, event and intent request factories
"""

import asyncio
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import timedelta

from app.exceptions import ReconciliationConflict
from app.models.domain import (
    ApplyStatus,
    CommissionEffect,
    CreatedIntent,
    CustomerContact,
    EventChannel,
    IntentRequest,
    IntentStatus,
    OrderSnapshot,
    OrderStatus,
    PaymentEvent,
    PaymentIntent,
    PaymentOutcome,
    PaymentRecordEffect,
    Provider,
    ProviderStatus,
    SideEffect,
    WebhookClaim,
)
from app.services.credential_cache import CredentialCache
from app.services.provider_registry import ProviderRegistry

# ============================================================================
# In-Memory Store
# ============================================================================


class _MemoryLockedOrder:
    """LockedOrder over the in-memory store."""

    def __init__(self, store: "InMemoryOrderStore", order_ref: str) -> None:
        self._store = store
        self._order_ref = order_ref

    async def get_order(self) -> OrderSnapshot | None:
        return self._store.orders.get(self._order_ref)

    async def apply_payment_outcome(
        self, outcome: PaymentOutcome, side_effects: Sequence[SideEffect]
    ) -> ApplyStatus:
        # Give other tasks a chance to interleave
        await asyncio.sleep(0)

        order = self._store.orders.get(outcome.order_ref)
        if self._store.force_conflict or order is None:
            return ApplyStatus.CONFLICT
        if order.status != outcome.expected_status:
            return ApplyStatus.CONFLICT

        for effect in side_effects:
            if isinstance(effect, PaymentRecordEffect) and any(
                existing.provider == effect.provider
                and existing.provider_payment_id == effect.provider_payment_id
                for existing in self._store.payment_records
            ):
                return ApplyStatus.CONFLICT

        if outcome.new_status == OrderStatus.PAID:
            order = replace(
                order,
                status=outcome.new_status,
                payment_id=outcome.provider_payment_id,
                paid_at=outcome.paid_at,
            )
        else:
            order = replace(order, status=outcome.new_status)
        self._store.orders[outcome.order_ref] = order

        key = (outcome.provider, outcome.provider_payment_id)
        intent = self._store.intents.get(key)
        if intent is not None:
            self._store.intents[key] = replace(intent, status=outcome.intent_status)

        for effect in side_effects:
            if isinstance(effect, PaymentRecordEffect):
                self._store.payment_records.append(effect)
            elif isinstance(effect, CommissionEffect):
                self._store.commissions.append(effect)
        return ApplyStatus.COMMITTED

    async def record_conflict(
        self, conflict: ReconciliationConflict, event: PaymentEvent
    ) -> None:
        self._store.conflicts.append(conflict)


class InMemoryOrderStore:
    """
    OrderStore and IntentStore kept in dictionaries.

    lock_order holds a per-order asyncio.Lock, standing in for the database
    row lock shared by every worker.
    """

    def __init__(self) -> None:
        self.orders: dict[str, OrderSnapshot] = {}
        self.intents: dict[tuple[Provider, str], PaymentIntent] = {}
        self.idempotency_keys: list[str] = []
        self.payment_records: list[PaymentRecordEffect] = []
        self.commissions: list[CommissionEffect] = []
        self.conflicts: list[ReconciliationConflict] = []
        self.audit: list[tuple[PaymentEvent, str | None]] = []
        self.force_conflict = False
        self._row_locks: dict[str, asyncio.Lock] = {}

    def add_order(
        self,
        order_ref: str,
        status: OrderStatus = OrderStatus.PENDING_PAYMENT,
        payment_id: str | None = None,
        amount_minor: int | None = 3550,
        currency: str | None = "myr",
    ) -> OrderSnapshot:
        order = OrderSnapshot(
            order_ref=order_ref,
            status=status,
            payment_id=payment_id,
            paid_at=None,
            amount_minor=amount_minor,
            currency=currency,
        )
        self.orders[order_ref] = order
        return order

    @asynccontextmanager
    async def lock_order(self, order_ref: str) -> AsyncIterator[_MemoryLockedOrder]:
        lock = self._row_locks.setdefault(order_ref, asyncio.Lock())
        async with lock:
            yield _MemoryLockedOrder(self, order_ref)

    async def append_audit(self, event: PaymentEvent, order_ref: str | None) -> None:
        self.audit.append((event, order_ref))

    async def record_intent(self, intent: PaymentIntent, idempotency_key: str) -> None:
        if intent.order_ref not in self.orders:
            self.add_order(
                intent.order_ref, amount_minor=intent.amount_minor, currency=intent.currency
            )
        self.intents[(intent.provider, intent.id)] = intent
        self.idempotency_keys.append(idempotency_key)

    async def find_intent(
        self, provider: Provider, provider_payment_id: str
    ) -> PaymentIntent | None:
        return self.intents.get((provider, provider_payment_id))

    async def advance_intent_status(
        self, provider: Provider, provider_payment_id: str, status: IntentStatus
    ) -> None:
        key = (provider, provider_payment_id)
        intent = self.intents.get(key)
        if intent is not None and not intent.status.is_terminal:
            self.intents[key] = replace(intent, status=status)


# ============================================================================
# Fake Provider
# ============================================================================


def provider_status(
    provider: Provider,
    provider_payment_id: str,
    status: IntentStatus,
    order_ref: str | None = None,
) -> ProviderStatus:
    """ProviderStatus whose reported status is the IntentStatus value."""
    return ProviderStatus(
        provider=provider,
        provider_payment_id=provider_payment_id,
        reported_status=status.value,
        status=status,
        raw_payload=b"{}",
        metadata={"order_ref": order_ref} if order_ref else {},
    )


class FakeProvider:
    """
    Scriptable PaymentProvider.

    Reported statuses are IntentStatus values. get_status returns the queued
    statuses in order and keeps repeating the last one; queued exceptions
    are raised instead.
    """

    def __init__(
        self,
        provider: Provider = Provider.BILL_GATEWAY,
        allowed_currencies: frozenset[str] = frozenset({"myr"}),
        requires_corroboration: bool = False,
    ) -> None:
        self.provider = provider
        self.allowed_currencies = allowed_currencies
        self.requires_corroboration = requires_corroboration
        self.created: list[IntentRequest] = []
        self.create_error: Exception | None = None
        self.statuses: list[ProviderStatus | Exception] = []
        self.status_calls = 0
        self.status_delay = 0.0
        self.claim: WebhookClaim | None = None
        self.webhook_error: Exception | None = None
        self.webhook_payloads: list[bytes] = []

    def normalize_status(self, reported_status: str) -> IntentStatus:
        try:
            return IntentStatus(reported_status)
        except ValueError:
            return IntentStatus.REQUIRES_ACTION

    async def create_payment(self, request: IntentRequest) -> CreatedIntent:
        self.created.append(request)
        if self.create_error is not None:
            raise self.create_error
        return CreatedIntent(
            intent=PaymentIntent(
                id=f"{self.provider.value}-{len(self.created)}",
                provider=self.provider,
                order_ref=request.order_ref,
                amount_minor=request.amount_minor,
                currency=request.currency,
                status=IntentStatus.REQUIRES_ACTION,
                metadata=dict(request.metadata),
            ),
            redirect_url=f"https://pay.test/{len(self.created)}",
        )

    async def get_status(self, provider_ref: str) -> ProviderStatus:
        self.status_calls += 1
        if self.status_delay:
            await asyncio.sleep(self.status_delay)
        if not self.statuses:
            return provider_status(self.provider, provider_ref, IntentStatus.REQUIRES_ACTION)
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def validate_webhook(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> WebhookClaim | None:
        self.webhook_payloads.append(payload)
        if self.webhook_error is not None:
            raise self.webhook_error
        return self.claim


def make_registry(*providers: FakeProvider) -> ProviderRegistry:
    """Registry over fake providers with an empty credential cache."""
    return ProviderRegistry(
        {provider.provider: provider for provider in providers},
        CredentialCache({}, safety_margin=timedelta(0)),
    )


def make_event(
    provider_payment_id: str = "BILL-9",
    status: IntentStatus = IntentStatus.SUCCEEDED,
    received_via: EventChannel = EventChannel.WEBHOOK,
    order_ref: str | None = "ORD-1",
    provider: Provider = Provider.BILL_GATEWAY,
) -> PaymentEvent:
    """PaymentEvent for a fake provider."""
    return PaymentEvent(
        provider=provider,
        provider_payment_id=provider_payment_id,
        reported_status=status.value,
        raw_payload=b'{"status": "%s"}' % status.value.encode(),
        received_via=received_via,
        metadata={"order_ref": order_ref} if order_ref else {},
    )


def make_intent_request(
    provider: Provider = Provider.BILL_GATEWAY,
    order_ref: str = "ORD-1",
    amount_minor: int = 3550,
    currency: str = "myr",
    return_url: str | None = None,
) -> IntentRequest:
    """Normalized intent request as adapters receive it."""
    return IntentRequest(
        provider=provider,
        order_ref=order_ref,
        amount_minor=amount_minor,
        currency=currency,
        customer=CustomerContact(email="buyer@example.com", name="Aina", phone="0123456789"),
        description=f"Order {order_ref}",
        metadata={"order_ref": order_ref, "purpose": "order"},
        idempotency_key=f"{provider.value}-{order_ref}-test",
        return_url=return_url,
    )


