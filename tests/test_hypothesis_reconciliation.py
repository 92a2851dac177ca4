"""
Hypothesis Property-Based Tests for ReconciliationEngine.

Arbitrary interleavings of provider events against one order: the order is
paid at most once, never downgraded, and side effects exist at most once.
"""

import asyncio

from helpers import FakeProvider, InMemoryOrderStore, make_event, make_registry
from hypothesis import given, settings
from hypothesis import strategies as st

from app.models.domain import (
    EventChannel,
    IntentStatus,
    OrderStatus,
    PaymentEvent,
    ReconciliationAction,
)
from app.services.reconciliation import ReconciliationEngine, SideEffectPolicy, commission_minor

# ============================================================================
# Hypothesis Strategies
# ============================================================================

payment_ids = st.sampled_from(["BILL-1", "BILL-2", "BILL-3"])
statuses = st.sampled_from(list(IntentStatus))
channels = st.sampled_from(list(EventChannel))


@st.composite
def payment_events(draw) -> PaymentEvent:
    """Generate events for ORD-1 on any channel."""
    return make_event(
        provider_payment_id=draw(payment_ids),
        status=draw(statuses),
        received_via=draw(channels),
    )


event_sequences = st.lists(payment_events(), min_size=1, max_size=12)

_FAILURE_STATUS = {
    IntentStatus.FAILED: OrderStatus.PAYMENT_FAILED,
    IntentStatus.CANCELED: OrderStatus.PAYMENT_CANCELLED,
}


def _engine() -> tuple[ReconciliationEngine, InMemoryOrderStore]:
    store = InMemoryOrderStore()
    store.add_order("ORD-1")
    engine = ReconciliationEngine(
        make_registry(FakeProvider()), store, store, SideEffectPolicy(commission_rate_bps=250)
    )
    return engine, store


def _status_of(event: PaymentEvent) -> IntentStatus:
    return IntentStatus(event.reported_status)


class TestSequentialEvents:
    """Events applied one after another."""

    @given(events=event_sequences)
    @settings(max_examples=100, deadline=None)
    def test_first_success_wins(self, events: list[PaymentEvent]):
        engine, store = _engine()

        async def run() -> None:
            for event in events:
                await engine.apply(event)

        asyncio.run(run())

        successes = [e for e in events if _status_of(e) == IntentStatus.SUCCEEDED]
        failures = [e for e in events if _status_of(e) in _FAILURE_STATUS]
        order = store.orders["ORD-1"]

        if successes:
            assert order.status == OrderStatus.PAID
            assert order.payment_id == successes[0].provider_payment_id
            assert len(store.payment_records) == 1
            assert len(store.commissions) == 1
        elif failures:
            assert order.status == _FAILURE_STATUS[_status_of(failures[0])]
            assert store.payment_records == []
        else:
            assert order.status == OrderStatus.PENDING_PAYMENT
            assert store.payment_records == []

        assert len(store.audit) == len(events)

    @given(events=event_sequences)
    @settings(max_examples=100, deadline=None)
    def test_applied_at_most_once_per_outcome(self, events: list[PaymentEvent]):
        engine, _ = _engine()

        async def run() -> list[ReconciliationAction]:
            return [(await engine.apply(event)).action for event in events]

        actions = asyncio.run(run())

        applied = [e for e, a in zip(events, actions) if a == ReconciliationAction.APPLIED]
        assert sum(1 for e in applied if _status_of(e) == IntentStatus.SUCCEEDED) <= 1
        assert all(_status_of(e).is_terminal for e in applied)


class TestConcurrentEvents:
    """Events racing across channels."""

    @given(events=event_sequences)
    @settings(max_examples=50, deadline=None)
    def test_paid_at_most_once(self, events: list[PaymentEvent]):
        engine, store = _engine()

        async def run() -> None:
            await asyncio.gather(*(engine.apply(event) for event in events))

        asyncio.run(run())

        succeeded_ids = {
            e.provider_payment_id for e in events if _status_of(e) == IntentStatus.SUCCEEDED
        }
        order = store.orders["ORD-1"]

        assert len(store.payment_records) == (1 if succeeded_ids else 0)
        if succeeded_ids:
            assert order.status == OrderStatus.PAID
            assert order.payment_id in succeeded_ids
            assert store.payment_records[0].provider_payment_id == order.payment_id


class TestCommission:
    """Commission rounding."""

    @given(
        amount=st.integers(min_value=1, max_value=10_000_000),
        rate=st.integers(min_value=0, max_value=10_000),
    )
    def test_commission_is_bounded_by_amount(self, amount: int, rate: int):
        commission = commission_minor(amount, rate)

        assert 0 <= commission <= amount
        assert abs(commission * 10_000 - amount * rate) <= 5_000
