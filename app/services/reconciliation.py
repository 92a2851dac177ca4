"""
Reconciliation Engine - Maps provider-reported outcomes onto orders exactly once.

Every channel (webhook, poll, client redirect) funnels into apply(). Per order,
applications are serialized: an in-process keyed lock orders callers inside one
worker, and the store's row lock orders workers against each other. Duplicates
and conflicts are return values, never exceptions.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from decimal import ROUND_HALF_UP, Decimal

from structlog import get_logger

from app.exceptions import ReconciliationConflict
from app.models.domain import (
    ApplyStatus,
    CommissionEffect,
    EventChannel,
    IntentStatus,
    OrderSnapshot,
    OrderStatus,
    PaymentEvent,
    PaymentIntent,
    PaymentOutcome,
    PaymentRecordEffect,
    ReconciliationAction,
    ReconciliationResult,
    SideEffect,
)
from app.observability.logging import log_context
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.order_store import IntentStore, OrderStore
from app.services.provider_registry import ProviderRegistry

logger = get_logger(__name__)

_ORDER_STATUS_FOR: dict[IntentStatus, OrderStatus] = {
    IntentStatus.SUCCEEDED: OrderStatus.PAID,
    IntentStatus.FAILED: OrderStatus.PAYMENT_FAILED,
    IntentStatus.CANCELED: OrderStatus.PAYMENT_CANCELLED,
}


class KeyedLock:
    """asyncio.Lock per key, dropped once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def commission_minor(amount_minor: int, rate_bps: int) -> int:
    """Commission on an amount in basis points, rounded half-up to a minor unit."""
    commission = Decimal(amount_minor) * Decimal(rate_bps) / Decimal(10000)
    return int(commission.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class SideEffectPolicy:
    """Decides which records a confirmed payment creates."""

    def __init__(self, commission_rate_bps: int = 0) -> None:
        self.commission_rate_bps = commission_rate_bps

    def effects_for(
        self, outcome: PaymentOutcome, amount_minor: int, currency: str
    ) -> list[SideEffect]:
        """Only the transition to PAID has side effects."""
        if outcome.new_status != OrderStatus.PAID:
            return []

        effects: list[SideEffect] = [
            PaymentRecordEffect(
                order_ref=outcome.order_ref,
                provider=outcome.provider,
                provider_payment_id=outcome.provider_payment_id,
                amount_minor=amount_minor,
                currency=currency,
            )
        ]
        if self.commission_rate_bps > 0:
            effects.append(
                CommissionEffect(
                    order_ref=outcome.order_ref,
                    provider_payment_id=outcome.provider_payment_id,
                    amount_minor=commission_minor(amount_minor, self.commission_rate_bps),
                    currency=currency,
                    rate_bps=self.commission_rate_bps,
                )
            )
        return effects


class ReconciliationEngine:
    """Applies payment events to orders."""

    def __init__(
        self,
        providers: ProviderRegistry,
        store: OrderStore,
        intents: IntentStore,
        side_effects: SideEffectPolicy,
        locks: KeyedLock | None = None,
    ) -> None:
        """
        Initialize reconciliation engine.

        Args:
            providers: Registry used to normalize provider-native statuses
            store: Transactional order store
            intents: Intent lookup for order resolution and amounts
            side_effects: Policy for records created on payment
            locks: Per-order lock; share one instance per process
        """
        self._providers = providers
        self._store = store
        self._intents = intents
        self._side_effects = side_effects
        self._locks = locks or KeyedLock()

    async def apply(self, event: PaymentEvent) -> ReconciliationResult:
        """
        Apply one payment event.

        Raises only for infrastructure faults (database errors).
        """
        with (
            log_context(
                provider=event.provider.value,
                provider_payment_id=event.provider_payment_id,
                received_via=event.received_via.value,
            ),
            trace_operation(
                "reconcile_payment_event",
                provider=event.provider.value,
                provider_payment_id=event.provider_payment_id,
                received_via=event.received_via.value,
            ) as span,
        ):
            result = await self._apply(event)
            span.set_attribute("reconciliation.action", result.action.value)
            span.set_attribute("reconciliation.conflict", result.conflict)

        metrics.record_reconciliation(
            event.provider.value,
            event.received_via.value,
            result.action.value,
            result.conflict,
        )
        return result

    async def _apply(self, event: PaymentEvent) -> ReconciliationResult:
        intent_status = self._providers.get(event.provider).normalize_status(
            event.reported_status
        )
        intent = await self._intents.find_intent(event.provider, event.provider_payment_id)
        order_ref = self._resolve_order_ref(event, intent)

        await self._store.append_audit(event, order_ref)

        if order_ref is None:
            logger.warning("payment_event_unknown_order", reported_status=event.reported_status)
            return ReconciliationResult(
                action=ReconciliationAction.NO_OP,
                order_ref=None,
                order_status=None,
                reason="unknown_order",
            )

        if not intent_status.is_terminal:
            if intent_status == IntentStatus.REQUIRES_ACTION:
                await self._intents.advance_intent_status(
                    event.provider, event.provider_payment_id, intent_status
                )
            logger.info(
                "payment_event_not_terminal",
                order_ref=order_ref,
                reported_status=event.reported_status,
            )
            return ReconciliationResult(
                action=ReconciliationAction.NO_OP,
                order_ref=order_ref,
                order_status=None,
                reason="not_terminal",
            )

        async with self._locks.hold(order_ref), self._store.lock_order(order_ref) as locked:
            order = await locked.get_order()
            if order is None:
                logger.warning("payment_event_order_missing", order_ref=order_ref)
                return ReconciliationResult(
                    action=ReconciliationAction.NO_OP,
                    order_ref=order_ref,
                    order_status=None,
                    reason="unknown_order",
                )

            reason = _conflict_reason(order, event, intent_status)
            if reason is not None:
                conflict = ReconciliationConflict(
                    order_ref=order_ref,
                    order_status=order.status,
                    provider=event.provider,
                    provider_payment_id=event.provider_payment_id,
                    reported_status=event.reported_status,
                )
                await locked.record_conflict(conflict, event)
                logger.warning(
                    "reconciliation_conflict_recorded",
                    order_ref=order_ref,
                    order_status=order.status.value,
                    reported_status=event.reported_status,
                    reason=reason,
                )
                return ReconciliationResult(
                    action=ReconciliationAction.NO_OP,
                    order_ref=order_ref,
                    order_status=order.status,
                    conflict=True,
                    reason=reason,
                )

            if _already_applied(order, intent_status):
                logger.info(
                    "payment_event_already_applied",
                    order_ref=order_ref,
                    order_status=order.status.value,
                )
                return ReconciliationResult(
                    action=ReconciliationAction.NO_OP,
                    order_ref=order_ref,
                    order_status=order.status,
                    reason="already_applied",
                )

            new_status = _ORDER_STATUS_FOR[intent_status]
            outcome = PaymentOutcome(
                order_ref=order_ref,
                new_status=new_status,
                expected_status=order.status,
                provider=event.provider,
                provider_payment_id=event.provider_payment_id,
                intent_status=intent_status,
                paid_at=event.received_at if new_status == OrderStatus.PAID else None,
            )
            effects = self._effects(outcome, order, intent)

            status = await locked.apply_payment_outcome(outcome, effects)
            if status == ApplyStatus.CONFLICT:
                return ReconciliationResult(
                    action=ReconciliationAction.NO_OP,
                    order_ref=order_ref,
                    order_status=order.status,
                    reason="stale_state",
                )

        logger.info(
            "payment_outcome_applied",
            order_ref=order_ref,
            previous_status=order.status.value,
            order_status=new_status.value,
            side_effects=len(effects),
        )
        return ReconciliationResult(
            action=ReconciliationAction.APPLIED,
            order_ref=order_ref,
            order_status=new_status,
        )

    def _resolve_order_ref(self, event: PaymentEvent, intent: PaymentIntent | None) -> str | None:
        """Polls trust our own intent record first; pushed events trust echoed metadata."""
        recorded = intent.order_ref if intent is not None else None
        hint = event.order_ref_hint
        if recorded is not None and hint is not None and recorded != hint:
            logger.warning(
                "payment_event_order_ref_mismatch",
                metadata_order_ref=hint,
                recorded_order_ref=recorded,
            )
        if event.received_via == EventChannel.POLL:
            return recorded or hint
        return hint or recorded

    def _effects(
        self, outcome: PaymentOutcome, order: OrderSnapshot, intent: PaymentIntent | None
    ) -> list[SideEffect]:
        if outcome.new_status != OrderStatus.PAID:
            return []

        if intent is not None:
            amount_minor, currency = intent.amount_minor, intent.currency
        elif order.amount_minor is not None and order.currency is not None:
            amount_minor, currency = order.amount_minor, order.currency
        else:
            logger.warning("payment_amount_unknown", order_ref=outcome.order_ref)
            return []

        return self._side_effects.effects_for(outcome, amount_minor, currency)


def _conflict_reason(
    order: OrderSnapshot, event: PaymentEvent, intent_status: IntentStatus
) -> str | None:
    """A terminal order contradicting the event. Paid orders are never downgraded."""
    if not order.status.is_paid:
        return None
    if intent_status != IntentStatus.SUCCEEDED:
        return "failure_after_payment"
    if order.payment_id is not None and order.payment_id != event.provider_payment_id:
        return "paid_by_other_payment"
    return None


def _already_applied(order: OrderSnapshot, intent_status: IntentStatus) -> bool:
    """Terminal order consistent with the event outcome."""
    if intent_status == IntentStatus.SUCCEEDED:
        return order.status.is_paid
    # A failure-family order absorbs further failures; a success still applies
    return order.status.is_payment_failure
