"""
Order Store - Transactional boundary between reconciliation and order state.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from collections.abc import AsyncIterator, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from app.db.models import (
    CommissionRecord,
    Order,
    PaymentEventLog,
    PaymentIntentRecord,
    PaymentRecord,
    ReconciliationConflictRecord,
)
from app.exceptions import ReconciliationConflict
from app.models.domain import (
    ApplyStatus,
    CommissionEffect,
    IntentStatus,
    OrderSnapshot,
    OrderStatus,
    PaymentEvent,
    PaymentIntent,
    PaymentOutcome,
    PaymentRecordEffect,
    Provider,
    SideEffect,
)

logger = get_logger(__name__)

_TERMINAL_INTENT_STATUSES = [status.value for status in IntentStatus if status.is_terminal]


class LockedOrder(Protocol):
    """An order held under its row lock for one transaction."""

    async def get_order(self) -> OrderSnapshot | None:
        """Read the order. Must be called under the lock, before deciding."""
        ...

    async def apply_payment_outcome(
        self, outcome: PaymentOutcome, side_effects: Sequence[SideEffect]
    ) -> ApplyStatus:
        """
        Write the outcome and its side effects atomically.

        Returns CONFLICT, writing nothing, if the order is no longer in
        outcome.expected_status or a side effect already exists.
        """
        ...

    async def record_conflict(
        self, conflict: ReconciliationConflict, event: PaymentEvent
    ) -> None:
        """Persist a conflicting event for manual review."""
        ...


class OrderStore(Protocol):
    """Order persistence as seen by the reconciliation engine."""

    def lock_order(self, order_ref: str) -> AbstractAsyncContextManager[LockedOrder]:
        """Open a transaction holding the order's row lock."""
        ...

    async def append_audit(self, event: PaymentEvent, order_ref: str | None) -> None:
        """Append an event to the payment event log."""
        ...


class IntentStore(Protocol):
    """Append-only record of created payment intents."""

    async def record_intent(self, intent: PaymentIntent, idempotency_key: str) -> None:
        """Persist a newly created intent (and a pending order if none exists)."""
        ...

    async def find_intent(
        self, provider: Provider, provider_payment_id: str
    ) -> PaymentIntent | None:
        """Look up an intent by its provider-side id."""
        ...

    async def advance_intent_status(
        self, provider: Provider, provider_payment_id: str, status: IntentStatus
    ) -> None:
        """Move a non-terminal intent to a new non-terminal status."""
        ...


class _SqlLockedOrder:
    """LockedOrder over one SQLAlchemy session inside an open transaction."""

    def __init__(self, session: AsyncSession, order_ref: str) -> None:
        self._session = session
        self._order_ref = order_ref
        self._row: Order | None = None

    async def get_order(self) -> OrderSnapshot | None:
        stmt = select(Order).where(Order.order_ref == self._order_ref).with_for_update()
        result = await self._session.execute(stmt)
        self._row = result.scalar_one_or_none()
        if self._row is None:
            return None
        return _snapshot(self._row)

    async def apply_payment_outcome(
        self, outcome: PaymentOutcome, side_effects: Sequence[SideEffect]
    ) -> ApplyStatus:
        row = self._row
        if row is None:
            row = await self._session.get(Order, outcome.order_ref, with_for_update=True)
        if row is None or row.status != outcome.expected_status.value:
            logger.warning(
                "order_state_changed_under_lock",
                order_ref=outcome.order_ref,
                expected=outcome.expected_status.value,
                actual=row.status if row is not None else None,
            )
            return ApplyStatus.CONFLICT

        try:
            async with self._session.begin_nested():
                row.status = outcome.new_status.value
                if outcome.new_status == OrderStatus.PAID:
                    row.payment_id = outcome.provider_payment_id
                    row.paid_at = outcome.paid_at

                await self._session.execute(
                    update(PaymentIntentRecord)
                    .where(
                        PaymentIntentRecord.provider == outcome.provider.value,
                        PaymentIntentRecord.provider_payment_id == outcome.provider_payment_id,
                    )
                    .values(status=outcome.intent_status.value)
                )

                for effect in side_effects:
                    self._session.add(_side_effect_row(effect))

                await self._session.flush()
        except IntegrityError as exc:
            logger.warning(
                "payment_outcome_rejected_by_constraint",
                order_ref=outcome.order_ref,
                provider_payment_id=outcome.provider_payment_id,
                error=str(exc.orig),
            )
            return ApplyStatus.CONFLICT

        return ApplyStatus.COMMITTED

    async def record_conflict(
        self, conflict: ReconciliationConflict, event: PaymentEvent
    ) -> None:
        self._session.add(
            ReconciliationConflictRecord(
                order_ref=conflict.order_ref,
                order_status=conflict.order_status.value,
                order_payment_id=self._row.payment_id if self._row is not None else None,
                provider=conflict.provider.value,
                provider_payment_id=conflict.provider_payment_id,
                reported_status=conflict.reported_status,
                received_via=event.received_via.value,
                detail=str(conflict),
            )
        )
        await self._session.flush()


class SqlOrderStore:
    """
    OrderStore and IntentStore over PostgreSQL.

    Every lock_order block is one transaction: it commits when the block exits
    normally and rolls back if it raises.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def lock_order(self, order_ref: str) -> AsyncIterator[LockedOrder]:
        async with self._session_factory() as session:
            async with session.begin():
                yield _SqlLockedOrder(session, order_ref)

    async def append_audit(self, event: PaymentEvent, order_ref: str | None) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    PaymentEventLog(
                        order_ref=order_ref,
                        provider=event.provider.value,
                        provider_payment_id=event.provider_payment_id,
                        reported_status=event.reported_status,
                        received_via=event.received_via.value,
                        received_at=event.received_at,
                        raw_payload=event.raw_payload,
                    )
                )

    async def record_intent(self, intent: PaymentIntent, idempotency_key: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                # Orders are created pending on their first intent
                await session.execute(
                    insert(Order)
                    .values(
                        order_ref=intent.order_ref,
                        status=OrderStatus.PENDING_PAYMENT.value,
                        amount_minor=intent.amount_minor,
                        currency=intent.currency,
                    )
                    .on_conflict_do_nothing(index_elements=[Order.order_ref])
                )
                session.add(
                    PaymentIntentRecord(
                        provider=intent.provider.value,
                        provider_payment_id=intent.id,
                        order_ref=intent.order_ref,
                        amount_minor=intent.amount_minor,
                        currency=intent.currency,
                        status=intent.status.value,
                        idempotency_key=idempotency_key,
                        provider_metadata=dict(intent.metadata),
                    )
                )

        logger.info(
            "payment_intent_recorded",
            provider=intent.provider.value,
            provider_payment_id=intent.id,
            order_ref=intent.order_ref,
        )

    async def find_intent(
        self, provider: Provider, provider_payment_id: str
    ) -> PaymentIntent | None:
        async with self._session_factory() as session:
            stmt = select(PaymentIntentRecord).where(
                PaymentIntentRecord.provider == provider.value,
                PaymentIntentRecord.provider_payment_id == provider_payment_id,
            )
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()

        if row is None:
            return None
        return PaymentIntent(
            id=row.provider_payment_id,
            provider=Provider(row.provider),
            order_ref=row.order_ref,
            amount_minor=row.amount_minor,
            currency=row.currency,
            status=IntentStatus(row.status),
            metadata=dict(row.provider_metadata),
        )

    async def advance_intent_status(
        self, provider: Provider, provider_payment_id: str, status: IntentStatus
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(PaymentIntentRecord)
                    .where(
                        PaymentIntentRecord.provider == provider.value,
                        PaymentIntentRecord.provider_payment_id == provider_payment_id,
                        PaymentIntentRecord.status.not_in(_TERMINAL_INTENT_STATUSES),
                    )
                    .values(status=status.value)
                )


def _snapshot(row: Order) -> OrderSnapshot:
    return OrderSnapshot(
        order_ref=row.order_ref,
        status=OrderStatus(row.status),
        payment_id=row.payment_id,
        paid_at=row.paid_at,
        amount_minor=row.amount_minor,
        currency=row.currency,
    )


def _side_effect_row(effect: SideEffect) -> PaymentRecord | CommissionRecord:
    if isinstance(effect, PaymentRecordEffect):
        return PaymentRecord(
            order_ref=effect.order_ref,
            provider=effect.provider.value,
            provider_payment_id=effect.provider_payment_id,
            amount_minor=effect.amount_minor,
            currency=effect.currency,
        )
    if isinstance(effect, CommissionEffect):
        return CommissionRecord(
            order_ref=effect.order_ref,
            provider_payment_id=effect.provider_payment_id,
            amount_minor=effect.amount_minor,
            currency=effect.currency,
            rate_bps=effect.rate_bps,
        )
    raise TypeError(f"Unknown side effect: {effect!r}")
