"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
Provider metadata is stored as JSONB because it is opaque pass-through data.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


ORDER_STATUSES = (
    "'pending_payment', 'paid', 'payment_failed', 'payment_cancelled', "
    "'fulfilling', 'shipped', 'delivered'"
)
PROVIDERS = "'card_rail', 'bill_gateway', 'txn_gateway'"
INTENT_STATUSES = "'created', 'requires_action', 'succeeded', 'failed', 'canceled'"


class Order(Base):
    """
    ORM model for orders table.

    Only the payment-relevant columns of an order. Rows are locked with
    SELECT ... FOR UPDATE for every reconciliation write.
    """

    __tablename__ = "orders"

    order_ref: Mapped[str] = mapped_column(String(128), primary_key=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending_payment")

    # Stamped on successful payment
    payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Amount of the first intent created for the order
    amount_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(f"status IN ({ORDER_STATUSES})", name="ck_orders_status"),
        Index("idx_orders_status", "status"),
        Index("idx_orders_payment_id", "payment_id", postgresql_where=(payment_id.isnot(None))),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Order(order_ref={self.order_ref}, status={self.status})>"


class PaymentIntentRecord(Base):
    """
    ORM model for payment_intents table.

    Append-only: a retry creates a new row. Only status moves.
    """

    __tablename__ = "payment_intents"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    order_ref: Mapped[str] = mapped_column(String(128), nullable=False)

    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)

    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_metadata: Mapped[dict[str, str]] = mapped_column(
        JSONB, nullable=False, default=dict
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_payment_intents_amount_positive"),
        CheckConstraint(f"provider IN ({PROVIDERS})", name="ck_payment_intents_provider"),
        CheckConstraint(f"status IN ({INTENT_STATUSES})", name="ck_payment_intents_status"),
        UniqueConstraint("provider", "provider_payment_id", name="uq_payment_intents_provider_id"),
        Index("idx_payment_intents_order_ref", "order_ref"),
        Index("idx_payment_intents_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PaymentIntentRecord(provider={self.provider}, "
            f"provider_payment_id={self.provider_payment_id}, status={self.status})>"
        )


class PaymentRecord(Base):
    """
    ORM model for payment_records table.

    One row per confirmed payment. The unique constraint is the last guard
    against a duplicate side effect.
    """

    __tablename__ = "payment_records"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    order_ref: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)

    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_payment_records_amount_positive"),
        UniqueConstraint("provider", "provider_payment_id", name="uq_payment_records_provider_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PaymentRecord(order_ref={self.order_ref}, "
            f"provider_payment_id={self.provider_payment_id}, amount={self.amount_minor})>"
        )


class CommissionRecord(Base):
    """ORM model for commission_records table."""

    __tablename__ = "commission_records"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    order_ref: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    provider_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)

    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate_bps: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_minor >= 0", name="ck_commission_records_amount_non_negative"),
        CheckConstraint(
            "rate_bps BETWEEN 0 AND 10000", name="ck_commission_records_rate_bps"
        ),
        UniqueConstraint(
            "order_ref", "provider_payment_id", name="uq_commission_records_order_payment"
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<CommissionRecord(order_ref={self.order_ref}, amount={self.amount_minor})>"


class PaymentEventLog(Base):
    """
    ORM model for payment_event_log table.

    Append-only audit trail of every payment event seen by reconciliation.
    """

    __tablename__ = "payment_event_log"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    order_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    reported_status: Mapped[str] = mapped_column(String(64), nullable=False)
    received_via: Mapped[str] = mapped_column(String(32), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    raw_payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_payment_event_log_order_ref", "order_ref"),
        Index("idx_payment_event_log_provider_id", "provider", "provider_payment_id"),
        Index("idx_payment_event_log_created_at", "created_at", postgresql_using="brin"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PaymentEventLog(provider={self.provider}, "
            f"provider_payment_id={self.provider_payment_id}, via={self.received_via})>"
        )


class ReconciliationConflictRecord(Base):
    """
    ORM model for reconciliation_conflicts table.

    Events that contradict an order's terminal state, kept for manual review.
    """

    __tablename__ = "reconciliation_conflicts"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    order_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    order_status: Mapped[str] = mapped_column(String(32), nullable=False)
    order_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    reported_status: Mapped[str] = mapped_column(String(64), nullable=False)
    received_via: Mapped[str] = mapped_column(String(32), nullable=False)
    detail: Mapped[str] = mapped_column(Text, nullable=False)

    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_reconciliation_conflicts_order_ref", "order_ref"),
        Index(
            "idx_reconciliation_conflicts_unresolved",
            "created_at",
            postgresql_where=(resolved.is_(False)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<ReconciliationConflictRecord(order_ref={self.order_ref}, "
            f"provider_payment_id={self.provider_payment_id})>"
        )
