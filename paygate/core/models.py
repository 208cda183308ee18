from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from paygate.core.constants import (
    OrderPaymentStatus,
    PaymentMethod,
    PaymentStatus,
)

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Order(Base):
    """
    Order as seen by the payment layer.

    Orders are owned by the order-processing module; only the columns read or
    written here are mapped.
    """

    __tablename__ = "orders"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[str] = mapped_column(String(64), primary_key=True, comment="Order ID")
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, comment="Order total"
    )
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, comment="ISO 4217 currency code"
    )
    payment_status: Mapped[OrderPaymentStatus] = mapped_column(
        Enum(OrderPaymentStatus, name="order_payment_status"),
        nullable=False,
        default=OrderPaymentStatus.pending,
        comment="Order payment status",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    payments: Mapped[list["PaymentRecord"]] = relationship(back_populates="order")


class PaymentRecord(Base):
    """One payment attempt against an order"""

    __tablename__ = "payment_records"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        UniqueConstraint(
            "method",
            "external_transaction_id",
            name="uq_payment_records_method_external_transaction_id",
        ),
        CheckConstraint("amount > 0", name="ck_payment_records_amount_positive"),
        CheckConstraint(
            "(status IN ('completed', 'refunded') AND paid_at IS NOT NULL)"
            " OR (status NOT IN ('completed', 'refunded') AND paid_at IS NULL)",
            name="ck_payment_records_paid_at_matches_status",
        ),
        # at most one unresolved attempt per order
        Index(
            "uq_payment_records_order_pending",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_payment_records_order_created_at", "order_id", "created_at"),
        Index("ix_payment_records_status_created_at", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        comment="Payment record ID",
    )
    order_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Order ID (FK orders.id)",
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, comment="Amount in major units"
    )
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, comment="ISO 4217 currency code"
    )
    method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod, name="payment_method"),
        nullable=False,
        comment="Gateway or cash",
    )
    external_transaction_id: Mapped[str] = mapped_column(
        String(128), nullable=False, comment="Provider-assigned transaction ID"
    )
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status"),
        nullable=False,
        default=PaymentStatus.pending,
        comment="Standardized payment status",
    )
    paid_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Set once on completion"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    order: Mapped["Order"] = relationship(back_populates="payments")
    refunds: Mapped[list["RefundRecord"]] = relationship(back_populates="payment")


class RefundRecord(Base):
    """
    Refunds against a payment.

    A row is written as pending before the provider is called and ends
    refunded or failed. Several partial refunds may exist for one payment;
    the sum of pending and refunded rows never exceeds the payment amount.
    """

    __tablename__ = "refund_records"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_refund_records_amount_positive"),
        Index("ix_refund_records_payment_created_at", "payment_record_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    payment_record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payment_records.id", ondelete="RESTRICT"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="refund_status"),
        nullable=False,
        default=PaymentStatus.pending,
    )
    provider_refund_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True, comment="Provider-side refund ID"
    )
    extra_data: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType, nullable=True, comment="Provider refund payload"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    payment: Mapped["PaymentRecord"] = relationship(back_populates="refunds")
