import uuid
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from simshop.database import Base
from simshop.db_types import UUIDType, utcnow

if TYPE_CHECKING:
    from simshop.models.user import User
    from simshop.models.esim_profile import EsimProfile


class OrderStatus(str, Enum):
    """Order lifecycle from payment to provisioned profile."""
    PENDING = "pending"                  # Created, payment not confirmed
    PAID = "paid"                        # Payment confirmed, provisioning not finished
    ESIM_ORDER_FAILED = "esim_order_failed"  # Provider order call errored
    ESIM_NO_ORDERNO = "esim_no_orderno"  # Provider accepted but returned no order no
    ESIM_PENDING = "esim_pending"        # Order no stored, profile not ready yet
    ESIM_CREATED = "esim_created"        # Profile stored
    CANCELLED = "cancelled"              # Refunded


# Statuses the retry sweep re-drives
RETRYABLE_STATUSES = (
    OrderStatus.ESIM_ORDER_FAILED.value,
    OrderStatus.ESIM_PENDING.value,
    OrderStatus.ESIM_NO_ORDERNO.value,
)

# Statuses from which the orchestrator may start or resume provisioning
PROVISIONABLE_STATUSES = (OrderStatus.PAID.value,) + RETRYABLE_STATUSES


class PaymentMethod(str, Enum):
    GATEWAY = "gateway"
    BALANCE = "balance"


class RefundMethod(str, Enum):
    CARD = "card"
    BALANCE = "balance"


class Order(Base):
    """
    A purchase of one plan.

    amount_cents is always in the reference currency (USD cents);
    display_currency/display_amount_cents hold what the customer was charged.
    """
    __tablename__ = "orders"
    __table_args__ = (
        Index('ix_order_status_created', 'status', 'created_at'),
        Index('ix_order_user_created', 'user_id', 'created_at'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False
    )
    plan_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Provider package code"
    )

    # Money
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    display_currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    display_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    fx_rate: Mapped[Optional[str]] = mapped_column(
        String(32),
        comment="Display-currency units per USD used at checkout"
    )

    status: Mapped[str] = mapped_column(
        String(30),
        default=OrderStatus.PENDING.value,
        nullable=False,
        index=True,
        comment="pending, paid, esim_order_failed, esim_no_orderno, esim_pending, esim_created, cancelled"
    )

    # Payment
    payment_method: Mapped[str] = mapped_column(
        String(20),
        default=PaymentMethod.GATEWAY.value,
        nullable=False
    )
    payment_ref: Mapped[Optional[str]] = mapped_column(
        String(100),
        unique=True,
        nullable=True,
        comment="Gateway payment id or synthetic balance reference"
    )
    gateway_session_id: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    referral_code: Mapped[Optional[str]] = mapped_column(String(50))

    # Provisioning
    provider_order_no: Mapped[Optional[str]] = mapped_column(String(100), index=True)

    # Refund
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refund_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    refund_method: Mapped[Optional[str]] = mapped_column(String(20))

    receipt_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="orders")
    profiles: Mapped[List["EsimProfile"]] = relationship(
        "EsimProfile",
        back_populates="order"
    )
    adjustments: Mapped[List["OrderAdjustment"]] = relationship(
        "OrderAdjustment",
        back_populates="order",
        order_by="OrderAdjustment.sequence"
    )

    @property
    def is_retryable(self) -> bool:
        return self.status in RETRYABLE_STATUSES

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, status='{self.status}', amount_cents={self.amount_cents})>"


class OrderAdjustment(Base):
    """Audit row for a promo applied to or removed from a pending order."""
    __tablename__ = "order_adjustments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, comment="1-based position within the order")
    action: Mapped[str] = mapped_column(String(20), nullable=False, comment="apply, remove")
    promo_code: Mapped[Optional[str]] = mapped_column(String(50))
    percent_off: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    amount_cents_before: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents_after: Mapped[int] = mapped_column(Integer, nullable=False)
    display_amount_cents_before: Mapped[int] = mapped_column(Integer, nullable=False)
    display_amount_cents_after: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="adjustments")
