import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from simshop.database import Base
from simshop.db_types import JSONType, UUIDType, utcnow


class BalanceTransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class BalanceAccount(Base):
    """Stored-value balance, reference-currency cents. Never negative."""
    __tablename__ = "balance_accounts"
    __table_args__ = (
        CheckConstraint('balance_cents >= 0', name='ck_balance_non_negative'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False
    )
    balance_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )


class BalanceTransaction(Base):
    """Append-only ledger entry for a balance account."""
    __tablename__ = "balance_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("balance_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    type: Mapped[str] = mapped_column(String(10), nullable=False, comment="credit, debit")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, index=True)
    extra_data: Mapped[Optional[dict]] = mapped_column(JSONType)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
