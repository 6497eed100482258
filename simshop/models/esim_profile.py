import uuid
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import String, DateTime, ForeignKey, BigInteger
from sqlalchemy.orm import Mapped, mapped_column, relationship

from simshop.database import Base
from simshop.db_types import UUIDType, utcnow

if TYPE_CHECKING:
    from simshop.models.order import Order


class EsimProfile(Base):
    """
    Provisioned SIM profile for an order.

    One per order in the normal flow; re-provisioning updates the existing row
    (matched by order_id) instead of inserting a second one.
    """
    __tablename__ = "esim_profiles"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    # Provider identifiers
    esim_tran_no: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    iccid: Mapped[Optional[str]] = mapped_column(String(50), index=True)

    # Install payload
    qr_code_url: Mapped[Optional[str]] = mapped_column(String(500))
    activation_code: Mapped[Optional[str]] = mapped_column(String(500))
    smdp_status: Mapped[Optional[str]] = mapped_column(String(50))

    status: Mapped[Optional[str]] = mapped_column(
        String(50),
        comment="Mirrored from the provider, e.g. GOT_RESOURCE, IN_USE, SUSPENDED, REVOKED"
    )
    capacity_bytes: Mapped[Optional[int]] = mapped_column(BigInteger)
    used_bytes: Mapped[Optional[int]] = mapped_column(BigInteger)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

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

    order: Mapped["Order"] = relationship("Order", back_populates="profiles")
    usage_history: Mapped[List["UsageHistory"]] = relationship(
        "UsageHistory",
        back_populates="profile",
        cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<EsimProfile(iccid='{self.iccid}', status='{self.status}')>"


class UsageHistory(Base):
    """Data usage snapshot, recorded whenever used_bytes changes."""
    __tablename__ = "esim_usage_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    profile_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("esim_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    used_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    capacity_bytes: Mapped[Optional[int]] = mapped_column(BigInteger)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    profile: Mapped["EsimProfile"] = relationship("EsimProfile", back_populates="usage_history")
