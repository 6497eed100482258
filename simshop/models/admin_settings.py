from datetime import datetime
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from simshop.database import Base
from simshop.db_types import JSONType, utcnow


SETTINGS_ROW_ID = "settings"


class AdminSettings(Base):
    """
    Runtime-editable storefront settings. Single row keyed 'settings'.

    pricing maps plan code -> USD price override.
    discounts maps promo code -> percent off.
    """
    __tablename__ = "admin_settings"

    id: Mapped[str] = mapped_column(String(20), primary_key=True, default=SETTINGS_ROW_ID)
    mock_mode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    default_markup_percent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    default_currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    admin_emails: Mapped[Optional[list]] = mapped_column(JSONType)
    pricing: Mapped[Optional[dict]] = mapped_column(JSONType)
    discounts: Mapped[Optional[dict]] = mapped_column(JSONType)
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )
