import uuid
from typing import Optional, List, Dict

from pydantic import BaseModel, Field

from simshop.models.order import RefundMethod


class RefundRequest(BaseModel):
    method: RefundMethod
    amount_cents: Optional[int] = Field(None, gt=0, description="Reference-currency cents, defaults to the full amount")


class RetryResponse(BaseModel):
    order_id: uuid.UUID
    status: Optional[str] = None


class SettingsResponse(BaseModel):
    mock_mode: bool
    default_markup_percent: int
    default_currency: str
    admin_emails: List[str]
    pricing: Dict[str, float]
    discounts: Dict[str, int]
    email_enabled: bool


class SettingsUpdate(BaseModel):
    """Partial update; omitted fields keep their current value."""
    mock_mode: Optional[bool] = None
    default_markup_percent: Optional[int] = Field(None, ge=0, le=1000)
    default_currency: Optional[str] = Field(None, min_length=3, max_length=3)
    admin_emails: Optional[List[str]] = None
    pricing: Optional[Dict[str, float]] = None
    discounts: Optional[Dict[str, int]] = None
    email_enabled: Optional[bool] = None


class JobStatus(BaseModel):
    id: str
    name: str
    next_run_time: Optional[str] = None
    trigger: str
