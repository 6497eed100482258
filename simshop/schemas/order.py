import uuid
from datetime import datetime
from typing import Optional, List, Dict

from pydantic import BaseModel, Field, EmailStr

from simshop.models.order import PaymentMethod
from simshop.schemas.base import BaseResponseSchema
from simshop.schemas.profile import EsimProfileResponse


# ==================== Requests ====================

class CheckoutRequest(BaseModel):
    """Storefront checkout."""
    plan_id: str = Field(..., min_length=1, max_length=100, description="Provider package code")
    amount_usd_cents: int = Field(..., gt=0, description="Price in reference-currency cents")
    currency: Optional[str] = Field(
        None, min_length=3, max_length=3, description="Display currency to charge in; store default when omitted"
    )
    payment_method: PaymentMethod = PaymentMethod.GATEWAY
    email: Optional[EmailStr] = None
    referral_code: Optional[str] = Field(None, max_length=50)


class PaymentSessionRequest(BaseModel):
    referral_code: Optional[str] = Field(None, max_length=50)
    email: Optional[EmailStr] = None


class OrderEmailUpdate(BaseModel):
    email: EmailStr


class PromoApplyRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)


# ==================== Responses ====================

class PaymentSessionResponse(BaseModel):
    session_id: str
    order_id: uuid.UUID
    amount_cents: int
    currency: str
    key_id: str
    notes: Dict[str, str] = {}


class CheckoutResponse(BaseModel):
    order_id: uuid.UUID
    success: bool
    status: str
    display_currency: str
    display_amount_cents: int
    payment_session: Optional[PaymentSessionResponse] = None


class OrderAdjustmentResponse(BaseResponseSchema):
    sequence: int
    action: str
    promo_code: Optional[str] = None
    percent_off: int
    amount_cents_before: int
    amount_cents_after: int
    display_amount_cents_before: int
    display_amount_cents_after: int
    created_at: datetime


class OrderResponse(BaseResponseSchema):
    """Order response schema."""
    id: uuid.UUID
    user_id: uuid.UUID
    plan_id: str
    amount_cents: int
    currency: str
    display_currency: str
    display_amount_cents: int
    fx_rate: Optional[str] = None
    status: str
    payment_method: str
    payment_ref: Optional[str] = None
    referral_code: Optional[str] = None
    provider_order_no: Optional[str] = None
    receipt_sent: bool
    refunded_at: Optional[datetime] = None
    refund_amount_cents: Optional[int] = None
    refund_method: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class OrderDetailResponse(OrderResponse):
    """Order with its profiles and promo history."""
    profiles: List[EsimProfileResponse] = []
    adjustments: List[OrderAdjustmentResponse] = []


class NotificationResponse(BaseModel):
    order_id: uuid.UUID
    template: str
    result: str
