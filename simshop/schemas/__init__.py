from simshop.schemas.base import BaseResponseSchema
from simshop.schemas.order import (
    CheckoutRequest,
    CheckoutResponse,
    OrderResponse,
    OrderDetailResponse,
    PaymentSessionRequest,
    PaymentSessionResponse,
    OrderEmailUpdate,
    PromoApplyRequest,
    NotificationResponse,
)
from simshop.schemas.profile import EsimProfileResponse, UsageHistoryResponse
from simshop.schemas.admin import RefundRequest, RetryResponse, SettingsResponse, SettingsUpdate, JobStatus

__all__ = [
    "BaseResponseSchema",
    "CheckoutRequest",
    "CheckoutResponse",
    "OrderResponse",
    "OrderDetailResponse",
    "PaymentSessionRequest",
    "PaymentSessionResponse",
    "OrderEmailUpdate",
    "PromoApplyRequest",
    "NotificationResponse",
    "EsimProfileResponse",
    "UsageHistoryResponse",
    "RefundRequest",
    "RetryResponse",
    "SettingsResponse",
    "SettingsUpdate",
    "JobStatus",
]
