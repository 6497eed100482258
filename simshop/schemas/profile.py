import uuid
from datetime import datetime
from typing import Optional

from simshop.schemas.base import BaseResponseSchema


class EsimProfileResponse(BaseResponseSchema):
    id: uuid.UUID
    order_id: uuid.UUID
    esim_tran_no: Optional[str] = None
    iccid: Optional[str] = None
    qr_code_url: Optional[str] = None
    activation_code: Optional[str] = None
    smdp_status: Optional[str] = None
    status: Optional[str] = None
    capacity_bytes: Optional[int] = None
    used_bytes: Optional[int] = None
    expires_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None


class UsageHistoryResponse(BaseResponseSchema):
    used_bytes: int
    capacity_bytes: Optional[int] = None
    recorded_at: datetime
