"""
Admin endpoints: manual provisioning retry, refunds, on-demand sweeps,
runtime settings and scheduler status.

Every route requires an X-Admin-Email header from the admin list.
"""

import logging
import uuid
from dataclasses import asdict
from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, status

from simshop.api.deps import DB, Context, AdminEmail
from simshop.jobs.order_jobs import retry_pending_orders, sync_esim_profiles
from simshop.jobs.scheduler import get_job_status
from simshop.schemas.admin import (
    JobStatus,
    RefundRequest,
    RetryResponse,
    SettingsResponse,
    SettingsUpdate,
)
from simshop.schemas.order import OrderResponse
from simshop.services.checkout_service import OrderNotFoundError
from simshop.services.payment_service import GatewayError
from simshop.services.provisioning_service import ProvisioningOrchestrator, ProvisioningRejectedError
from simshop.services.refund_service import RefundError, RefundService

logger = logging.getLogger(__name__)

router = APIRouter()


# ==================== Orders ====================

@router.post("/orders/{order_id}/retry", response_model=RetryResponse)
async def retry_order(order_id: uuid.UUID, context: Context, admin: AdminEmail):
    """Re-drive provisioning for one order and report where it ended up."""
    logger.info(f"[RETRY] Manual retry of {order_id} requested by {admin}")
    try:
        new_status = await ProvisioningOrchestrator(context).retry(order_id)
    except ProvisioningRejectedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    if new_status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Order {order_id} not found")
    return RetryResponse(order_id=order_id, status=new_status)


@router.post("/orders/{order_id}/refund", response_model=OrderResponse)
async def refund_order(order_id: uuid.UUID, data: RefundRequest, db: DB, context: Context, admin: AdminEmail):
    logger.info(f"[REFUND] {data.method.value} refund of {order_id} requested by {admin}")
    try:
        return await RefundService(context, db).refund(order_id, data.method.value, data.amount_cents)
    except OrderNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except RefundError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except GatewayError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# ==================== Sweeps ====================

@router.post("/jobs/retry-sweep")
async def run_retry_sweep(context: Context, admin: AdminEmail) -> Dict[str, Any]:
    return await retry_pending_orders(context)


@router.post("/jobs/profile-sync")
async def run_profile_sync(context: Context, admin: AdminEmail) -> Dict[str, int]:
    return await sync_esim_profiles(context)


@router.get("/jobs", response_model=List[JobStatus])
async def list_jobs(admin: AdminEmail):
    return get_job_status()


# ==================== Settings ====================

@router.get("/settings", response_model=SettingsResponse)
async def get_settings(context: Context, admin: AdminEmail):
    snapshot = await context.settings_service.get()
    return SettingsResponse(**asdict(snapshot))


@router.put("/settings", response_model=SettingsResponse)
async def update_settings(data: SettingsUpdate, context: Context, admin: AdminEmail):
    changes = data.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No settings to update")
    try:
        snapshot = await context.settings_service.update(changes)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    logger.info(f"Settings {', '.join(sorted(changes))} updated by {admin}")
    return SettingsResponse(**asdict(snapshot))
