"""
eSIM endpoints: provider callbacks, profile lookup, lifecycle actions and
usage history.
"""

import logging
import uuid
from typing import Any, Dict, List

from fastapi import APIRouter, Body, HTTPException, status

from simshop.api.deps import DB, Context, AdminEmail
from simshop.schemas.profile import EsimProfileResponse, UsageHistoryResponse
from simshop.services.esim_provider import ProviderAPIError
from simshop.services.profile_service import ProfileActionError, ProfileNotFoundError, ProfileService
from simshop.services.provisioning_service import ProvisioningOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


# ==================== Provider callbacks ====================

@router.post("/webhook", include_in_schema=False)
async def provider_webhook(context: Context, payload: Dict[str, Any] = Body(...)):
    """
    Provider notifications.

    ORDER_STATUS carries the provider order no; the waiting order is resumed
    in the background. Other notification types are acknowledged only.
    """
    notify_type = payload.get("notifyType")
    content = payload.get("content") or {}
    logger.info(f"[PROVISION] Provider notification {notify_type}: {content}")

    if notify_type != "ORDER_STATUS":
        return {"status": "ignored", "notify_type": notify_type}

    order_no = content.get("orderNo")
    if not order_no:
        return {"status": "ignored", "notify_type": notify_type}

    order_id = await ProvisioningOrchestrator(context).handle_provider_notification(order_no)
    return {
        "status": "ok",
        "notify_type": notify_type,
        "order_id": str(order_id) if order_id else None,
    }


# ==================== Profiles ====================

def _profile_error(e: Exception) -> HTTPException:
    if isinstance(e, ProfileNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    if isinstance(e, ProviderAPIError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)
    return HTTPException(status_code=e.status_code, detail=e.message)


PROFILE_ERRORS = (ProfileNotFoundError, ProfileActionError, ProviderAPIError)


@router.get("/orders/{order_id}/profiles", response_model=List[EsimProfileResponse])
async def list_order_profiles(order_id: uuid.UUID, db: DB, context: Context):
    return await ProfileService(context, db).list_for_order(order_id)


@router.get("/profiles/{profile_id}", response_model=EsimProfileResponse)
async def get_profile(profile_id: uuid.UUID, db: DB, context: Context):
    try:
        return await ProfileService(context, db).get_profile(profile_id)
    except PROFILE_ERRORS as e:
        raise _profile_error(e)


@router.get("/profiles/{profile_id}/usage", response_model=List[UsageHistoryResponse])
async def get_usage_history(profile_id: uuid.UUID, db: DB, context: Context, limit: int = 100):
    service = ProfileService(context, db)
    try:
        await service.get_profile(profile_id)
    except PROFILE_ERRORS as e:
        raise _profile_error(e)
    return await service.usage_history(profile_id, limit=min(max(limit, 1), 500))


@router.post("/profiles/{profile_id}/suspend", response_model=EsimProfileResponse)
async def suspend_profile(profile_id: uuid.UUID, db: DB, context: Context, admin: AdminEmail):
    try:
        return await ProfileService(context, db).suspend(profile_id)
    except PROFILE_ERRORS as e:
        raise _profile_error(e)


@router.post("/profiles/{profile_id}/unsuspend", response_model=EsimProfileResponse)
async def unsuspend_profile(profile_id: uuid.UUID, db: DB, context: Context, admin: AdminEmail):
    try:
        return await ProfileService(context, db).unsuspend(profile_id)
    except PROFILE_ERRORS as e:
        raise _profile_error(e)


@router.post("/profiles/{profile_id}/revoke", response_model=EsimProfileResponse)
async def revoke_profile(profile_id: uuid.UUID, db: DB, context: Context, admin: AdminEmail):
    try:
        return await ProfileService(context, db).revoke(profile_id)
    except PROFILE_ERRORS as e:
        raise _profile_error(e)
