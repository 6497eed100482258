"""
Storefront order endpoints.

Checkout, the second-step payment session, pending-order edits (email,
promo) and the customer-requested receipt resend.
"""

import logging
import uuid

from fastapi import APIRouter, HTTPException, status

from simshop.api.deps import DB, Context
from simshop.models.order import OrderStatus
from simshop.schemas.order import (
    CheckoutRequest,
    CheckoutResponse,
    NotificationResponse,
    OrderDetailResponse,
    OrderEmailUpdate,
    OrderResponse,
    PaymentSessionRequest,
    PaymentSessionResponse,
    PromoApplyRequest,
)
from simshop.services.balance_service import InsufficientBalanceError
from simshop.services.checkout_service import CheckoutError, CheckoutService, OrderNotFoundError
from simshop.services.email_service import NotificationTemplate
from simshop.services.notification_service import OrderNotifier
from simshop.services.payment_service import GatewayError

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(e: Exception) -> HTTPException:
    """Translate checkout-path service errors into HTTP errors."""
    if isinstance(e, OrderNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    if isinstance(e, InsufficientBalanceError):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": e.message,
                "available_cents": e.available_cents,
                "required_cents": e.required_cents,
            },
        )
    if isinstance(e, GatewayError):
        return HTTPException(status_code=e.status_code, detail={"message": e.message, **e.details})
    # CheckoutError
    detail = {"message": e.message, **e.details} if e.details else e.message
    return HTTPException(status_code=e.status_code, detail=detail)


SERVICE_ERRORS = (OrderNotFoundError, InsufficientBalanceError, GatewayError, CheckoutError)


# ==================== Checkout ====================

@router.post("", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def create_checkout(data: CheckoutRequest, db: DB, context: Context):
    """
    Create an order.

    Gateway payments return the pending order with its payment session.
    Balance payments are debited and reconciled before returning.
    """
    service = CheckoutService(context, db)
    try:
        result = await service.create_checkout(
            plan_id=data.plan_id,
            amount_usd_cents=data.amount_usd_cents,
            target_currency=data.currency,
            payment_method=data.payment_method.value,
            email=data.email,
            referral_code=data.referral_code,
        )
    except SERVICE_ERRORS as e:
        raise _http_error(e)

    return CheckoutResponse(
        order_id=result.order_id,
        success=result.success,
        status=result.status,
        display_currency=result.display_currency,
        display_amount_cents=result.display_amount_cents,
        payment_session=(
            PaymentSessionResponse(**result.payment_session.model_dump())
            if result.payment_session else None
        ),
    )


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order(order_id: uuid.UUID, db: DB, context: Context):
    try:
        order = await CheckoutService(context, db).get_order(order_id, with_details=True)
    except OrderNotFoundError as e:
        raise _http_error(e)
    return order


@router.post("/{order_id}/checkout", response_model=PaymentSessionResponse)
async def open_payment_session(order_id: uuid.UUID, data: PaymentSessionRequest, db: DB, context: Context):
    """Open (or reopen) the gateway payment session for a pending order."""
    try:
        session = await CheckoutService(context, db).open_payment_session(
            order_id,
            referral_code=data.referral_code,
            email=data.email,
        )
    except SERVICE_ERRORS as e:
        raise _http_error(e)
    return PaymentSessionResponse(**session.model_dump())


# ==================== Pending order edits ====================

@router.post("/{order_id}/email", response_model=OrderResponse)
async def update_order_email(order_id: uuid.UUID, data: OrderEmailUpdate, db: DB, context: Context):
    try:
        return await CheckoutService(context, db).update_order_email(order_id, data.email)
    except SERVICE_ERRORS as e:
        raise _http_error(e)


@router.post("/{order_id}/promo", response_model=OrderResponse)
async def apply_promo(order_id: uuid.UUID, data: PromoApplyRequest, db: DB, context: Context):
    try:
        return await CheckoutService(context, db).apply_promo(order_id, data.code)
    except SERVICE_ERRORS as e:
        raise _http_error(e)


@router.delete("/{order_id}/promo", response_model=OrderResponse)
async def remove_promo(order_id: uuid.UUID, db: DB, context: Context):
    try:
        return await CheckoutService(context, db).remove_promo(order_id)
    except SERVICE_ERRORS as e:
        raise _http_error(e)


# ==================== Notifications ====================

@router.post("/{order_id}/resend-receipt", response_model=NotificationResponse)
async def resend_receipt(order_id: uuid.UUID, db: DB, context: Context):
    """
    Customer-requested receipt. Independent of the one-time "eSIM ready"
    email, so it can be sent any number of times.
    """
    try:
        order = await CheckoutService(context, db).get_order(order_id)
    except OrderNotFoundError as e:
        raise _http_error(e)
    if order.status in (OrderStatus.PENDING.value, OrderStatus.CANCELLED.value):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"No receipt for an order that is {order.status}",
        )

    template = NotificationTemplate.RECEIPT.value
    result = await OrderNotifier(context).send_for_order(order_id, template)
    return NotificationResponse(order_id=order_id, template=template, result=result.value)
