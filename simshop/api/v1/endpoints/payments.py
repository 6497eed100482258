import json
import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request, status

from simshop.api.deps import DB, Context
from simshop.services.reconciliation_service import PaymentReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


# ==================== WEBHOOK ENDPOINT ====================

@router.post(
    "/webhook",
    summary="Razorpay webhook handler",
    description="Handle payment events from Razorpay. This endpoint is called by Razorpay servers.",
    include_in_schema=False  # Hide from API docs for security
)
async def razorpay_webhook(
    request: Request,
    db: DB,
    context: Context,
    x_razorpay_signature: Optional[str] = Header(None, alias="X-Razorpay-Signature"),
):
    """
    Handle Razorpay webhook events.

    Events handled:
    - payment.captured / order.paid: reconciled into a paid order

    Everything else is acknowledged and ignored.

    Security:
    - Verifies webhook signature using RAZORPAY_WEBHOOK_SECRET
    - Idempotent: Safe to receive duplicate events
    """
    # Get raw body for signature verification
    body = await request.body()

    if not context.gateway.verify_webhook_signature(body, x_razorpay_signature or ""):
        logger.warning("[RECONCILE] Webhook signature verification failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )

    event_name = payload.get("event") if isinstance(payload, dict) else None
    logger.info(f"[RECONCILE] Received Razorpay webhook: {event_name}")

    try:
        event = context.gateway.parse_webhook(payload)
        if event is None:
            logger.info(f"[RECONCILE] Unhandled webhook event: {event_name}")
            return {"status": "ignored", "event": event_name}

        outcome, order_id = await PaymentReconciler(context, db).reconcile(event)
        return {
            "status": "ok",
            "event": event_name,
            "outcome": outcome.value,
            "order_id": str(order_id) if order_id else None,
        }

    except Exception as e:
        logger.exception(f"[RECONCILE] Error processing webhook {event_name}: {e}")
        # Return 200 to prevent Razorpay from retrying
        return {"status": "error", "message": str(e)}
