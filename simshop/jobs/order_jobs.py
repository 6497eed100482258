"""
Order Processing Jobs

Background jobs that re-drive orders the direct path left unfinished:
- Retry sweep for orders parked in esim_order_failed, esim_pending or
  esim_no_orderno, plus paid orders left idle (oldest first, bounded batch)
- Receipt sweep for orders that have a profile but never reached the
  side-effect pipeline
- Profile sync (status, expiry, usage)

Each order is handled on its own; one failure never stops the batch.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional

from sqlalchemy import and_, exists, or_, select

from simshop.models.esim_profile import EsimProfile
from simshop.models.order import Order, OrderStatus, RETRYABLE_STATUSES
from simshop.services.context import EngineContext, get_engine_context
from simshop.services.profile_service import ProfileService
from simshop.services.provisioning_service import ProvisioningOrchestrator
from simshop.services.side_effect_service import SideEffectPipeline

logger = logging.getLogger(__name__)


async def retry_pending_orders(context: Optional[EngineContext] = None) -> Dict[str, Any]:
    """
    Re-drive retryable orders through the orchestrator.

    Paid orders that have not moved for STALE_PAID_MINUTES are included too:
    their follow-up never ran (e.g. the process stopped right after payment).

    Orders with a stored provider order no resume at polling, so the
    provider never sees a second order for them.
    """
    context = context or get_engine_context()
    config = context.config
    start_time = datetime.now(timezone.utc)
    stats: Dict[str, Any] = {"processed": 0, "created": 0, "still_retryable": 0, "errors": 0}
    stale_paid_before = start_time - timedelta(minutes=config.STALE_PAID_MINUTES)

    async with context.session_factory() as db:
        result = await db.execute(
            select(Order.id, Order.status)
            .where(or_(
                Order.status.in_(RETRYABLE_STATUSES),
                and_(Order.status == OrderStatus.PAID.value, Order.updated_at <= stale_paid_before),
            ))
            .order_by(Order.created_at.asc())
            .limit(config.RETRY_SWEEP_BATCH_SIZE)
        )
        candidates = result.all()

    logger.info(f"[RETRY] Found {len(candidates)} order(s) to retry")
    orchestrator = ProvisioningOrchestrator(context)

    for order_id, status in candidates:
        stats["processed"] += 1
        try:
            logger.info(f"[RETRY] Processing order {order_id} (status: {status})")
            new_status = await orchestrator.provision(order_id, poll_attempts=config.SWEEP_POLL_ATTEMPTS)
            if new_status == OrderStatus.ESIM_CREATED.value:
                stats["created"] += 1
            else:
                stats["still_retryable"] += 1
        except Exception as e:
            stats["errors"] += 1
            logger.exception(f"[RETRY] Order {order_id} failed during retry: {e}")

    stats["receipts"] = await send_pending_receipts(context)

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(f"[RETRY] Retry cycle finished in {duration:.2f}s: {stats}")
    return stats


async def send_pending_receipts(context: Optional[EngineContext] = None) -> int:
    """
    Run the side-effect pipeline for provisioned orders whose receipt was
    never claimed (e.g. the process died between storing the profile and
    sending the email). Returns how many receipts were claimed.
    """
    context = context or get_engine_context()

    async with context.session_factory() as db:
        result = await db.execute(
            select(Order.id)
            .where(
                Order.status == OrderStatus.ESIM_CREATED.value,
                Order.receipt_sent.is_(False),
                exists().where(EsimProfile.order_id == Order.id),
            )
            .order_by(Order.created_at.asc())
            .limit(context.config.RECEIPT_SWEEP_BATCH_SIZE)
        )
        order_ids = result.scalars().all()

    if not order_ids:
        return 0

    logger.info(f"[RETRY] {len(order_ids)} provisioned order(s) missing a receipt")
    pipeline = SideEffectPipeline(context)
    claimed = 0
    for order_id in order_ids:
        try:
            report = await pipeline.on_provisioned(order_id)
            claimed += int(report.notification_claimed)
        except Exception as e:
            logger.exception(f"[RETRY] Receipt for order {order_id} failed: {e}")
    return claimed


async def sync_esim_profiles(context: Optional[EngineContext] = None) -> Dict[str, int]:
    """Refresh profile status and usage from the provider."""
    context = context or get_engine_context()
    async with context.session_factory() as db:
        return await ProfileService(context, db).sync_profiles()
