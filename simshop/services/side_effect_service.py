"""
Side-Effect Pipeline

Runs once an order reaches esim_created, from the provisioning success path
or from the receipt sweep:
- Affiliate commission (skipped for balance payments), at most one per order
- The "eSIM ready" email, at most one per order

The email guard is the order's receipt_sent flag. It is claimed with a
conditional update before the message goes out, so concurrent runs and
retries can never send twice; a failed delivery is logged and left for a
customer-requested resend.

Nothing here raises into the caller or touches the order's status.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from simshop.models.order import Order, OrderStatus, PaymentMethod
from simshop.services.affiliate_service import AffiliateService
from simshop.services.email_service import NotificationTemplate
from simshop.services.notification_service import OrderNotifier

if TYPE_CHECKING:
    from simshop.services.context import EngineContext

logger = logging.getLogger(__name__)


@dataclass
class SideEffectReport:
    commission_created: bool = False
    notification_claimed: bool = False


class SideEffectPipeline:
    def __init__(self, context: "EngineContext"):
        self.context = context
        self.affiliates = AffiliateService(context)
        self.notifier = OrderNotifier(context)

    async def on_provisioned(self, order_id: uuid.UUID) -> SideEffectReport:
        report = SideEffectReport()

        async with self.context.session_factory() as db:
            order = await db.get(Order, order_id)
        if order is None:
            logger.warning(f"[SIDE-EFFECTS] Order {order_id} not found")
            return report
        if order.status != OrderStatus.ESIM_CREATED.value:
            logger.info(f"[SIDE-EFFECTS] Order {order_id} is {order.status}, nothing to do")
            return report

        report.commission_created = await self._attribute_commission(order)
        report.notification_claimed = await self._notify_ready(order)
        return report

    async def _attribute_commission(self, order: Order) -> bool:
        if order.payment_method == PaymentMethod.BALANCE.value:
            logger.info(f"[AFFILIATE] Skipping commission for balance order {order.id}")
            return False
        try:
            return await self.affiliates.add_commission(order) is not None
        except SQLAlchemyError as e:
            logger.error(f"[AFFILIATE] Commission for order {order.id} failed: {e}")
            return False

    async def claim_receipt(self, order_id: uuid.UUID) -> bool:
        """Flip receipt_sent false -> true. Only one caller ever wins."""
        async with self.context.session_factory() as db:
            result = await db.execute(
                update(Order)
                .where(Order.id == order_id, Order.receipt_sent.is_(False))
                .values(receipt_sent=True)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount == 1

    async def _notify_ready(self, order: Order) -> bool:
        if order.receipt_sent:
            return False
        try:
            claimed = await self.claim_receipt(order.id)
        except SQLAlchemyError as e:
            logger.error(f"[EMAIL] Could not claim receipt for order {order.id}: {e}")
            return False
        if not claimed:
            logger.info(f"[EMAIL] Receipt for order {order.id} already sent")
            return False

        self.context.runner.spawn(
            self.notifier.send_for_order(order.id, NotificationTemplate.ESIM_READY.value),
            name=f"esim-ready-{order.id}",
        )
        return True
