"""
Refund Service

Admin refunds of paid orders:
- card: refund through the gateway by payment reference
- balance: credit the customer's stored-value balance

The order moves to cancelled through a conditional update that refuses
orders already cancelled or still pending. Any commission on the order is
reversed in the same transaction, and the customer is emailed afterwards.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional, TYPE_CHECKING

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from simshop.db_types import utcnow
from simshop.models.order import Order, OrderStatus, PaymentMethod, RefundMethod
from simshop.services.affiliate_service import AffiliateService
from simshop.services.balance_service import BalanceService
from simshop.services.checkout_service import OrderNotFoundError
from simshop.services.currency_service import round_half_up
from simshop.services.email_service import NotificationTemplate
from simshop.services.notification_service import OrderNotifier

if TYPE_CHECKING:
    from simshop.services.context import EngineContext

logger = logging.getLogger(__name__)

NON_REFUNDABLE_STATUSES = (OrderStatus.PENDING.value, OrderStatus.CANCELLED.value)


class RefundError(Exception):
    def __init__(self, message: str, status_code: int = 409):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class RefundService:
    def __init__(self, context: "EngineContext", db: AsyncSession):
        self.context = context
        self.db = db

    async def refund(
        self,
        order_id: uuid.UUID,
        method: str,
        amount_cents: Optional[int] = None,
    ) -> Order:
        """
        Refund an order and cancel it.

        amount_cents is in the reference currency and defaults to the full
        order amount. Card refunds convert it back to the charged currency.
        """
        order = await self.db.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if order.status in NON_REFUNDABLE_STATUSES:
            raise RefundError(f"Order is {order.status} and cannot be refunded")
        if method not in (RefundMethod.CARD.value, RefundMethod.BALANCE.value):
            raise RefundError(f"Unsupported refund method: {method}", status_code=400)

        refund_cents = amount_cents if amount_cents is not None else order.amount_cents
        if refund_cents <= 0 or refund_cents > order.amount_cents:
            raise RefundError(
                f"Refund amount must be between 1 and {order.amount_cents} cents",
                status_code=400,
            )

        if method == RefundMethod.CARD.value:
            if order.payment_method == PaymentMethod.BALANCE.value:
                raise RefundError("Balance-paid orders can only be refunded to balance", status_code=400)
            if not order.payment_ref:
                raise RefundError("Order has no payment reference to refund", status_code=400)

        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status.notin_(NON_REFUNDABLE_STATUSES))
            .values(
                status=OrderStatus.CANCELLED.value,
                refunded_at=utcnow(),
                refund_amount_cents=refund_cents,
                refund_method=method,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise RefundError("Order was refunded concurrently")

        payment_ref = order.payment_ref
        gateway_refund = None
        try:
            if method == RefundMethod.BALANCE.value:
                await BalanceService(self.db).credit(
                    order.user_id,
                    refund_cents,
                    reason="refund",
                    order_id=order_id,
                )
            await AffiliateService(self.context).reverse_commission(self.db, order_id)

            if method == RefundMethod.CARD.value:
                # Charged currency: scale by the share of the reference amount refunded
                charged_cents = (
                    order.display_amount_cents
                    if refund_cents == order.amount_cents
                    else round_half_up(Decimal(order.display_amount_cents) * refund_cents / order.amount_cents)
                )
                gateway_refund = await self.context.gateway.refund(
                    payment_ref,
                    charged_cents,
                    {"order_id": str(order_id)},
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            if gateway_refund is not None:
                logger.error(
                    f"[REFUND] Gateway refund {gateway_refund.refund_id} for payment {payment_ref} "
                    f"succeeded but order {order_id} was not updated; reconcile manually"
                )
            raise

        logger.info(f"[REFUND] Order {order_id} refunded {refund_cents} cents to {method}")
        self.context.runner.spawn(
            OrderNotifier(self.context).send_for_order(order_id, NotificationTemplate.REFUND.value),
            name=f"refund-email-{order_id}",
        )
        await self.db.refresh(order)
        return order
