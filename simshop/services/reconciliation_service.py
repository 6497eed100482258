"""
Payment Reconciler

Consumes payment confirmations (gateway webhooks and the synchronous balance
path) and moves orders to paid exactly once per payment reference:

- Order id in the event metadata: conditional pending -> paid, filling in
  payment_ref and the charged display amount. Anything not pending is a
  duplicate delivery and becomes a no-op.
- No order id (legacy/first-contact): the order is created directly as paid.
  The unique payment_ref column settles concurrent deliveries; the losing
  insert rolls back and reads the winner's order instead.

Only the transition itself triggers follow-up work (referral linking,
confirmation email, provisioning), scheduled on the task runner so the
gateway gets its acknowledgement without waiting.
"""

import logging
import uuid
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from simshop.models.order import Order, OrderStatus, PaymentMethod
from simshop.models.user import User
from simshop.services.affiliate_service import AffiliateService
from simshop.services.currency_service import (
    REFERENCE_CURRENCY,
    normalize_currency,
    resolve_rate,
    to_reference_cents,
)
from simshop.services.email_service import NotificationTemplate
from simshop.services.notification_service import OrderNotifier
from simshop.services.payment_service import GatewayEvent
from simshop.services.provisioning_service import ProvisioningOrchestrator
from simshop.services.user_service import UserService

if TYPE_CHECKING:
    from simshop.services.context import EngineContext

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    TRANSITIONED = "transitioned"  # Existing pending order marked paid
    CREATED = "created"            # Legacy path inserted a paid order
    DUPLICATE = "duplicate"        # Already reconciled, nothing done
    IGNORED = "ignored"            # Not enough information to act on


class PaymentReconciler:
    def __init__(self, context: "EngineContext", db: AsyncSession):
        self.context = context
        self.db = db

    async def reconcile(self, event: GatewayEvent) -> tuple[ReconcileOutcome, Optional[uuid.UUID]]:
        """Apply one payment confirmation. Safe to call any number of times."""
        logger.info(
            f"[RECONCILE] {event.event_type} ref={event.payment_ref} order={event.order_id} "
            f"amount={event.amount_cents} {event.currency}"
        )

        if event.order_id is not None:
            order = await self.db.get(Order, event.order_id)
            if order is not None:
                return await self._mark_paid(order, event)
            logger.warning(f"[RECONCILE] Order {event.order_id} from metadata not found, using legacy path")

        return await self._create_paid(event)

    # ==================== Existing order ====================

    async def _mark_paid(self, order: Order, event: GatewayEvent) -> tuple[ReconcileOutcome, Optional[uuid.UUID]]:
        # Plain values; a rollback below expires the instance
        order_id = order.id
        user_id = order.user_id
        referral_code = event.referral_code or order.referral_code
        display_currency = normalize_currency(event.currency) or order.display_currency

        if order.status != OrderStatus.PENDING.value:
            logger.info(f"[RECONCILE] Order {order_id} already {order.status}, duplicate delivery ignored")
            return ReconcileOutcome.DUPLICATE, order_id

        try:
            result = await self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
                .values(
                    status=OrderStatus.PAID.value,
                    payment_ref=event.payment_ref,
                    display_currency=display_currency,
                    display_amount_cents=event.amount_cents,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                logger.info(f"[RECONCILE] Order {order_id} advanced concurrently, nothing to do")
                return ReconcileOutcome.DUPLICATE, order_id
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.warning(f"[RECONCILE] Payment ref {event.payment_ref} already belongs to another order")
            return ReconcileOutcome.DUPLICATE, order_id

        logger.info(f"[RECONCILE] Order {order_id} pending -> paid")
        if event.email:
            await self._claim_guest_email(user_id, event.email)
        await self.after_paid(order_id, user_id, referral_code)
        return ReconcileOutcome.TRANSITIONED, order_id

    async def _claim_guest_email(self, user_id: uuid.UUID, email: str) -> None:
        """Best effort: the order is already paid whatever happens here."""
        try:
            user = await self.db.get(User, user_id)
            if user is None:
                return
            owner = await UserService(self.db).claim_email(user, email)
            if owner.id != user_id:
                logger.info(f"[RECONCILE] {email} already belongs to user {owner.id}, keeping guest record")
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"[RECONCILE] Could not move user {user_id} to {email}, keeping guest record: {e}")

    # ==================== Legacy / first-contact ====================

    async def _reference_amount(self, event: GatewayEvent) -> int:
        currency = normalize_currency(event.currency) or REFERENCE_CURRENCY
        if currency == REFERENCE_CURRENCY:
            return event.amount_cents

        rate: Optional[Decimal] = None
        if event.fx_rate:
            try:
                rate = Decimal(str(event.fx_rate))
            except InvalidOperation:
                logger.warning(f"[RECONCILE] Ignoring malformed fx_rate {event.fx_rate}")
        if rate is None or rate <= 0:
            used, rate = await resolve_rate(self.context.rate_source, currency)
            if used != currency:
                logger.warning(
                    f"[RECONCILE] No rate for {currency}, booking {event.amount_cents} as reference cents"
                )
        return to_reference_cents(event.amount_cents, rate)

    async def _create_paid(self, event: GatewayEvent) -> tuple[ReconcileOutcome, Optional[uuid.UUID]]:
        existing = await self._find_by_payment_ref(event.payment_ref)
        if existing is not None:
            logger.info(f"[RECONCILE] Payment {event.payment_ref} already recorded as order {existing}")
            return ReconcileOutcome.DUPLICATE, existing

        if not event.plan_id:
            logger.error(f"[RECONCILE] Payment {event.payment_ref} has no order id and no plan code")
            return ReconcileOutcome.IGNORED, None

        amount_cents = await self._reference_amount(event)
        user = await UserService(self.db).get_or_create(event.email, event.name)
        user_id = user.id

        order = Order(
            id=uuid.uuid4(),
            user_id=user_id,
            plan_id=event.plan_id,
            amount_cents=amount_cents,
            currency=REFERENCE_CURRENCY,
            display_currency=normalize_currency(event.currency) or REFERENCE_CURRENCY,
            display_amount_cents=event.amount_cents,
            fx_rate=event.fx_rate,
            status=OrderStatus.PAID.value,
            payment_method=PaymentMethod.GATEWAY.value,
            payment_ref=event.payment_ref,
            referral_code=event.referral_code,
        )
        self.db.add(order)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            winner = await self._find_by_payment_ref(event.payment_ref)
            logger.info(f"[RECONCILE] Lost insert race for {event.payment_ref}, order {winner} already exists")
            return ReconcileOutcome.DUPLICATE, winner

        logger.info(f"[RECONCILE] Created paid order {order.id} for payment {event.payment_ref}")
        await self.after_paid(order.id, user_id, event.referral_code)
        return ReconcileOutcome.CREATED, order.id

    async def _find_by_payment_ref(self, payment_ref: str) -> Optional[uuid.UUID]:
        result = await self.db.execute(select(Order.id).where(Order.payment_ref == payment_ref))
        return result.scalar_one_or_none()

    # ==================== Follow-up ====================

    async def after_paid(self, order_id: uuid.UUID, user_id: uuid.UUID, referral_code: Optional[str]) -> None:
        """Runs only for the call that performed the transition."""
        # Referral must exist before provisioning computes commission
        affiliates = AffiliateService(self.context)
        try:
            await affiliates.ensure_affiliate(user_id)
            if referral_code:
                await affiliates.link_referral(user_id, referral_code)
        except SQLAlchemyError as e:
            logger.error(f"[AFFILIATE] Referral handling failed for order {order_id}: {e}")

        runner = self.context.runner
        runner.spawn(
            OrderNotifier(self.context).send_for_order(order_id, NotificationTemplate.ORDER_CONFIRMATION.value),
            name=f"order-confirmation-{order_id}",
        )
        runner.spawn(
            ProvisioningOrchestrator(self.context).provision(order_id),
            name=f"provision-{order_id}",
        )
