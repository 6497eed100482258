"""
Provisioning Orchestrator

Turns a paid order into a stored eSIM profile:
1. Derive the provider transaction id from the payment method and order id
2. Resolve the provider's cost price (live lookup, else reverse the markup)
3. Submit the provider order, unless a provider order no is already stored
4. Store the provider order no
5. Poll the provider until the profile payload is available
6. Upsert the profile and mark the order esim_created
7. Hand over to the side-effect pipeline

Every failure parks the order in a retryable status (esim_order_failed,
esim_no_orderno, esim_pending) for the retry sweep. Nothing is raised to the
payment path.

Re-entry is safe: a stored order no skips step 3, and the profile is matched
by order id so a second run updates instead of inserting. All status changes
are conditional updates; a handler that loses one stops without side effects.
"""

import asyncio
import logging
import uuid
from typing import Optional, Sequence, TYPE_CHECKING

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from simshop.db_types import utcnow
from simshop.models.esim_profile import EsimProfile
from simshop.models.order import (
    Order,
    OrderStatus,
    PaymentMethod,
    PROVISIONABLE_STATUSES,
    RETRYABLE_STATUSES,
)
from simshop.services.currency_service import cents_to_units, remove_markup
from simshop.services.esim_provider import ProvisioningClient, ProviderProfile
from simshop.services.side_effect_service import SideEffectPipeline

if TYPE_CHECKING:
    from simshop.services.context import EngineContext

logger = logging.getLogger(__name__)

TRANSACTION_PREFIXES = {
    PaymentMethod.GATEWAY.value: "gateway_",
    PaymentMethod.BALANCE.value: "balance_",
}


class ProvisioningRejectedError(Exception):
    """An explicit retry was requested for an order that cannot be provisioned."""

    def __init__(self, order_id: uuid.UUID, status: str, message: str):
        self.order_id = order_id
        self.status = status
        self.message = message
        super().__init__(message)


def build_transaction_id(order: Order, max_length: int = 50) -> str:
    """Deterministic provider transaction id: payment-method prefix + order UUID."""
    prefix = TRANSACTION_PREFIXES.get(order.payment_method, "order_")
    transaction_id = f"{prefix}{order.id}"
    if len(transaction_id) > max_length:
        transaction_id = f"{prefix}{order.id.hex}"
    if len(transaction_id) > max_length:
        raise ValueError(f"Transaction id for order {order.id} exceeds {max_length} characters")
    return transaction_id


class ProvisioningOrchestrator:
    def __init__(self, context: "EngineContext"):
        self.context = context
        self.config = context.config
        self.pipeline = SideEffectPipeline(context)

    # ==================== Ledger helpers ====================

    async def _load(self, order_id: uuid.UUID) -> Optional[Order]:
        async with self.context.session_factory() as db:
            return await db.get(Order, order_id)

    async def _transition(
        self,
        order_id: uuid.UUID,
        to_status: OrderStatus,
        from_statuses: Sequence[str] = PROVISIONABLE_STATUSES,
    ) -> bool:
        async with self.context.session_factory() as db:
            result = await db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status.in_(from_statuses))
                .values(status=to_status.value)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if result.rowcount == 1:
            logger.info(f"[PROVISION] Order {order_id} -> {to_status.value}")
            return True
        logger.info(f"[PROVISION] Order {order_id} already advanced, not moving to {to_status.value}")
        return False

    async def _store_order_no(self, order_id: uuid.UUID, order_no: str) -> bool:
        async with self.context.session_factory() as db:
            result = await db.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.provider_order_no.is_(None),
                    Order.status.in_(PROVISIONABLE_STATUSES),
                )
                .values(provider_order_no=order_no)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount == 1

    # ==================== Steps ====================

    async def resolve_cost_units(self, client: ProvisioningClient, order: Order) -> int:
        """
        Provider cost in provider units.

        Falls back to reversing the current default markup on the order's
        reference amount when the live lookup fails. That estimate drifts if
        the markup changed since the sale.
        """
        try:
            package = await client.get_package(order.plan_id)
            if package is not None and package.price_units > 0:
                return package.price_units
            logger.warning(f"[PROVISION] No live price for {order.plan_id}")
        except Exception as e:
            logger.warning(f"[PROVISION] Price lookup for {order.plan_id} failed: {e}")

        snapshot = await self.context.settings_service.get()
        cost_cents = remove_markup(order.amount_cents, snapshot.default_markup_percent)
        logger.warning(
            f"[PROVISION] Using markup-derived cost for order {order.id}: "
            f"{order.amount_cents} cents / (1 + {snapshot.default_markup_percent}%) = {cost_cents} cents"
        )
        return cents_to_units(cost_cents)

    async def _submit(self, client: ProvisioningClient, order: Order) -> Optional[str]:
        """Returns the stored provider order no, or None after parking the order."""
        transaction_id = build_transaction_id(order, self.config.PROVIDER_TRANSACTION_ID_MAX_LENGTH)
        price_units = await self.resolve_cost_units(client, order)

        logger.info(
            f"[PROVISION] Ordering {order.plan_id} for order {order.id} "
            f"(transactionId={transaction_id}, price={price_units}, client={client.name})"
        )
        try:
            result = await client.order(transaction_id, order.plan_id, price_units)
        except Exception as e:
            logger.error(f"[PROVISION] Provider order failed for {order.id}: {e}")
            await self._transition(order.id, OrderStatus.ESIM_ORDER_FAILED)
            return None

        if not result.order_no:
            logger.warning(f"[PROVISION] Provider returned no order no for {order.id}")
            await self._transition(order.id, OrderStatus.ESIM_NO_ORDERNO)
            return None

        if not await self._store_order_no(order.id, result.order_no):
            current = await self._load(order.id)
            logger.warning(
                f"[PROVISION] Order {order.id} got order no {result.order_no} but another "
                f"attempt already stored {current.provider_order_no if current else None}"
            )
            return None

        logger.info(f"[PROVISION] Order {order.id} stored provider order no {result.order_no}")
        return result.order_no

    async def _poll(
        self,
        client: ProvisioningClient,
        order_id: uuid.UUID,
        order_no: str,
        attempts: int,
    ) -> list[ProviderProfile]:
        delay = self.config.PROVISION_POLL_DELAY_SECONDS
        for attempt in range(1, attempts + 1):
            try:
                profiles = await client.query(order_no)
            except Exception as e:
                logger.warning(f"[PROVISION] Query {attempt}/{attempts} for {order_no} failed: {e}")
                profiles = []

            if profiles:
                logger.info(f"[PROVISION] Profile ready for order {order_id} on attempt {attempt}")
                return profiles

            logger.info(f"[PROVISION] Profile not ready for order {order_id} ({attempt}/{attempts})")
            if attempt < attempts:
                await asyncio.sleep(delay)
        return []

    async def upsert_profile(self, db: AsyncSession, order: Order, data: ProviderProfile) -> EsimProfile:
        """Update the order's existing profile, or insert the first one."""
        profile = (await db.execute(
            select(EsimProfile)
            .where(EsimProfile.order_id == order.id)
            .order_by(EsimProfile.created_at)
            .limit(1)
        )).scalar_one_or_none()

        if profile is None:
            profile = EsimProfile(order_id=order.id, user_id=order.user_id)
            db.add(profile)

        profile.esim_tran_no = data.esim_tran_no or profile.esim_tran_no
        profile.iccid = data.iccid or profile.iccid
        profile.qr_code_url = data.qr_code_url or profile.qr_code_url
        profile.activation_code = data.activation_code or profile.activation_code
        profile.smdp_status = data.smdp_status or profile.smdp_status
        profile.status = data.status or profile.status
        if data.capacity_bytes is not None:
            profile.capacity_bytes = data.capacity_bytes
        if data.used_bytes is not None:
            profile.used_bytes = data.used_bytes
        if data.expires_at is not None:
            profile.expires_at = data.expires_at
        profile.last_synced_at = utcnow()
        await db.flush()
        return profile

    async def _materialize(self, order: Order, data: ProviderProfile) -> bool:
        """Upsert the profile and move to esim_created in one transaction."""
        async with self.context.session_factory() as db:
            await self.upsert_profile(db, order, data)
            result = await db.execute(
                update(Order)
                .where(Order.id == order.id, Order.status.in_(PROVISIONABLE_STATUSES))
                .values(status=OrderStatus.ESIM_CREATED.value)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount == 1

    # ==================== Entry points ====================

    async def provision(self, order_id: uuid.UUID, poll_attempts: Optional[int] = None) -> Optional[str]:
        """
        Drive one order as far as the provider allows. Returns the order's
        status afterwards (None if the order does not exist).

        An esim_created order with a stored order no is refreshed: its profile
        is re-queried and updated in place.
        """
        attempts = poll_attempts or self.config.PROVISION_POLL_ATTEMPTS
        order = await self._load(order_id)
        if order is None:
            logger.warning(f"[PROVISION] Order {order_id} not found")
            return None

        refreshing = order.status == OrderStatus.ESIM_CREATED.value
        if order.status not in PROVISIONABLE_STATUSES and not refreshing:
            logger.info(f"[PROVISION] Order {order_id} is {order.status}, skipping")
            return order.status
        if refreshing and not order.provider_order_no:
            return order.status

        client = await self.context.provisioning_client()

        order_no = order.provider_order_no
        if order_no:
            logger.info(f"[PROVISION] Order {order_id} resuming with stored order no {order_no}")
        else:
            order_no = await self._submit(client, order)
            if order_no is None:
                return await self._current_status(order_id)

        profiles = await self._poll(client, order_id, order_no, attempts)
        if not profiles:
            if not refreshing:
                await self._transition(order_id, OrderStatus.ESIM_PENDING)
            return await self._current_status(order_id)

        created = await self._materialize(order, profiles[0])
        if created:
            logger.info(f"[PROVISION] Order {order_id} provisioned")
            await self.pipeline.on_provisioned(order_id)
        return await self._current_status(order_id)

    async def _current_status(self, order_id: uuid.UUID) -> Optional[str]:
        current = await self._load(order_id)
        return current.status if current else None

    async def retry(self, order_id: uuid.UUID) -> Optional[str]:
        """Admin-requested re-drive of a single order."""
        order = await self._load(order_id)
        if order is None:
            return None
        if order.status in (OrderStatus.PENDING.value, OrderStatus.CANCELLED.value):
            raise ProvisioningRejectedError(order_id, order.status, f"Order is {order.status}")
        if order.status == OrderStatus.ESIM_CREATED.value:
            async with self.context.session_factory() as db:
                profiles = await db.scalar(
                    select(func.count(EsimProfile.id)).where(EsimProfile.order_id == order_id)
                )
            if profiles:
                raise ProvisioningRejectedError(order_id, order.status, "Order already has an eSIM profile")
        logger.info(f"[RETRY] Manual retry for order {order_id} (status {order.status})")
        return await self.provision(order_id)

    async def handle_provider_notification(self, order_no: str) -> Optional[uuid.UUID]:
        """
        Provider ORDER_STATUS callback: resume the order waiting on `order_no`.

        Returns the order id when a re-drive was scheduled.
        """
        async with self.context.session_factory() as db:
            order = (await db.execute(
                select(Order).where(
                    Order.provider_order_no == order_no,
                    Order.status.in_((OrderStatus.PAID.value,) + RETRYABLE_STATUSES),
                )
            )).scalar_one_or_none()
        if order is None:
            logger.info(f"[PROVISION] No waiting order for provider order no {order_no}")
            return None

        self.context.runner.spawn(self.provision(order.id), name=f"provision-{order.id}")
        return order.id
