"""
Checkout Service

Creates orders from storefront checkout requests:
- Validates amount, currency, payment method and plan before writing anything
- Resolves the paying user by email (guests get a placeholder address)
- Converts the reference (USD) amount into the display currency
- Enforces the gateway's minimum chargeable amount
- Balance payments: debit + paid order insert in one transaction, then the
  post-payment follow-up
- Gateway payments: pending order first, then the payment session that
  carries the order id in its metadata

Also handles the pending-order edits: payment session (re)opening, email
change and audited promo adjustments.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, TYPE_CHECKING

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from simshop.models.order import Order, OrderAdjustment, OrderStatus, PaymentMethod
from simshop.models.user import User
from simshop.services.balance_service import BalanceService, InsufficientBalanceError
from simshop.services.currency_service import (
    REFERENCE_CURRENCY,
    convert_cents,
    normalize_currency,
    percent_of,
    resolve_rate,
)
from simshop.services.esim_provider import ProviderAPIError
from simshop.services.payment_service import GatewayError, PaymentSession
from simshop.services.reconciliation_service import PaymentReconciler
from simshop.services.user_service import UserService

if TYPE_CHECKING:
    from simshop.services.context import EngineContext

logger = logging.getLogger(__name__)


class CheckoutError(Exception):
    """Invalid checkout request or an order in the wrong state for the edit."""

    def __init__(self, message: str, status_code: int = 400, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class OrderNotFoundError(Exception):
    def __init__(self, order_id: uuid.UUID):
        self.order_id = order_id
        self.message = f"Order {order_id} not found"
        super().__init__(self.message)


@dataclass
class CheckoutResult:
    order_id: uuid.UUID
    success: bool
    status: str
    display_currency: str
    display_amount_cents: int
    payment_session: Optional[PaymentSession] = None


class CheckoutService:
    def __init__(self, context: "EngineContext", db: AsyncSession):
        self.context = context
        self.db = db
        self.config = context.config

    # ==================== Helpers ====================

    async def get_order(self, order_id: uuid.UUID, with_details: bool = False) -> Order:
        stmt = select(Order).where(Order.id == order_id)
        if with_details:
            stmt = stmt.options(
                selectinload(Order.profiles),
                selectinload(Order.adjustments),
                selectinload(Order.user),
            )
        order = (await self.db.execute(stmt)).scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def _get_pending(self, order_id: uuid.UUID) -> Order:
        order = await self.get_order(order_id)
        if order.status != OrderStatus.PENDING.value:
            raise CheckoutError(f"Order is {order.status}, not awaiting payment", status_code=409)
        return order

    def _gateway_minimum(self, rate: Decimal) -> int:
        return convert_cents(self.config.GATEWAY_MINIMUM_USD_CENTS, rate)

    def _check_minimum(self, display_amount_cents: int, currency: str, rate: Decimal) -> None:
        minimum = self._gateway_minimum(rate)
        if display_amount_cents < minimum:
            raise GatewayError(
                400,
                f"Amount {display_amount_cents} {currency} is below the minimum charge of {minimum} {currency}",
                {"minimum_cents": minimum, "currency": currency},
            )

    async def _validate(
        self,
        plan_id: str,
        amount_usd_cents: int,
        target_currency: Optional[str],
        payment_method: str,
    ) -> None:
        if not isinstance(amount_usd_cents, int) or amount_usd_cents <= 0:
            raise CheckoutError("Amount must be a positive number of cents")
        if target_currency is not None and not normalize_currency(target_currency):
            raise CheckoutError("Currency is required")
        if payment_method not in (PaymentMethod.GATEWAY.value, PaymentMethod.BALANCE.value):
            raise CheckoutError(f"Unsupported payment method: {payment_method}")
        if not plan_id or not plan_id.strip():
            raise CheckoutError("Plan is required")

        client = await self.context.provisioning_client()
        try:
            package = await client.get_package(plan_id)
        except ProviderAPIError as e:
            logger.error(f"[CHECKOUT] Plan lookup for {plan_id} failed: {e}")
            raise CheckoutError("Plan could not be verified, please try again", status_code=503)
        if package is None:
            raise CheckoutError(f"Unknown plan: {plan_id}", status_code=404)

    # ==================== Checkout ====================

    async def create_checkout(
        self,
        plan_id: str,
        amount_usd_cents: int,
        target_currency: Optional[str],
        payment_method: str,
        email: Optional[str] = None,
        referral_code: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Create an order. Without a target currency the store's default
        currency (admin settings) is used for display.
        """
        await self._validate(plan_id, amount_usd_cents, target_currency, payment_method)
        if target_currency is None:
            target_currency = (await self.context.settings_service.get()).default_currency

        if payment_method == PaymentMethod.BALANCE.value:
            return await self._checkout_with_balance(plan_id, amount_usd_cents, email, referral_code)
        return await self._checkout_with_gateway(plan_id, amount_usd_cents, target_currency, email, referral_code)

    async def _checkout_with_balance(
        self,
        plan_id: str,
        amount_usd_cents: int,
        email: Optional[str],
        referral_code: Optional[str],
    ) -> CheckoutResult:
        if not email:
            raise CheckoutError("Email is required to pay with balance")

        users = UserService(self.db)
        user = await users.get_by_email(email)
        balances = BalanceService(self.db)
        available = await balances.get_balance(user.id) if user else 0
        if available < amount_usd_cents:
            logger.info(f"[CHECKOUT] Balance {available} < {amount_usd_cents} for {email}, rejected")
            raise InsufficientBalanceError(available, amount_usd_cents)

        user_id = user.id
        order_id = uuid.uuid4()
        payment_ref = f"balance_{order_id}"
        try:
            self.db.add(Order(
                id=order_id,
                user_id=user.id,
                plan_id=plan_id,
                amount_cents=amount_usd_cents,
                currency=REFERENCE_CURRENCY,
                display_currency=REFERENCE_CURRENCY,
                display_amount_cents=amount_usd_cents,
                fx_rate="1",
                status=OrderStatus.PAID.value,
                payment_method=PaymentMethod.BALANCE.value,
                payment_ref=payment_ref,
                referral_code=referral_code,
            ))
            await self.db.flush()
            await balances.debit(
                user.id,
                amount_usd_cents,
                reason="order",
                order_id=order_id,
                extra_data={"plan_id": plan_id},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"[CHECKOUT] Balance order {order_id} paid with {amount_usd_cents} cents")

        # Order is already paid; a failed follow-up is picked up by the retry sweep
        try:
            await PaymentReconciler(self.context, self.db).after_paid(order_id, user_id, referral_code)
        except Exception as e:
            logger.exception(f"[CHECKOUT] Follow-up for balance order {order_id} failed: {e}")

        order = await self.get_order(order_id)
        await self.db.refresh(order)
        return CheckoutResult(
            order_id=order_id,
            success=order.status != OrderStatus.PENDING.value,
            status=order.status,
            display_currency=order.display_currency,
            display_amount_cents=order.display_amount_cents,
        )

    async def _checkout_with_gateway(
        self,
        plan_id: str,
        amount_usd_cents: int,
        target_currency: str,
        email: Optional[str],
        referral_code: Optional[str],
    ) -> CheckoutResult:
        currency, rate = await resolve_rate(self.context.rate_source, target_currency)
        display_amount = convert_cents(amount_usd_cents, rate)
        self._check_minimum(display_amount, currency, rate)

        user = await UserService(self.db).get_or_create(email)
        order = Order(
            id=uuid.uuid4(),
            user_id=user.id,
            plan_id=plan_id,
            amount_cents=amount_usd_cents,
            currency=REFERENCE_CURRENCY,
            display_currency=currency,
            display_amount_cents=display_amount,
            fx_rate=str(rate),
            status=OrderStatus.PENDING.value,
            payment_method=PaymentMethod.GATEWAY.value,
            referral_code=referral_code,
        )
        self.db.add(order)
        await self.db.commit()
        logger.info(
            f"[CHECKOUT] Pending order {order.id}: {amount_usd_cents} USD cents -> "
            f"{display_amount} {currency} (rate {rate})"
        )

        session = await self.open_payment_session(order.id)
        return CheckoutResult(
            order_id=order.id,
            success=True,
            status=OrderStatus.PENDING.value,
            display_currency=currency,
            display_amount_cents=display_amount,
            payment_session=session,
        )

    async def open_payment_session(
        self,
        order_id: uuid.UUID,
        referral_code: Optional[str] = None,
        email: Optional[str] = None,
    ) -> PaymentSession:
        """Open (or reopen) the gateway session for a pending gateway order."""
        order = await self._get_pending(order_id)
        if order.payment_method != PaymentMethod.GATEWAY.value:
            raise CheckoutError("Only gateway orders have payment sessions")

        if email:
            order = await self.update_order_email(order_id, email)
        if referral_code:
            await self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
                .values(referral_code=referral_code)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            order.referral_code = referral_code

        rate = Decimal(order.fx_rate or "1")
        self._check_minimum(order.display_amount_cents, order.display_currency, rate)

        user = await self.db.get(User, order.user_id)
        notes = {
            "order_id": str(order.id),
            "plan_code": order.plan_id,
            "amount_usd_cents": str(order.amount_cents),
            "display_currency": order.display_currency,
            "fx_rate": str(rate),
        }
        if order.referral_code:
            notes["referral_code"] = order.referral_code
        if user is not None and not user.is_guest:
            notes["email"] = user.email

        session = await self.context.gateway.create_session(
            order.id,
            order.display_amount_cents,
            order.display_currency,
            notes,
        )
        await self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.PENDING.value)
            .values(gateway_session_id=session.session_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.info(f"[CHECKOUT] Payment session {session.session_id} opened for order {order.id}")
        return session

    # ==================== Pending order edits ====================

    async def update_order_email(self, order_id: uuid.UUID, email: str) -> Order:
        """Point a pending order at the user owning `email`."""
        order = await self._get_pending(order_id)
        users = UserService(self.db)
        current = await self.db.get(User, order.user_id)

        target = await users.claim_email(current, email) if current is not None else None
        if target is None or target.email != email.strip().lower():
            target = await users.get_by_email(email)
            if target is None:
                target = User(email=email.strip().lower(), is_guest=False)
                self.db.add(target)
                await self.db.flush()

        if target.id != order.user_id:
            result = await self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
                .values(user_id=target.id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                raise CheckoutError("Order is no longer awaiting payment", status_code=409)

        await self.db.commit()
        logger.info(f"[CHECKOUT] Order {order_id} email set to {target.email}")
        order = await self.get_order(order_id)
        await self.db.refresh(order)
        return order

    async def _next_sequence(self, order_id: uuid.UUID) -> int:
        count = await self.db.scalar(
            select(func.count(OrderAdjustment.id)).where(OrderAdjustment.order_id == order_id)
        )
        return (count or 0) + 1

    async def _active_promo(self, order_id: uuid.UUID) -> Optional[OrderAdjustment]:
        latest = (await self.db.execute(
            select(OrderAdjustment)
            .where(OrderAdjustment.order_id == order_id)
            .order_by(OrderAdjustment.sequence.desc())
            .limit(1)
        )).scalar_one_or_none()
        if latest is not None and latest.action == "apply":
            return latest
        return None

    async def apply_promo(self, order_id: uuid.UUID, code: str) -> Order:
        """Percent-off promo on a pending order, recorded as an adjustment."""
        order = await self._get_pending(order_id)
        snapshot = await self.context.settings_service.get()
        percent = snapshot.discount_percent(code)
        if percent is None or percent <= 0 or percent >= 100:
            raise CheckoutError(f"Invalid promo code: {code}")
        if await self._active_promo(order_id) is not None:
            raise CheckoutError("A promo code is already applied", status_code=409)

        new_amount = order.amount_cents - percent_of(order.amount_cents, percent)
        new_display = order.display_amount_cents - percent_of(order.display_amount_cents, percent)
        if order.payment_method == PaymentMethod.GATEWAY.value:
            self._check_minimum(new_display, order.display_currency, Decimal(order.fx_rate or "1"))

        result = await self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.PENDING.value,
                Order.amount_cents == order.amount_cents,
            )
            .values(amount_cents=new_amount, display_amount_cents=new_display)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise CheckoutError("Order changed while applying promo", status_code=409)

        self.db.add(OrderAdjustment(
            order_id=order_id,
            sequence=await self._next_sequence(order_id),
            action="apply",
            promo_code=code.strip().upper(),
            percent_off=percent,
            amount_cents_before=order.amount_cents,
            amount_cents_after=new_amount,
            display_amount_cents_before=order.display_amount_cents,
            display_amount_cents_after=new_display,
        ))
        await self.db.commit()
        logger.info(f"[CHECKOUT] Promo {code} ({percent}%) applied to order {order_id}: {order.amount_cents} -> {new_amount}")

        await self.db.refresh(order)
        return order

    async def remove_promo(self, order_id: uuid.UUID) -> Order:
        """Restore the amounts recorded before the active promo."""
        order = await self._get_pending(order_id)
        promo = await self._active_promo(order_id)
        if promo is None:
            raise CheckoutError("No promo code applied")

        result = await self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.PENDING.value,
                Order.amount_cents == promo.amount_cents_after,
            )
            .values(
                amount_cents=promo.amount_cents_before,
                display_amount_cents=promo.display_amount_cents_before,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise CheckoutError("Order changed while removing promo", status_code=409)

        self.db.add(OrderAdjustment(
            order_id=order_id,
            sequence=promo.sequence + 1,
            action="remove",
            promo_code=promo.promo_code,
            percent_off=promo.percent_off,
            amount_cents_before=promo.amount_cents_after,
            amount_cents_after=promo.amount_cents_before,
            display_amount_cents_before=promo.display_amount_cents_after,
            display_amount_cents_after=promo.display_amount_cents_before,
        ))
        await self.db.commit()
        logger.info(f"[CHECKOUT] Promo {promo.promo_code} removed from order {order_id}")

        await self.db.refresh(order)
        return order
