"""
Affiliate Service

Referral codes, referral links and commission records:
- Every paying user gets an affiliate record with its own referral code
- A referral code used at checkout links the buyer to that affiliate
  (no self-referral, at most one referrer per user)
- Commission is a fixed percentage of the order's reference-currency amount,
  at most one per (order, order type)
- Refunds reverse the order's commission

Inserts that can race (affiliate, referral, commission) run in their own
short sessions so a unique-constraint loser rolls back only its own insert.
"""

import logging
import secrets
import string
import uuid
from abc import ABC, abstractmethod
from typing import Optional, TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from simshop.db_types import utcnow
from simshop.models.commission import Affiliate, Referral, Commission, CommissionStatus
from simshop.models.order import Order
from simshop.services.currency_service import percent_of

if TYPE_CHECKING:
    from simshop.services.context import EngineContext

logger = logging.getLogger(__name__)

ORDER_TYPE = "order"
CODE_ALPHABET = string.ascii_uppercase + string.digits


# ==================== Fraud screening ====================

class FraudScreen(ABC):
    """Consulted before a commission is recorded. Return False to withhold it."""

    @abstractmethod
    async def allow_commission(self, affiliate_id: uuid.UUID, order: Order) -> bool:
        pass


class LoggingFraudScreen(FraudScreen):
    """Allows every commission and records that the screen was consulted."""

    async def allow_commission(self, affiliate_id: uuid.UUID, order: Order) -> bool:
        logger.debug(f"[AFFILIATE] Fraud screen passed order {order.id} for affiliate {affiliate_id}")
        return True


def generate_referral_code(length: int = 8) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


class AffiliateService:
    """Affiliate, referral and commission bookkeeping."""

    def __init__(self, context: "EngineContext"):
        self.context = context
        self.session_factory = context.session_factory

    async def find_by_code(self, db: AsyncSession, code: str) -> Optional[Affiliate]:
        result = await db.execute(
            select(Affiliate).where(Affiliate.referral_code == code.strip().upper())
        )
        return result.scalar_one_or_none()

    async def ensure_affiliate(self, user_id: uuid.UUID) -> Affiliate:
        """Affiliate record for the user, created on first call."""
        async with self.session_factory() as db:
            result = await db.execute(select(Affiliate).where(Affiliate.user_id == user_id))
            affiliate = result.scalar_one_or_none()
            if affiliate:
                return affiliate

            for _ in range(5):
                code = generate_referral_code()
                if await self.find_by_code(db, code) is None:
                    break
            affiliate = Affiliate(user_id=user_id, referral_code=code)
            db.add(affiliate)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                result = await db.execute(select(Affiliate).where(Affiliate.user_id == user_id))
                return result.scalar_one()

            logger.info(f"[AFFILIATE] Created affiliate {affiliate.referral_code} for user {user_id}")
            return affiliate

    async def link_referral(self, user_id: uuid.UUID, referral_code: str) -> bool:
        """
        Record that `user_id` was referred by the owner of `referral_code`.

        Returns True only when a new referral row was written.
        """
        if not referral_code:
            return False

        async with self.session_factory() as db:
            affiliate = await self.find_by_code(db, referral_code)
            if affiliate is None:
                logger.info(f"[AFFILIATE] Unknown referral code {referral_code}")
                return False
            if affiliate.user_id == user_id:
                logger.info(f"[AFFILIATE] Ignoring self-referral by user {user_id}")
                return False

            existing = await db.execute(
                select(Referral.id).where(Referral.referred_user_id == user_id)
            )
            if existing.scalar_one_or_none() is not None:
                return False

            db.add(Referral(affiliate_id=affiliate.id, referred_user_id=user_id))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False

        logger.info(f"[AFFILIATE] User {user_id} referred via {referral_code}")
        return True

    async def add_commission(self, order: Order) -> Optional[Commission]:
        """
        Commission for a provisioned order, if the buyer was referred.

        Existence is checked first; the unique constraint on (order_id,
        order_type) settles concurrent callers.
        """
        async with self.session_factory() as db:
            referral = (await db.execute(
                select(Referral).where(Referral.referred_user_id == order.user_id)
            )).scalar_one_or_none()
            if referral is None:
                return None

            existing = (await db.execute(
                select(Commission.id).where(
                    Commission.order_id == order.id,
                    Commission.order_type == ORDER_TYPE,
                )
            )).scalar_one_or_none()
            if existing is not None:
                logger.info(f"[AFFILIATE] Commission already recorded for order {order.id}")
                return None

            if not await self.context.fraud_screen.allow_commission(referral.affiliate_id, order):
                logger.warning(f"[AFFILIATE] Commission withheld by fraud screen for order {order.id}")
                return None

            amount = percent_of(order.amount_cents, self.context.config.COMMISSION_PERCENT)
            commission = Commission(
                affiliate_id=referral.affiliate_id,
                order_id=order.id,
                order_type=ORDER_TYPE,
                amount_cents=amount,
            )
            db.add(commission)
            try:
                await db.flush()
            except IntegrityError:
                await db.rollback()
                logger.info(f"[AFFILIATE] Concurrent commission insert lost for order {order.id}")
                return None

            await db.execute(
                update(Affiliate)
                .where(Affiliate.id == referral.affiliate_id)
                .values(total_commission_cents=Affiliate.total_commission_cents + amount)
            )
            await db.commit()

        logger.info(f"[AFFILIATE] Commission {amount} cents for order {order.id}")
        return commission

    async def reverse_commission(self, db: AsyncSession, order_id: uuid.UUID) -> int:
        """
        Mark the order's commission reversed inside the caller's transaction.

        Returns the reversed amount in cents (0 when there was none).
        """
        commission = (await db.execute(
            select(Commission).where(
                Commission.order_id == order_id,
                Commission.order_type == ORDER_TYPE,
                Commission.status != CommissionStatus.REVERSED.value,
            )
        )).scalar_one_or_none()
        if commission is None:
            return 0

        result = await db.execute(
            update(Commission)
            .where(
                Commission.id == commission.id,
                Commission.status != CommissionStatus.REVERSED.value,
            )
            .values(status=CommissionStatus.REVERSED.value, reversed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return 0

        await db.execute(
            update(Affiliate)
            .where(Affiliate.id == commission.affiliate_id)
            .values(total_commission_cents=Affiliate.total_commission_cents - commission.amount_cents)
        )
        logger.info(f"[AFFILIATE] Reversed commission {commission.amount_cents} cents for order {order_id}")
        return commission.amount_cents
