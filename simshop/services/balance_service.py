"""
Balance Service

Stored-value balance per user with an append-only ledger. All methods work
inside the caller's session and never commit, so a debit can share one
transaction with the order it pays for.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from simshop.models.balance import BalanceAccount, BalanceTransaction, BalanceTransactionType

logger = logging.getLogger(__name__)


class InsufficientBalanceError(Exception):
    """Balance does not cover the requested debit."""

    def __init__(self, available_cents: int, required_cents: int):
        self.available_cents = available_cents
        self.required_cents = required_cents
        self.message = (
            f"Insufficient balance: {available_cents} cents available, "
            f"{required_cents} cents required"
        )
        super().__init__(self.message)


class BalanceService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_account(self, user_id: uuid.UUID) -> Optional[BalanceAccount]:
        result = await self.db.execute(
            select(BalanceAccount).where(BalanceAccount.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_balance(self, user_id: uuid.UUID) -> int:
        account = await self.get_account(user_id)
        return account.balance_cents if account else 0

    async def _get_or_create_account(self, user_id: uuid.UUID) -> BalanceAccount:
        account = await self.get_account(user_id)
        if account is None:
            account = BalanceAccount(user_id=user_id, balance_cents=0)
            self.db.add(account)
            await self.db.flush()
        return account

    async def credit(
        self,
        user_id: uuid.UUID,
        amount_cents: int,
        reason: str,
        order_id: Optional[uuid.UUID] = None,
        extra_data: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Add to the balance. Returns the new balance."""
        if amount_cents <= 0:
            raise ValueError("Credit amount must be positive")

        account = await self._get_or_create_account(user_id)
        await self.db.execute(
            update(BalanceAccount)
            .where(BalanceAccount.id == account.id)
            .values(balance_cents=BalanceAccount.balance_cents + amount_cents)
            .execution_options(synchronize_session=False)
        )
        self.db.add(BalanceTransaction(
            account_id=account.id,
            type=BalanceTransactionType.CREDIT.value,
            amount_cents=amount_cents,
            reason=reason,
            order_id=order_id,
            extra_data=extra_data,
        ))
        await self.db.flush()
        await self.db.refresh(account)
        logger.info(f"Balance credit {amount_cents} cents for user {user_id} ({reason})")
        return account.balance_cents

    async def debit(
        self,
        user_id: uuid.UUID,
        amount_cents: int,
        reason: str,
        order_id: Optional[uuid.UUID] = None,
        extra_data: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Conditional decrement: only succeeds while the balance covers the amount.

        Raises InsufficientBalanceError otherwise. Returns the new balance.
        """
        if amount_cents <= 0:
            raise ValueError("Debit amount must be positive")

        account = await self.get_account(user_id)
        if account is None:
            raise InsufficientBalanceError(0, amount_cents)

        result = await self.db.execute(
            update(BalanceAccount)
            .where(
                BalanceAccount.id == account.id,
                BalanceAccount.balance_cents >= amount_cents,
            )
            .values(balance_cents=BalanceAccount.balance_cents - amount_cents)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.refresh(account)
            raise InsufficientBalanceError(account.balance_cents, amount_cents)

        self.db.add(BalanceTransaction(
            account_id=account.id,
            type=BalanceTransactionType.DEBIT.value,
            amount_cents=amount_cents,
            reason=reason,
            order_id=order_id,
            extra_data=extra_data,
        ))
        await self.db.flush()
        await self.db.refresh(account)
        logger.info(f"Balance debit {amount_cents} cents for user {user_id} ({reason})")
        return account.balance_cents
