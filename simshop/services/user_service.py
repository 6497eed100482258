"""
User resolution for checkout and payment reconciliation.

Users are keyed by lower-cased email. Guests get a placeholder address under
GUEST_EMAIL_DOMAIN until a real one is supplied.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from simshop.config import settings
from simshop.models.user import User

logger = logging.getLogger(__name__)


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    email = email.strip().lower()
    return email or None


def placeholder_email() -> str:
    return f"guest-{uuid.uuid4().hex}@{settings.GUEST_EMAIL_DOMAIN}"


def is_placeholder_email(email: Optional[str]) -> bool:
    return bool(email) and email.lower().endswith(f"@{settings.GUEST_EMAIL_DOMAIN}")


class UserService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == normalize_email(email)))
        return result.scalar_one_or_none()

    async def create_guest(self) -> User:
        user = User(email=placeholder_email(), is_guest=True)
        self.db.add(user)
        await self.db.flush()
        logger.info(f"[CHECKOUT] Created guest user {user.id}")
        return user

    async def get_or_create(self, email: Optional[str], name: Optional[str] = None) -> User:
        """
        User for `email`, created if missing; a guest when no email is given.

        Must run before anything else is pending in the session: a concurrent
        insert of the same email is resolved by rolling back and re-reading.
        """
        email = normalize_email(email)
        if email is None:
            return await self.create_guest()

        user = await self.get_by_email(email)
        if user:
            return user

        user = User(email=email, name=name, is_guest=False)
        self.db.add(user)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            user = await self.get_by_email(email)
            if user is None:
                raise
        return user

    async def claim_email(self, user: User, email: Optional[str]) -> User:
        """
        Swap a guest's placeholder for a real address.

        If another user already owns the address, that user is returned and
        the caller re-points its order; otherwise the guest is updated in place.
        """
        email = normalize_email(email)
        if email is None or not is_placeholder_email(user.email):
            return user

        owner = await self.get_by_email(email)
        if owner is not None:
            return owner

        user.email = email
        user.is_guest = False
        await self.db.flush()
        logger.info(f"Guest user {user.id} reconciled to {email}")
        return user
