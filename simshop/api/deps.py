from typing import Annotated, Optional
import logging

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from simshop.database import get_db
from simshop.services.context import EngineContext, get_engine_context


logger = logging.getLogger(__name__)


def get_context() -> EngineContext:
    """Dependency returning the shared engine context (overridden in tests)."""
    return get_engine_context()


DB = Annotated[AsyncSession, Depends(get_db)]
Context = Annotated[EngineContext, Depends(get_context)]


async def require_admin(
    context: Context,
    x_admin_email: Optional[str] = Header(None, alias="X-Admin-Email"),
) -> str:
    """
    Dependency guarding admin endpoints.

    The caller's email must be in the admin list (ADMIN_EMAILS merged with
    the admin_settings row).
    """
    if not x_admin_email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin email header required",
        )

    snapshot = await context.settings_service.get()
    if not snapshot.is_admin(x_admin_email):
        logger.warning(f"Admin access denied for {x_admin_email}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not an admin",
        )
    return x_admin_email.strip().lower()


AdminEmail = Annotated[str, Depends(require_admin)]
