"""
Settings Service

Read-through cache over the admin_settings row:
- get() serves a snapshot, loading from the database on a miss
- entries expire after SETTINGS_CACHE_TTL seconds
- update() writes the row and calls invalidate()
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from simshop.config import settings
from simshop.models.admin_settings import AdminSettings, SETTINGS_ROW_ID
from simshop.services.cache_service import CacheBackend

logger = logging.getLogger(__name__)


@dataclass
class SettingsSnapshot:
    mock_mode: bool = False
    default_markup_percent: int = 0
    default_currency: str = "USD"
    admin_emails: List[str] = field(default_factory=list)
    pricing: Dict[str, float] = field(default_factory=dict)
    discounts: Dict[str, int] = field(default_factory=dict)
    email_enabled: bool = True

    def discount_percent(self, code: str) -> Optional[int]:
        value = self.discounts.get((code or "").strip().upper())
        return int(value) if value is not None else None

    def is_admin(self, email: Optional[str]) -> bool:
        if not email:
            return False
        return email.strip().lower() in self.admin_emails


UPDATABLE_FIELDS = (
    "mock_mode",
    "default_markup_percent",
    "default_currency",
    "admin_emails",
    "pricing",
    "discounts",
    "email_enabled",
)


class SettingsService:
    """Cached access to runtime settings."""

    CACHE_KEY = "simshop:settings"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: CacheBackend,
        ttl: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.ttl = ttl if ttl is not None else settings.SETTINGS_CACHE_TTL

    def _to_snapshot(self, row: Optional[AdminSettings]) -> SettingsSnapshot:
        env_admins = settings.admin_emails_list
        if row is None:
            return SettingsSnapshot(admin_emails=env_admins)

        row_admins = [e.strip().lower() for e in (row.admin_emails or []) if e]
        return SettingsSnapshot(
            mock_mode=row.mock_mode,
            default_markup_percent=row.default_markup_percent,
            default_currency=(row.default_currency or "USD").upper(),
            admin_emails=sorted(set(env_admins) | set(row_admins)),
            pricing=dict(row.pricing or {}),
            discounts={k.upper(): v for k, v in (row.discounts or {}).items()},
            email_enabled=row.email_enabled,
        )

    async def _load(self) -> SettingsSnapshot:
        async with self.session_factory() as db:
            result = await db.execute(
                select(AdminSettings).where(AdminSettings.id == SETTINGS_ROW_ID)
            )
            return self._to_snapshot(result.scalar_one_or_none())

    async def get(self) -> SettingsSnapshot:
        cached = await self.cache.get(self.CACHE_KEY)
        if cached is not None:
            return SettingsSnapshot(**cached)

        snapshot = await self._load()
        await self.cache.set(self.CACHE_KEY, asdict(snapshot), ttl=self.ttl)
        return snapshot

    async def invalidate(self) -> None:
        await self.cache.delete(self.CACHE_KEY)

    async def update(self, changes: Dict[str, Any]) -> SettingsSnapshot:
        """Persist the given fields, then drop the cached snapshot."""
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

        async with self.session_factory() as db:
            row = await db.get(AdminSettings, SETTINGS_ROW_ID)
            if row is None:
                row = AdminSettings(id=SETTINGS_ROW_ID)
                db.add(row)
            for name, value in changes.items():
                if name == "default_currency" and value:
                    value = value.upper()
                setattr(row, name, value)
            await db.commit()

        await self.invalidate()
        logger.info(f"Settings updated: {', '.join(sorted(changes))}")
        return await self.get()
