"""
eSIM Profile Service

- Periodic sync: re-query each profile's provider order for status,
  capacity and expiry, then fetch usage in batches and record a usage
  history row whenever used_bytes changes
- Suspend / unsuspend / revoke through the provisioning client, mirroring
  the resulting status onto the profile
"""

import logging
import uuid
from typing import Dict, List, Optional, TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from simshop.db_types import utcnow
from simshop.models.esim_profile import EsimProfile, UsageHistory
from simshop.models.order import Order, OrderStatus
from simshop.services.esim_provider import ProviderAPIError, ProviderProfile

if TYPE_CHECKING:
    from simshop.services.context import EngineContext

logger = logging.getLogger(__name__)


class ProfileNotFoundError(Exception):
    def __init__(self, profile_id: uuid.UUID):
        self.profile_id = profile_id
        self.message = f"eSIM profile {profile_id} not found"
        super().__init__(self.message)


class ProfileActionError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


LIFECYCLE_STATUSES = {
    "suspend": "SUSPENDED",
    "unsuspend": "IN_USE",
    "revoke": "REVOKED",
}


class ProfileService:
    def __init__(self, context: "EngineContext", db: AsyncSession):
        self.context = context
        self.db = db

    async def get_profile(self, profile_id: uuid.UUID) -> EsimProfile:
        profile = await self.db.get(EsimProfile, profile_id)
        if profile is None:
            raise ProfileNotFoundError(profile_id)
        return profile

    async def list_for_order(self, order_id: uuid.UUID) -> List[EsimProfile]:
        result = await self.db.execute(
            select(EsimProfile).where(EsimProfile.order_id == order_id).order_by(EsimProfile.created_at)
        )
        return list(result.scalars().all())

    async def usage_history(self, profile_id: uuid.UUID, limit: int = 100) -> List[UsageHistory]:
        result = await self.db.execute(
            select(UsageHistory)
            .where(UsageHistory.profile_id == profile_id)
            .order_by(UsageHistory.recorded_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ==================== Lifecycle ====================

    async def _lifecycle(self, profile_id: uuid.UUID, action: str) -> EsimProfile:
        profile = await self.get_profile(profile_id)
        if not profile.esim_tran_no:
            raise ProfileActionError("Profile has no provider reference yet")
        if profile.status == "REVOKED":
            raise ProfileActionError("Profile is revoked", status_code=409)

        client = await self.context.provisioning_client()
        try:
            ok = await getattr(client, action)(profile.esim_tran_no)
        except ProviderAPIError as e:
            logger.error(f"[SYNC] {action} failed for profile {profile_id}: {e.message}")
            raise
        if not ok:
            raise ProfileActionError(f"Provider refused to {action} the profile", status_code=502)

        profile.status = LIFECYCLE_STATUSES[action]
        profile.last_synced_at = utcnow()
        await self.db.commit()
        logger.info(f"[SYNC] Profile {profile_id} {action} -> {profile.status}")
        return profile

    async def suspend(self, profile_id: uuid.UUID) -> EsimProfile:
        return await self._lifecycle(profile_id, "suspend")

    async def unsuspend(self, profile_id: uuid.UUID) -> EsimProfile:
        return await self._lifecycle(profile_id, "unsuspend")

    async def revoke(self, profile_id: uuid.UUID) -> EsimProfile:
        return await self._lifecycle(profile_id, "revoke")

    # ==================== Sync ====================

    @staticmethod
    def _match(profile: EsimProfile, candidates: List[ProviderProfile]) -> Optional[ProviderProfile]:
        for candidate in candidates:
            if profile.esim_tran_no and candidate.esim_tran_no == profile.esim_tran_no:
                return candidate
            if profile.iccid and candidate.iccid == profile.iccid:
                return candidate
        return None

    async def sync_profiles(self) -> Dict[str, int]:
        """Refresh every active profile from the provider. Per-order failures are logged and skipped."""
        stats = {"profiles": 0, "updated": 0, "usage_records": 0, "errors": 0}

        rows = (await self.db.execute(
            select(EsimProfile, Order.provider_order_no)
            .join(Order, Order.id == EsimProfile.order_id)
            .where(
                Order.status == OrderStatus.ESIM_CREATED.value,
                Order.provider_order_no.is_not(None),
            )
        )).all()
        stats["profiles"] = len(rows)
        if not rows:
            return stats

        client = await self.context.provisioning_client()

        by_order: Dict[str, List[EsimProfile]] = {}
        for profile, order_no in rows:
            by_order.setdefault(order_no, []).append(profile)

        for order_no, profiles in by_order.items():
            try:
                remote = await client.query(order_no)
            except ProviderAPIError as e:
                stats["errors"] += 1
                logger.warning(f"[SYNC] Query for {order_no} failed: {e.message}")
                continue
            for profile in profiles:
                data = self._match(profile, remote)
                if data is None:
                    continue
                if data.status:
                    profile.status = data.status
                if data.smdp_status:
                    profile.smdp_status = data.smdp_status
                if data.capacity_bytes is not None:
                    profile.capacity_bytes = data.capacity_bytes
                if data.expires_at is not None:
                    profile.expires_at = data.expires_at
                profile.last_synced_at = utcnow()
                stats["updated"] += 1
        await self.db.commit()

        stats["usage_records"], usage_errors = await self._sync_usage([p for p, _ in rows])
        stats["errors"] += usage_errors
        logger.info(f"[SYNC] Profile sync finished: {stats}")
        return stats

    async def _sync_usage(self, profiles: List[EsimProfile]) -> tuple[int, int]:
        batch_size = self.context.config.USAGE_QUERY_BATCH_SIZE
        by_tran_no = {p.esim_tran_no: p for p in profiles if p.esim_tran_no}
        tran_nos = list(by_tran_no)
        client = await self.context.provisioning_client()

        recorded = 0
        errors = 0
        for start in range(0, len(tran_nos), batch_size):
            batch = tran_nos[start:start + batch_size]
            try:
                usage = await client.usage(batch)
            except ProviderAPIError as e:
                errors += 1
                logger.warning(f"[SYNC] Usage batch of {len(batch)} failed: {e.message}")
                continue

            for item in usage:
                profile = by_tran_no.get(item.esim_tran_no)
                if profile is None or profile.used_bytes == item.used_bytes:
                    continue
                profile.used_bytes = item.used_bytes
                if item.total_bytes is not None:
                    profile.capacity_bytes = item.total_bytes
                self.db.add(UsageHistory(
                    profile_id=profile.id,
                    used_bytes=item.used_bytes,
                    capacity_bytes=profile.capacity_bytes,
                ))
                recorded += 1
            await self.db.commit()
        return recorded, errors
