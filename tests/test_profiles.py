import uuid

import pytest
from sqlalchemy import select

from simshop.models.esim_profile import EsimProfile, UsageHistory
from simshop.models.order import OrderStatus
from simshop.services.esim_provider import ProviderAPIError
from simshop.services.profile_service import ProfileActionError, ProfileNotFoundError, ProfileService

from fakes import GB, ready_profile


async def profile_for(session_factory, order_id) -> EsimProfile:
    async with session_factory() as db:
        return (await db.execute(select(EsimProfile).where(EsimProfile.order_id == order_id))).scalar_one()


@pytest.fixture
def provisioned(make_order, session_factory):
    async def _make(order_no="ORD-1"):
        order = await make_order(
            status=OrderStatus.ESIM_CREATED.value, provider_order_no=order_no, with_profile=True, receipt_sent=True,
        )
        return order, await profile_for(session_factory, order.id)
    return _make


# ==================== Lifecycle ====================

async def test_suspend_and_unsuspend(context, db, provisioned, provider):
    _, profile = await provisioned()
    service = ProfileService(context, db)

    assert (await service.suspend(profile.id)).status == "SUSPENDED"
    assert (await service.unsuspend(profile.id)).status == "IN_USE"
    assert provider.lifecycle_calls == [("suspend", "TRAN-ORD-1"), ("unsuspend", "TRAN-ORD-1")]


async def test_revoked_profile_rejects_further_actions(context, db, provisioned):
    _, profile = await provisioned()
    service = ProfileService(context, db)
    await service.revoke(profile.id)

    with pytest.raises(ProfileActionError) as exc:
        await service.suspend(profile.id)
    assert exc.value.status_code == 409


async def test_provider_refusal_is_reported(context, db, provisioned, provider):
    _, profile = await provisioned()
    provider.lifecycle_result = False

    with pytest.raises(ProfileActionError) as exc:
        await ProfileService(context, db).suspend(profile.id)
    assert exc.value.status_code == 502


async def test_profile_without_provider_reference(context, db, make_order):
    order = await make_order(status=OrderStatus.ESIM_CREATED.value)
    profile = EsimProfile(order_id=order.id, user_id=order.user_id, status="GOT_RESOURCE")
    db.add(profile)
    await db.commit()

    with pytest.raises(ProfileActionError):
        await ProfileService(context, db).suspend(profile.id)


async def test_unknown_profile(context, db):
    with pytest.raises(ProfileNotFoundError):
        await ProfileService(context, db).get_profile(uuid.uuid4())


# ==================== Sync ====================

async def test_sync_refreshes_status_and_records_usage_once(context, db, provisioned, provider, session_factory):
    order, profile = await provisioned()
    provider.query_script.append([ready_profile("ORD-1", status="IN_USE")])
    provider.usage_by_tran["TRAN-ORD-1"] = GB // 4

    stats = await ProfileService(context, db).sync_profiles()

    assert stats["updated"] == 1
    assert stats["usage_records"] == 1
    refreshed = await profile_for(session_factory, order.id)
    assert refreshed.status == "IN_USE"
    assert refreshed.used_bytes == GB // 4

    again = await ProfileService(context, db).sync_profiles()
    assert again["usage_records"] == 0

    async with session_factory() as check:
        history = (await check.execute(
            select(UsageHistory).where(UsageHistory.profile_id == profile.id)
        )).scalars().all()
    assert [h.used_bytes for h in history] == [GB // 4]


async def test_usage_is_queried_in_batches(context, db, provisioned, provider):
    context.config.USAGE_QUERY_BATCH_SIZE = 2
    for n in range(3):
        await provisioned(f"ORD-{n}")

    await ProfileService(context, db).sync_profiles()

    assert sorted(len(batch) for batch in provider.usage_calls) == [1, 2]


async def test_sync_skips_orders_the_provider_cannot_answer(context, db, provisioned, provider):
    await provisioned("ORD-1")
    await provisioned("ORD-2")
    provider.query_script.append(ProviderAPIError(504, "Timeout"))

    stats = await ProfileService(context, db).sync_profiles()

    assert stats["profiles"] == 2
    assert stats["errors"] == 1
    assert stats["updated"] == 1
