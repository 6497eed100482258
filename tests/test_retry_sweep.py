from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from simshop.jobs.order_jobs import retry_pending_orders, send_pending_receipts
from simshop.models.esim_profile import EsimProfile
from simshop.models.order import Order, OrderStatus
from simshop.services.email_service import NotificationTemplate
from simshop.services.esim_provider import ProviderAPIError
from simshop.services.provisioning_service import ProvisioningOrchestrator


async def status_of(load, order_id):
    return (await load(Order, order_id)).status


async def test_order_with_stored_order_no_is_never_reordered(context, make_order, provider, load):
    order = await make_order(status=OrderStatus.ESIM_PENDING.value, provider_order_no="ORD-42")
    provider.query_script.extend([[], []])

    await retry_pending_orders(context)
    assert await status_of(load, order.id) == OrderStatus.ESIM_PENDING.value

    await retry_pending_orders(context)
    await context.runner.drain()

    assert await status_of(load, order.id) == OrderStatus.ESIM_CREATED.value
    assert provider.order_calls == []
    assert (await load(Order, order.id)).provider_order_no == "ORD-42"


async def test_provider_outage_recovers_through_sweeps(
    context, make_order, provider, dispatcher, load, count_rows
):
    """Three sweeps time out, the fourth gets an order no but no profile, the fifth completes."""
    order = await make_order(status=OrderStatus.ESIM_ORDER_FAILED.value)
    provider.order_script.extend([ProviderAPIError(504, "Timeout")] * 3)
    provider.query_script.extend([[], []])

    seen = []
    for _ in range(5):
        await retry_pending_orders(context)
        seen.append(await status_of(load, order.id))
    await context.runner.drain()

    assert seen == [
        OrderStatus.ESIM_ORDER_FAILED.value,
        OrderStatus.ESIM_ORDER_FAILED.value,
        OrderStatus.ESIM_ORDER_FAILED.value,
        OrderStatus.ESIM_PENDING.value,
        OrderStatus.ESIM_CREATED.value,
    ]
    assert len(provider.order_calls) == 4
    assert {call[0] for call in provider.order_calls} == {f"gateway_{order.id}"}
    assert await count_rows(EsimProfile, EsimProfile.order_id == order.id) == 1
    assert dispatcher.count(NotificationTemplate.ESIM_READY.value) == 1


async def test_one_failing_order_does_not_stop_the_batch(context, make_order, load, monkeypatch):
    broken = await make_order(status=OrderStatus.ESIM_ORDER_FAILED.value)
    healthy = await make_order(status=OrderStatus.ESIM_ORDER_FAILED.value)
    original = ProvisioningOrchestrator.provision

    async def provision(self, order_id, poll_attempts=None):
        if order_id == broken.id:
            raise RuntimeError("boom")
        return await original(self, order_id, poll_attempts)

    monkeypatch.setattr(ProvisioningOrchestrator, "provision", provision)

    stats = await retry_pending_orders(context)

    assert stats["processed"] == 2
    assert stats["errors"] == 1
    assert stats["created"] == 1
    assert await status_of(load, healthy.id) == OrderStatus.ESIM_CREATED.value
    assert await status_of(load, broken.id) == OrderStatus.ESIM_ORDER_FAILED.value


async def test_sweep_takes_oldest_orders_first(context, make_order, provider, load):
    context.config.RETRY_SWEEP_BATCH_SIZE = 2
    now = datetime.now(timezone.utc)
    newest = await make_order(status=OrderStatus.ESIM_NO_ORDERNO.value, created_at=now)
    oldest = await make_order(status=OrderStatus.ESIM_NO_ORDERNO.value, created_at=now - timedelta(hours=2))
    middle = await make_order(status=OrderStatus.ESIM_NO_ORDERNO.value, created_at=now - timedelta(hours=1))

    stats = await retry_pending_orders(context)

    assert stats["processed"] == 2
    assert [call[0] for call in provider.order_calls] == [f"gateway_{oldest.id}", f"gateway_{middle.id}"]
    assert await status_of(load, newest.id) == OrderStatus.ESIM_NO_ORDERNO.value


@pytest.mark.parametrize("status", [
    OrderStatus.PENDING.value,
    OrderStatus.PAID.value,
    OrderStatus.CANCELLED.value,
])
async def test_non_retryable_orders_are_not_swept(context, make_order, provider, load, status):
    order = await make_order(status=status)

    stats = await retry_pending_orders(context)

    assert stats["processed"] == 0
    assert provider.order_calls == []
    assert await status_of(load, order.id) == status


# ==================== Receipt sweep ====================

async def test_receipt_sweep_sends_missing_receipts(context, make_order, dispatcher, load):
    order = await make_order(status=OrderStatus.ESIM_CREATED.value, provider_order_no="ORD-3", with_profile=True)
    done = await make_order(
        status=OrderStatus.ESIM_CREATED.value, provider_order_no="ORD-4", with_profile=True, receipt_sent=True,
    )

    assert await send_pending_receipts(context) == 1
    assert await send_pending_receipts(context) == 0
    await context.runner.drain()

    assert (await load(Order, order.id)).receipt_sent is True
    assert [sent[2]["order_id"] for sent in dispatcher.sent] == [str(order.id)]
    assert (await load(Order, done.id)).receipt_sent is True


async def test_receipt_sweep_skips_orders_without_profile(context, make_order, dispatcher, session_factory):
    order = await make_order(status=OrderStatus.ESIM_CREATED.value, provider_order_no="ORD-5")

    assert await send_pending_receipts(context) == 0
    assert dispatcher.sent == []
    async with session_factory() as db:
        stored = (await db.execute(select(Order).where(Order.id == order.id))).scalar_one()
    assert stored.receipt_sent is False
