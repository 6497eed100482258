import asyncio

from simshop.models.commission import Affiliate, Commission
from simshop.models.order import Order, OrderStatus, PaymentMethod
from simshop.services.affiliate_service import FraudScreen
from simshop.services.email_service import NotificationTemplate
from simshop.services.side_effect_service import SideEffectPipeline


class DenyingFraudScreen(FraudScreen):
    def __init__(self):
        self.screened = []

    async def allow_commission(self, affiliate_id, order):
        self.screened.append(order.id)
        return False


async def created_order(make_order, make_user, refer, **kwargs):
    buyer = await make_user()
    affiliate = await refer(buyer)
    order = await make_order(
        status=OrderStatus.ESIM_CREATED.value,
        provider_order_no="ORD-1",
        with_profile=True,
        user=buyer,
        **kwargs,
    )
    return order, affiliate


async def test_commission_and_receipt_for_referred_order(context, make_order, make_user, refer, dispatcher, load):
    order, affiliate = await created_order(make_order, make_user, refer)

    report = await SideEffectPipeline(context).on_provisioned(order.id)
    await context.runner.drain()

    assert report.commission_created is True
    assert report.notification_claimed is True
    assert (await load(Affiliate, affiliate.id)).total_commission_cents == 200
    assert (await load(Order, order.id)).receipt_sent is True

    template, recipient, variables = dispatcher.sent[0]
    assert template == NotificationTemplate.ESIM_READY.value
    assert variables["iccid"] == "ICCID-ORD-1"


async def test_concurrent_runs_create_one_commission_and_one_receipt(
    context, make_order, make_user, refer, dispatcher, count_rows
):
    order, _ = await created_order(make_order, make_user, refer)

    reports = await asyncio.gather(*(SideEffectPipeline(context).on_provisioned(order.id) for _ in range(3)))
    await context.runner.drain()

    assert sum(r.commission_created for r in reports) == 1
    assert sum(r.notification_claimed for r in reports) == 1
    assert await count_rows(Commission, Commission.order_id == order.id) == 1
    assert dispatcher.count(NotificationTemplate.ESIM_READY.value) == 1


async def test_second_run_is_a_no_op(context, make_order, make_user, refer, dispatcher, count_rows, load):
    order, affiliate = await created_order(make_order, make_user, refer)
    pipeline = SideEffectPipeline(context)

    await pipeline.on_provisioned(order.id)
    again = await pipeline.on_provisioned(order.id)
    await context.runner.drain()

    assert again.commission_created is False
    assert again.notification_claimed is False
    assert await count_rows(Commission, Commission.order_id == order.id) == 1
    assert (await load(Affiliate, affiliate.id)).total_commission_cents == 200
    assert len(dispatcher.sent) == 1


async def test_balance_orders_earn_no_commission(context, make_order, make_user, refer, dispatcher, count_rows):
    order, _ = await created_order(make_order, make_user, refer, payment_method=PaymentMethod.BALANCE.value)

    report = await SideEffectPipeline(context).on_provisioned(order.id)
    await context.runner.drain()

    assert report.commission_created is False
    assert await count_rows(Commission) == 0
    assert dispatcher.count(NotificationTemplate.ESIM_READY.value) == 1


async def test_commission_uses_reference_amount(context, make_order, make_user, refer, load):
    order, affiliate = await created_order(
        make_order, make_user, refer, amount_cents=2000, display_currency="EUR", display_amount_cents=1850
    )

    await SideEffectPipeline(context).on_provisioned(order.id)

    assert (await load(Affiliate, affiliate.id)).total_commission_cents == 200


async def test_orders_not_yet_created_are_ignored(context, make_order, dispatcher):
    order = await make_order(status=OrderStatus.ESIM_PENDING.value, provider_order_no="ORD-1")

    report = await SideEffectPipeline(context).on_provisioned(order.id)

    assert report.commission_created is False
    assert report.notification_claimed is False
    assert dispatcher.sent == []


async def test_delivery_failure_does_not_raise(context, make_order, dispatcher, load):
    order = await make_order(status=OrderStatus.ESIM_CREATED.value, provider_order_no="ORD-1", with_profile=True)
    dispatcher.error = RuntimeError("smtp down")

    report = await SideEffectPipeline(context).on_provisioned(order.id)
    await context.runner.drain()

    assert report.notification_claimed is True
    assert (await load(Order, order.id)).receipt_sent is True
    assert dispatcher.sent == []


async def test_fraud_screen_can_withhold_commission(context, make_order, make_user, refer, count_rows):
    screen = DenyingFraudScreen()
    context.fraud_screen = screen
    order, _ = await created_order(make_order, make_user, refer)

    report = await SideEffectPipeline(context).on_provisioned(order.id)

    assert report.commission_created is False
    assert screen.screened == [order.id]
    assert await count_rows(Commission) == 0
