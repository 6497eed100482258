import logging
import uuid

import pytest
from sqlalchemy import select

from simshop.models.commission import Affiliate, Commission, CommissionStatus
from simshop.models.order import Order, OrderStatus, PaymentMethod, RefundMethod
from simshop.services.balance_service import BalanceService
from simshop.services.checkout_service import OrderNotFoundError
from simshop.services.email_service import NotificationTemplate
from simshop.services.refund_service import RefundError, RefundService
from simshop.services.side_effect_service import SideEffectPipeline


async def balance_of(session_factory, user_id):
    async with session_factory() as db:
        return await BalanceService(db).get_balance(user_id)


async def test_balance_refund_credits_customer(context, db, make_order, session_factory, load):
    order = await make_order(status=OrderStatus.ESIM_CREATED.value)

    refunded = await RefundService(context, db).refund(order.id, RefundMethod.BALANCE.value)

    assert refunded.status == OrderStatus.CANCELLED.value
    assert refunded.refund_amount_cents == 1999
    assert refunded.refund_method == RefundMethod.BALANCE.value
    assert await balance_of(session_factory, order.user_id) == 1999
    assert context.gateway.refunds == []


async def test_card_refund_goes_to_gateway_in_charged_currency(context, db, make_order):
    order = await make_order(display_currency="EUR", display_amount_cents=1850)

    await RefundService(context, db).refund(order.id, RefundMethod.CARD.value)

    assert context.gateway.refunds == [(order.payment_ref, 1850)]


async def test_partial_card_refund_is_scaled(context, db, make_order):
    order = await make_order(display_currency="EUR", display_amount_cents=1850)

    refunded = await RefundService(context, db).refund(order.id, RefundMethod.CARD.value, amount_cents=1000)

    assert refunded.refund_amount_cents == 1000
    assert context.gateway.refunds == [(order.payment_ref, 925)]


async def test_second_refund_is_rejected(context, db, make_order, session_factory):
    order = await make_order()
    service = RefundService(context, db)
    await service.refund(order.id, RefundMethod.BALANCE.value)

    with pytest.raises(RefundError) as exc:
        await service.refund(order.id, RefundMethod.BALANCE.value)

    assert exc.value.status_code == 409
    assert await balance_of(session_factory, order.user_id) == 1999


async def test_pending_order_cannot_be_refunded(context, db, make_order, load):
    order = await make_order(status=OrderStatus.PENDING.value)

    with pytest.raises(RefundError):
        await RefundService(context, db).refund(order.id, RefundMethod.BALANCE.value)
    assert (await load(Order, order.id)).status == OrderStatus.PENDING.value


async def test_unknown_order(context, db):
    with pytest.raises(OrderNotFoundError):
        await RefundService(context, db).refund(uuid.uuid4(), RefundMethod.BALANCE.value)


@pytest.mark.parametrize("kwargs", [
    {"method": RefundMethod.CARD.value, "payment_method": PaymentMethod.BALANCE.value},
    {"method": RefundMethod.BALANCE.value, "amount_cents": 5000},
    {"method": RefundMethod.BALANCE.value, "amount_cents": 0},
])
async def test_invalid_refund_requests(context, db, make_order, load, kwargs):
    kwargs = dict(kwargs)
    order = await make_order(payment_method=kwargs.pop("payment_method", PaymentMethod.GATEWAY.value))

    with pytest.raises(RefundError) as exc:
        await RefundService(context, db).refund(order.id, **kwargs)

    assert exc.value.status_code == 400
    assert (await load(Order, order.id)).status == OrderStatus.PAID.value


async def test_refund_reverses_commission(context, db, make_order, make_user, refer, load, session_factory):
    buyer = await make_user()
    affiliate = await refer(buyer)
    order = await make_order(
        status=OrderStatus.ESIM_CREATED.value, provider_order_no="ORD-1", with_profile=True, user=buyer,
    )
    await SideEffectPipeline(context).on_provisioned(order.id)
    await context.runner.drain()
    assert (await load(Affiliate, affiliate.id)).total_commission_cents == 200

    await RefundService(context, db).refund(order.id, RefundMethod.BALANCE.value)

    assert (await load(Affiliate, affiliate.id)).total_commission_cents == 0
    async with session_factory() as check:
        commission = (await check.execute(
            select(Commission).where(Commission.order_id == order.id)
        )).scalar_one()
    assert commission.status == CommissionStatus.REVERSED.value
    assert commission.reversed_at is not None


async def test_refund_emails_customer(context, db, make_order, dispatcher):
    order = await make_order()

    await RefundService(context, db).refund(order.id, RefundMethod.BALANCE.value, amount_cents=500)
    await context.runner.drain()

    template, _, variables = dispatcher.sent[0]
    assert template == NotificationTemplate.REFUND.value
    assert variables["amount"] == "5.00 USD"
    assert variables["refund_method"] == "account balance"


async def test_failed_commit_after_card_refund_logs_refund_id(context, db, make_order, load, monkeypatch, caplog):
    caplog.set_level(logging.ERROR, logger="simshop.services.refund_service")
    order = await make_order()

    async def failing_commit():
        raise RuntimeError("database is locked")

    monkeypatch.setattr(db, "commit", failing_commit)

    with pytest.raises(RuntimeError):
        await RefundService(context, db).refund(order.id, RefundMethod.CARD.value)

    assert context.gateway.refunds == [(order.payment_ref, 1999)]
    assert "rfnd_test_1" in caplog.text
    assert order.payment_ref in caplog.text
    assert (await load(Order, order.id)).status == OrderStatus.PAID.value
