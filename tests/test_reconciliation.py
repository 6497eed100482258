import asyncio
import uuid

from sqlalchemy import select

from simshop.models.commission import Commission, Referral
from simshop.models.esim_profile import EsimProfile
from simshop.models.order import Order, OrderStatus
from simshop.models.user import User
from simshop.services.affiliate_service import AffiliateService
from simshop.services.checkout_service import CheckoutService
from simshop.services.email_service import NotificationTemplate
from simshop.services.payment_service import GatewayEvent
from simshop.services.reconciliation_service import PaymentReconciler, ReconcileOutcome
from simshop.services.user_service import UserService

from fakes import PLAN_CODE


async def pending_order(context, session_factory, currency="EUR", email=None, referral_code=None):
    async with session_factory() as db:
        result = await CheckoutService(context, db).create_checkout(
            PLAN_CODE, 1999, currency, "gateway", email=email, referral_code=referral_code,
        )
    return result.order_id


async def deliver(context, session_factory, event):
    async with session_factory() as db:
        return await PaymentReconciler(context, db).reconcile(event)


def captured(order_id=None, payment_ref="pi_123", amount_cents=1850, currency="eur", **extra):
    return GatewayEvent(
        event_type="payment.captured",
        payment_ref=payment_ref,
        order_id=order_id,
        amount_cents=amount_cents,
        currency=currency,
        **extra,
    )


# ==================== Existing order ====================

async def test_webhook_marks_pending_order_paid_in_charged_currency(context, session_factory, load):
    order_id = await pending_order(context, session_factory)

    outcome, reconciled_id = await deliver(context, session_factory, captured(order_id))
    await context.runner.drain()

    assert outcome == ReconcileOutcome.TRANSITIONED
    assert reconciled_id == order_id
    order = await load(Order, order_id)
    assert order.payment_ref == "pi_123"
    assert order.display_currency == "EUR"
    assert order.display_amount_cents == 1850
    assert order.amount_cents == 1999
    assert order.status == OrderStatus.ESIM_CREATED.value


async def test_repeated_delivery_transitions_once(context, session_factory, provider, dispatcher, count_rows):
    order_id = await pending_order(context, session_factory)

    outcomes = [
        (await deliver(context, session_factory, captured(order_id)))[0]
        for _ in range(5)
    ]
    await context.runner.drain()

    assert outcomes == [ReconcileOutcome.TRANSITIONED] + [ReconcileOutcome.DUPLICATE] * 4
    assert len(provider.order_calls) == 1
    assert await count_rows(EsimProfile, EsimProfile.order_id == order_id) == 1
    assert dispatcher.count(NotificationTemplate.ORDER_CONFIRMATION.value) == 1
    assert dispatcher.count(NotificationTemplate.ESIM_READY.value) == 1


async def test_concurrent_delivery_transitions_once(context, session_factory, provider):
    order_id = await pending_order(context, session_factory)

    results = await asyncio.gather(*[
        deliver(context, session_factory, captured(order_id))
        for _ in range(3)
    ])
    await context.runner.drain()

    outcomes = sorted(outcome.value for outcome, _ in results)
    assert outcomes == ["duplicate", "duplicate", "transitioned"]
    assert len(provider.order_calls) == 1


async def test_reference_amount_is_fixed_after_payment(context, session_factory, load):
    order_id = await pending_order(context, session_factory)
    await deliver(context, session_factory, captured(order_id))
    await context.runner.drain()

    outcome, _ = await deliver(
        context, session_factory, captured(order_id, payment_ref="pi_456", amount_cents=9999, currency="gbp"),
    )

    assert outcome == ReconcileOutcome.DUPLICATE
    order = await load(Order, order_id)
    assert order.amount_cents == 1999
    assert order.display_amount_cents == 1850
    assert order.display_currency == "EUR"
    assert order.payment_ref == "pi_123"


async def test_guest_placeholder_replaced_by_charged_email(context, session_factory, load):
    order_id = await pending_order(context, session_factory)

    await deliver(context, session_factory, captured(order_id, email="Payer@Example.com"))
    await context.runner.drain()

    order = await load(Order, order_id)
    user = await load(User, order.user_id)
    assert user.email == "payer@example.com"
    assert not user.is_guest


async def test_email_taken_concurrently_still_marks_order_paid(
    context, session_factory, make_user, load, monkeypatch
):
    await make_user("taken@example.com")
    order_id = await pending_order(context, session_factory)

    # The address is inserted by someone else between the lookup and the flush
    original = UserService.get_by_email
    misses = []

    async def get_by_email(self, email):
        if not misses:
            misses.append(email)
            return None
        return await original(self, email)

    monkeypatch.setattr(UserService, "get_by_email", get_by_email)

    outcome, reconciled_id = await deliver(context, session_factory, captured(order_id, email="taken@example.com"))
    await context.runner.drain()

    assert outcome == ReconcileOutcome.TRANSITIONED
    assert reconciled_id == order_id
    assert misses == ["taken@example.com"]
    order = await load(Order, order_id)
    assert order.payment_ref == "pi_123"
    assert order.status == OrderStatus.ESIM_CREATED.value
    guest = await load(User, order.user_id)
    assert guest.is_guest


async def test_payment_ref_owned_by_another_order_is_a_duplicate(context, session_factory, load):
    first = await pending_order(context, session_factory)
    second = await pending_order(context, session_factory)
    await deliver(context, session_factory, captured(first, payment_ref="pi_shared"))

    outcome, reconciled_id = await deliver(context, session_factory, captured(second, payment_ref="pi_shared"))
    await context.runner.drain()

    assert outcome == ReconcileOutcome.DUPLICATE
    assert reconciled_id == second
    order = await load(Order, second)
    assert order.status == OrderStatus.PENDING.value
    assert order.payment_ref is None


async def test_referral_linked_and_commission_on_reference_amount(
    context, session_factory, make_user, count_rows
):
    owner = await make_user("affiliate@example.com")
    affiliate = await AffiliateService(context).ensure_affiliate(owner.id)
    order_id = await pending_order(
        context, session_factory, email="friend@example.com", referral_code=affiliate.referral_code,
    )

    await deliver(context, session_factory, captured(order_id))
    await context.runner.drain()

    assert await count_rows(Referral, Referral.affiliate_id == affiliate.id) == 1
    async with session_factory() as db:
        commission = (await db.execute(
            select(Commission).where(Commission.order_id == order_id)
        )).scalar_one()
    assert commission.affiliate_id == affiliate.id
    assert commission.amount_cents == 200


# ==================== Legacy / first-contact ====================

async def test_event_without_order_creates_paid_order(context, session_factory, load):
    outcome, order_id = await deliver(context, session_factory, captured(
        payment_ref="pi_legacy",
        plan_id=PLAN_CODE,
        fx_rate="0.925",
        email="legacy@example.com",
    ))
    await context.runner.drain()

    assert outcome == ReconcileOutcome.CREATED
    order = await load(Order, order_id)
    assert order.amount_cents == 2000
    assert order.display_currency == "EUR"
    assert order.display_amount_cents == 1850
    assert order.payment_ref == "pi_legacy"
    assert order.status == OrderStatus.ESIM_CREATED.value
    assert (await load(User, order.user_id)).email == "legacy@example.com"


async def test_legacy_event_uses_rate_source_without_fx_note(context, session_factory, load):
    _, order_id = await deliver(context, session_factory, captured(payment_ref="pi_norate", plan_id=PLAN_CODE))

    assert (await load(Order, order_id)).amount_cents == 2000


async def test_legacy_event_without_plan_is_ignored(context, session_factory, count_rows):
    outcome, order_id = await deliver(context, session_factory, captured(payment_ref="pi_noplan"))

    assert outcome == ReconcileOutcome.IGNORED
    assert order_id is None
    assert await count_rows(Order) == 0


async def test_unknown_order_id_falls_back_to_legacy_path(context, session_factory, count_rows):
    outcome, order_id = await deliver(context, session_factory, captured(
        order_id=uuid.uuid4(), payment_ref="pi_orphan", plan_id=PLAN_CODE, currency="usd", amount_cents=1999,
    ))

    assert outcome == ReconcileOutcome.CREATED
    assert await count_rows(Order, Order.payment_ref == "pi_orphan") == 1


async def test_concurrent_legacy_events_create_one_order(context, session_factory, provider, count_rows):
    event = captured(payment_ref="pi_race", plan_id=PLAN_CODE, currency="usd", amount_cents=1999)

    results = await asyncio.gather(
        deliver(context, session_factory, event),
        deliver(context, session_factory, event),
    )
    await context.runner.drain()

    outcomes = sorted(outcome.value for outcome, _ in results)
    assert outcomes == ["created", "duplicate"]
    assert results[0][1] == results[1][1]
    assert await count_rows(Order, Order.payment_ref == "pi_race") == 1
    assert len(provider.order_calls) == 1
