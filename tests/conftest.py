import os
import uuid
from datetime import datetime, timezone
from typing import Optional

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["ADMIN_EMAILS"] = "admin@example.com"
os.environ["REDIS_URL"] = ""

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from simshop.config import Settings
from simshop.database import Base
from simshop import models  # noqa: F401
from simshop.models.esim_profile import EsimProfile
from simshop.models.order import Order, OrderStatus, PaymentMethod
from simshop.models.user import User
from simshop.services.affiliate_service import AffiliateService
from simshop.services.background import TaskRunner
from simshop.services.cache_service import InMemoryCache
from simshop.services.context import EngineContext
from simshop.services.esim_provider import MockProvisioningClient
from simshop.services.settings_service import SettingsService

from fakes import (
    PLAN_CODE,
    FakeGateway,
    FakeProvisioningClient,
    FakeRateSource,
    RecordingDispatcher,
)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'simshop-test.db'}",
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def test_config():
    return Settings(
        PROVISION_POLL_ATTEMPTS=3,
        PROVISION_POLL_DELAY_SECONDS=0,
        SWEEP_POLL_ATTEMPTS=2,
        RETRY_SWEEP_BATCH_SIZE=10,
        RECEIPT_SWEEP_BATCH_SIZE=10,
        USAGE_QUERY_BATCH_SIZE=50,
        COMMISSION_PERCENT=10,
        GATEWAY_MINIMUM_USD_CENTS=50,
        WEB_URL="https://shop.example.com",
    )


@pytest.fixture
async def context(session_factory, test_config):
    provider = FakeProvisioningClient()
    settings_service = SettingsService(session_factory, InMemoryCache(), ttl=60)
    ctx = EngineContext(
        session_factory=session_factory,
        settings_service=settings_service,
        rate_source=FakeRateSource(),
        dispatcher=RecordingDispatcher(),
        gateway=FakeGateway(),
        real_client=provider,
        mock_client=MockProvisioningClient(catalog=provider),
        runner=TaskRunner(),
        config=test_config,
    )
    yield ctx
    await ctx.runner.drain(timeout=10)


@pytest.fixture
def provider(context) -> FakeProvisioningClient:
    return context.real_client


@pytest.fixture
def dispatcher(context) -> RecordingDispatcher:
    return context.dispatcher


@pytest.fixture
def make_user(session_factory):
    async def _make(email: Optional[str] = None, is_guest: bool = False) -> User:
        async with session_factory() as db:
            user = User(email=email or f"user-{uuid.uuid4().hex[:8]}@example.com", is_guest=is_guest)
            db.add(user)
            await db.commit()
            return user
    return _make


@pytest.fixture
def make_order(session_factory, make_user):
    """Insert an order directly, bypassing checkout."""
    async def _make(
        status: str = OrderStatus.PAID.value,
        amount_cents: int = 1999,
        display_currency: str = "USD",
        display_amount_cents: Optional[int] = None,
        payment_method: str = PaymentMethod.GATEWAY.value,
        provider_order_no: Optional[str] = None,
        user: Optional[User] = None,
        created_at: Optional[datetime] = None,
        receipt_sent: bool = False,
        with_profile: bool = False,
        payment_ref: Optional[str] = None,
    ) -> Order:
        user = user or await make_user()
        if payment_ref is None and status != OrderStatus.PENDING.value:
            payment_ref = f"pay_{uuid.uuid4().hex[:14]}"

        async with session_factory() as db:
            order = Order(
                id=uuid.uuid4(),
                user_id=user.id,
                plan_id=PLAN_CODE,
                amount_cents=amount_cents,
                currency="USD",
                display_currency=display_currency,
                display_amount_cents=display_amount_cents if display_amount_cents is not None else amount_cents,
                fx_rate="1",
                status=status,
                payment_method=payment_method,
                payment_ref=payment_ref,
                provider_order_no=provider_order_no,
                receipt_sent=receipt_sent,
                created_at=created_at or datetime.now(timezone.utc),
            )
            db.add(order)
            await db.flush()
            if with_profile:
                ref = provider_order_no or "ORD-X"
                db.add(EsimProfile(
                    order_id=order.id,
                    user_id=user.id,
                    esim_tran_no=f"TRAN-{ref}",
                    iccid=f"ICCID-{ref}",
                    status="GOT_RESOURCE",
                    capacity_bytes=1024 ** 3,
                    used_bytes=0,
                ))
            await db.commit()
            return order
    return _make


@pytest.fixture
def refer(context, make_user):
    """Make `buyer` a referral of a fresh affiliate. Returns the affiliate."""
    async def _refer(buyer: User):
        owner = await make_user()
        affiliates = AffiliateService(context)
        affiliate = await affiliates.ensure_affiliate(owner.id)
        assert await affiliates.link_referral(buyer.id, affiliate.referral_code)
        return affiliate
    return _refer


@pytest.fixture
def count_rows(session_factory):
    async def _count(model, *criteria) -> int:
        async with session_factory() as db:
            return await db.scalar(select(func.count()).select_from(model).where(*criteria))
    return _count


@pytest.fixture
def load(session_factory):
    async def _load(model, pk):
        async with session_factory() as db:
            return await db.get(model, pk)
    return _load
