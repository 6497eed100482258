"""
Engine context: the collaborators shared by checkout, reconciliation,
provisioning and the sweeps.

The application builds one default context at first use. Tests construct
their own with fakes and a per-test session factory.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from simshop.config import Settings, settings
from simshop.services.background import TaskRunner
from simshop.services.currency_service import RateSource
from simshop.services.email_service import NotificationDispatcher
from simshop.services.esim_provider import ProvisioningClient, select_provisioning_client
from simshop.services.payment_service import PaymentGateway
from simshop.services.settings_service import SettingsService
from simshop.services.affiliate_service import FraudScreen, LoggingFraudScreen

logger = logging.getLogger(__name__)


@dataclass
class EngineContext:
    session_factory: async_sessionmaker[AsyncSession]
    settings_service: SettingsService
    rate_source: RateSource
    dispatcher: NotificationDispatcher
    gateway: PaymentGateway
    real_client: ProvisioningClient
    mock_client: ProvisioningClient
    runner: TaskRunner = field(default_factory=TaskRunner)
    fraud_screen: FraudScreen = field(default_factory=LoggingFraudScreen)
    config: Settings = field(default_factory=lambda: settings)

    async def provisioning_client(self) -> ProvisioningClient:
        """Real or mock client, chosen from the current mock-mode flag."""
        snapshot = await self.settings_service.get()
        return select_provisioning_client(snapshot.mock_mode, self.real_client, self.mock_client)


_context: Optional[EngineContext] = None


def build_default_context() -> EngineContext:
    from simshop.database import async_session_factory
    from simshop.services.cache_service import get_cache_backend
    from simshop.services.currency_service import HttpRateSource
    from simshop.services.email_service import get_email_service
    from simshop.services.esim_provider import MockProvisioningClient, RealProvisioningClient
    from simshop.services.payment_service import get_payment_gateway

    cache = get_cache_backend()
    settings_service = SettingsService(async_session_factory, cache)
    real_client = RealProvisioningClient()
    return EngineContext(
        session_factory=async_session_factory,
        settings_service=settings_service,
        rate_source=HttpRateSource(cache),
        dispatcher=get_email_service(settings_service),
        gateway=get_payment_gateway(),
        real_client=real_client,
        mock_client=MockProvisioningClient(catalog=real_client),
    )


def get_engine_context() -> EngineContext:
    global _context
    if _context is None:
        _context = build_default_context()
        logger.info("Engine context initialized")
    return _context


def set_engine_context(context: Optional[EngineContext]) -> None:
    global _context
    _context = context
