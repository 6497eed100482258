import pytest

from simshop.models.admin_settings import AdminSettings, SETTINGS_ROW_ID
from simshop.services.cache_service import InMemoryCache
from simshop.services.settings_service import SettingsService


async def test_defaults_without_settings_row(context):
    snapshot = await context.settings_service.get()

    assert snapshot.mock_mode is False
    assert snapshot.default_markup_percent == 0
    assert snapshot.is_admin("Admin@Example.com")
    assert not snapshot.is_admin("someone@example.com")


async def test_update_invalidates_cached_snapshot(context):
    service = context.settings_service
    assert (await service.get()).mock_mode is False

    snapshot = await service.update({"mock_mode": True, "discounts": {"spring10": 10}})

    assert snapshot.mock_mode is True
    assert (await service.get()).discount_percent("Spring10") == 10


async def test_cached_snapshot_is_served_until_invalidated(context, session_factory):
    service = context.settings_service
    await service.update({"default_markup_percent": 10})

    async with session_factory() as db:
        row = await db.get(AdminSettings, SETTINGS_ROW_ID)
        row.default_markup_percent = 40
        await db.commit()

    assert (await service.get()).default_markup_percent == 10
    await service.invalidate()
    assert (await service.get()).default_markup_percent == 40


async def test_expired_entries_reload_from_database(session_factory):
    service = SettingsService(session_factory, InMemoryCache(), ttl=0)
    await service.update({"email_enabled": True})

    async with session_factory() as db:
        row = await db.get(AdminSettings, SETTINGS_ROW_ID)
        row.email_enabled = False
        await db.commit()

    assert (await service.get()).email_enabled is False


async def test_update_rejects_unknown_fields(context):
    with pytest.raises(ValueError):
        await context.settings_service.update({"stripe_key": "sk_live"})


async def test_default_currency_is_normalized(context):
    snapshot = await context.settings_service.update({"default_currency": "eur"})
    assert snapshot.default_currency == "EUR"


async def test_mock_mode_selects_client_per_call(context):
    assert await context.provisioning_client() is context.real_client

    await context.settings_service.update({"mock_mode": True})
    assert await context.provisioning_client() is context.mock_client

    await context.settings_service.update({"mock_mode": False})
    assert await context.provisioning_client() is context.real_client
