import uuid
from decimal import Decimal

import pytest

from simshop.models.order import Order
from simshop.services.cache_service import InMemoryCache
from simshop.services.currency_service import (
    HttpRateSource,
    RateUnavailableError,
    apply_markup,
    cents_to_units,
    convert_cents,
    percent_of,
    remove_markup,
    resolve_rate,
    round_half_up,
    to_reference_cents,
    units_to_cents,
)
from simshop.services.provisioning_service import build_transaction_id

from fakes import FakeRateSource


def test_round_half_up_rounds_halves_away_from_zero():
    assert round_half_up(Decimal("2.5")) == 3
    assert round_half_up(Decimal("2.4999")) == 2
    assert round_half_up(Decimal("1849.075")) == 1849


def test_convert_cents_is_a_single_rounded_multiplication():
    assert convert_cents(1999, "0.925") == 1849
    assert convert_cents(1999, Decimal("83.10")) == 166117
    assert convert_cents(1999, 1) == 1999


def test_to_reference_cents_divides_by_rate():
    assert to_reference_cents(1850, "0.925") == 2000
    assert to_reference_cents(1999, 1) == 1999


def test_to_reference_cents_rejects_non_positive_rate():
    with pytest.raises(ValueError):
        to_reference_cents(100, 0)


def test_provider_units_are_ten_thousandths_of_a_dollar():
    assert units_to_cents(15000) == 150
    assert units_to_cents(15050) == 151
    assert cents_to_units(150) == 15000


def test_markup_and_reverse_markup():
    assert apply_markup(1000, 25) == 1250
    assert remove_markup(1250, 25) == 1000
    assert remove_markup(1999, 0) == 1999


def test_percent_of_rounds_half_up():
    assert percent_of(1999, 10) == 200
    assert percent_of(1000, 15) == 150


async def test_resolve_rate_falls_back_to_reference_currency():
    source = FakeRateSource()
    assert await resolve_rate(source, "eur") == ("EUR", Decimal("0.925"))
    assert await resolve_rate(source, "XYZ") == ("USD", Decimal(1))
    assert await resolve_rate(source, "") == ("USD", Decimal(1))


async def test_http_rate_source_serves_cached_table():
    cache = InMemoryCache()
    await cache.set(HttpRateSource.CACHE_KEY, {"EUR": "0.92", "GBP": "0.79"}, ttl=60)
    source = HttpRateSource(cache, api_url="http://rates.invalid/latest")

    assert await source.get_rate("eur") == Decimal("0.92")
    assert await source.get_rate("USD") == Decimal(1)
    assert await source.convert(1000, "GBP") == 790
    with pytest.raises(RateUnavailableError):
        await source.get_rate("JPY")


def test_transaction_id_is_prefixed_by_payment_method():
    order_id = uuid.uuid4()
    gateway_order = Order(id=order_id, payment_method="gateway")
    balance_order = Order(id=order_id, payment_method="balance")

    assert build_transaction_id(gateway_order) == f"gateway_{order_id}"
    assert build_transaction_id(balance_order) == f"balance_{order_id}"
    # Same order, same id on every attempt
    assert build_transaction_id(gateway_order) == build_transaction_id(gateway_order)


def test_transaction_id_shortens_to_hex_when_too_long():
    order = Order(id=uuid.uuid4(), payment_method="gateway")
    assert build_transaction_id(order, max_length=40) == f"gateway_{order.id.hex}"
    with pytest.raises(ValueError):
        build_transaction_id(order, max_length=30)
