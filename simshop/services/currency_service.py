"""
Currency Service

Money helpers and the FX rate source.

All bookkeeping is integer cents in the reference currency (USD). Rates are
expressed as units of a currency per 1 USD. Every conversion is a single
Decimal multiplication or division rounded half-up, never chained floats.

Provider prices come in provider units: 1 unit = 1/10,000 USD, so
cents = units / 100.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

import httpx

from simshop.config import settings
from simshop.services.cache_service import CacheBackend

logger = logging.getLogger(__name__)

REFERENCE_CURRENCY = "USD"
PROVIDER_UNITS_PER_CENT = 100

Number = Union[int, float, Decimal, str]


class RateUnavailableError(Exception):
    """Raised when no rate can be obtained for a currency."""

    def __init__(self, currency: str, message: str = "Rate unavailable"):
        self.currency = currency
        self.message = message
        super().__init__(f"{message}: {currency}")


# ==================== Money helpers ====================

def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_currency(currency: Optional[str]) -> str:
    return (currency or "").strip().upper()


def convert_cents(usd_cents: int, rate: Number) -> int:
    """USD cents -> cents of the currency quoted at `rate` per USD."""
    return round_half_up(Decimal(usd_cents) * Decimal(str(rate)))


def to_reference_cents(amount_cents: int, rate: Number) -> int:
    """Cents of a currency quoted at `rate` per USD -> USD cents."""
    rate_dec = Decimal(str(rate))
    if rate_dec <= 0:
        raise ValueError(f"Invalid FX rate: {rate}")
    return round_half_up(Decimal(amount_cents) / rate_dec)


def units_to_cents(units: int) -> int:
    """Provider price units -> USD cents."""
    return round_half_up(Decimal(units) / PROVIDER_UNITS_PER_CENT)


def cents_to_units(cents: int) -> int:
    """USD cents -> provider price units."""
    return int(cents) * PROVIDER_UNITS_PER_CENT


def apply_markup(cost_cents: int, markup_percent: Number) -> int:
    """Customer price from provider cost."""
    factor = Decimal(1) + Decimal(str(markup_percent)) / Decimal(100)
    return round_half_up(Decimal(cost_cents) * factor)


def remove_markup(price_cents: int, markup_percent: Number) -> int:
    """Approximate provider cost from a marked-up customer price."""
    factor = Decimal(1) + Decimal(str(markup_percent)) / Decimal(100)
    return round_half_up(Decimal(price_cents) / factor)


def percent_of(amount_cents: int, percent: Number) -> int:
    return round_half_up(Decimal(amount_cents) * Decimal(str(percent)) / Decimal(100))


# ==================== Rate sources ====================

class RateSource(ABC):
    """Supplies FX rates as units of `currency` per 1 USD."""

    @abstractmethod
    async def get_rate(self, currency: str) -> Decimal:
        pass

    async def convert(self, usd_cents: int, currency: str) -> int:
        return convert_cents(usd_cents, await self.get_rate(currency))


class HttpRateSource(RateSource):
    """
    Rates from an open exchange-rate endpoint returning
    {"result": "success", "rates": {"EUR": 0.92, ...}} against USD.

    The whole rate table is cached for FX_RATE_CACHE_TTL seconds.
    """

    CACHE_KEY = "simshop:fx:rates"

    def __init__(
        self,
        cache: CacheBackend,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        ttl: Optional[int] = None,
    ):
        self.cache = cache
        self.api_url = api_url or settings.FX_API_URL
        self.timeout = timeout or settings.FX_HTTP_TIMEOUT
        self.ttl = ttl or settings.FX_RATE_CACHE_TTL

    async def _fetch_rates(self) -> dict:
        cached = await self.cache.get(self.CACHE_KEY)
        if cached:
            return cached

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.api_url)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise RateUnavailableError("*", f"FX rate fetch failed ({e})")

        rates = data.get("rates") or {}
        if not rates:
            raise RateUnavailableError("*", "FX rate response had no rates")

        # JSON-safe for the Redis backend
        rates = {code.upper(): str(value) for code, value in rates.items()}
        await self.cache.set(self.CACHE_KEY, rates, ttl=self.ttl)
        return rates

    async def get_rate(self, currency: str) -> Decimal:
        code = normalize_currency(currency)
        if code == REFERENCE_CURRENCY:
            return Decimal(1)

        rates = await self._fetch_rates()
        if code not in rates:
            raise RateUnavailableError(code, "Unknown currency")
        return Decimal(str(rates[code]))


async def resolve_rate(rate_source: RateSource, currency: str) -> tuple[str, Decimal]:
    """
    Rate for a display currency, degrading to the reference currency.

    Returns (currency actually used, rate). A rate failure is logged and the
    caller continues in USD.
    """
    code = normalize_currency(currency) or REFERENCE_CURRENCY
    if code == REFERENCE_CURRENCY:
        return REFERENCE_CURRENCY, Decimal(1)
    try:
        return code, await rate_source.get_rate(code)
    except RateUnavailableError as e:
        logger.warning(f"[CURRENCY] {e.message} for {code}, falling back to {REFERENCE_CURRENCY}")
        return REFERENCE_CURRENCY, Decimal(1)
