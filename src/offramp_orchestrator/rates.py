"""
Rate quote service.

Live unit rates come from the settlement provider. A failed quote is never
fatal: the last cached rate for the pair is served instead (up to
``max_stale_seconds`` old), then the configured static estimate.

Usage:
    service = RateQuoteService.from_settings(load_settings().rates)
    quote = await service.get_rate(provider, "USDC", Decimal("10"), Currency.KES)
    if quote.source != "live":
        ...
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Mapping, Optional

from .exceptions import ProviderError
from .models import Currency, RateQuote

if TYPE_CHECKING:
    from .config import RateSettings
    from .providers.base import SettlementProvider

logger = logging.getLogger(__name__)


@dataclass
class _CacheEntry:
    rate: Decimal
    stored_at: float
    fetched_at: datetime


class RateQuoteService:
    """Live quote, then cached, then static estimate."""

    def __init__(
        self,
        cache_ttl_seconds: float = 60.0,
        max_stale_seconds: float = 21600.0,
        static_rates: Optional[Mapping[str, Decimal]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = cache_ttl_seconds
        self._max_stale = max_stale_seconds
        self._static = {k.upper(): Decimal(str(v)) for k, v in (static_rates or {}).items()}
        self._clock = clock
        self._cache: dict[tuple[str, str, Currency], _CacheEntry] = {}

    @classmethod
    def from_settings(cls, settings: "RateSettings") -> "RateQuoteService":
        return cls(
            cache_ttl_seconds=settings.cache_ttl_seconds,
            max_stale_seconds=settings.max_stale_seconds,
            static_rates=settings.static_rates,
        )

    async def get_rate(
        self,
        provider: "SettlementProvider",
        asset: str,
        amount: Decimal,
        currency: Currency,
    ) -> RateQuote:
        """
        Quote ``asset`` -> ``currency`` for ``amount``.

        Raises:
            ProviderError: Live quote failed and no cached or static rate exists
        """
        currency = Currency(currency)
        key = (provider.provider_name, asset.upper(), currency)
        entry = self._cache.get(key)
        if entry is not None and self._clock() - entry.stored_at < self._ttl:
            return RateQuote(asset.upper(), currency, entry.rate, "cached", entry.fetched_at)

        try:
            rate = await provider.quote(asset, amount, currency)
        except ProviderError as e:
            return self._fallback(key, e)

        fetched_at = datetime.now(timezone.utc)
        self._cache[key] = _CacheEntry(rate, self._clock(), fetched_at)
        return RateQuote(asset.upper(), currency, rate, "live", fetched_at)

    def _fallback(self, key: tuple[str, str, Currency], error: ProviderError) -> RateQuote:
        provider_name, asset, currency = key
        entry = self._cache.get(key)
        if entry is not None and self._clock() - entry.stored_at <= self._max_stale:
            logger.warning(
                "Live %s rate for %s/%s failed (%s); serving cached rate %s",
                provider_name, asset, currency.value, error.message, entry.rate,
            )
            return RateQuote(asset, currency, entry.rate, "cached", entry.fetched_at)

        static = self._static.get(currency.value)
        if static is not None:
            logger.warning(
                "Live %s rate for %s/%s failed (%s); serving static estimate %s",
                provider_name, asset, currency.value, error.message, static,
            )
            return RateQuote(asset, currency, static, "static")
        raise error

    def clear(self) -> None:
        self._cache.clear()
