"""
Currency normalization.

Resolves the monthly-average exchange rate for the calendar month of a close
date. Historical monthly averages never change, so they are memoized for the
lifetime of the owning cache.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from .annualize import round2
from .cache import TTLCache
from .dates import end_of_month, first_of_month, month_key

logger = logging.getLogger(__name__)


class RateSource(Protocol):
    """External FX service contract."""

    def average_rate_for_range(
        self, from_currency: str, to_currency: str, start: datetime, end: datetime
    ) -> Optional[float]:
        ...


@dataclass(frozen=True)
class FxQuote:
    """Rate used for a conversion; a rate of 0 means no conversion possible."""
    rate: float
    date_used: str = ""

    def convert(self, amount: float) -> float:
        if not self.rate or not amount:
            return 0.0
        return round2(amount * self.rate)


class CurrencyNormalizer:
    """Monthly-average FX lookups backed by an injected cache."""

    def __init__(self, source: RateSource, cache: Optional[TTLCache] = None):
        self.source = source
        self.cache = cache if cache is not None else TTLCache(ttl_seconds=None)

    def monthly_average_rate(
        self,
        from_currency: str,
        to_currency: str,
        close_date: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> FxQuote:
        """Average daily rate across the month containing ``close_date``.

        Args:
            from_currency: Source ISO code (case-insensitive)
            to_currency: Target ISO code (case-insensitive)
            close_date: Instant whose month is used; current month if None
            now: Override for the current time

        Returns:
            FxQuote; identical currencies give rate 1, a failed or empty
            lookup gives rate 0
        """
        source = (from_currency or "").strip().upper()
        target = (to_currency or "").strip().upper()
        if not source or not target:
            return FxQuote(rate=0.0)
        if source == target:
            return FxQuote(rate=1.0)

        anchor = close_date or now or datetime.now()
        month_start = first_of_month(anchor)
        yyyy_mm = month_key(month_start)
        key = (yyyy_mm, source, target)

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            rate = self.source.average_rate_for_range(
                source, target, month_start, end_of_month(month_start)
            )
        except Exception as e:
            logger.warning("FX lookup %s->%s for %s failed: %s", source, target, yyyy_mm, e)
            rate = None

        quote = FxQuote(rate=float(rate) if rate and rate > 0 else 0.0, date_used=yyyy_mm)
        self.cache.set(key, quote)
        return quote
