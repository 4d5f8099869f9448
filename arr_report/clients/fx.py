"""
FX rate source (Frankfurter API).
"""

from datetime import datetime
from typing import Optional

import httpx

from .http import RetryPolicy, request_json

FRANKFURTER_BASE_URL = "https://api.frankfurter.app"


class FrankfurterRateSource:
    """Daily reference rates averaged over a date range."""

    def __init__(
        self,
        base_url: str = FRANKFURTER_BASE_URL,
        timeout: float = 15.0,
        policy: RetryPolicy = RetryPolicy(max_retries=2),
        transport: Optional[httpx.BaseTransport] = None,
        sleep=None,
    ):
        self.policy = policy
        self._sleep_kwargs = {"sleep": sleep} if sleep else {}
        self._client = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)

    def average_rate_for_range(
        self, from_currency: str, to_currency: str, start: datetime, end: datetime
    ) -> Optional[float]:
        """Mean of the valid positive daily rates in [start, end].

        Returns:
            The average, or None when no day has a usable rate

        Raises:
            UpstreamUnavailableError: If the service cannot be reached
        """
        body = request_json(
            self._client,
            "GET",
            f"/{start:%Y-%m-%d}..{end:%Y-%m-%d}",
            service="Frankfurter",
            policy=self.policy,
            params={"from": from_currency, "to": to_currency},
            **self._sleep_kwargs,
        )
        rates = body.get("rates") if isinstance(body, dict) else None
        if not isinstance(rates, dict):
            return None

        values = []
        for day_rates in rates.values():
            if not isinstance(day_rates, dict):
                continue
            try:
                rate = float(day_rates.get(to_currency))
            except (TypeError, ValueError):
                continue
            if rate > 0:
                values.append(rate)

        if not values:
            return None
        return sum(values) / len(values)

    def close(self) -> None:
        self._client.close()
