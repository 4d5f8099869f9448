"""
Annualization and monetary rounding.

Projects recurring charges to a 12-month equivalent, either from a billing
frequency label (CRM line items) or from a billing-period duration (ledger
line items).
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from arr_report.storage.models import CrmLineItem
from .window import is_one_time

DAYS_PER_YEAR = 365.2425
MIN_DURATION_DAYS = 1 / 24


def round2(value: float) -> float:
    """Round a monetary value to 2 decimal places, halves away from zero.

    The float is quantized from its shortest repr, so values that print as
    an exact half (1217.475) round up rather than falling to binary noise.
    Non-numeric input rounds to 0.
    """
    try:
        amount = Decimal(repr(float(value)))
        return float(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
    except (TypeError, ValueError, InvalidOperation):
        return 0.0


def frequency_multiplier(label: str) -> int:
    """Number of billing cycles per year for a recurring frequency label.

    Unrecognized labels contribute nothing rather than being guessed.
    """
    freq = (label or "").strip().lower()

    if "one" in freq:
        return 0
    if freq == "per_six_months" or ("six" in freq and "month" in freq):
        return 2
    if freq == "per_quarter" or "quarter" in freq or ("three" in freq and "month" in freq):
        return 4
    if "semi" in freq or "half" in freq:
        return 2
    if "month" in freq:
        return 12
    if "year" in freq or "annual" in freq:
        return 1
    return 0


def annualized_from_frequency(item: CrmLineItem) -> float:
    """Annualized value of a CRM line item from its billing frequency.

    One-time items (no window or open-ended window) are 0. The base is the
    amount, falling back to the net price when the amount is absent or zero.
    """
    if is_one_time(item):
        return 0.0

    base = item.amount or item.net_price
    if not base:
        return 0.0

    multiplier = frequency_multiplier(item.recurring_frequency)
    if not multiplier:
        return 0.0

    return round2(base * multiplier)


def annualized_from_duration(amount_major: float, start: datetime, end_exclusive: datetime) -> float:
    """Annualized value of a charge billed for [start, end_exclusive).

    Durations under one hour are floored at 1/24 day, which still yields a
    large hourly-equivalent figure for same-instant windows. Zero or negative
    durations are 0.
    """
    duration_seconds = (end_exclusive - start).total_seconds()
    if duration_seconds <= 0:
        return 0.0
    duration_days = duration_seconds / 86400.0
    return round2(amount_major * DAYS_PER_YEAR / max(duration_days, MIN_DURATION_DAYS))
