"""
Reporting period construction.

Builds daily and monthly tilings of a date range and groups monthly periods
into quarters or years. Quarterly and annual figures are always derived by
summing monthly values, so there is a single recognition path.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Tuple

from .dates import add_months, day_key, end_of_day, end_of_month, first_of_month, month_key

MONTH_ABBREVIATIONS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
                       "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


class Grain(Enum):
    """Time bucket size of a report."""
    DAILY = "daily"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


@dataclass(frozen=True)
class Period:
    """One reporting bucket; ``end`` is inclusive."""
    key: str
    label: str
    start: datetime
    end: datetime
    members: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError("period start must not be after period end")


def build_daily_periods(start: datetime, end: datetime) -> List[Period]:
    """One period per calendar day in [start, end], both inclusive."""
    periods = []
    day = datetime(start.year, start.month, start.day)
    while day <= end:
        key = day_key(day)
        periods.append(Period(key=key, label=key, start=day, end=end_of_day(day)))
        day = day + timedelta(days=1)
    return periods


def build_monthly_periods(start_month: datetime, end_month: datetime) -> List[Period]:
    """One period per calendar month from start_month through end_month.

    Args:
        start_month: Any instant in the first month
        end_month: Any instant in the last month

    Returns:
        Monthly periods keyed ``YYYY-MM`` and labelled ``Mon YY``
    """
    periods = []
    month = first_of_month(start_month)
    last = first_of_month(end_month)
    while month <= last:
        periods.append(Period(
            key=month_key(month),
            label=f"{MONTH_ABBREVIATIONS[month.month - 1]} {str(month.year)[-2:]}",
            start=month,
            end=end_of_month(month),
        ))
        month = add_months(month, 1)
    return periods


def aggregate_periods(monthly_periods: List[Period], grain: Grain) -> List[Period]:
    """Group monthly periods into quarters or years.

    Monthly grain returns the input unchanged. Each group spans its first
    member's start to its last member's end and lists member keys in
    chronological order.

    Raises:
        ValueError: If grain is daily (days are not built from months)
    """
    if grain == Grain.MONTHLY:
        return list(monthly_periods)
    if grain == Grain.DAILY:
        raise ValueError("daily periods cannot be aggregated from monthly periods")

    groups: Dict[str, List[Period]] = {}
    for period in monthly_periods:
        if grain == Grain.QUARTERLY:
            key = f"{period.start.year}-Q{(period.start.month - 1) // 3 + 1}"
        else:
            key = str(period.start.year)
        groups.setdefault(key, []).append(period)

    return [
        Period(
            key=key,
            label=key,
            start=months[0].start,
            end=months[-1].end,
            members=tuple(m.key for m in months),
        )
        for key, months in sorted(groups.items())
    ]
