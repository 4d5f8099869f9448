"""
Calendar helpers and tolerant date parsing.

All datetimes handled by the package are naive and represent local time.
Absolute instants (epoch values, offset-qualified ISO strings) are converted
to local time on the way in.
"""

import re
from datetime import date, datetime, timedelta
from typing import Any, Optional, Tuple

from arr_report.errors import InputValidationError

_EPOCH_RE = re.compile(r"^\d{10,13}$")
_DATE_ONLY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")

END_OF_DAY = timedelta(days=1) - timedelta(milliseconds=1)


def parse_date(value: Any) -> Optional[datetime]:
    """Parse a date-ish value into a local naive datetime.

    A bare ``YYYY-MM-DD`` string is local midnight, never UTC midnight, so
    date-only fields do not shift by the timezone offset. Ten-digit values
    are epoch seconds, thirteen-digit values epoch milliseconds.

    Returns:
        The parsed datetime, or None when the value cannot be parsed
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _to_local_naive(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    text = str(value).strip()
    if not text:
        return None

    if _EPOCH_RE.match(text):
        number = int(text)
        seconds = number if len(text) == 10 else number / 1000.0
        try:
            return datetime.fromtimestamp(seconds)
        except (OverflowError, OSError, ValueError):
            return None

    match = _DATE_ONLY_RE.match(text)
    if match:
        try:
            return datetime(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError:
            return None

    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return _to_local_naive(datetime.fromisoformat(text))
    except ValueError:
        return None


def _to_local_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def start_of_day(value: datetime) -> datetime:
    return datetime(value.year, value.month, value.day)


def end_of_day(value: datetime) -> datetime:
    return start_of_day(value) + END_OF_DAY


def first_of_month(value: datetime) -> datetime:
    return datetime(value.year, value.month, 1)


def add_months(value: datetime, months: int) -> datetime:
    """First day of the month ``months`` after the month of ``value``."""
    index = value.year * 12 + (value.month - 1) + months
    return datetime(index // 12, index % 12 + 1, 1)


def end_of_month(value: datetime) -> datetime:
    """Last instant (23:59:59.999) of the month containing ``value``."""
    return add_months(value, 1) - timedelta(milliseconds=1)


def month_key(value: datetime) -> str:
    return f"{value.year}-{value.month:02d}"


def day_key(value: datetime) -> str:
    return f"{value.year}-{value.month:02d}-{value.day:02d}"


def parse_range(start_date: Any, end_date: Any) -> Tuple[datetime, datetime]:
    """Parse a caller-supplied date range into whole local days.

    Returns:
        (range_start at 00:00:00.000, range_end at 23:59:59.999)

    Raises:
        InputValidationError: If either bound is unparseable or end < start
    """
    start = parse_date(start_date)
    end = parse_date(end_date)
    if start is None or end is None:
        raise InputValidationError("Invalid startDate/endDate")

    range_start = start_of_day(start)
    range_end = end_of_day(end)
    if range_end < range_start:
        raise InputValidationError("endDate must be >= startDate")
    return range_start, range_end
