"""
Billing window derivation.

Converts a CRM line item's loose date and term fields into a concrete
[start, end] window. A window without a determinable end is open ended, and
open-ended line items are classified as one-time (non-recurring).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from arr_report.storage.models import CrmLineItem
from .dates import add_months, end_of_day, parse_date

OPEN_ENDED_SENTINEL = datetime(2100, 1, 1)


@dataclass(frozen=True)
class BillingWindow:
    """Recognition window of a line item.

    ``end`` is always concrete; open-ended windows carry a far-future
    sentinel so comparisons never special-case a missing end.
    """
    start: datetime
    end: datetime
    open_ended: bool = False

    def covers(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end


def compute_window(item: CrmLineItem) -> Optional[BillingWindow]:
    """Derive the billing window of a line item.

    Start is the recurring-billing start, else the billing-period start. End
    is the recurring-billing end, else the billing-period end, else start plus
    the term minus one day, else open ended. A concrete end date covers its
    whole day.

    Returns:
        The window, or None when no start date can be parsed
    """
    start = parse_date(item.recurring_billing_start) or parse_date(item.billing_period_start)
    if start is None:
        return None

    end = parse_date(item.recurring_billing_end) or parse_date(item.billing_period_end)
    if end is None:
        if not item.term_months:
            return BillingWindow(start=start, end=OPEN_ENDED_SENTINEL, open_ended=True)
        # Fractional months truncate toward zero. Day arithmetic overflows
        # into the next month the same way a calendar does: day 31 + 1 month
        # in a 30-day month rolls forward.
        term = int(item.term_months)
        end = add_months(start, term) + timedelta(days=start.day - 2)

    return BillingWindow(start=start, end=end_of_day(end), open_ended=False)


def is_one_time(item: CrmLineItem) -> bool:
    """True when no window can be derived or the window is open ended."""
    window = compute_window(item)
    if window is None:
        return True
    return window.open_ended
