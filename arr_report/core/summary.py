"""
Monthly ARR summary.

Collects the previous month's booked and contracted ARR totals plus per-deal
breakdowns into one payload for whatever delivers it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from .annualize import round2
from .dates import add_months, day_key, month_key
from .periods import Grain, MONTH_ABBREVIATIONS
from .report import Report, ReportMode, ReportRequest, ReportService


@dataclass(frozen=True)
class MonthlyWindow:
    """The calendar month a summary covers."""
    start_date: str
    end_date: str
    period_key: str
    period_label: str
    filename_part: str


@dataclass(frozen=True)
class DealBreakdownRow:
    deal_id: str
    deal_name: str
    value: float


@dataclass(frozen=True)
class MonthlySummary:
    window: MonthlyWindow
    arr_total: float
    carr_total: float
    arr_rows: List[DealBreakdownRow] = field(default_factory=list)
    carr_rows: List[DealBreakdownRow] = field(default_factory=list)

    @property
    def message(self) -> str:
        return (
            f"ARR summary for {self.window.period_label}: "
            f"ARR {self.arr_total:,.2f}, C-ARR {self.carr_total:,.2f}"
        )


def previous_month_window(now: Optional[datetime] = None) -> MonthlyWindow:
    """Window of the calendar month before ``now``."""
    now = now or datetime.now()
    month_start = add_months(now, -1)
    month_end = add_months(now, 0) - timedelta(days=1)
    return MonthlyWindow(
        start_date=day_key(month_start),
        end_date=day_key(month_end),
        period_key=month_key(month_start),
        period_label=f"{MONTH_ABBREVIATIONS[month_start.month - 1]} {month_start.year}",
        filename_part=f"{month_start.year}_{month_start.month:02d}",
    )


def period_total(report: Report, period_key: str) -> float:
    """Rounded total of one period; 0 when the report has no such period."""
    for total in report.totals_by_period:
        if total.key == period_key:
            return round2(total.total)
    return 0.0


def deal_breakdown(report: Report, period_key: str) -> List[DealBreakdownRow]:
    """Per-deal sums of the non-zero row values in one period, largest first."""
    sums: Dict[Tuple[str, str], float] = {}
    for row in report.rows:
        value = row.values_by_period.get(period_key, 0.0)
        if not value:
            continue
        key = (row.deal_id, row.deal_name)
        sums[key] = round2(sums.get(key, 0.0) + value)

    rows = [DealBreakdownRow(deal_id=k[0], deal_name=k[1], value=v) for k, v in sums.items()]
    return sorted(rows, key=lambda r: r.value, reverse=True)


def build_monthly_summary(service: ReportService, now: Optional[datetime] = None) -> MonthlySummary:
    """Run the booked and contracted monthly reports for the previous month.

    Raises:
        ConfigurationMissingError: If the CRM is not configured
        UpstreamUnavailableError: If the CRM cannot be read
    """
    window = previous_month_window(now)
    booked = service.generate_crm_report(ReportRequest(
        window.start_date, window.end_date, mode=ReportMode.BOOKED, grain=Grain.MONTHLY,
    ))
    contracted = service.generate_crm_report(ReportRequest(
        window.start_date, window.end_date, mode=ReportMode.CONTRACTED, grain=Grain.MONTHLY,
    ))
    return MonthlySummary(
        window=window,
        arr_total=period_total(booked, window.period_key),
        carr_total=period_total(contracted, window.period_key),
        arr_rows=deal_breakdown(booked, window.period_key),
        carr_rows=deal_breakdown(contracted, window.period_key),
    )
