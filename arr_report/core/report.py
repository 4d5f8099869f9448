"""
ARR report aggregation.

Builds per-period ARR reports from two sources:

1. CRM deals and their line items, in booked mode (plain window coverage) or
   contracted mode (newly won business is carried from its close period up
   to the start of its first recurring charge).
2. Billing-ledger line items mirrored by the sync cache, annualized from
   their billing-period duration.

Quarterly and annual values are always sums of monthly values, rounded at
each aggregation boundary.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, Hashable, List, Mapping, Optional, Sequence, Tuple

from arr_report.clients.crm import CrmClient
from arr_report.clients.http import map_with_concurrency
from arr_report.config.loader import Settings
from arr_report.errors import ConfigurationMissingError, InputValidationError
from arr_report.storage.models import (
    CrmDeal,
    CrmLineItem,
    LINE_ITEM_PROPERTIES,
    deal_properties,
)
from .annualize import annualized_from_duration, annualized_from_frequency, round2
from .cache import TTLCache
from .dates import day_key, first_of_month, parse_date, parse_range, start_of_day
from .fx import CurrencyNormalizer, FxQuote
from .periods import Grain, Period, aggregate_periods, build_daily_periods, build_monthly_periods
from .sync import SyncCache
from .window import BillingWindow, compute_window, is_one_time

logger = logging.getLogger(__name__)

FX_CONCURRENCY = 4
LEDGER_DEAL_TYPE = "ledger_invoice_line"


class ReportMode(Enum):
    """Recognition policy of a CRM report."""
    BOOKED = "booked"
    CONTRACTED = "contracted"


def parse_mode(value) -> ReportMode:
    """Resolve a mode name; ``arr`` is accepted as an alias of booked.

    Raises:
        InputValidationError: If the mode is unknown
    """
    if isinstance(value, ReportMode):
        return value
    text = str(value or "").strip().lower()
    if text == "arr":
        return ReportMode.BOOKED
    try:
        return ReportMode(text)
    except ValueError:
        raise InputValidationError(f"Unknown mode: {value!r}")


def parse_grain(value) -> Grain:
    """Resolve a grain name.

    Raises:
        InputValidationError: If the grain is unknown
    """
    if isinstance(value, Grain):
        return value
    try:
        return Grain(str(value or "").strip().lower())
    except ValueError:
        raise InputValidationError(f"Unknown grain: {value!r}")


@dataclass(frozen=True)
class ReportRequest:
    """Parameters of a CRM report."""
    start_date: str
    end_date: str
    mode: ReportMode = ReportMode.BOOKED
    grain: Grain = Grain.MONTHLY
    include_all_deals: bool = False


@dataclass(frozen=True)
class ReportPeriod:
    key: str
    label: str


@dataclass(frozen=True)
class PeriodTotal:
    key: str
    label: str
    total: float


@dataclass(frozen=True)
class ReportRow:
    """One line item's annualized value and its per-period attribution."""
    deal_name: str
    deal_id: str
    line_item_id: str
    annualized_value: float
    currency: str
    fx_rate: Optional[float]
    fx_date_used: str
    values_by_period: Mapping[str, float]
    deal_type: str = ""
    close_date: str = ""
    window_start: str = ""
    window_end: str = ""
    is_open_ended: bool = False
    recurring_frequency: str = ""
    term_months: Optional[float] = None
    amount: Optional[float] = None
    net_price: Optional[float] = None
    quantity: float = 1.0
    deployment_type: str = ""
    account_id: str = ""
    territory: str = ""
    country: str = ""
    industry: str = ""
    description: str = ""

    def __post_init__(self):
        object.__setattr__(self, "values_by_period", MappingProxyType(dict(self.values_by_period)))


@dataclass(frozen=True)
class Report:
    """Periods, per-period totals and rows of one report."""
    periods: Tuple[ReportPeriod, ...] = ()
    totals_by_period: Tuple[PeriodTotal, ...] = ()
    rows: Tuple[ReportRow, ...] = ()


@dataclass(frozen=True)
class DealMetrics:
    """Current ARR and contracted ARR of one deal on ``as_of``."""
    as_of: str
    deal_id: str
    current_arr: float
    current_carr: float


@dataclass(frozen=True)
class MetricsPushResult:
    as_of: str
    updated_deals: int
    arr_property: str
    carr_property: str
    arr_total: float
    carr_total: float
    metrics: List[DealMetrics] = field(default_factory=list)


@dataclass(frozen=True)
class PeriodPlan:
    """Output periods of a report plus the tiling values are computed on.

    Daily reports are evaluated on days. Every other grain is evaluated on
    months and summed into the output periods.
    """
    grain: Grain
    monthly: Tuple[Period, ...]
    output: Tuple[Period, ...]

    @classmethod
    def for_range(cls, range_start: datetime, range_end: datetime, grain: Grain) -> "PeriodPlan":
        if grain == Grain.DAILY:
            daily = tuple(build_daily_periods(range_start, range_end))
            return cls(grain=grain, monthly=(), output=daily)
        monthly = build_monthly_periods(first_of_month(range_start), first_of_month(range_end))
        return cls(grain=grain, monthly=tuple(monthly), output=tuple(aggregate_periods(monthly, grain)))

    def instant(self, period: Period) -> datetime:
        """Instant a window must cover: day start when daily, else period end."""
        return period.start if self.grain == Grain.DAILY else period.end

    @property
    def unit(self) -> Callable[[datetime], datetime]:
        """Start of the evaluation bucket containing an instant."""
        return start_of_day if self.grain == Grain.DAILY else first_of_month

    def distribute(self, amount: float, attributed: Callable[[Period], bool]) -> Dict[str, float]:
        """Value per output period: ``amount`` where attributed, else 0."""
        if self.grain == Grain.DAILY:
            return {p.key: amount if amount and attributed(p) else 0.0 for p in self.output}

        monthly = {p.key: amount if amount and attributed(p) else 0.0 for p in self.monthly}
        if self.grain == Grain.MONTHLY:
            return monthly
        return {p.key: round2(sum(monthly[m] for m in p.members)) for p in self.output}

    def report(self, rows: Sequence[ReportRow]) -> Report:
        totals = tuple(
            PeriodTotal(
                key=p.key,
                label=p.label,
                total=round2(sum(row.values_by_period.get(p.key, 0.0) for row in rows)),
            )
            for p in self.output
        )
        return Report(
            periods=tuple(ReportPeriod(key=p.key, label=p.label) for p in self.output),
            totals_by_period=totals,
            rows=tuple(rows),
        )


@dataclass(frozen=True)
class EarliestRecurring:
    line_item_id: str
    start: datetime


def find_earliest_recurring(items: Sequence[CrmLineItem]) -> Optional[EarliestRecurring]:
    """Recurring item with positive value and the earliest window start.

    Ties keep the first item in the given order.
    """
    best: Optional[EarliestRecurring] = None
    for item in items:
        if is_one_time(item):
            continue
        if annualized_from_frequency(item) <= 0:
            continue
        window = compute_window(item)
        if window is None:
            continue
        if best is None or window.start < best.start:
            best = EarliestRecurring(line_item_id=item.id, start=window.start)
    return best


def _attribution(
    plan: PeriodPlan,
    mode: ReportMode,
    deal: CrmDeal,
    item: CrmLineItem,
    window: Optional[BillingWindow],
    earliest: Optional[EarliestRecurring],
) -> Callable[[Period], bool]:
    """Predicate deciding whether ``item`` counts in a period."""
    if window is None:
        return lambda period: False

    def covers(period: Period) -> bool:
        return window.covers(plan.instant(period))

    if mode == ReportMode.BOOKED or deal.is_existing_business:
        return covers
    if earliest is None or item.id != earliest.line_item_id:
        return covers

    close = parse_date(deal.close_date)
    if close is None:
        return covers

    close_bucket = plan.unit(close)
    carry_end = plan.unit(earliest.start)
    allow_carry = close < earliest.start

    def carried(period: Period) -> bool:
        if period.start == close_bucket:
            return True
        if allow_carry and close_bucket <= period.start <= carry_end:
            return True
        return covers(period)

    return carried


def _closed_within(deal: CrmDeal, range_start: datetime, range_end: datetime) -> bool:
    close = parse_date(deal.close_date)
    return close is not None and range_start <= close <= range_end


def _day_or_blank(value: Optional[datetime]) -> str:
    return day_key(value) if value else ""


class ReportService:
    """Generates ARR reports and deal metrics.

    Owns the response cache; the FX cache lives in the CurrencyNormalizer and
    the CRM caches in the CrmClient, so one service instance is one
    process-level context.
    """

    def __init__(
        self,
        fx: CurrencyNormalizer,
        crm: Optional[CrmClient] = None,
        sync_cache: Optional[SyncCache] = None,
        settings: Optional[Settings] = None,
        report_cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.fx = fx
        self.crm = crm
        self.sync_cache = sync_cache
        self.settings = settings or Settings()
        self.report_cache = (
            report_cache
            if report_cache is not None
            else TTLCache(ttl_seconds=self.settings.report.cache_ttl_seconds, max_entries=256)
        )
        self._clock = clock

    @property
    def target_currency(self) -> str:
        return self.settings.report.target_currency.strip().upper()

    def _require_crm(self) -> CrmClient:
        if self.crm is None:
            raise ConfigurationMissingError("HUBSPOT_PRIVATE_APP_TOKEN")
        return self.crm

    def _cached(self, key: Hashable, build: Callable[[], Report]) -> Report:
        cached = self.report_cache.get(key)
        if cached is not None:
            logger.debug("Report cache hit for %s", key)
            return cached
        report = build()
        self.report_cache.set(key, report)
        return report

    def _fetch_deals(self, crm: CrmClient, stage: str) -> List[CrmDeal]:
        property_names = self.settings.crm.deal_property_names()
        raw_deals = crm.search_deals(stage, deal_properties(property_names))
        return [
            CrmDeal.from_properties(
                raw.get("id"), raw.get("properties"), property_names, self.target_currency
            )
            for raw in raw_deals
        ]

    def _quotes_for_deals(self, deals: Sequence[CrmDeal]) -> Dict[Tuple[str, str], FxQuote]:
        """FX quote per (currency, close month), fetched concurrently."""
        now = self._clock()
        anchors: Dict[Tuple[str, str], Tuple[str, Optional[datetime]]] = {}
        for deal in deals:
            close = parse_date(deal.close_date)
            month = close.strftime("%Y-%m") if close else "current"
            anchors.setdefault((deal.currency, month), (deal.currency, close))

        keys = list(anchors)
        quotes = map_with_concurrency(
            keys,
            FX_CONCURRENCY,
            lambda key: self.fx.monthly_average_rate(
                anchors[key][0], self.target_currency, anchors[key][1], now=now
            ),
        )
        return dict(zip(keys, quotes))

    def generate_crm_report(self, request: ReportRequest) -> Report:
        """Build an ARR report from CRM deals in the configured stage.

        Args:
            request: Range, mode, grain and the include-all-deals flag

        Returns:
            Report whose rows are one per deal line item

        Raises:
            InputValidationError: If the range, mode or grain is invalid
            ConfigurationMissingError: If the deal stage or CRM token is missing
            UpstreamUnavailableError: If the CRM cannot be read
        """
        range_start, range_end = parse_range(request.start_date, request.end_date)
        mode = parse_mode(request.mode)
        grain = parse_grain(request.grain)
        stage = self.settings.crm.require_stage()
        crm = self._require_crm()

        key = (
            "crm", day_key(range_start), day_key(range_end), grain.value, mode.value,
            bool(request.include_all_deals),
        )
        return self._cached(
            key,
            lambda: self._build_crm_report(
                crm, stage, range_start, range_end, mode, grain, request.include_all_deals
            ),
        )

    def _build_crm_report(
        self,
        crm: CrmClient,
        stage: str,
        range_start: datetime,
        range_end: datetime,
        mode: ReportMode,
        grain: Grain,
        include_all_deals: bool,
    ) -> Report:
        plan = PeriodPlan.for_range(range_start, range_end, grain)
        deals = self._fetch_deals(crm, stage)

        if mode == ReportMode.CONTRACTED and not include_all_deals and grain != Grain.DAILY:
            deals = [deal for deal in deals if _closed_within(deal, range_start, range_end)]
        if not deals:
            return plan.report([])

        ids_by_deal = crm.resolve_line_item_ids([deal.id for deal in deals])
        all_ids = list(dict.fromkeys(i for ids in ids_by_deal.values() for i in ids))
        raw_items = crm.batch_read_line_items(all_ids, LINE_ITEM_PROPERTIES)
        quotes = self._quotes_for_deals(deals)

        rows: List[ReportRow] = []
        for deal in deals:
            item_ids = ids_by_deal.get(deal.id) or []
            if not item_ids:
                continue
            items = [
                CrmLineItem.from_properties(item_id, (raw_items.get(item_id) or {}).get("properties"))
                for item_id in item_ids
            ]
            close = parse_date(deal.close_date)
            quote = quotes.get((deal.currency, close.strftime("%Y-%m") if close else "current"))
            quote = quote or FxQuote(rate=0.0)
            earliest = find_earliest_recurring(items) if mode == ReportMode.CONTRACTED else None

            for item in items:
                window = compute_window(item)
                value = quote.convert(annualized_from_frequency(item))
                attributed = _attribution(plan, mode, deal, item, window, earliest)
                rows.append(ReportRow(
                    deal_name=deal.name,
                    deal_id=deal.id,
                    line_item_id=item.id,
                    annualized_value=value,
                    currency=deal.currency,
                    fx_rate=quote.rate or None,
                    fx_date_used=quote.date_used,
                    values_by_period=plan.distribute(value, attributed),
                    deal_type=deal.deal_type,
                    close_date=_day_or_blank(close),
                    window_start=_day_or_blank(window.start if window else None),
                    window_end=(
                        "" if window is None
                        else "OPEN" if window.open_ended
                        else day_key(window.end)
                    ),
                    is_open_ended=bool(window and window.open_ended),
                    recurring_frequency=item.recurring_frequency,
                    term_months=item.term_months or None,
                    amount=item.amount or None,
                    net_price=item.net_price or None,
                    quantity=item.quantity,
                    deployment_type=deal.deployment_type,
                    account_id=deal.account_id,
                    territory=deal.territory,
                    country=deal.country,
                    industry=deal.industry,
                ))

        logger.info(
            "Built %s %s CRM report for %s..%s: %d deals, %d rows",
            mode.value, grain.value, day_key(range_start), day_key(range_end), len(deals), len(rows),
        )
        return plan.report(rows)

    def generate_ledger_report(self, start_date, end_date, grain=Grain.MONTHLY) -> Report:
        """Build an ARR report from synchronized billing-ledger line items.

        Each line is annualized from its billing-period duration and counts in
        every period whose representative instant its billing period covers.

        Raises:
            InputValidationError: If the range or grain is invalid
            ConfigurationMissingError: If no sync cache is configured, or a
                sync is needed without ledger credentials
            UpstreamUnavailableError: If an automatic sync fails
        """
        range_start, range_end = parse_range(start_date, end_date)
        grain = parse_grain(grain)
        if self.sync_cache is None:
            raise ConfigurationMissingError("ledger sync store")
        sync_cache = self.sync_cache

        key = ("ledger", day_key(range_start), day_key(range_end), grain.value)
        return self._cached(
            key, lambda: self._build_ledger_report(sync_cache, range_start, range_end, grain)
        )

    def _build_ledger_report(
        self, sync_cache: SyncCache, range_start: datetime, range_end: datetime, grain: Grain
    ) -> Report:
        plan = PeriodPlan.for_range(range_start, range_end, grain)
        start_key, end_key = day_key(range_start), day_key(range_end)
        if self.settings.report.auto_sync:
            sync_cache.ensure_sync(start_key, end_key)
        items = sync_cache.read_items_overlapping_range(start_key, end_key)

        now = self._clock()
        target = self.target_currency
        rows: List[ReportRow] = []
        for item in sorted(items, key=lambda i: (i.period_start, i.key)):
            amount_major = item.amount_major
            if amount_major <= 0:
                continue
            end_exclusive = item.period_end + timedelta(milliseconds=1)
            annualized = annualized_from_duration(amount_major, item.period_start, end_exclusive)
            if annualized <= 0:
                continue

            currency = (item.currency or target).upper()
            quote = self.fx.monthly_average_rate(currency, target, item.record_created_at, now=now)
            value = quote.convert(annualized)
            if not value:
                logger.debug("Skipping %s: no %s->%s rate", item.key, currency, target)
                continue

            window = BillingWindow(start=item.period_start, end=item.period_end)
            rows.append(ReportRow(
                deal_name=item.customer_name,
                deal_id=item.customer_id or "(no customer id)",
                line_item_id=item.line_item_id,
                annualized_value=value,
                currency=currency,
                fx_rate=quote.rate if currency != target else None,
                fx_date_used=quote.date_used,
                values_by_period=plan.distribute(value, lambda p: window.covers(plan.instant(p))),
                deal_type=LEDGER_DEAL_TYPE,
                close_date=_day_or_blank(item.record_created_at),
                window_start=day_key(item.period_start),
                window_end=day_key(item.period_end),
                amount=round2(amount_major),
                net_price=round2(amount_major),
                quantity=item.quantity,
                description=item.description,
            ))

        logger.info(
            "Built %s ledger report for %s..%s: %d of %d items",
            grain.value, start_key, end_key, len(rows), len(items),
        )
        return plan.report(rows)

    def current_deal_metrics(self, as_of: Optional[str] = None) -> List[DealMetrics]:
        """Current ARR and contracted ARR per deal in the configured stage.

        Args:
            as_of: Day to evaluate (YYYY-MM-DD); today if None

        Raises:
            InputValidationError: If ``as_of`` is not a date
            ConfigurationMissingError: If the deal stage or CRM token is missing
        """
        as_of_date = parse_date(as_of) if as_of else self._clock()
        if as_of_date is None:
            raise InputValidationError(f"Invalid as-of date: {as_of!r}")
        as_of_key = day_key(as_of_date)
        stage = self.settings.crm.require_stage()
        crm = self._require_crm()

        deals = self._fetch_deals(crm, stage)
        if not deals:
            return []

        booked = self.generate_crm_report(ReportRequest(
            as_of_key, as_of_key, mode=ReportMode.BOOKED, grain=Grain.DAILY,
        ))
        contracted = self.generate_crm_report(ReportRequest(
            as_of_key, as_of_key, mode=ReportMode.CONTRACTED, grain=Grain.DAILY, include_all_deals=True,
        ))
        arr_by_deal = _sum_by_deal(booked, as_of_key)
        carr_by_deal = _sum_by_deal(contracted, as_of_key)

        return [
            DealMetrics(
                as_of=as_of_key,
                deal_id=deal.id,
                current_arr=round2(arr_by_deal.get(deal.id, 0.0)),
                current_carr=round2(carr_by_deal.get(deal.id, 0.0)),
            )
            for deal in deals
        ]

    def push_current_deal_metrics(self, as_of: Optional[str] = None) -> MetricsPushResult:
        """Compute current deal metrics and write them back to the CRM."""
        metrics = self.current_deal_metrics(as_of)
        crm = self._require_crm()
        arr_property = self.settings.crm.current_arr_property
        carr_property = self.settings.crm.current_carr_property

        updated = crm.batch_update_deals({
            m.deal_id: {arr_property: m.current_arr, carr_property: m.current_carr}
            for m in metrics
        })
        logger.info("Pushed current ARR/CARR for %d deals", updated)

        return MetricsPushResult(
            as_of=metrics[0].as_of if metrics else day_key(parse_date(as_of) or self._clock()),
            updated_deals=updated,
            arr_property=arr_property,
            carr_property=carr_property,
            arr_total=round2(sum(m.current_arr for m in metrics)),
            carr_total=round2(sum(m.current_carr for m in metrics)),
            metrics=metrics,
        )


def _sum_by_deal(report: Report, period_key: str) -> Dict[str, float]:
    by_deal: Dict[str, float] = {}
    for row in report.rows:
        by_deal[row.deal_id] = round2(by_deal.get(row.deal_id, 0.0) + row.values_by_period.get(period_key, 0.0))
    return by_deal
