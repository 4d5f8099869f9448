"""
Unit tests for report generation.

Tests booked and contracted recognition, period aggregation, currency
conversion, ledger annualization, the response cache and deal metrics.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from arr_report.config.loader import CrmConfig, ReportConfig, Settings
from arr_report.core.fx import CurrencyNormalizer
from arr_report.core.periods import Grain
from arr_report.core.report import (
    LEDGER_DEAL_TYPE,
    ReportMode,
    ReportRequest,
    ReportService,
    find_earliest_recurring,
    parse_grain,
    parse_mode,
)
from arr_report.core.sync import SyncCache
from arr_report.errors import ConfigurationMissingError, InputValidationError
from arr_report.storage.models import BillingLineItem, CrmLineItem, SyncSnapshot
from arr_report.storage.repository import KeyValueSnapshotStore, MemoryKeyValueBackend

NOW = datetime(2025, 7, 1, 9, 0)


class FakeRateSource:
    """Rate source returning a fixed rate and recording its calls."""

    def __init__(self, rate=1.1):
        self.rate = rate
        self.calls = []

    def average_rate_for_range(self, from_currency, to_currency, start, end):
        self.calls.append((from_currency, to_currency, start))
        return self.rate


class FakeCrm:
    """CRM double serving fixed deals, associations and line items."""

    def __init__(self, deals, associations, line_items):
        self.deals = deals
        self.associations = associations
        self.line_items = line_items
        self.search_calls = []
        self.updates = []

    def search_deals(self, stage, properties):
        self.search_calls.append((stage, tuple(properties)))
        return self.deals

    def resolve_line_item_ids(self, deal_ids):
        return {deal_id: self.associations.get(deal_id, []) for deal_id in deal_ids}

    def batch_read_line_items(self, ids, properties):
        return {i: {"id": i, "properties": self.line_items[i]} for i in ids if i in self.line_items}

    def batch_update_deals(self, updates):
        self.updates.append(dict(updates))
        return len(updates)


def deal(deal_id, close_date, deal_type="newbusiness", currency="USD", name=None):
    return {
        "id": deal_id,
        "properties": {
            "dealname": name or f"Deal {deal_id}",
            "dealtype": deal_type,
            "closedate": close_date,
            "deal_currency_code": currency,
        },
    }


def monthly_item(start, end=None, term=None, amount=1000):
    props = {
        "hs_recurring_billing_start_date": start,
        "amount": str(amount),
        "recurringbillingfrequency": "monthly",
    }
    if end:
        props["hs_recurring_billing_end_date"] = end
    if term:
        props["hs_term_in_months"] = str(term)
    return props


def make_service(crm=None, rate_source=None, sync_cache=None, stage="closedwon", auto_sync=False):
    settings = Settings(
        report=ReportConfig(target_currency="USD", auto_sync=auto_sync),
        crm=CrmConfig(included_dealstage=stage),
    )
    return ReportService(
        CurrencyNormalizer(rate_source or FakeRateSource()),
        crm=crm,
        sync_cache=sync_cache,
        settings=settings,
        clock=lambda: NOW,
    )


def totals(report):
    return {t.key: t.total for t in report.totals_by_period}


def carry_crm(deal_type="newbusiness"):
    return FakeCrm(
        deals=[deal("d1", "2025-02-10", deal_type)],
        associations={"d1": ["li1"]},
        line_items={"li1": monthly_item("2025-04-01", term=12)},
    )


class TestParsing:
    """Test mode and grain names."""

    def test_modes(self):
        """Mode names resolve; arr is an alias of booked."""
        assert parse_mode("booked") == ReportMode.BOOKED
        assert parse_mode("ARR") == ReportMode.BOOKED
        assert parse_mode("contracted") == ReportMode.CONTRACTED
        with pytest.raises(InputValidationError):
            parse_mode("weekly")

    def test_grains(self):
        """Grain names resolve; unknown grains are rejected."""
        assert parse_grain("Quarterly") == Grain.QUARTERLY
        with pytest.raises(InputValidationError):
            parse_grain("weekly")


class TestEarliestRecurring:
    """Test selection of the carry anchor item."""

    def test_skips_one_time_and_zero_value(self):
        """One-time and valueless items never anchor carry."""
        items = [
            CrmLineItem(id="once", recurring_billing_start="2025-01-01", amount=500,
                        recurring_frequency="monthly"),
            CrmLineItem(id="free", recurring_billing_start="2025-01-01", term_months=12,
                        recurring_frequency="monthly"),
            CrmLineItem(id="late", recurring_billing_start="2025-06-01", term_months=12,
                        amount=10, recurring_frequency="monthly"),
        ]
        earliest = find_earliest_recurring(items)
        assert earliest.line_item_id == "late"
        assert earliest.start == datetime(2025, 6, 1)

    def test_tie_keeps_first(self):
        """Items starting on the same day resolve to the first one."""
        items = [
            CrmLineItem(id="a", recurring_billing_start="2025-04-01", term_months=12,
                        amount=10, recurring_frequency="monthly"),
            CrmLineItem(id="b", recurring_billing_start="2025-04-01", term_months=12,
                        amount=10, recurring_frequency="monthly"),
        ]
        assert find_earliest_recurring(items).line_item_id == "a"

    def test_no_recurring_items(self):
        """Without recurring items there is no anchor."""
        assert find_earliest_recurring([]) is None


class TestCrmReport:
    """Test CRM-sourced reports."""

    def test_booked_monthly(self):
        """A monthly 1000 charge counts 12000 in each covered month."""
        crm = FakeCrm(
            deals=[deal("d1", "2024-12-15")],
            associations={"d1": ["li1"]},
            line_items={"li1": monthly_item("2025-01-01", end="2025-03-31")},
        )
        report = make_service(crm).generate_crm_report(ReportRequest("2025-01-01", "2025-06-30"))

        assert [p.key for p in report.periods] == [
            "2025-01", "2025-02", "2025-03", "2025-04", "2025-05", "2025-06"
        ]
        assert totals(report) == {
            "2025-01": 12000.0, "2025-02": 12000.0, "2025-03": 12000.0,
            "2025-04": 0.0, "2025-05": 0.0, "2025-06": 0.0,
        }
        row = report.rows[0]
        assert row.annualized_value == 12000.0
        assert row.window_start == "2025-01-01"
        assert row.window_end == "2025-03-31"
        assert row.fx_rate == 1.0
        assert row.close_date == "2024-12-15"

    def test_booked_mid_month_start(self):
        """A window starting mid-month counts in every month whose end it covers."""
        crm = FakeCrm(
            deals=[deal("d1", "2024-12-15")],
            associations={"d1": ["li1"]},
            line_items={"li1": monthly_item("2025-01-15", end="2025-12-31")},
        )
        report = make_service(crm).generate_crm_report(ReportRequest("2025-01-01", "2025-03-31"))

        assert totals(report) == {"2025-01": 12000.0, "2025-02": 12000.0, "2025-03": 12000.0}
        row = report.rows[0]
        assert row.window_start == "2025-01-15"
        assert row.window_end == "2025-12-31"

    def test_booked_ignores_close_date(self):
        """Booked mode counts only from the billing window start."""
        report = make_service(carry_crm()).generate_crm_report(
            ReportRequest("2025-01-01", "2025-06-30", mode="booked")
        )
        assert totals(report) == {
            "2025-01": 0.0, "2025-02": 0.0, "2025-03": 0.0,
            "2025-04": 12000.0, "2025-05": 12000.0, "2025-06": 12000.0,
        }

    def test_contracted_carries_from_close_month(self):
        """New business counts from the close month up to its first charge."""
        report = make_service(carry_crm()).generate_crm_report(
            ReportRequest("2025-01-01", "2025-06-30", mode=ReportMode.CONTRACTED)
        )
        assert totals(report) == {
            "2025-01": 0.0, "2025-02": 12000.0, "2025-03": 12000.0,
            "2025-04": 12000.0, "2025-05": 12000.0, "2025-06": 12000.0,
        }

    def test_contracted_existing_business_is_not_carried(self):
        """Existing business behaves as in booked mode."""
        report = make_service(carry_crm("existingbusiness")).generate_crm_report(
            ReportRequest("2025-01-01", "2025-06-30", mode=ReportMode.CONTRACTED)
        )
        assert totals(report)["2025-02"] == 0.0
        assert totals(report)["2025-03"] == 0.0
        assert totals(report)["2025-04"] == 12000.0

    def test_contracted_carry_daily(self):
        """Daily contracted reports carry from the close day."""
        report = make_service(carry_crm()).generate_crm_report(
            ReportRequest("2025-02-09", "2025-02-11", mode=ReportMode.CONTRACTED, grain=Grain.DAILY)
        )
        assert totals(report) == {"2025-02-09": 0.0, "2025-02-10": 12000.0, "2025-02-11": 12000.0}

    def test_contracted_drops_deals_closed_outside_range(self):
        """Deals closed outside the range are excluded unless asked for."""
        service = make_service(carry_crm())
        report = service.generate_crm_report(
            ReportRequest("2025-04-01", "2025-06-30", mode=ReportMode.CONTRACTED)
        )
        assert report.rows == ()
        assert set(totals(report).values()) == {0.0}

        report = service.generate_crm_report(
            ReportRequest("2025-04-01", "2025-06-30", mode=ReportMode.CONTRACTED, include_all_deals=True)
        )
        assert totals(report)["2025-04"] == 12000.0

    def test_one_time_item_contributes_nothing(self):
        """Open-ended items appear as rows with zero values."""
        crm = FakeCrm(
            deals=[deal("d1", "2025-01-05")],
            associations={"d1": ["li1"]},
            line_items={"li1": monthly_item("2025-01-01")},
        )
        report = make_service(crm).generate_crm_report(ReportRequest("2025-01-01", "2025-03-31"))
        row = report.rows[0]
        assert row.window_end == "OPEN"
        assert row.is_open_ended
        assert row.annualized_value == 0.0
        assert set(row.values_by_period.values()) == {0.0}

    def test_quarterly_sums_months(self):
        """Quarter values are sums of their monthly values."""
        crm = FakeCrm(
            deals=[deal("d1", "2024-12-15")],
            associations={"d1": ["li1"]},
            line_items={"li1": monthly_item("2025-01-01", end="2025-03-31")},
        )
        report = make_service(crm).generate_crm_report(
            ReportRequest("2025-01-01", "2025-06-30", grain="quarterly")
        )
        assert totals(report) == {"2025-Q1": 36000.0, "2025-Q2": 0.0}
        assert report.rows[0].values_by_period["2025-Q1"] == 36000.0

    def test_foreign_currency_is_converted(self):
        """Values are converted at the close month's average rate."""
        crm = FakeCrm(
            deals=[deal("d1", "2025-01-15", currency="EUR"), deal("d2", "2025-01-20", currency="EUR")],
            associations={"d1": ["li1"], "d2": ["li2"]},
            line_items={
                "li1": monthly_item("2025-01-01", end="2025-12-31"),
                "li2": monthly_item("2025-01-01", end="2025-12-31"),
            },
        )
        source = FakeRateSource(rate=1.1)
        report = make_service(crm, rate_source=source).generate_crm_report(
            ReportRequest("2025-01-01", "2025-01-31")
        )
        assert report.rows[0].annualized_value == 13200.0
        assert report.rows[0].fx_rate == 1.1
        assert report.rows[0].fx_date_used == "2025-01"
        assert totals(report) == {"2025-01": 26400.0}
        assert source.calls == [("EUR", "USD", datetime(2025, 1, 1))]

    def test_missing_rate_zeroes_value(self):
        """A deal whose currency cannot be converted contributes nothing."""
        crm = FakeCrm(
            deals=[deal("d1", "2025-01-15", currency="XYZ")],
            associations={"d1": ["li1"]},
            line_items={"li1": monthly_item("2025-01-01", end="2025-12-31")},
        )
        report = make_service(crm, rate_source=FakeRateSource(rate=None)).generate_crm_report(
            ReportRequest("2025-01-01", "2025-01-31")
        )
        assert report.rows[0].fx_rate is None
        assert totals(report) == {"2025-01": 0.0}

    def test_no_deals_gives_zero_totals(self):
        """An empty stage still produces every period."""
        crm = FakeCrm(deals=[], associations={}, line_items={})
        report = make_service(crm).generate_crm_report(ReportRequest("2025-01-01", "2025-02-28"))
        assert totals(report) == {"2025-01": 0.0, "2025-02": 0.0}

    def test_report_cache(self):
        """Identical requests are served from the response cache."""
        crm = carry_crm()
        service = make_service(crm)
        request = ReportRequest("2025-01-01", "2025-06-30")
        first = service.generate_crm_report(request)
        second = service.generate_crm_report(request)
        assert first is second
        assert len(crm.search_calls) == 1

        service.generate_crm_report(ReportRequest("2025-01-01", "2025-06-30", mode="contracted"))
        assert len(crm.search_calls) == 2

    def test_invalid_request(self):
        """Bad ranges are rejected before any CRM call."""
        crm = carry_crm()
        with pytest.raises(InputValidationError):
            make_service(crm).generate_crm_report(ReportRequest("2025-06-30", "2025-01-01"))
        assert crm.search_calls == []

    def test_missing_configuration(self):
        """A missing stage or CRM client is a configuration error."""
        with pytest.raises(ConfigurationMissingError):
            make_service(carry_crm(), stage=None).generate_crm_report(
                ReportRequest("2025-01-01", "2025-01-31")
            )
        with pytest.raises(ConfigurationMissingError):
            make_service(None).generate_crm_report(ReportRequest("2025-01-01", "2025-01-31"))


def ledger_item(key, amount_minor, start, end_exclusive, currency="usd"):
    invoice_id, line_id = key.split(":")
    return BillingLineItem(
        key=key,
        invoice_id=invoice_id,
        line_item_id=line_id,
        customer_id="cus_1",
        customer_name="Acme",
        amount_minor=amount_minor,
        currency=currency,
        quantity=1,
        period_start=start,
        period_end=end_exclusive - timedelta(milliseconds=1),
        record_created_at=start,
    )


def ledger_cache(*items):
    store = KeyValueSnapshotStore(MemoryKeyValueBackend())
    store.write(SyncSnapshot(items_by_key={item.key: item for item in items}))
    return SyncCache(store, None, clock=lambda: NOW)


class TestLedgerReport:
    """Test ledger-sourced reports."""

    def test_thirty_day_line(self):
        """100 billed over 30 days annualizes to 1217.48."""
        cache = ledger_cache(ledger_item("in_1:il_1", 10000, datetime(2025, 1, 1), datetime(2025, 1, 31)))
        report = make_service(sync_cache=cache).generate_ledger_report("2025-01-10", "2025-01-10", "daily")

        row = report.rows[0]
        assert row.annualized_value == 1217.48
        assert row.deal_type == LEDGER_DEAL_TYPE
        assert row.deal_id == "cus_1"
        assert row.fx_rate is None
        assert row.window_end == "2025-01-30"
        assert totals(report) == {"2025-01-10": 1217.48}

    def test_daily_attribution_uses_day_start(self):
        """A daily bucket counts a line only if its period covers the day's first instant."""
        cache = ledger_cache(
            ledger_item("in_9:il_9", 10000, datetime(2025, 1, 10, 12, 0), datetime(2025, 2, 10, 12, 0))
        )
        report = make_service(sync_cache=cache).generate_ledger_report("2025-01-10", "2025-01-11", "daily")
        assert totals(report) == {"2025-01-10": 0.0, "2025-01-11": 1178.2}

    def test_monthly_attribution_uses_period_end(self):
        """A line counts in months whose last instant its period covers."""
        cache = ledger_cache(ledger_item("in_1:il_1", 10000, datetime(2025, 1, 1), datetime(2025, 2, 1)))
        report = make_service(sync_cache=cache).generate_ledger_report("2025-01-01", "2025-02-28")
        assert totals(report) == {"2025-01": 1178.2, "2025-02": 0.0}

    def test_non_positive_and_unconvertible_lines_are_skipped(self):
        """Credits and lines without a usable rate produce no rows."""
        cache = ledger_cache(
            ledger_item("in_1:il_1", -500, datetime(2025, 1, 1), datetime(2025, 2, 1)),
            ledger_item("in_2:il_2", 10000, datetime(2025, 1, 1), datetime(2025, 2, 1), currency="eur"),
        )
        service = make_service(sync_cache=cache, rate_source=FakeRateSource(rate=None))
        report = service.generate_ledger_report("2025-01-01", "2025-01-31")
        assert report.rows == ()
        assert totals(report) == {"2025-01": 0.0}

    def test_foreign_currency_is_converted(self):
        """Foreign lines convert at the month of their record creation."""
        cache = ledger_cache(
            ledger_item("in_2:il_2", 10000, datetime(2025, 1, 1), datetime(2025, 2, 1), currency="eur"),
        )
        service = make_service(sync_cache=cache, rate_source=FakeRateSource(rate=2.0))
        row = service.generate_ledger_report("2025-01-01", "2025-01-31").rows[0]
        assert row.currency == "EUR"
        assert row.fx_rate == 2.0
        assert row.fx_date_used == "2025-01"
        assert row.annualized_value == 2356.4

    def test_auto_sync_runs_before_reading(self):
        """With auto sync on, the range is synced first."""
        cache = MagicMock(spec=SyncCache)
        cache.read_items_overlapping_range.return_value = []
        service = make_service(sync_cache=cache, auto_sync=True)

        service.generate_ledger_report("2025-01-01", "2025-01-31")

        cache.ensure_sync.assert_called_once_with("2025-01-01", "2025-01-31")

    def test_missing_sync_cache(self):
        """A ledger report needs a sync cache."""
        with pytest.raises(ConfigurationMissingError):
            make_service().generate_ledger_report("2025-01-01", "2025-01-31")


def metrics_crm():
    return FakeCrm(
        deals=[deal("A", "2025-02-10"), deal("B", "2024-12-01", "existingbusiness")],
        associations={"A": ["li1"], "B": ["li2"]},
        line_items={
            "li1": monthly_item("2025-04-01", term=12),
            "li2": monthly_item("2025-01-01", end="2025-12-31", amount=500),
        },
    )


class TestDealMetrics:
    """Test current ARR and contracted ARR per deal."""

    def test_current_deal_metrics(self):
        """Booked and contracted values are evaluated on one day."""
        metrics = make_service(metrics_crm()).current_deal_metrics("2025-02-15")
        by_deal = {m.deal_id: (m.current_arr, m.current_carr) for m in metrics}
        assert by_deal == {"A": (0.0, 12000.0), "B": (6000.0, 6000.0)}
        assert {m.as_of for m in metrics} == {"2025-02-15"}

    def test_push_current_deal_metrics(self):
        """Metrics are written to the configured deal properties."""
        crm = metrics_crm()
        result = make_service(crm).push_current_deal_metrics("2025-02-15")

        assert crm.updates == [{
            "A": {"current_arr": 0.0, "current_carr": 12000.0},
            "B": {"current_arr": 6000.0, "current_carr": 6000.0},
        }]
        assert result.updated_deals == 2
        assert result.arr_total == 6000.0
        assert result.carr_total == 18000.0
        assert result.as_of == "2025-02-15"

    def test_invalid_as_of(self):
        """An unparseable as-of date is rejected."""
        with pytest.raises(InputValidationError):
            make_service(metrics_crm()).current_deal_metrics("someday")
