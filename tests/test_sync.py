"""
Unit tests for the incremental ledger sync cache.

Tests range coverage, cursor resumption, freshness, idempotent merging and
the single-writer guarantee, against an in-memory ledger.
"""

import threading
from datetime import datetime, timedelta

import pytest

from arr_report.clients.ledger import LedgerInvoice, LedgerLine, LedgerPage
from arr_report.core.sync import SyncCache, merge_items, normalize_line
from arr_report.errors import ConfigurationMissingError, InputValidationError
from arr_report.storage.models import SyncRange, SyncSnapshot
from arr_report.storage.repository import KeyValueSnapshotStore, MemoryKeyValueBackend


def ts(*args) -> int:
    return int(datetime(*args).timestamp())


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now=datetime(2025, 3, 1, 12, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeLedger:
    """In-memory ledger paging invoices by id cursor."""

    def __init__(self, invoices, lines):
        self.invoices = invoices
        self.lines = lines
        self.invoice_calls = []
        self.line_calls = []
        self._lock = threading.Lock()

    def list_invoices(self, created_from, created_to, cursor=None, max_batch=100):
        with self._lock:
            self.invoice_calls.append((created_from, created_to, cursor, max_batch))
        matching = [inv for inv in self.invoices if created_from <= inv.created <= created_to]
        ids = [inv.id for inv in matching]
        start = ids.index(cursor) + 1 if cursor in ids else 0
        batch = matching[start:start + max_batch]
        return LedgerPage(
            records=batch,
            next_cursor=batch[-1].id if batch else cursor,
            has_more=start + max_batch < len(matching),
        )

    def list_invoice_lines(self, invoice_id):
        with self._lock:
            self.line_calls.append(invoice_id)
        return self.lines.get(invoice_id, [])


def make_ledger():
    invoices = [
        LedgerInvoice(id="in_1", customer_id="cus_1", customer_name="Acme", currency="usd",
                      created=datetime(2025, 1, 2, 10, 0)),
        LedgerInvoice(id="in_2", customer_id="cus_2", customer_name="Globex", currency="EUR",
                      created=datetime(2025, 1, 20, 10, 0)),
        LedgerInvoice(id="in_3", customer_id="cus_1", customer_name="Acme", currency="usd",
                      created=datetime(2025, 2, 2, 10, 0)),
    ]
    lines = {
        "in_1": [LedgerLine(id="il_1", amount=10000, period_start=ts(2025, 1, 1), period_end=ts(2025, 1, 31))],
        "in_2": [
            LedgerLine(id="il_2", amount=50000, period_start=ts(2025, 1, 15), period_end=ts(2026, 1, 15)),
            LedgerLine(id="il_void", amount=100, period_start=0, period_end=0),
        ],
        "in_3": [LedgerLine(id="il_3", amount=10000, period_start=ts(2025, 2, 1), period_end=ts(2025, 3, 1))],
    }
    return FakeLedger(invoices, lines)


def make_cache(ledger=None, clock=None, **kwargs):
    store = KeyValueSnapshotStore(MemoryKeyValueBackend())
    return SyncCache(store, ledger, clock=clock or FakeClock(), **kwargs)


class TestNormalizeLine:
    """Test ledger line normalization."""

    def test_fields(self):
        """Lines get a composite key, lower-case currency and inclusive end."""
        invoice = LedgerInvoice(id="in_1", customer_id="cus_1", customer_name="Acme", currency="USD")
        line = LedgerLine(id="il_1", amount=10000, quantity=0,
                          period_start=ts(2025, 1, 1), period_end=ts(2025, 2, 1))
        item = normalize_line(invoice, line)
        assert item.key == "in_1:il_1"
        assert item.currency == "usd"
        assert item.quantity == 1
        assert item.period_start == datetime(2025, 1, 1)
        assert item.period_end == datetime(2025, 1, 31, 23, 59, 59, 999000)
        assert item.amount_major == 100.0

    def test_lines_without_period_or_id_are_skipped(self):
        """Lines without a positive period or an id are dropped."""
        invoice = LedgerInvoice(id="in_1", customer_id="", customer_name="", currency="usd")
        assert normalize_line(invoice, LedgerLine(id="il_1", amount=1)) is None
        assert normalize_line(invoice, LedgerLine(id="", amount=1, period_start=1, period_end=2)) is None

    def test_merge_is_idempotent(self):
        """Merging the same items twice yields the same snapshot."""
        invoice = LedgerInvoice(id="in_1", customer_id="cus_1", customer_name="Acme", currency="usd")
        item = normalize_line(invoice, LedgerLine(id="il_1", amount=1, period_start=ts(2025, 1, 1),
                                                  period_end=ts(2025, 2, 1)))
        once = merge_items(SyncSnapshot(), [item])
        twice = merge_items(once, [item])
        assert once == twice
        assert len(twice.items_by_key) == 1


class TestEnsureSync:
    """Test the sync decision sequence."""

    def test_first_sync_refreshes_and_exhausts(self):
        """An empty store fetches one batch and records the watermark."""
        ledger = make_ledger()
        cache = make_cache(ledger)

        result = cache.ensure_sync("2025-01-01", "2025-02-28")

        assert result.synced
        assert result.reason == "refreshed"
        assert result.synced_records == 3
        assert not result.has_more
        stats = cache.stats()
        assert stats.exhausted
        assert stats.item_count == 3
        assert stats.watermark == SyncRange(datetime(2025, 1, 1), datetime(2025, 2, 28, 23, 59, 59, 999000))

    def test_covered_range_makes_no_external_calls(self):
        """Once a range is exhausted, sub-ranges are served without fetching."""
        ledger = make_ledger()
        cache = make_cache(ledger)
        cache.ensure_sync("2025-01-01", "2025-02-28")

        result = cache.ensure_sync("2025-01-10", "2025-01-20")

        assert not result.synced
        assert result.reason == "range-covered"
        assert len(ledger.invoice_calls) == 1

    def test_partial_batches_resume_from_cursor(self):
        """Two partial batches end in the same state as one full batch."""
        ledger = make_ledger()
        cache = make_cache(ledger, max_records_per_run=2)

        first = cache.ensure_sync("2025-01-01", "2025-02-28")
        assert first.has_more
        assert not cache.stats().exhausted
        assert cache.stats().watermark is None

        second = cache.ensure_sync("2025-01-01", "2025-02-28")
        assert second.reason == "refreshed"
        assert not second.has_more
        assert ledger.invoice_calls[1][2] == "in_2"

        full = make_cache(make_ledger())
        full.ensure_sync("2025-01-01", "2025-02-28")
        assert cache.store.read().items_by_key == full.store.read().items_by_key
        assert cache.stats().watermark == full.stats().watermark

    def test_range_change_resets_cursor(self):
        """A different range starts paging from the beginning."""
        ledger = make_ledger()
        cache = make_cache(ledger, max_records_per_run=1)
        cache.ensure_sync("2025-01-01", "2025-02-28")
        assert cache.stats().cursor == "in_1"

        cache.ensure_sync("2025-01-15", "2025-02-28")

        assert ledger.invoice_calls[-1][2] is None
        assert cache.stats().active_range.start == datetime(2025, 1, 15)

    def test_extension_fetches_only_uncovered_gap(self):
        """Extending a synced range fetches only the new part."""
        ledger = make_ledger()
        cache = make_cache(ledger)
        cache.ensure_sync("2025-01-01", "2025-01-31")

        result = cache.ensure_sync("2025-01-01", "2025-02-28")

        assert result.reason == "refreshed"
        created_from, created_to, cursor, _ = ledger.invoice_calls[-1]
        assert created_from == datetime(2025, 1, 31, 23, 59, 59, 999000)
        assert created_to == datetime(2025, 2, 28, 23, 59, 59, 999000)
        assert cursor is None
        assert cache.stats().watermark.start == datetime(2025, 1, 1)
        assert cache.ensure_sync("2025-01-01", "2025-02-28").reason == "range-covered"

    def test_later_disjoint_range_also_fetches_gap(self):
        """A range after the watermark is fetched together with the gap before it."""
        ledger = make_ledger()
        cache = make_cache(ledger)
        cache.ensure_sync("2025-01-01", "2025-01-15")

        cache.ensure_sync("2025-02-20", "2025-02-28")

        assert ledger.invoice_calls[-1][0] == datetime(2025, 1, 15, 23, 59, 59, 999000)
        result = cache.ensure_sync("2025-01-16", "2025-02-10")
        assert result.reason == "range-covered"
        assert set(cache.store.read().items_by_key) == {"in_1:il_1", "in_2:il_2", "in_3:il_3"}

    def test_earlier_disjoint_range_also_fetches_gap(self):
        """A range before the watermark is fetched up to the watermark start."""
        ledger = make_ledger()
        cache = make_cache(ledger)
        cache.ensure_sync("2025-02-01", "2025-02-28")

        cache.ensure_sync("2025-01-01", "2025-01-05")

        created_from, created_to, _, _ = ledger.invoice_calls[-1]
        assert created_from == datetime(2025, 1, 1)
        assert created_to == datetime(2025, 2, 1)
        assert cache.ensure_sync("2025-01-10", "2025-01-31").reason == "range-covered"
        assert "in_2:il_2" in cache.store.read().items_by_key

    def test_forced_disjoint_range_also_fetches_gap(self):
        """A forced fetch away from the watermark still bridges the gap."""
        ledger = make_ledger()
        cache = make_cache(ledger)
        cache.ensure_sync("2025-01-01", "2025-01-05")

        cache.ensure_sync("2025-02-20", "2025-02-28", force=True)

        assert ledger.invoice_calls[-1][0] == datetime(2025, 1, 5, 23, 59, 59, 999000)
        assert cache.stats().item_count == 3

    def test_force_refetches_covered_range(self):
        """Force skips the covered shortcut and pages from the start."""
        ledger = make_ledger()
        cache = make_cache(ledger)
        cache.ensure_sync("2025-01-01", "2025-02-28")

        result = cache.ensure_sync("2025-01-01", "2025-02-28", force=True)

        assert result.reason == "refreshed"
        assert len(ledger.invoice_calls) == 2
        assert ledger.invoice_calls[1][2] is None
        assert cache.stats().item_count == 3

    def test_fresh_exhausted_range_skips_refetch(self):
        """An exhausted active range refreshed recently is not refetched."""
        ledger = make_ledger()
        clock = FakeClock()
        cache = make_cache(ledger, clock=clock, freshness_seconds=900)
        jan_end = datetime(2025, 1, 31, 23, 59, 59, 999000)
        feb_end = datetime(2025, 2, 28, 23, 59, 59, 999000)
        cache.store.write(SyncSnapshot(
            updated_at=clock.now - timedelta(seconds=60),
            watermark=SyncRange(datetime(2025, 1, 1), jan_end),
            active_range=SyncRange(jan_end, feb_end),
            exhausted=True,
        ))

        assert cache.ensure_sync("2025-01-01", "2025-02-28").reason == "fresh-cache"
        assert ledger.invoice_calls == []

        clock.now += timedelta(seconds=900)
        assert cache.ensure_sync("2025-01-01", "2025-02-28").reason == "refreshed"

    def test_start_clamped_to_history_horizon(self):
        """Fetches never reach further back than the history horizon."""
        ledger = make_ledger()
        clock = FakeClock(datetime(2025, 3, 1, 12, 0))
        cache = make_cache(ledger, clock=clock, max_history_days=45)

        cache.ensure_sync("2024-01-01", "2025-02-28")

        assert ledger.invoice_calls[0][0] == datetime(2025, 1, 15)

    def test_range_beyond_horizon(self):
        """A range entirely older than the horizon fetches nothing."""
        ledger = make_ledger()
        cache = make_cache(ledger, max_history_days=30)
        result = cache.ensure_sync("2024-01-01", "2024-01-31")
        assert result.reason == "beyond-history-horizon"
        assert ledger.invoice_calls == []

    def test_invalid_range(self):
        """Bad or inverted ranges raise before touching the store."""
        cache = make_cache(make_ledger())
        with pytest.raises(InputValidationError):
            cache.ensure_sync("2025-02-01", "2025-01-01")
        with pytest.raises(InputValidationError):
            cache.ensure_sync("garbage", "2025-01-01")

    def test_missing_ledger_source(self):
        """A needed fetch without a ledger source is a configuration error."""
        cache = make_cache(None)
        with pytest.raises(ConfigurationMissingError):
            cache.ensure_sync("2025-01-01", "2025-01-31")

    def test_concurrent_callers_fetch_once(self):
        """Concurrent callers for one range trigger a single fetch."""
        ledger = make_ledger()
        cache = make_cache(ledger)
        reasons = []
        lock = threading.Lock()

        def run():
            result = cache.ensure_sync("2025-01-01", "2025-02-28")
            with lock:
                reasons.append(result.reason)

        threads = [threading.Thread(target=run) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(ledger.invoice_calls) == 1
        assert sorted(reasons) == ["range-covered"] * 7 + ["refreshed"]


class TestSyncReads:
    """Test reads and multi-run jobs."""

    def test_read_items_overlapping_range(self):
        """Items whose billing period intersects the range are returned."""
        cache = make_cache(make_ledger())
        cache.ensure_sync("2025-01-01", "2025-02-28")

        january = {item.key for item in cache.read_items_overlapping_range("2025-01-01", "2025-01-31")}
        march = {item.key for item in cache.read_items_overlapping_range("2025-03-02", "2025-03-31")}

        assert january == {"in_1:il_1", "in_2:il_2"}
        assert march == {"in_2:il_2"}

    def test_sync_until_exhausted(self):
        """Runs repeat until no pages remain."""
        ledger = make_ledger()
        cache = make_cache(ledger, max_records_per_run=1)

        summary = cache.sync_until_exhausted("2025-01-01", "2025-02-28", iterations=10)

        assert [run.reason for run in summary.runs] == ["refreshed"] * 3
        assert summary.synced_records_total == 3
        assert summary.stats.exhausted
        assert summary.stats.item_count == 3

    def test_sync_until_exhausted_clamps_iterations(self):
        """Iterations are clamped to 1..20 and dates default to the lookback."""
        clock = FakeClock(datetime(2025, 3, 1, 12, 0))
        cache = make_cache(make_ledger(), clock=clock, max_records_per_run=1)

        summary = cache.sync_until_exhausted(iterations=0, default_lookback_days=90)

        assert summary.iterations_requested == 1
        assert len(summary.runs) == 1
        assert summary.end_date == "2025-03-01"
        assert summary.start_date == "2024-12-01"
        assert cache.sync_until_exhausted("2025-01-01", "2025-02-28", iterations=99).iterations_requested == 20
