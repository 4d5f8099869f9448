"""
Incremental billing-ledger synchronization.

Mirrors ledger line items into a persisted snapshot in bounded, resumable
batches. Every read-modify-persist cycle runs under a single-writer lock, so
at most one refresh is in flight per process; reads of the persisted snapshot
never wait on that lock.

Decision order for a requested range (after clamping to the history horizon):

1. Covered - the confirmed watermark already contains the range.
2. Range changed - a new active range, kept contiguous with the watermark,
   resets the cursor.
3. Fresh - the active range is exhausted and was refreshed recently.
4. Refresh - fetch one batch from the cursor, merge, persist.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from arr_report.clients.http import map_with_concurrency
from arr_report.clients.ledger import LedgerInvoice, LedgerLine, LedgerPage
from arr_report.errors import ConfigurationMissingError
from arr_report.storage.models import BillingLineItem, SyncRange, SyncSnapshot
from arr_report.storage.repository import SnapshotStore
from .dates import day_key, parse_range, start_of_day

logger = logging.getLogger(__name__)

MAX_SYNC_ITERATIONS = 20


class LedgerSource(Protocol):
    """Billing-ledger contract consumed by the sync cache."""

    def list_invoices(
        self,
        created_from: datetime,
        created_to: datetime,
        cursor: Optional[str] = None,
        max_batch: int = 100,
    ) -> LedgerPage:
        ...

    def list_invoice_lines(self, invoice_id: str) -> List[LedgerLine]:
        ...


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one ensure_sync call."""
    synced: bool
    reason: str
    updated_at: Optional[datetime]
    synced_records: int = 0
    has_more: bool = False


@dataclass(frozen=True)
class SyncStats:
    updated_at: Optional[datetime]
    watermark: Optional[SyncRange]
    active_range: Optional[SyncRange]
    cursor: Optional[str]
    exhausted: bool
    item_count: int


@dataclass(frozen=True)
class SyncRunSummary:
    """Result of a multi-iteration sync job."""
    start_date: str
    end_date: str
    iterations_requested: int
    runs: List[SyncResult] = field(default_factory=list)
    stats: Optional[SyncStats] = None

    @property
    def synced_records_total(self) -> int:
        return sum(run.synced_records for run in self.runs)


def normalize_line(invoice: LedgerInvoice, line: LedgerLine) -> Optional[BillingLineItem]:
    """Normalize one ledger line; lines without a period or id are skipped."""
    if line.period_start <= 0 or line.period_end <= 0 or not line.id:
        return None
    return BillingLineItem(
        key=f"{invoice.id}:{line.id}",
        invoice_id=invoice.id,
        line_item_id=line.id,
        customer_id=invoice.customer_id,
        customer_name=invoice.customer_name,
        amount_minor=int(line.amount),
        currency=(invoice.currency or line.currency).lower(),
        quantity=line.quantity or 1,
        period_start=datetime.fromtimestamp(line.period_start),
        period_end=datetime.fromtimestamp(line.period_end) - timedelta(milliseconds=1),
        description=line.description,
        record_created_at=invoice.created,
    )


def merge_items(snapshot: SyncSnapshot, items: List[BillingLineItem]) -> SyncSnapshot:
    """Upsert items by key; merging the same record twice is a no-op."""
    merged = dict(snapshot.items_by_key)
    for item in items:
        merged[item.key] = item
    return snapshot.with_changes(items_by_key=merged)


def _widen(watermark: Optional[SyncRange], covered: SyncRange) -> SyncRange:
    if watermark is None:
        return covered
    return SyncRange(start=min(watermark.start, covered.start), end=max(watermark.end, covered.end))


def _bridged_range(watermark: Optional[SyncRange], start: datetime, end: datetime) -> SyncRange:
    """[start, end] stretched to touch the watermark.

    The watermark is widened to min/max bounds once a range is exhausted, so
    a range disjoint from it must also cover the gap in between.
    """
    if watermark is None:
        return SyncRange(start=start, end=end)
    return SyncRange(start=min(start, watermark.end), end=max(end, watermark.start))


def _uncovered_range(watermark: Optional[SyncRange], start: datetime, end: datetime) -> SyncRange:
    """Part of [start, end] still to fetch, contiguous with the watermark."""
    if watermark is None:
        return SyncRange(start=start, end=end)
    if start >= watermark.start:
        return SyncRange(start=watermark.end, end=end)
    if end <= watermark.end:
        return SyncRange(start=start, end=watermark.start)
    return SyncRange(start=start, end=end)


class SyncCache:
    """Durable, incrementally refreshed mirror of the billing ledger."""

    def __init__(
        self,
        store: SnapshotStore,
        source: Optional[LedgerSource] = None,
        max_history_days: int = 800,
        freshness_seconds: float = 900,
        max_records_per_run: int = 120,
        line_concurrency: int = 4,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.source = source
        self.max_history_days = max_history_days
        self.freshness = timedelta(seconds=freshness_seconds)
        self.max_records_per_run = max_records_per_run
        self.line_concurrency = line_concurrency
        self._clock = clock
        self._write_lock = threading.Lock()

    def history_floor(self) -> datetime:
        return start_of_day(self._clock() - timedelta(days=self.max_history_days))

    def ensure_sync(self, start_date, end_date, force: bool = False) -> SyncResult:
        """Make the snapshot cover [start_date, end_date], one batch at a time.

        Args:
            start_date: Range start (YYYY-MM-DD or any parseable date)
            end_date: Range end, inclusive
            force: Skip the covered/fresh shortcuts

        Returns:
            SyncResult with reason range-covered, fresh-cache, refreshed or
            beyond-history-horizon

        Raises:
            InputValidationError: If the range is invalid
            ConfigurationMissingError: If a fetch is needed and no ledger
                source is configured
            UpstreamUnavailableError: If the ledger fetch fails
        """
        range_start, range_end = parse_range(start_date, end_date)
        clamped_start = max(range_start, self.history_floor())
        if clamped_start > range_end:
            logger.info("Sync range %s..%s lies beyond the history horizon", start_date, end_date)
            return SyncResult(synced=False, reason="beyond-history-horizon", updated_at=None)

        with self._write_lock:
            snapshot = self.store.read()

            if not force and snapshot.watermark and snapshot.watermark.contains(clamped_start, range_end):
                logger.info("Sync range %s..%s already covered", day_key(clamped_start), day_key(range_end))
                return SyncResult(synced=False, reason="range-covered", updated_at=snapshot.updated_at)

            if force:
                target = _bridged_range(snapshot.watermark, clamped_start, range_end)
            else:
                target = _uncovered_range(snapshot.watermark, clamped_start, range_end)

            if snapshot.active_range != target:
                logger.info("Sync active range changed to %s..%s", target.start, target.end)
                snapshot = snapshot.with_changes(active_range=target, cursor=None, exhausted=False)
            elif force and snapshot.exhausted:
                snapshot = snapshot.with_changes(cursor=None, exhausted=False)

            if not force and snapshot.exhausted:
                if snapshot.active_range.contains(clamped_start, range_end):
                    return SyncResult(synced=False, reason="range-covered", updated_at=snapshot.updated_at)
                if snapshot.updated_at and self._clock() - snapshot.updated_at <= self.freshness:
                    logger.info("Sync snapshot is fresh; skipping refresh")
                    return SyncResult(synced=False, reason="fresh-cache", updated_at=snapshot.updated_at)

            return self._refresh(snapshot)

    def _refresh(self, snapshot: SyncSnapshot) -> SyncResult:
        if self.source is None:
            raise ConfigurationMissingError("billing ledger source (STRIPE_SECRET_KEY)")
        active = snapshot.active_range
        source = self.source

        page = source.list_invoices(
            active.start, active.end, cursor=snapshot.cursor, max_batch=self.max_records_per_run
        )
        lines_per_invoice = map_with_concurrency(
            page.records, self.line_concurrency, lambda invoice: source.list_invoice_lines(invoice.id)
        )

        items = []
        for invoice, lines in zip(page.records, lines_per_invoice):
            for line in lines:
                item = normalize_line(invoice, line)
                if item is not None:
                    items.append(item)

        exhausted = not page.has_more
        now = self._clock()
        next_snapshot = merge_items(snapshot, items).with_changes(
            updated_at=now,
            cursor=page.next_cursor,
            exhausted=exhausted,
            watermark=_widen(snapshot.watermark, active) if exhausted else snapshot.watermark,
        )
        self.store.write(next_snapshot)

        logger.info(
            "Synced %d invoices (%d line items) for %s..%s; has_more=%s",
            len(page.records), len(items), active.start, active.end, page.has_more,
        )
        return SyncResult(
            synced=True,
            reason="refreshed",
            updated_at=now,
            synced_records=len(page.records),
            has_more=page.has_more,
        )

    def sync_until_exhausted(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        force: bool = False,
        iterations: int = 1,
        default_lookback_days: int = 730,
    ) -> SyncRunSummary:
        """Run ensure_sync repeatedly until the range is exhausted.

        Only the first run is forced. Iterations are clamped to 1..20. Missing
        dates default to the last ``default_lookback_days`` days.
        """
        today = self._clock()
        end_date = end_date or day_key(today)
        start_date = start_date or day_key(today - timedelta(days=default_lookback_days))
        requested = max(1, min(int(iterations or 1), MAX_SYNC_ITERATIONS))

        runs: List[SyncResult] = []
        for i in range(requested):
            run = self.ensure_sync(start_date, end_date, force=force if i == 0 else False)
            runs.append(run)
            if not run.has_more:
                break

        return SyncRunSummary(
            start_date=start_date,
            end_date=end_date,
            iterations_requested=requested,
            runs=runs,
            stats=self.stats(),
        )

    def read_items_overlapping_range(self, start_date, end_date) -> List[BillingLineItem]:
        """Stored items whose [period_start, period_end] intersects the range.

        Linear scan over the persisted snapshot; does not take the writer lock.
        """
        range_start, range_end = parse_range(start_date, end_date)
        snapshot = self.store.read()
        return [
            item for item in snapshot.items_by_key.values()
            if item.period_start <= range_end and item.period_end >= range_start
        ]

    def stats(self) -> SyncStats:
        snapshot = self.store.read()
        return SyncStats(
            updated_at=snapshot.updated_at,
            watermark=snapshot.watermark,
            active_range=snapshot.active_range,
            cursor=snapshot.cursor,
            exhausted=snapshot.exhausted,
            item_count=len(snapshot.items_by_key),
        )
