"""
Billing-ledger client (Stripe REST API).

Lists invoices created within a window in bounded, resumable batches and
lists each invoice's line items.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from arr_report.errors import ConfigurationMissingError
from .http import RetryPolicy, request_json

logger = logging.getLogger(__name__)

STRIPE_BASE_URL = "https://api.stripe.com/v1"
STRIPE_PAGE_SIZE = 100


@dataclass(frozen=True)
class LedgerInvoice:
    """Invoice header with its customer normalized."""
    id: str
    customer_id: str
    customer_name: str
    currency: str
    created: Optional[datetime] = None
    status: str = ""


@dataclass(frozen=True)
class LedgerLine:
    """Invoice line item; period bounds are epoch seconds, 0 when absent."""
    id: str
    amount: int
    currency: str = ""
    quantity: float = 1
    period_start: int = 0
    period_end: int = 0
    description: str = ""


@dataclass(frozen=True)
class LedgerPage:
    """One bounded batch of invoices plus its continuation token."""
    records: List[LedgerInvoice] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


def normalize_customer(customer: Any) -> Tuple[str, str]:
    """Customer id and display name from an id string or expanded object."""
    if not customer:
        return "", "(no customer)"
    if isinstance(customer, str):
        return customer, customer
    if isinstance(customer, Mapping):
        customer_id = str(customer.get("id") or "")
        name = customer.get("name") or customer.get("email") or customer_id or "(unknown customer)"
        return customer_id, str(name)
    return "", "(unknown customer)"


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def parse_invoice(raw: Mapping[str, Any]) -> LedgerInvoice:
    customer_id, customer_name = normalize_customer(raw.get("customer"))
    created = _int(raw.get("created"))
    return LedgerInvoice(
        id=str(raw.get("id") or ""),
        customer_id=customer_id,
        customer_name=customer_name,
        currency=str(raw.get("currency") or "").strip().lower(),
        created=datetime.fromtimestamp(created) if created > 0 else None,
        status=str(raw.get("status") or ""),
    )


def parse_line(raw: Mapping[str, Any]) -> LedgerLine:
    period = raw.get("period") if isinstance(raw.get("period"), Mapping) else {}
    quantity = raw.get("quantity")
    return LedgerLine(
        id=str(raw.get("id") or "").strip(),
        amount=_int(raw.get("amount")),
        currency=str(raw.get("currency") or "").strip().lower(),
        quantity=quantity if isinstance(quantity, (int, float)) and quantity else 1,
        period_start=_int(period.get("start")),
        period_end=_int(period.get("end")),
        description=str(raw.get("description") or ""),
    )


class LedgerClient:
    """Paginated, retrying Stripe invoice reader."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        invoice_status: str = "paid",
        base_url: str = STRIPE_BASE_URL,
        timeout: float = 30.0,
        policy: RetryPolicy = RetryPolicy(max_retries=4, base_backoff_seconds=0.3),
        transport: Optional[httpx.BaseTransport] = None,
        sleep=None,
    ):
        """Initialize the ledger client.

        Args:
            api_key: Secret key; falls back to STRIPE_SECRET_KEY
            invoice_status: Invoice status filter
            base_url: API root
            timeout: Per-request timeout in seconds
            policy: Retry budget per call
            transport: Optional httpx transport (tests use MockTransport)
            sleep: Optional sleep override for retry waits

        Raises:
            ConfigurationMissingError: If no API key is available
        """
        key = api_key or os.environ.get("STRIPE_SECRET_KEY")
        if not key:
            raise ConfigurationMissingError("STRIPE_SECRET_KEY")
        self.invoice_status = invoice_status
        self.policy = policy
        self._sleep_kwargs = {"sleep": sleep} if sleep else {}
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Authorization": f"Bearer {key}"},
            transport=transport,
        )

    def _get(self, path: str, params: List[Tuple[str, Any]]) -> Dict[str, Any]:
        return request_json(
            self._client, "GET", path, service="Stripe", policy=self.policy,
            params=params, **self._sleep_kwargs,
        )

    def list_invoices(
        self,
        created_from: datetime,
        created_to: datetime,
        cursor: Optional[str] = None,
        max_batch: int = STRIPE_PAGE_SIZE,
    ) -> LedgerPage:
        """List at most ``max_batch`` invoices created in [created_from, created_to].

        Args:
            created_from: Inclusive lower bound on invoice creation
            created_to: Inclusive upper bound on invoice creation
            cursor: Continuation token from a previous page
            max_batch: Upper bound on invoices returned

        Returns:
            LedgerPage whose ``next_cursor`` resumes after the last record
        """
        records: List[LedgerInvoice] = []
        starting_after = cursor
        has_more = True

        while has_more and len(records) < max_batch:
            params: List[Tuple[str, Any]] = [
                ("limit", min(STRIPE_PAGE_SIZE, max_batch - len(records))),
                ("status", self.invoice_status),
                ("created[gte]", int(created_from.timestamp())),
                ("created[lte]", int(created_to.timestamp())),
                ("expand[]", "data.customer"),
            ]
            if starting_after:
                params.append(("starting_after", starting_after))

            page = self._get("/invoices", params)
            data = page.get("data") or []
            records.extend(parse_invoice(raw) for raw in data)
            has_more = bool(page.get("has_more")) and bool(data)
            if data:
                starting_after = str(data[-1].get("id") or "")

        logger.debug("Listed %d invoices (has_more=%s)", len(records), has_more)
        return LedgerPage(records=records, next_cursor=starting_after, has_more=has_more)

    def list_invoice_lines(self, invoice_id: str) -> List[LedgerLine]:
        """All line items of one invoice, following pagination."""
        lines: List[LedgerLine] = []
        starting_after: Optional[str] = None

        while True:
            params: List[Tuple[str, Any]] = [
                ("limit", STRIPE_PAGE_SIZE),
                ("expand[]", "data.price"),
            ]
            if starting_after:
                params.append(("starting_after", starting_after))

            page = self._get(f"/invoices/{invoice_id}/lines", params)
            data = page.get("data") or []
            lines.extend(parse_line(raw) for raw in data)
            if not page.get("has_more") or not data:
                return lines
            starting_after = str(data[-1].get("id") or "")

    def close(self) -> None:
        self._client.close()
