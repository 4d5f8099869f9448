"""
Data models for storage layer.

Defines the normalized billing-ledger line item, the persisted sync snapshot
and the defensively decoded CRM records.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

SNAPSHOT_VERSION = 2


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _number(value: Any) -> float:
    """Coerce a loose value to float; anything unparseable is 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number or number in (float("inf"), float("-inf")):
        return 0.0
    return number


def _timestamp_ms(value: datetime) -> int:
    return int(round(value.timestamp() * 1000))


def _from_timestamp_ms(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000.0)


@dataclass(frozen=True)
class BillingLineItem:
    """Normalized billing-ledger line item.

    Source records are immutable once issued, so a stored item is only ever
    replaced whole by a re-fetch of the same key. ``period_end`` is inclusive:
    the ledger's exclusive end minus one millisecond.
    """
    key: str
    invoice_id: str
    line_item_id: str
    customer_id: str
    customer_name: str
    amount_minor: int
    currency: str
    quantity: float
    period_start: datetime
    period_end: datetime
    description: str = ""
    record_created_at: Optional[datetime] = None

    @property
    def amount_major(self) -> float:
        return self.amount_minor / 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "invoice_id": self.invoice_id,
            "line_item_id": self.line_item_id,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "amount_minor": self.amount_minor,
            "currency": self.currency,
            "quantity": self.quantity,
            "period_start_ms": _timestamp_ms(self.period_start),
            "period_end_ms": _timestamp_ms(self.period_end),
            "description": self.description,
            "record_created_ms": (
                _timestamp_ms(self.record_created_at) if self.record_created_at else 0
            ),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BillingLineItem":
        if not isinstance(data, Mapping):
            raise ValueError("line item must be a mapping")
        created_ms = int(data.get("record_created_ms") or 0)
        return cls(
            key=str(data["key"]),
            invoice_id=_text(data.get("invoice_id")),
            line_item_id=_text(data.get("line_item_id")),
            customer_id=_text(data.get("customer_id")),
            customer_name=_text(data.get("customer_name")),
            amount_minor=int(data.get("amount_minor") or 0),
            currency=_text(data.get("currency")).lower(),
            quantity=_number(data.get("quantity")) or 1,
            period_start=_from_timestamp_ms(data["period_start_ms"]),
            period_end=_from_timestamp_ms(data["period_end_ms"]),
            description=_text(data.get("description")),
            record_created_at=_from_timestamp_ms(created_ms) if created_ms > 0 else None,
        )


@dataclass(frozen=True)
class SyncRange:
    """Inclusive [start, end] range of ledger record creation times."""
    start: datetime
    end: datetime

    def contains(self, start: datetime, end: datetime) -> bool:
        return self.start <= start and self.end >= end


@dataclass(frozen=True)
class SyncSnapshot:
    """Persisted state of the incremental ledger mirror.

    ``watermark`` is the confirmed fully-synchronized history. ``active_range``
    with ``cursor`` and ``exhausted`` tracks the range currently being paged
    through. If ``exhausted`` is true, every record created inside
    ``active_range`` has been merged into ``items_by_key``.
    """
    items_by_key: Dict[str, BillingLineItem] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
    watermark: Optional[SyncRange] = None
    active_range: Optional[SyncRange] = None
    cursor: Optional[str] = None
    exhausted: bool = False

    def with_changes(self, **changes: Any) -> "SyncSnapshot":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        def range_dict(value: Optional[SyncRange]) -> Optional[Dict[str, int]]:
            if value is None:
                return None
            return {"start_ms": _timestamp_ms(value.start), "end_ms": _timestamp_ms(value.end)}

        return {
            "version": SNAPSHOT_VERSION,
            "updated_at_ms": _timestamp_ms(self.updated_at) if self.updated_at else 0,
            "watermark": range_dict(self.watermark),
            "active_range": range_dict(self.active_range),
            "cursor": self.cursor,
            "exhausted": self.exhausted,
            "items_by_key": {key: item.to_dict() for key, item in self.items_by_key.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SyncSnapshot":
        """Rebuild a snapshot from its persisted document.

        Raises:
            ValueError: If the document has another version or a broken shape
        """
        if not isinstance(data, Mapping) or data.get("version") != SNAPSHOT_VERSION:
            raise ValueError("unsupported snapshot document")
        items = data.get("items_by_key")
        if not isinstance(items, Mapping):
            raise ValueError("snapshot document has no items_by_key")

        def parse_range(value: Any) -> Optional[SyncRange]:
            if not value:
                return None
            return SyncRange(
                start=_from_timestamp_ms(value["start_ms"]),
                end=_from_timestamp_ms(value["end_ms"]),
            )

        try:
            updated_ms = int(data.get("updated_at_ms") or 0)
            return cls(
                items_by_key={str(k): BillingLineItem.from_dict(v) for k, v in items.items()},
                updated_at=_from_timestamp_ms(updated_ms) if updated_ms > 0 else None,
                watermark=parse_range(data.get("watermark")),
                active_range=parse_range(data.get("active_range")),
                cursor=data.get("cursor") or None,
                exhausted=bool(data.get("exhausted")),
            )
        except (KeyError, TypeError, AttributeError, OverflowError, OSError) as e:
            raise ValueError(f"malformed snapshot document: {e}") from e


@dataclass(frozen=True)
class CrmLineItem:
    """CRM line item decoded from a loose property bag.

    Every field is optional; decoding never raises. Date fields keep their raw
    values so window derivation can apply its own parsing rules.
    """
    id: str
    recurring_billing_start: Any = None
    recurring_billing_end: Any = None
    billing_period_start: Any = None
    billing_period_end: Any = None
    term_months: float = 0.0
    amount: float = 0.0
    net_price: float = 0.0
    quantity: float = 1.0
    recurring_frequency: str = ""

    @classmethod
    def from_properties(cls, item_id: Any, properties: Optional[Mapping[str, Any]]) -> "CrmLineItem":
        props = properties if isinstance(properties, Mapping) else {}
        quantity = _number(props.get("quantity"))
        return cls(
            id=_text(item_id),
            recurring_billing_start=props.get("hs_recurring_billing_start_date"),
            recurring_billing_end=props.get("hs_recurring_billing_end_date"),
            billing_period_start=props.get("hs_billing_period_start_date"),
            billing_period_end=props.get("hs_billing_period_end_date"),
            term_months=_number(props.get("hs_term_in_months")),
            amount=_number(props.get("amount")),
            net_price=_number(props.get("net_price")),
            quantity=quantity if quantity else 1.0,
            recurring_frequency=_text(props.get("recurringbillingfrequency")),
        )


@dataclass(frozen=True)
class CrmDeal:
    """CRM deal with the descriptive fields carried into report rows."""
    id: str
    name: str = ""
    deal_type: str = ""
    currency: str = ""
    close_date: Any = None
    deployment_type: str = ""
    account_id: str = ""
    territory: str = ""
    country: str = ""
    industry: str = ""

    @property
    def is_existing_business(self) -> bool:
        return self.deal_type.strip().lower() in ("existingbusiness", "upsell")

    @classmethod
    def from_properties(
        cls,
        deal_id: Any,
        properties: Optional[Mapping[str, Any]],
        property_names: Optional[Mapping[str, str]] = None,
        default_currency: str = "",
    ) -> "CrmDeal":
        props = properties if isinstance(properties, Mapping) else {}
        names = dict(DEFAULT_DEAL_PROPERTY_NAMES)
        if property_names:
            names.update(property_names)
        return cls(
            id=_text(deal_id),
            name=_text(props.get("dealname")),
            deal_type=_text(props.get("dealtype")),
            currency=(_text(props.get("deal_currency_code")) or default_currency).upper(),
            close_date=props.get("closedate"),
            deployment_type=_text(props.get(names["deployment_type"])),
            account_id=_text(props.get(names["account_id"])),
            territory=_text(props.get(names["territory"])),
            country=_text(props.get(names["country"])),
            industry=_text(props.get(names["industry"])),
        )


DEFAULT_DEAL_PROPERTY_NAMES: Dict[str, str] = {
    "deployment_type": "deployment_type__c",
    "account_id": "hs_primary_associated_company",
    "territory": "territory",
    "country": "country",
    "industry": "industry",
}

LINE_ITEM_PROPERTIES: Tuple[str, ...] = (
    "hs_recurring_billing_start_date",
    "hs_recurring_billing_end_date",
    "hs_billing_period_start_date",
    "hs_billing_period_end_date",
    "hs_term_in_months",
    "amount",
    "net_price",
    "quantity",
    "recurringbillingfrequency",
)


def deal_properties(property_names: Optional[Mapping[str, str]] = None) -> Tuple[str, ...]:
    """CRM deal property names to request for report generation."""
    names = dict(DEFAULT_DEAL_PROPERTY_NAMES)
    if property_names:
        names.update(property_names)
    return ("dealname", "dealtype", "deal_currency_code", "closedate") + tuple(names.values())
