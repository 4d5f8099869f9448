"""
CRM client (HubSpot CRM API).

Searches deals by stage, resolves deal-to-line-item associations, batch
reads line items and batch updates deal properties. Reads are memoized in
injected TTL caches.
"""

import logging
import os
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from arr_report.core.cache import TTLCache
from arr_report.errors import ConfigurationMissingError, UpstreamUnavailableError
from .http import RetryPolicy, chunked, map_with_concurrency, request_json

logger = logging.getLogger(__name__)

HUBSPOT_BASE_URL = "https://api.hubapi.com"
BATCH_SIZE = 100
SEARCH_PAGE_SIZE = 100


class CrmClient:
    """Paginated, retrying HubSpot reader/writer.

    Returned records are raw ``{"id": ..., "properties": {...}}`` mappings;
    decoding into typed records happens at the report boundary.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = HUBSPOT_BASE_URL,
        timeout: float = 30.0,
        cache_ttl_seconds: float = 120.0,
        association_concurrency: int = 4,
        batch_concurrency: int = 2,
        policy: RetryPolicy = RetryPolicy(max_retries=6, base_backoff_seconds=0.4, jitter_seconds=0.25),
        transport: Optional[httpx.BaseTransport] = None,
        sleep=None,
    ):
        """Initialize the CRM client.

        Args:
            token: Private app token; falls back to HUBSPOT_PRIVATE_APP_TOKEN
            base_url: API root
            timeout: Per-request timeout in seconds
            cache_ttl_seconds: Lifetime of cached deals/associations/line items
            association_concurrency: Workers for per-deal association reads
            batch_concurrency: Workers for 100-id batch calls
            policy: Retry budget per call
            transport: Optional httpx transport (tests use MockTransport)
            sleep: Optional sleep override for retry waits

        Raises:
            ConfigurationMissingError: If no token is available
        """
        resolved = token or os.environ.get("HUBSPOT_PRIVATE_APP_TOKEN")
        if not resolved:
            raise ConfigurationMissingError("HUBSPOT_PRIVATE_APP_TOKEN")
        self.association_concurrency = association_concurrency
        self.batch_concurrency = batch_concurrency
        self.policy = policy
        self._sleep_kwargs = {"sleep": sleep} if sleep else {}
        self.deals_cache: TTLCache = TTLCache(ttl_seconds=cache_ttl_seconds)
        self.association_cache: TTLCache = TTLCache(ttl_seconds=cache_ttl_seconds)
        self.line_item_cache: TTLCache = TTLCache(ttl_seconds=cache_ttl_seconds)
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Authorization": f"Bearer {resolved}", "Content-Type": "application/json"},
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        return request_json(
            self._client, method, path, service="HubSpot", policy=self.policy,
            **kwargs, **self._sleep_kwargs,
        )

    def search_deals(self, stage: str, properties: Sequence[str]) -> List[Dict[str, Any]]:
        """All deals in ``stage`` with the requested properties."""
        cache_key = (stage, tuple(sorted(properties)))
        cached = self.deals_cache.get(cache_key)
        if cached is not None:
            return cached

        results: List[Dict[str, Any]] = []
        after: Optional[str] = None
        while True:
            payload: Dict[str, Any] = {
                "filterGroups": [
                    {"filters": [{"propertyName": "dealstage", "operator": "EQ", "value": stage}]}
                ],
                "properties": list(properties),
                "limit": SEARCH_PAGE_SIZE,
            }
            if after:
                payload["after"] = after
            page = self._request("POST", "/crm/v3/objects/deals/search", json=payload)
            results.extend(page.get("results") or [])
            after = ((page.get("paging") or {}).get("next") or {}).get("after")
            if not after:
                break

        logger.debug("Found %d deals in stage %s", len(results), stage)
        self.deals_cache.set(cache_key, results)
        return results

    def line_item_ids_for_deal(self, deal_id: str) -> List[str]:
        cached = self.association_cache.get(deal_id)
        if cached is not None:
            return cached
        page = self._request("GET", f"/crm/v3/objects/deals/{deal_id}/associations/line_items")
        ids = [str(r.get("id")) for r in page.get("results") or [] if r.get("id")]
        self.association_cache.set(deal_id, ids)
        return ids

    def resolve_line_item_ids(self, deal_ids: Sequence[str]) -> Dict[str, List[str]]:
        """Line-item ids per deal, in the CRM's association order.

        Uses the batch association endpoint and falls back to one call per
        deal if the batch endpoint fails.
        """
        unique_ids = list(dict.fromkeys(d for d in deal_ids if d))
        resolved: Dict[str, List[str]] = {}
        pending: List[str] = []
        for deal_id in unique_ids:
            cached = self.association_cache.get(deal_id)
            if cached is not None:
                resolved[deal_id] = cached
            else:
                pending.append(deal_id)

        if pending:
            try:
                resolved.update(self._batch_associations(pending))
            except UpstreamUnavailableError as e:
                logger.warning("Batch association read failed, falling back per deal: %s", e)
                ids_per_deal = map_with_concurrency(
                    pending, self.association_concurrency, self.line_item_ids_for_deal
                )
                resolved.update(zip(pending, ids_per_deal))

        return {deal_id: resolved.get(deal_id, []) for deal_id in deal_ids if deal_id}

    def _batch_associations(self, deal_ids: List[str]) -> Dict[str, List[str]]:
        def read_chunk(chunk: List[str]) -> Dict[str, Any]:
            return self._request(
                "POST",
                "/crm/v4/associations/deals/line_items/batch/read",
                json={"inputs": [{"id": deal_id} for deal_id in chunk]},
            )

        out: Dict[str, List[str]] = {}
        for response in map_with_concurrency(chunked(deal_ids, BATCH_SIZE), self.batch_concurrency, read_chunk):
            for assoc in response.get("results") or []:
                deal_id = str((assoc.get("from") or {}).get("id") or "")
                if not deal_id:
                    continue
                out[deal_id] = [
                    str(t.get("toObjectId") or t.get("id"))
                    for t in assoc.get("to") or []
                    if t.get("toObjectId") or t.get("id")
                ]
        for deal_id in deal_ids:
            out.setdefault(deal_id, [])
            self.association_cache.set(deal_id, out[deal_id])
        return out

    def batch_read_line_items(
        self, ids: Sequence[str], properties: Sequence[str]
    ) -> Dict[str, Dict[str, Any]]:
        """Line items by id; ids the CRM does not return are absent."""
        items: Dict[str, Dict[str, Any]] = {}
        missing: List[str] = []
        for item_id in dict.fromkeys(i for i in ids if i):
            cached = self.line_item_cache.get(item_id)
            if cached is not None:
                items[item_id] = cached
            else:
                missing.append(item_id)

        def read_chunk(chunk: List[str]) -> List[Dict[str, Any]]:
            page = self._request(
                "POST",
                "/crm/v3/objects/line_items/batch/read",
                json={"properties": list(properties), "inputs": [{"id": i} for i in chunk]},
            )
            return page.get("results") or []

        for results in map_with_concurrency(chunked(missing, BATCH_SIZE), self.batch_concurrency, read_chunk):
            for record in results:
                item_id = str(record.get("id"))
                items[item_id] = record
                self.line_item_cache.set(item_id, record)
        return items

    def batch_update_deals(self, updates: Mapping[str, Mapping[str, Any]]) -> int:
        """Write deal properties in 100-deal chunks.

        Args:
            updates: Properties to set, keyed by deal id

        Returns:
            Number of deals submitted
        """
        inputs = [
            {"id": deal_id, "properties": dict(props)}
            for deal_id, props in updates.items()
            if deal_id and props
        ]
        for chunk in chunked(inputs, BATCH_SIZE):
            self._request("POST", "/crm/v3/objects/deals/batch/update", json={"inputs": chunk})
        return len(inputs)

    def close(self) -> None:
        self._client.close()
