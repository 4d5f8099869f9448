"""
Shared HTTP plumbing for the external data sources.

Retries rate-limited and server-error responses with capped exponential
backoff plus jitter, honouring Retry-After. Also provides the bounded worker
pool used to fan bulk calls out.
"""

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence, TypeVar

import httpx

from arr_report.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one logical call."""
    max_retries: int = 4
    base_backoff_seconds: float = 0.3
    max_backoff_seconds: float = 30.0
    jitter_seconds: float = 0.2

    def backoff(self, attempt: int) -> float:
        delay = min(self.base_backoff_seconds * (2 ** attempt), self.max_backoff_seconds)
        return delay + random.uniform(0, self.jitter_seconds)


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def parse_retry_after(raw: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait according to a Retry-After header.

    Accepts delta-seconds or an HTTP date; returns None when absent or
    unparseable.
    """
    if not raw:
        return None
    text = raw.strip()
    try:
        seconds = float(text)
        return seconds if seconds >= 0 else None
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max((when - current).total_seconds(), 0.0)


def request_json(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    service: str,
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> Any:
    """Send a request and decode its JSON body, retrying transient failures.

    Args:
        client: httpx client carrying base URL and auth headers
        method: HTTP method
        url: Path or absolute URL
        service: Name used in log lines and errors
        policy: Retry budget
        sleep: Sleep function, injectable for tests
        **kwargs: Passed through to ``client.request``

    Returns:
        Decoded JSON body ({} for an empty body)

    Raises:
        UpstreamUnavailableError: On a non-retryable status, an undecodable
            body, or once the retry budget is exhausted
    """
    for attempt in range(policy.max_retries + 1):
        try:
            response = client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            if attempt >= policy.max_retries:
                raise UpstreamUnavailableError(service, str(e)) from e
            delay = policy.backoff(attempt)
            logger.warning("%s %s %s failed (%s); retrying in %.2fs", service, method, url, e, delay)
            sleep(delay)
            continue

        if response.status_code < 400:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise UpstreamUnavailableError(service, f"invalid JSON body: {e}") from e

        if not is_retryable_status(response.status_code) or attempt >= policy.max_retries:
            raise UpstreamUnavailableError(service, response.text, response.status_code)

        retry_after = parse_retry_after(response.headers.get("retry-after"))
        delay = max(retry_after or 0.0, policy.backoff(attempt))
        logger.warning(
            "%s %s %s returned %s; retry %d/%d in %.2fs",
            service, method, url, response.status_code, attempt + 1, policy.max_retries, delay,
        )
        sleep(delay)

    raise UpstreamUnavailableError(service, "request failed unexpectedly")


def map_with_concurrency(items: Sequence[T], limit: int, fn: Callable[[T], R]) -> List[R]:
    """Apply ``fn`` to every item on a fixed-size worker pool.

    At most ``limit`` calls run at once; results keep input order. The first
    exception raised by ``fn`` propagates.
    """
    if not items:
        return []
    workers = max(1, min(limit, len(items)))
    if workers == 1:
        return [fn(item) for item in items]
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(fn, items))


def chunked(items: Sequence[T], size: int) -> List[List[T]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]
