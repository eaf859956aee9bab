"""HTTP fetching into the cache. Redirects are recorded, not followed, unless they land on the same key."""

from __future__ import annotations

import logging
import random
import threading
import time
from email.utils import parsedate_to_datetime
from typing import Callable
from urllib.parse import urljoin

import httpx

from sitemirror.cache import Cache, CacheEntry, Metadata
from sitemirror.errors import FetchError

logger = logging.getLogger("sitemirror.fetcher")

# Browser-like UA to reduce 403 from sites that block scrapers
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_TIMEOUT = 30.0
MAX_TIMEOUT = 120.0
RETRY_BACKOFF = 2.0  # multiplicative factor for delay and timeout scaling
BASE_WAIT_5XX = 5.0  # base wait in seconds before retrying on 502/503/504
RETRYABLE_STATUS = (429, 500, 502, 503, 504)
MAX_SAME_KEY_REDIRECTS = 5

DEFAULT_HEADERS = {
    "User-Agent": DEFAULT_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


def _parse_retry_after(value: str | None) -> float | None:
    """Parse Retry-After header; return seconds to wait, or None."""
    if not value or not value.strip():
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    diff = dt.timestamp() - time.time()
    return max(1.0, diff) if diff > 0 else None


def _is_retryable_5xx(code: int | None) -> bool:
    """True if status is a transient server error we should retry."""
    return code in (500, 502, 503, 504)


def _wait_for_retry(code: int | None, attempt: int, retry_after_header: str | None) -> float:
    """Return seconds to wait before retry. Longer for 5xx."""
    from_header = _parse_retry_after(retry_after_header)
    if from_header is not None:
        return from_header
    if _is_retryable_5xx(code):
        return BASE_WAIT_5XX * (RETRY_BACKOFF ** attempt)
    return RETRY_BACKOFF ** attempt


def _polite_sleep(delay: float) -> None:
    """Sleep with ±15% jitter plus small random offset to avoid fixed-interval bot patterns."""
    if delay <= 0:
        return
    jittered = delay * random.uniform(0.85, 1.15)
    extra_cap = 0.02 if delay < 0.5 else 0.05
    time.sleep(jittered + random.uniform(0, extra_cap))


class Fetcher:
    """
    Fills the cache from the network. One instance is shared by all fetch
    workers; httpx.Client is thread-safe.

    retries only covers transient statuses (429/5xx) and transport errors at
    the HTTP level; a fetch that still fails raises FetchError and is not
    retried by the pipeline.
    """

    def __init__(
        self,
        cache: Cache,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        headers: dict[str, str] | None = None,
        delay: float = 0.0,
        retries: int = 0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._cache = cache
        self._timeout = min(timeout, MAX_TIMEOUT)
        self._headers = {**DEFAULT_HEADERS, **(headers or {})}
        self._delay = delay
        self._retries = max(0, retries)
        self._transport = transport
        self._client: httpx.Client | None = None
        self._client_lock = threading.Lock()

    def _get_client(self) -> httpx.Client:
        with self._client_lock:
            if self._client is None or self._client.is_closed:
                self._client = httpx.Client(
                    follow_redirects=False,
                    timeout=self._timeout,
                    headers=self._headers,
                    transport=self._transport,
                )
            return self._client

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None and not self._client.is_closed:
                self._client.close()

    def __enter__(self) -> "Fetcher":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def get(self, url: str) -> httpx.Response:
        """GET url with politeness delay and transient-error retries. No redirects followed."""
        _polite_sleep(self._delay)
        client = self._get_client()
        attempt = 0
        while True:
            try:
                resp = client.get(url)
            except httpx.RequestError as e:
                if attempt < self._retries:
                    wait = RETRY_BACKOFF ** attempt
                    logger.info("Request error for %s (%s); retrying in %.0fs", url, e, wait)
                    _polite_sleep(wait)
                    attempt += 1
                    continue
                raise FetchError(f"Request failed for {url}: {e}", url=url) from e
            if resp.status_code in RETRYABLE_STATUS and attempt < self._retries:
                wait = _wait_for_retry(resp.status_code, attempt, resp.headers.get("retry-after"))
                if resp.status_code == 429:
                    wait = max(wait, 30.0)
                logger.info("HTTP %s for %s; waiting %.0fs then retrying", resp.status_code, url, wait)
                _polite_sleep(wait)
                attempt += 1
                continue
            return resp

    def fetch(
        self,
        uri: str,
        key: str | None = None,
        key_of: Callable[[str], str | None] | None = None,
    ) -> CacheEntry:
        """
        Cached entry for key (default: uri), fetching uri on a miss.

        A 3xx response is stored with metadata.redirected set and an absolute
        metadata.location. When key_of maps the location back onto key (say
        /docs -> /docs/ with trailing slashes normalized away), the redirect is
        followed here and the final response is stored under key instead.
        4xx/5xx and network failures raise FetchError and leave the cache
        untouched.
        """
        key = key or uri
        if key in self._cache:
            return self._cache.entry(key)

        url = uri
        hops = 0
        while True:
            resp = self.get(url)
            status = resp.status_code
            location = None
            if 300 <= status < 400:
                header = resp.headers.get("location")
                if not header:
                    raise FetchError(f"HTTP {status} without Location for {url}", url=url, status=status)
                location = urljoin(url, header.strip())
                if key_of is not None and key_of(location) == key:
                    if location == url or hops >= MAX_SAME_KEY_REDIRECTS:
                        raise FetchError(f"Redirect loop for {uri}", url=uri, status=status)
                    logger.debug("%s redirects to %s (same key); following", url, location)
                    url = location
                    hops += 1
                    continue
            elif status >= 400:
                raise FetchError(f"HTTP {status} for {url}", url=url, status=status)
            break

        metadata = Metadata(status=status, headers=httpx.Headers(resp.headers), url=str(resp.url))
        if location is not None:
            metadata.redirected = True
            metadata.location = location

        if not self._cache.set(key, resp.content, metadata):
            logger.debug("Another worker cached %s first", key)
        return self._cache.entry(key)
