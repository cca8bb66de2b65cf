#!/usr/bin/env python3
"""
Category Page Image Scraper (Async)

Walks the paginated category listing of an online shop, collects the image
URLs found on every page (lazy-loaded, responsive and plain variants),
de-duplicates them across the whole crawl and writes the unique URL list to
a text file. Network failures are retried with exponential backoff and the
number of simultaneous page fetches is bounded.
"""

import argparse
import asyncio
import contextlib
import csv
import dataclasses
import hashlib
import json
import logging
import os
import random
import re
import signal
import stat
import sys
import tempfile
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import (
    Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union
)
from urllib.parse import (
    parse_qsl, urldefrag, urlencode, urljoin, urlparse, urlsplit, urlunsplit
)

import aiohttp
from bs4 import BeautifulSoup

from playwright_renderer import PlaywrightRenderer, RenderError


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


# ============================================================================
# Error Handling and Logging Framework
# ============================================================================

class ErrorKind(Enum):
    """Classification of everything that can go wrong while crawling."""

    NETWORK_TIMEOUT = "NetworkTimeout"
    CONNECTION_ERROR = "ConnectionError"
    HTTP_CLIENT_ERROR = "HttpClientError"
    HTTP_SERVER_ERROR = "HttpServerError"
    PARSE_ERROR = "ParseError"
    FILE_SYSTEM_ERROR = "FileSystemError"


class ScraperError(Exception):
    """Base class for scraper failures."""

    kind: Optional[ErrorKind] = None


class FetchError(ScraperError):
    """A single HTTP attempt failed."""

    def __init__(self, kind: ErrorKind, message: str, status: Optional[int] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.retry_after = retry_after
        self.attempts = 0

    @property
    def retryable(self) -> bool:
        """Timeouts, connection failures, 5xx and 429 are worth another try."""
        if self.status == 429:
            return True
        return self.kind in (
            ErrorKind.NETWORK_TIMEOUT,
            ErrorKind.CONNECTION_ERROR,
            ErrorKind.HTTP_SERVER_ERROR,
        )


class ParseError(ScraperError):
    """The HTML parser rejected a page."""

    kind = ErrorKind.PARSE_ERROR


class FileSystemError(ScraperError):
    """Results could not be written to disk."""

    kind = ErrorKind.FILE_SYSTEM_ERROR


class ScraperLogger:
    """Centralized logging system for the scraper."""

    ERROR_COLUMNS = [
        'timestamp', 'page_url', 'page_kind', 'error_kind',
        'error_message', 'attempts'
    ]

    def __init__(self, log_dir: str = "logs", verbose: bool = False,
                 name: str = "CategoryScraper"):
        """Initialize logger with separate error and activity logs.

        Args:
            log_dir: Directory to store log files
            verbose: Show debug messages on the console
            name: Name of the underlying ``logging`` logger
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)
        # A fresh ScraperLogger owns the named logger's handlers
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        # Console handler for user-facing messages
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        console_handler.setFormatter(logging.Formatter('%(message)s'))

        # File handler for detailed logs
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_path = self.log_dir / f"scraper_{timestamp}.log"
        file_handler = logging.FileHandler(self.log_path, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

        self.logger.addHandler(console_handler)
        self.logger.addHandler(file_handler)

        # Error log CSV
        self.error_log_path = self.log_dir / f"errors_{timestamp}.csv"
        self.error_count = 0
        self._init_error_log()

    def _init_error_log(self):
        """Initialize the error log CSV file."""
        with open(self.error_log_path, 'w', newline='', encoding='utf-8') as f:
            csv.writer(f).writerow(self.ERROR_COLUMNS)

    def log_error(self, page_url: str, page_kind: str, error_kind: str,
                  error_message: str, attempts: int = 0):
        """Log an error to both console and CSV file.

        Args:
            page_url: URL that caused the error
            page_kind: What was being fetched ('category', 'product', 'image')
            error_kind: Error classification (see ErrorKind)
            error_message: Detailed error message
            attempts: Number of attempts made before giving up
        """
        self.error_count += 1
        self.logger.error(
            f"Failed {page_kind} {page_url}: {error_kind} - {error_message}"
            + (f" (after {attempts} attempt(s))" if attempts else "")
        )

        with open(self.error_log_path, 'a', newline='', encoding='utf-8') as f:
            csv.writer(f).writerow([
                datetime.now().isoformat(), page_url, page_kind,
                error_kind, error_message, attempts
            ])

    def info(self, message: str):
        """Log an info message."""
        self.logger.info(message)

    def debug(self, message: str):
        """Log a debug message."""
        self.logger.debug(message)

    def warning(self, message: str):
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str):
        """Log an error message without recording it in the CSV."""
        self.logger.error(message)

    def close(self):
        """Flush and detach all handlers."""
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()


# ============================================================================
# Configuration
# ============================================================================

@dataclass(frozen=True)
class RetryPolicy:
    """Retry/backoff settings, immutable for the duration of a crawl."""

    max_attempts: int = 3
    base_delay_ms: int = 800
    max_delay_ms: int = 10_000
    backoff_factor: float = 2.0
    jitter: float = 0.2

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms <= 0:
            raise ValueError("base_delay_ms must be positive")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must not be smaller than base_delay_ms")
        if self.backoff_factor <= 1:
            raise ValueError("backoff_factor must be greater than 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    def delay_for(self, retry_number: int) -> float:
        """Seconds to sleep before retry ``retry_number`` (0-based).

        The exponential delay is capped at ``max_delay_ms`` and then spread by
        ``±jitter`` so that parallel workers do not retry in lockstep.
        """
        delay_ms = min(
            self.base_delay_ms * (self.backoff_factor ** retry_number),
            self.max_delay_ms
        )
        if self.jitter:
            delay_ms *= random.uniform(1 - self.jitter, 1 + self.jitter)
        return delay_ms / 1000.0


@dataclass
class ScraperConfig:
    """Top-level settings that control a single category crawl."""

    start_url: str
    output_path: Path = Path("output") / "image_urls.txt"
    max_pages: Optional[int] = 50
    max_concurrency: int = 5
    timeout_ms: int = 15_000
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    requests_per_second: float = 4.0
    deadline_seconds: Optional[float] = None
    include_extensions: Optional[List[str]] = None
    allow_external_hosts: bool = True
    numeric_pagination: bool = True
    page_param: str = "page"
    follow_product_links: bool = False
    max_product_pages: int = 200
    download_dir: Optional[Path] = None
    render_js: bool = False
    scroll_steps: int = 8
    scroll_delay_ms: int = 350
    user_agent: str = DEFAULT_USER_AGENT

    def request_headers(self) -> Dict[str, str]:
        """Browser-like headers sent with every request."""
        parsed = urlparse(self.start_url)
        return {
            'User-Agent': self.user_agent,
            'Accept': ('text/html,application/xhtml+xml,application/xml;q=0.9,'
                       'image/avif,image/webp,*/*;q=0.8'),
            'Accept-Language': 'en-US,en;q=0.9',
            'Accept-Encoding': 'gzip, deflate',
            'Referer': f"{parsed.scheme}://{parsed.netloc}",
        }


class SiteConfig:
    """Per-domain overrides loaded from a JSON file.

    Example file::

        {
          "_comment": "keys starting with _ are ignored",
          "shop.example.com": {"render_js": true, "max_pages": 10,
                               "page_param": "p", "rate_limit": 1.0}
        }
    """

    OVERRIDES = {
        'render_js': 'render_js',
        'max_pages': 'max_pages',
        'rate_limit': 'requests_per_second',
        'page_param': 'page_param',
        'numeric_pagination': 'numeric_pagination',
        'scroll_steps': 'scroll_steps',
        'follow_product_links': 'follow_product_links',
        'max_product_pages': 'max_product_pages',
    }

    def __init__(self, config_file: Optional[str] = None, logger=None):
        """Initialize site configuration.

        Args:
            config_file: Path to JSON configuration file (optional)
            logger: Logger instance for debug output
        """
        self.logger = logger
        self.config: Dict[str, Dict[str, Any]] = {}

        if config_file:
            self.load_config(config_file)

    def load_config(self, config_file: str) -> bool:
        """Load configuration from JSON file.

        Returns:
            True if config loaded successfully, False otherwise
        """
        config_path = Path(config_file)
        if not config_path.exists():
            if self.logger:
                self.logger.info(f"Config file not found: {config_file}, using defaults")
            return False

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            if self.logger:
                self.logger.warning(f"Could not read config file {config_file}: {e}")
            return False

        if not isinstance(data, dict):
            if self.logger:
                self.logger.warning(f"Config file {config_file} must contain a JSON object")
            return False

        # Remove schema/comment keys
        self.config = {k.lower(): v for k, v in data.items()
                       if not k.startswith('_') and isinstance(v, dict)}

        if self.logger:
            self.logger.info(f"Loaded site configuration for {len(self.config)} domains")
        return True

    def get_site_config(self, url: str) -> Dict[str, Any]:
        """Get configuration for a specific site, tolerating a ``www.`` prefix."""
        domain = (urlparse(url).hostname or '').lower()

        if domain in self.config:
            return self.config[domain]
        if domain.startswith('www.') and domain[4:] in self.config:
            return self.config[domain[4:]]
        if f"www.{domain}" in self.config:
            return self.config[f"www.{domain}"]
        return {}

    def apply(self, config: ScraperConfig) -> ScraperConfig:
        """Return a copy of ``config`` with the start URL's overrides applied."""
        site_config = self.get_site_config(config.start_url)
        changes = {self.OVERRIDES[key]: value
                   for key, value in site_config.items() if key in self.OVERRIDES}
        if not changes:
            return config
        if self.logger:
            self.logger.info(
                f"Site config overrides for {urlparse(config.start_url).netloc}: "
                + ", ".join(f"{k}={v}" for k, v in sorted(changes.items()))
            )
        return dataclasses.replace(config, **changes)


# ============================================================================
# Data Model
# ============================================================================

class PageKind(Enum):
    CATEGORY = "category"
    PRODUCT = "product"


class FetchStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class CandidateKind(Enum):
    PLAIN = "plain"
    LAZY = "lazy"
    SRCSET_VARIANT = "srcset"


@dataclass
class PageRequest:
    """A page waiting to be fetched."""

    url: str
    page_index: int = 0
    attempt: int = 0
    kind: PageKind = PageKind.CATEGORY


@dataclass
class PageResult:
    """Outcome of fetching one page, including every retry."""

    request: PageRequest
    status: FetchStatus
    html: Optional[str] = None
    final_url: Optional[str] = None
    error: Optional[ErrorKind] = None
    error_message: str = ""
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status is FetchStatus.SUCCESS


@dataclass
class ImageCandidate:
    """An image URL found on a page."""

    raw_value: str
    resolved_url: str
    source_page_url: str
    kind: CandidateKind


class CanonicalURLSet:
    """Unique image URLs keyed by their canonical form, in discovery order."""

    def __init__(self):
        self._urls: Dict[str, str] = {}

    def add(self, key: str, url: str) -> bool:
        """Insert ``url`` under ``key`` unless the key is already present."""
        if key in self._urls:
            return False
        self._urls[key] = url
        return True

    def keys(self) -> List[str]:
        return list(self._urls)

    def __contains__(self, key: str) -> bool:
        return key in self._urls

    def __len__(self) -> int:
        return len(self._urls)

    def __iter__(self):
        return iter(list(self._urls.values()))


@dataclass
class CrawlState:
    """All mutable state of one crawl; guarded by ``lock``."""

    next_page_url: Optional[str] = None
    pages_visited: Set[str] = field(default_factory=set)
    in_flight: int = 0
    results: CanonicalURLSet = field(default_factory=CanonicalURLSet)
    images_seen: Set[str] = field(default_factory=set)
    category_pages: int = 0
    product_pages: int = 0
    pages_fetched: int = 0
    pages_failed: int = 0
    failures: List[PageResult] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


# ============================================================================
# Per-Domain Rate Limiting
# ============================================================================

class RateLimiter:
    """Per-domain rate limiter for respectful scraping."""

    def __init__(self, requests_per_second: float = 4.0):
        """Initialize rate limiter.

        Args:
            requests_per_second: Maximum requests per second per domain,
                0 disables limiting
        """
        self.requests_per_second = requests_per_second
        self.min_interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self.domain_last_request: Dict[str, float] = {}
        self.locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def wait_if_needed(self, url: str):
        """Wait if necessary to respect rate limit for this domain."""
        if not self.min_interval:
            return

        domain = urlparse(url).netloc

        async with self.locks[domain]:
            now = time.monotonic()
            last_request = self.domain_last_request.get(domain)

            if last_request is not None:
                time_since_last = now - last_request
                if time_since_last < self.min_interval:
                    await asyncio.sleep(self.min_interval - time_since_last)

            self.domain_last_request[domain] = time.monotonic()


# ============================================================================
# Async HTTP Fetcher with Retry and Backoff
# ============================================================================

def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class HttpFetcher:
    """Async HTTP client with connection pooling, retries and backoff.

    This is the only component that touches the network. Use it as an async
    context manager so the underlying ``aiohttp`` session (and the optional
    headless browser) are opened and closed with the crawl.
    """

    def __init__(self, logger: ScraperLogger, rate_limiter: Optional[RateLimiter] = None,
                 timeout_ms: int = 15_000, headers: Optional[Dict[str, str]] = None,
                 renderer: Optional[PlaywrightRenderer] = None):
        """Initialize the fetcher.

        Args:
            logger: Logger instance
            rate_limiter: Optional per-domain rate limiter
            timeout_ms: Hard timeout for a single attempt
            headers: Default request headers
            renderer: Headless browser used for page HTML instead of plain GETs
        """
        self.logger = logger
        self.rate_limiter = rate_limiter
        self.timeout_ms = timeout_ms
        self.headers = headers or {'User-Agent': DEFAULT_USER_AGENT}
        self.renderer = renderer
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Open the aiohttp session (and browser, when rendering)."""
        connector = aiohttp.TCPConnector(
            limit=100,  # Total connection pool size
            limit_per_host=10,  # Connections per host
            ttl_dns_cache=300,  # DNS cache TTL
        )
        self.session = aiohttp.ClientSession(connector=connector, headers=self.headers)
        if self.renderer:
            await self.renderer.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Close the session and browser."""
        if self.renderer:
            await self.renderer.__aexit__(exc_type, exc_val, exc_tb)
        if self.session:
            await self.session.close()

    @property
    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout_ms / 1000.0)

    async def fetch(self, request: PageRequest, policy: RetryPolicy) -> PageResult:
        """Fetch a page's HTML, retrying transient failures.

        Args:
            request: Page to fetch; ``request.attempt`` is updated per attempt
            policy: Retry/backoff policy

        Returns:
            PageResult with the HTML on success or the last error on failure
        """
        def mark_attempt(attempt: int):
            request.attempt = attempt

        try:
            (html, final_url), attempts = await self._with_retries(
                request.url, policy, self._get_html, mark_attempt
            )
        except FetchError as e:
            return PageResult(
                request=request,
                status=FetchStatus.FAILURE,
                error=e.kind,
                error_message=str(e),
                attempts=e.attempts,
            )

        return PageResult(
            request=request,
            status=FetchStatus.SUCCESS,
            html=html,
            final_url=final_url,
            attempts=attempts,
        )

    async def fetch_bytes(self, url: str, policy: RetryPolicy) -> tuple[bytes, str]:
        """Download binary content (images) with the same retry policy.

        Returns:
            Tuple of (content, content_type)

        Raises:
            FetchError: after the last failed attempt
        """
        result, _ = await self._with_retries(url, policy, self._get_bytes)
        return result

    async def _with_retries(self, url: str, policy: RetryPolicy,
                            operation: Callable[[str], Awaitable[Any]],
                            on_attempt: Optional[Callable[[int], None]] = None):
        attempt = 0
        while True:
            if on_attempt:
                on_attempt(attempt)
            try:
                return await operation(url), attempt + 1
            except FetchError as e:
                e.attempts = attempt + 1
                if not e.retryable or e.attempts >= policy.max_attempts:
                    raise

                delay = policy.delay_for(attempt)
                if e.retry_after is not None:
                    delay = max(delay, min(e.retry_after, policy.max_delay_ms / 1000.0))
                self.logger.debug(
                    f"Retrying {url} in {delay:.2f}s after {e.kind.value}: {e} "
                    f"(attempt {e.attempts}/{policy.max_attempts})"
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def _get_html(self, url: str) -> tuple[str, str]:
        if self.rate_limiter:
            await self.rate_limiter.wait_if_needed(url)

        if self.renderer:
            return await self._render(url)

        try:
            async with self.session.get(url, timeout=self._timeout) as response:
                self._raise_for_status(response)
                html = await response.text(errors='replace')
                return html, str(response.url)
        except asyncio.TimeoutError as e:
            raise FetchError(ErrorKind.NETWORK_TIMEOUT,
                             f"Timed out after {self.timeout_ms} ms") from e
        except aiohttp.ClientError as e:
            raise FetchError(ErrorKind.CONNECTION_ERROR,
                             str(e) or e.__class__.__name__) from e

    async def _get_bytes(self, url: str) -> tuple[bytes, str]:
        if self.rate_limiter:
            await self.rate_limiter.wait_if_needed(url)

        try:
            async with self.session.get(url, timeout=self._timeout) as response:
                self._raise_for_status(response)
                content = await response.read()
                return content, response.headers.get('Content-Type', '')
        except asyncio.TimeoutError as e:
            raise FetchError(ErrorKind.NETWORK_TIMEOUT,
                             f"Timed out after {self.timeout_ms} ms") from e
        except aiohttp.ClientError as e:
            raise FetchError(ErrorKind.CONNECTION_ERROR,
                             str(e) or e.__class__.__name__) from e

    async def _render(self, url: str) -> tuple[str, str]:
        try:
            return await self.renderer.render(url)
        except RenderError as e:
            if e.status is not None:
                kind = (ErrorKind.HTTP_SERVER_ERROR if e.status >= 500
                        else ErrorKind.HTTP_CLIENT_ERROR)
                raise FetchError(kind, str(e), status=e.status) from e
            kind = ErrorKind.NETWORK_TIMEOUT if e.timed_out else ErrorKind.CONNECTION_ERROR
            raise FetchError(kind, str(e)) from e

    @staticmethod
    def _raise_for_status(response: aiohttp.ClientResponse):
        status = response.status
        if status < 400:
            return
        retry_after = _parse_retry_after(response.headers.get('Retry-After'))
        message = f"HTTP {status} {response.reason or ''}".strip()
        if status >= 500:
            raise FetchError(ErrorKind.HTTP_SERVER_ERROR, message,
                             status=status, retry_after=retry_after)
        raise FetchError(ErrorKind.HTTP_CLIENT_ERROR, message,
                         status=status, retry_after=retry_after)


# ============================================================================
# HTML Document Access
# ============================================================================

SKIPPED_SCHEMES = ('data:', 'javascript:', 'about:', 'blob:', 'mailto:', 'tel:')


def resolve_url(raw: Optional[str], base_url: str) -> Optional[str]:
    """Resolve an attribute value against the page URL.

    Handles absolute, protocol-relative (``//host/path``) and relative
    references. Returns None for anything that is not an http(s) URL.
    """
    if not raw:
        return None
    value = raw.strip()
    if not value or value.lower().startswith(SKIPPED_SCHEMES):
        return None

    try:
        resolved, _ = urldefrag(urljoin(base_url, value))
        parsed = urlparse(resolved)
    except ValueError:
        return None

    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        return None
    return resolved


class HtmlDocument:
    """Narrow query interface over a parsed page."""

    def __init__(self, soup: BeautifulSoup):
        self.soup = soup

    @classmethod
    def parse(cls, html: Union[str, bytes]) -> 'HtmlDocument':
        """Parse markup with lxml.

        Raises:
            ParseError: if the parser rejects the markup
        """
        try:
            return cls(BeautifulSoup(html, 'lxml'))
        except Exception as e:  # bs4 raises ParserRejectedMarkup and friends
            raise ParseError(f"Could not parse HTML: {e}") from e

    def query(self, selector: str) -> list:
        """Elements matching a CSS selector, in document order."""
        return self.soup.select(selector)

    @staticmethod
    def attribute(element, name: str) -> Optional[str]:
        """Stripped attribute value, or None when missing or blank."""
        value = element.get(name)
        if value is None:
            return None
        if isinstance(value, list):  # multi-valued attributes like class/rel
            value = ' '.join(value)
        value = value.strip()
        return value or None

    @staticmethod
    def text(element) -> str:
        return element.get_text(' ', strip=True)


# ============================================================================
# Image Discovery and Extraction
# ============================================================================

SRCSET_WIDTH_PATTERN = re.compile(r'^(\d+)w$', re.IGNORECASE)


def iter_srcset(srcset: str) -> Iterator[Tuple[str, str]]:
    """Yield ``(url, descriptor)`` pairs of a srcset attribute.

    A URL runs up to the next whitespace, so commas inside ``data:`` URIs do
    not split an entry.
    """
    pos, length = 0, len(srcset)
    while pos < length:
        while pos < length and (srcset[pos].isspace() or srcset[pos] == ','):
            pos += 1
        if pos >= length:
            break

        end = pos
        while end < length and not srcset[end].isspace():
            end += 1
        url, pos = srcset[pos:end], end

        descriptor = ''
        if url.endswith(','):
            url = url.rstrip(',')
        else:
            comma = srcset.find(',', pos)
            if comma == -1:
                comma = length
            descriptor = srcset[pos:comma].strip()
            pos = comma + 1
        if url:
            yield url, descriptor


def select_from_srcset(srcset: str) -> Optional[str]:
    """Pick the widest entry of a responsive-source descriptor.

    Example: ``"a.jpg 480w, b.jpg 1200w"`` gives ``"b.jpg"``. Without any
    width descriptors (e.g. only ``1x``/``2x``) the first entry is used.
    Inline placeholders (``data:`` and similar) are never chosen.
    """
    first_url = None
    best_url = None
    best_width = -1

    for url, descriptor in iter_srcset(srcset):
        if url.lower().startswith(SKIPPED_SCHEMES):
            continue
        if first_url is None:
            first_url = url
        match = SRCSET_WIDTH_PATTERN.match(descriptor)
        if match and int(match.group(1)) > best_width:
            best_width = int(match.group(1))
            best_url = url

    return best_url or first_url


class HtmlImageExtractor:
    """Extracts image candidates from category and product pages."""

    LAZY_ATTRIBUTES = (
        'data-src', 'data-lazy-src', 'data-original', 'data-lazy',
        'data-original-src', 'data-url', 'data-echo', 'data-hi-res-src',
        'data-zoom-image', 'lazy-src',
    )
    SRCSET_ATTRIBUTES = ('data-srcset', 'srcset')
    STYLE_URL_PATTERN = re.compile(r"""url\(\s*(['"]?)(.*?)\1\s*\)""", re.IGNORECASE)

    def __init__(self, lazy_attributes: Optional[Iterable[str]] = None):
        """Initialize the extractor.

        Args:
            lazy_attributes: Lazy-load attribute names in priority order,
                defaults to LAZY_ATTRIBUTES
        """
        self.lazy_attributes = tuple(lazy_attributes or self.LAZY_ATTRIBUTES)

    def extract(self, html: Union[str, bytes], base_url: str) -> List[ImageCandidate]:
        """Parse ``html`` and return its image candidates in document order."""
        return self.extract_document(HtmlDocument.parse(html), base_url)

    def extract_document(self, document: HtmlDocument, base_url: str) -> List[ImageCandidate]:
        """Extract candidates from an already parsed page.

        Every ``<img>`` yields at most one candidate: the first usable lazy
        attribute, else the widest srcset entry, else ``src``. ``<source>``
        elements contribute their srcset and other elements their inline
        ``background-image`` URLs. Malformed values are skipped silently.
        """
        candidates: List[ImageCandidate] = []

        for element in document.query('img, source, [style]'):
            if element.name == 'img':
                candidate = self._from_img(document, element, base_url)
                if candidate:
                    candidates.append(candidate)
            elif element.name == 'source':
                candidate = self._from_srcset(document, element, base_url)
                if candidate:
                    candidates.append(candidate)
            else:
                candidates.extend(self._from_style(document, element, base_url))

        return candidates

    def _from_img(self, document: HtmlDocument, element, base_url: str) -> Optional[ImageCandidate]:
        for name in self.lazy_attributes:
            raw = document.attribute(element, name)
            resolved = resolve_url(raw, base_url)
            if resolved:
                return ImageCandidate(raw, resolved, base_url, CandidateKind.LAZY)

        candidate = self._from_srcset(document, element, base_url)
        if candidate:
            return candidate

        raw = document.attribute(element, 'src')
        resolved = resolve_url(raw, base_url)
        if resolved:
            return ImageCandidate(raw, resolved, base_url, CandidateKind.PLAIN)
        return None

    def _from_srcset(self, document: HtmlDocument, element, base_url: str) -> Optional[ImageCandidate]:
        for name in self.SRCSET_ATTRIBUTES:
            raw = document.attribute(element, name)
            if not raw:
                continue
            resolved = resolve_url(select_from_srcset(raw), base_url)
            if resolved:
                return ImageCandidate(raw, resolved, base_url, CandidateKind.SRCSET_VARIANT)
        return None

    def _from_style(self, document: HtmlDocument, element, base_url: str) -> List[ImageCandidate]:
        style = document.attribute(element, 'style')
        if not style or 'url(' not in style.lower():
            return []

        candidates = []
        for match in self.STYLE_URL_PATTERN.finditer(style):
            raw = match.group(2)
            resolved = resolve_url(raw, base_url)
            if resolved:
                candidates.append(ImageCandidate(raw, resolved, base_url, CandidateKind.PLAIN))
        return candidates


# ============================================================================
# URL Canonicalization and De-duplication
# ============================================================================

class Deduplicator:
    """Canonicalizes URLs and folds candidates into the crawl's result set."""

    DEFAULT_PORTS = {'http': 80, 'https': 443}
    TRACKING_PARAMS = {
        'fbclid', 'gclid', 'msclkid', 'mc_cid', 'mc_eid', '_ga', '_gl',
        'yclid', 'igshid',
    }

    def canonicalize(self, url: str) -> str:
        """Canonical key of ``url``.

        Lowercases scheme and host, drops user-info, default ports and the
        fragment, strips trailing slashes from the path, removes tracking
        parameters and sorts the remaining query parameters. Applying it to
        its own output returns the same key.
        """
        parts = urlsplit(url.strip())
        scheme = parts.scheme.lower()

        host = (parts.hostname or '').lower()
        if ':' in host:
            host = f"[{host}]"
        try:
            port = parts.port
        except ValueError:
            port = None
        if port is not None and self.DEFAULT_PORTS.get(scheme) != port:
            host = f"{host}:{port}"

        path = parts.path.rstrip('/')

        query_pairs = sorted(
            (key, value)
            for key, value in parse_qsl(parts.query, keep_blank_values=True)
            if not self._is_tracking_param(key)
        )
        query = urlencode(query_pairs)

        key = f"{scheme}://{host}{path}"
        return f"{key}?{query}" if query else key

    def fold(self, results: CanonicalURLSet, candidate: ImageCandidate) -> bool:
        """Add ``candidate`` to ``results`` unless its canonical key is present.

        Returns:
            True if the set grew
        """
        return results.add(self.canonicalize(candidate.resolved_url), candidate.resolved_url)

    def _is_tracking_param(self, name: str) -> bool:
        name = name.lower()
        return name.startswith('utm_') or name in self.TRACKING_PARAMS


# ============================================================================
# Pagination
# ============================================================================

class PaginationWalker:
    """Finds the next category page and product detail links."""

    NEXT_LINK_SELECTORS = (
        'a[rel~=next]',
        'link[rel~=next]',
        '.pagination .next a',
        'li.next a',
        'a.next',
        'a.pagination-next',
        'a[aria-label*="next" i]',
    )
    # Whole words only, so product names like "Nextbase" do not match
    NEXT_TEXT_PATTERN = re.compile(r'\b(?:next|older)\b|[»›]\s*$')
    MAX_LINK_TEXT = 24

    def __init__(self, deduplicator: Deduplicator, numeric_pagination: bool = True,
                 page_param: str = "page"):
        """Initialize the walker.

        Args:
            deduplicator: Used to compare page URLs against visited ones
            numeric_pagination: Fall back to incrementing ``page_param``
            page_param: Query parameter holding the page number
        """
        self.deduplicator = deduplicator
        self.numeric_pagination = numeric_pagination
        self.page_param = page_param

    def next_page(self, document: Union[HtmlDocument, str, bytes], current_url: str,
                  page_index: int, state: CrawlState, has_content: bool) -> Optional[str]:
        """Determine the URL of the page after ``current_url``.

        Args:
            document: Parsed page, or its raw HTML
            current_url: URL the page was served from
            page_index: 0-based position of the page in the category
            state: Crawl state; its visited set is used for cycle rejection
            has_content: Whether the page showed images not seen on earlier pages

        Returns:
            Absolute URL of the next page, or None when pagination ends
        """
        if not isinstance(document, HtmlDocument):
            document = HtmlDocument.parse(document)

        next_url = self.find_next_link(document, current_url)
        if next_url is None and self.numeric_pagination and has_content:
            next_url = self.increment_page_param(current_url, page_index)

        if next_url is None:
            return None
        if self.deduplicator.canonicalize(next_url) in state.pages_visited:
            return None
        return next_url

    def find_next_link(self, document: HtmlDocument, current_url: str) -> Optional[str]:
        """Explicit "next" link: rel/class markers first, then link text."""
        for selector in self.NEXT_LINK_SELECTORS:
            for element in document.query(selector):
                resolved = self._link_target(document, element, current_url)
                if resolved:
                    return resolved

        for element in document.query('a[href]'):
            text = document.text(element).lower()
            if not text or len(text) > self.MAX_LINK_TEXT:
                continue
            if self.NEXT_TEXT_PATTERN.search(text):
                resolved = self._link_target(document, element, current_url)
                if resolved:
                    return resolved
        return None

    @staticmethod
    def _link_target(document: HtmlDocument, element, current_url: str) -> Optional[str]:
        href = document.attribute(element, 'href')
        if not href or href.startswith('#'):  # in-page anchors, JS-driven pagers
            return None
        return resolve_url(href, current_url)

    def increment_page_param(self, current_url: str, page_index: int = 0) -> str:
        """``?page=N`` becomes ``?page=N+1``; a missing value counts as the
        page's own position."""
        parts = urlsplit(current_url)
        pairs = parse_qsl(parts.query, keep_blank_values=True)

        current = None
        for key, value in pairs:
            if key == self.page_param:
                try:
                    current = int(value)
                except ValueError:
                    current = None
                break
        if current is None:
            current = page_index + 1

        pairs = [(k, v) for k, v in pairs if k != self.page_param]
        pairs.append((self.page_param, str(current + 1)))
        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(pairs), ''))

    def product_links(self, document: HtmlDocument, current_url: str) -> List[str]:
        """Same-host product detail links (``/product/<slug>``,
        ``/products/<slug>``) in document order."""
        base_host = (urlparse(current_url).hostname or '').lower()
        links: List[str] = []
        seen: Set[str] = set()

        for element in document.query('a[href]'):
            resolved = resolve_url(document.attribute(element, 'href'), current_url)
            if not resolved:
                continue
            parsed = urlparse(resolved)
            if (parsed.hostname or '').lower() != base_host:
                continue
            path = parsed.path
            is_product = path.startswith('/product/') and len(path) > len('/product/')
            is_products_detail = path.startswith('/products/') and len(path) > len('/products/')
            if (is_product or is_products_detail) and resolved not in seen:
                seen.add(resolved)
                links.append(resolved)
        return links


# ============================================================================
# Bounded Concurrency
# ============================================================================

class ConcurrencyScheduler:
    """FIFO work queue drained by a fixed number of worker tasks.

    At most ``max_concurrency`` handlers run at the same time. Handlers may
    submit follow-up work; ``run`` returns once the queue is empty and no
    handler is running. After ``stop_event`` is set nothing new is started,
    queued items are discarded and running handlers finish normally.
    """

    def __init__(self, max_concurrency: int = 5, stop_event: Optional[asyncio.Event] = None,
                 logger: Optional[ScraperLogger] = None):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self.stop_event = stop_event or asyncio.Event()
        self.logger = logger
        self._queue: asyncio.Queue = asyncio.Queue()

        self.in_flight = 0
        self.peak_in_flight = 0
        self.completed = 0
        self.cancelled = 0
        self.handler_errors = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, item) -> bool:
        """Queue ``item``; returns False if the scheduler has been stopped."""
        if self.stop_event.is_set():
            self.cancelled += 1
            return False
        self._queue.put_nowait(item)
        return True

    async def run(self, handler: Callable[[Any], Awaitable[Any]]):
        """Process queued items with ``handler`` until everything is done."""
        workers = [asyncio.create_task(self._worker(handler))
                   for _ in range(self.max_concurrency)]
        try:
            await self._queue.join()
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

    async def _worker(self, handler: Callable[[Any], Awaitable[Any]]):
        while True:
            item = await self._queue.get()
            try:
                if self.stop_event.is_set():
                    self.cancelled += 1
                    continue

                self.in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
                try:
                    await handler(item)
                except Exception as e:
                    self.handler_errors += 1
                    if self.logger:
                        self.logger.error(f"Unhandled error processing {item}: {e}")
                finally:
                    self.in_flight -= 1
                    self.completed += 1
            finally:
                self._queue.task_done()


# ============================================================================
# Result Persistence
# ============================================================================

class ResultWriter:
    """Writes the unique URL list, one URL per line."""

    def write(self, results: Iterable[str], destination: Union[str, Path]) -> Path:
        """Atomically replace ``destination`` with ``results``.

        The list is written to a temporary file next to the destination and
        renamed over it, so readers never see a truncated file.

        Raises:
            FileSystemError: if the directory or file cannot be written
        """
        destination = Path(destination)
        tmp_path: Optional[Path] = None
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent
            )
            tmp_path = Path(tmp_name)
            with os.fdopen(fd, 'w', encoding='utf-8', newline='\n') as f:
                for url in results:
                    f.write(f"{url}\n")
                f.flush()
                os.fsync(f.fileno())
            # mkstemp creates 0600 files; match what a plain open() would give
            os.chmod(tmp_path, self._file_mode(destination))
            os.replace(tmp_path, destination)
        except OSError as e:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    tmp_path.unlink()
            raise FileSystemError(f"Could not write results to {destination}: {e}") from e
        return destination

    @staticmethod
    def _file_mode(destination: Path) -> int:
        """Mode of the existing destination, else 0666 minus the umask."""
        try:
            return stat.S_IMODE(destination.stat().st_mode)
        except FileNotFoundError:
            umask = os.umask(0)
            os.umask(umask)
            return 0o666 & ~umask


# ============================================================================
# Image Download Manager with Deduplication
# ============================================================================

class DuplicateDetector:
    """Detects duplicate images using content-based hashing."""

    def __init__(self, logger: ScraperLogger):
        self.logger = logger
        self.seen_hashes: Set[str] = set()
        self.lock = asyncio.Lock()

    def calculate_hash(self, image_data: bytes) -> str:
        """Calculate SHA-256 hash of image content."""
        return hashlib.sha256(image_data).hexdigest()

    async def is_duplicate(self, image_data: bytes) -> tuple[bool, str]:
        """Check if image is a duplicate based on content hash.

        Returns:
            Tuple of (is_duplicate, hash_value)
        """
        image_hash = self.calculate_hash(image_data)

        async with self.lock:
            if image_hash in self.seen_hashes:
                self.logger.debug(f"Duplicate detected: {image_hash}")
                return True, image_hash

            self.seen_hashes.add(image_hash)
            return False, image_hash


class ImageDownloader:
    """Downloads collected image URLs with retries and duplicate detection."""

    FILENAME_UNSAFE = re.compile(r'[<>:"/\\|?*\x00-\x1F]')
    KNOWN_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.gif', '.webp', '.avif', '.svg')

    def __init__(self, fetcher: HttpFetcher, output_dir: Path,
                 duplicate_detector: DuplicateDetector, logger: ScraperLogger,
                 policy: RetryPolicy):
        """Initialize the image downloader.

        Args:
            fetcher: HTTP fetcher with an open session
            output_dir: Directory to save images
            duplicate_detector: Duplicate detection instance
            logger: Logger instance
            policy: Retry policy for every image
        """
        self.fetcher = fetcher
        self.output_dir = Path(output_dir)
        self.duplicate_detector = duplicate_detector
        self.logger = logger
        self.policy = policy
        self.taken_names: Set[str] = set()
        self.stats = {'downloaded': 0, 'duplicates': 0, 'failed': 0}

    async def download_all(self, urls: Iterable[str], max_concurrency: int,
                           stop_event: Optional[asyncio.Event] = None) -> Dict[str, int]:
        """Download every URL through a bounded scheduler.

        Returns:
            Counters for downloaded, duplicate and failed images
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        scheduler = ConcurrencyScheduler(max_concurrency, stop_event, self.logger)
        for url in urls:
            scheduler.submit(url)
        await scheduler.run(self.download_image)
        return dict(self.stats)

    async def download_image(self, img_url: str) -> Optional[Dict[str, Any]]:
        """Download one image unless its content was already saved.

        Returns:
            Dictionary with download info or None if skipped/failed
        """
        try:
            image_data, content_type = await self.fetcher.fetch_bytes(img_url, self.policy)
        except FetchError as e:
            self.stats['failed'] += 1
            self.logger.log_error(img_url, 'image', e.kind.value, str(e), e.attempts)
            return None

        is_dup, img_hash = await self.duplicate_detector.is_duplicate(image_data)
        if is_dup:
            self.stats['duplicates'] += 1
            return None

        filename = self.build_filename(img_url, content_type)
        filepath = self.output_dir / filename
        try:
            filepath.write_bytes(image_data)
        except OSError as e:
            self.stats['failed'] += 1
            self.logger.log_error(img_url, 'image', ErrorKind.FILE_SYSTEM_ERROR.value, str(e))
            return None

        self.stats['downloaded'] += 1
        self.logger.debug(f"Downloaded: {filename}")
        return {
            'url': img_url,
            'filename': filename,
            'hash': img_hash,
            'size': len(image_data),
        }

    def build_filename(self, url: str, content_type: str = '') -> str:
        """Sanitized, collision-free file name derived from the URL path."""
        base_name = os.path.basename(urlparse(url).path)
        base_name = self.FILENAME_UNSAFE.sub('_', base_name)[:200] or 'image'
        stem, ext = os.path.splitext(base_name)
        if ext.lower() not in self.KNOWN_EXTENSIONS:
            stem, ext = base_name, self._get_extension(content_type)
        stem = stem or 'image'

        final_name = f"{stem}{ext}"
        counter = 1
        while final_name in self.taken_names:
            final_name = f"{stem}-{counter}{ext}"
            counter += 1
        self.taken_names.add(final_name)
        return final_name

    @staticmethod
    def _get_extension(content_type: str) -> str:
        """Determine file extension from the content type."""
        content_type = content_type.lower()
        if 'jpeg' in content_type or 'jpg' in content_type:
            return '.jpg'
        elif 'png' in content_type:
            return '.png'
        elif 'gif' in content_type:
            return '.gif'
        elif 'webp' in content_type:
            return '.webp'
        elif 'avif' in content_type:
            return '.avif'
        return '.jpg'  # Default


# ============================================================================
# Main Crawl Orchestrator
# ============================================================================

class CrawlPhase(Enum):
    IDLE = "idle"
    PAGINATING = "paginating"
    DRAINING = "draining"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class CrawlReport:
    """Summary returned to the caller when a crawl ends."""

    phase: CrawlPhase
    pages_visited: int
    pages_failed: int
    images_found: int
    output_path: Optional[Path]
    images_downloaded: int = 0
    download_failures: int = 0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return (self.phase is CrawlPhase.DONE and self.error is None
                and self.output_path is not None and self.images_found > 0)

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1


class CrawlOrchestrator:
    """Runs one category crawl end to end.

    Phases: IDLE -> PAGINATING -> DRAINING -> DONE, or ABORTED when the seed
    page cannot be fetched or the deadline passes. Partial results are
    written in every case.
    """

    def __init__(self, config: ScraperConfig, logger: ScraperLogger):
        self.config = config
        self.logger = logger
        self.phase = CrawlPhase.IDLE
        self.abort_reason: Optional[str] = None

        self.deduplicator = Deduplicator()
        self.extractor = HtmlImageExtractor()
        self.walker = PaginationWalker(
            self.deduplicator,
            numeric_pagination=config.numeric_pagination,
            page_param=config.page_param,
        )
        self.writer = ResultWriter()
        self.state = CrawlState()
        self.scheduler: Optional[ConcurrencyScheduler] = None
        self.fetcher: Optional[HttpFetcher] = None
        self._stop_event = asyncio.Event()
        self._start_host = (urlparse(config.start_url).hostname or '').lower()
        self._extensions = (
            {ext.lower() if ext.startswith('.') else f".{ext.lower()}"
             for ext in config.include_extensions}
            if config.include_extensions else None
        )

    def stop(self):
        """Cooperatively stop: admit nothing new, let running fetches finish."""
        if not self._stop_event.is_set():
            self.logger.info("Stop requested, finishing in-flight pages...")
            self._stop_event.set()
        self._enter_draining()

    async def run(self) -> CrawlReport:
        """Execute the crawl and write the results."""
        config = self.config
        self.logger.info("=" * 60)
        self.logger.info("Category Page Image Scraper")
        self.logger.info("=" * 60)
        self.logger.info(f"Starting scrape from: {config.start_url}")

        state = self.state
        state.next_page_url = config.start_url
        state.pages_visited.add(self.deduplicator.canonicalize(config.start_url))
        state.category_pages = 1

        self.scheduler = ConcurrencyScheduler(config.max_concurrency, self._stop_event, self.logger)
        self.scheduler.submit(PageRequest(url=config.start_url, page_index=0))
        self.phase = CrawlPhase.PAGINATING

        renderer = None
        if config.render_js:
            renderer = PlaywrightRenderer(
                self.logger,
                user_agent=config.user_agent,
                extra_headers=config.request_headers(),
                timeout_ms=config.timeout_ms,
                scroll_steps=config.scroll_steps,
                scroll_delay_ms=config.scroll_delay_ms,
            )

        fetcher = HttpFetcher(
            self.logger,
            rate_limiter=RateLimiter(config.requests_per_second),
            timeout_ms=config.timeout_ms,
            headers=config.request_headers(),
            renderer=renderer,
        )

        report_error = None
        downloads = {'downloaded': 0, 'failed': 0}
        async with fetcher:
            self.fetcher = fetcher
            try:
                if config.deadline_seconds:
                    await asyncio.wait_for(self.scheduler.run(self._process_page),
                                           timeout=config.deadline_seconds)
                else:
                    await self.scheduler.run(self._process_page)
            except asyncio.TimeoutError:
                self._abort(f"Deadline of {config.deadline_seconds}s exceeded")

            if self.phase is not CrawlPhase.ABORTED:
                self.phase = CrawlPhase.DONE

            output_path = None
            try:
                output_path = self.writer.write(state.results, config.output_path)
                self.logger.info(f"Wrote {len(state.results)} image URL(s) to {output_path}")
            except FileSystemError as e:
                report_error = str(e)
                self.logger.log_error(str(config.output_path), 'results',
                                      ErrorKind.FILE_SYSTEM_ERROR.value, str(e))

            if (config.download_dir and len(state.results)
                    and self.phase is CrawlPhase.DONE and not self._stop_event.is_set()):
                downloads = await self._download_images(fetcher)

        report = CrawlReport(
            phase=self.phase,
            pages_visited=state.pages_fetched,
            pages_failed=state.pages_failed,
            images_found=len(state.results),
            output_path=output_path,
            images_downloaded=downloads['downloaded'],
            download_failures=downloads['failed'],
            error=report_error or self.abort_reason,
        )
        self._print_summary(report)
        return report

    async def _process_page(self, request: PageRequest):
        """Fetch, extract, fold and paginate one page."""
        state = self.state
        async with state.lock:
            state.in_flight += 1
        try:
            result = await self.fetcher.fetch(request, self.config.retry_policy)
        finally:
            async with state.lock:
                state.in_flight -= 1

        if not result.ok:
            await self._record_failure(result)
            return

        current_url = result.final_url or request.url
        try:
            document = HtmlDocument.parse(result.html)
            candidates = self.extractor.extract_document(document, current_url)
        except ParseError as e:
            result.status = FetchStatus.FAILURE
            result.error = ErrorKind.PARSE_ERROR
            result.error_message = str(e)
            await self._record_failure(result)
            return

        kept = [c for c in candidates if self._accept(c)]
        keys = {self.deduplicator.canonicalize(c.resolved_url) for c in candidates}
        async with state.lock:
            state.pages_fetched += 1
            state.pages_visited.add(self.deduplicator.canonicalize(current_url))
            added = sum(1 for c in kept if self.deduplicator.fold(state.results, c))
            # Images repeated on every category page (logos, banners) are not new content
            fresh = 0
            if request.kind is PageKind.CATEGORY:
                fresh = len(keys - state.images_seen)
                state.images_seen.update(keys)

        label = "Page" if request.kind is PageKind.CATEGORY else "Product"
        self.logger.info(f"{label}: {request.url} -> {len(kept)} image(s), {added} new")

        if request.kind is PageKind.CATEGORY:
            await self._advance_pagination(document, request, current_url, fresh > 0)
            if self.config.follow_product_links:
                await self._enqueue_product_pages(document, request, current_url)

    async def _advance_pagination(self, document: HtmlDocument, request: PageRequest,
                                  current_url: str, has_content: bool):
        next_url = self.walker.next_page(
            document, current_url, request.page_index, self.state, has_content
        )

        async with self.state.lock:
            if self._stop_event.is_set() or self.phase is not CrawlPhase.PAGINATING:
                return
            if next_url is None:
                self.state.next_page_url = None
                self.logger.debug(f"Pagination ended after {current_url}")
                self._enter_draining()
                return
            if self.config.max_pages and self.state.category_pages >= self.config.max_pages:
                self.state.next_page_url = None
                self.logger.info(f"Reached max pages limit ({self.config.max_pages})")
                self._enter_draining()
                return

            key = self.deduplicator.canonicalize(next_url)
            if key in self.state.pages_visited:
                self._enter_draining()
                return

            self.state.pages_visited.add(key)
            self.state.category_pages += 1
            self.state.next_page_url = next_url
            self.scheduler.submit(PageRequest(url=next_url, page_index=request.page_index + 1))

    async def _enqueue_product_pages(self, document: HtmlDocument, request: PageRequest,
                                     current_url: str):
        links = self.walker.product_links(document, current_url)
        queued = 0
        async with self.state.lock:
            for link in links:
                if self.state.product_pages >= self.config.max_product_pages:
                    break
                key = self.deduplicator.canonicalize(link)
                if key in self.state.pages_visited:
                    continue
                self.state.pages_visited.add(key)
                if self.scheduler.submit(PageRequest(url=link, page_index=request.page_index,
                                                     kind=PageKind.PRODUCT)):
                    self.state.product_pages += 1
                    queued += 1
        if queued:
            self.logger.debug(f"Queued {queued} product page(s) from {current_url}")

    async def _record_failure(self, result: PageResult):
        request = result.request
        async with self.state.lock:
            self.state.pages_failed += 1
            self.state.failures.append(result)

        self.logger.log_error(
            request.url, request.kind.value, result.error.value,
            result.error_message, result.attempts
        )

        if request.kind is PageKind.CATEGORY:
            if request.page_index == 0 and result.error is not ErrorKind.PARSE_ERROR:
                self._abort(f"Seed page could not be fetched: {result.error_message}")
            else:
                self._enter_draining()

    async def _download_images(self, fetcher: HttpFetcher) -> Dict[str, int]:
        self.logger.info(f"Downloading {len(self.state.results)} image(s) to {self.config.download_dir}")
        downloader = ImageDownloader(
            fetcher, self.config.download_dir, DuplicateDetector(self.logger),
            self.logger, self.config.retry_policy
        )
        stats = await downloader.download_all(
            list(self.state.results), self.config.max_concurrency, self._stop_event
        )
        self.logger.info(
            f"Downloaded: {stats['downloaded']}, Duplicates: {stats['duplicates']}, "
            f"Failed: {stats['failed']}"
        )
        return stats

    def _accept(self, candidate: ImageCandidate) -> bool:
        parsed = urlparse(candidate.resolved_url)
        if self._extensions is not None:
            if os.path.splitext(parsed.path)[1].lower() not in self._extensions:
                return False
        if not self.config.allow_external_hosts:
            host = (parsed.hostname or '').lower()
            if host != self._start_host and not host.endswith(f".{self._start_host}"):
                return False
        return True

    def _enter_draining(self):
        if self.phase is CrawlPhase.PAGINATING:
            self.phase = CrawlPhase.DRAINING

    def _abort(self, reason: str):
        self.phase = CrawlPhase.ABORTED
        self.abort_reason = reason
        self.logger.error(f"Crawl aborted: {reason}")

    def _print_summary(self, report: CrawlReport):
        """Print final summary statistics."""
        self.logger.info("\n" + "=" * 60)
        self.logger.info("SCRAPING COMPLETE" if report.succeeded else "SCRAPING FAILED")
        self.logger.info("=" * 60)
        self.logger.info(f"Pages visited: {report.pages_visited}")
        self.logger.info(f"Pages failed: {report.pages_failed}")
        self.logger.info(f"Total unique images found: {report.images_found}")
        if self.config.download_dir:
            self.logger.info(f"Images downloaded: {report.images_downloaded} "
                             f"(failed: {report.download_failures})")
        self.logger.info(f"Output file: {report.output_path or 'not written'}")
        if report.error:
            self.logger.info(f"Error: {report.error}")
        self.logger.info(f"Error log: {self.logger.error_log_path}")


# ============================================================================
# Main Entry Point
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='category-scraper',
        description='Category Page Image Scraper - collect image URLs from paginated category pages',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Collect every image URL of a category into output/image_urls.txt
  category-scraper "https://shop.example.com/products?category=baby-products"

  # At most 10 pages, 8 parallel fetches, custom output file
  category-scraper URL --max-pages 10 --concurrency 8 --output baby.txt

  # Only keep jpg/png, also visit product pages and download the images
  category-scraper URL --include-ext .jpg .png --follow-products --download-dir images/

Exit codes: 0 success, 1 crawl failed or found nothing, 2 invalid arguments.
        '''
    )

    parser.add_argument('url', metavar='URL', help='Category page to start from')
    parser.add_argument('--max-pages', type=int, default=50, metavar='N',
                        help='Maximum category pages to follow, 0 = unbounded (default: 50)')
    parser.add_argument('--concurrency', type=int, default=5, metavar='N',
                        help='Maximum simultaneous page fetches (default: 5)')
    parser.add_argument('--output', type=str, default=str(Path('output') / 'image_urls.txt'),
                        metavar='FILE', help='Destination file (default: output/image_urls.txt)')
    parser.add_argument('--retries', type=int, default=3, metavar='N',
                        help='Attempts per request before giving up (default: 3)')
    parser.add_argument('--timeout-ms', type=int, default=15_000, metavar='MS',
                        help='Timeout of a single attempt in milliseconds (default: 15000)')
    parser.add_argument('--base-delay-ms', type=int, default=800, metavar='MS',
                        help='First retry delay in milliseconds (default: 800)')
    parser.add_argument('--max-delay-ms', type=int, default=10_000, metavar='MS',
                        help='Upper bound for retry delays in milliseconds (default: 10000)')
    parser.add_argument('--rate-limit', type=float, default=4.0, metavar='N',
                        help='Requests per second per domain, 0 = unlimited (default: 4.0)')
    parser.add_argument('--deadline', type=float, default=None, metavar='SECONDS',
                        help='Abort the crawl after this many seconds (default: none)')
    parser.add_argument('--include-ext', type=str, nargs='+', default=None, metavar='EXT',
                        help='Only keep images with these extensions (e.g. .jpg .png)')
    parser.add_argument('--same-host-only', action='store_true',
                        help='Ignore images served from other hosts (e.g. CDNs)')
    parser.add_argument('--no-numeric-pagination', action='store_true',
                        help='Do not fall back to ?page=N+1 when no next link exists')
    parser.add_argument('--page-param', type=str, default='page', metavar='NAME',
                        help='Query parameter holding the page number (default: page)')
    parser.add_argument('--follow-products', action='store_true',
                        help='Also collect images from product pages linked on category pages')
    parser.add_argument('--max-product-pages', type=int, default=200, metavar='N',
                        help='Maximum product pages to visit (default: 200)')
    parser.add_argument('--download-dir', type=str, default=None, metavar='DIR',
                        help='Also download the images into this directory')
    parser.add_argument('--render-js', action='store_true',
                        help='Render pages with a headless browser (Playwright)')
    parser.add_argument('--site-config', type=str, default=None, metavar='FILE',
                        help='Path to site configuration JSON file')
    parser.add_argument('--log-dir', type=str, default='logs', metavar='DIR',
                        help='Directory for log files (default: logs/)')
    parser.add_argument('--verbose', action='store_true', help='Show debug output')
    return parser


def parse_args(argv: Optional[List[str]] = None):
    """Parse and validate command line arguments (exits with status 2 on error)."""
    parser = build_parser()
    args = parser.parse_args(argv)

    parsed = urlparse(args.url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        parser.error(f"URL must be an absolute http(s) URL: {args.url}")
    if args.max_pages < 0:
        parser.error("--max-pages must not be negative")
    if args.concurrency < 1:
        parser.error("--concurrency must be at least 1")
    if args.timeout_ms <= 0:
        parser.error("--timeout-ms must be positive")
    if args.rate_limit < 0:
        parser.error("--rate-limit must not be negative")
    if args.deadline is not None and args.deadline <= 0:
        parser.error("--deadline must be positive")
    if args.max_product_pages < 0:
        parser.error("--max-product-pages must not be negative")

    try:
        args.retry_policy = RetryPolicy(
            max_attempts=args.retries,
            base_delay_ms=args.base_delay_ms,
            max_delay_ms=args.max_delay_ms,
        )
    except ValueError as e:
        parser.error(str(e))
    return args


def config_from_args(args) -> ScraperConfig:
    return ScraperConfig(
        start_url=args.url,
        output_path=Path(args.output),
        max_pages=args.max_pages or None,
        max_concurrency=args.concurrency,
        timeout_ms=args.timeout_ms,
        retry_policy=args.retry_policy,
        requests_per_second=args.rate_limit,
        deadline_seconds=args.deadline,
        include_extensions=args.include_ext,
        allow_external_hosts=not args.same_host_only,
        numeric_pagination=not args.no_numeric_pagination,
        page_param=args.page_param,
        follow_product_links=args.follow_products,
        max_product_pages=args.max_product_pages,
        download_dir=Path(args.download_dir) if args.download_dir else None,
        render_js=args.render_js,
    )


async def _run_until_stopped(orchestrator: CrawlOrchestrator) -> CrawlReport:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.stop)
        loop.add_signal_handler(signal.SIGTERM, orchestrator.stop)
    except (NotImplementedError, RuntimeError, ValueError):
        pass  # signal handlers unsupported on this platform
    return await orchestrator.run()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with CLI argument parsing."""
    args = parse_args(argv)

    logger = ScraperLogger(args.log_dir, verbose=args.verbose)
    site_config = SiteConfig(args.site_config, logger)
    config = site_config.apply(config_from_args(args))

    orchestrator = CrawlOrchestrator(config, logger)
    try:
        report = asyncio.run(_run_until_stopped(orchestrator))
    finally:
        logger.close()
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
