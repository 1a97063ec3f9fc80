"""HTML-derived deep-link source for streaming availability."""

from __future__ import annotations

import logging
import re
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup
from pyrate_limiter import BucketFullException, Duration, Limiter, Rate

from ..config import Settings
from ..errors import RateLimitExceeded
from ..models import StreamingLink
from .http import get_with_retries

logger = logging.getLogger(__name__)

DIGIT_RE = re.compile(r"\d")
USER_AGENT = "Mozilla/5.0 (compatible; AnimeCatalog/1.0)"


class ScrapeRateLimiter:
    """Fail-fast request budget shared by every scrape of the streaming page."""

    def __init__(self, max_requests: int, window_seconds: float, *, name: str = "scrape") -> None:
        interval_ms = max(1, int(window_seconds * int(Duration.SECOND)))
        self._name = name
        self._limiter = Limiter(
            [Rate(max_requests, interval_ms)],
            raise_when_fail=True,
            max_delay=None,
        )

    def acquire(self) -> None:
        """Take one slot or raise :class:`RateLimitExceeded` when the window is full."""

        try:
            self._limiter.try_acquire(self._name)
        except BucketFullException as exc:
            raise RateLimitExceeded(f"{self._name} rate window is full") from exc


class StreamingScraper:
    """Scrape legal streaming deep links from an anime's public page."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        rate_limiter: ScrapeRateLimiter | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._base_url = str(settings.scrape_base_url).rstrip("/")
        self._rate_limiter = rate_limiter if rate_limiter is not None else ScrapeRateLimiter(
            settings.scrape_rate_limit, settings.scrape_rate_window_seconds
        )

    async def fetch_links(self, anime_id: int) -> list[StreamingLink]:
        """Return deep links found on the page.

        Raises :class:`RateLimitExceeded` without issuing a request when the
        window is full, and ``OriginUnavailable`` when the page cannot be read.
        """

        try:
            self._rate_limiter.acquire()
        except RateLimitExceeded:
            logger.warning("Scrape rate limit exceeded, skipping anime %s", anime_id)
            raise

        response = await get_with_retries(
            self._client,
            f"{self._base_url}/anime/{anime_id}",
            source="streaming scraper",
            retry_limit=self._settings.retry_limit,
            backoff_seconds=self._settings.retry_backoff_seconds,
            headers={"User-Agent": USER_AGENT, "Accept": "text/html"},
        )
        return parse_streaming_links(response.text)


def parse_streaming_links(html: str) -> list[StreamingLink]:
    soup = BeautifulSoup(html, "html.parser")
    links: list[StreamingLink] = []
    seen: set[str] = set()
    for anchor in soup.select(".broadcast-item"):
        href = anchor.get("href")
        name = anchor.get("title")
        if not isinstance(href, str) or not isinstance(name, str):
            continue
        if not is_deep_link(href) or href in seen:
            continue
        seen.add(href)
        links.append(StreamingLink(name=name.strip(), url=href))
    return links


def is_deep_link(url: str) -> bool:
    """Return whether the URL points at a specific title rather than a homepage."""

    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return False
    return bool(DIGIT_RE.search(parsed.path) or DIGIT_RE.search(parsed.query))
