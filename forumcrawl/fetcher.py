"""HTTP fetching with a request-spacing floor, linear retry backoff and failure classification."""

from __future__ import annotations

import logging
import time
from typing import Callable
from urllib.parse import unquote, urlparse

import httpx

from forumcrawl.config import DEFAULT_USER_AGENT, Config
from forumcrawl.dedup import DedupStore
from forumcrawl.errors import ErrorKind, FetchError, FetchFailure
from forumcrawl.flaresolverr import BypassSession

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
MAX_RETRIES = 3
RETRY_DELAY = 5.0  # seconds; multiplied by the attempt number
MIN_INTERVAL = 0.5

DEFAULT_HEADERS = {
    "User-Agent": DEFAULT_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
    "Cache-Control": "max-age=0",
}


class RateLimiter:
    """
    Guarantees at least min_interval seconds between the starts of two
    requests. A floor on spacing, not a token bucket.
    """

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None

    def wait(self) -> None:
        if self._last is not None:
            remaining = self.min_interval - (self._clock() - self._last)
            if remaining > 0:
                self._sleep(remaining)
        self._last = self._clock()


def filename_from_url(url: str, fallback: str) -> str:
    name = unquote(urlparse(url).path.rstrip("/").split("/")[-1])
    return name or fallback


class Fetcher:
    """
    Single-request-in-flight fetcher. Reuse one instance for a whole crawl so
    the rate limiter sees every request.

    Pages go through the bypass session when one is given, otherwise through
    httpx directly; retry and classification rules are the same either way.
    """

    def __init__(
        self,
        *,
        scraped: DedupStore | None = None,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
        min_interval: float = MIN_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        headers: dict[str, str] | None = None,
        bypass: BypassSession | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.scraped = scraped
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.bypass = bypass
        self._timeout = timeout
        self._headers = {**DEFAULT_HEADERS, **(headers or {})}
        self._transport = transport
        self._sleep = sleep
        self.limiter = RateLimiter(min_interval, clock=clock, sleep=sleep)
        self._client: httpx.Client | None = None
        self.requests = 0

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        scraped: DedupStore | None = None,
        bypass: BypassSession | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Fetcher:
        return cls(
            scraped=scraped,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            min_interval=config.request_delay,
            timeout=config.request_timeout,
            headers={"User-Agent": config.user_agent},
            bypass=bypass,
            transport=transport,
            sleep=sleep,
        )

    def _get_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                follow_redirects=True,
                timeout=self._timeout,
                headers=self._headers,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client and not self._client.is_closed:
            self._client.close()

    def __enter__(self) -> Fetcher:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _get_once(self, url: str) -> str:
        """One attempt; raises FetchError classified as network, http or empty."""
        if self.bypass is not None:
            return self.bypass.relay(url, headers=self._headers)
        try:
            resp = self._get_client().get(url)
        except httpx.RequestError as e:
            raise FetchError(ErrorKind.NETWORK, str(e) or type(e).__name__, url=url) from e
        if not resp.is_success:
            raise FetchError(
                ErrorKind.HTTP,
                f"HTTP error! status: {resp.status_code}",
                status=resp.status_code,
                url=url,
            )
        text = resp.text
        if not text:
            raise FetchError(ErrorKind.EMPTY, "Empty response received", url=url)
        return text

    def fetch(self, url: str, *, should_mark_scraped: bool = True) -> str:
        """
        Return the page text, or "" (no request made) when should_mark_scraped
        is set and the URL is already marked scraped.

        Does not mark the URL: the caller marks it once the page's records are
        stored.

        :raises FetchFailure: after max_retries failed attempts.
        """
        if should_mark_scraped and self.scraped is not None and url in self.scraped:
            logger.info("URL already scraped, skipping: %s", url)
            return ""

        last: FetchError | None = None
        for attempt in range(1, self.max_retries + 1):
            self.limiter.wait()
            self.requests += 1
            logger.info("Fetching: %s (Attempt %d/%d)", url, attempt, self.max_retries)
            try:
                return self._get_once(url)
            except FetchError as e:
                last = e
                logger.error(
                    "Attempt %d/%d failed for %s: kind=%s%s %s",
                    attempt,
                    self.max_retries,
                    url,
                    e.kind.value,
                    f" status={e.status}" if e.status is not None else "",
                    e.message,
                )
            if attempt < self.max_retries:
                wait = self.retry_delay * attempt
                logger.warning("Waiting %.1f seconds before retry...", wait)
                self._sleep(wait)
        assert last is not None
        raise FetchFailure(last, self.max_retries, url)

    def fetch_binary(self, url: str) -> tuple[bytes, str | None]:
        """
        Download an attachment; returns (content, content_type).

        Replays the bypass session's user agent and cookies when a session is
        active, since plain downloads skip the proxy. Retries without backoff
        beyond the rate floor.

        :raises FetchFailure: after max_retries failed attempts.
        """
        headers: dict[str, str] = {}
        cookies: dict[str, str] = {}
        if self.bypass is not None:
            if self.bypass.user_agent:
                headers["User-Agent"] = self.bypass.user_agent
            cookies = dict(self.bypass.cookies)

        last: FetchError | None = None
        for attempt in range(1, self.max_retries + 1):
            self.limiter.wait()
            self.requests += 1
            try:
                client = self._get_client()
                if cookies:
                    client.cookies.update(cookies)
                resp = client.get(url, headers=headers or None)
            except httpx.RequestError as e:
                last = FetchError(ErrorKind.NETWORK, str(e) or type(e).__name__, url=url)
            else:
                if not resp.is_success:
                    last = FetchError(
                        ErrorKind.HTTP,
                        f"HTTP error! status: {resp.status_code}",
                        status=resp.status_code,
                        url=url,
                    )
                elif not resp.content:
                    last = FetchError(ErrorKind.EMPTY, "Empty response received", url=url)
                else:
                    ct = resp.headers.get("content-type")
                    content_type = ct.split(";")[0].strip().lower() if ct else None
                    return resp.content, content_type
            logger.warning("Download attempt %d/%d failed for %s: %s", attempt, self.max_retries, url, last)
        assert last is not None
        raise FetchFailure(last, self.max_retries, url)
