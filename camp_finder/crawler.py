"""Polite HTTP fetching used to check accommodation websites."""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from collections import defaultdict
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from .robots import RobotsCache

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
ACCEPT_LANGUAGE = "nl-BE,nl;q=0.9,fr;q=0.8,en;q=0.7"
TEXT_CONTENT_TOKENS = ("text", "html", "xml")


class _TooManyRequests(Exception):
    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"HTTP 429 from {response.url}")
        self.response = response


@dataclass(slots=True)
class FetchResult:
    url: str
    final_url: str | None
    status_code: int | None
    content_type: str | None
    text: str | None
    error: str | None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code is not None and self.status_code < 400


class AsyncCrawler:
    """Async page fetcher with a global and per-host concurrency cap.

    Requests to the same host are spaced by *host_min_interval* seconds and
    robots.txt is honoured unless *respect_robots* is False.
    """

    def __init__(
        self,
        *,
        user_agent: str,
        concurrency: int = 2,
        max_attempts: int = 3,
        respect_robots: bool = True,
        host_min_interval: float = 1.0,
        request_jitter: tuple[float, float] = (0.1, 0.4),
        retry_backoff: float = 1.0,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._user_agent = user_agent
        self._max_attempts = max_attempts
        self._host_min_interval = host_min_interval
        self._request_jitter = tuple(sorted(request_jitter))
        self._retry_backoff = retry_backoff
        self._client = httpx.AsyncClient(
            headers={
                "User-Agent": user_agent,
                "Accept": ACCEPT_HEADER,
                "Accept-Language": ACCEPT_LANGUAGE,
            },
            timeout=httpx.Timeout(timeout, connect=10.0),
            http2=transport is None,
            follow_redirects=True,
            transport=transport,
        )
        self._semaphore = asyncio.Semaphore(concurrency)
        self._host_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._host_last_request: dict[str, float] = defaultdict(float)
        self._robots = RobotsCache(self._client) if respect_robots else None

    async def __aenter__(self) -> "AsyncCrawler":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch(self, url: str) -> FetchResult:
        url = clean_url(url)
        host = urlparse(url).hostname or ""
        async with self._semaphore, self._host_locks[host]:
            if self._robots is not None and not await self._robots.allows(url, self._user_agent):
                logger.debug("robots.txt disallows %s", url)
                return _failed(url, "disallowed_by_robots")

            await self._space_requests(host)
            try:
                response = await self._get_with_retries(url)
            except httpx.RequestError as exc:
                logger.debug("Fetching %s failed: %s", url, exc)
                return _failed(url, str(exc) or exc.__class__.__name__)
            finally:
                self._host_last_request[host] = time.monotonic()
        return _to_result(url, response)

    async def _space_requests(self, host: str) -> None:
        elapsed = time.monotonic() - self._host_last_request[host]
        delay = max(0.0, self._host_min_interval - elapsed)
        if self._host_min_interval > 0:
            delay += random.uniform(*self._request_jitter)
        if delay > 0:
            await asyncio.sleep(delay)

    async def _get_with_retries(self, url: str) -> httpx.Response:
        """GET with exponential backoff on transport errors and HTTP 429."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential_jitter(
                initial=self._retry_backoff, max=6 * self._retry_backoff, jitter=self._retry_backoff
            ),
            retry=retry_if_exception_type((httpx.RequestError, _TooManyRequests)),
            reraise=False,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._client.get(url)
                    if response.status_code == 429:
                        raise _TooManyRequests(response)
                    return response
        except RetryError as exc:
            last = exc.last_attempt.exception()
            if isinstance(last, _TooManyRequests):
                return last.response
            if isinstance(last, httpx.RequestError):
                raise last from None
            raise
        raise RuntimeError("retry loop ended without a response")


def _failed(url: str, error: str) -> FetchResult:
    return FetchResult(
        url=url,
        final_url=None,
        status_code=None,
        content_type=None,
        text=None,
        error=error,
    )


def _to_result(url: str, response: httpx.Response) -> FetchResult:
    content_type = response.headers.get("content-type")
    text: str | None = None
    if content_type is None or any(token in content_type.lower() for token in TEXT_CONTENT_TOKENS):
        try:
            text = response.text
        except UnicodeDecodeError:
            logger.debug("Could not decode body of %s", url)
    return FetchResult(
        url=url,
        final_url=str(response.url),
        status_code=response.status_code,
        content_type=content_type,
        text=text,
        error=None,
    )


def clean_url(url: str) -> str:
    """Strip control characters and encode spaces."""
    if not url:
        return url
    return re.sub(r"[\x00-\x1f\x7f]", "", url).strip().replace(" ", "%20")
