"""robots.txt lookups for the website check."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional
from urllib import robotparser
from urllib.parse import urlparse

import httpx

logger = logging.getLogger(__name__)

ROBOTS_USER_AGENT = "CampFinder/robots-fetch"


def site_origin(url: str) -> str | None:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def _deny_all() -> robotparser.RobotFileParser:
    parser = robotparser.RobotFileParser()
    parser.parse(["User-agent: *", "Disallow: /"])
    return parser


class RobotsCache:
    """Fetches each site's robots.txt once and answers can-fetch questions.

    A missing file, a server error or a network failure allows crawling; a
    401/403 on robots.txt itself is treated as "disallow everything".
    """

    def __init__(self, client: httpx.AsyncClient, *, request_timeout: float = 10.0) -> None:
        self._client = client
        self._request_timeout = request_timeout
        self._rules: dict[str, Optional[robotparser.RobotFileParser]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def allows(self, url: str, user_agent: str) -> bool:
        origin = site_origin(url)
        if origin is None:
            return True
        rules = await self._rules_for(origin)
        return True if rules is None else rules.can_fetch(user_agent, url)

    async def _rules_for(self, origin: str) -> Optional[robotparser.RobotFileParser]:
        if origin in self._rules:
            return self._rules[origin]
        async with self._locks.setdefault(origin, asyncio.Lock()):
            if origin not in self._rules:
                self._rules[origin] = await self._download(origin)
            return self._rules[origin]

    async def _download(self, origin: str) -> Optional[robotparser.RobotFileParser]:
        robots_url = f"{origin}/robots.txt"
        try:
            response = await self._client.get(
                robots_url,
                timeout=self._request_timeout,
                headers={"User-Agent": ROBOTS_USER_AGENT},
            )
        except httpx.RequestError as exc:
            logger.debug("Could not fetch %s: %s", robots_url, exc)
            return None

        if response.status_code in (401, 403):
            logger.info("robots.txt for %s is restricted (%s); not crawling", origin, response.status_code)
            return _deny_all()
        if response.status_code >= 400:
            logger.debug("No usable robots.txt for %s (%s)", origin, response.status_code)
            return None

        parser = robotparser.RobotFileParser()
        parser.set_url(robots_url)
        parser.parse(response.text.splitlines())
        return parser
