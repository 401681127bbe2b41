"""Nominatim geocoding: forward search, raw hit search and reverse lookup.

Every method fails soft. Network errors, non-2xx responses and unparsable
payloads are logged and turned into an empty value; callers decide whether a
missing answer is fatal.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .config import DEFAULT_USER_AGENT, NOMINATIM_URL
from .models import Coordinate
from .throttle import RequestThrottle

logger = logging.getLogger(__name__)

MIN_SUGGEST_LENGTH = 2


def parse_coordinate(item: dict[str, Any]) -> Optional[Coordinate]:
    """Return the lat/lon of a Nominatim hit, or None when missing/invalid."""
    try:
        return Coordinate(lat=float(item["lat"]), lon=float(item["lon"]))
    except (KeyError, TypeError, ValueError):
        return None


class NominatimClient:
    """Async Nominatim client sharing one throttle across all of its calls."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        base_url: str = NOMINATIM_URL,
        user_agent: str = DEFAULT_USER_AGENT,
        throttle: RequestThrottle | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=5.0),
        )
        self.base_url = base_url.rstrip("/")
        self.headers = {"User-Agent": user_agent}
        self.throttle = throttle or RequestThrottle(1.0)

    async def __aenter__(self) -> "NominatimClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get_json(self, path: str, params: dict[str, Any]) -> Any:
        await self.throttle.wait()
        try:
            response = await self._client.get(
                f"{self.base_url}/{path}",
                params=params,
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as exc:
            logger.warning("Nominatim %s request failed for %s: %s", path, params, exc)
            return None
        except ValueError as exc:
            logger.warning("Nominatim %s returned invalid JSON for %s: %s", path, params, exc)
            return None

    async def geocode(self, query: str) -> Optional[Coordinate]:
        """Return the coordinates of the best hit for *query*, or None."""
        if not query or not query.strip():
            return None
        data = await self._get_json(
            "search", {"format": "json", "q": query.strip(), "limit": 1}
        )
        if not isinstance(data, list) or not data:
            logger.info("Geocoding found nothing for '%s'", query)
            return None
        first = data[0] if isinstance(data[0], dict) else {}
        coordinate = parse_coordinate(first)
        if coordinate is None:
            logger.info("Geocoding hit for '%s' had no usable coordinates", query)
        return coordinate

    async def search(self, query: str, *, limit: int = 15) -> list[dict[str, Any]]:
        """Return raw hits (with address details and extra tags) for *query*."""
        data = await self._get_json(
            "search",
            {
                "format": "json",
                "q": query,
                "limit": limit,
                "addressdetails": 1,
                "extratags": 1,
            },
        )
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    async def suggest(self, query: str, *, limit: int = 5) -> list[dict[str, Any]]:
        """Autocomplete candidates for a partially typed location."""
        query = query.strip()
        if len(query) < MIN_SUGGEST_LENGTH:
            return []
        suggestions = []
        for hit in await self.search(query, limit=limit):
            coordinate = parse_coordinate(hit)
            if coordinate is None:
                continue
            suggestions.append(
                {
                    "label": suggestion_label(hit),
                    "displayName": str(hit.get("display_name") or ""),
                    "lat": coordinate.lat,
                    "lon": coordinate.lon,
                    "type": hit.get("type"),
                }
            )
        return suggestions

    async def reverse(self, lat: float, lon: float) -> dict[str, Any]:
        """Return the structured address for a coordinate, or an empty dict."""
        data = await self._get_json(
            "reverse",
            {"format": "json", "lat": lat, "lon": lon, "addressdetails": 1},
        )
        if not isinstance(data, dict):
            return {}
        address = data.get("address")
        return address if isinstance(address, dict) else {}


def city_from_address(address: dict[str, Any]) -> str:
    return str(
        address.get("city") or address.get("town") or address.get("village") or ""
    ).strip()


def suggestion_label(hit: dict[str, Any]) -> str:
    """Short "place, region" label for an autocomplete hit."""
    address = hit.get("address") if isinstance(hit.get("address"), dict) else {}
    place = city_from_address(address)
    region = str(address.get("state") or "").strip()
    country = str(address.get("country") or "").strip()
    if place:
        return f"{place}, {region or country}" if region or country else place
    if region:
        return f"{region}, {country}" if country else region
    display = str(hit.get("display_name") or "")
    return ", ".join(part.strip() for part in display.split(",")[:2] if part.strip())
