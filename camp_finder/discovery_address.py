"""Youth-club discovery through targeted Nominatim name searches."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Sequence

from .discovery_overpass import normalize_website
from .distance import distance_km
from .geocoding import NominatimClient, city_from_address, parse_coordinate
from .models import Accommodation, AccommodationType, Coordinate

logger = logging.getLogger(__name__)

ADDRESS_SEARCH_PREFIXES: tuple[str, ...] = ("KSA", "Chiro", "Scouts")
SEARCH_LIMIT = 15

YOUTH_CLUB_TOKENS: tuple[str, ...] = (
    "ksa",
    "chiro",
    "scouts",
    "fos",
    "patro",
    "klj",
    "jnm",
    "jeugdbeweging",
    "jeugdvereniging",
    "scout",
    "guide",
)


def _matching_token(text: str) -> Optional[str]:
    lowered = text.lower()
    for token in YOUTH_CLUB_TOKENS:
        if token in lowered:
            return token
    return None


def is_youth_club_hit(item: dict[str, Any]) -> bool:
    display_name = str(item.get("display_name") or item.get("name") or "")
    if _matching_token(display_name):
        return True
    address_text = json.dumps(item.get("address") or {}, ensure_ascii=False)
    return _matching_token(address_text) is not None


def extract_club_name(display_name: str) -> str:
    """Pick the comma-segment of a verbose display name that names the club."""
    segments = [segment.strip() for segment in display_name.split(",")]
    token = _matching_token(display_name)
    if token:
        for segment in segments:
            if token in segment.lower():
                return segment
    return segments[0] if segments else display_name.strip()


def build_hit_address(address: dict[str, Any]) -> Optional[str]:
    parts: list[str] = []
    road = address.get("road")
    if road and address.get("house_number"):
        parts.append(f"{road} {address['house_number']}")
    elif road:
        parts.append(str(road))

    locality = address.get("city") or address.get("town") or address.get("village")
    if address.get("postcode") and address.get("city"):
        parts.append(f"{address['postcode']} {address['city']}")
    elif locality:
        parts.append(str(locality))
    return ", ".join(parts) if parts else None


def _hit_website(extratags: dict[str, Any]) -> Optional[str]:
    website = extratags.get("website")
    if not website:
        url = str(extratags.get("url") or "")
        website = url if url.startswith("http") else None
    return normalize_website(website)


def hit_to_accommodation(
    item: dict[str, Any], origin: Coordinate, radius_km: float
) -> Optional[Accommodation]:
    point = parse_coordinate(item)
    if point is None:
        return None
    distance = distance_km(origin.lat, origin.lon, point.lat, point.lon)
    if distance > radius_km:
        return None
    if not is_youth_club_hit(item):
        return None

    display_name = str(item.get("display_name") or item.get("name") or "")
    name = extract_club_name(display_name)
    if not name:
        return None

    address = item.get("address") or {}
    extratags = item.get("extratags") or {}
    return Accommodation(
        id=f"nominatim-{item.get('place_id')}",
        name=name,
        type=AccommodationType.YOUTH_MOVEMENT,
        address=build_hit_address(address),
        city=address.get("city") or address.get("town") or address.get("village"),
        country=address.get("country"),
        latitude=point.lat,
        longitude=point.lon,
        distance=distance,
        phone=extratags.get("phone"),
        email=extratags.get("email"),
        website=_hit_website(extratags),
        source="address",
    )


async def search_youth_clubs_by_address(
    center: Coordinate,
    radius_km: float,
    *,
    geocoder: NominatimClient,
    prefixes: Sequence[str] = ADDRESS_SEARCH_PREFIXES,
) -> list[Accommodation]:
    """Search "{prefix} {city}" for each known prefix and keep youth-club hits."""

    city = city_from_address(await geocoder.reverse(center.lat, center.lon))
    if not city:
        logger.info("No city name found near %s; skipping address search", center)
        return []

    results: list[Accommodation] = []
    seen_place_ids: set[str] = set()

    for prefix in prefixes:
        term = f"{prefix} {city}"
        hits = await geocoder.search(term, limit=SEARCH_LIMIT)
        logger.info("Address search '%s' returned %d hits", term, len(hits))
        for item in hits:
            place_id = str(item.get("place_id"))
            if place_id in seen_place_ids:
                continue
            try:
                accommodation = hit_to_accommodation(item, center, radius_km)
            except (TypeError, ValueError, AttributeError) as exc:
                logger.debug("Skipping malformed hit for '%s': %s", term, exc)
                continue
            if accommodation is None:
                continue
            seen_place_ids.add(place_id)
            results.append(accommodation)

    return results
