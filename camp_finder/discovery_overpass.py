"""Helpers for querying Overpass API for group accommodation."""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Optional, Sequence
from urllib.parse import urlparse

import httpx

from .distance import distance_km
from .errors import SourceUnavailable
from .models import Accommodation, AccommodationType, Coordinate
from .throttle import RequestThrottle

logger = logging.getLogger(__name__)

OVERPASS_URL = "https://overpass-api.de/api/interpreter"
WEBSITE_TAG_KEYS = ("website", "contact:website", "url")
PHONE_TAG_KEYS = ("phone", "contact:phone")
EMAIL_TAG_KEYS = ("email", "contact:email")
NAME_TAG_KEYS = ("name", "name:nl", "name:en")

PLACEHOLDER_NAMES = frozenset({"unnamed", "naamloos"})
PLACEHOLDER_DOMAINS = ("example.com", "example.org", "example.net", "localhost")
PLACEHOLDER_URL_FRAGMENTS = ("placeholder",)

# Tag selectors unioned into a single around() query.
FEATURE_SELECTORS: tuple[str, ...] = (
    '["tourism"="camp_site"]',
    '["tourism"="hostel"]',
    '["hostel"="yes"]',
    '["tourism"="group_accommodation"]',
    '["group_accommodation"="yes"]',
    '["leisure"="scout"]',
    '["amenity"="community_centre"]["scout"]',
    '["amenity"="community_centre"]["youth_centre"="yes"]',
    '["amenity"="community_centre"]',
    '["leisure"="club"]',
)

YOUTH_MOVEMENT_KEYWORDS: tuple[str, ...] = (
    "ksa",
    "chiro",
    "scout",
    "guide",
    "jeugdbeweging",
    "jeugdvereniging",
    "patro",
    "klj",
    "jnm",
    "fos",
    "pfadfinder",
    "éclaireur",
    "padvinder",
    "verkenners",
    "guías",
    "exploradores",
    "youth movement",
    "youth centre",
    "youth center",
    "jugendbewegung",
    "jeugdcentrum",
)

MIN_GROUP_CAPACITY = 10
SMALL_CAPACITY_LIMIT = 5

Tags = dict[str, str]


class OverpassError(SourceUnavailable):
    """Raised when the Overpass API returns an unexpected response."""


def _normalize_overpass_urls(
    overpass_url: str | None = None,
    overpass_urls: Sequence[str] | None = None,
) -> list[str]:
    ordered: list[str] = []
    if overpass_urls:
        ordered.extend([url.strip() for url in overpass_urls if url and url.strip()])
    if overpass_url:
        ordered.append(overpass_url.strip())
    if not ordered:
        ordered.append(OVERPASS_URL)

    seen: set[str] = set()
    unique: list[str] = []
    for url in ordered:
        if url and url not in seen:
            seen.add(url)
            unique.append(url)
    return unique


def build_query(center: Coordinate, radius_km: float) -> str:
    """Build one Overpass QL union query for every accommodation tag selector."""

    if radius_km <= 0:
        raise ValueError("radius_km must be positive")

    around = f"(around:{round(radius_km * 1000)},{center.lat},{center.lon})"
    lines = ["[out:json][timeout:30];", "("]
    for selector in FEATURE_SELECTORS:
        for element_type in ("node", "way", "relation"):
            lines.append(f"  {element_type}{selector}{around};")
    lines.extend([");", "out center meta;"])
    return "\n".join(lines) + "\n"


def _parse_capacity(value: str | None) -> int:
    """Leading integer of a capacity tag ("40 beds" -> 40), 0 when absent."""
    if not value:
        return 0
    match = re.match(r"\s*(\d+)", str(value))
    return int(match.group(1)) if match else 0


def _not_group_restricted(tags: Tags) -> bool:
    return not tags.get("group_only") or tags.get("group_only") == "no"


def _is_campsite(tags: Tags) -> bool:
    return tags.get("tourism") == "camp_site"


def _is_hostel(tags: Tags) -> bool:
    return tags.get("tourism") == "hostel" or tags.get("hostel") == "yes"


def _has_group_flag(tags: Tags) -> bool:
    return (
        tags.get("group_accommodation") == "yes"
        or tags.get("tourism") == "group_accommodation"
    )


def _has_youth_marker(tags: Tags) -> bool:
    return bool(tags.get("scout")) or tags.get("youth_centre") == "yes"


# Evaluated top to bottom; the first matching rule decides. No match rejects.
GROUP_SUITABILITY_RULES: tuple[tuple[str, Callable[[Tags, int], bool], bool], ...] = (
    ("group_flag", lambda tags, capacity: _has_group_flag(tags), True),
    ("group_capacity", lambda tags, capacity: capacity >= MIN_GROUP_CAPACITY, True),
    (
        "campsite_accepts_groups",
        lambda tags, capacity: _is_campsite(tags)
        and (
            tags.get("group_only") == "yes"
            or tags.get("group") == "yes"
            or _not_group_restricted(tags)
        ),
        True,
    ),
    (
        "hostel_accepts_groups",
        lambda tags, capacity: _is_hostel(tags) and _not_group_restricted(tags),
        True,
    ),
    (
        "scout_or_youth_venue",
        lambda tags, capacity: (
            tags.get("leisure") == "scout" or tags.get("amenity") == "community_centre"
        )
        and (_has_youth_marker(tags) or tags.get("community_centre") == "scout"),
        True,
    ),
    (
        "small_capacity",
        lambda tags, capacity: 0 < capacity < SMALL_CAPACITY_LIMIT,
        False,
    ),
)


def group_suitability(tags: Tags) -> tuple[bool, str | None]:
    """Return (accepted, rule_name) for a raw feature's tags."""
    capacity = _parse_capacity(tags.get("capacity"))
    for rule_name, predicate, verdict in GROUP_SUITABILITY_RULES:
        if predicate(tags, capacity):
            return verdict, rule_name
    return False, None


def is_group_suitable(tags: Tags) -> bool:
    return group_suitability(tags)[0]


def _matches_youth_keyword(name: str) -> bool:
    lowered = name.lower()
    return any(keyword in lowered for keyword in YOUTH_MOVEMENT_KEYWORDS)


# Tag rules run before the name fallback; a plain community centre or a bare
# group-accommodation tag decides nothing on its own.
CLASSIFICATION_RULES: tuple[tuple[Callable[[Tags], bool], AccommodationType], ...] = (
    (_is_campsite, AccommodationType.CAMPING),
    (_is_hostel, AccommodationType.HOSTEL),
    (
        lambda tags: tags.get("leisure") in ("scout", "club") or _has_youth_marker(tags),
        AccommodationType.YOUTH_MOVEMENT,
    ),
)


def classify(tags: Tags, name: str) -> AccommodationType:
    """Decide the accommodation type from tags, falling back to name keywords."""
    for predicate, accommodation_type in CLASSIFICATION_RULES:
        if predicate(tags):
            return accommodation_type
    if _matches_youth_keyword(name):
        return AccommodationType.YOUTH_MOVEMENT
    return AccommodationType.HOSTEL


def _select_name(tags: Tags) -> str | None:
    for key in NAME_TAG_KEYS:
        value = (tags.get(key) or "").strip()
        if value:
            if value.lower() in PLACEHOLDER_NAMES:
                return None
            return value
    return None


def _select_tag(tags: Tags, keys: Sequence[str]) -> str | None:
    for key in keys:
        value = (tags.get(key) or "").strip()
        if value:
            return value
    return None


def _select_website(tags: Tags) -> str | None:
    """Return the best website URL from the element tags, if any."""

    for key in WEBSITE_TAG_KEYS:
        if key in tags:
            value = tags[key].strip()
            if not value:
                continue
            # Some entries contain multiple URLs separated by ; or ,
            for delimiter in (";", ",", " "):
                if delimiter in value:
                    value = value.split(delimiter)[0].strip()
            if value:
                return value
    return None


def is_placeholder_website(url: str) -> bool:
    lowered = url.lower()
    if any(fragment in lowered for fragment in PLACEHOLDER_URL_FRAGMENTS):
        return True
    host = (urlparse(lowered).hostname or "").removeprefix("www.")
    return any(host == domain or host.endswith("." + domain) for domain in PLACEHOLDER_DOMAINS)


def normalize_website(url: str | None) -> str | None:
    """Trim, add a scheme when missing and reject placeholder domains."""
    if url is None:
        return None
    url = url.strip()
    if not url:
        return None

    parsed = urlparse(url)
    if url.startswith("//"):
        url = f"https:{url}"
    elif parsed.scheme not in ("http", "https"):
        url = f"https://{url}"

    if is_placeholder_website(url):
        return None
    return url


def build_address(tags: Tags) -> str | None:
    """Assemble a postal address from addr:* tags."""
    parts: list[str] = []
    street = tags.get("addr:street")
    housenumber = tags.get("addr:housenumber")
    if street and housenumber:
        parts.append(f"{street} {housenumber}")
    elif street:
        parts.append(street)

    postcode = tags.get("addr:postcode")
    city = tags.get("addr:city")
    if postcode and city:
        parts.append(f"{postcode} {city}")
    elif city:
        parts.append(city)
    elif tags.get("addr:place"):
        parts.append(tags["addr:place"])

    if tags.get("addr:country"):
        parts.append(tags["addr:country"])
    return ", ".join(parts) if parts else None


def has_minimal_info(
    accommodation_type: AccommodationType,
    *,
    address: str | None,
    website: str | None,
    phone: str | None,
) -> bool:
    if accommodation_type is AccommodationType.YOUTH_MOVEMENT:
        return bool(address)
    return bool(website or phone)


def element_point(element: dict[str, Any]) -> Optional[Coordinate]:
    """Representative point: node coordinates or the precomputed centre."""
    if "lat" in element and "lon" in element:
        return Coordinate(lat=float(element["lat"]), lon=float(element["lon"]))
    center = element.get("center")
    if not center or "lat" not in center or "lon" not in center:
        return None
    return Coordinate(lat=float(center["lat"]), lon=float(center["lon"]))


def element_to_accommodation(
    element: dict[str, Any], origin: Coordinate
) -> Optional[Accommodation]:
    """Turn one raw Overpass element into an accommodation, or None to drop it."""

    tags: Tags = element.get("tags") or {}
    name = _select_name(tags)
    if not name:
        return None

    if not is_group_suitable(tags):
        return None

    osm_type = element.get("type", "unknown")
    osm_id = element.get("id")
    if osm_id is None:
        logger.debug("Skipping element without id: %s", element)
        return None

    accommodation_type = classify(tags, name)

    point = element_point(element)
    if point is None:
        logger.debug("Skipping element without coordinates: %s", element)
        return None

    address = build_address(tags)
    website = normalize_website(_select_website(tags))
    phone = _select_tag(tags, PHONE_TAG_KEYS)
    if not has_minimal_info(accommodation_type, address=address, website=website, phone=phone):
        return None

    capacity = _parse_capacity(tags.get("capacity"))
    return Accommodation(
        id=f"{osm_type}-{osm_id}",
        name=name,
        type=accommodation_type,
        address=address,
        city=tags.get("addr:city") or tags.get("addr:place"),
        country=tags.get("addr:country"),
        latitude=point.lat,
        longitude=point.lon,
        distance=distance_km(origin.lat, origin.lon, point.lat, point.lon),
        phone=phone,
        email=_select_tag(tags, EMAIL_TAG_KEYS),
        website=website,
        description=tags.get("description") or tags.get("description:nl"),
        capacity=capacity or None,
        source="overpass",
    )


def parse_elements(elements: Sequence[Any], origin: Coordinate) -> list[Accommodation]:
    """Filter, classify and sort raw elements; malformed ones are skipped."""
    results: list[Accommodation] = []
    for element in elements:
        if not isinstance(element, dict):
            continue
        try:
            accommodation = element_to_accommodation(element, origin)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.debug("Skipping malformed element %s: %s", element.get("id"), exc)
            continue
        if accommodation is not None:
            results.append(accommodation)

    results.sort(key=lambda item: item.distance if item.distance is not None else 0.0)
    return results


async def _post_query(
    query: str,
    *,
    client: httpx.AsyncClient,
    urls: Sequence[str],
    throttle: RequestThrottle,
) -> dict[str, Any]:
    last_error: Exception | None = None
    for url in urls:
        await throttle.wait()
        try:
            response = await client.post(url, data={"data": query})
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError("Overpass payload is not an object")
            return payload
        except (httpx.HTTPError, ValueError) as exc:
            last_error = exc
            logger.warning("Overpass request failed via %s: %s", url, exc)
    raise OverpassError(f"Overpass request failed on all endpoints: {last_error}") from last_error


async def search_tagged_features(
    center: Coordinate,
    radius_km: float,
    *,
    client: httpx.AsyncClient | None = None,
    overpass_url: str | None = None,
    overpass_urls: Sequence[str] | None = None,
    throttle: RequestThrottle | None = None,
    timeout: float = 60.0,
) -> list[Accommodation]:
    """Query Overpass around *center* and return group-suitable accommodation."""

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    assert client is not None  # for type checkers

    urls = _normalize_overpass_urls(overpass_url, overpass_urls)
    query = build_query(center, radius_km)

    try:
        payload = await _post_query(
            query,
            client=client,
            urls=urls,
            throttle=throttle or RequestThrottle(1.0),
        )
    except OverpassError as exc:
        logger.error("Overpass search around %s failed: %s", center, exc)
        return []
    finally:
        if owns_client:
            await client.aclose()

    elements = payload.get("elements") or []
    if not isinstance(elements, list):
        logger.warning("Overpass payload had no element list")
        return []

    results = parse_elements(elements, center)
    logger.info(
        "Overpass returned %d elements, kept %d accommodations", len(elements), len(results)
    )
    return results
