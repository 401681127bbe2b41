"""On-demand extras for a finished search.

These run outside the search pipeline when a user asks for them: an extra
model-driven search per category, a detail lookup for one accommodation,
website lookup/verification through the model, and a live check of the
listed websites.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .crawler import AsyncCrawler
from .detection import detect_site_match
from .discovery_generative import (
    GenerativeError,
    OrganizationCandidate,
    TextGenerator,
    excerpt,
    load_json_object,
    locate_candidate,
    parse_candidates,
    research_known_types,
    slugify,
)
from .discovery_overpass import normalize_website
from .distance import distance_km
from .errors import EnrichmentError
from .geocoding import NominatimClient
from .models import Accommodation, AccommodationType, Coordinate
from .pipeline import split_location

logger = logging.getLogger(__name__)

NOT_FOUND_MARKER = "NIET_GEVONDEN"
CORRECT_MARKER = "CORRECT"
MAX_LISTED_NAMES = 10
MAX_TYPE_STRATEGIES = 5

_URL_RE = re.compile(r"https?://[^\s\"'<>)\]]+")

TYPE_LABELS = {
    AccommodationType.HOSTEL: "jeugdherberg",
    AccommodationType.CAMPING: "camping",
    AccommodationType.YOUTH_MOVEMENT: "jeugdbeweging",
}
CATEGORY_DESCRIPTIONS = {
    AccommodationType.HOSTEL: "jeugdherbergen (hostels, youth hostels)",
    AccommodationType.CAMPING: "campings (campsites, group campsites)",
}

WEBSITE_RULES = (
    "Only include a website URL if you know the real, verified website. "
    "Never make up URLs such as \"name.be\" or \"name.com\"; omit the field instead."
)
CANDIDATE_FORMAT = '[{"name": "...", "address": "...", "website": "https://..."}]'

QueryCallback = Callable[[str, str], None]


class MoreInfo(BaseModel):
    """Details the model returns for a single accommodation."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="ignore")

    description: Optional[str] = None
    amenities: list[str] = Field(default_factory=list)
    price_range: Optional[str] = Field(default=None, alias="priceRange")
    additional_info: Optional[str] = Field(default=None, alias="additionalInfo")

    @field_validator("description", "price_range", "additional_info", mode="before")
    @classmethod
    def _text_or_none(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, (dict, list)):
            return None
        text = str(value).strip()
        return text or None

    @field_validator("amenities", mode="before")
    @classmethod
    def _string_list(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass(frozen=True, slots=True)
class WebsiteCheck:
    """Outcome of asking the model about a listed website."""

    status: str  # "correct", "updated" or "not_found"
    website: Optional[str]


def build_more_info_prompt(accommodation: Accommodation) -> str:
    label = TYPE_LABELS[accommodation.type]
    located = f" located at {accommodation.address}" if accommodation.address else ""
    return (
        f'Give detailed information about this {label}: "{accommodation.name}"{located}.\n\n'
        "Return the information as JSON in this format:\n"
        "{\n"
        '  "description": "Detailed description of the accommodation",\n'
        '  "amenities": ["facility 1", "facility 2", "facility 3"],\n'
        "  \"priceRange\": \"Price indication (e.g. '€15-25 per person per night')\",\n"
        '  "additionalInfo": "Other useful information such as opening hours or rules"\n'
        "}\n\n"
        "Only return valid JSON, no additional text. Use empty strings or empty "
        "arrays for anything you do not know."
    )


async def fetch_more_info(
    accommodation: Accommodation, *, llm: TextGenerator
) -> tuple[Accommodation, MoreInfo]:
    """Return the accommodation with model-provided details filled in.

    Existing values are kept where the model returned nothing. Raises
    EnrichmentError when the model fails or its answer is not a JSON object.
    """
    try:
        text = await llm.generate(build_more_info_prompt(accommodation), json_output=True)
    except GenerativeError as exc:
        raise EnrichmentError(f"Could not fetch details for {accommodation.name}: {exc}") from exc

    payload = load_json_object(text)
    if payload is None:
        raise EnrichmentError(f"Could not read the details returned for {accommodation.name}")
    try:
        info = MoreInfo.model_validate(payload)
    except ValidationError as exc:
        raise EnrichmentError(f"Invalid details for {accommodation.name}: {exc}") from exc

    updated = accommodation.with_updates(
        description=info.description or accommodation.description,
        amenities=info.amenities or list(accommodation.amenities),
        price_range=info.price_range or accommodation.price_range,
    )
    return updated, info


def extract_website(text: str) -> Optional[str]:
    """First usable URL in a model answer, or None when it says not found."""
    if not text or NOT_FOUND_MARKER in text:
        return None
    match = _URL_RE.search(text)
    if match is None:
        return None
    return normalize_website(match.group(0).rstrip(".,;"))


def build_find_website_prompt(accommodation: Accommodation) -> str:
    return (
        f'Find the official website of "{accommodation.name}" located at '
        f"{accommodation.address or 'unknown'}.\n\n"
        "IMPORTANT:\n"
        "- Only return the real, verified website URL\n"
        '- Do NOT return invented URLs such as "name.be" or "name.com"\n'
        f'- If you cannot find the website, return only "{NOT_FOUND_MARKER}"\n'
        "- Return only the URL, no additional text\n\n"
        f"Format: https://www.actual-website.com or {NOT_FOUND_MARKER}"
    )


def build_verify_website_prompt(accommodation: Accommodation, location: str | None = None) -> str:
    place = accommodation.address or location or accommodation.city or "unknown"
    return (
        f'Verify whether this website URL is correct for "{accommodation.name}" '
        f"located at {place}:\n{accommodation.website}\n\n"
        "If the URL is not correct, return the real website URL.\n"
        f'If the URL is correct, return "{CORRECT_MARKER}".\n'
        f'If you cannot find the website, return "{NOT_FOUND_MARKER}".\n\n'
        f'Return only the URL, "{CORRECT_MARKER}" or "{NOT_FOUND_MARKER}", no additional text.'
    )


async def find_website(accommodation: Accommodation, *, llm: TextGenerator) -> Optional[str]:
    try:
        text = await llm.generate(build_find_website_prompt(accommodation))
    except GenerativeError as exc:
        raise EnrichmentError(f"Website lookup failed for {accommodation.name}: {exc}") from exc
    website = extract_website(text)
    logger.info("Website lookup for %s: %s", accommodation.name, website or "not found")
    return website


async def verify_website(
    accommodation: Accommodation, *, llm: TextGenerator, location: str | None = None
) -> WebsiteCheck:
    if not accommodation.website:
        raise EnrichmentError(f"{accommodation.name} has no website to verify")
    try:
        text = await llm.generate(build_verify_website_prompt(accommodation, location))
    except GenerativeError as exc:
        raise EnrichmentError(f"Website verification failed for {accommodation.name}: {exc}") from exc

    if CORRECT_MARKER in text and NOT_FOUND_MARKER not in text:
        return WebsiteCheck("correct", accommodation.website)
    website = extract_website(text)
    if website is None:
        return WebsiteCheck("not_found", None)
    return WebsiteCheck("updated", website)


def _category_prompt(category: AccommodationType, location: str, known_names: Sequence[str]) -> str:
    listed = ", ".join(known_names[:MAX_LISTED_NAMES]) or "(none yet)"
    return (
        f"Search for {CATEGORY_DESCRIPTIONS[category]} in {location} that we may have missed.\n\n"
        f"We already found these:\n{listed}\n\n"
        "Return a JSON array with NEW ones only (not the existing ones), each "
        f"with name, address and website.\n{WEBSITE_RULES}\n\n"
        f"Format: {CANDIDATE_FORMAT}"
    )


def _youth_prompts(
    city: str, country: str, known_types: Sequence[str]
) -> list[tuple[str, str]]:
    prompts = [
        (
            f"{known_type} groups",
            f"Search for {known_type} groups in {city}, {country}.\n{WEBSITE_RULES}\n"
            f"Return a JSON array: {CANDIDATE_FORMAT}",
        )
        for known_type in known_types[:MAX_TYPE_STRATEGIES]
    ]
    prompts.append(
        (
            "General terms",
            f"Search for jeugdbewegingen, jeugdverenigingen, youth movements and scout "
            f"groups in {city}, {country}.\n{WEBSITE_RULES}\n"
            f"Return a JSON array: {CANDIDATE_FORMAT}",
        )
    )
    prompts.append(
        (
            "Surrounding municipalities",
            f"Search for youth movements in the region around {city}, {country}, "
            f"including nearby municipalities.\n{WEBSITE_RULES}\n"
            f"Return a JSON array: {CANDIDATE_FORMAT}",
        )
    )
    return prompts


async def search_more(
    category: AccommodationType | str,
    existing: Sequence[Accommodation],
    location: str,
    center: Coordinate,
    radius_km: float,
    *,
    llm: TextGenerator,
    geocoder: NominatimClient,
    on_query: QueryCallback | None = None,
    default_country: str = "België",
) -> list[Accommodation]:
    """Ask the model for accommodations of *category* that the search missed.

    Only geocoded candidates within *radius_km* are returned; names already
    present in *existing* (case-insensitive) are skipped.
    """
    category = AccommodationType(category)
    city, country = split_location(location, default_country)
    known_names = {item.name.lower() for item in existing}
    same_category = [item.name for item in existing if item.type is category]
    counter = itertools.count(1)
    found: list[Accommodation] = []

    def report(term: str, response: str) -> None:
        if on_query is not None:
            on_query(term, response)

    if category is AccommodationType.YOUTH_MOVEMENT:
        known_types = await research_known_types(country, city, llm=llm)
        report("Youth movement types", ", ".join(known_types) or "none found")
        prompts = _youth_prompts(city, country, known_types)
    else:
        prompts = [(f"Extra {category.value} search", _category_prompt(category, location, same_category))]

    for label, prompt in prompts:
        try:
            text = await llm.generate(prompt, json_output=True)
        except GenerativeError as exc:
            logger.warning("Extra search '%s' failed: %s", label, exc)
            report(label, f"Error: {exc}")
            continue
        report(label, excerpt(text))

        for candidate in parse_candidates(text):
            key = candidate.name.lower()
            if key in known_names:
                continue
            accommodation = await _place_candidate(
                candidate, category, city, country, center, radius_km, geocoder, next(counter)
            )
            if accommodation is None:
                continue
            known_names.add(key)
            found.append(accommodation)

    logger.info("Extra %s search in %s found %d new results", category.value, location, len(found))
    return found


async def _place_candidate(
    candidate: OrganizationCandidate,
    category: AccommodationType,
    city: str,
    country: str,
    center: Coordinate,
    radius_km: float,
    geocoder: NominatimClient,
    sequence: int,
) -> Optional[Accommodation]:
    coordinate = await locate_candidate(candidate, city=city, geocoder=geocoder)
    if coordinate is None:
        return None
    distance = distance_km(center.lat, center.lon, coordinate.lat, coordinate.lon)
    if distance > radius_km:
        return None
    return Accommodation(
        id=f"extra-{category.value}-{slugify(candidate.name)}-{sequence}",
        name=candidate.name,
        type=category,
        address=candidate.address,
        city=city,
        country=country,
        latitude=coordinate.lat,
        longitude=coordinate.lon,
        distance=distance,
        website=candidate.website,
        source="extra",
    )


async def verify_websites(
    accommodations: Sequence[Accommodation],
    *,
    user_agent: str,
    concurrency: int = 2,
    crawler: AsyncCrawler | None = None,
) -> list[Accommodation]:
    """Fetch every listed website and record whether it matches the venue.

    Entries without a website come back unchanged. A single failing site
    only marks that entry as unverified.
    """
    owns_crawler = crawler is None
    crawler = crawler or AsyncCrawler(user_agent=user_agent, concurrency=concurrency)

    async def check(item: Accommodation) -> Accommodation:
        if not item.website:
            return item
        result = await crawler.fetch(item.website)
        if not result.ok or not result.text:
            logger.info("Website of %s unreachable: %s", item.name, result.error or result.status_code)
            return item.with_updates(website_verified=False)
        matched, reason = detect_site_match(result.text, item.name)
        logger.debug("Website of %s matched=%s (%s)", item.name, matched, reason)
        return item.with_updates(website_verified=matched)

    try:
        return list(await asyncio.gather(*(check(item) for item in accommodations)))
    finally:
        if owns_crawler:
            await crawler.aclose()
