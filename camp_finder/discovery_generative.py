"""Youth-movement discovery through Gemini free-text search.

Model output is untrusted: responses may be wrapped in Markdown fences, may
not be JSON at all and may invent data. Every response goes through a
schema-validating parse that degrades to an empty list instead of raising,
and every named organization is geocoded before it is trusted.
"""

from __future__ import annotations

import itertools
import json
import logging
import re
from typing import Any, AsyncIterator, Callable, Optional, Protocol, Sequence, Union

from google import genai
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import DEFAULT_GEMINI_MODEL
from .discovery_overpass import normalize_website
from .distance import distance_km
from .errors import SourceUnavailable
from .geocoding import NominatimClient
from .models import Accommodation, AccommodationType, Coordinate, GenerativeQuery
from .throttle import RequestThrottle

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 300

_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n?")
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_SLUG_RE = re.compile(r"[^a-z0-9-]")

QueryCallback = Callable[[str, str], None]


class GenerativeError(SourceUnavailable):
    """Raised when the generative model call fails."""


class TextGenerator(Protocol):
    async def generate(self, prompt: str, *, json_output: bool = False) -> str:
        ...


class GeminiClient:
    """Server-side Gemini wrapper; the API key never leaves this process."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_GEMINI_MODEL,
        throttle: RequestThrottle | None = None,
        client: Any = None,
    ) -> None:
        if not api_key:
            raise ValueError("A Gemini API key is required")
        self.model = model
        self.throttle = throttle or RequestThrottle(1.5)
        self._client = client or genai.Client(api_key=api_key)

    async def generate(self, prompt: str, *, json_output: bool = False) -> str:
        await self.throttle.wait()
        config = {"response_mime_type": "application/json"} if json_output else None
        try:
            response = await self._client.aio.models.generate_content(
                model=self.model,
                contents=prompt,
                config=config,
            )
        except Exception as exc:
            raise GenerativeError(f"Gemini request failed: {exc}") from exc
        return response.text or ""


class OrganizationCandidate(BaseModel):
    """One organization as named by the model."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    name: str = Field(min_length=1)
    address: Optional[str] = None
    website: Optional[str] = None
    type: Optional[str] = None

    @field_validator("address", "type", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, (dict, list)):
            return None
        text = str(value).strip()
        return text or None

    @field_validator("website", mode="before")
    @classmethod
    def _clean_website(cls, value: Any) -> Optional[str]:
        if not isinstance(value, str):
            return None
        return normalize_website(value)


def strip_code_fences(text: str) -> str:
    text = (text or "").strip()
    if text.startswith("```"):
        text = _FENCE_RE.sub("", text).replace("```", "")
    return text.strip()


def _load_json(text: str, pattern: re.Pattern[str], expected: type) -> Any:
    cleaned = strip_code_fences(text)
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, expected):
            return parsed
    except ValueError:
        pass
    match = pattern.search(cleaned)
    if match is None:
        return None
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        logger.debug("Could not parse JSON span from model output")
        return None
    return parsed if isinstance(parsed, expected) else None


def load_json_array(text: str) -> Optional[list[Any]]:
    return _load_json(text, _ARRAY_RE, list)


def load_json_object(text: str) -> Optional[dict[str, Any]]:
    return _load_json(text, _OBJECT_RE, dict)


def parse_candidates(text: str) -> list[OrganizationCandidate]:
    """Validate a model response against the candidate schema; never raises."""
    items = load_json_array(text)
    if items is None:
        return []
    candidates: list[OrganizationCandidate] = []
    for item in items:
        try:
            candidates.append(OrganizationCandidate.model_validate(item))
        except ValidationError as exc:
            logger.debug("Dropping invalid candidate %r: %s", item, exc.errors())
    return candidates


def parse_string_list(text: str) -> list[str]:
    items = load_json_array(text)
    if items is None:
        return []
    return [item.strip() for item in items if isinstance(item, str) and item.strip()]


def excerpt(text: str, limit: int = EXCERPT_LENGTH) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def slugify(name: str) -> str:
    return _SLUG_RE.sub("", re.sub(r"\s+", "-", name.lower()))


def build_types_prompt(country: str, city: Optional[str] = None) -> str:
    region = f", specifically in the region around {city}" if city else ""
    return (
        f"Research which types of youth movements (jeugdbewegingen, youth "
        f"organizations, scout organizations) exist in {country}{region}.\n\n"
        "For example:\n"
        "- In Belgium/Netherlands: KSA, Chiro, Scouts, FOS, Patro, KLJ, JNM\n"
        "- In France: Scouts de France, Éclaireurs, Éclaireuses, Guides de France\n"
        "- In Germany: Pfadfinder, Jugendbewegung\n"
        "- In the UK: Scouts, Girl Guides\n\n"
        f"Return a JSON array of the common youth movement organization types "
        f"or names in {country}:\n"
        '["Type 1", "Type 2", "Type 3"]\n\n'
        "Only return the JSON array, no additional text."
    )


def build_search_prompt(term: str, city: str, country: str) -> str:
    return (
        f'Find youth movements and youth organizations matching: "{term}" in '
        f"{city}, {country}.\n\n"
        "For each organization found, provide:\n"
        "- Full name of the organization\n"
        "- Street address if available (street and number, postal code, city)\n"
        "- Website URL ONLY if you know the actual, verified website. Never "
        "make up or guess a website URL; omit the field instead.\n"
        "- Type (KSA, Chiro, Scouts, ...)\n\n"
        "Return the results as a JSON array:\n"
        '[{"name": "Organization name", "address": "Street 1, 1000 City", '
        '"website": "https://verified-site.example", "type": "Type name"}]\n\n'
        "Only return valid JSON, no additional text. If you find nothing, "
        "return an empty array []."
    )


def build_search_terms(city: str, country: str, known_types: Sequence[str]) -> list[str]:
    specific = [f"{known_type} {city}" for known_type in known_types]
    general = [
        f"jeugdbewegingen in {city}",
        f"jeugdverenigingen {city}",
        f"youth movements {city} {country}",
        f"scout organizations {city}",
        f"jeugdorganisaties {city}",
    ]
    return specific + general


async def research_known_types(
    country: str, city: Optional[str] = None, *, llm: TextGenerator
) -> list[str]:
    """Ask the model for the country's youth-organization vocabulary."""
    try:
        text = await llm.generate(build_types_prompt(country, city), json_output=True)
    except GenerativeError as exc:
        logger.warning("Youth movement type research failed for %s: %s", country, exc)
        return []
    return parse_string_list(text)


async def locate_candidate(
    candidate: OrganizationCandidate,
    *,
    city: str,
    geocoder: NominatimClient,
) -> Optional[Coordinate]:
    """Geocode the candidate's address, then "{name} {city}"."""
    if candidate.address:
        coordinate = await geocoder.geocode(candidate.address)
        if coordinate is not None:
            return coordinate
    return await geocoder.geocode(f"{candidate.name} {city}")


GenerativeEvent = Union[GenerativeQuery, Accommodation]


async def iter_generative_events(
    city: str,
    country: str,
    known_types: Sequence[str],
    center: Coordinate,
    radius_km: float,
    *,
    llm: TextGenerator,
    geocoder: NominatimClient,
) -> AsyncIterator[GenerativeEvent]:
    """Yield a GenerativeQuery after every model call and each accepted result.

    Terms run strictly one after another; the model client's throttle spaces
    consecutive calls.
    """

    seen_names: set[str] = set()
    counter = itertools.count(1)

    for term in build_search_terms(city, country, known_types):
        label = f'Search: "{term}"'
        try:
            text = await llm.generate(build_search_prompt(term, city, country), json_output=True)
        except GenerativeError as exc:
            logger.warning("Generative search for '%s' failed: %s", term, exc)
            yield GenerativeQuery(label, f"Error: {exc}")
            continue

        yield GenerativeQuery(label, excerpt(text))

        for candidate in parse_candidates(text):
            key = candidate.name.lower()
            if key in seen_names:
                continue
            seen_names.add(key)

            coordinate = await locate_candidate(candidate, city=city, geocoder=geocoder)
            accommodation_id = f"gemini-{slugify(candidate.name)}-{next(counter)}"
            if coordinate is None:
                # Unconfirmed location: pinned at the search centre for manual review.
                yield Accommodation(
                    id=accommodation_id,
                    name=candidate.name,
                    type=AccommodationType.YOUTH_MOVEMENT,
                    address=candidate.address or city,
                    city=city,
                    country=country,
                    latitude=center.lat,
                    longitude=center.lon,
                    distance=0.0,
                    website=candidate.website,
                    source="gemini",
                    low_confidence=True,
                )
                continue

            distance = distance_km(center.lat, center.lon, coordinate.lat, coordinate.lon)
            if distance > radius_km:
                continue
            yield Accommodation(
                id=accommodation_id,
                name=candidate.name,
                type=AccommodationType.YOUTH_MOVEMENT,
                address=candidate.address,
                city=city,
                country=country,
                latitude=coordinate.lat,
                longitude=coordinate.lon,
                distance=distance,
                website=candidate.website,
                source="gemini",
            )


async def iter_generative_results(
    city: str,
    country: str,
    known_types: Sequence[str],
    center: Coordinate,
    radius_km: float,
    *,
    llm: TextGenerator,
    geocoder: NominatimClient,
    on_query: QueryCallback | None = None,
) -> AsyncIterator[Accommodation]:
    async for event in iter_generative_events(
        city, country, known_types, center, radius_km, llm=llm, geocoder=geocoder
    ):
        if isinstance(event, GenerativeQuery):
            if on_query is not None:
                on_query(event.term, event.response_excerpt)
            continue
        yield event


async def search_by_generative_text(
    city: str,
    country: str,
    known_types: Sequence[str],
    center: Coordinate,
    radius_km: float,
    *,
    llm: TextGenerator,
    geocoder: NominatimClient,
    on_query: QueryCallback | None = None,
) -> list[Accommodation]:
    """Collect every confidently extracted organization for the given city."""
    return [
        accommodation
        async for accommodation in iter_generative_results(
            city,
            country,
            known_types,
            center,
            radius_km,
            llm=llm,
            geocoder=geocoder,
            on_query=on_query,
        )
    ]
