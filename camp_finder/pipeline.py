"""Accommodation search pipeline: geocode, query three sources, merge, dedupe.

Sources always run in the order spatial tags -> address heuristic ->
generative search, one request at a time. Results are folded into a running
first-writer-wins view (keyed by coordinate bucket) that is streamed to the
caller as progress events; every placeable result is also kept so the final
pass can swap in a more complete duplicate.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, Sequence

from .config import Settings
from .discovery_address import search_youth_clubs_by_address
from .discovery_generative import (
    GeminiClient,
    TextGenerator,
    build_search_terms,
    iter_generative_events,
    research_known_types,
)
from .discovery_overpass import search_tagged_features
from .distance import bucket_key
from .errors import CampFinderError, LocationNotFound, SearchCancelled
from .geocoding import NominatimClient
from .models import (
    ACCOMMODATION_TYPES,
    Accommodation,
    Coordinate,
    GenerativeQuery,
    ProgressEvent,
    SearchResult,
    SearchStage,
)
from .throttle import RequestThrottle

logger = logging.getLogger(__name__)

RADIUS_TOLERANCE_KM = 1e-9

SourceSearch = Callable[[Coordinate, float], Awaitable[list[Accommodation]]]
QueryCallback = Callable[[str, str], None]
ProgressCallback = Callable[[list[Accommodation], list[str]], None]


def completeness_score(accommodation: Accommodation) -> int:
    """Number of non-empty contact fields among website, phone and address."""
    return sum(
        1 for value in (accommodation.website, accommodation.phone, accommodation.address) if value
    )


def fold_into(
    merged: list[Accommodation],
    seen_keys: set[tuple[float, float]],
    items: Iterable[Accommodation],
) -> int:
    """Append items whose coordinate bucket is still free; return how many were added."""
    added = 0
    for item in items:
        if not item.is_placeable:
            continue
        key = bucket_key(item.latitude, item.longitude)  # type: ignore[arg-type]
        if key in seen_keys:
            continue
        seen_keys.add(key)
        merged.append(item)
        added += 1
    return added


def deduplicate(
    items: Sequence[Accommodation], radius_km: Optional[float] = None
) -> list[Accommodation]:
    """Collapse bucket collisions, keeping the most complete entity.

    A later duplicate replaces the kept one only on a strictly higher
    completeness score, so ties keep the earlier-seen entity. Unplaceable
    entities, entities beyond *radius_km* and repeated ids are dropped.
    """
    unique: list[Accommodation] = []
    index_by_key: dict[tuple[float, float], int] = {}

    for item in items:
        if not item.is_placeable:
            continue
        if (
            radius_km is not None
            and item.distance is not None
            and item.distance > radius_km + RADIUS_TOLERANCE_KM
        ):
            continue
        key = bucket_key(item.latitude, item.longitude)  # type: ignore[arg-type]
        index = index_by_key.get(key)
        if index is None:
            index_by_key[key] = len(unique)
            unique.append(item)
        elif completeness_score(item) > completeness_score(unique[index]):
            unique[index] = item

    seen_ids: set[str] = set()
    result: list[Accommodation] = []
    for item in unique:
        if item.id in seen_ids:
            continue
        seen_ids.add(item.id)
        result.append(item)
    return result


def group_by_type(items: Iterable[Accommodation]) -> dict[str, list[Accommodation]]:
    grouped: dict[str, list[Accommodation]] = {kind.value: [] for kind in ACCOMMODATION_TYPES}
    for item in items:
        grouped[item.type.value].append(item)
    return grouped


def split_location(location: str, default_country: str) -> tuple[str, str]:
    """Return (city, country) from "City, ..., Country"."""
    parts = [part.strip() for part in location.split(",") if part.strip()]
    if not parts:
        return location.strip(), default_country
    city = parts[0]
    country = parts[-1] if len(parts) > 1 else default_country
    return city, country


def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise SearchCancelled("Search cancelled")


class _SearchRun:
    """Mutable state of one search invocation."""

    def __init__(self) -> None:
        self.merged: list[Accommodation] = []
        self.collected: list[Accommodation] = []
        self.seen_keys: set[tuple[float, float]] = set()
        self.logs: list[str] = []
        self.stage = SearchStage.IDLE

    def log(self, message: str) -> None:
        logger.info(message.strip())
        self.logs.append(message)

    def fold(self, items: Sequence[Accommodation]) -> int:
        self.collected.extend(items)
        return fold_into(self.merged, self.seen_keys, items)

    def event(self, query: GenerativeQuery | None = None) -> ProgressEvent:
        return ProgressEvent(
            stage=self.stage,
            results=list(self.merged),
            logs=list(self.logs),
            query=query,
        )


class AccommodationSearch:
    """Runs the three discovery sources and merges their output."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        geocoder: NominatimClient | None = None,
        llm: TextGenerator | None = None,
        spatial_search: SourceSearch | None = None,
        address_search: SourceSearch | None = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self._owns_geocoder = geocoder is None
        self.geocoder = geocoder or NominatimClient(
            base_url=self.settings.nominatim_url,
            user_agent=self.settings.user_agent,
            throttle=RequestThrottle(self.settings.nominatim_min_interval),
            timeout=self.settings.http_timeout,
        )
        if llm is None and self.settings.gemini_enabled:
            llm = GeminiClient(
                self.settings.gemini_api_key or "",
                model=self.settings.gemini_model,
                throttle=RequestThrottle(self.settings.gemini_min_interval),
            )
        self.llm = llm
        self.spatial_search: SourceSearch = spatial_search or functools.partial(
            search_tagged_features,
            overpass_urls=self.settings.overpass_urls,
            throttle=RequestThrottle(self.settings.overpass_min_interval),
            timeout=self.settings.http_timeout,
        )
        self.address_search: SourceSearch = address_search or functools.partial(
            search_youth_clubs_by_address, geocoder=self.geocoder
        )

    async def __aenter__(self) -> "AccommodationSearch":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_geocoder:
            await self.geocoder.aclose()

    async def _run_source(
        self, run: _SearchRun, label: str, source: SourceSearch, center: Coordinate, radius_km: float
    ) -> list[Accommodation]:
        try:
            return await source(center, radius_km)
        except SearchCancelled:
            raise
        except Exception as exc:
            logger.exception("%s source failed", label)
            run.log(f"{label} unavailable: {exc}")
            return []

    async def iter_search(
        self,
        location: str,
        radius_km: float,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        """Yield progress events; the last one carries the final SearchResult.

        Raises LocationNotFound when the origin cannot be geocoded and
        SearchCancelled when *cancel_event* is set between steps.
        """
        if radius_km <= 0:
            raise ValueError("radius_km must be positive")

        run = _SearchRun()
        run.stage = SearchStage.GEOCODING
        run.log(f"Search started: {location} ({radius_km} km)")
        run.log("Step 1: geocoding location...")

        center = await self.geocoder.geocode(location)
        if center is None:
            run.stage = SearchStage.FAILED
            run.log("Location not found")
            yield run.event()
            raise LocationNotFound(location)

        run.log(f"Coordinates found: {center.lat:.4f}, {center.lon:.4f}")
        yield run.event()
        _check_cancelled(cancel_event)

        run.stage = SearchStage.SOURCE_SPATIAL
        run.log("Step 2: searching campsites and hostels...")
        spatial = await self._run_source(run, "OpenStreetMap", self.spatial_search, center, radius_km)
        run.fold(spatial)
        run.log(f"OpenStreetMap: {len(spatial)} results found")
        yield run.event()
        _check_cancelled(cancel_event)

        run.stage = SearchStage.SOURCE_ADDRESS
        run.log("Step 3: searching youth movements by address...")
        by_address = await self._run_source(run, "Address search", self.address_search, center, radius_km)
        run.fold(by_address)
        run.log(f"Address search: {len(by_address)} youth movements found")
        yield run.event()
        _check_cancelled(cancel_event)

        run.stage = SearchStage.SOURCE_GENERATIVE
        run.log("Step 4: AI-assisted search for youth movements...")
        if self.llm is None:
            run.log("Gemini API key not configured; skipping this step")
            yield run.event()
        else:
            async for event in self._iter_generative(run, location, center, radius_km, cancel_event):
                yield event
        _check_cancelled(cancel_event)

        run.stage = SearchStage.DEDUPLICATING
        run.log("Step 5: removing duplicates...")
        yield run.event()
        _check_cancelled(cancel_event)
        unique = deduplicate(run.collected, radius_km)
        run.log(f"{len(unique)} unique results after deduplication")

        grouped = group_by_type(unique)
        run.log(
            f"Total: {len(unique)} accommodations ("
            f"{len(grouped['hostel'])} hostels, "
            f"{len(grouped['camping'])} campsites, "
            f"{len(grouped['youth_movement'])} youth movements)"
        )

        run.stage = SearchStage.DONE
        final = SearchResult(
            results=unique,
            grouped=grouped,
            search_coordinates=center,
            logs=list(run.logs),
        )
        yield ProgressEvent(
            stage=run.stage,
            results=list(unique),
            logs=list(run.logs),
            final=final,
        )

    async def _iter_generative(
        self,
        run: _SearchRun,
        location: str,
        center: Coordinate,
        radius_km: float,
        cancel_event: asyncio.Event | None,
    ) -> AsyncIterator[ProgressEvent]:
        assert self.llm is not None
        city, country = split_location(location, self.settings.default_country)

        run.log(f"Researching which youth movement types exist in {country}...")
        try:
            known_types = await research_known_types(country, city, llm=self.llm)
        except Exception as exc:
            logger.exception("Youth movement type research failed")
            run.log(f"Type research unavailable: {exc}")
            known_types = []
        if known_types:
            run.log(f"{len(known_types)} types found: {', '.join(known_types)}")
        run.log(f"{len(build_search_terms(city, country, known_types))} search terms prepared")
        run.log(f"Searching youth movements in {city} with Gemini AI...")
        yield run.event()
        _check_cancelled(cancel_event)

        found = 0
        events = iter_generative_events(
            city, country, known_types, center, radius_km, llm=self.llm, geocoder=self.geocoder
        )
        try:
            async for event in events:
                if isinstance(event, GenerativeQuery):
                    yield run.event(query=event)
                    _check_cancelled(cancel_event)
                    continue
                found += 1
                if run.fold([event]):
                    yield run.event()
        except SearchCancelled:
            raise
        except Exception as exc:
            logger.exception("Generative search failed")
            run.log(f"Gemini search unavailable: {exc}")
        finally:
            await events.aclose()

        run.log(f"Gemini AI: {found} youth movements found")
        yield run.event()

    async def search(
        self,
        location: str,
        radius_km: float,
        on_gemini_query: QueryCallback | None = None,
        on_progress: ProgressCallback | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> SearchResult:
        """Run a full search, reporting through optional callbacks."""
        final: SearchResult | None = None
        async for event in self.iter_search(location, radius_km, cancel_event=cancel_event):
            if event.query is not None:
                if on_gemini_query is not None:
                    on_gemini_query(event.query.term, event.query.response_excerpt)
                continue
            if event.final is not None:
                final = event.final
            if on_progress is not None:
                on_progress(event.results, event.logs)
        if final is None:
            raise CampFinderError("Search ended without a result")
        return final
