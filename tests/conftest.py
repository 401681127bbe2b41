import sys
from pathlib import Path
from typing import Callable, Optional, Union

import pytest

# Ensure the project root is on sys.path for direct pytest runs
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from camp_finder.config import Settings  # noqa: E402
from camp_finder.geocoding import NominatimClient  # noqa: E402
from camp_finder.models import Accommodation, AccommodationType, Coordinate  # noqa: E402

TORHOUT = Coordinate(lat=51.0650, lon=3.1000)


class FakeGeocoder:
    """In-memory stand-in for NominatimClient."""

    def __init__(
        self,
        places: Optional[dict[str, Coordinate]] = None,
        hits: Optional[dict[str, list[dict]]] = None,
        reverse_address: Optional[dict] = None,
    ) -> None:
        self.places = places or {}
        self.hits = hits or {}
        self.reverse_address = reverse_address if reverse_address is not None else {"town": "Torhout"}
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    async def geocode(self, query: str) -> Optional[Coordinate]:
        self.calls.append(("geocode", query))
        return self.places.get(query)

    async def search(self, query: str, *, limit: int = 15) -> list[dict]:
        self.calls.append(("search", query))
        return list(self.hits.get(query, []))[:limit]

    suggest = NominatimClient.suggest

    async def reverse(self, lat: float, lon: float) -> dict:
        self.calls.append(("reverse", f"{lat},{lon}"))
        return dict(self.reverse_address)

    async def aclose(self) -> None:
        self.closed = True

    async def __aenter__(self) -> "FakeGeocoder":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


Reply = Union[str, Exception]


class FakeLLM:
    """Answers prompts from a callable or a queue of canned replies."""

    def __init__(self, replies: Union[Callable[[str], Reply], list[Reply], None] = None) -> None:
        self.replies = replies if replies is not None else []
        self.prompts: list[str] = []

    async def generate(self, prompt: str, *, json_output: bool = False) -> str:
        self.prompts.append(prompt)
        if callable(self.replies):
            reply = self.replies(prompt)
        elif self.replies:
            reply = self.replies.pop(0)
        else:
            reply = "[]"
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def settings() -> Settings:
    return Settings(
        nominatim_min_interval=0.0,
        overpass_min_interval=0.0,
        gemini_min_interval=0.0,
        gemini_api_key=None,
    )


@pytest.fixture
def origin() -> Coordinate:
    return TORHOUT


@pytest.fixture
def make_accommodation() -> Callable[..., Accommodation]:
    counter = iter(range(1, 10_000))

    def _make(**overrides) -> Accommodation:
        values = {
            "id": f"test-{next(counter)}",
            "name": "Jeugdherberg De Valk",
            "type": AccommodationType.HOSTEL,
            "latitude": TORHOUT.lat,
            "longitude": TORHOUT.lon,
            "distance": 0.0,
            "source": "test",
        }
        values.update(overrides)
        return Accommodation(**values)

    return _make

