"""Data models used across the camp accommodation finder."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional


class AccommodationType(str, Enum):
    HOSTEL = "hostel"
    CAMPING = "camping"
    YOUTH_MOVEMENT = "youth_movement"


ACCOMMODATION_TYPES: tuple[AccommodationType, ...] = (
    AccommodationType.HOSTEL,
    AccommodationType.CAMPING,
    AccommodationType.YOUTH_MOVEMENT,
)


class SearchStage(str, Enum):
    IDLE = "idle"
    GEOCODING = "geocoding"
    SOURCE_SPATIAL = "source_spatial"
    SOURCE_ADDRESS = "source_address"
    SOURCE_GENERATIVE = "source_generative"
    DEDUPLICATING = "deduplicating"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class Coordinate:
    lat: float
    lon: float

    def to_dict(self) -> dict[str, float]:
        return {"lat": self.lat, "lon": self.lon}


@dataclass(slots=True)
class Accommodation:
    """A hostel, campsite or youth-movement venue found by one source."""

    id: str
    name: str
    type: AccommodationType
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    distance: Optional[float] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    description: Optional[str] = None
    capacity: Optional[int] = None
    price_range: Optional[str] = None
    amenities: list[str] = field(default_factory=list)
    images: list[str] = field(default_factory=list)
    source: str = ""
    low_confidence: bool = False
    website_verified: Optional[bool] = None

    @property
    def is_placeable(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def with_updates(self, **changes: Any) -> "Accommodation":
        if "type" in changes and changes["type"] != self.type:
            raise ValueError("Accommodation type is fixed at creation")
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "address": self.address,
            "city": self.city,
            "country": self.country,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "distance": self.distance,
            "phone": self.phone,
            "email": self.email,
            "website": self.website,
            "description": self.description,
            "capacity": self.capacity,
            "priceRange": self.price_range,
            "amenities": list(self.amenities),
            "images": list(self.images),
            "source": self.source,
            "lowConfidence": self.low_confidence,
            "websiteVerified": self.website_verified,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Accommodation":
        """Inverse of to_dict; unknown keys are ignored."""
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            type=AccommodationType(data["type"]),
            address=data.get("address"),
            city=data.get("city"),
            country=data.get("country"),
            latitude=_optional_float(data.get("latitude")),
            longitude=_optional_float(data.get("longitude")),
            distance=_optional_float(data.get("distance")),
            phone=data.get("phone"),
            email=data.get("email"),
            website=data.get("website"),
            description=data.get("description"),
            capacity=data.get("capacity"),
            price_range=data.get("priceRange"),
            amenities=list(data.get("amenities") or []),
            images=list(data.get("images") or []),
            source=str(data.get("source") or ""),
            low_confidence=bool(data.get("lowConfidence", False)),
            website_verified=data.get("websiteVerified"),
        )


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass(frozen=True, slots=True)
class GenerativeQuery:
    """One model call as shown in the live console."""

    term: str
    response_excerpt: str

    def to_dict(self) -> dict[str, str]:
        return {"query": self.term, "response": self.response_excerpt}


@dataclass(slots=True)
class SearchResult:
    """Final, deduplicated output of one search invocation."""

    results: list[Accommodation]
    grouped: dict[str, list[Accommodation]]
    search_coordinates: Optional[Coordinate]
    logs: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [item.to_dict() for item in self.results],
            "grouped": {
                key: [item.to_dict() for item in items]
                for key, items in self.grouped.items()
            },
            "searchCoordinates": (
                self.search_coordinates.to_dict() if self.search_coordinates else None
            ),
            "logs": list(self.logs),
        }


@dataclass(slots=True)
class ProgressEvent:
    """Snapshot emitted by the pipeline while a search is running."""

    stage: SearchStage
    results: list[Accommodation]
    logs: list[str]
    query: Optional[GenerativeQuery] = None
    final: Optional[SearchResult] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "stage": self.stage.value,
            "results": [item.to_dict() for item in self.results],
            "logs": list(self.logs),
        }
        if self.query is not None:
            payload["query"] = self.query.to_dict()
        if self.final is not None:
            payload["final"] = self.final.to_dict()
        return payload
