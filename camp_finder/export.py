"""CSV export of search results."""

from __future__ import annotations

import csv
from typing import IO, Any, Iterable

from .models import Accommodation

CSV_FIELDNAMES = [
    "name",
    "type",
    "address",
    "city",
    "country",
    "latitude",
    "longitude",
    "distance_km",
    "phone",
    "email",
    "website",
    "website_verified",
    "source",
    "low_confidence",
]


def accommodation_row(item: Accommodation) -> dict[str, Any]:
    return {
        "name": item.name,
        "type": item.type.value,
        "address": item.address or "",
        "city": item.city or "",
        "country": item.country or "",
        "latitude": item.latitude if item.latitude is not None else "",
        "longitude": item.longitude if item.longitude is not None else "",
        "distance_km": f"{item.distance:.2f}" if item.distance is not None else "",
        "phone": item.phone or "",
        "email": item.email or "",
        "website": item.website or "",
        "website_verified": "" if item.website_verified is None else str(item.website_verified).lower(),
        "source": item.source,
        "low_confidence": "true" if item.low_confidence else "",
    }


def write_csv(handle: IO[str], items: Iterable[Accommodation]) -> None:
    writer = csv.DictWriter(handle, fieldnames=CSV_FIELDNAMES)
    writer.writeheader()
    for item in items:
        writer.writerow(accommodation_row(item))
