"""Exception types raised by the camp finder."""

from __future__ import annotations


class CampFinderError(RuntimeError):
    """Base class for camp finder errors."""


class LocationNotFound(CampFinderError):
    """Raised when the search origin cannot be geocoded."""

    def __init__(self, location: str) -> None:
        super().__init__(
            f"Location '{location}' not found. Try another place name."
        )
        self.location = location


class SearchCancelled(CampFinderError):
    """Raised when a running search is cancelled between steps."""


class SourceUnavailable(CampFinderError):
    """Raised when an upstream source fails (network or non-2xx)."""


class MalformedResponse(CampFinderError):
    """Raised when an upstream response cannot be parsed."""


class EnrichmentError(CampFinderError):
    """Raised when an on-demand enrichment request cannot be completed."""
