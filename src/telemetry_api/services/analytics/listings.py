"""Read-only access to listing details used to enrich top-property reports."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Iterable, Protocol


@dataclass(slots=True)
class ListingSummary:
    listing_id: str
    street_address: str | None = None
    city: str | None = None
    list_price: int | None = None
    bedrooms: int | None = None
    bathrooms: float | None = None
    photo_url: str | None = None
    property_sub_type: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class ListingLookup(Protocol):
    async def get_listings(self, listing_ids: Iterable[str]) -> dict[str, ListingSummary]:
        ...


class NullListingLookup:
    """Lookup used when no listing store is wired in; knows nothing."""

    async def get_listings(self, listing_ids: Iterable[str]) -> dict[str, ListingSummary]:
        return {}


class StaticListingLookup:
    """In-memory lookup, handy for fixtures and manual backfills."""

    def __init__(self, listings: Iterable[ListingSummary]) -> None:
        self._listings = {listing.listing_id: listing for listing in listings}

    async def get_listings(self, listing_ids: Iterable[str]) -> dict[str, ListingSummary]:
        return {listing_id: self._listings[listing_id] for listing_id in listing_ids if listing_id in self._listings}


__all__ = ["ListingLookup", "ListingSummary", "NullListingLookup", "StaticListingLookup"]
