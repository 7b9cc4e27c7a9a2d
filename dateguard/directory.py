"""Nearest police / authority lookup."""
import logging
import math
from dataclasses import dataclass, asdict
from typing import Optional, Protocol

import httpx

from .config import Settings

log = logging.getLogger(__name__)

PLACES_BASE = "https://maps.googleapis.com/maps/api/place"
SEARCH_RADIUS_M = 5000
KM_PER_DEGREE = 111.0
MILES_PER_KM = 0.621371


class DirectoryError(Exception):
    pass


@dataclass
class AuthorityContact:
    name: str
    address: str
    phone: str
    distance: float  # miles
    distance_meters: int
    google_maps_link: str
    place_id: Optional[str] = None
    test_mode: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def maps_search_link(lat: float, lng: float) -> str:
    return f"https://www.google.com/maps/search/?api=1&query={lat},{lng}"


def approx_distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    # Equirectangular approximation, fine at city scale
    dy = (lat2 - lat1) * KM_PER_DEGREE
    dx = (lng2 - lng1) * KM_PER_DEGREE * math.cos(math.radians(lat1))
    return math.hypot(dx, dy)


class AuthorityDirectory(Protocol):
    def nearest(self, lat: float, lng: float) -> Optional[AuthorityContact]: ...


class GooglePlacesDirectory:
    def __init__(self, api_key: str, client: Optional[httpx.Client] = None):
        self.api_key = api_key
        self.client = client or httpx.Client(timeout=10)

    def nearest(self, lat: float, lng: float) -> Optional[AuthorityContact]:
        r = self.client.get(f"{PLACES_BASE}/nearbysearch/json", params={
            "location": f"{lat},{lng}", "radius": SEARCH_RADIUS_M, "type": "police", "key": self.api_key,
        })
        r.raise_for_status()
        data = r.json()
        if data.get("status") not in ("OK", "ZERO_RESULTS"):
            raise DirectoryError(f"Google Places API error: {data.get('status')}")
        results = data.get("results") or []
        if not results:
            return None

        top = results[0]
        place = top["geometry"]["location"]
        km = approx_distance_km(lat, lng, place["lat"], place["lng"])
        return AuthorityContact(
            name=top.get("name", "Police"),
            address=top.get("vicinity") or top.get("formatted_address") or "Address not available",
            phone=self._phone(top.get("place_id")),
            distance=round(km * MILES_PER_KM, 1),
            distance_meters=round(km * 1000),
            google_maps_link=maps_search_link(place["lat"], place["lng"]),
            place_id=top.get("place_id"),
        )

    def _phone(self, place_id: Optional[str]) -> str:
        if not place_id:
            return "Not available"
        try:
            r = self.client.get(f"{PLACES_BASE}/details/json", params={
                "place_id": place_id, "fields": "formatted_phone_number", "key": self.api_key,
            })
            r.raise_for_status()
            return r.json().get("result", {}).get("formatted_phone_number") or "Not available"
        except httpx.HTTPError as e:
            log.warning("could not fetch phone for place %s: %s", place_id, e)
            return "Not available"


class NullAuthorityDirectory:
    """Used without a Places key: points the user at generic emergency services."""

    def nearest(self, lat: float, lng: float) -> Optional[AuthorityContact]:
        log.info("directory simulation mode - returning generic emergency contact for %s,%s", lat, lng)
        return AuthorityContact(
            name="Local emergency services",
            address="Nearest police station",
            phone="911",
            distance=0.0,
            distance_meters=0,
            google_maps_link=maps_search_link(lat, lng),
            test_mode=True,
        )


def build_directory(settings: Settings) -> AuthorityDirectory:
    if settings.google_places_api_key:
        return GooglePlacesDirectory(settings.google_places_api_key)
    log.warning("GOOGLE_PLACES_API_KEY not configured - authority lookup runs in simulation mode")
    return NullAuthorityDirectory()
