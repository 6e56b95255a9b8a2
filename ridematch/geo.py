"""Geographic helpers: Haversine distance, locations and the geocoding provider."""

from dataclasses import dataclass
from math import radians, sin, cos, atan2, sqrt
from typing import Optional, Protocol, Tuple, Union
from urllib.parse import quote
import logging

import httpx

from .exceptions import UpstreamUnavailable, ValidationError

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometers (half-angle Haversine)."""
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    a = sin(dlat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_KM * c


@dataclass(frozen=True)
class Point:
    lat: float
    lon: float

    def __post_init__(self):
        if not -90 <= self.lat <= 90:
            raise ValidationError(f"latitude {self.lat} out of range [-90, 90]")
        if not -180 <= self.lon <= 180:
            raise ValidationError(f"longitude {self.lon} out of range [-180, 180]")

    def distance_to(self, other: "Point") -> float:
        return distance_km(self.lat, self.lon, other.lat, other.lon)


@dataclass(frozen=True)
class Address:
    text: str


Location = Union[Point, Address]


class GeoProvider(Protocol):
    async def geocode(self, address: str) -> Point: ...

    async def reverse_geocode(self, lat: float, lon: float) -> str: ...

    async def route_distance_duration(self, lat1: float, lon1: float, lat2: float, lon2: float) -> Tuple[float, int]: ...


class MapboxGeoProvider:
    """GeoProvider backed by the Mapbox geocoding and directions APIs.

    Every failure (missing token, transport error, non-2xx answer, empty
    result) is raised as UpstreamUnavailable.
    """

    def __init__(self, access_token: str, base_url: str = "https://api.mapbox.com", timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.access_token = access_token
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    async def _get(self, path: str, params: dict) -> dict:
        if not self.access_token:
            raise UpstreamUnavailable("Mapbox access token is not configured")
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                resp = await client.get(path, params={**params, "access_token": self.access_token})
                resp.raise_for_status()
                return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("mapbox_request_failed: path=%s error=%s", path, e)
            raise UpstreamUnavailable(f"Mapbox request failed: {e}") from e

    async def geocode(self, address: str) -> Point:
        data = await self._get(f"/geocoding/v5/mapbox.places/{quote(address, safe='')}.json", {"limit": 1})
        features = data.get("features") or []
        if not features or "center" not in features[0]:
            raise UpstreamUnavailable(f"No results found for address: {address}")
        # Mapbox answers [lon, lat]
        lon, lat = features[0]["center"][:2]
        return Point(float(lat), float(lon))

    async def reverse_geocode(self, lat: float, lon: float) -> str:
        data = await self._get(f"/geocoding/v5/mapbox.places/{lon},{lat}.json", {"limit": 1})
        features = data.get("features") or []
        if not features or "place_name" not in features[0]:
            raise UpstreamUnavailable("No results found for coordinates")
        return features[0]["place_name"]

    async def route_distance_duration(self, lat1: float, lon1: float, lat2: float, lon2: float) -> Tuple[float, int]:
        data = await self._get(f"/directions/v5/mapbox/driving/{lon1},{lat1};{lon2},{lat2}", {"geometries": "geojson"})
        routes = data.get("routes") or []
        if not routes:
            raise UpstreamUnavailable("No route found between points")
        route = routes[0]
        # meters -> km, seconds -> minutes
        km = round(route.get("distance", 0) / 1000, 2)
        minutes = int(round(route.get("duration", 0) / 60))
        return km, minutes


class LocationResolver:
    """Turns a Location into a Point, degrading to a fallback point when geocoding fails."""

    def __init__(self, provider: GeoProvider, fallback: Point):
        self.provider = provider
        self.fallback = fallback

    async def resolve(self, location: Location) -> Point:
        if isinstance(location, Point):
            return location
        try:
            return await self.provider.geocode(location.text)
        except UpstreamUnavailable as e:
            logger.warning("geocode_fallback: address=%r error=%s fallback=%s", location.text, e, self.fallback)
            return self.fallback

    async def describe(self, point: Point) -> Optional[str]:
        try:
            return await self.provider.reverse_geocode(point.lat, point.lon)
        except UpstreamUnavailable as e:
            logger.warning("reverse_geocode_failed: point=%s error=%s", point, e)
            return None
