"""
Distance estimation between two postal codes.

Postal codes are geocoded (Nominatim-style search API), then a driving route
is requested from an OSRM-style router. If routing fails the great-circle
distance is used instead. Any geocoding failure gives ``None`` so the caller
can apply its own fallback distance; nothing here raises into pricing.
"""

import asyncio
import math
from typing import Optional, Protocol

import httpx
from redis.exceptions import RedisError

from payship.cache.redis_client import get_redis_client, make_cache_key
from payship.core.config import Settings, get_settings
from payship.core.logging import get_logger

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0

# (longitude, latitude), the order the routing API expects
Coordinates = tuple[float, float]


class CoordinateCache(Protocol):
    async def get(self, postal_code: str) -> Optional[Coordinates]: ...

    async def set(self, postal_code: str, coordinates: Coordinates) -> None: ...


def haversine_km(origin: Coordinates, destination: Coordinates) -> float:
    """
    Great-circle distance between two (lon, lat) points, rounded to 2 places.
    """
    lon1, lat1 = origin
    lon2, lat2 = destination
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return round(EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a)), 2)


class DistanceEstimator:
    """
    Postal-code to postal-code distance with routing and haversine fallback.
    """

    def __init__(
        self,
        geocoder_url: str,
        routing_url: str,
        user_agent: str,
        country_code: str = "in",
        geocoding_timeout: float = 5.0,
        routing_timeout: float = 5.0,
        cache: Optional[CoordinateCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.geocoder_url = geocoder_url
        self.routing_url = routing_url.rstrip("/")
        self.user_agent = user_agent
        self.country_code = country_code
        self.geocoding_timeout = geocoding_timeout
        self.routing_timeout = routing_timeout
        self.cache = cache
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": self.user_agent},
            transport=self._transport,
        )

    async def estimate(self, from_postal_code: str, to_postal_code: str) -> Optional[float]:
        """
        Estimate the travel distance in kilometres.

        Args:
            from_postal_code: Origin postal code
            to_postal_code: Destination postal code

        Returns:
            Distance in km rounded to 2 places, or None if either postal code
            could not be geocoded
        """
        origin, destination = await asyncio.gather(
            self.geocode(from_postal_code),
            self.geocode(to_postal_code),
        )
        if origin is None or destination is None:
            logger.info(
                "Distance unavailable, geocoding failed",
                from_postal_code=from_postal_code,
                to_postal_code=to_postal_code,
            )
            return None

        distance = await self.route_distance(origin, destination)
        if distance is None:
            distance = haversine_km(origin, destination)
            logger.info(
                "Using great-circle distance",
                from_postal_code=from_postal_code,
                to_postal_code=to_postal_code,
                distance_km=distance,
            )
        return distance

    async def geocode(self, postal_code: str) -> Optional[Coordinates]:
        """Resolve a postal code to (lon, lat), or None on any failure."""
        if self.cache is not None:
            cached = await self.cache.get(postal_code)
            if cached is not None:
                return cached

        params = {
            "format": "json",
            "countrycodes": self.country_code,
            "postalcode": postal_code,
            "limit": 1,
        }
        try:
            async with self._client(self.geocoding_timeout) as client:
                response = await client.get(self.geocoder_url, params=params)
            response.raise_for_status()
            results = response.json()
            if not results:
                return None
            coordinates = (float(results[0]["lon"]), float(results[0]["lat"]))
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning("Geocoding failed", postal_code=postal_code, error=str(e))
            return None

        if self.cache is not None:
            await self.cache.set(postal_code, coordinates)
        return coordinates

    async def route_distance(
        self, origin: Coordinates, destination: Coordinates
    ) -> Optional[float]:
        """Driving distance in km from the routing service, or None on failure."""
        url = (
            f"{self.routing_url}/{origin[0]},{origin[1]};{destination[0]},{destination[1]}"
        )
        try:
            async with self._client(self.routing_timeout) as client:
                response = await client.get(url, params={"overview": "false"})
            response.raise_for_status()
            routes = response.json().get("routes") or []
            meters = routes[0].get("distance") if routes else None
        except (httpx.HTTPError, ValueError, AttributeError, TypeError) as e:
            logger.warning("Routing request failed", error=str(e))
            return None

        if not meters:
            return None
        return round(float(meters) / 1000, 2)


class RedisCoordinateCache:
    """Coordinate cache on Redis; every Redis problem is treated as a miss."""

    def __init__(self, ttl_seconds: int):
        self.ttl_seconds = ttl_seconds

    async def _client(self):
        try:
            return await get_redis_client()
        except (RedisError, OSError) as e:
            logger.debug("Coordinate cache unavailable", error=str(e))
            return None

    async def get(self, postal_code: str) -> Optional[Coordinates]:
        client = await self._client()
        if client is None:
            return None
        try:
            value = await client.get_json(make_cache_key("geocode", postal_code))
        except (RedisError, ValueError) as e:
            logger.debug("Coordinate cache read failed", postal_code=postal_code, error=str(e))
            return None
        return (float(value[0]), float(value[1])) if value else None

    async def set(self, postal_code: str, coordinates: Coordinates) -> None:
        client = await self._client()
        if client is None:
            return
        try:
            await client.set_json(
                make_cache_key("geocode", postal_code),
                list(coordinates),
                ex=self.ttl_seconds or None,
            )
        except RedisError as e:
            logger.debug("Coordinate cache write failed", postal_code=postal_code, error=str(e))


def get_distance_estimator(
    settings: Optional[Settings] = None,
    use_cache: bool = True,
) -> DistanceEstimator:
    """Build a distance estimator from application settings."""
    settings = settings or get_settings()
    cache = (
        RedisCoordinateCache(settings.geocode_cache_ttl_seconds)
        if use_cache and settings.geocode_cache_ttl_seconds
        else None
    )
    return DistanceEstimator(
        geocoder_url=settings.geocoder_url,
        routing_url=settings.routing_url,
        user_agent=settings.geocoder_user_agent,
        country_code=settings.geocoder_country_code,
        geocoding_timeout=settings.geocoding_timeout_seconds,
        routing_timeout=settings.routing_timeout_seconds,
        cache=cache,
    )
