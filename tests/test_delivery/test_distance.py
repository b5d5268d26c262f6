"""
Tests for postal code distance estimation.
"""

import httpx
import pytest

from payship.services.delivery.distance import DistanceEstimator, haversine_km

GEOCODER_URL = "https://geo.test/search"
ROUTING_URL = "https://route.test/route/v1/driving/"

# (lon, lat)
GORAKHPUR = (83.3732, 26.7606)
DELHI = (77.2090, 28.6139)

COORDINATES = {
    "273001": GORAKHPUR,
    "110001": DELHI,
}


class InMemoryCache:
    def __init__(self):
        self.values = {}

    async def get(self, postal_code):
        return self.values.get(postal_code)

    async def set(self, postal_code, coordinates):
        self.values[postal_code] = coordinates


def make_estimator(handler, cache=None) -> DistanceEstimator:
    return DistanceEstimator(
        geocoder_url=GEOCODER_URL,
        routing_url=ROUTING_URL,
        user_agent="payship-tests/1.0",
        cache=cache,
        transport=httpx.MockTransport(handler),
    )


def geocode_response(request: httpx.Request) -> httpx.Response:
    coordinates = COORDINATES.get(request.url.params.get("postalcode"))
    if coordinates is None:
        return httpx.Response(200, json=[])
    lon, lat = coordinates
    return httpx.Response(200, json=[{"lat": str(lat), "lon": str(lon)}])


class TestHaversine:
    """Test great-circle distance."""

    def test_same_point_is_zero(self) -> None:
        assert haversine_km(GORAKHPUR, GORAKHPUR) == 0.0

    def test_known_distance(self) -> None:
        distance = haversine_km(GORAKHPUR, DELHI)

        assert 600 < distance < 700
        assert distance == round(distance, 2)

    def test_symmetric(self) -> None:
        assert haversine_km(GORAKHPUR, DELHI) == haversine_km(DELHI, GORAKHPUR)


class TestDistanceEstimator:
    """Test geocoding, routing and fallbacks."""

    @pytest.mark.asyncio
    async def test_route_distance_used(self) -> None:
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.host == "geo.test":
                return geocode_response(request)
            return httpx.Response(200, json={"routes": [{"distance": 6340.0}]})

        distance = await make_estimator(handler).estimate("273001", "110001")

        assert distance == 6.34
        route_request = requests[-1]
        assert route_request.url.path == (
            f"/route/v1/driving/{GORAKHPUR[0]},{GORAKHPUR[1]};{DELHI[0]},{DELHI[1]}"
        )
        assert route_request.headers["User-Agent"] == "payship-tests/1.0"

    @pytest.mark.asyncio
    async def test_haversine_when_routing_fails(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "geo.test":
                return geocode_response(request)
            return httpx.Response(503)

        distance = await make_estimator(handler).estimate("273001", "110001")

        assert distance == haversine_km(GORAKHPUR, DELHI)

    @pytest.mark.asyncio
    async def test_haversine_when_no_routes(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "geo.test":
                return geocode_response(request)
            return httpx.Response(200, json={"code": "NoRoute", "routes": []})

        distance = await make_estimator(handler).estimate("273001", "110001")

        assert distance == haversine_km(GORAKHPUR, DELHI)

    @pytest.mark.asyncio
    async def test_none_when_postal_code_unknown(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "geo.test":
                return geocode_response(request)
            raise AssertionError("routing must not be called")

        assert await make_estimator(handler).estimate("273001", "999999") is None

    @pytest.mark.asyncio
    async def test_none_when_geocoder_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        assert await make_estimator(handler).estimate("273001", "110001") is None

    @pytest.mark.asyncio
    async def test_geocode_uses_cache(self) -> None:
        cache = InMemoryCache()
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return geocode_response(request)

        estimator = make_estimator(handler, cache=cache)

        first = await estimator.geocode("273001")
        second = await estimator.geocode("273001")

        assert first == second == GORAKHPUR
        assert len(calls) == 1
        assert cache.values["273001"] == GORAKHPUR
