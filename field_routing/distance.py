"""
Google Maps integration for geocoding and travel matrices.
Handles rate limiting, retries, chunking, and the straight-line fallback.
"""

import asyncio
import hashlib
import logging
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field

import httpx
from .errors import ProviderFailure
from .schemas import AppConfig, Settings
from .util.geo import km, minutes_from_km


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Coordinates:
    """Geographic coordinates."""
    lat: float
    lon: float


@dataclass
class RouteMatrix:
    """Distance and duration matrix over one list of points."""
    points: List[Coordinates]
    durations_minutes: List[List[float]]  # [origin_idx][dest_idx] = minutes
    distances_km: List[List[float]]       # [origin_idx][dest_idx] = km
    source: str = "haversine"             # google | haversine | mock
    includes_traffic: bool = False
    warnings: List[str] = field(default_factory=list)

    def get_duration(self, origin_idx: int, dest_idx: int) -> float:
        """Get duration in minutes between two points."""
        return self.durations_minutes[origin_idx][dest_idx]

    def get_distance(self, origin_idx: int, dest_idx: int) -> float:
        """Get distance in km between two points."""
        return self.distances_km[origin_idx][dest_idx]


def haversine_matrix(points: List[Coordinates], config: AppConfig, source: str = "haversine") -> RouteMatrix:
    """Straight-line matrix scaled by a road factor at the configured average speed."""
    road_factor = config.solver.road_factor
    speed = config.solver.average_speed_kmh
    durations: List[List[float]] = []
    distances: List[List[float]] = []
    for origin in points:
        d_row = []
        t_row = []
        for dest in points:
            if origin == dest:
                d_row.append(0.0)
                t_row.append(0.0)
                continue
            road_km = km(origin.lat, origin.lon, dest.lat, dest.lon) * road_factor
            d_row.append(road_km)
            t_row.append(minutes_from_km(road_km, speed))
        distances.append(d_row)
        durations.append(t_row)
    return RouteMatrix(points=list(points), durations_minutes=durations,
                       distances_km=distances, source=source)


class GoogleMapsClient:
    """Google Maps API client with rate limiting and retry logic."""

    UNREACHABLE = 999999.0

    def __init__(self, config: AppConfig, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        """Initialize Google Maps client."""
        self.config = config
        self.api_key = settings.google_maps_api_key
        self.base_url = config.google.base_url.rstrip("/")

        # Rate limiting
        self.last_request_time = 0.0
        self.min_request_interval = 1.0 / config.google.rate_limit_requests_per_second
        self._rate_lock = asyncio.Lock()

        self.client = client or httpx.AsyncClient(timeout=config.providers.timeout_seconds)

        if not self.api_key and not config.dev.mock_google_api:
            logger.warning("Google Maps API key not configured - using straight-line distances")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key) and not self.config.dev.mock_google_api

    async def _rate_limited_request(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Make a rate-limited HTTP request with bounded retries.

        Raises ProviderFailure once the retries are exhausted.
        """
        params = dict(params, key=self.api_key)
        attempts = self.config.providers.max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            async with self._rate_lock:
                since_last = time.monotonic() - self.last_request_time
                if since_last < self.min_request_interval:
                    await asyncio.sleep(self.min_request_interval - since_last)
                self.last_request_time = time.monotonic()
            try:
                response = await self.client.get(url, params=params)
                response.raise_for_status()
                data = response.json()

                status = data.get("status")
                if status == "OK":
                    return data
                if status in ("ZERO_RESULTS", "NOT_FOUND"):
                    logger.warning(f"Google API returned {status}")
                    return data
                last_error = ProviderFailure(f"Google API error: {status}")
            except (httpx.HTTPError, ValueError) as e:
                last_error = e

            logger.warning(f"Google request attempt {attempt + 1}/{attempts} failed: {last_error}")
            if attempt < attempts - 1:
                await asyncio.sleep(self.config.providers.retry_delay_seconds * (2 ** attempt))

        raise ProviderFailure(f"Google Maps unavailable after {attempts} attempts: {last_error}")

    async def geocode_address(self, address: str) -> Optional[Coordinates]:
        """Geocode an address; None when the address has no match."""
        if self.config.dev.mock_google_api:
            return self._mock_geocode(address)

        if not self.api_key:
            raise ProviderFailure("Cannot geocode without Google Maps API key")

        data = await self._rate_limited_request(f"{self.base_url}/geocode/json", {"address": address})
        if data.get("status") == "OK" and data.get("results"):
            location = data["results"][0]["geometry"]["location"]
            return Coordinates(lat=location["lat"], lon=location["lng"])
        return None

    async def compute_route_matrix(
        self,
        points: List[Coordinates],
        departure_time: Optional[datetime] = None
    ) -> RouteMatrix:
        """
        Compute a square matrix with the Distance Matrix API.
        Requests are split into chunk x chunk blocks to stay under element limits.
        """
        n = len(points)
        chunk = self.config.google.matrix_chunk_size
        durations = [[0.0] * n for _ in range(n)]
        distances = [[0.0] * n for _ in range(n)]

        base_params: Dict[str, Any] = {
            "units": "metric",
            "traffic_model": self.config.google.traffic_model.lower(),
        }
        if departure_time is not None and departure_time > datetime.now(timezone.utc):
            base_params["departure_time"] = int(departure_time.timestamp())

        logger.info(f"Computing distance matrix for {n}x{n} locations")
        for o_start in range(0, n, chunk):
            origins = points[o_start:o_start + chunk]
            for d_start in range(0, n, chunk):
                dests = points[d_start:d_start + chunk]
                params = dict(
                    base_params,
                    origins="|".join(f"{c.lat},{c.lon}" for c in origins),
                    destinations="|".join(f"{c.lat},{c.lon}" for c in dests),
                )
                data = await self._rate_limited_request(f"{self.base_url}/distancematrix/json", params)
                if data.get("status") != "OK":
                    raise ProviderFailure(f"Distance Matrix returned {data.get('status')}")
                self._fill_block(data, durations, distances, o_start, d_start)

        return RouteMatrix(
            points=list(points),
            durations_minutes=durations,
            distances_km=distances,
            source="google",
            includes_traffic="departure_time" in base_params,
        )

    def _fill_block(self, data: Dict[str, Any], durations, distances, o_start: int, d_start: int) -> None:
        """Copy one Distance Matrix response block into the full matrix."""
        for i, row in enumerate(data["rows"]):
            for j, element in enumerate(row["elements"]):
                oi, dj = o_start + i, d_start + j
                if oi == dj:
                    continue
                if element.get("status") == "OK":
                    seconds = element["duration_in_traffic"]["value"] \
                        if "duration_in_traffic" in element \
                        else element["duration"]["value"]
                    durations[oi][dj] = seconds / 60.0
                    distances[oi][dj] = element["distance"]["value"] / 1000.0
                else:
                    durations[oi][dj] = self.UNREACHABLE
                    distances[oi][dj] = self.UNREACHABLE
                    logger.warning(f"No route from origin {oi} to destination {dj}: {element.get('status')}")

    def _mock_geocode(self, address: str) -> Coordinates:
        """Stable hash-based coordinates for development and tests."""
        digest = int(hashlib.sha256(address.strip().lower().encode("utf-8")).hexdigest(), 16)
        lat = 34.0 + (digest % 1000) / 10000.0           # 34.0000 to 34.0999
        lon = -118.5 + ((digest // 1000) % 5000) / 10000.0  # -118.5000 to -118.0001
        logger.debug(f"Mock geocoding -> ({lat:.6f}, {lon:.6f})")
        return Coordinates(lat=lat, lon=lon)

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


class DistanceProvider:
    """High-level interface for geocoding and travel matrices."""

    def __init__(self, config: AppConfig, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        """Initialize distance provider."""
        self.config = config
        self.google_client = GoogleMapsClient(config, settings, client)
        self._geocoding_cache: Dict[str, Coordinates] = {}
        self._semaphore = asyncio.Semaphore(config.providers.max_concurrency)

    async def geocode(self, address: str) -> Optional[Coordinates]:
        """Geocode one address, using the cache when enabled."""
        key = address.strip().lower()
        if self.config.dev.cache_geocoding and key in self._geocoding_cache:
            return self._geocoding_cache[key]
        async with self._semaphore:
            coords = await self.google_client.geocode_address(address)
        if coords and self.config.dev.cache_geocoding:
            self._geocoding_cache[key] = coords
        return coords

    async def geocode_locations(self, addresses: List[str]) -> Dict[str, Optional[Coordinates]]:
        """Geocode several addresses concurrently.

        Failed lookups map to None; the caller decides how to report them.
        """
        unique = sorted(set(addresses))
        results = await asyncio.gather(*(self.geocode(a) for a in unique), return_exceptions=True)
        out: Dict[str, Optional[Coordinates]] = {}
        for address, result in zip(unique, results):
            if isinstance(result, ProviderFailure):
                logger.warning(f"Geocoding failed: {result}")
                out[address] = None
            elif isinstance(result, BaseException):
                raise result
            else:
                out[address] = result
        return out

    async def compute_travel_matrix(
        self,
        points: List[Coordinates],
        departure_time: Optional[datetime] = None
    ) -> RouteMatrix:
        """Travel matrix between all point pairs.

        Uses Google when configured; otherwise straight-line estimates.
        Raises ProviderFailure when Google is configured but unreachable.
        """
        if not points:
            return RouteMatrix(points=[], durations_minutes=[], distances_km=[])
        if self.config.dev.mock_google_api:
            return haversine_matrix(points, self.config, source="mock")
        if not self.google_client.enabled:
            return haversine_matrix(points, self.config)
        return await self.google_client.compute_route_matrix(points, departure_time)

    def fallback_matrix(self, points: List[Coordinates]) -> RouteMatrix:
        return haversine_matrix(points, self.config)

    @property
    def google_configured(self) -> bool:
        return self.google_client.enabled

    async def close(self):
        """Clean up resources."""
        await self.google_client.close()
