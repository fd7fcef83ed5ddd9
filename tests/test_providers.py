"""
Provider failure handling: retries, straight-line and no-delay fallbacks,
and the strict policy.
"""

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from field_routing.distance import Coordinates, DistanceProvider
from field_routing.errors import DependencyUnavailable, NotFound, ProviderFailure
from field_routing.integrations.openweather import OpenWeatherClient
from field_routing.models import TaskStatus
from field_routing.schemas import AppConfig, OptimizationParameters, OptimizeRequest, Settings

from conftest import DAY


def live_config() -> AppConfig:
    return AppConfig(
        providers={"max_retries": 2, "retry_delay_seconds": 0},
        google={"rate_limit_requests_per_second": 100},
        dev={"mock_google_api": False, "mock_weather_api": False},
    )


def mock_client(responses, calls):
    """AsyncClient answering from ``responses`` in order, repeating the last one."""
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        status, body = responses[min(len(calls) - 1, len(responses) - 1)]
        return httpx.Response(status, json=body)
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def daily_forecast(day: str = DAY, wind_ms: float = 5.0):
    noon = datetime.fromisoformat(day).replace(hour=12, tzinfo=timezone.utc)
    return {
        "daily": [{
            "dt": int(noon.timestamp()),
            "weather": [{"main": "Rain", "description": "light rain"}],
            "temp": {"day": 17.5},
            "rain": 3.0,
            "wind_speed": wind_ms,
            "humidity": 80,
        }],
    }


def test_weather_request_retries_then_parses_metric_values():
    calls = []

    async def fetch():
        http = mock_client([(503, {}), (503, {}), (200, daily_forecast())], calls)
        client = OpenWeatherClient(live_config(), Settings(openweather_api_key="key"), http)
        try:
            return await client.forecast(40.0, -75.0, DAY)
        finally:
            await client.close()

    result = asyncio.run(fetch())

    assert len(calls) == 3
    assert calls[0].url.params["units"] == "metric"
    assert result.condition == "Rain"
    assert result.precipitation_mm == 3.0
    assert result.wind_kmh == 18.0
    assert result.temperature_c == 17.5


def test_weather_request_gives_up_after_retries():
    calls = []

    async def fetch():
        http = mock_client([(500, {})], calls)
        client = OpenWeatherClient(live_config(), Settings(openweather_api_key="key"), http)
        try:
            return await client.forecast(40.0, -75.0, DAY)
        finally:
            await client.close()

    with pytest.raises(ProviderFailure, match="after 3 attempts"):
        asyncio.run(fetch())
    assert len(calls) == 3


def matrix_body():
    def element(seconds, meters):
        return {"status": "OK", "duration": {"value": seconds}, "distance": {"value": meters}}
    return {
        "status": "OK",
        "rows": [
            {"elements": [element(0, 0), element(600, 5000)]},
            {"elements": [element(660, 5200), element(0, 0)]},
        ],
    }


def test_matrix_request_retries_on_api_error():
    calls = []
    points = [Coordinates(lat=40.0, lon=-75.0), Coordinates(lat=40.03, lon=-75.0)]

    async def fetch():
        http = mock_client([(200, {"status": "UNKNOWN_ERROR"}), (200, matrix_body())], calls)
        provider = DistanceProvider(live_config(), Settings(google_maps_api_key="key"), http)
        try:
            return await provider.compute_travel_matrix(points)
        finally:
            await provider.close()

    matrix = asyncio.run(fetch())

    assert len(calls) == 2
    assert matrix.source == "google"
    assert matrix.get_duration(0, 1) == 10.0
    assert matrix.get_distance(1, 0) == 5.2


def test_matrix_request_gives_up_after_retries():
    calls = []
    points = [Coordinates(lat=40.0, lon=-75.0), Coordinates(lat=40.03, lon=-75.0)]

    async def fetch():
        http = mock_client([(502, {})], calls)
        provider = DistanceProvider(live_config(), Settings(google_maps_api_key="key"), http)
        try:
            return await provider.compute_travel_matrix(points)
        finally:
            await provider.close()

    with pytest.raises(ProviderFailure):
        asyncio.run(fetch())
    assert len(calls) == 3


async def matrix_down(points, departure_time=None):
    raise ProviderFailure("distance matrix down")


async def forecast_down(lat, lon, day):
    raise ProviderFailure("forecast down")


def test_matrix_failure_falls_back_to_straight_line(seeded, monkeypatch):
    service, _, tasks = seeded
    monkeypatch.setattr(service.distance_provider, "compute_travel_matrix", matrix_down)

    result = asyncio.run(service.optimize_routes("biz", OptimizeRequest(date=DAY)))

    assert "Distance provider unavailable; travel times are straight-line estimates" in result.warnings
    assert sorted(s.task_id for s in result.routes[0].stops) == sorted(t.id for t in tasks)
    assert result.routes[0].total_distance_km > 0


def test_weather_failure_applies_no_delay(seeded, monkeypatch):
    service, _, _ = seeded
    monkeypatch.setattr(service.weather_client, "forecast", forecast_down)
    params = OptimizationParameters(consider_weather=True)

    result = asyncio.run(service.optimize_routes("biz", OptimizeRequest(date=DAY, params=params)))

    assert "Weather provider unavailable; no weather delays applied" in result.warnings
    assert result.routes[0].weather_delay_minutes == 0
    assert all(s.weather_delay_minutes == 0 for s in result.routes[0].stops)


def test_strict_policy_fails_traffic_aware_runs(seeded, monkeypatch):
    service, _, tasks = seeded
    service.config.providers.fallback_policy = "strict"
    monkeypatch.setattr(service.distance_provider, "compute_travel_matrix", matrix_down)

    with pytest.raises(DependencyUnavailable):
        asyncio.run(service.optimize_routes("biz", OptimizeRequest(
            date=DAY, params=OptimizationParameters(consider_traffic=True))))

    with pytest.raises(NotFound):
        asyncio.run(service.get_optimized_routes("biz", day=DAY))
    assert all(service.repo.tasks.get_task("biz", t.id).status == TaskStatus.PENDING for t in tasks)

    # Without traffic the straight-line fallback is still acceptable
    relaxed = asyncio.run(service.optimize_routes("biz", OptimizeRequest(date=DAY)))
    assert len(relaxed.routes) == 1


def test_strict_policy_fails_weather_aware_runs(seeded, monkeypatch):
    service, _, _ = seeded
    service.config.providers.fallback_policy = "strict"
    monkeypatch.setattr(service.weather_client, "forecast", forecast_down)

    with pytest.raises(DependencyUnavailable):
        asyncio.run(service.optimize_routes("biz", OptimizeRequest(
            date=DAY, params=OptimizationParameters(consider_weather=True))))

    with pytest.raises(NotFound):
        asyncio.run(service.get_optimized_routes("biz", day=DAY))
