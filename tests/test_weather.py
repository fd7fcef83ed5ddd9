"""
Tests for forecast classification, weather impacts, adjustments and alerts.
"""

import asyncio

import pytest

from field_routing.errors import DependencyUnavailable, InvalidRequest, NotFound, ProviderFailure
from field_routing.integrations.openweather import WeatherForecast
from field_routing.schemas import WeatherAdjustRequest, WeatherImpactRequest
from field_routing.weather import assess_forecast

from conftest import DAY


def forecast(**kwargs) -> WeatherForecast:
    values = dict(
        lat=40.0, lon=-75.0, day=DAY, condition="Clear", description="clear sky",
        temperature_c=18.0, precipitation_mm=0.0, wind_kmh=8.0, visibility_km=10.0,
    )
    values.update(kwargs)
    return WeatherForecast(**values)


def test_clear_day_has_no_delay(config):
    assessment = assess_forecast(forecast(), config)

    assert assessment.risk_level == "low"
    assert assessment.delay_minutes == 0
    assert assessment.reason is None
    assert assessment.safety_flags == []


def test_heavy_rain_delay(config):
    assessment = assess_forecast(forecast(condition="Rain", precipitation_mm=12.0), config)

    assert assessment.delay_minutes == 30
    assert assessment.reason == "heavy rain"
    assert assessment.impacts["precipitation"].level == "medium"


def test_snow_is_extreme(config):
    assessment = assess_forecast(forecast(condition="Snow", precipitation_mm=5.0, temperature_c=-2.0), config)

    assert assessment.risk_level == "extreme"
    assert assessment.delay_minutes == 60
    assert "icy_roads" in assessment.safety_flags


def test_combined_factors_add_up(config):
    assessment = assess_forecast(
        forecast(condition="Rain", precipitation_mm=4.0, wind_kmh=35.0, visibility_km=2.0), config
    )

    assert assessment.delay_minutes == 15 + 20 + 15
    assert assessment.reason == "rain, low visibility, high wind"
    assert assessment.risk_level in ("high", "extreme")


def test_impact_rejects_dates_beyond_horizon(service):
    request = WeatherImpactRequest(coordinates={"lat": 40.0, "lng": -75.0}, date="2025-06-12")

    with pytest.raises(InvalidRequest, match="more than 7 days"):
        asyncio.run(service.get_weather_impact("biz", request))


def test_impact_rejects_past_dates(service):
    request = WeatherImpactRequest(coordinates={"lat": 40.0, "lng": -75.0}, date="2025-05-30")

    with pytest.raises(InvalidRequest, match="past"):
        asyncio.run(service.get_weather_impact("biz", request))


def test_impact_defaults_to_today(service):
    request = WeatherImpactRequest(coordinates={"lat": 40.0, "lng": -75.0})

    impact = asyncio.run(service.get_weather_impact("biz", request))

    assert impact.date == DAY
    assert 0 <= impact.safety_score <= 100
    assert impact.recommendations


def test_adjustment_is_repeatable(seeded):
    service, _, tasks = seeded
    task_ids = [t.id for t in tasks]
    request = WeatherAdjustRequest(
        task_ids=task_ids,
        coordinates=[{"lat": 40.01, "lng": -75.0}, {"lat": 40.02, "lng": -75.0}],
        original_time=120,
        original_distance=30,
        date=DAY,
    )

    first = asyncio.run(service.adjust_route_for_weather("biz", request))
    second = asyncio.run(service.adjust_route_for_weather("biz", request))

    assert first.model_dump() == second.model_dump()
    assert first.adjusted_time == 120 + first.total_delay_minutes
    cumulative = [s.cumulative_delay_minutes for s in first.stops]
    assert cumulative == sorted(cumulative)
    assert [s.task_id for s in first.stops] == task_ids


def test_adjustment_checks_task_ownership(seeded):
    service, _, _ = seeded
    request = WeatherAdjustRequest(task_ids=[9999], coordinates=[{"lat": 40.0, "lng": -75.0}],
                                   original_time=60, original_distance=10, date=DAY)

    with pytest.raises(NotFound):
        asyncio.run(service.adjust_route_for_weather("biz", request))


def test_adjustment_without_provider(service, monkeypatch):
    async def unavailable(lat, lon, day):
        raise ProviderFailure("forecast service down")

    monkeypatch.setattr(service.weather.client, "forecast", unavailable)
    request = WeatherAdjustRequest(coordinates=[{"lat": 40.0, "lng": -75.0}], original_time=60,
                                   original_distance=10, date=DAY)

    with pytest.raises(DependencyUnavailable):
        asyncio.run(service.adjust_route_for_weather("biz", request))


def test_alert_filters_are_validated(service):
    with pytest.raises(InvalidRequest):
        asyncio.run(service.get_weather_alerts("biz", severity="apocalyptic"))
    assert asyncio.run(service.get_weather_alerts("biz", severity="high")) == []
