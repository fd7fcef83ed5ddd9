"""
Weather-aware route adjustment.

Classifies forecasts against configured thresholds, converts them into
delay minutes, and produces impacts, route adjustments and alerts. All
outputs are a pure function of the forecast data so repeated calls with
the same inputs are identical.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from .errors import InvalidRequest, ProviderFailure, DependencyUnavailable
from .integrations.openweather import OpenWeatherClient, WeatherForecast
from .schemas import AppConfig, WeatherAdjustRequest
from .util.geo import valid_coordinates


logger = logging.getLogger(__name__)

LEVELS = ("none", "low", "medium", "high")
RISK_SAFETY_SCORE = {"low": 85, "medium": 65, "high": 40, "extreme": 20}
RISK_ORDER = {"low": 0, "medium": 1, "high": 2, "extreme": 3}
ALERT_SEVERITIES = ("low", "medium", "high", "critical")
ALERT_TYPES = ("weather_warning", "route_impact", "safety_concern")
RAIN_CONDITIONS = {"Rain", "Drizzle", "Thunderstorm"}


class FactorImpact(BaseModel):
    level: str
    value: float
    detail: str


class WeatherImpact(BaseModel):
    """Structured impact of one day's weather at one point."""
    lat: float
    lng: float
    date: str
    condition: str
    description: str
    temperature_c: float
    precipitation_mm: float
    wind_kmh: float
    visibility_km: float
    risk_level: str
    safety_score: int
    delay_minutes: int
    delay_reason: Optional[str]
    affected_conditions: List[str]
    safety_flags: List[str]
    impacts: Dict[str, FactorImpact]
    recommendations: List[str]
    equipment_recommendations: List[str]


class StopWeatherDelay(BaseModel):
    index: int
    task_id: Optional[int]
    lat: float
    lng: float
    delay_minutes: int
    cumulative_delay_minutes: int
    risk_level: str
    reason: Optional[str]


class AlternativeOption(BaseModel):
    description: str
    additional_minutes: int
    recommendation: str


class RouteWeatherAdjustment(BaseModel):
    task_ids: List[int]
    date: str
    original_time: float
    original_distance: float
    adjusted_time: float
    adjusted_distance: float
    total_delay_minutes: int
    worst_risk_level: str
    stops: List[StopWeatherDelay]
    alternatives: List[AlternativeOption]
    warnings: List[str]


class WeatherAlert(BaseModel):
    id: str
    severity: str
    alert_type: str
    source: str
    lat: float
    lng: float
    date: str
    title: str
    message: str
    recommendations: List[str]


@dataclass
class AlertSource:
    """A point worth scanning for alerts, with a label for the message."""
    label: str
    lat: float
    lon: float


@dataclass
class WeatherAssessment:
    risk_level: str
    delay_minutes: int
    reason: Optional[str]
    impacts: Dict[str, FactorImpact]
    safety_flags: List[str] = field(default_factory=list)


def _level_below(value: float, t) -> str:
    if value < t.high:
        return "high"
    if value < t.medium:
        return "medium"
    if value < t.low:
        return "low"
    return "none"


def _level_above(value: float, t) -> str:
    if value > t.high:
        return "high"
    if value > t.medium:
        return "medium"
    if value > t.low:
        return "low"
    return "none"


def _temperature_level(temp: float, config: AppConfig) -> str:
    w = config.weather
    cold = _level_below(temp, w.cold_c)
    heat = _level_above(temp, w.heat_c)
    return max(cold, heat, key=LEVELS.index)


def assess_forecast(forecast: WeatherForecast, config: AppConfig) -> WeatherAssessment:
    """Classify a forecast and translate it into delay minutes."""
    w = config.weather
    is_snow = forecast.condition == "Snow"
    is_rain = forecast.condition in RAIN_CONDITIONS

    precip_level = _level_above(forecast.precipitation_mm, w.precipitation_mm)
    if is_snow:
        precip_level = "high"
    elif is_rain and precip_level in ("none", "low"):
        precip_level = "medium"

    impacts = {
        "visibility": FactorImpact(
            level=_level_below(forecast.visibility_km, w.visibility_km),
            value=forecast.visibility_km,
            detail=f"{forecast.visibility_km:.1f} km visibility",
        ),
        "precipitation": FactorImpact(
            level=precip_level,
            value=forecast.precipitation_mm,
            detail=f"{forecast.condition.lower()} {forecast.precipitation_mm:.1f} mm",
        ),
        "wind": FactorImpact(
            level=_level_above(forecast.wind_kmh, w.wind_kmh),
            value=forecast.wind_kmh,
            detail=f"{forecast.wind_kmh:.0f} km/h wind",
        ),
        "temperature": FactorImpact(
            level=_temperature_level(forecast.temperature_c, config),
            value=forecast.temperature_c,
            detail=f"{forecast.temperature_c:.0f} C",
        ),
    }

    highs = sum(1 for i in impacts.values() if i.level == "high")
    mediums = sum(1 for i in impacts.values() if i.level == "medium")
    if highs >= 2 or is_snow:
        risk = "extreme"
    elif highs >= 1 or mediums >= 3:
        risk = "high"
    elif mediums >= 2:
        risk = "medium"
    else:
        risk = "low"

    delay = 0
    reasons: List[str] = []
    if is_rain:
        heavy = forecast.precipitation_mm > w.heavy_rain_mm
        delay += w.heavy_rain_delay_minutes if heavy else w.rain_delay_minutes
        reasons.append("heavy rain" if heavy else "rain")
    if is_snow:
        delay += w.snow_delay_minutes
        reasons.append("snow")
    if forecast.visibility_km < w.low_visibility_km:
        delay += w.low_visibility_delay_minutes
        reasons.append("low visibility")
    if forecast.wind_kmh > w.high_wind_kmh:
        delay += w.high_wind_delay_minutes
        reasons.append("high wind")
    if impacts["temperature"].level == "high":
        delay += w.extreme_temperature_delay_minutes
        reasons.append("extreme temperature")

    flags: List[str] = []
    if is_snow or forecast.temperature_c < 0:
        flags.append("icy_roads")
    if impacts["visibility"].level in ("medium", "high"):
        flags.append("low_visibility")
    if impacts["wind"].level in ("medium", "high"):
        flags.append("high_wind")
    if forecast.condition == "Thunderstorm":
        flags.append("lightning")
    if forecast.precipitation_mm > w.precipitation_mm.high:
        flags.append("flooding_risk")
    if forecast.temperature_c > w.heat_c.medium:
        flags.append("heat_stress")

    return WeatherAssessment(
        risk_level=risk,
        delay_minutes=delay,
        reason=", ".join(reasons) or None,
        impacts=impacts,
        safety_flags=flags,
    )


def _recommendations(risk: str) -> List[str]:
    if risk == "extreme":
        return ["Postpone non-emergency outdoor work",
                "Confirm crew safety check-ins every hour"]
    if risk == "high":
        return ["Allow extra travel time between stops",
                "Brief crews on weather hazards before departure"]
    if risk == "medium":
        return ["Monitor forecast updates during the day"]
    return ["No weather-related changes needed"]


def _equipment(forecast: WeatherForecast, assessment: WeatherAssessment) -> List[str]:
    items: List[str] = []
    if forecast.condition in RAIN_CONDITIONS:
        items.append("Rain gear")
    if forecast.condition == "Snow":
        items.extend(["Snow chains", "De-icing equipment"])
    if forecast.temperature_c < 5:
        items.append("Cold weather gear")
    if "heat_stress" in assessment.safety_flags:
        items.append("Extra drinking water")
    if "high_wind" in assessment.safety_flags:
        items.append("Secure loose equipment")
    if "low_visibility" in assessment.safety_flags:
        items.append("High-visibility vests")
    return items


def _alert_severity(risk: str) -> str:
    return {"extreme": "critical", "high": "high", "medium": "medium"}.get(risk, "low")


def _provider_alert_severity(event: str) -> str:
    e = event.lower()
    if "emergency" in e:
        return "critical"
    if "warning" in e:
        return "high"
    if "watch" in e:
        return "medium"
    return "low"


def _alert_type(text: str) -> str:
    t = text.lower()
    if any(k in t for k in ("storm", "thunder", "wind", "tornado", "hurricane")):
        return "safety_concern"
    if any(k in t for k in ("rain", "snow", "flood", "ice", "drizzle")):
        return "route_impact"
    return "weather_warning"


class WeatherRouteService:
    """Weather impacts, route adjustments and alerts for one deployment."""

    def __init__(
        self,
        config: AppConfig,
        client: OpenWeatherClient,
        today: Callable[[], date] = date.today,
    ):
        self.config = config
        self.client = client
        self.today = today
        self._semaphore = asyncio.Semaphore(config.providers.max_concurrency)

    def resolve_date(self, day: Optional[str]) -> str:
        """Default to today; reject past days and days beyond the forecast horizon."""
        today = self.today()
        if day is None:
            return today.isoformat()
        try:
            target = date.fromisoformat(day)
        except ValueError:
            raise InvalidRequest(f"Invalid date '{day}', expected YYYY-MM-DD")
        horizon = self.config.weather.forecast_horizon_days
        if target < today:
            raise InvalidRequest("Date is in the past")
        if target > today + timedelta(days=horizon):
            raise InvalidRequest(f"Date is more than {horizon} days in the future")
        return target.isoformat()

    async def _forecast(self, lat: float, lon: float, day: str) -> WeatherForecast:
        async with self._semaphore:
            return await self.client.forecast(lat, lon, day)

    async def get_weather_impact(
        self, business_id: str, lat: float, lng: float, day: Optional[str] = None
    ) -> WeatherImpact:
        if not valid_coordinates(lat, lng):
            raise InvalidRequest("Coordinates out of range")
        target = self.resolve_date(day)
        try:
            forecast = await self._forecast(lat, lng, target)
        except ProviderFailure as e:
            logger.error(f"Weather impact unavailable for business {business_id}: {e}")
            raise DependencyUnavailable("Weather provider unavailable")

        assessment = assess_forecast(forecast, self.config)
        affected = [name for name, imp in assessment.impacts.items() if imp.level != "none"]
        return WeatherImpact(
            lat=lat,
            lng=lng,
            date=target,
            condition=forecast.condition,
            description=forecast.description,
            temperature_c=forecast.temperature_c,
            precipitation_mm=forecast.precipitation_mm,
            wind_kmh=forecast.wind_kmh,
            visibility_km=forecast.visibility_km,
            risk_level=assessment.risk_level,
            safety_score=RISK_SAFETY_SCORE[assessment.risk_level],
            delay_minutes=assessment.delay_minutes,
            delay_reason=assessment.reason,
            affected_conditions=affected,
            safety_flags=assessment.safety_flags,
            impacts=assessment.impacts,
            recommendations=_recommendations(assessment.risk_level),
            equipment_recommendations=_equipment(forecast, assessment),
        )

    async def adjust_route_for_weather(
        self, business_id: str, request: WeatherAdjustRequest
    ) -> RouteWeatherAdjustment:
        """Accumulate per-stop delays along the given coordinate sequence."""
        target = self.resolve_date(request.date)
        points = [(c.lat, c.lng) for c in request.coordinates]
        assessments, warnings = await self.assess_points(points, target)

        stops: List[StopWeatherDelay] = []
        cumulative = 0
        worst = "low"
        for i, (lat, lng) in enumerate(points):
            a = assessments.get(i)
            delay = a.delay_minutes if a else 0
            cumulative += delay
            risk = a.risk_level if a else "low"
            if RISK_ORDER[risk] > RISK_ORDER[worst]:
                worst = risk
            stops.append(StopWeatherDelay(
                index=i,
                task_id=request.task_ids[i] if i < len(request.task_ids) else None,
                lat=lat,
                lng=lng,
                delay_minutes=delay,
                cumulative_delay_minutes=cumulative,
                risk_level=risk,
                reason=a.reason if a else None,
            ))

        distance = request.original_distance
        alternatives: List[AlternativeOption] = []
        if worst in ("high", "extreme"):
            distance = distance * (1 + self.config.weather.severe_distance_increase_pct / 100.0)
            alternatives = [
                AlternativeOption(description="Delay route start by 2 hours",
                                  additional_minutes=120, recommendation="high"),
                AlternativeOption(description="Split route across multiple days",
                                  additional_minutes=0, recommendation="medium"),
                AlternativeOption(description="Use alternative transportation method",
                                  additional_minutes=30, recommendation="low"),
            ]

        logger.info(f"Weather adjustment for business {business_id}: "
                    f"{len(points)} points, +{cumulative} min, risk={worst}")
        return RouteWeatherAdjustment(
            task_ids=list(request.task_ids),
            date=target,
            original_time=request.original_time,
            original_distance=request.original_distance,
            adjusted_time=round(request.original_time + cumulative, 2),
            adjusted_distance=round(distance, 2),
            total_delay_minutes=cumulative,
            worst_risk_level=worst,
            stops=stops,
            alternatives=alternatives,
            warnings=warnings,
        )

    async def assess_points(
        self, points: List[Tuple[float, float]], day: str
    ) -> Tuple[Dict[int, WeatherAssessment], List[str]]:
        """Assess every point concurrently.

        Points whose forecast fails are left out of the mapping and reported
        as a warning; when all points fail, ProviderFailure is raised.
        """
        unique = sorted({(round(lat, 4), round(lon, 4)) for lat, lon in points})
        results = await asyncio.gather(
            *(self._forecast(lat, lon, day) for lat, lon in unique),
            return_exceptions=True,
        )
        by_point: Dict[Tuple[float, float], WeatherAssessment] = {}
        failures = 0
        for key, result in zip(unique, results):
            if isinstance(result, ProviderFailure):
                failures += 1
                continue
            if isinstance(result, BaseException):
                raise result
            by_point[key] = assess_forecast(result, self.config)

        if unique and failures == len(unique):
            raise ProviderFailure("Weather forecast unavailable for all points")

        warnings = []
        if failures:
            warnings.append(f"Weather unavailable for {failures} of {len(unique)} locations; no delay applied there")
        out: Dict[int, WeatherAssessment] = {}
        for i, (lat, lon) in enumerate(points):
            a = by_point.get((round(lat, 4), round(lon, 4)))
            if a is not None:
                out[i] = a
        return out, warnings

    async def alerts_for_sources(
        self,
        business_id: str,
        sources: List[AlertSource],
        severity: Optional[str] = None,
        alert_type: Optional[str] = None,
    ) -> List[WeatherAlert]:
        """Scan points for medium-or-worse conditions and provider alerts."""
        if severity is not None and severity not in ALERT_SEVERITIES:
            raise InvalidRequest(f"Invalid severity '{severity}'")
        if alert_type is not None and alert_type not in ALERT_TYPES:
            raise InvalidRequest(f"Invalid alert type '{alert_type}'")

        day = self.today().isoformat()
        seen = set()
        unique: List[AlertSource] = []
        for s in sources:
            key = (round(s.lat, 3), round(s.lon, 3))
            if key in seen or not valid_coordinates(s.lat, s.lon):
                continue
            seen.add(key)
            unique.append(s)

        results = await asyncio.gather(
            *(self._forecast(s.lat, s.lon, day) for s in unique),
            return_exceptions=True,
        )
        alerts: List[WeatherAlert] = []
        for source, result in zip(unique, results):
            if isinstance(result, ProviderFailure):
                logger.warning(f"Skipping alert scan for {source.label}: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            alerts.extend(self._alerts_for(source, result, day))

        if severity:
            alerts = [a for a in alerts if a.severity == severity]
        if alert_type:
            alerts = [a for a in alerts if a.alert_type == alert_type]
        alerts.sort(key=lambda a: (-ALERT_SEVERITIES.index(a.severity), a.id))
        logger.info(f"Weather alerts for business {business_id}: {len(alerts)} from {len(unique)} points")
        return alerts[:self.config.weather.max_alerts]

    def _alerts_for(self, source: AlertSource, forecast: WeatherForecast, day: str) -> List[WeatherAlert]:
        out: List[WeatherAlert] = []
        point_id = f"{source.lat:.3f},{source.lon:.3f}"
        assessment = assess_forecast(forecast, self.config)
        if assessment.risk_level != "low":
            basis = " ".join([forecast.condition] + assessment.safety_flags)
            out.append(WeatherAlert(
                id=f"forecast-{point_id}-{day}",
                severity=_alert_severity(assessment.risk_level),
                alert_type=_alert_type(basis),
                source=source.label,
                lat=source.lat,
                lng=source.lon,
                date=day,
                title=f"{assessment.risk_level.capitalize()} weather risk near {source.label}",
                message=assessment.reason or forecast.description,
                recommendations=_recommendations(assessment.risk_level),
            ))
        for n, provider_alert in enumerate(forecast.alerts):
            event = provider_alert.get("event", "Weather alert")
            out.append(WeatherAlert(
                id=f"provider-{point_id}-{day}-{n}",
                severity=_provider_alert_severity(event),
                alert_type=_alert_type(event),
                source=source.label,
                lat=source.lat,
                lng=source.lon,
                date=day,
                title=event,
                message=provider_alert.get("description", ""),
                recommendations=_recommendations(assessment.risk_level),
            ))
        return out
