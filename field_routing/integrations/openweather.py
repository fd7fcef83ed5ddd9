"""OpenWeather One Call wrapper returning a single day's forecast for a point."""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from ..errors import ProviderFailure
from ..schemas import AppConfig, Settings

logger = logging.getLogger(__name__)


@dataclass
class WeatherForecast:
    """Daily forecast for one coordinate, metric units."""
    lat: float
    lon: float
    day: str                      # YYYY-MM-DD
    condition: str                # Clear, Clouds, Rain, Snow, Thunderstorm, Fog, ...
    description: str
    temperature_c: float
    precipitation_mm: float
    wind_kmh: float
    visibility_km: float
    humidity: float = 0.0
    alerts: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_MOCK_CONDITIONS = ["Clear", "Clear", "Clouds", "Clouds", "Rain", "Drizzle", "Thunderstorm", "Snow", "Fog"]


class OpenWeatherClient:
    """One Call 3.0 client with bounded retries and a deterministic mock mode."""

    def __init__(self, config: AppConfig, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.api_key = settings.openweather_api_key
        self.client = client or httpx.AsyncClient(timeout=config.providers.timeout_seconds)
        if not self.api_key and not config.dev.mock_weather_api:
            logger.warning("OpenWeather API key not configured - weather adjustments disabled")

    @property
    def configured(self) -> bool:
        return bool(self.api_key) or self.config.dev.mock_weather_api

    async def forecast(self, lat: float, lon: float, day: str) -> WeatherForecast:
        """Forecast for ``day``; raises ProviderFailure when unavailable."""
        if self.config.dev.mock_weather_api:
            return self._mock_forecast(lat, lon, day)
        if not self.api_key:
            raise ProviderFailure("OpenWeather API key not configured")

        params = {
            "lat": f"{lat:.4f}",
            "lon": f"{lon:.4f}",
            "exclude": "minutely,hourly",
            "units": "metric",  # _parse_day converts from m/s and Celsius
            "appid": self.api_key,
        }
        data = await self._request(params)
        return self._parse_day(data, lat, lon, day)

    async def _request(self, params: Dict[str, Any]) -> Dict[str, Any]:
        attempts = self.config.providers.max_retries + 1
        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                r = await self.client.get(self.config.openweather.base_url, params=params)
                r.raise_for_status()
                return r.json()
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning(f"Weather request attempt {attempt + 1}/{attempts} failed: {e}")
                if attempt < attempts - 1:
                    await asyncio.sleep(self.config.providers.retry_delay_seconds * (2 ** attempt))
        raise ProviderFailure(f"OpenWeather unavailable after {attempts} attempts: {last_error}")

    def _parse_day(self, data: Dict[str, Any], lat: float, lon: float, day: str) -> WeatherForecast:
        target = date.fromisoformat(day)
        daily = None
        for entry in data.get("daily", []):
            if datetime.fromtimestamp(entry["dt"], tz=timezone.utc).date() == target:
                daily = entry
                break
        if daily is None:
            raise ProviderFailure(f"No forecast available for {day}")

        weather = (daily.get("weather") or [{}])[0]
        temp = daily.get("temp", {})
        # visibility is only reported for current conditions
        visibility_m = data.get("current", {}).get("visibility", 10000) \
            if target == datetime.now(timezone.utc).date() else 10000
        alerts = [
            {
                "event": a.get("event", ""),
                "description": a.get("description", ""),
                "sender": a.get("sender_name", ""),
            }
            for a in data.get("alerts", [])
            if datetime.fromtimestamp(a.get("start", 0), tz=timezone.utc).date() <= target
            <= datetime.fromtimestamp(a.get("end", 0), tz=timezone.utc).date()
        ]
        return WeatherForecast(
            lat=lat,
            lon=lon,
            day=day,
            condition=weather.get("main", "Clear"),
            description=weather.get("description", ""),
            temperature_c=float(temp.get("day", temp.get("max", 15.0))),
            precipitation_mm=float(daily.get("rain", 0.0)) + float(daily.get("snow", 0.0)),
            wind_kmh=round(float(daily.get("wind_speed", 0.0)) * 3.6, 1),  # m/s -> km/h
            visibility_km=visibility_m / 1000.0,
            humidity=float(daily.get("humidity", 0.0)),
            alerts=alerts,
        )

    def _mock_forecast(self, lat: float, lon: float, day: str) -> WeatherForecast:
        """Stable pseudo-forecast derived from the point and day."""
        digest = int(hashlib.sha256(f"{lat:.3f},{lon:.3f},{day}".encode("utf-8")).hexdigest(), 16)
        condition = _MOCK_CONDITIONS[digest % len(_MOCK_CONDITIONS)]
        precipitation = 0.0
        if condition in ("Rain", "Drizzle", "Thunderstorm", "Snow"):
            precipitation = round(((digest >> 8) % 200) / 10.0, 1)
        visibility = 0.8 if condition == "Fog" else round(4 + ((digest >> 16) % 60) / 10.0, 1)
        return WeatherForecast(
            lat=lat,
            lon=lon,
            day=day,
            condition=condition,
            description=condition.lower(),
            temperature_c=round(-5 + ((digest >> 24) % 400) / 10.0, 1),
            precipitation_mm=precipitation,
            wind_kmh=round(((digest >> 32) % 450) / 10.0, 1),
            visibility_km=visibility,
            humidity=float((digest >> 40) % 100),
        )

    async def close(self):
        await self.client.aclose()
