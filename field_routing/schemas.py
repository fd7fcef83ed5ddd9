"""
Pydantic schemas for configuration, settings, and API validation.
"""

from datetime import time
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


HHMM = r"^\d{2}:\d{2}$"
ISO_DATE = r"^\d{4}-\d{2}-\d{2}$"
ISO_MONTH = r"^\d{4}-\d{2}$"


class ProjectConfig(BaseModel):
    """Top-level project configuration."""
    name: str = Field(default="Field Routing Engine")
    version: str = Field(default="0.1.0")


class RoutingDefaults(BaseModel):
    """Fallbacks applied when team or task records leave a field empty."""
    work_start: str = Field(default="08:00", pattern=HHMM)
    work_end: str = Field(default="17:00", pattern=HHMM)
    service_minutes: int = Field(default=60, ge=1)
    max_daily_tasks: int = Field(default=8, ge=1)
    max_route_distance_km: float = Field(default=200.0, gt=0)

    @field_validator('work_end')
    @classmethod
    def end_after_start(cls, v, info):
        """Ensure end time is after start time."""
        start = info.data.get('work_start')
        if start and time.fromisoformat(v) <= time.fromisoformat(start):
            raise ValueError('End time must be after start time')
        return v


class SolverConfig(BaseModel):
    """Heuristic bounds for assignment and sequencing."""
    improvement_passes: int = Field(default=3, ge=0, le=20)
    max_candidates_per_team: int = Field(default=60, ge=1)
    cluster_radius_km: float = Field(default=5.0, gt=0)
    exact_sequence_max_stops: int = Field(default=6, ge=0, le=8)
    two_opt_max_iterations: int = Field(default=50, ge=1)
    average_speed_kmh: float = Field(default=50.0, gt=0)
    road_factor: float = Field(default=1.3, ge=1.0)


class ScoringConfig(BaseModel):
    """Cost-function weights and optimization score blend."""
    time_weight_primary: float = Field(default=1.0, ge=0)
    time_weight_secondary: float = Field(default=0.3, ge=0)
    fuel_weight_primary: float = Field(default=1.0, ge=0)
    fuel_weight_secondary: float = Field(default=0.3, ge=0)
    # minutes-equivalent of one currency unit of fuel
    fuel_cost_scale: float = Field(default=4.0, ge=0)
    customer_wait_weight: float = Field(default=0.5, ge=0)
    priority_position_weight: float = Field(default=2.0, ge=0)
    lateness_weight: float = Field(default=5.0, ge=0)
    overtime_weight: float = Field(default=3.0, ge=0)
    balance_weight: float = Field(default=0.5, ge=0)
    team_activation_cost: float = Field(default=30.0, ge=0)

    score_time_weight: float = Field(default=0.4, ge=0)
    score_distance_weight: float = Field(default=0.3, ge=0)
    score_compliance_weight: float = Field(default=0.3, ge=0)
    reference_leg_km: float = Field(default=10.0, gt=0)
    score_overtime_penalty_per_minute: float = Field(default=0.2, ge=0)


class FuelConfig(BaseModel):
    """Fuel pricing defaults when a team's vehicle record is incomplete."""
    default_consumption_per_100km: float = Field(default=8.0, gt=0)
    electric_consumption_per_100km: float = Field(default=20.0, gt=0)
    fuel_price_per_liter: float = Field(default=1.5, ge=0)
    electricity_price_per_kwh: float = Field(default=0.12, ge=0)


class ImpactThresholds(BaseModel):
    """High/medium/low cut-offs for one weather factor."""
    high: float
    medium: float
    low: float


class WeatherConfig(BaseModel):
    """Forecast classification thresholds and delay rules."""
    forecast_horizon_days: int = Field(default=7, ge=0)
    visibility_km: ImpactThresholds = Field(
        default_factory=lambda: ImpactThresholds(high=1, medium=3, low=5)
    )
    precipitation_mm: ImpactThresholds = Field(
        default_factory=lambda: ImpactThresholds(high=15, medium=8, low=2)
    )
    wind_kmh: ImpactThresholds = Field(
        default_factory=lambda: ImpactThresholds(high=30, medium=20, low=15)
    )
    # temperatures outside [low, high] bands: cold side then hot side
    cold_c: ImpactThresholds = Field(
        default_factory=lambda: ImpactThresholds(high=-10, medium=0, low=5)
    )
    heat_c: ImpactThresholds = Field(
        default_factory=lambda: ImpactThresholds(high=40, medium=35, low=30)
    )
    rain_delay_minutes: int = Field(default=15, ge=0)
    heavy_rain_mm: float = Field(default=10.0, ge=0)
    heavy_rain_delay_minutes: int = Field(default=30, ge=0)
    snow_delay_minutes: int = Field(default=60, ge=0)
    low_visibility_km: float = Field(default=3.0, ge=0)
    low_visibility_delay_minutes: int = Field(default=20, ge=0)
    high_wind_kmh: float = Field(default=25.0, ge=0)
    high_wind_delay_minutes: int = Field(default=15, ge=0)
    extreme_temperature_delay_minutes: int = Field(default=10, ge=0)
    severe_distance_increase_pct: float = Field(default=10.0, ge=0)
    max_alerts: int = Field(default=10, ge=1)


class TrafficBin(BaseModel):
    """Speed factor applied to departures inside a HH:MM-HH:MM window."""
    window: str = Field(pattern=r"^\d{2}:\d{2}-\d{2}:\d{2}$")
    factor: float = Field(gt=0)


class TrafficConfig(BaseModel):
    """Static traffic profile used on haversine legs."""
    static_profile: List[TrafficBin] = Field(
        default_factory=lambda: [
            TrafficBin(window="07:00-09:00", factor=0.7),
            TrafficBin(window="16:00-18:30", factor=0.75),
        ]
    )


class GoogleConfig(BaseModel):
    """Google Maps API configuration."""
    base_url: str = Field(default="https://maps.googleapis.com/maps/api")
    traffic_model: str = Field(
        default="BEST_GUESS",
        pattern="^(BEST_GUESS|OPTIMISTIC|PESSIMISTIC)$"
    )
    matrix_chunk_size: int = Field(default=10, ge=1, le=25)
    rate_limit_requests_per_second: int = Field(default=10, ge=1, le=100)


class OpenWeatherConfig(BaseModel):
    """OpenWeather One Call API configuration."""
    base_url: str = Field(default="https://api.openweathermap.org/data/3.0/onecall")


class ProvidersConfig(BaseModel):
    """Timeouts, retries and outage policy shared by external providers."""
    timeout_seconds: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=2, ge=0, le=10)
    retry_delay_seconds: float = Field(default=0.5, ge=0)
    max_concurrency: int = Field(default=8, ge=1)
    fallback_policy: str = Field(default="degrade", pattern="^(degrade|strict)$")


class ConcurrencyConfig(BaseModel):
    """Lock timeouts for planning and progress writes."""
    lock_timeout_seconds: float = Field(default=30.0, gt=0)


class AnalyticsConfig(BaseModel):
    """Cost model and aggregation settings for route analytics."""
    allowed_timeframes: List[str] = Field(
        default_factory=lambda: ["7d", "30d", "60d", "90d", "180d"]
    )
    fuel_cost_per_km: float = Field(default=0.15, ge=0)
    labour_cost_per_hour: float = Field(default=25.0, ge=0)
    maintenance_cost_per_km: float = Field(default=0.05, ge=0)
    default_efficiency: float = Field(default=85.0, ge=0, le=100)
    on_time_tolerance: float = Field(default=0.10, ge=0)
    distance_saved_ratio: float = Field(default=0.15, ge=0, le=1)
    optimization_impact_share: float = Field(default=0.4, ge=0, le=1)
    max_stored_reports: int = Field(default=20, ge=1)
    custom_max_span_days: int = Field(default=365, ge=1)


class DatabaseConfig(BaseModel):
    """Database configuration."""
    url: str = Field(default="sqlite:///./field_routing.db")
    echo: bool = Field(default=False)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR)$"
    )
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


class DevConfig(BaseModel):
    """Development and testing configuration."""
    mock_google_api: bool = Field(default=False)
    mock_weather_api: bool = Field(default=False)
    cache_geocoding: bool = Field(default=True)


class AppConfig(BaseModel):
    """Complete application configuration loaded from params.yaml."""
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    routing: RoutingDefaults = Field(default_factory=RoutingDefaults)
    solver: SolverConfig = Field(default_factory=SolverConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    fuel: FuelConfig = Field(default_factory=FuelConfig)
    weather: WeatherConfig = Field(default_factory=WeatherConfig)
    traffic: TrafficConfig = Field(default_factory=TrafficConfig)
    google: GoogleConfig = Field(default_factory=GoogleConfig)
    openweather: OpenWeatherConfig = Field(default_factory=OpenWeatherConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    dev: DevConfig = Field(default_factory=DevConfig)


class Settings(BaseSettings):
    """Environment-based settings (primarily for secrets)."""
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    google_maps_api_key: Optional[str] = Field(default=None)
    openweather_api_key: Optional[str] = Field(default=None)


# API Request/Response Schemas
class OptimizationParameters(BaseModel):
    """Switches and limits passed into every optimization run."""
    prioritize_time: bool = Field(default=True)
    prioritize_fuel: bool = Field(default=False)
    prioritize_customer_preference: bool = Field(default=False)
    max_route_time: int = Field(default=480, gt=0)  # minutes
    max_stops_per_route: int = Field(default=8, ge=1)
    allow_overtime: bool = Field(default=False)
    consider_traffic: bool = Field(default=False)
    consider_weather: bool = Field(default=False)
    skill_matching: bool = Field(default=True)
    balance_workload: bool = Field(default=False)

    @property
    def objective(self) -> str:
        """Label persisted on routes for reporting."""
        if self.prioritize_customer_preference:
            return "customer_priority"
        if self.prioritize_time and not self.prioritize_fuel:
            return "minimize_time"
        if self.prioritize_fuel and not self.prioritize_time:
            return "minimize_fuel"
        return "balanced"


class LatLng(BaseModel):
    """Coordinate pair as sent by callers."""
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class OptimizeRequest(BaseModel):
    """Request parameters for the optimization endpoint."""
    date: Optional[str] = Field(default=None, pattern=ISO_DATE)
    month: Optional[str] = Field(default=None, pattern=ISO_MONTH)
    task_ids: List[int] = Field(default_factory=list)
    team_ids: List[int] = Field(default_factory=list)
    params: Optional[OptimizationParameters] = None

    @model_validator(mode='after')
    def date_or_month(self):
        if self.date and self.month:
            raise ValueError('Provide either date or month, not both')
        return self


class AssignRouteRequest(BaseModel):
    team_id: int


class ProgressUpdateRequest(BaseModel):
    """Stop-level status change reported by a team in the field."""
    task_id: int
    status: Literal["started", "arrived", "paused", "completed"]
    location: Optional[LatLng] = None
    accuracy_m: Optional[float] = Field(default=None, ge=0)


class RouteMetricsRequest(BaseModel):
    task_ids: List[int] = Field(min_length=1)
    team_id: int
    date: Optional[str] = Field(default=None, pattern=ISO_DATE)
    params: Optional[OptimizationParameters] = None


class ValidateRouteRequest(BaseModel):
    """Constraint check for a hypothetical assignment; overrides are optional."""
    task_ids: List[int] = Field(min_length=1)
    team_id: int
    max_time: Optional[int] = Field(default=None, gt=0)
    max_distance: Optional[float] = Field(default=None, gt=0)
    date: Optional[str] = Field(default=None, pattern=ISO_DATE)


class ReoptimizeRequest(BaseModel):
    params: Optional[OptimizationParameters] = None


class WeatherImpactRequest(BaseModel):
    coordinates: LatLng
    date: Optional[str] = Field(default=None, pattern=ISO_DATE)


class WeatherAdjustRequest(BaseModel):
    task_ids: List[int] = Field(default_factory=list)
    coordinates: List[LatLng] = Field(min_length=1)
    original_time: float = Field(ge=0)  # minutes
    original_distance: float = Field(ge=0)  # km
    date: Optional[str] = Field(default=None, pattern=ISO_DATE)


class ReportRequest(BaseModel):
    report_type: Literal["daily", "weekly", "monthly", "custom"] = "weekly"
    start_date: Optional[str] = Field(default=None, pattern=ISO_DATE)
    end_date: Optional[str] = Field(default=None, pattern=ISO_DATE)


class ServiceArea(BaseModel):
    """Circle (center + radius) or polygon geofence."""
    type: Literal["circle", "polygon"]
    center: Optional[LatLng] = None
    radius_km: Optional[float] = Field(default=None, gt=0)
    coordinates: Optional[List[LatLng]] = None

    @model_validator(mode='after')
    def shape_complete(self):
        if self.type == "circle" and (self.center is None or self.radius_km is None):
            raise ValueError('circle service area needs center and radius_km')
        if self.type == "polygon" and (not self.coordinates or len(self.coordinates) < 3):
            raise ValueError('polygon service area needs at least 3 coordinates')
        return self


class TaskCreate(BaseModel):
    """Registry payload for a new field task."""
    name: str
    address: str
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lon: Optional[float] = Field(default=None, ge=-180, le=180)
    scheduled_date: str = Field(pattern=ISO_DATE)
    window_start: Optional[str] = Field(default=None, pattern=HHMM)
    window_end: Optional[str] = Field(default=None, pattern=HHMM)
    window_flexible: bool = False
    estimated_duration_minutes: int = Field(default=60, gt=0)
    priority: Literal["high", "medium", "low"] = "medium"
    task_type: Literal["installation", "maintenance", "inspection", "delivery", "pickup"] = "maintenance"
    skills_required: List[str] = Field(default_factory=list)
    equipment_required: List[str] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    """Field-level patch for a task; only fields that are set get written."""
    name: Optional[str] = None
    address: Optional[str] = None
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lon: Optional[float] = Field(default=None, ge=-180, le=180)
    scheduled_date: Optional[str] = Field(default=None, pattern=ISO_DATE)
    window_start: Optional[str] = Field(default=None, pattern=HHMM)
    window_end: Optional[str] = Field(default=None, pattern=HHMM)
    window_flexible: Optional[bool] = None
    estimated_duration_minutes: Optional[int] = Field(default=None, gt=0)
    priority: Optional[Literal["high", "medium", "low"]] = None
    skills_required: Optional[List[str]] = None
    equipment_required: Optional[List[str]] = None
    actual_duration_minutes: Optional[float] = Field(default=None, ge=0)
    customer_rating: Optional[float] = Field(default=None, ge=1, le=5)
    delays: Optional[List[Dict[str, Any]]] = None


class TeamCreate(BaseModel):
    """Registry payload for a new team."""
    name: str
    current_lat: Optional[float] = Field(default=None, ge=-90, le=90)
    current_lon: Optional[float] = Field(default=None, ge=-180, le=180)
    work_start: Optional[str] = Field(default=None, pattern=HHMM)
    work_end: Optional[str] = Field(default=None, pattern=HHMM)
    timezone: str = "UTC"
    break_minutes: int = Field(default=0, ge=0)
    lunch_start: Optional[str] = Field(default=None, pattern=HHMM)
    lunch_end: Optional[str] = Field(default=None, pattern=HHMM)
    vehicle_type: str = "van"
    fuel_type: Literal["gasoline", "diesel", "electric", "hybrid"] = "gasoline"
    avg_fuel_consumption: Optional[float] = Field(default=None, gt=0)
    fuel_price_per_unit: Optional[float] = Field(default=None, ge=0)
    max_range_km: Optional[float] = Field(default=None, gt=0)
    skills: List[str] = Field(default_factory=list)
    equipment: List[str] = Field(default_factory=list)
    service_areas: List[ServiceArea] = Field(default_factory=list)
    max_daily_tasks: Optional[int] = Field(default=None, ge=1)
    max_route_distance_km: Optional[float] = Field(default=None, gt=0)
    is_available_for_routing: bool = True


class TeamUpdate(BaseModel):
    """Field-level patch for a team; only fields that are set get written."""
    name: Optional[str] = None
    current_lat: Optional[float] = Field(default=None, ge=-90, le=90)
    current_lon: Optional[float] = Field(default=None, ge=-180, le=180)
    location_accuracy_m: Optional[float] = Field(default=None, ge=0)
    location_manual: Optional[bool] = None
    work_start: Optional[str] = Field(default=None, pattern=HHMM)
    work_end: Optional[str] = Field(default=None, pattern=HHMM)
    break_minutes: Optional[int] = Field(default=None, ge=0)
    fuel_type: Optional[Literal["gasoline", "diesel", "electric", "hybrid"]] = None
    avg_fuel_consumption: Optional[float] = Field(default=None, gt=0)
    current_fuel_level: Optional[float] = Field(default=None, ge=0, le=100)
    maintenance_status: Optional[str] = None
    skills: Optional[List[str]] = None
    equipment: Optional[List[str]] = None
    service_areas: Optional[List[ServiceArea]] = None
    max_daily_tasks: Optional[int] = Field(default=None, ge=1)
    max_route_distance_km: Optional[float] = Field(default=None, gt=0)
    is_active: Optional[bool] = None
    is_available_for_routing: Optional[bool] = None


class HealthResponse(BaseModel):
    """API health check response."""
    status: str
    version: str
    database_connected: bool
    google_api_configured: bool
    weather_api_configured: bool
    timestamp: str
