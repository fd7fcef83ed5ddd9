"""
Core data models for the field routing engine.
Uses SQLModel for database ORM and Pydantic for validation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Dict, Any
from sqlalchemy import Column, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship
from pydantic import BaseModel


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp; sqlmodel stores these as UTC."""
    return datetime.now(timezone.utc)


class TaskPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANK = {"high": 3, "medium": 2, "low": 1}


def priority_rank(priority) -> int:
    return PRIORITY_RANK.get(getattr(priority, "value", priority), 1)


class TaskType(str, Enum):
    INSTALLATION = "installation"
    MAINTENANCE = "maintenance"
    INSPECTION = "inspection"
    DELIVERY = "delivery"
    PICKUP = "pickup"


class TaskStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RouteStatus(str, Enum):
    PLANNED = "planned"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class StopStatus(str, Enum):
    PENDING = "pending"
    STARTED = "started"
    ARRIVED = "arrived"
    PAUSED = "paused"
    COMPLETED = "completed"


class RunStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Allowed forward moves; anything absent is an invalid transition.
TASK_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.ASSIGNED, TaskStatus.CANCELLED},
    TaskStatus.ASSIGNED: {TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.CANCELLED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.CANCELLED: set(),
}

ROUTE_TRANSITIONS = {
    RouteStatus.PLANNED: {RouteStatus.ASSIGNED, RouteStatus.IN_PROGRESS},
    RouteStatus.ASSIGNED: {RouteStatus.IN_PROGRESS},
    RouteStatus.IN_PROGRESS: {RouteStatus.COMPLETED},
    RouteStatus.COMPLETED: set(),
}

# completed requires a prior started or arrived; paused returns to started
STOP_TRANSITIONS = {
    StopStatus.PENDING: {StopStatus.STARTED},
    StopStatus.STARTED: {StopStatus.ARRIVED, StopStatus.PAUSED, StopStatus.COMPLETED},
    StopStatus.ARRIVED: {StopStatus.COMPLETED, StopStatus.PAUSED},
    StopStatus.PAUSED: {StopStatus.STARTED},
    StopStatus.COMPLETED: set(),
}


# Database Models (SQLModel)
class Business(SQLModel, table=True):
    """Tenant record; owned by the surrounding CRUD layer."""
    id: str = Field(primary_key=True)
    name: str
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)


class RoutePlanningConfig(SQLModel, table=True):
    """Per-business planning defaults and base location."""
    id: Optional[int] = Field(default=None, primary_key=True)
    business_id: str = Field(foreign_key="business.id", unique=True, index=True)
    default_params: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    base_name: Optional[str] = Field(default=None)
    base_lat: Optional[float] = Field(default=None)
    base_lon: Optional[float] = Field(default=None)
    updated_at: datetime = Field(default_factory=utcnow)


class Team(SQLModel, table=True):
    """Mobile field team with vehicle, skills and service areas."""
    id: Optional[int] = Field(default=None, primary_key=True)
    business_id: str = Field(foreign_key="business.id", index=True)
    name: str
    is_active: bool = Field(default=True)
    is_available_for_routing: bool = Field(default=True)

    # Current location
    current_lat: Optional[float] = Field(default=None)
    current_lon: Optional[float] = Field(default=None)
    location_accuracy_m: Optional[float] = Field(default=None)
    location_manual: bool = Field(default=False)
    location_updated_at: Optional[datetime] = Field(default=None)

    # Working hours
    work_start: Optional[str] = Field(default=None)  # HH:MM
    work_end: Optional[str] = Field(default=None)    # HH:MM
    timezone: str = Field(default="UTC")
    break_minutes: int = Field(default=0, ge=0)
    lunch_start: Optional[str] = Field(default=None)
    lunch_end: Optional[str] = Field(default=None)

    # Vehicle
    vehicle_type: str = Field(default="van")
    fuel_type: str = Field(default="gasoline")
    avg_fuel_consumption: Optional[float] = Field(default=None)  # per 100 km
    fuel_price_per_unit: Optional[float] = Field(default=None)
    max_range_km: Optional[float] = Field(default=None)
    current_fuel_level: Optional[float] = Field(default=None)
    maintenance_status: str = Field(default="good")

    skills: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    equipment: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    service_areas: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    max_daily_tasks: Optional[int] = Field(default=None)
    max_route_distance_km: Optional[float] = Field(default=None)

    # Rolling performance metrics, maintained out-of-band
    avg_tasks_per_day: float = Field(default=0.0)
    on_time_rate: float = Field(default=0.0)
    customer_rating: float = Field(default=0.0)
    fuel_efficiency: float = Field(default=0.0)

    created_at: datetime = Field(default_factory=utcnow)


class FieldTask(SQLModel, table=True):
    """A unit of field work at one address on one day."""
    id: Optional[int] = Field(default=None, primary_key=True)
    business_id: str = Field(foreign_key="business.id", index=True)
    name: str
    address: str
    lat: Optional[float] = Field(default=None)
    lon: Optional[float] = Field(default=None)
    scheduled_date: str = Field(index=True)  # YYYY-MM-DD
    window_start: Optional[str] = Field(default=None)  # HH:MM
    window_end: Optional[str] = Field(default=None)    # HH:MM
    window_flexible: bool = Field(default=False)
    estimated_duration_minutes: int = Field(default=60, gt=0)
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    task_type: TaskType = Field(default=TaskType.MAINTENANCE)
    skills_required: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    equipment_required: List[str] = Field(default_factory=list, sa_column=Column(JSON))

    status: TaskStatus = Field(default=TaskStatus.PENDING, index=True)
    assigned_team_id: Optional[int] = Field(default=None, foreign_key="team.id")
    assigned_route_id: Optional[int] = Field(default=None)

    # Outcome, written by the tracker and read by analytics
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    actual_duration_minutes: Optional[float] = Field(default=None)
    customer_rating: Optional[float] = Field(default=None)
    delays: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow)


# Route optimization results
class Route(SQLModel, table=True):
    """One team's ordered stops for one day."""
    id: Optional[int] = Field(default=None, primary_key=True)
    business_id: str = Field(foreign_key="business.id", index=True)
    team_id: int = Field(foreign_key="team.id", index=True)
    route_date: str = Field(index=True)  # YYYY-MM-DD
    status: RouteStatus = Field(default=RouteStatus.PLANNED)
    objective: str = Field(default="balanced")

    total_distance_km: float = Field(default=0.0, ge=0)
    travel_minutes: float = Field(default=0.0, ge=0)
    service_minutes: float = Field(default=0.0, ge=0)
    wait_minutes: float = Field(default=0.0, ge=0)
    total_time_minutes: float = Field(default=0.0, ge=0)
    estimated_fuel_cost: float = Field(default=0.0, ge=0)
    optimization_score: float = Field(default=0.0, ge=0, le=100)
    planned_start: Optional[datetime] = Field(default=None)
    planned_end: Optional[datetime] = Field(default=None)

    weather_delay_minutes: float = Field(default=0.0, ge=0)
    weather_reason: Optional[str] = Field(default=None)
    violations: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    warnings: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    params: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    actual_total_minutes: Optional[float] = Field(default=None)
    actual_distance_km: Optional[float] = Field(default=None)
    actual_fuel_cost: Optional[float] = Field(default=None)

    version: int = Field(default=1)
    created_at: datetime = Field(default_factory=utcnow)
    assigned_at: Optional[datetime] = Field(default=None)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)

    # Relationships
    stops: List["RouteStop"] = Relationship(
        back_populates="route",
        sa_relationship_kwargs={"order_by": "RouteStop.sequence", "cascade": "all, delete-orphan"}
    )


class RouteStop(SQLModel, table=True):
    """Individual stop in an optimized route."""
    id: Optional[int] = Field(default=None, primary_key=True)
    route_id: int = Field(foreign_key="route.id", index=True)
    task_id: int = Field(foreign_key="fieldtask.id", index=True)
    sequence: int = Field(ge=0)
    estimated_arrival: datetime
    estimated_departure: datetime
    leg_distance_km: float = Field(default=0.0, ge=0)
    leg_minutes: float = Field(default=0.0, ge=0)
    wait_minutes: float = Field(default=0.0, ge=0)
    service_minutes: float = Field(default=0.0, ge=0)
    weather_delay_minutes: float = Field(default=0.0, ge=0)
    window_violation: bool = Field(default=False)

    status: StopStatus = Field(default=StopStatus.PENDING)
    started_at: Optional[datetime] = Field(default=None)
    arrived_at: Optional[datetime] = Field(default=None)
    paused_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    last_lat: Optional[float] = Field(default=None)
    last_lon: Optional[float] = Field(default=None)

    # Relationships
    route: Optional[Route] = Relationship(back_populates="stops")


class OptimizationRun(SQLModel, table=True):
    """Audit record of one optimization invocation."""
    id: Optional[int] = Field(default=None, primary_key=True)
    business_id: str = Field(foreign_key="business.id", index=True)
    plan_date: Optional[str] = Field(default=None)
    plan_month: Optional[str] = Field(default=None)
    task_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    team_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    params: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    status: RunStatus = Field(default=RunStatus.PENDING)
    routes_generated: int = Field(default=0)
    distance_reduction_pct: float = Field(default=0.0)
    time_reduction_pct: float = Field(default=0.0)
    unassigned: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    warnings: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = Field(default=None)


class PlanningLedger(SQLModel, table=True):
    """Version counter per (business, date) guarding route replacement."""
    __table_args__ = (UniqueConstraint("business_id", "plan_date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    business_id: str = Field(index=True)
    plan_date: str
    version: int = Field(default=0)
    updated_at: datetime = Field(default_factory=utcnow)


class RouteReportRecord(SQLModel, table=True):
    """Stored analytics report; only the most recent ones are kept."""
    id: Optional[int] = Field(default=None, primary_key=True)
    business_id: str = Field(index=True)
    report_type: str
    period_start: str
    period_end: str
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)


# Pydantic models for API responses
class RouteStopResponse(BaseModel):
    """Route stop for API responses."""
    task_id: int
    task_name: str
    sequence: int
    lat: Optional[float]
    lon: Optional[float]
    estimated_arrival: datetime
    estimated_departure: datetime
    leg_distance_km: float
    leg_minutes: float
    wait_minutes: float
    service_minutes: float
    weather_delay_minutes: float
    window_violation: bool
    status: str


class RouteResponse(BaseModel):
    """Complete route for a team."""
    id: Optional[int]
    team_id: int
    team_name: str
    route_date: str
    status: str
    objective: str
    stops: List[RouteStopResponse]
    total_distance_km: float
    travel_minutes: float
    service_minutes: float
    wait_minutes: float
    total_time_minutes: float
    estimated_fuel_cost: float
    optimization_score: float
    weather_delay_minutes: float
    weather_reason: Optional[str]
    violations: List[Dict[str, Any]]
    version: int


class UnassignedTask(BaseModel):
    """Task the optimizer could not place, with a reason code."""
    task_id: int
    reason: str
    route_date: Optional[str] = None


class OptimizationSummary(BaseModel):
    run_id: Optional[int]
    routes_generated: int
    tasks_assigned: int
    tasks_unassigned: int
    total_distance_km: float
    total_time_minutes: float
    distance_reduction_pct: float
    time_reduction_pct: float
    computation_time_seconds: float


class OptimizationResult(BaseModel):
    """Complete optimization result."""
    routes: List[RouteResponse]
    unassigned_tasks: List[UnassignedTask]
    warnings: List[str]
    summary: OptimizationSummary


class RouteStats(BaseModel):
    total_routes: int
    total_tasks: int
    completed_tasks: int
    avg_route_minutes: float
    total_distance_km: float
    fuel_savings: float
    efficiency: float
    teams_with_routes: int


class ProgressResult(BaseModel):
    route_id: int
    task_id: int
    stop_status: str
    route_status: str
    completed_stops: int
    total_stops: int
    updated_at: datetime


class RouteProgressView(BaseModel):
    route_id: int
    route_status: str
    completed_stops: int
    total_stops: int
    current_stop: Optional[int]
    estimated_completion: Optional[datetime]
    stops: List[Dict[str, Any]]


class RouteMetrics(BaseModel):
    """Preview of a hypothetical task set for one team."""
    team_id: int
    task_ids: List[int]
    ordered_task_ids: List[int]
    total_distance_km: float
    travel_minutes: float
    service_minutes: float
    total_time_minutes: float
    estimated_fuel_cost: float
    optimization_score: float
    weather_delay_minutes: float
    violations: List[Dict[str, Any]]


class ValidationResult(BaseModel):
    valid: bool
    violations: List[str]
    details: List[Dict[str, Any]]
