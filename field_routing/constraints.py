"""
Constraint validation for field team routing.
Handles skill, equipment, service-area, capacity, time and distance constraints.
"""

from dataclasses import dataclass, asdict
from typing import List, Optional, Sequence, Tuple, TYPE_CHECKING

from .models import Team, FieldTask
from .schemas import AppConfig, OptimizationParameters
from .util.geo import in_any_service_area
from .util.time_utils import parse_hhmm

if TYPE_CHECKING:
    from .solver_greedy import RoutePlan


NO_SKILL_MATCH = "no skill match"
MISSING_EQUIPMENT = "missing equipment"
OUTSIDE_SERVICE_AREA = "outside service area"
EXCEEDS_MAX_DAILY_TASKS = "exceeds maxDailyTasks"
EXCEEDS_MAX_TIME = "exceeds maxTime"
EXCEEDS_MAX_DISTANCE = "exceeds maxDistance"
TIME_WINDOW_UNMET = "time window unmet"

# Unassigned-task reasons beyond the eligibility codes above
NO_CAPACITY = "no capacity"
NO_FEASIBLE_WINDOW = "no feasible time window"
NO_LOCATION = "no location"
NOT_PENDING = "not pending"
NO_AVAILABLE_TEAM = "no available team"


@dataclass
class ConstraintViolation:
    """Represents a constraint violation."""
    task_id: Optional[int]
    team_id: int
    violation_type: str
    message: str
    severity: str = "error"  # error, warning

    def to_dict(self) -> dict:
        return asdict(self)


class ConstraintValidator:
    """Validates routing constraints for team assignments."""

    def __init__(self, config: AppConfig):
        """Initialize with configuration."""
        self.config = config

    # Team limits, with configuration fallbacks
    def team_capacity(self, team: Team, params: OptimizationParameters) -> int:
        daily = team.max_daily_tasks or self.config.routing.max_daily_tasks
        return min(daily, params.max_stops_per_route)

    def team_distance_limit(self, team: Team) -> float:
        limit = team.max_route_distance_km or self.config.routing.max_route_distance_km
        if team.max_range_km:
            limit = min(limit, team.max_range_km)
        return limit

    def team_hours(self, team: Team) -> Tuple[int, int]:
        """Working window in minutes since midnight, break already deducted from the end."""
        start = parse_hhmm(team.work_start or self.config.routing.work_start)
        end = parse_hhmm(team.work_end or self.config.routing.work_end)
        return start, end - (team.break_minutes or 0)

    def task_window(self, task: FieldTask) -> Tuple[Optional[int], Optional[int]]:
        start = parse_hhmm(task.window_start) if task.window_start else None
        end = parse_hhmm(task.window_end) if task.window_end else None
        return start, end

    def eligibility(self, task: FieldTask, team: Team, params: OptimizationParameters) -> Optional[str]:
        """Hard filter for one task-team pair; returns the failing reason or None."""
        if params.skill_matching:
            if not set(task.skills_required or []) <= set(team.skills or []):
                return NO_SKILL_MATCH
            if not set(task.equipment_required or []) <= set(team.equipment or []):
                return MISSING_EQUIPMENT
        if task.lat is not None and task.lon is not None:
            if not in_any_service_area(task.lat, task.lon, team.service_areas or []):
                return OUTSIDE_SERVICE_AREA
        return None

    def check_task_fit(
        self,
        tasks: Sequence[FieldTask],
        team: Team,
        params: OptimizationParameters
    ) -> List[ConstraintViolation]:
        """Skill, equipment and service-area checks for every task."""
        violations = []
        for task in tasks:
            if params.skill_matching:
                missing = sorted(set(task.skills_required or []) - set(team.skills or []))
                if missing:
                    violations.append(ConstraintViolation(
                        task_id=task.id,
                        team_id=team.id,
                        violation_type=NO_SKILL_MATCH,
                        message=f"Team lacks required skills: {', '.join(missing)}"
                    ))
                missing_eq = sorted(set(task.equipment_required or []) - set(team.equipment or []))
                if missing_eq:
                    violations.append(ConstraintViolation(
                        task_id=task.id,
                        team_id=team.id,
                        violation_type=MISSING_EQUIPMENT,
                        message=f"Team lacks required equipment: {', '.join(missing_eq)}"
                    ))
            if task.lat is not None and task.lon is not None and \
                    not in_any_service_area(task.lat, task.lon, team.service_areas or []):
                violations.append(ConstraintViolation(
                    task_id=task.id,
                    team_id=team.id,
                    violation_type=OUTSIDE_SERVICE_AREA,
                    message="Task is outside the team's service areas"
                ))
        return violations

    def check_capacity(
        self,
        task_count: int,
        team: Team,
        params: OptimizationParameters,
        existing_tasks: int = 0
    ) -> List[ConstraintViolation]:
        capacity = self.team_capacity(team, params)
        total = task_count + existing_tasks
        if total > capacity:
            return [ConstraintViolation(
                task_id=None,
                team_id=team.id,
                violation_type=EXCEEDS_MAX_DAILY_TASKS,
                message=f"{total} tasks exceed the daily limit of {capacity}"
            )]
        return []

    def check_plan(
        self,
        plan: "RoutePlan",
        team: Team,
        max_time: Optional[float] = None,
        max_distance: Optional[float] = None,
        allow_overtime: bool = False
    ) -> List[ConstraintViolation]:
        """Time, distance and window checks over a simulated route."""
        violations = []

        if max_time is not None and not allow_overtime and plan.working_minutes > max_time + 1e-6:
            violations.append(ConstraintViolation(
                task_id=None,
                team_id=team.id,
                violation_type=EXCEEDS_MAX_TIME,
                message=f"Route needs {plan.working_minutes:.0f} min, limit is {max_time:.0f} min"
            ))

        limit = max_distance if max_distance is not None else self.team_distance_limit(team)
        if plan.total_distance_km > limit + 1e-6:
            violations.append(ConstraintViolation(
                task_id=None,
                team_id=team.id,
                violation_type=EXCEEDS_MAX_DISTANCE,
                message=f"Route covers {plan.total_distance_km:.1f} km, limit is {limit:.1f} km"
            ))

        for stop in plan.stops:
            if stop.late_minutes > 0:
                violations.append(ConstraintViolation(
                    task_id=stop.task.id,
                    team_id=team.id,
                    violation_type=TIME_WINDOW_UNMET,
                    message=f"Arrival misses the window by {stop.late_minutes:.0f} min",
                    severity="warning" if stop.task.window_flexible else "error"
                ))
        return violations
