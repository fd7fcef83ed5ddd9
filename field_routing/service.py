"""
Main service layer for field team routing.
Orchestrates registries, providers, optimization, progress and analytics.
"""

import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from .analytics import RouteAnalytics
from .constraints import (
    ConstraintValidator, ConstraintViolation, NOT_PENDING, NO_LOCATION, NO_AVAILABLE_TEAM,
)
from .distance import Coordinates, DistanceProvider, RouteMatrix
from .errors import (
    InvalidRequest, InvalidTransition, NotFound, ConstraintViolationError,
    ProviderFailure, DependencyUnavailable,
)
from .integrations.openweather import OpenWeatherClient
from .locks import KeyedLocks
from .models import (
    FieldTask, Team, Route, RouteStop, OptimizationRun,
    TaskStatus, RouteStatus, StopStatus, RunStatus,
    RouteResponse, RouteStopResponse, UnassignedTask, OptimizationSummary,
    OptimizationResult, RouteStats, ProgressResult, RouteProgressView,
    RouteMetrics, ValidationResult, utcnow,
)
from .progress import RouteProgressTracker
from .repo import DatabaseRepository
from .scoring import optimization_score
from .schemas import (
    AppConfig, Settings, OptimizationParameters, OptimizeRequest,
    ProgressUpdateRequest, RouteMetricsRequest, ValidateRouteRequest, ReoptimizeRequest,
    WeatherImpactRequest, WeatherAdjustRequest, TaskCreate, TaskUpdate, TeamCreate, TeamUpdate,
)
from .solver_greedy import (
    GreedySolver, PlanningContext, RoutePlan, StopPlan, TeamRoute, Solution, task_node, team_node,
)
from .util.geo import area_anchor, centroid
from .util.time_utils import at_minute, minute_of_day, month_days, parse_date, parse_hhmm
from .weather import AlertSource, WeatherAlert, WeatherImpact, WeatherRouteService, RouteWeatherAdjustment


logger = logging.getLogger(__name__)


class RouteOptimizationService:
    """Main service for field team route optimization."""

    def __init__(
        self,
        config_path: str = "config/params.yaml",
        config: Optional[AppConfig] = None,
        settings: Optional[Settings] = None,
        repo: Optional[DatabaseRepository] = None,
        distance_provider: Optional[DistanceProvider] = None,
        weather_client: Optional[OpenWeatherClient] = None,
        today: Optional[Callable[[], date]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize service with configuration."""
        self.config = config or self._load_config(config_path)
        self.settings = settings or Settings()

        # Setup logging
        self._setup_logging()

        # Initialize components
        self.repo = repo or DatabaseRepository(self.config)
        self.repo.create_tables()
        self.distance_provider = distance_provider or DistanceProvider(self.config, self.settings)
        self.weather_client = weather_client or OpenWeatherClient(self.config, self.settings)
        self.today = today or date.today
        self.clock = clock or utcnow

        self.validator = ConstraintValidator(self.config)
        self.solver = GreedySolver(self.config)
        self.weather = WeatherRouteService(self.config, self.weather_client, today=self.today)
        self.tracker = RouteProgressTracker(self.config, self.repo, clock=self.clock)
        self.analytics = RouteAnalytics(self.config, self.repo, as_of=self.today)
        self.planning_locks = KeyedLocks(self.config.concurrency.lock_timeout_seconds)

    def _load_config(self, config_path: str) -> AppConfig:
        """Load configuration from YAML file."""
        try:
            with open(config_path, 'r') as f:
                config_data = yaml.safe_load(f) or {}
            return AppConfig(**config_data)
        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            raise

    def _setup_logging(self) -> None:
        """Setup logging configuration."""
        logging.basicConfig(
            level=getattr(logging, self.config.logging.level),
            format=self.config.logging.format
        )

    def apply_overrides(self, overrides: Dict[str, Any]) -> None:
        """Apply dot-path overrides onto loaded config (CLI > YAML)."""
        if not overrides:
            return
        def set_dot(obj, path, val):
            parts = path.split('.')
            cur = obj
            for p in parts[:-1]:
                cur = getattr(cur, p)
            setattr(cur, parts[-1], val)
        for k, v in overrides.items():
            try:
                set_dot(self.config, k, v)
            except Exception as e:
                logger.warning(f"Override failed for {k}: {e}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @property
    def strict_providers(self) -> bool:
        return self.config.providers.fallback_policy == "strict"

    def _resolve_params(self, business_id: str, params: Optional[OptimizationParameters]) -> OptimizationParameters:
        if params is not None:
            return params
        cfg = self.repo.businesses.get_planning_config(business_id)
        if cfg and cfg.default_params:
            return OptimizationParameters(**cfg.default_params)
        return OptimizationParameters()

    def _route_params(self, business_id: str, route: Route, params: Optional[OptimizationParameters]) -> OptimizationParameters:
        if params is not None:
            return params
        if route.params:
            return OptimizationParameters(**route.params)
        return self._resolve_params(business_id, None)

    def _base_point(self, business_id: str) -> Optional[Tuple[float, float]]:
        cfg = self.repo.businesses.get_planning_config(business_id)
        if cfg and cfg.base_lat is not None and cfg.base_lon is not None:
            return cfg.base_lat, cfg.base_lon
        return None

    def _team_start(self, team: Team, base: Optional[Tuple[float, float]]) -> Optional[Tuple[float, float]]:
        """Current location, else the first service-area anchor, else the business base."""
        if team.current_lat is not None and team.current_lon is not None:
            return team.current_lat, team.current_lon
        for area in team.service_areas or []:
            anchor = area_anchor(area)
            if anchor:
                return anchor
        return base

    def _get_tasks_by_ids(self, business_id: str, task_ids: List[int], missing_error=InvalidRequest) -> List[FieldTask]:
        tasks = self.repo.tasks.get_tasks(business_id, {"ids": task_ids})
        found = {t.id for t in tasks}
        missing = [tid for tid in task_ids if tid not in found]
        if missing:
            raise missing_error(f"Tasks not found for business: {missing}")
        by_id = {t.id: t for t in tasks}
        return [by_id[tid] for tid in dict.fromkeys(task_ids)]

    async def _ensure_locations(self, business_id: str, tasks: List[FieldTask], warnings: List[str]) -> None:
        """Geocode tasks without coordinates and persist the results."""
        missing = [t for t in tasks if t.lat is None or t.lon is None]
        if not missing:
            return
        coords = await self.distance_provider.geocode_locations([t.address for t in missing])
        failed = 0
        for task in missing:
            c = coords.get(task.address)
            if c is None:
                failed += 1
                continue
            task.lat, task.lon = c.lat, c.lon
            self.repo.tasks.set_coordinates(business_id, task.id, c.lat, c.lon)
        if failed:
            warnings.append(f"{failed} tasks could not be geocoded")
        logger.info(f"Geocoded {len(missing) - failed}/{len(missing)} tasks for business {business_id}")

    async def _travel_matrix(
        self,
        points: List[Coordinates],
        day: str,
        params: OptimizationParameters,
        warnings: List[str],
    ) -> RouteMatrix:
        departure = at_minute(day, parse_hhmm(self.config.routing.work_start)) if params.consider_traffic else None
        try:
            matrix = await self.distance_provider.compute_travel_matrix(points, departure)
        except ProviderFailure as e:
            if self.strict_providers and params.consider_traffic:
                raise DependencyUnavailable("Travel time provider unavailable")
            logger.warning(f"Distance matrix failed, using straight-line estimates: {e}")
            warnings.append("Distance provider unavailable; travel times are straight-line estimates")
            matrix = self.distance_provider.fallback_matrix(points)
        warnings.extend(w for w in matrix.warnings if w not in warnings)
        return matrix

    async def _weather_delays(
        self,
        tasks: List[FieldTask],
        day: str,
        warnings: List[str],
    ) -> Dict[int, Tuple[int, Optional[str]]]:
        located = [t for t in tasks if t.lat is not None and t.lon is not None]
        if not located:
            return {}
        try:
            assessments, point_warnings = await self.weather.assess_points(
                [(t.lat, t.lon) for t in located], day
            )
        except ProviderFailure as e:
            if self.strict_providers:
                raise DependencyUnavailable("Weather provider unavailable")
            logger.warning(f"Weather lookup failed for {day}: {e}")
            warnings.append("Weather provider unavailable; no weather delays applied")
            return {}
        warnings.extend(point_warnings)
        delays: Dict[int, Tuple[int, Optional[str]]] = {}
        for i, task in enumerate(located):
            assessment = assessments.get(i)
            if assessment is not None:
                delays[task.id] = (assessment.delay_minutes, assessment.reason)
        return delays

    async def _build_context(
        self,
        business_id: str,
        day: str,
        teams: List[Team],
        tasks: List[FieldTask],
        params: OptimizationParameters,
        warnings: List[str],
    ) -> PlanningContext:
        """Matrix over task locations and team start points, plus weather delays."""
        base = self._base_point(business_id)
        points: List[Coordinates] = []
        node_index: Dict[str, int] = {}
        for task in tasks:
            if task.lat is None or task.lon is None or task_node(task.id) in node_index:
                continue
            node_index[task_node(task.id)] = len(points)
            points.append(Coordinates(lat=task.lat, lon=task.lon))

        start_nodes: Dict[int, Optional[str]] = {}
        for team in teams:
            start = self._team_start(team, base)
            if start is None:
                start_nodes[team.id] = None
                continue
            node_index[team_node(team.id)] = len(points)
            points.append(Coordinates(lat=start[0], lon=start[1]))
            start_nodes[team.id] = team_node(team.id)

        matrix = await self._travel_matrix(points, day, params, warnings)
        weather = await self._weather_delays(tasks, day, warnings) if params.consider_weather else {}
        return PlanningContext(
            route_date=day,
            matrix=matrix,
            node_index=node_index,
            weather=weather,
            start_nodes=start_nodes,
        )

    def _stop_values(self, day: str, stop: StopPlan) -> Dict[str, Any]:
        return {
            "sequence": stop.sequence,
            "estimated_arrival": at_minute(day, stop.arrival_minute),
            "estimated_departure": at_minute(day, stop.departure_minute),
            "leg_distance_km": round(stop.leg_distance_km, 2),
            "leg_minutes": round(stop.leg_minutes, 1),
            "wait_minutes": round(stop.wait_minutes, 1),
            "service_minutes": round(stop.service_minutes, 1),
            "weather_delay_minutes": round(stop.weather_delay_minutes, 1),
            "window_violation": stop.late_minutes > 0,
        }

    def _route_values(self, day: str, team_route: TeamRoute, params: OptimizationParameters) -> Dict[str, Any]:
        plan = team_route.plan
        return {
            "objective": params.objective,
            "total_distance_km": round(plan.total_distance_km, 2),
            "travel_minutes": round(plan.travel_minutes, 1),
            "service_minutes": round(plan.service_minutes, 1),
            "wait_minutes": round(plan.wait_minutes, 1),
            "total_time_minutes": round(plan.total_time_minutes, 1),
            "estimated_fuel_cost": plan.fuel_cost,
            "optimization_score": team_route.score,
            "planned_start": at_minute(day, plan.start_minute) if plan.stops else None,
            "planned_end": at_minute(day, plan.end_minute) if plan.stops else None,
            "weather_delay_minutes": round(plan.weather_delay_minutes, 1),
            "weather_reason": "; ".join(plan.weather_reasons) or None,
            "violations": [v.to_dict() for v in team_route.violations],
            "params": params.model_dump(),
        }

    def _route_row(self, business_id: str, day: str, team_route: TeamRoute,
                   params: OptimizationParameters, warnings: List[str]) -> Route:
        route = Route(
            business_id=business_id,
            team_id=team_route.team.id,
            route_date=day,
            status=RouteStatus.PLANNED,
            warnings=list(warnings),
            **self._route_values(day, team_route, params),
        )
        route.stops = [
            RouteStop(task_id=s.task.id, **self._stop_values(day, s))
            for s in team_route.plan.stops
        ]
        return route

    def _route_responses(self, business_id: str, routes: List[Route]) -> List[RouteResponse]:
        teams = {t.id: t for t in self.repo.teams.get_teams(business_id)}
        task_ids = [s.task_id for r in routes for s in r.stops]
        tasks = {t.id: t for t in self.repo.tasks.get_tasks(business_id, {"ids": task_ids})} if task_ids else {}
        out = []
        for route in routes:
            stops = []
            for s in sorted(route.stops, key=lambda x: x.sequence):
                task = tasks.get(s.task_id)
                stops.append(RouteStopResponse(
                    task_id=s.task_id,
                    task_name=task.name if task else "",
                    sequence=s.sequence,
                    lat=task.lat if task else None,
                    lon=task.lon if task else None,
                    estimated_arrival=s.estimated_arrival,
                    estimated_departure=s.estimated_departure,
                    leg_distance_km=s.leg_distance_km,
                    leg_minutes=s.leg_minutes,
                    wait_minutes=s.wait_minutes,
                    service_minutes=s.service_minutes,
                    weather_delay_minutes=s.weather_delay_minutes,
                    window_violation=s.window_violation,
                    status=s.status.value,
                ))
            team = teams.get(route.team_id)
            out.append(RouteResponse(
                id=route.id,
                team_id=route.team_id,
                team_name=team.name if team else "",
                route_date=route.route_date,
                status=route.status.value,
                objective=route.objective,
                stops=stops,
                total_distance_km=route.total_distance_km,
                travel_minutes=route.travel_minutes,
                service_minutes=route.service_minutes,
                wait_minutes=route.wait_minutes,
                total_time_minutes=route.total_time_minutes,
                estimated_fuel_cost=route.estimated_fuel_cost,
                optimization_score=route.optimization_score,
                weather_delay_minutes=route.weather_delay_minutes,
                weather_reason=route.weather_reason,
                violations=route.violations or [],
                version=route.version,
            ))
        return out

    def _plan_dates(self, day: Optional[str], month: Optional[str]) -> List[str]:
        try:
            if day:
                return [parse_date(day).isoformat()]
            if month:
                return month_days(month)
        except ValueError:
            raise InvalidRequest("Invalid date or month")
        raise InvalidRequest("Provide a date or a month")

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------
    async def optimize_routes(self, business_id: str, request: OptimizeRequest) -> OptimizationResult:
        """
        Assign tasks to teams and persist one planned route per team and day.

        Args:
            business_id: Owning business
            request: Task selector (ids, date or month), team set and parameters

        Returns:
            Routes, unassigned tasks with reasons, warnings and a summary
        """
        self.repo.businesses.get_business(business_id)
        if not (request.task_ids or request.date or request.month or request.team_ids):
            raise InvalidRequest("Provide task_ids, a date or month, or team_ids")
        params = self._resolve_params(business_id, request.params)

        if request.team_ids:
            teams = self.repo.teams.get_teams(business_id, request.team_ids)
            missing = sorted(set(request.team_ids) - {t.id for t in teams})
            if missing:
                raise InvalidRequest(f"Teams not found for business: {missing}")
        else:
            teams = self.repo.teams.get_teams(business_id)
        if not teams:
            raise InvalidRequest("Business has no teams to plan for")

        if request.date:
            self._plan_dates(request.date, None)
        if request.month:
            self._plan_dates(None, request.month)

        explicit = bool(request.task_ids)
        candidate_statuses = [TaskStatus.PENDING, TaskStatus.ASSIGNED]
        if explicit:
            tasks = self._get_tasks_by_ids(business_id, request.task_ids)
        elif request.date:
            tasks = self.repo.tasks.get_tasks(business_id, {
                "scheduled_date": request.date, "status": candidate_statuses})
        else:
            month = request.month or self.today().strftime("%Y-%m")
            tasks = self.repo.tasks.get_tasks(business_id, {"month": month, "status": candidate_statuses})

        by_day: Dict[str, List[FieldTask]] = {}
        for task in tasks:
            day = request.date if (explicit and request.date) else task.scheduled_date
            by_day.setdefault(day, []).append(task)

        run = self.repo.runs.create_run(OptimizationRun(
            business_id=business_id,
            plan_date=request.date,
            plan_month=request.month,
            task_ids=[t.id for t in tasks],
            team_ids=[t.id for t in teams],
            params=params.model_dump(),
            status=RunStatus.PROCESSING,
        ))
        logger.info(f"Optimization run {run.id} for business {business_id}: "
                    f"{len(tasks)} tasks, {len(teams)} teams, {len(by_day)} days, objective={params.objective}")

        warnings: List[str] = []
        routes: List[RouteResponse] = []
        unassigned: List[UnassignedTask] = []
        totals = {"distance": 0.0, "minutes": 0.0, "base_distance": 0.0, "base_minutes": 0.0, "seconds": 0.0}
        try:
            await self._ensure_locations(business_id, tasks, warnings)
            for day in sorted(by_day):
                day_routes, day_unassigned, solution = await self._plan_day(
                    business_id, day, teams, by_day[day], params, explicit, warnings
                )
                routes.extend(day_routes)
                unassigned.extend(day_unassigned)
                if solution is not None:
                    totals["distance"] += solution.total_distance_km
                    totals["minutes"] += solution.total_minutes
                    totals["base_distance"] += solution.baseline_distance_km
                    totals["base_minutes"] += solution.baseline_minutes
                    totals["seconds"] += solution.computation_time_seconds
        except Exception as e:
            self.repo.runs.finish_run(run.id, {"status": RunStatus.FAILED, "error": str(e)})
            logger.error(f"Optimization run {run.id} failed: {e}")
            raise

        if not by_day:
            warnings.append("No tasks matched the selection")

        def reduction(base: float, actual: float) -> float:
            return round(max(0.0, (base - actual) / base * 100), 1) if base > 0 else 0.0

        summary = OptimizationSummary(
            run_id=run.id,
            routes_generated=len(routes),
            tasks_assigned=sum(len(r.stops) for r in routes),
            tasks_unassigned=len(unassigned),
            total_distance_km=round(totals["distance"], 2),
            total_time_minutes=round(totals["minutes"], 1),
            distance_reduction_pct=reduction(totals["base_distance"], totals["distance"]),
            time_reduction_pct=reduction(totals["base_minutes"], totals["minutes"]),
            computation_time_seconds=round(totals["seconds"], 3),
        )
        self.repo.runs.finish_run(run.id, {
            "status": RunStatus.COMPLETED,
            "routes_generated": summary.routes_generated,
            "distance_reduction_pct": summary.distance_reduction_pct,
            "time_reduction_pct": summary.time_reduction_pct,
            "unassigned": [u.model_dump() for u in unassigned],
            "warnings": warnings,
        })
        logger.info(f"Optimization run {run.id} done: {summary.routes_generated} routes, "
                    f"{summary.tasks_assigned} assigned, {summary.tasks_unassigned} unassigned")
        return OptimizationResult(routes=routes, unassigned_tasks=unassigned, warnings=warnings, summary=summary)

    async def _plan_day(
        self,
        business_id: str,
        day: str,
        teams: List[Team],
        selected: List[FieldTask],
        params: OptimizationParameters,
        explicit: bool,
        warnings: List[str],
    ) -> Tuple[List[RouteResponse], List[UnassignedTask], Optional[Solution]]:
        async with self.planning_locks.hold((business_id, day)):
            expected_version = self.repo.routes.ledger_version(business_id, day)
            existing = self.repo.routes.get_routes(business_id, dates=[day])
            busy = {r.team_id for r in existing if r.status != RouteStatus.PLANNED}
            day_teams = [t for t in teams if t.id not in busy]
            for team_id in sorted(busy & {t.id for t in teams}):
                warnings.append(f"Team {team_id} already has an active route on {day}")

            team_ids = {t.id for t in day_teams}
            replaced = [r for r in existing if r.status == RouteStatus.PLANNED and r.team_id in team_ids]
            replaced_ids = {r.id for r in replaced}

            unassigned: List[UnassignedTask] = []
            plannable: List[FieldTask] = []
            for task in selected:
                if task.status == TaskStatus.PENDING or (
                        task.status == TaskStatus.ASSIGNED and task.assigned_route_id in replaced_ids):
                    plannable.append(task)
                elif explicit:
                    unassigned.append(UnassignedTask(task_id=task.id, reason=NOT_PENDING, route_date=day))

            # Tasks of replaced routes outside the selection are re-planned too
            selected_ids = {t.id for t in plannable}
            carried = [s.task_id for r in replaced for s in r.stops if s.task_id not in selected_ids]
            if carried:
                extra = self.repo.tasks.get_tasks(business_id, {"ids": carried, "status": TaskStatus.ASSIGNED})
                await self._ensure_locations(business_id, extra, warnings)
                plannable.extend(extra)

            if not day_teams:
                unassigned.extend(UnassignedTask(task_id=t.id, reason=NO_AVAILABLE_TEAM, route_date=day)
                                  for t in plannable)
                return [], unassigned, None
            if not plannable and not replaced:
                return [], unassigned, None

            ctx = await self._build_context(business_id, day, day_teams, plannable, params, warnings)
            solution = self.solver.solve(day_teams, plannable, ctx, params)
            for w in solution.warnings:
                if w not in warnings:
                    warnings.append(w)

            rows = [self._route_row(business_id, day, tr, params, []) for tr in solution.routes]
            stored = self.repo.routes.replace_planned_routes(
                business_id, day, expected_version, rows, team_ids=sorted(team_ids)
            )
            unassigned.extend(
                UnassignedTask(task_id=u.task_id, reason=u.reason, route_date=day) for u in solution.unassigned
            )
            return self._route_responses(business_id, stored), unassigned, solution

    async def get_optimized_routes(
        self, business_id: str, day: Optional[str] = None, month: Optional[str] = None
    ) -> List[RouteResponse]:
        self.repo.businesses.get_business(business_id)
        routes = self.repo.routes.get_routes(business_id, dates=self._plan_dates(day, month))
        if not routes:
            raise NotFound("No optimized routes found for this period")
        return self._route_responses(business_id, routes)

    async def get_route_stats(
        self, business_id: str, day: Optional[str] = None, month: Optional[str] = None
    ) -> RouteStats:
        self.repo.businesses.get_business(business_id)
        routes = self.repo.routes.get_routes(business_id, dates=self._plan_dates(day, month))
        stops = [s for r in routes for s in r.stops]
        measured = [r for r in routes if r.actual_total_minutes]
        fuel_measured = [r for r in routes if r.actual_fuel_cost is not None]
        efficiency = 0.0
        if measured:
            planned = sum(r.total_time_minutes for r in measured)
            actual = sum(r.actual_total_minutes for r in measured)
            efficiency = round(min(100.0, planned / actual * 100), 1) if actual > 0 else 100.0
        return RouteStats(
            total_routes=len(routes),
            total_tasks=len(stops),
            completed_tasks=sum(1 for s in stops if s.status == StopStatus.COMPLETED),
            avg_route_minutes=round(sum(r.total_time_minutes for r in routes) / len(routes), 1) if routes else 0.0,
            total_distance_km=round(sum(r.total_distance_km for r in routes), 2),
            fuel_savings=round(sum(r.estimated_fuel_cost - r.actual_fuel_cost for r in fuel_measured), 2),
            efficiency=efficiency,
            teams_with_routes=len({r.team_id for r in routes}),
        )

    # ------------------------------------------------------------------
    # Route changes
    # ------------------------------------------------------------------
    async def assign_route_to_team(self, business_id: str, route_id: int, team_id: int) -> RouteResponse:
        """Hand a planned route to a team after re-checking every hard constraint."""
        self.repo.businesses.get_business(business_id)
        async with self.tracker.locks.hold(("route", route_id)):
            route = self.repo.routes.get_route(business_id, route_id)
            if route.status not in (RouteStatus.PLANNED, RouteStatus.ASSIGNED):
                raise InvalidTransition(f"Route {route_id} is {route.status.value} and cannot be reassigned")
            team = self.repo.teams.get_team(business_id, team_id)
            params = self._route_params(business_id, route, None)
            tasks = self._get_tasks_by_ids(business_id, [s.task_id for s in route.stops], NotFound)

            violations: List[ConstraintViolation] = []
            if not (team.is_active and team.is_available_for_routing):
                violations.append(ConstraintViolation(
                    task_id=None, team_id=team.id, violation_type=NO_AVAILABLE_TEAM,
                    message="Team is not available for routing"))
            violations += self.validator.check_task_fit(tasks, team, params)
            others = self.repo.routes.get_routes(business_id, dates=[route.route_date], team_id=team.id)
            existing = sum(len(r.stops) for r in others if r.id != route.id)
            violations += self.validator.check_capacity(len(tasks), team, params, existing)

            warnings: List[str] = []
            ctx = await self._build_context(business_id, route.route_date, [team], tasks, params, warnings)
            plan = self.solver.simulate(team, tasks, ctx, params)
            violations += self.validator.check_plan(
                plan, team, max_time=params.max_route_time, allow_overtime=params.allow_overtime)

            if any(v.severity == "error" for v in violations):
                raise ConstraintViolationError(
                    f"Route {route_id} cannot be assigned to team {team_id}",
                    [v.to_dict() for v in violations],
                )

            team_route = TeamRoute(team=team, plan=plan, cost=0.0,
                                   score=optimization_score(plan, params, self.config),
                                   violations=violations)
            route_values = self._route_values(route.route_date, team_route, params)
            route_values.update(team_id=team.id, status=RouteStatus.ASSIGNED, assigned_at=self.clock(),
                                warnings=warnings)
            updated = self.repo.routes.retime_route(
                business_id, route_id, route.version, route_values,
                {s.task.id: self._stop_values(route.route_date, s) for s in plan.stops},
                task_values={"assigned_team_id": team.id},
            )
        logger.info(f"Route {route_id} assigned to team {team_id} for business {business_id}")
        return self._route_responses(business_id, [updated])[0]

    async def reoptimize_route(
        self, business_id: str, route_id: int, request: Optional[ReoptimizeRequest] = None
    ) -> RouteResponse:
        """Re-sequence a route's pending stops; started and finished stops stay in place."""
        self.repo.businesses.get_business(business_id)
        async with self.tracker.locks.hold(("route", route_id)):
            route = self.repo.routes.get_route(business_id, route_id)
            if route.status == RouteStatus.COMPLETED:
                raise InvalidRequest(f"Route {route_id} is completed and cannot be re-optimized")
            params = self._route_params(business_id, route, request.params if request else None)
            team = self.repo.teams.get_team(business_id, route.team_id)

            stops = sorted(route.stops, key=lambda s: s.sequence)
            fixed = [s for s in stops if s.status != StopStatus.PENDING]
            pending = [s for s in stops if s.status == StopStatus.PENDING]
            if not pending:
                return self._route_responses(business_id, [route])[0]

            ids = [s.task_id for s in pending] + ([fixed[-1].task_id] if fixed else [])
            tasks = {t.id: t for t in self._get_tasks_by_ids(business_id, ids, NotFound)}
            pending_tasks = [tasks[s.task_id] for s in pending]

            start_node = None
            start_minute = None
            if fixed:
                last = fixed[-1]
                anchor = last.completed_at or last.estimated_departure
                now = self.clock()
                if now.date().isoformat() == route.route_date and now > anchor:
                    anchor = now
                start_node = task_node(last.task_id)
                start_minute = minute_of_day(anchor)

            warnings: List[str] = []
            context_tasks = pending_tasks + ([tasks[fixed[-1].task_id]] if fixed else [])
            await self._ensure_locations(business_id, context_tasks, warnings)
            ctx = await self._build_context(business_id, route.route_date, [team], context_tasks, params, warnings)
            if start_node is not None and start_node not in ctx.node_index:
                start_node, start_minute = None, None
            team_route = self.solver.plan_route(team, pending_tasks, ctx, params, start_node, start_minute)

            offset = len(fixed)
            stop_values = {}
            for n, s in enumerate(fixed):
                stop_values[s.task_id] = {"sequence": n}
            for s in team_route.plan.stops:
                values = self._stop_values(route.route_date, s)
                values["sequence"] = offset + s.sequence
                stop_values[s.task.id] = values

            route_values = self._route_values(route.route_date, team_route, params)
            if fixed:
                plan = team_route.plan
                route_values.update(
                    total_distance_km=round(sum(s.leg_distance_km for s in fixed) + plan.total_distance_km, 2),
                    travel_minutes=round(sum(s.leg_minutes for s in fixed) + plan.travel_minutes, 1),
                    service_minutes=round(sum(s.service_minutes for s in fixed) + plan.service_minutes, 1),
                    wait_minutes=round(sum(s.wait_minutes for s in fixed) + plan.wait_minutes, 1),
                    weather_delay_minutes=round(
                        sum(s.weather_delay_minutes for s in fixed) + plan.weather_delay_minutes, 1),
                    planned_start=route.planned_start,
                )
                if route.planned_start is not None and route_values["planned_end"] is not None:
                    route_values["total_time_minutes"] = round(
                        (route_values["planned_end"] - route.planned_start).total_seconds() / 60, 1)
            route_values["warnings"] = warnings
            updated = self.repo.routes.retime_route(
                business_id, route_id, route.version, route_values, stop_values)
        logger.info(f"Route {route_id} re-optimized for business {business_id}: "
                    f"{len(pending)} pending stops re-sequenced, {len(fixed)} kept")
        return self._route_responses(business_id, [updated])[0]

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------
    async def update_route_progress(
        self, business_id: str, route_id: int, request: ProgressUpdateRequest
    ) -> ProgressResult:
        self.repo.businesses.get_business(business_id)
        location = request.location.model_dump() if request.location else None
        return await self.tracker.update_progress(
            business_id, route_id, request.task_id, request.status, location, request.accuracy_m
        )

    async def get_route_progress(self, business_id: str, route_id: int) -> RouteProgressView:
        self.repo.businesses.get_business(business_id)
        return self.tracker.get_progress(business_id, route_id)

    # ------------------------------------------------------------------
    # Previews and validation
    # ------------------------------------------------------------------
    async def calculate_route_metrics(self, business_id: str, request: RouteMetricsRequest) -> RouteMetrics:
        """Sequence and score a hypothetical task set for one team; nothing is stored."""
        self.repo.businesses.get_business(business_id)
        team = self.repo.teams.get_team(business_id, request.team_id)
        tasks = self._get_tasks_by_ids(business_id, request.task_ids, NotFound)
        params = self._resolve_params(business_id, request.params)
        warnings: List[str] = []
        await self._ensure_locations(business_id, tasks, warnings)
        unlocated = [t.id for t in tasks if t.lat is None or t.lon is None]
        if unlocated:
            raise InvalidRequest(f"Tasks without a location: {unlocated}")

        day = request.date or tasks[0].scheduled_date
        ctx = await self._build_context(business_id, day, [team], tasks, params, warnings)
        team_route = self.solver.plan_route(team, tasks, ctx, params)
        plan = team_route.plan
        return RouteMetrics(
            team_id=team.id,
            task_ids=list(request.task_ids),
            ordered_task_ids=plan.task_ids,
            total_distance_km=round(plan.total_distance_km, 2),
            travel_minutes=round(plan.travel_minutes, 1),
            service_minutes=round(plan.service_minutes, 1),
            total_time_minutes=round(plan.total_time_minutes, 1),
            estimated_fuel_cost=plan.fuel_cost,
            optimization_score=team_route.score,
            weather_delay_minutes=round(plan.weather_delay_minutes, 1),
            violations=[v.to_dict() for v in team_route.violations],
        )

    async def validate_route_constraints(self, business_id: str, request: ValidateRouteRequest) -> ValidationResult:
        """Report every violated constraint for a hypothetical assignment; never raises for violations."""
        self.repo.businesses.get_business(business_id)
        team = self.repo.teams.get_team(business_id, request.team_id)
        tasks = self._get_tasks_by_ids(business_id, request.task_ids, NotFound)
        params = self._resolve_params(business_id, None)
        max_time = request.max_time if request.max_time is not None else params.max_route_time

        warnings: List[str] = []
        await self._ensure_locations(business_id, tasks, warnings)
        violations = self.validator.check_task_fit(tasks, team, params)
        violations += self.validator.check_capacity(len(tasks), team, params)

        located = [t for t in tasks if t.lat is not None and t.lon is not None]
        located_ids = {t.id for t in located}
        for task in tasks:
            if task.id not in located_ids:
                violations.append(ConstraintViolation(
                    task_id=task.id, team_id=team.id, violation_type=NO_LOCATION,
                    message="Task has no coordinates", severity="warning"))
        if located:
            day = request.date or located[0].scheduled_date
            ctx = await self._build_context(business_id, day, [team], located, params, warnings)
            plan = self.solver.best_sequence(team, located, ctx, params)
            violations += self.validator.check_plan(plan, team, max_time=max_time, max_distance=request.max_distance)

        codes = list(dict.fromkeys(v.violation_type for v in violations if v.severity == "error"))
        return ValidationResult(
            valid=not codes,
            violations=codes,
            details=[v.to_dict() for v in violations],
        )

    # ------------------------------------------------------------------
    # Weather
    # ------------------------------------------------------------------
    async def get_weather_impact(self, business_id: str, request: WeatherImpactRequest) -> WeatherImpact:
        self.repo.businesses.get_business(business_id)
        return await self.weather.get_weather_impact(
            business_id, request.coordinates.lat, request.coordinates.lng, request.date
        )

    async def adjust_route_for_weather(self, business_id: str, request: WeatherAdjustRequest) -> RouteWeatherAdjustment:
        self.repo.businesses.get_business(business_id)
        if request.task_ids:
            self._get_tasks_by_ids(business_id, request.task_ids, NotFound)
        try:
            return await self.weather.adjust_route_for_weather(business_id, request)
        except ProviderFailure as e:
            logger.error(f"Weather adjustment unavailable for business {business_id}: {e}")
            raise DependencyUnavailable("Weather provider unavailable")

    async def get_weather_alerts(
        self, business_id: str, severity: Optional[str] = None, alert_type: Optional[str] = None
    ) -> List[WeatherAlert]:
        """Alerts near service areas, the business base and today's assigned routes."""
        self.repo.businesses.get_business(business_id)
        sources: List[AlertSource] = []
        for team in self.repo.teams.get_teams(business_id):
            if not team.is_active:
                continue
            for n, area in enumerate(team.service_areas or []):
                anchor = area_anchor(area)
                if anchor:
                    sources.append(AlertSource(label=f"{team.name} service area {n + 1}",
                                               lat=anchor[0], lon=anchor[1]))
        cfg = self.repo.businesses.get_planning_config(business_id)
        if cfg and cfg.base_lat is not None and cfg.base_lon is not None:
            sources.append(AlertSource(label=cfg.base_name or "Business base", lat=cfg.base_lat, lon=cfg.base_lon))

        today = self.today().isoformat()
        routes = self.repo.routes.get_routes(
            business_id, dates=[today], statuses=[RouteStatus.ASSIGNED, RouteStatus.IN_PROGRESS])
        task_ids = [s.task_id for r in routes for s in r.stops]
        tasks = {t.id: t for t in self.repo.tasks.get_tasks(business_id, {"ids": task_ids})} if task_ids else {}
        for route in routes:
            pts = [(tasks[s.task_id].lat, tasks[s.task_id].lon) for s in route.stops
                   if s.task_id in tasks and tasks[s.task_id].lat is not None]
            center = centroid(pts)
            if center:
                sources.append(AlertSource(label=f"Route {route.id}", lat=center[0], lon=center[1]))
        return await self.weather.alerts_for_sources(business_id, sources, severity, alert_type)

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------
    def generate_route_report(self, business_id: str, report_type: str,
                              start_date: Optional[str] = None, end_date: Optional[str] = None) -> Dict[str, Any]:
        return self.analytics.generate_route_report(business_id, report_type, start_date, end_date)

    def get_performance_metrics(self, business_id: str, timeframe: str = "30d") -> Dict[str, Any]:
        return self.analytics.get_performance_metrics(business_id, timeframe)

    def calculate_cost_savings(self, business_id: str, timeframe: str = "30d") -> Dict[str, Any]:
        return self.analytics.calculate_cost_savings(business_id, timeframe)

    def get_efficiency_trends(self, business_id: str, timeframe: str = "90d") -> Dict[str, Any]:
        return self.analytics.get_efficiency_trends(business_id, timeframe)

    def export_analytics(self, business_id: str, export_format: str = "csv", timeframe: str = "30d") -> Dict[str, Any]:
        return self.analytics.export_analytics(business_id, export_format, timeframe)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    def ensure_business(self, business_id: str, name: str,
                        planning: Optional[Dict[str, Any]] = None) -> None:
        """Create or refresh a business record and its planning defaults."""
        self.repo.businesses.upsert_business(business_id, name)
        if planning:
            self.repo.businesses.upsert_planning_config(business_id, planning)

    def create_task(self, business_id: str, data: TaskCreate) -> FieldTask:
        self.repo.businesses.get_business(business_id)
        return self.repo.tasks.create_task(business_id, data)

    def update_task(self, business_id: str, task_id: int, patch: TaskUpdate) -> FieldTask:
        self.repo.businesses.get_business(business_id)
        return self.repo.tasks.apply_update(business_id, task_id, patch)

    def create_team(self, business_id: str, data: TeamCreate) -> Team:
        self.repo.businesses.get_business(business_id)
        return self.repo.teams.create_team(business_id, data)

    def update_team(self, business_id: str, team_id: int, patch: TeamUpdate) -> Team:
        self.repo.businesses.get_business(business_id)
        return self.repo.teams.apply_update(business_id, team_id, patch)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def health_check(self) -> Dict[str, Any]:
        """Perform health check."""
        db_ok = self.repo.health_check()
        return {
            "status": "healthy" if db_ok else "degraded",
            "version": self.config.project.version,
            "database_connected": db_ok,
            "google_api_configured": self.distance_provider.google_configured,
            "weather_api_configured": self.weather_client.configured,
            "timestamp": utcnow().isoformat(),
        }

    async def close(self) -> None:
        """Clean up resources."""
        await self.distance_provider.close()
        await self.weather_client.close()
