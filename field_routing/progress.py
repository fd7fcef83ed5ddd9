"""
Route progress tracking.

Teams report stop-level status changes from the field. Each change is
checked against the stop state machine, written with a compare-and-set on
the stop row, and rolled up into task and route status.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Any, List, Optional, Tuple

from .errors import InvalidRequest, InvalidTransition, NotFound
from .locks import KeyedLocks
from .models import (
    Route, RouteStop, RouteStatus, StopStatus, TaskStatus,
    STOP_TRANSITIONS, ProgressResult, RouteProgressView, utcnow,
)
from .repo import DatabaseRepository
from .schemas import AppConfig
from .scoring import estimate_fuel_cost
from .util.geo import km
from .util.time_utils import minutes_between


logger = logging.getLogger(__name__)

STOP_TIMESTAMP = {
    StopStatus.STARTED: "started_at",
    StopStatus.ARRIVED: "arrived_at",
    StopStatus.PAUSED: "paused_at",
    StopStatus.COMPLETED: "completed_at",
}


class RouteProgressTracker:
    """Applies progress reports to stops, tasks, routes and team locations."""

    def __init__(
        self,
        config: AppConfig,
        repo: DatabaseRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.repo = repo
        self.clock = clock
        self.locks = KeyedLocks(config.concurrency.lock_timeout_seconds)

    async def update_progress(
        self,
        business_id: str,
        route_id: int,
        task_id: int,
        status: str,
        location: Optional[Dict[str, float]] = None,
        accuracy_m: Optional[float] = None,
    ) -> ProgressResult:
        try:
            target = StopStatus(status)
        except ValueError:
            raise InvalidRequest(f"Invalid stop status '{status}'")
        if target == StopStatus.PENDING:
            raise InvalidTransition("Stops cannot return to pending")

        async with self.locks.hold(("route", route_id)):
            route = self.repo.routes.get_route(business_id, route_id)
            if route.status == RouteStatus.COMPLETED:
                raise InvalidTransition(f"Route {route_id} is already completed")
            stop = next((s for s in route.stops if s.task_id == task_id), None)
            if stop is None:
                raise NotFound(f"Task {task_id} is not on route {route_id}")
            if target not in STOP_TRANSITIONS[stop.status]:
                raise InvalidTransition(
                    f"Stop for task {task_id} cannot move from {stop.status.value} to {target.value}"
                )

            now = self.clock()
            values: Dict[str, Any] = {"status": target}
            column = STOP_TIMESTAMP[target]
            if target != StopStatus.STARTED or stop.started_at is None:
                values[column] = now
            if location:
                values["last_lat"] = location["lat"]
                values["last_lon"] = location["lng"]

            statuses = {s.id: s.status for s in route.stops}
            statuses[stop.id] = target
            completed = sum(1 for st in statuses.values() if st == StopStatus.COMPLETED)
            route_status, route_values = self._route_step(business_id, route, stop, values, completed, now)

            team_values = None
            if location:
                team_values = {
                    "current_lat": location["lat"],
                    "current_lon": location["lng"],
                    "location_accuracy_m": accuracy_m,
                    "location_manual": False,
                    "location_updated_at": now,
                }
            self.repo.routes.apply_progress(
                business_id, route_id, route.version, stop.id, stop.status, values,
                self._task_steps(business_id, task_id, target, stop, now),
                route_values, team_id=route.team_id, team_values=team_values,
            )

        logger.info(f"Route {route_id} task {task_id}: {stop.status.value} -> {target.value} "
                    f"({completed}/{len(route.stops)} done)")
        return ProgressResult(
            route_id=route_id,
            task_id=task_id,
            stop_status=target.value,
            route_status=route_status.value,
            completed_stops=completed,
            total_stops=len(route.stops),
            updated_at=now,
        )

    def _task_steps(
        self,
        business_id: str,
        task_id: int,
        target: StopStatus,
        stop: RouteStop,
        now: datetime,
    ) -> List[Tuple[int, TaskStatus, TaskStatus, Dict[str, Any]]]:
        """Task status moves implied by the stop change."""
        task = self.repo.tasks.get_task(business_id, task_id)
        steps = []
        status = task.status
        started_at = task.started_at
        if status == TaskStatus.ASSIGNED and target in (StopStatus.STARTED, StopStatus.COMPLETED):
            started_at = stop.started_at or now
            steps.append((task_id, status, TaskStatus.IN_PROGRESS, {"started_at": started_at}))
            status = TaskStatus.IN_PROGRESS
        if target == StopStatus.COMPLETED and status == TaskStatus.IN_PROGRESS:
            steps.append((task_id, status, TaskStatus.COMPLETED, {
                "completed_at": now,
                "actual_duration_minutes": minutes_between(stop.started_at or started_at, now),
            }))
        return steps

    def _route_step(
        self,
        business_id: str,
        route: Route,
        stop: RouteStop,
        stop_values: Dict[str, Any],
        completed: int,
        now: datetime,
    ) -> Tuple[RouteStatus, Dict[str, Any]]:
        """New route status and the columns to write with it."""
        values: Dict[str, Any] = {}
        status = route.status
        starting = route.status in (RouteStatus.PLANNED, RouteStatus.ASSIGNED)
        if stop_values["status"] == StopStatus.STARTED and starting:
            status = RouteStatus.IN_PROGRESS
            values.update(status=status, started_at=now)
        if completed == len(route.stops):
            status = RouteStatus.COMPLETED
            started = route.started_at or values.get("started_at") or now
            distance = self._actual_distance(route, stop, stop_values)
            team = self.repo.teams.get_team(business_id, route.team_id)
            values.update(
                status=status,
                completed_at=now,
                actual_total_minutes=round(minutes_between(started, now) or 0.0, 1),
                actual_distance_km=round(distance, 2),
                actual_fuel_cost=estimate_fuel_cost(distance, team, self.config),
            )
            logger.info(f"Route {route.id} completed for business {business_id}")
        return status, values

    def _actual_distance(self, route: Route, stop: RouteStop, stop_values: Dict[str, Any]) -> float:
        """Path over reported stop locations when every stop reported one, else the plan."""
        pings = []
        for s in sorted(route.stops, key=lambda s: s.sequence):
            if s.id == stop.id:
                pings.append((stop_values.get("last_lat", s.last_lat), stop_values.get("last_lon", s.last_lon)))
            else:
                pings.append((s.last_lat, s.last_lon))
        if len(pings) < 2 or any(lat is None or lon is None for lat, lon in pings):
            return route.total_distance_km
        path = sum(km(a[0], a[1], b[0], b[1]) for a, b in zip(pings, pings[1:]))
        return path * self.config.solver.road_factor

    def get_progress(self, business_id: str, route_id: int) -> RouteProgressView:
        route = self.repo.routes.get_route(business_id, route_id)
        stops = list(route.stops)
        completed = sum(1 for s in stops if s.status == StopStatus.COMPLETED)
        current = next((s for s in stops if s.status != StopStatus.COMPLETED), None)

        eta: Optional[datetime] = None
        if route.status == RouteStatus.COMPLETED:
            eta = route.completed_at
        elif stops:
            eta = stops[-1].estimated_departure
            if current is not None and route.status == RouteStatus.IN_PROGRESS:
                behind = (self.clock() - current.estimated_arrival).total_seconds()
                if current.status == StopStatus.PENDING and behind > 0:
                    eta = eta + timedelta(seconds=behind)

        rows: List[Dict[str, Any]] = [{
            "task_id": s.task_id,
            "sequence": s.sequence,
            "status": s.status.value,
            "estimated_arrival": s.estimated_arrival,
            "estimated_departure": s.estimated_departure,
            "started_at": s.started_at,
            "completed_at": s.completed_at,
        } for s in stops]
        return RouteProgressView(
            route_id=route.id,
            route_status=route.status.value,
            completed_stops=completed,
            total_stops=len(stops),
            current_stop=current.sequence if current is not None else None,
            estimated_completion=eta,
            stops=rows,
        )
