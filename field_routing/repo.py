"""
Repository layer for database operations.

Registries own tasks and teams; the route repository owns routes, stops and
the planning ledger. Writes touch only the columns they own and guard
concurrent modification with compare-and-set UPDATEs.
"""

import logging
from typing import List, Optional, Dict, Any, Iterable, Tuple

from sqlalchemy import update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from sqlmodel import SQLModel, Session, create_engine, select

from .errors import NotFound, InvalidRequest, InvalidTransition, ConcurrencyConflict
from .models import (
    Business, RoutePlanningConfig, Team, FieldTask, Route, RouteStop,
    OptimizationRun, PlanningLedger, RouteReportRecord,
    TaskStatus, RouteStatus, StopStatus, TASK_TRANSITIONS, utcnow,
)
from .schemas import AppConfig, TaskCreate, TaskUpdate, TeamCreate, TeamUpdate


logger = logging.getLogger(__name__)

# Nested field paths accepted by update_team_field, mapped to columns
TEAM_FIELD_PATHS = {
    "location.lat": "current_lat",
    "location.lng": "current_lon",
    "location.accuracy_m": "location_accuracy_m",
    "location.manual": "location_manual",
    "location.updated_at": "location_updated_at",
    "vehicle.fuel_type": "fuel_type",
    "vehicle.fuel_level": "current_fuel_level",
    "vehicle.maintenance_status": "maintenance_status",
    "availability.is_available_for_routing": "is_available_for_routing",
}
PROTECTED_COLUMNS = {"id", "business_id", "created_at"}


def _statuses(value, enum_cls) -> List:
    values = value if isinstance(value, (list, tuple, set)) else [value]
    try:
        return [enum_cls(v) for v in values]
    except ValueError:
        raise InvalidRequest(f"Invalid status filter: {value}")


class _Store:
    """Shared session access for the registries."""

    def __init__(self, db: "DatabaseRepository"):
        self.db = db

    def get_session(self) -> Session:
        return self.db.get_session()


class BusinessRegistry(_Store):
    """Tenant existence checks and per-business planning defaults."""

    def get_business(self, business_id: str) -> Business:
        with self.get_session() as session:
            business = session.get(Business, business_id)
            if business is None or not business.is_active:
                raise NotFound(f"Business {business_id} not found")
            return business

    def upsert_business(self, business_id: str, name: str) -> Business:
        with self.get_session() as session:
            business = session.get(Business, business_id)
            if business is None:
                business = Business(id=business_id, name=name)
            else:
                business.name = name
            session.add(business)
            session.commit()
            session.refresh(business)
            return business

    def get_planning_config(self, business_id: str) -> Optional[RoutePlanningConfig]:
        with self.get_session() as session:
            return session.exec(
                select(RoutePlanningConfig).where(RoutePlanningConfig.business_id == business_id)
            ).first()

    def upsert_planning_config(self, business_id: str, values: Dict[str, Any]) -> RoutePlanningConfig:
        with self.get_session() as session:
            cfg = session.exec(
                select(RoutePlanningConfig).where(RoutePlanningConfig.business_id == business_id)
            ).first()
            if cfg is None:
                cfg = RoutePlanningConfig(business_id=business_id)
            for key, value in values.items():
                setattr(cfg, key, value)
            cfg.updated_at = utcnow()
            session.add(cfg)
            session.commit()
            session.refresh(cfg)
            return cfg


class TaskRegistry(_Store):
    """Field tasks of a business."""

    def get_tasks(self, business_id: str, filters: Optional[Dict[str, Any]] = None) -> List[FieldTask]:
        """Tasks matching the filters, ordered by id.

        Supported filters: ids, scheduled_date, month (YYYY-MM), date_from,
        date_to, status (value or list), team_id.
        """
        filters = filters or {}
        stmt = select(FieldTask).where(FieldTask.business_id == business_id)
        if filters.get("ids") is not None:
            stmt = stmt.where(FieldTask.id.in_(list(filters["ids"])))
        if filters.get("scheduled_date"):
            stmt = stmt.where(FieldTask.scheduled_date == filters["scheduled_date"])
        if filters.get("month"):
            stmt = stmt.where(FieldTask.scheduled_date.startswith(filters["month"] + "-"))
        if filters.get("date_from"):
            stmt = stmt.where(FieldTask.scheduled_date >= filters["date_from"])
        if filters.get("date_to"):
            stmt = stmt.where(FieldTask.scheduled_date <= filters["date_to"])
        if filters.get("status") is not None:
            stmt = stmt.where(FieldTask.status.in_(_statuses(filters["status"], TaskStatus)))
        if filters.get("team_id") is not None:
            stmt = stmt.where(FieldTask.assigned_team_id == filters["team_id"])
        with self.get_session() as session:
            return list(session.exec(stmt.order_by(FieldTask.id)).all())

    def get_task(self, business_id: str, task_id: int) -> FieldTask:
        with self.get_session() as session:
            task = session.get(FieldTask, task_id)
            if task is None or task.business_id != business_id:
                raise NotFound(f"Task {task_id} not found")
            return task

    def create_task(self, business_id: str, data: TaskCreate) -> FieldTask:
        with self.get_session() as session:
            task = FieldTask(business_id=business_id, **data.model_dump())
            session.add(task)
            session.commit()
            session.refresh(task)
            logger.info(f"Created task {task.id} for business {business_id}")
            return task

    def update_task_fields(self, business_id: str, task_id: int, values: Dict[str, Any]) -> None:
        """Write only the given columns of one task."""
        bad = set(values) & (PROTECTED_COLUMNS | {"status"})
        if bad:
            raise InvalidRequest(f"Fields cannot be patched: {', '.join(sorted(bad))}")
        if not values:
            return
        with self.get_session() as session:
            result = session.exec(
                update(FieldTask)
                .where(FieldTask.id == task_id, FieldTask.business_id == business_id)
                .values(**values)
            )
            session.commit()
            if result.rowcount == 0:
                raise NotFound(f"Task {task_id} not found")

    def apply_update(self, business_id: str, task_id: int, patch: TaskUpdate) -> FieldTask:
        self.update_task_fields(business_id, task_id, patch.model_dump(exclude_unset=True))
        return self.get_task(business_id, task_id)

    def update_task_status(
        self,
        business_id: str,
        task_id: int,
        status,
        values: Optional[Dict[str, Any]] = None
    ) -> FieldTask:
        """Move a task along its lifecycle; stale reads lose with ConcurrencyConflict."""
        target = TaskStatus(status)
        task = self.get_task(business_id, task_id)
        if target not in TASK_TRANSITIONS[task.status]:
            raise InvalidTransition(
                f"Task {task_id} cannot move from {task.status.value} to {target.value}"
            )
        with self.get_session() as session:
            result = session.exec(
                update(FieldTask)
                .where(FieldTask.id == task_id, FieldTask.status == task.status)
                .values(status=target, **(values or {}))
            )
            session.commit()
            if result.rowcount == 0:
                raise ConcurrencyConflict(f"Task {task_id} changed concurrently")
        return self.get_task(business_id, task_id)

    def set_coordinates(self, business_id: str, task_id: int, lat: float, lon: float) -> None:
        """Persist geocoding results."""
        self.update_task_fields(business_id, task_id, {"lat": lat, "lon": lon})


class TeamRegistry(_Store):
    """Field teams of a business."""

    def get_teams(self, business_id: str, team_ids: Optional[Iterable[int]] = None) -> List[Team]:
        stmt = select(Team).where(Team.business_id == business_id)
        if team_ids is not None:
            stmt = stmt.where(Team.id.in_(list(team_ids)))
        with self.get_session() as session:
            return list(session.exec(stmt.order_by(Team.id)).all())

    def get_team(self, business_id: str, team_id: int) -> Team:
        with self.get_session() as session:
            team = session.get(Team, team_id)
            if team is None or team.business_id != business_id:
                raise NotFound(f"Team {team_id} not found")
            return team

    def create_team(self, business_id: str, data: TeamCreate) -> Team:
        with self.get_session() as session:
            team = Team(business_id=business_id, **data.model_dump())
            session.add(team)
            session.commit()
            session.refresh(team)
            logger.info(f"Created team {team.id} for business {business_id}")
            return team

    def update_team_fields(self, business_id: str, team_id: int, values: Dict[str, Any]) -> None:
        """Single UPDATE over the given columns; other fields are untouched."""
        bad = set(values) & PROTECTED_COLUMNS
        if bad:
            raise InvalidRequest(f"Fields cannot be patched: {', '.join(sorted(bad))}")
        if not values:
            return
        with self.get_session() as session:
            result = session.exec(
                update(Team)
                .where(Team.id == team_id, Team.business_id == business_id)
                .values(**values)
            )
            session.commit()
            if result.rowcount == 0:
                raise NotFound(f"Team {team_id} not found")

    def update_team_field(self, business_id: str, team_id: int, path: str, value: Any) -> None:
        """Set one field addressed by column name or nested path (e.g. ``location.lat``)."""
        column = TEAM_FIELD_PATHS.get(path, path)
        if column in PROTECTED_COLUMNS or column not in Team.model_fields:
            raise InvalidRequest(f"Unknown team field '{path}'")
        self.update_team_fields(business_id, team_id, {column: value})

    def apply_update(self, business_id: str, team_id: int, patch: TeamUpdate) -> Team:
        values = patch.model_dump(exclude_unset=True)
        if "current_lat" in values or "current_lon" in values:
            values.setdefault("location_updated_at", utcnow())
        self.update_team_fields(business_id, team_id, values)
        return self.get_team(business_id, team_id)


class RouteRepository(_Store):
    """Routes, stops and the planning ledger."""

    def _with_stops(self):
        return select(Route).options(selectinload(Route.stops))

    def get_routes(
        self,
        business_id: str,
        dates: Optional[List[str]] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        team_id: Optional[int] = None,
        statuses: Optional[List] = None,
    ) -> List[Route]:
        stmt = self._with_stops().where(Route.business_id == business_id)
        if dates is not None:
            stmt = stmt.where(Route.route_date.in_(dates))
        if date_from:
            stmt = stmt.where(Route.route_date >= date_from)
        if date_to:
            stmt = stmt.where(Route.route_date <= date_to)
        if team_id is not None:
            stmt = stmt.where(Route.team_id == team_id)
        if statuses is not None:
            stmt = stmt.where(Route.status.in_(_statuses(statuses, RouteStatus)))
        with self.get_session() as session:
            routes = list(session.exec(stmt.order_by(Route.route_date, Route.team_id, Route.id)).all())
            for route in routes:
                _ = route.stops  # Force loading
            return routes

    def get_route(self, business_id: str, route_id: int) -> Route:
        with self.get_session() as session:
            route = session.exec(self._with_stops().where(Route.id == route_id)).first()
            if route is None or route.business_id != business_id:
                raise NotFound(f"Route {route_id} not found")
            _ = route.stops
            return route

    def ledger_version(self, business_id: str, plan_date: str) -> int:
        with self.get_session() as session:
            row = session.exec(
                select(PlanningLedger).where(
                    PlanningLedger.business_id == business_id,
                    PlanningLedger.plan_date == plan_date,
                )
            ).first()
            return row.version if row else 0

    def _bump_ledger(self, session: Session, business_id: str, plan_date: str, expected: int) -> None:
        if expected == 0:
            session.add(PlanningLedger(business_id=business_id, plan_date=plan_date, version=1))
            try:
                session.flush()
            except IntegrityError:
                raise ConcurrencyConflict(f"Routes for {plan_date} were replaced concurrently")
            return
        result = session.exec(
            update(PlanningLedger)
            .where(
                PlanningLedger.business_id == business_id,
                PlanningLedger.plan_date == plan_date,
                PlanningLedger.version == expected,
            )
            .values(version=expected + 1, updated_at=utcnow())
        )
        if result.rowcount == 0:
            raise ConcurrencyConflict(f"Routes for {plan_date} were replaced concurrently")

    def replace_planned_routes(
        self,
        business_id: str,
        plan_date: str,
        expected_version: int,
        routes: List[Route],
        team_ids: Optional[List[int]] = None,
    ) -> List[Route]:
        """
        Swap the date's planned routes for new ones in one transaction.

        Only planned routes of ``team_ids`` are replaced when it is given.

        Tasks of the replaced routes are released to pending, tasks of the new
        routes move pending -> assigned. The ledger version must still equal
        ``expected_version``; otherwise nothing is written.
        """
        with self.get_session() as session:
            try:
                self._bump_ledger(session, business_id, plan_date, expected_version)

                stmt = select(Route.id).where(
                    Route.business_id == business_id,
                    Route.route_date == plan_date,
                    Route.status == RouteStatus.PLANNED,
                )
                if team_ids is not None:
                    stmt = stmt.where(Route.team_id.in_(team_ids))
                old_ids = list(session.exec(stmt).all())
                if old_ids:
                    session.exec(
                        update(FieldTask)
                        .where(FieldTask.assigned_route_id.in_(old_ids), FieldTask.status == TaskStatus.ASSIGNED)
                        .values(status=TaskStatus.PENDING, assigned_team_id=None, assigned_route_id=None)
                    )
                    session.exec(delete(RouteStop).where(RouteStop.route_id.in_(old_ids)))
                    session.exec(delete(Route).where(Route.id.in_(old_ids)))

                for route in routes:
                    session.add(route)
                session.flush()

                for route in routes:
                    task_ids = [s.task_id for s in route.stops]
                    result = session.exec(
                        update(FieldTask)
                        .where(
                            FieldTask.id.in_(task_ids),
                            FieldTask.business_id == business_id,
                            FieldTask.status == TaskStatus.PENDING,
                        )
                        .values(status=TaskStatus.ASSIGNED, assigned_team_id=route.team_id,
                                assigned_route_id=route.id)
                    )
                    if result.rowcount != len(task_ids):
                        raise ConcurrencyConflict(f"Tasks of route for team {route.team_id} changed concurrently")
                session.commit()
            except Exception:
                session.rollback()
                raise
            for route in routes:
                session.refresh(route)
                _ = route.stops
        logger.info(f"Stored {len(routes)} routes for business {business_id} on {plan_date}")
        return routes

    def retime_route(
        self,
        business_id: str,
        route_id: int,
        expected_version: int,
        route_values: Dict[str, Any],
        stop_values: Dict[int, Dict[str, Any]],
        task_values: Optional[Dict[str, Any]] = None,
    ) -> Route:
        """Rewrite route totals and per-stop timing under a version check.

        ``stop_values`` is keyed by task id; ``task_values`` is applied to
        every task on the route.
        """
        with self.get_session() as session:
            try:
                result = session.exec(
                    update(Route)
                    .where(Route.id == route_id, Route.business_id == business_id,
                           Route.version == expected_version)
                    .values(version=expected_version + 1, **route_values)
                )
                if result.rowcount == 0:
                    raise ConcurrencyConflict(f"Route {route_id} was modified concurrently")
                for task_id, values in stop_values.items():
                    session.exec(
                        update(RouteStop)
                        .where(RouteStop.route_id == route_id, RouteStop.task_id == task_id)
                        .values(**values)
                    )
                if task_values and stop_values:
                    session.exec(
                        update(FieldTask)
                        .where(FieldTask.id.in_(list(stop_values)), FieldTask.business_id == business_id)
                        .values(**task_values)
                    )
                session.commit()
            except Exception:
                session.rollback()
                raise
        return self.get_route(business_id, route_id)

    def apply_progress(
        self,
        business_id: str,
        route_id: int,
        expected_version: int,
        stop_id: int,
        expected_stop_status: StopStatus,
        stop_values: Dict[str, Any],
        task_steps: List[Tuple[int, TaskStatus, TaskStatus, Dict[str, Any]]],
        route_values: Dict[str, Any],
        team_id: Optional[int] = None,
        team_values: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Write one progress report in a single transaction.

        The route row is checked against ``expected_version`` and the stop row
        against ``expected_stop_status``. ``task_steps`` are
        ``(task_id, from_status, to_status, values)`` moves applied in order.
        If any guard fails nothing is written.
        """
        with self.get_session() as session:
            try:
                result = session.exec(
                    update(Route)
                    .where(Route.id == route_id, Route.business_id == business_id,
                           Route.version == expected_version)
                    .values(version=expected_version + 1, **route_values)
                )
                if result.rowcount == 0:
                    raise ConcurrencyConflict(f"Route {route_id} was modified concurrently")
                result = session.exec(
                    update(RouteStop)
                    .where(RouteStop.id == stop_id, RouteStop.route_id == route_id,
                           RouteStop.status == expected_stop_status)
                    .values(**stop_values)
                )
                if result.rowcount == 0:
                    raise ConcurrencyConflict(f"Stop {stop_id} changed concurrently")
                for task_id, current, target, values in task_steps:
                    if target not in TASK_TRANSITIONS[current]:
                        raise InvalidTransition(
                            f"Task {task_id} cannot move from {current.value} to {target.value}"
                        )
                    result = session.exec(
                        update(FieldTask)
                        .where(FieldTask.id == task_id, FieldTask.business_id == business_id,
                               FieldTask.status == current)
                        .values(status=target, **values)
                    )
                    if result.rowcount == 0:
                        raise ConcurrencyConflict(f"Task {task_id} changed concurrently")
                if team_id is not None and team_values:
                    session.exec(
                        update(Team)
                        .where(Team.id == team_id, Team.business_id == business_id)
                        .values(**team_values)
                    )
                session.commit()
            except Exception:
                session.rollback()
                raise


class RunRepository(_Store):
    """OptimizationRun audit records."""

    def create_run(self, run: OptimizationRun) -> OptimizationRun:
        with self.get_session() as session:
            session.add(run)
            session.commit()
            session.refresh(run)
            return run

    def finish_run(self, run_id: int, values: Dict[str, Any]) -> None:
        with self.get_session() as session:
            session.exec(
                update(OptimizationRun)
                .where(OptimizationRun.id == run_id)
                .values(finished_at=utcnow(), **values)
            )
            session.commit()

    def get_run(self, run_id: int) -> Optional[OptimizationRun]:
        with self.get_session() as session:
            return session.get(OptimizationRun, run_id)


class ReportRepository(_Store):
    """Generated analytics reports; only the most recent ones are kept."""

    def save_report(self, record: RouteReportRecord, keep: int) -> RouteReportRecord:
        with self.get_session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            stale = list(session.exec(
                select(RouteReportRecord.id)
                .where(RouteReportRecord.business_id == record.business_id)
                .order_by(RouteReportRecord.id.desc())
                .offset(keep)
            ).all())
            if stale:
                session.exec(delete(RouteReportRecord).where(RouteReportRecord.id.in_(stale)))
                session.commit()
            return record

    def list_reports(self, business_id: str) -> List[RouteReportRecord]:
        with self.get_session() as session:
            return list(session.exec(
                select(RouteReportRecord)
                .where(RouteReportRecord.business_id == business_id)
                .order_by(RouteReportRecord.id.desc())
            ).all())


class DatabaseRepository:
    """Database repository for all field routing entities."""

    def __init__(self, config: AppConfig):
        """Initialize database connection."""
        self.config = config
        url = config.database.url
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, echo=config.database.echo, connect_args=connect_args)

        self.businesses = BusinessRegistry(self)
        self.tasks = TaskRegistry(self)
        self.teams = TeamRegistry(self)
        self.routes = RouteRepository(self)
        self.runs = RunRepository(self)
        self.reports = ReportRepository(self)

    def create_tables(self) -> None:
        """Create all database tables."""
        SQLModel.metadata.create_all(self.engine)

    def get_session(self) -> Session:
        """Get database session; loaded objects stay usable after commit."""
        return Session(self.engine, expire_on_commit=False)

    def health_check(self) -> bool:
        """Check if database is accessible."""
        try:
            with self.get_session() as session:
                session.exec(select(1))
                return True
        except Exception:
            return False

    def dispose(self) -> None:
        self.engine.dispose()
