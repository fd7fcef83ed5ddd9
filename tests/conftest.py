"""
Shared fixtures: test configuration, entity factories and a service wired to
a temporary SQLite file with deterministic mock providers.
"""

import asyncio
from datetime import date, datetime, timezone

import pytest

from field_routing.distance import Coordinates, haversine_matrix
from field_routing.models import Team, FieldTask
from field_routing.schemas import AppConfig, Settings, TaskCreate, TeamCreate
from field_routing.service import RouteOptimizationService
from field_routing.solver_greedy import PlanningContext, task_node, team_node


DAY = "2025-06-02"
TODAY = date(2025, 6, 2)


def create_test_config(db_url: str = "sqlite:///:memory:") -> AppConfig:
    """Create test configuration."""
    return AppConfig(
        routing={"work_start": "08:00", "work_end": "17:00", "max_daily_tasks": 8},
        database={"url": db_url, "echo": False},
        logging={"level": "INFO", "format": "%(message)s"},
        dev={"mock_google_api": True, "mock_weather_api": True, "cache_geocoding": False},
    )


def make_team(team_id: int = 1, **kwargs) -> Team:
    values = dict(
        id=team_id,
        business_id="biz",
        name=f"Team {team_id}",
        current_lat=40.0,
        current_lon=-75.0,
        skills=["hvac", "electrical", "plumbing"],
        equipment=["ladder"],
    )
    values.update(kwargs)
    return Team(**values)


def make_task(task_id: int, lat: float, lon: float, **kwargs) -> FieldTask:
    values = dict(
        id=task_id,
        business_id="biz",
        name=f"Task {task_id}",
        address=f"{task_id} Test St",
        lat=lat,
        lon=lon,
        scheduled_date=DAY,
        estimated_duration_minutes=30,
    )
    values.update(kwargs)
    return FieldTask(**values)


def build_context(config: AppConfig, teams, tasks, weather=None) -> PlanningContext:
    """Straight-line context over task locations and team current locations."""
    points = []
    node_index = {}
    for task in tasks:
        if task.lat is None or task.lon is None:
            continue
        node_index[task_node(task.id)] = len(points)
        points.append(Coordinates(lat=task.lat, lon=task.lon))
    start_nodes = {}
    for team in teams:
        if team.current_lat is None:
            start_nodes[team.id] = None
            continue
        node_index[team_node(team.id)] = len(points)
        points.append(Coordinates(lat=team.current_lat, lon=team.current_lon))
        start_nodes[team.id] = team_node(team.id)
    return PlanningContext(
        route_date=DAY,
        matrix=haversine_matrix(points, config),
        node_index=node_index,
        weather=weather or {},
        start_nodes=start_nodes,
    )


@pytest.fixture
def config():
    return create_test_config()


@pytest.fixture
def service(tmp_path):
    cfg = create_test_config(f"sqlite:///{tmp_path / 'routing.db'}")
    svc = RouteOptimizationService(
        config=cfg,
        settings=Settings(google_maps_api_key=None, openweather_api_key=None),
        today=lambda: TODAY,
        clock=lambda: datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc),
    )
    svc.ensure_business("biz", "Test Business")
    yield svc
    asyncio.run(svc.close())
    svc.repo.dispose()


@pytest.fixture
def seeded(service):
    """Two nearby tasks and one team at the same spot; returns (service, team, tasks)."""
    team = service.create_team("biz", TeamCreate(
        name="Crew", current_lat=40.0, current_lon=-75.0, skills=["hvac"], equipment=["ladder"],
    ))
    tasks = [
        service.create_task("biz", TaskCreate(
            name="Boiler", address="1 Main St", lat=40.01, lon=-75.0, scheduled_date=DAY,
            estimated_duration_minutes=45, skills_required=["hvac"],
        )),
        service.create_task("biz", TaskCreate(
            name="Vent", address="2 Main St", lat=40.02, lon=-75.0, scheduled_date=DAY,
            estimated_duration_minutes=45,
        )),
    ]
    return service, team, tasks
