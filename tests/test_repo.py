"""
Registry and route repository tests: field-path writes and compare-and-set guards.
"""

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from field_routing.errors import ConcurrencyConflict, InvalidRequest, InvalidTransition, NotFound
from field_routing.models import TaskStatus
from field_routing.schemas import OptimizeRequest, ProgressUpdateRequest

from conftest import DAY


def test_team_field_paths(seeded):
    service, team, _ = seeded
    teams = service.repo.teams

    teams.update_team_field("biz", team.id, "location.lat", 40.5)
    teams.update_team_field("biz", team.id, "availability.is_available_for_routing", False)
    teams.update_team_field("biz", team.id, "max_daily_tasks", 4)

    stored = teams.get_team("biz", team.id)
    assert stored.current_lat == 40.5
    assert stored.current_lon == -75.0
    assert stored.is_available_for_routing is False
    assert stored.max_daily_tasks == 4

    with pytest.raises(InvalidRequest):
        teams.update_team_field("biz", team.id, "location.altitude", 12)
    with pytest.raises(InvalidRequest):
        teams.update_team_field("biz", team.id, "id", 99)
    with pytest.raises(NotFound):
        teams.update_team_field("other", team.id, "location.lat", 1.0)


def test_task_fields_exclude_status(seeded):
    service, _, tasks = seeded

    with pytest.raises(InvalidRequest):
        service.repo.tasks.update_task_fields("biz", tasks[0].id, {"status": TaskStatus.COMPLETED})
    with pytest.raises(InvalidTransition):
        service.repo.tasks.update_task_status("biz", tasks[0].id, TaskStatus.COMPLETED)

    cancelled = service.repo.tasks.update_task_status("biz", tasks[0].id, TaskStatus.CANCELLED)
    assert cancelled.status == TaskStatus.CANCELLED


def test_task_filters(seeded):
    service, _, tasks = seeded
    registry = service.repo.tasks

    assert [t.id for t in registry.get_tasks("biz", {"month": "2025-06"})] == [t.id for t in tasks]
    assert registry.get_tasks("biz", {"scheduled_date": "2025-06-03"}) == []
    assert len(registry.get_tasks("biz", {"status": ["pending", "assigned"]})) == 2
    with pytest.raises(InvalidRequest):
        registry.get_tasks("biz", {"status": "lost"})


def test_stale_ledger_version_writes_nothing(seeded):
    service, _, _ = seeded
    route = asyncio.run(service.optimize_routes("biz", OptimizeRequest(date=DAY))).routes[0]
    routes = service.repo.routes
    assert routes.ledger_version("biz", DAY) == 1

    with pytest.raises(ConcurrencyConflict):
        routes.replace_planned_routes("biz", DAY, 0, [])
    with pytest.raises(ConcurrencyConflict):
        routes.replace_planned_routes("biz", DAY, 7, [])

    assert [r.id for r in routes.get_routes("biz", dates=[DAY])] == [route.id]
    assert routes.ledger_version("biz", DAY) == 1


def test_stale_route_version_rejected(seeded):
    service, _, _ = seeded
    route = asyncio.run(service.optimize_routes("biz", OptimizeRequest(date=DAY))).routes[0]

    service.repo.routes.retime_route("biz", route.id, route.version, {"objective": "balanced"}, {})
    with pytest.raises(ConcurrencyConflict):
        service.repo.routes.retime_route("biz", route.id, route.version, {"objective": "minimize_fuel"}, {})
    assert service.repo.routes.get_route("biz", route.id).objective == "balanced"


def test_route_timestamps_round_trip_as_utc(seeded):
    service, _, _ = seeded
    route = asyncio.run(service.optimize_routes("biz", OptimizeRequest(date=DAY))).routes[0]
    asyncio.run(service.update_route_progress("biz", route.id, ProgressUpdateRequest(
        task_id=route.stops[0].task_id, status="started")))

    stored = service.repo.routes.get_route("biz", route.id)

    assert stored.started_at == datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)
    assert stored.created_at.utcoffset() == timedelta(0)
    assert stored.planned_start.date() == date(2025, 6, 2)
    assert stored.planned_start.utcoffset() == timedelta(0)
    first = stored.stops[0]
    assert first.started_at == stored.started_at
    assert first.estimated_arrival <= first.estimated_departure
    assert first.estimated_arrival.utcoffset() == timedelta(0)
