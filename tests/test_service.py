"""
End-to-end tests for the routing service against a temporary database.
"""

import asyncio

import pytest

from field_routing.constraints import EXCEEDS_MAX_TIME, NO_SKILL_MATCH
from field_routing.errors import ConstraintViolationError, InvalidRequest, NotFound
from field_routing.models import RouteStatus, TaskStatus
from field_routing.schemas import (
    OptimizationParameters, OptimizeRequest, ProgressUpdateRequest, ReoptimizeRequest,
    RouteMetricsRequest, TaskCreate, TeamCreate, TeamUpdate, ValidateRouteRequest,
)

from conftest import DAY


def run(coro):
    return asyncio.run(coro)


def test_validation_reports_max_time(service):
    """A 90 minute job cannot fit a 60 minute allowance."""
    team = service.create_team("biz", TeamCreate(name="Solo", current_lat=40.0, current_lon=-75.0))
    task = service.create_task("biz", TaskCreate(
        name="Long job", address="1 Main St", lat=40.0, lon=-75.0, scheduled_date=DAY,
        estimated_duration_minutes=90,
    ))

    result = run(service.validate_route_constraints("biz", ValidateRouteRequest(
        task_ids=[task.id], team_id=team.id, max_time=60)))

    assert result.valid is False
    assert result.violations == [EXCEEDS_MAX_TIME]

    relaxed = run(service.validate_route_constraints("biz", ValidateRouteRequest(
        task_ids=[task.id], team_id=team.id, max_time=120)))
    assert relaxed.valid is True
    assert relaxed.violations == []


def test_validation_unknown_ids(service):
    team = service.create_team("biz", TeamCreate(name="Solo"))
    with pytest.raises(NotFound):
        run(service.validate_route_constraints("biz", ValidateRouteRequest(task_ids=[404], team_id=team.id)))
    with pytest.raises(NotFound):
        run(service.validate_route_constraints("biz", ValidateRouteRequest(task_ids=[1], team_id=404)))


def test_optimize_day_persists_routes(seeded):
    service, team, tasks = seeded

    result = run(service.optimize_routes("biz", OptimizeRequest(date=DAY)))

    assert result.unassigned_tasks == []
    assert result.summary.routes_generated == 1
    assert result.summary.tasks_assigned == 2
    route = result.routes[0]
    assert route.team_id == team.id
    assert route.status == "planned"
    assert [s.sequence for s in route.stops] == [0, 1]
    assert [s.task_id for s in route.stops] == [tasks[0].id, tasks[1].id]
    assert all(service.repo.tasks.get_task("biz", t.id).status == TaskStatus.ASSIGNED for t in tasks)

    stored = run(service.get_optimized_routes("biz", day=DAY))
    assert [r.id for r in stored] == [route.id]
    stats = run(service.get_route_stats("biz", day=DAY))
    assert stats.total_routes == 1
    assert stats.total_tasks == 2


def test_reoptimizing_a_day_replaces_planned_routes(seeded):
    service, _, _ = seeded

    first = run(service.optimize_routes("biz", OptimizeRequest(date=DAY)))
    second = run(service.optimize_routes("biz", OptimizeRequest(month="2025-06")))

    routes = run(service.get_optimized_routes("biz", day=DAY))
    assert len(routes) == 1
    assert routes[0].id == second.routes[0].id
    assert [s.task_id for s in routes[0].stops] == [s.task_id for s in first.routes[0].stops]


def test_active_routes_are_left_alone(seeded):
    service, team, _ = seeded
    route = run(service.optimize_routes("biz", OptimizeRequest(date=DAY))).routes[0]
    run(service.update_route_progress("biz", route.id, ProgressUpdateRequest(
        task_id=route.stops[0].task_id, status="started")))

    again = run(service.optimize_routes("biz", OptimizeRequest(date=DAY)))

    assert again.routes == []
    assert f"Team {team.id} already has an active route on {DAY}" in again.warnings
    kept = run(service.get_optimized_routes("biz", day=DAY))
    assert [(r.id, r.status) for r in kept] == [(route.id, "in_progress")]


def test_missing_skill_is_reported(seeded):
    service, team, tasks = seeded
    service.update_team("biz", team.id, TeamUpdate(skills=["plumbing"]))

    result = run(service.optimize_routes("biz", OptimizeRequest(date=DAY)))

    assert [(u.task_id, u.reason) for u in result.unassigned_tasks] == [(tasks[0].id, NO_SKILL_MATCH)]
    assert [s.task_id for s in result.routes[0].stops] == [tasks[1].id]


def test_explicit_tasks_must_be_pending(seeded):
    service, _, _ = seeded
    route = run(service.optimize_routes("biz", OptimizeRequest(date=DAY))).routes[0]
    started = route.stops[0].task_id
    run(service.update_route_progress("biz", route.id, ProgressUpdateRequest(task_id=started, status="started")))

    again = run(service.optimize_routes("biz", OptimizeRequest(task_ids=[started], date=DAY)))

    assert [(u.task_id, u.reason) for u in again.unassigned_tasks] == [(started, "not pending")]
    with pytest.raises(InvalidRequest):
        run(service.optimize_routes("biz", OptimizeRequest(task_ids=[9999])))


def test_selector_and_lookup_errors(seeded):
    service, _, _ = seeded

    with pytest.raises(InvalidRequest):
        run(service.optimize_routes("biz", OptimizeRequest()))
    with pytest.raises(NotFound):
        run(service.optimize_routes("other", OptimizeRequest(date=DAY)))
    with pytest.raises(NotFound):
        run(service.get_optimized_routes("biz", day="2025-06-03"))
    with pytest.raises(InvalidRequest):
        run(service.get_optimized_routes("biz", month="2025-13"))


def test_assign_checks_constraints(seeded):
    service, _, _ = seeded
    route = run(service.optimize_routes("biz", OptimizeRequest(date=DAY))).routes[0]
    backup = service.create_team("biz", TeamCreate(
        name="Backup", current_lat=40.02, current_lon=-75.0, skills=["hvac"]))
    novice = service.create_team("biz", TeamCreate(name="Novice", current_lat=40.0, current_lon=-75.0))

    with pytest.raises(ConstraintViolationError) as exc:
        run(service.assign_route_to_team("biz", route.id, novice.id))
    assert NO_SKILL_MATCH in [v["violation_type"] for v in exc.value.violations]

    assigned = run(service.assign_route_to_team("biz", route.id, backup.id))
    assert assigned.team_id == backup.id
    assert assigned.status == RouteStatus.ASSIGNED.value
    assert assigned.version > route.version


def test_reoptimize_keeps_started_stops(seeded):
    service, _, _ = seeded
    extra = service.create_task("biz", TaskCreate(
        name="Filter", address="3 Main St", lat=40.005, lon=-75.0, scheduled_date=DAY,
        estimated_duration_minutes=20,
    ))
    route = run(service.optimize_routes("biz", OptimizeRequest(date=DAY))).routes[0]
    first = route.stops[0].task_id
    run(service.update_route_progress("biz", route.id, ProgressUpdateRequest(task_id=first, status="started")))

    updated = run(service.reoptimize_route("biz", route.id, ReoptimizeRequest(
        params=OptimizationParameters(prioritize_fuel=True))))

    assert updated.stops[0].task_id == first
    assert updated.stops[0].status == "started"
    assert sorted(s.task_id for s in updated.stops) == sorted(s.task_id for s in route.stops)
    assert [s.sequence for s in updated.stops] == [0, 1, 2]
    assert extra.id in [s.task_id for s in updated.stops]


def test_metrics_preview_stores_nothing(seeded):
    service, team, tasks = seeded

    metrics = run(service.calculate_route_metrics("biz", RouteMetricsRequest(
        task_ids=[tasks[1].id, tasks[0].id], team_id=team.id)))

    assert metrics.ordered_task_ids == [tasks[0].id, tasks[1].id]
    assert metrics.service_minutes == 90
    assert 0 <= metrics.optimization_score <= 100
    with pytest.raises(NotFound):
        run(service.get_optimized_routes("biz", day=DAY))


def test_health_check(service):
    health = service.health_check()

    assert health["status"] == "healthy"
    assert health["database_connected"] is True
    assert health["weather_api_configured"] is True
