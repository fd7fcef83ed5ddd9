"""
Tests for route progress tracking and the stop state machine.
"""

import asyncio

import pytest

from field_routing.errors import ConcurrencyConflict, InvalidRequest, InvalidTransition, NotFound
from field_routing.models import RouteStatus, StopStatus, TaskStatus
from field_routing.schemas import OptimizeRequest, ProgressUpdateRequest

from conftest import DAY


def optimize_day(service):
    result = asyncio.run(service.optimize_routes("biz", OptimizeRequest(date=DAY)))
    assert len(result.routes) == 1
    return result.routes[0]


def report(service, route_id, task_id, status, **kwargs):
    request = ProgressUpdateRequest(task_id=task_id, status=status, **kwargs)
    return asyncio.run(service.update_route_progress("biz", route_id, request))


def test_route_completes_after_every_stop(seeded):
    service, team, tasks = seeded
    route = optimize_day(service)
    order = [s.task_id for s in route.stops]
    assert sorted(order) == sorted(t.id for t in tasks)

    first = report(service, route.id, order[0], "started")
    assert first.route_status == "in_progress"
    assert service.repo.tasks.get_task("biz", order[0]).status == TaskStatus.IN_PROGRESS

    report(service, route.id, order[0], "completed")
    view = asyncio.run(service.get_route_progress("biz", route.id))
    assert view.completed_stops == 1
    assert view.current_stop == route.stops[1].sequence

    report(service, route.id, order[1], "started")
    report(service, route.id, order[1], "arrived")
    last = report(service, route.id, order[1], "completed")

    assert last.route_status == "completed"
    assert last.completed_stops == last.total_stops == 2
    assert all(service.repo.tasks.get_task("biz", t.id).status == TaskStatus.COMPLETED for t in tasks)
    stored = service.repo.routes.get_route("biz", route.id)
    assert stored.completed_at is not None
    assert stored.actual_fuel_cost is not None

    with pytest.raises(InvalidTransition):
        report(service, route.id, order[0], "started")


def test_stop_cannot_skip_started(seeded):
    service, _, _ = seeded
    route = optimize_day(service)

    with pytest.raises(InvalidTransition):
        report(service, route.id, route.stops[0].task_id, "completed")


def test_pause_and_resume(seeded):
    service, _, _ = seeded
    route = optimize_day(service)
    task_id = route.stops[0].task_id

    report(service, route.id, task_id, "started")
    paused = report(service, route.id, task_id, "paused")
    assert paused.stop_status == "paused"
    resumed = report(service, route.id, task_id, "started")
    assert resumed.stop_status == "started"
    assert resumed.route_status == "in_progress"


def test_location_ping_moves_team(seeded):
    service, team, _ = seeded
    route = optimize_day(service)

    report(service, route.id, route.stops[0].task_id, "started",
           location={"lat": 40.011, "lng": -75.001}, accuracy_m=12.0)

    moved = service.repo.teams.get_team("biz", team.id)
    assert moved.current_lat == pytest.approx(40.011)
    assert moved.current_lon == pytest.approx(-75.001)
    assert moved.location_manual is False


def test_unknown_task_and_route(seeded):
    service, _, _ = seeded
    route = optimize_day(service)

    with pytest.raises(NotFound):
        report(service, route.id, 9999, "started")
    with pytest.raises(NotFound):
        report(service, 9999, route.stops[0].task_id, "started")


def test_concurrent_reports_apply_once(seeded):
    """Two simultaneous 'started' reports: one wins, the other sees the new state."""
    service, _, _ = seeded
    route = optimize_day(service)
    task_id = route.stops[0].task_id

    async def both():
        request = ProgressUpdateRequest(task_id=task_id, status="started")
        return await asyncio.gather(
            service.update_route_progress("biz", route.id, request),
            service.update_route_progress("biz", route.id, request),
            return_exceptions=True,
        )

    results = asyncio.run(both())

    assert sum(1 for r in results if isinstance(r, InvalidTransition)) == 1
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert len(service.tracker.locks) == 0
    view = asyncio.run(service.get_route_progress("biz", route.id))
    assert view.stops[0]["status"] == "started"


def test_tracker_rejects_unknown_status(seeded):
    service, _, _ = seeded
    route = optimize_day(service)

    with pytest.raises(InvalidRequest):
        asyncio.run(service.tracker.update_progress("biz", route.id, route.stops[0].task_id, "teleported"))
    with pytest.raises(InvalidTransition):
        asyncio.run(service.tracker.update_progress("biz", route.id, route.stops[0].task_id, "pending"))


def test_conflicting_route_write_leaves_report_unapplied(seeded, monkeypatch):
    """Another writer commits between the tracker's read and its write."""
    service, _, _ = seeded
    route = optimize_day(service)
    first, last = route.stops[0].task_id, route.stops[1].task_id
    report(service, route.id, first, "started")
    report(service, route.id, first, "completed")
    report(service, route.id, last, "started")

    routes = service.repo.routes
    read_route = routes.get_route
    bumped = []

    def read_then_bump(business_id, route_id):
        current = read_route(business_id, route_id)
        if not bumped:
            bumped.append(route_id)
            routes.retime_route(business_id, route_id, current.version, {}, {})
        return current

    monkeypatch.setattr(routes, "get_route", read_then_bump)
    with pytest.raises(ConcurrencyConflict):
        report(service, route.id, last, "completed")
    monkeypatch.undo()

    stored = routes.get_route("biz", route.id)
    assert stored.status == RouteStatus.IN_PROGRESS
    assert next(s for s in stored.stops if s.task_id == last).status == StopStatus.STARTED
    assert service.repo.tasks.get_task("biz", last).status == TaskStatus.IN_PROGRESS

    retry = report(service, route.id, last, "completed")
    assert retry.route_status == "completed"
    assert service.repo.tasks.get_task("biz", last).status == TaskStatus.COMPLETED
