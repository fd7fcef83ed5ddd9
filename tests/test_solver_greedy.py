"""
Unit tests for the greedy solver: assignment, sequencing and scoring.
"""

import pytest

from field_routing.constraints import NO_CAPACITY, NO_LOCATION, NO_SKILL_MATCH, NO_AVAILABLE_TEAM
from field_routing.schemas import OptimizationParameters
from field_routing.scoring import optimization_score
from field_routing.solver_greedy import GreedySolver

from conftest import build_context, make_task, make_team


@pytest.fixture
def solver(config):
    return GreedySolver(config)


def test_single_team_orders_by_distance(config, solver):
    """Three windowed tasks on a line end up in one route, nearest first."""
    team = make_team(max_daily_tasks=5)
    tasks = [
        make_task(1, 40.03, -75.0, window_start="09:00", window_end="12:00"),
        make_task(2, 40.01, -75.0, window_start="09:00", window_end="12:00"),
        make_task(3, 40.02, -75.0, window_start="09:00", window_end="12:00"),
    ]
    ctx = build_context(config, [team], tasks)

    solution = solver.solve([team], tasks, ctx, OptimizationParameters())

    assert solution.unassigned == []
    assert len(solution.routes) == 1
    route = solution.routes[0]
    assert route.plan.task_ids == [2, 3, 1]
    # Free start: the team leaves so it reaches the first window at opening
    assert route.plan.stops[0].start_minute == pytest.approx(9 * 60)
    assert all(s.late_minutes == 0 for s in route.plan.stops)


def test_missing_skill_leaves_task_unassigned(config, solver):
    team = make_team(skills=["electrical"])
    tasks = [make_task(1, 40.01, -75.0, skills_required=["HVAC"])]
    ctx = build_context(config, [team], tasks)

    solution = solver.solve([team], tasks, ctx, OptimizationParameters(skill_matching=True))

    assert solution.routes == []
    assert [(u.task_id, u.reason) for u in solution.unassigned] == [(1, NO_SKILL_MATCH)]


def test_skilled_team_receives_task(config, solver):
    """Only the team holding the required skill may receive the task."""
    unskilled = make_team(1, skills=["electrical"])
    skilled = make_team(2, skills=["hvac"], current_lat=40.5)
    tasks = [make_task(1, 40.0, -75.0, skills_required=["hvac"])]
    ctx = build_context(config, [unskilled, skilled], tasks)

    solution = solver.solve([unskilled, skilled], tasks, ctx, OptimizationParameters())

    assert [r.team.id for r in solution.routes] == [2]


def test_route_time_limit_respected(config, solver):
    team = make_team()
    tasks = [make_task(i, 40.0, -75.0, estimated_duration_minutes=40) for i in (1, 2, 3)]
    ctx = build_context(config, [team], tasks)
    params = OptimizationParameters(max_route_time=100)

    solution = solver.solve([team], tasks, ctx, params)

    assert len(solution.routes[0].plan.stops) == 2
    assert solution.routes[0].plan.working_minutes <= 100
    assert [(u.task_id, u.reason) for u in solution.unassigned] == [(3, NO_CAPACITY)]


def test_overtime_allows_longer_routes(config, solver):
    team = make_team()
    tasks = [make_task(i, 40.0, -75.0, estimated_duration_minutes=40) for i in (1, 2, 3)]
    ctx = build_context(config, [team], tasks)

    solution = solver.solve([team], tasks, ctx, OptimizationParameters(max_route_time=100, allow_overtime=True))

    assert solution.unassigned == []
    assert len(solution.routes[0].plan.stops) == 3


def test_high_priority_wins_last_slot(config, solver):
    team = make_team(max_daily_tasks=1)
    tasks = [
        make_task(1, 40.01, -75.0, priority="low"),
        make_task(2, 40.02, -75.0, priority="high"),
    ]
    ctx = build_context(config, [team], tasks)

    solution = solver.solve([team], tasks, ctx, OptimizationParameters())

    assert solution.routes[0].plan.task_ids == [2]
    assert [(u.task_id, u.reason) for u in solution.unassigned] == [(1, NO_CAPACITY)]


def test_tasks_split_between_distant_teams(config, solver):
    north = make_team(1, current_lat=41.0)
    south = make_team(2, current_lat=40.0)
    tasks = [
        make_task(1, 40.01, -75.0),
        make_task(2, 41.01, -75.0),
        make_task(3, 40.02, -75.0),
    ]
    ctx = build_context(config, [north, south], tasks)

    solution = solver.solve([north, south], tasks, ctx, OptimizationParameters())

    by_team = {r.team.id: sorted(r.plan.task_ids) for r in solution.routes}
    assert by_team == {1: [2], 2: [1, 3]}


def test_missing_location_and_unavailable_team(config, solver):
    available = make_team(1)
    resting = make_team(2, is_available_for_routing=False)
    tasks = [make_task(1, None, None), make_task(2, 40.01, -75.0)]
    ctx = build_context(config, [available, resting], tasks)

    solution = solver.solve([available, resting], tasks, ctx, OptimizationParameters())
    assert [(u.task_id, u.reason) for u in solution.unassigned] == [(1, NO_LOCATION)]
    assert "Team 2 is not available for routing" in solution.warnings

    alone = solver.solve([resting], tasks[1:], build_context(config, [resting], tasks[1:]),
                         OptimizationParameters())
    assert [(u.task_id, u.reason) for u in alone.unassigned] == [(2, NO_AVAILABLE_TEAM)]


def test_weather_delay_applied_when_enabled(config, solver):
    team = make_team()
    tasks = [make_task(1, 40.01, -75.0)]
    ctx = build_context(config, [team], tasks, weather={1: (30, "Rain expected")})

    with_weather = solver.plan_route(team, tasks, ctx, OptimizationParameters(consider_weather=True))
    without = solver.plan_route(team, tasks, ctx, OptimizationParameters(consider_weather=False))

    assert with_weather.plan.weather_delay_minutes == 30
    assert with_weather.plan.weather_reasons == ["Rain expected"]
    assert without.plan.weather_delay_minutes == 0
    assert with_weather.plan.working_minutes == pytest.approx(without.plan.working_minutes + 30)


def test_solve_is_deterministic(config, solver):
    teams = [make_team(1), make_team(2, current_lat=40.05)]
    tasks = [make_task(i, 40.0 + i * 0.007, -75.0 + (i % 3) * 0.01) for i in range(1, 10)]
    ctx = build_context(config, teams, tasks)
    params = OptimizationParameters()

    first = solver.solve(teams, tasks, ctx, params)
    second = solver.solve(teams, list(reversed(tasks)), ctx, params)

    assert [(r.team.id, r.plan.task_ids) for r in first.routes] == \
        [(r.team.id, r.plan.task_ids) for r in second.routes]
    assert first.unassigned == second.unassigned


def test_score_favours_shorter_route(config, solver):
    """Same tasks, same compliance: the shorter ordering scores at least as high."""
    team = make_team()
    tasks = [make_task(1, 40.01, -75.0), make_task(2, 40.02, -75.0), make_task(3, 40.03, -75.0)]
    ctx = build_context(config, [team], tasks)
    params = OptimizationParameters()

    short = solver.simulate(team, [tasks[0], tasks[1], tasks[2]], ctx, params)
    long = solver.simulate(team, [tasks[2], tasks[0], tasks[1]], ctx, params)

    assert short.total_distance_km < long.total_distance_km
    assert optimization_score(short, params, config) >= optimization_score(long, params, config)


def test_large_route_uses_heuristic_sequence(config, solver):
    """Beyond the exact-search size the sequence still visits every task once."""
    team = make_team(max_daily_tasks=10)
    tasks = [make_task(i, 40.0 + i * 0.01, -75.0) for i in range(1, 9)]
    ctx = build_context(config, [team], tasks)

    plan = solver.best_sequence(team, list(reversed(tasks)), ctx, OptimizationParameters(max_stops_per_route=10))

    assert sorted(plan.task_ids) == list(range(1, 9))
    assert plan.task_ids == list(range(1, 9))
