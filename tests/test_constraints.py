"""
Tests for constraint validation logic.
"""

import pytest

from field_routing.constraints import (
    ConstraintValidator, EXCEEDS_MAX_DAILY_TASKS, EXCEEDS_MAX_DISTANCE, EXCEEDS_MAX_TIME,
    MISSING_EQUIPMENT, NO_SKILL_MATCH, OUTSIDE_SERVICE_AREA, TIME_WINDOW_UNMET,
)
from field_routing.schemas import OptimizationParameters
from field_routing.solver_greedy import GreedySolver

from conftest import build_context, create_test_config, make_task, make_team


def test_skill_and_equipment_mismatch():
    """A team missing one skill and one equipment item gets both violations."""
    validator = ConstraintValidator(create_test_config())
    team = make_team(skills=["electrical"], equipment=[])
    task = make_task(1, 40.0, -75.0, skills_required=["hvac", "electrical"], equipment_required=["lift"])

    violations = validator.check_task_fit([task], team, OptimizationParameters())

    types = [v.violation_type for v in violations]
    assert types == [NO_SKILL_MATCH, MISSING_EQUIPMENT]
    assert "hvac" in violations[0].message
    assert validator.eligibility(task, team, OptimizationParameters()) == NO_SKILL_MATCH


def test_skill_matching_disabled():
    validator = ConstraintValidator(create_test_config())
    team = make_team(skills=[])
    task = make_task(1, 40.0, -75.0, skills_required=["hvac"])
    params = OptimizationParameters(skill_matching=False)

    assert validator.check_task_fit([task], team, params) == []
    assert validator.eligibility(task, team, params) is None


def test_service_area_circle_and_polygon():
    validator = ConstraintValidator(create_test_config())
    params = OptimizationParameters()
    circle_team = make_team(service_areas=[
        {"type": "circle", "center": {"lat": 40.0, "lng": -75.0}, "radius_km": 5},
    ])
    polygon_team = make_team(service_areas=[
        {"type": "polygon", "coordinates": [
            {"lat": 39.9, "lng": -75.1}, {"lat": 39.9, "lng": -74.9},
            {"lat": 40.1, "lng": -74.9}, {"lat": 40.1, "lng": -75.1},
        ]},
    ])
    near = make_task(1, 40.01, -75.0)
    far = make_task(2, 41.0, -75.0)

    assert validator.eligibility(near, circle_team, params) is None
    assert validator.eligibility(far, circle_team, params) == OUTSIDE_SERVICE_AREA
    assert validator.eligibility(near, polygon_team, params) is None
    assert validator.eligibility(far, polygon_team, params) == OUTSIDE_SERVICE_AREA
    # No geofence means unrestricted
    assert validator.eligibility(far, make_team(service_areas=[]), params) is None


def test_capacity_uses_smaller_of_team_and_params():
    validator = ConstraintValidator(create_test_config())
    team = make_team(max_daily_tasks=5)

    assert validator.team_capacity(team, OptimizationParameters(max_stops_per_route=8)) == 5
    assert validator.team_capacity(team, OptimizationParameters(max_stops_per_route=3)) == 3

    violations = validator.check_capacity(4, team, OptimizationParameters(), existing_tasks=2)
    assert len(violations) == 1
    assert violations[0].violation_type == EXCEEDS_MAX_DAILY_TASKS
    assert validator.check_capacity(3, team, OptimizationParameters(), existing_tasks=2) == []


def test_team_hours_deduct_break():
    validator = ConstraintValidator(create_test_config())

    assert validator.team_hours(make_team()) == (8 * 60, 17 * 60)
    assert validator.team_hours(make_team(work_start="07:30", work_end="15:00", break_minutes=30)) == \
        (7 * 60 + 30, 14 * 60 + 30)


def test_check_plan_time_distance_and_windows():
    """Plan checks report maxTime, maxDistance and missed windows."""
    config = create_test_config()
    validator = ConstraintValidator(config)
    solver = GreedySolver(config)
    team = make_team()
    tasks = [
        make_task(1, 40.2, -75.0, estimated_duration_minutes=60, window_start="08:00", window_end="08:05"),
        make_task(2, 40.4, -75.0, estimated_duration_minutes=60, window_flexible=True,
                  window_start="08:00", window_end="08:30"),
    ]
    params = OptimizationParameters()
    plan = solver.simulate(team, tasks, build_context(config, [team], tasks), params)

    violations = validator.check_plan(plan, team, max_time=60, max_distance=10)
    types = [v.violation_type for v in violations]
    assert types[:2] == [EXCEEDS_MAX_TIME, EXCEEDS_MAX_DISTANCE]
    windows = [v for v in violations if v.violation_type == TIME_WINDOW_UNMET]
    assert [v.task_id for v in windows] == [1, 2]
    assert [v.severity for v in windows] == ["error", "warning"]


def test_overtime_allowed_skips_max_time():
    config = create_test_config()
    validator = ConstraintValidator(config)
    solver = GreedySolver(config)
    team = make_team()
    tasks = [make_task(1, 40.0, -75.0, estimated_duration_minutes=90)]
    plan = solver.simulate(team, tasks, build_context(config, [team], tasks), OptimizationParameters())

    assert [v.violation_type for v in validator.check_plan(plan, team, max_time=60)] == [EXCEEDS_MAX_TIME]
    assert validator.check_plan(plan, team, max_time=60, allow_overtime=True) == []


if __name__ == "__main__":
    pytest.main([__file__])
