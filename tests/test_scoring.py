"""
Tests for route cost, fuel estimates and the optimization score.
"""

import pytest

from field_routing.schemas import OptimizationParameters
from field_routing.scoring import estimate_fuel_cost, load_term, optimization_score, route_cost
from field_routing.solver_greedy import GreedySolver

from conftest import build_context, make_task, make_team


def test_fuel_cost_defaults_and_overrides(config):
    assert estimate_fuel_cost(100, make_team(), config) == 12.0
    assert estimate_fuel_cost(100, make_team(fuel_type="Electric"), config) == 2.4
    team = make_team(avg_fuel_consumption=10, fuel_price_per_unit=2.0)
    assert estimate_fuel_cost(100, team, config) == 20.0


def test_empty_plan_costs_nothing(config):
    plan = GreedySolver(config).simulate(make_team(), [], build_context(config, [make_team()], []),
                                         OptimizationParameters())
    params = OptimizationParameters()

    assert route_cost(plan, params, config) == 0.0
    assert load_term(plan, params, config) == 0.0
    assert optimization_score(plan, params, config) == 0.0


def test_overtime_lowers_score(config):
    team = make_team()
    tasks = [make_task(1, 40.0, -75.0, estimated_duration_minutes=90)]
    plan = GreedySolver(config).simulate(team, tasks, build_context(config, [team], tasks),
                                         OptimizationParameters())

    assert optimization_score(plan, OptimizationParameters(), config) == 100.0
    assert optimization_score(plan, OptimizationParameters(max_route_time=60), config) == 94.0


def test_load_term_packs_or_balances(config):
    team = make_team()
    tasks = [make_task(1, 40.0, -75.0, estimated_duration_minutes=90)]
    plan = GreedySolver(config).simulate(team, tasks, build_context(config, [team], tasks),
                                         OptimizationParameters())

    assert load_term(plan, OptimizationParameters(), config) == 30.0
    assert load_term(plan, OptimizationParameters(balance_workload=True), config) == pytest.approx(8.4375)


def test_objective_weights_change_cost(config):
    team = make_team()
    tasks = [make_task(1, 40.05, -75.0)]
    plan = GreedySolver(config).simulate(team, tasks, build_context(config, [team], tasks),
                                         OptimizationParameters())

    time_first = route_cost(plan, OptimizationParameters(), config)
    fuel_first = route_cost(plan, OptimizationParameters(prioritize_time=False, prioritize_fuel=True), config)

    assert time_first == pytest.approx(plan.travel_minutes + 0.3 * plan.fuel_cost * 4.0)
    assert fuel_first == pytest.approx(0.3 * plan.travel_minutes + plan.fuel_cost * 4.0)
    assert OptimizationParameters(prioritize_time=False, prioritize_fuel=True).objective == "minimize_fuel"
