"""
Route cost, fuel estimate and the 0-100 optimization score.

The cost drives assignment and sequencing; the score is reported on each
route. Every optimization parameter changes one of the cost terms.
"""

from typing import TYPE_CHECKING

from .models import Team, priority_rank
from .schemas import AppConfig, OptimizationParameters

if TYPE_CHECKING:
    from .solver_greedy import RoutePlan


def estimate_fuel_cost(distance_km: float, team: Team, config: AppConfig) -> float:
    """Fuel (or charging) cost for a distance, from the team's vehicle or defaults."""
    fuel = config.fuel
    electric = (team.fuel_type or "").lower() == "electric"
    if electric:
        consumption = team.avg_fuel_consumption or fuel.electric_consumption_per_100km
        price = team.fuel_price_per_unit if team.fuel_price_per_unit is not None else fuel.electricity_price_per_kwh
    else:
        consumption = team.avg_fuel_consumption or fuel.default_consumption_per_100km
        price = team.fuel_price_per_unit if team.fuel_price_per_unit is not None else fuel.fuel_price_per_liter
    return round(distance_km / 100.0 * consumption * price, 2)


def overtime_minutes(plan: "RoutePlan", params: OptimizationParameters) -> float:
    return max(0.0, plan.working_minutes - params.max_route_time)


def route_cost(plan: "RoutePlan", params: OptimizationParameters, config: AppConfig) -> float:
    """Weighted cost of one simulated route; lower is better."""
    if not plan.stops:
        return 0.0
    s = config.scoring
    time_w = s.time_weight_primary if params.prioritize_time else s.time_weight_secondary
    fuel_w = s.fuel_weight_primary if params.prioritize_fuel else s.fuel_weight_secondary

    cost = time_w * (plan.travel_minutes + plan.wait_minutes + plan.weather_delay_minutes)
    cost += fuel_w * plan.fuel_cost * s.fuel_cost_scale
    cost += s.lateness_weight * sum(stop.late_minutes for stop in plan.stops)
    cost += s.overtime_weight * overtime_minutes(plan, params)

    if params.prioritize_customer_preference:
        for stop in plan.stops:
            if stop.window_start is not None:
                cost += s.customer_wait_weight * max(0.0, stop.start_minute - stop.window_start)
            rank = priority_rank(stop.task.priority)
            cost += s.priority_position_weight * rank * (stop.start_minute - plan.start_minute) / 60.0
    return cost


def load_term(plan: "RoutePlan", params: OptimizationParameters, config: AppConfig) -> float:
    """Cross-route term: spread load when balancing, otherwise favour packing."""
    if not plan.stops:
        return 0.0
    s = config.scoring
    if params.balance_workload:
        return s.balance_weight * plan.working_minutes ** 2 / params.max_route_time
    return s.team_activation_cost


def optimization_score(plan: "RoutePlan", params: OptimizationParameters, config: AppConfig) -> float:
    """Composite 0-100 score.

    Blend of time efficiency, distance efficiency and window compliance,
    less an overtime penalty. Each component only moves one way with its
    input, so improving one factor never lowers the score.
    """
    if not plan.stops:
        return 0.0
    s = config.scoring
    busy = plan.service_minutes + plan.travel_minutes + plan.weather_delay_minutes
    time_eff = plan.service_minutes / busy if busy > 0 else 1.0
    avg_leg_km = plan.total_distance_km / len(plan.stops)
    distance_eff = 1.0 / (1.0 + avg_leg_km / s.reference_leg_km)
    compliance = 1.0 - plan.violation_count / len(plan.stops)

    total_w = s.score_time_weight + s.score_distance_weight + s.score_compliance_weight
    if total_w <= 0:
        return 0.0
    blended = 100.0 * (
        s.score_time_weight * time_eff
        + s.score_distance_weight * distance_eff
        + s.score_compliance_weight * compliance
    ) / total_w
    score = blended - s.score_overtime_penalty_per_minute * overtime_minutes(plan, params)
    return round(min(100.0, max(0.0, score)), 1)
