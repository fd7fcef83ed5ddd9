"""
Greedy solver with local search for field team routing.

Filters task-team pairs, clusters tasks by proximity and window overlap,
assigns by cheapest feasible insertion in priority order, improves with
bounded relocate/swap passes, and finally re-sequences each route with an
exact search (small routes) or nearest neighbour plus 2-opt.
"""

import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import List, Dict, Tuple, Optional, Set, Sequence

from .models import Team, FieldTask, priority_rank
from .distance import RouteMatrix
from .constraints import (
    ConstraintValidator, ConstraintViolation,
    NO_CAPACITY, NO_FEASIBLE_WINDOW, NO_LOCATION, NO_AVAILABLE_TEAM,
)
from .schemas import AppConfig, OptimizationParameters
from .scoring import estimate_fuel_cost, route_cost, load_term, optimization_score
from .traffic.traffic_profile import factor_for_departure
from .util.geo import km, centroid
from .util.time_utils import parse_hhmm


logger = logging.getLogger(__name__)

EPS = 1e-6


def task_node(task_id: int) -> str:
    return f"task:{task_id}"


def team_node(team_id: int) -> str:
    return f"team:{team_id}"


@dataclass
class PlanningContext:
    """Everything the solver reads besides teams and tasks."""
    route_date: str
    matrix: RouteMatrix
    node_index: Dict[str, int]
    # task_id -> (delay minutes, reason); only applied with consider_weather
    weather: Dict[int, Tuple[int, Optional[str]]] = field(default_factory=dict)
    # team_id -> start node key (None: the team starts at its first stop)
    start_nodes: Dict[int, Optional[str]] = field(default_factory=dict)

    def leg(self, origin: Optional[str], dest: str) -> Tuple[float, float]:
        """(km, minutes) between two node keys; zero when there is no origin."""
        if origin is None or origin == dest:
            return 0.0, 0.0
        i = self.node_index[origin]
        j = self.node_index[dest]
        return self.matrix.get_distance(i, j), self.matrix.get_duration(i, j)


@dataclass
class StopPlan:
    """One simulated stop."""
    task: FieldTask
    sequence: int
    arrival_minute: float
    start_minute: float
    departure_minute: float
    leg_distance_km: float
    leg_minutes: float
    wait_minutes: float
    service_minutes: float
    weather_delay_minutes: float
    window_start: Optional[int]
    window_end: Optional[int]
    late_minutes: float = 0.0


@dataclass
class RoutePlan:
    """Simulated timing and totals for an ordered task list."""
    team: Team
    stops: List[StopPlan]
    start_minute: float
    end_minute: float
    total_distance_km: float = 0.0
    travel_minutes: float = 0.0
    service_minutes: float = 0.0
    wait_minutes: float = 0.0
    weather_delay_minutes: float = 0.0
    fuel_cost: float = 0.0
    weather_reasons: List[str] = field(default_factory=list)

    @property
    def working_minutes(self) -> float:
        """Travel plus service plus weather delay; waits excluded."""
        return self.travel_minutes + self.service_minutes + self.weather_delay_minutes

    @property
    def total_time_minutes(self) -> float:
        return self.end_minute - self.start_minute if self.stops else 0.0

    @property
    def violation_count(self) -> int:
        return sum(1 for s in self.stops if s.late_minutes > EPS)

    @property
    def task_ids(self) -> List[int]:
        return [s.task.id for s in self.stops]


@dataclass
class TeamRoute:
    """Complete route for a single team."""
    team: Team
    plan: RoutePlan
    cost: float
    score: float
    violations: List[ConstraintViolation] = field(default_factory=list)

    def __eq__(self, other) -> bool:
        if not isinstance(other, TeamRoute):
            return False
        return self.team.id == other.team.id

    def __hash__(self) -> int:
        return hash(self.team.id)


@dataclass
class Unassigned:
    task_id: int
    reason: str


@dataclass
class Solution:
    """Complete solution with all team routes."""
    routes: List[TeamRoute]
    unassigned: List[Unassigned]
    total_cost: float
    computation_time_seconds: float
    baseline_distance_km: float = 0.0
    baseline_minutes: float = 0.0
    warnings: List[str] = field(default_factory=list)

    @property
    def total_distance_km(self) -> float:
        return sum(r.plan.total_distance_km for r in self.routes)

    @property
    def total_minutes(self) -> float:
        return sum(r.plan.working_minutes for r in self.routes)


class GreedySolver:
    """Greedy construction with local improvement for field team routing."""

    def __init__(self, config: AppConfig):
        self.config = config
        self.validator = ConstraintValidator(config)

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------
    def simulate(
        self,
        team: Team,
        tasks: Sequence[FieldTask],
        ctx: PlanningContext,
        params: OptimizationParameters,
        start_node: Optional[str] = None,
        start_minute: Optional[float] = None,
        use_team_start: bool = True,
    ) -> RoutePlan:
        """Walk the tasks in order, computing legs, waits, delays and lateness.

        With a free start the team leaves late enough to reach its first
        windowed stop at the window opening instead of idling there.
        """
        work_start, _ = self.validator.team_hours(team)
        fixed_start = start_minute is not None
        clock = float(start_minute) if fixed_start else float(work_start)
        if start_node is None and use_team_start:
            start_node = ctx.start_nodes.get(team.id)

        plan = RoutePlan(team=team, stops=[], start_minute=clock, end_minute=clock)
        prev = start_node
        for seq, task in enumerate(tasks):
            node = task_node(task.id)
            leg_km, leg_min = ctx.leg(prev, node)
            if params.consider_traffic and not ctx.matrix.includes_traffic and leg_min > 0:
                leg_min = leg_min / max(factor_for_departure(clock, self.config), 0.01)

            delay, reason = (0, None)
            if params.consider_weather:
                delay, reason = ctx.weather.get(task.id, (0, None))

            w_start, w_end = self.validator.task_window(task)
            arrival = clock + leg_min + delay
            if seq == 0 and not fixed_start and w_start is not None and arrival < w_start:
                shift = w_start - arrival
                plan.start_minute += shift
                arrival = float(w_start)
            wait = max(0.0, w_start - arrival) if w_start is not None else 0.0
            service_start = arrival + wait
            late = max(0.0, service_start - w_end) if w_end is not None else 0.0
            service = float(task.estimated_duration_minutes or self.config.routing.service_minutes)
            departure = service_start + service

            plan.stops.append(StopPlan(
                task=task,
                sequence=seq,
                arrival_minute=arrival,
                start_minute=service_start,
                departure_minute=departure,
                leg_distance_km=leg_km,
                leg_minutes=leg_min,
                wait_minutes=wait,
                service_minutes=service,
                weather_delay_minutes=float(delay),
                window_start=w_start,
                window_end=w_end,
                late_minutes=late,
            ))
            plan.total_distance_km += leg_km
            plan.travel_minutes += leg_min
            plan.service_minutes += service
            plan.wait_minutes += wait
            plan.weather_delay_minutes += delay
            if reason and reason not in plan.weather_reasons:
                plan.weather_reasons.append(reason)
            clock = departure
            prev = node

        plan.end_minute = clock
        plan.fuel_cost = estimate_fuel_cost(plan.total_distance_km, team, self.config)
        return plan

    def infeasibility(self, plan: RoutePlan, params: OptimizationParameters) -> Optional[str]:
        """Reason code when a plan breaks a hard constraint, else None."""
        team = plan.team
        if len(plan.stops) > self.validator.team_capacity(team, params):
            return NO_CAPACITY
        if plan.total_distance_km > self.validator.team_distance_limit(team) + EPS:
            return NO_CAPACITY
        if not params.allow_overtime:
            _, work_end = self.validator.team_hours(team)
            if plan.working_minutes > params.max_route_time + EPS:
                return NO_CAPACITY
            if plan.stops and plan.end_minute > work_end + EPS:
                return NO_CAPACITY
        for stop in plan.stops:
            if stop.late_minutes > EPS and not stop.task.window_flexible:
                return NO_FEASIBLE_WINDOW
        return None

    def _cost(self, plan: RoutePlan, params: OptimizationParameters) -> float:
        return route_cost(plan, params, self.config) + load_term(plan, params, self.config)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def solve(
        self,
        teams: List[Team],
        tasks: List[FieldTask],
        ctx: PlanningContext,
        params: OptimizationParameters,
    ) -> Solution:
        """
        Assign tasks to teams and sequence every route.

        Deterministic for identical inputs: every iteration runs over
        id-sorted collections and ties keep the first candidate.
        """
        started = time.perf_counter()
        warnings: List[str] = []
        teams = sorted(teams, key=lambda t: t.id)
        tasks = sorted(tasks, key=lambda t: t.id)

        available = [t for t in teams if t.is_active and t.is_available_for_routing]
        available_ids = {t.id for t in available}
        for t in teams:
            if t.id not in available_ids:
                warnings.append(f"Team {t.id} is not available for routing")

        unassigned: Dict[int, str] = {}
        routable: List[FieldTask] = []
        for task in tasks:
            if task.lat is None or task.lon is None or task_node(task.id) not in ctx.node_index:
                unassigned[task.id] = NO_LOCATION
            else:
                routable.append(task)

        candidates = self._candidate_teams(available, routable, ctx, params, unassigned)
        team_by_id = {t.id: t for t in available}

        routes: Dict[int, List[FieldTask]] = {t.id: [] for t in available}
        plans: Dict[int, RoutePlan] = {t.id: self.simulate(t, [], ctx, params) for t in available}

        order = sorted(
            (t for t in routable if t.id not in unassigned),
            key=lambda t: (-priority_rank(t.priority), self._window_width(t), t.id),
        )
        for task in order:
            reason = self._insert_best(task, candidates[task.id], team_by_id, routes, plans, ctx, params)
            if reason:
                unassigned[task.id] = reason

        for _ in range(self.config.solver.improvement_passes):
            improved = self._relocate_pass(candidates, team_by_id, routes, plans, ctx, params)
            improved = self._swap_pass(candidates, team_by_id, routes, plans, ctx, params) or improved
            for task in [t for t in order if t.id in unassigned and unassigned[t.id] != NO_LOCATION]:
                if task.id not in candidates or not candidates[task.id]:
                    continue
                if self._insert_best(task, candidates[task.id], team_by_id, routes, plans, ctx, params) is None:
                    del unassigned[task.id]
                    improved = True
            if not improved:
                break

        result_routes: List[TeamRoute] = []
        baseline_km = 0.0
        baseline_min = 0.0
        for team in available:
            if not routes[team.id]:
                continue
            plan = self.best_sequence(team, routes[team.id], ctx, params)
            naive = self.simulate(team, sorted(routes[team.id], key=lambda t: t.id), ctx, params)
            baseline_km += naive.total_distance_km
            baseline_min += naive.working_minutes
            result_routes.append(self._finish(team, plan, params))

        task_by_id = {t.id: t for t in tasks}
        unassigned_list = [Unassigned(task_id=tid, reason=r) for tid, r in sorted(unassigned.items())]
        for u in unassigned_list:
            logger.debug(f"Task {u.task_id} unassigned: {u.reason} (priority {task_by_id[u.task_id].priority})")

        solution = Solution(
            routes=result_routes,
            unassigned=unassigned_list,
            total_cost=sum(r.cost for r in result_routes),
            computation_time_seconds=time.perf_counter() - started,
            baseline_distance_km=baseline_km,
            baseline_minutes=baseline_min,
            warnings=warnings,
        )
        assigned = sum(len(r.plan.stops) for r in result_routes)
        logger.info(
            f"Solved {ctx.route_date}: {len(result_routes)} routes, {assigned} assigned, "
            f"{len(unassigned_list)} unassigned in {solution.computation_time_seconds:.2f}s"
        )
        return solution

    def plan_route(
        self,
        team: Team,
        tasks: List[FieldTask],
        ctx: PlanningContext,
        params: OptimizationParameters,
        start_node: Optional[str] = None,
        start_minute: Optional[float] = None,
    ) -> TeamRoute:
        """Sequence a fixed task set for one team and score it."""
        plan = self.best_sequence(team, tasks, ctx, params, start_node, start_minute)
        return self._finish(team, plan, params)

    def _finish(self, team: Team, plan: RoutePlan, params: OptimizationParameters) -> TeamRoute:
        violations = self.validator.check_plan(
            plan, team, max_time=params.max_route_time, allow_overtime=params.allow_overtime
        )
        return TeamRoute(
            team=team,
            plan=plan,
            cost=self._cost(plan, params),
            score=optimization_score(plan, params, self.config),
            violations=violations,
        )

    # ------------------------------------------------------------------
    # Filtering and clustering
    # ------------------------------------------------------------------
    def _candidate_teams(
        self,
        teams: List[Team],
        tasks: List[FieldTask],
        ctx: PlanningContext,
        params: OptimizationParameters,
        unassigned: Dict[int, str],
    ) -> Dict[int, List[Team]]:
        """Eligible teams per task, narrowed to each team's cluster pool."""
        eligible: Dict[int, List[Team]] = {}
        for task in tasks:
            reasons = []
            ok = []
            for team in teams:
                reason = self.validator.eligibility(task, team, params)
                if reason is None:
                    ok.append(team)
                else:
                    reasons.append(reason)
            eligible[task.id] = ok
            if not ok:
                unassigned[task.id] = reasons[0] if reasons else NO_AVAILABLE_TEAM

        clusters = self._build_clusters([t for t in tasks if eligible[t.id]])
        pools = self._team_pools(teams, clusters, ctx)

        candidates: Dict[int, List[Team]] = {}
        for task in tasks:
            pooled = [t for t in eligible[task.id] if task.id in pools.get(t.id, set())]
            candidates[task.id] = pooled or eligible[task.id]
        return candidates

    def _build_clusters(self, tasks: List[FieldTask]) -> List[List[FieldTask]]:
        """Single-linkage groups of nearby tasks whose windows overlap."""
        parent = list(range(len(tasks)))

        def find(i: int) -> int:
            while parent[i] != i:
                parent[i] = parent[parent[i]]
                i = parent[i]
            return i

        radius = self.config.solver.cluster_radius_km
        for i, a in enumerate(tasks):
            for j in range(i + 1, len(tasks)):
                b = tasks[j]
                if km(a.lat, a.lon, b.lat, b.lon) <= radius and self._windows_overlap(a, b):
                    ri, rj = find(i), find(j)
                    if ri != rj:
                        parent[max(ri, rj)] = min(ri, rj)

        groups: Dict[int, List[FieldTask]] = {}
        for i, task in enumerate(tasks):
            groups.setdefault(find(i), []).append(task)
        return [groups[k] for k in sorted(groups)]

    def _team_pools(
        self,
        teams: List[Team],
        clusters: List[List[FieldTask]],
        ctx: PlanningContext,
    ) -> Dict[int, Set[int]]:
        """Task ids each team considers: nearest clusters first, capped in size."""
        cap = self.config.solver.max_candidates_per_team
        centers = [centroid([(t.lat, t.lon) for t in c]) for c in clusters]
        pools: Dict[int, Set[int]] = {}
        for team in teams:
            origin = self._start_point(team, ctx)
            if origin is None:
                ranked = list(range(len(clusters)))
            else:
                ranked = sorted(
                    range(len(clusters)),
                    key=lambda k: (km(origin[0], origin[1], centers[k][0], centers[k][1]), k),
                )
            pool: Set[int] = set()
            for k in ranked:
                if len(pool) >= cap:
                    break
                for task in clusters[k][:cap - len(pool)]:
                    pool.add(task.id)
            pools[team.id] = pool
        return pools

    def _start_point(self, team: Team, ctx: PlanningContext) -> Optional[Tuple[float, float]]:
        key = ctx.start_nodes.get(team.id)
        if key is None or key not in ctx.node_index:
            return None
        p = ctx.matrix.points[ctx.node_index[key]]
        return p.lat, p.lon

    def _windows_overlap(self, a: FieldTask, b: FieldTask) -> bool:
        a_start, a_end = self.validator.task_window(a)
        b_start, b_end = self.validator.task_window(b)
        a_start = 0 if a_start is None else a_start
        b_start = 0 if b_start is None else b_start
        a_end = 24 * 60 if a_end is None else a_end
        b_end = 24 * 60 if b_end is None else b_end
        return a_start <= b_end and b_start <= a_end

    def _window_width(self, task: FieldTask) -> int:
        start, end = self.validator.task_window(task)
        return (end if end is not None else 24 * 60) - (start if start is not None else 0)

    # ------------------------------------------------------------------
    # Construction and improvement
    # ------------------------------------------------------------------
    def _best_insertion(
        self,
        task: FieldTask,
        team: Team,
        route: List[FieldTask],
        ctx: PlanningContext,
        params: OptimizationParameters,
    ) -> Tuple[Optional[Tuple[float, int, RoutePlan]], Optional[str]]:
        """Cheapest feasible position of ``task`` in ``route``; returns (best, failure reason)."""
        if len(route) + 1 > self.validator.team_capacity(team, params):
            return None, NO_CAPACITY
        best = None
        failure = None
        for pos in range(len(route) + 1):
            seq = route[:pos] + [task] + route[pos:]
            plan = self.simulate(team, seq, ctx, params)
            reason = self.infeasibility(plan, params)
            if reason:
                if failure != NO_FEASIBLE_WINDOW:
                    failure = reason
                continue
            cost = self._cost(plan, params)
            if best is None or cost < best[0] - EPS:
                best = (cost, pos, plan)
        return best, (None if best else failure)

    def _insert_best(
        self,
        task: FieldTask,
        teams: List[Team],
        team_by_id: Dict[int, Team],
        routes: Dict[int, List[FieldTask]],
        plans: Dict[int, RoutePlan],
        ctx: PlanningContext,
        params: OptimizationParameters,
    ) -> Optional[str]:
        """Insert at the minimal marginal cost over all teams; reason when impossible."""
        best = None
        failures: List[str] = []
        for team in teams:
            found, failure = self._best_insertion(task, team, routes[team.id], ctx, params)
            if found is None:
                failures.append(failure or NO_CAPACITY)
                continue
            cost, pos, plan = found
            marginal = cost - self._cost(plans[team.id], params)
            if best is None or marginal < best[0] - EPS:
                best = (marginal, team.id, pos, plan)

        if best is None:
            if not teams:
                return NO_AVAILABLE_TEAM
            return NO_FEASIBLE_WINDOW if NO_FEASIBLE_WINDOW in failures else NO_CAPACITY

        _, team_id, pos, plan = best
        routes[team_id].insert(pos, task)
        plans[team_id] = plan
        return None

    def _relocate_pass(
        self,
        candidates: Dict[int, List[Team]],
        team_by_id: Dict[int, Team],
        routes: Dict[int, List[FieldTask]],
        plans: Dict[int, RoutePlan],
        ctx: PlanningContext,
        params: OptimizationParameters,
    ) -> bool:
        """Move single tasks to another team when total cost strictly drops."""
        improved = False
        for src_id in sorted(routes):
            for task in list(routes[src_id]):
                if all(t.id != task.id for t in routes[src_id]):
                    continue
                src_team = team_by_id[src_id]
                remaining = [t for t in routes[src_id] if t.id != task.id]
                src_plan = self.simulate(src_team, remaining, ctx, params)
                if self.infeasibility(src_plan, params):
                    continue
                before = self._cost(plans[src_id], params)
                after_src = self._cost(src_plan, params)
                for dst in candidates.get(task.id, []):
                    if dst.id == src_id:
                        continue
                    found, _ = self._best_insertion(task, dst, routes[dst.id], ctx, params)
                    if found is None:
                        continue
                    dst_cost, pos, dst_plan = found
                    delta = (after_src + dst_cost) - (before + self._cost(plans[dst.id], params))
                    if delta < -EPS:
                        routes[src_id] = remaining
                        plans[src_id] = src_plan
                        routes[dst.id].insert(pos, task)
                        plans[dst.id] = dst_plan
                        improved = True
                        break
        return improved

    def _swap_pass(
        self,
        candidates: Dict[int, List[Team]],
        team_by_id: Dict[int, Team],
        routes: Dict[int, List[FieldTask]],
        plans: Dict[int, RoutePlan],
        ctx: PlanningContext,
        params: OptimizationParameters,
    ) -> bool:
        """Exchange two tasks between teams when total cost strictly drops."""
        improved = False
        allowed = {tid: {t.id for t in teams} for tid, teams in candidates.items()}
        team_ids = sorted(routes)
        for a_id, b_id in itertools.combinations(team_ids, 2):
            a_team, b_team = team_by_id[a_id], team_by_id[b_id]
            swapped = True
            while swapped:
                swapped = False
                for i, x in enumerate(routes[a_id]):
                    if b_id not in allowed.get(x.id, set()):
                        continue
                    for j, y in enumerate(routes[b_id]):
                        if a_id not in allowed.get(y.id, set()):
                            continue
                        new_a = routes[a_id][:i] + [y] + routes[a_id][i + 1:]
                        new_b = routes[b_id][:j] + [x] + routes[b_id][j + 1:]
                        plan_a = self.simulate(a_team, new_a, ctx, params)
                        plan_b = self.simulate(b_team, new_b, ctx, params)
                        if self.infeasibility(plan_a, params) or self.infeasibility(plan_b, params):
                            continue
                        delta = (self._cost(plan_a, params) + self._cost(plan_b, params)) - \
                            (self._cost(plans[a_id], params) + self._cost(plans[b_id], params))
                        if delta < -EPS:
                            routes[a_id], routes[b_id] = new_a, new_b
                            plans[a_id], plans[b_id] = plan_a, plan_b
                            improved = swapped = True
                            break
                    if swapped:
                        break
        return improved

    # ------------------------------------------------------------------
    # Sequencing
    # ------------------------------------------------------------------
    def _sequence_key(self, plan: RoutePlan, params: OptimizationParameters) -> Tuple[int, int, float]:
        return (
            0 if self.infeasibility(plan, params) is None else 1,
            plan.violation_count,
            route_cost(plan, params, self.config),
        )

    def best_sequence(
        self,
        team: Team,
        tasks: List[FieldTask],
        ctx: PlanningContext,
        params: OptimizationParameters,
        start_node: Optional[str] = None,
        start_minute: Optional[float] = None,
    ) -> RoutePlan:
        """Best ordering among the given order and the heuristic/exact alternatives."""
        use_team_start = start_node is None

        def sim(seq):
            return self.simulate(team, seq, ctx, params, start_node, start_minute, use_team_start)

        best = sim(list(tasks))
        best_key = self._sequence_key(best, params)

        if len(tasks) <= self.config.solver.exact_sequence_max_stops:
            for perm in itertools.permutations(sorted(tasks, key=lambda t: t.id)):
                plan = sim(list(perm))
                key = self._sequence_key(plan, params)
                if key < best_key:
                    best, best_key = plan, key
            return best

        seq = self._nearest_neighbor(team, tasks, ctx, params, start_node, start_minute, use_team_start)
        seq = self._two_opt(seq, sim, params)
        plan = sim(seq)
        key = self._sequence_key(plan, params)
        if key < best_key:
            best = plan
        return best

    def _nearest_neighbor(
        self,
        team: Team,
        tasks: List[FieldTask],
        ctx: PlanningContext,
        params: OptimizationParameters,
        start_node: Optional[str],
        start_minute: Optional[float],
        use_team_start: bool,
    ) -> List[FieldTask]:
        """Window-aware nearest neighbour: prefer on-time stops, then soonest service start."""
        remaining = sorted(tasks, key=lambda t: t.id)
        seq: List[FieldTask] = []
        while remaining:
            best = None
            for task in remaining:
                plan = self.simulate(team, seq + [task], ctx, params, start_node, start_minute, use_team_start)
                last = plan.stops[-1]
                _, w_end = self.validator.task_window(task)
                key = (
                    1 if last.late_minutes > EPS else 0,
                    last.start_minute,
                    w_end if w_end is not None else 24 * 60,
                    task.id,
                )
                if best is None or key < best[0]:
                    best = (key, task)
            seq.append(best[1])
            remaining = [t for t in remaining if t.id != best[1].id]
        return seq

    def _two_opt(self, seq: List[FieldTask], sim, params: OptimizationParameters) -> List[FieldTask]:
        """Segment reversals while they strictly improve the sequence key."""
        best_key = self._sequence_key(sim(seq), params)
        for _ in range(self.config.solver.two_opt_max_iterations):
            improved = False
            for i in range(len(seq) - 1):
                for j in range(i + 1, len(seq)):
                    candidate = seq[:i] + list(reversed(seq[i:j + 1])) + seq[j + 1:]
                    key = self._sequence_key(sim(candidate), params)
                    if key < best_key:
                        seq, best_key = candidate, key
                        improved = True
            if not improved:
                break
        return seq
