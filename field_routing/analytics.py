"""
Route analytics over persisted routes and tasks.

Reports, performance metrics, period-over-period cost savings, weekly
efficiency trends and exports. Read-only apart from storing generated
reports; the reference date is injectable so results are reproducible.
"""

import logging
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd

from .errors import InvalidRequest
from .models import RouteReportRecord, RouteStatus, TaskStatus
from .repo import DatabaseRepository
from .schemas import AppConfig


logger = logging.getLogger(__name__)

DELAY_REASONS = ["Traffic", "Customer Availability", "Equipment Issues", "Weather", "Other"]
EXPORT_FORMATS = ("csv", "json", "outline")

# Recommendation triggers
TARGET_EFFICIENCY = 80
LOW_TEAM_EFFICIENCY = 75
LONG_ROUTE_KM = 150
HIGH_TEAM_TASKS = 20

TASK_COLUMNS = [
    "task_id", "team_id", "scheduled_date", "status", "estimated_minutes",
    "actual_minutes", "customer_rating", "delays",
]
ROUTE_COLUMNS = [
    "route_id", "team_id", "route_date", "status", "distance_km", "planned_minutes",
    "actual_minutes", "fuel_cost", "actual_fuel_cost", "score",
]


def _pct_change(current: float, previous: float) -> int:
    return int(round((current - previous) / previous * 100)) if previous > 0 else 0


def _direction(current: float, previous: float, band: float, up: str, down: str) -> str:
    if current > previous * (1 + band):
        return up
    if current < previous * (1 - band):
        return down
    return "stable"


class RouteAnalytics:
    """Aggregations for one deployment; ``as_of`` fixes "today"."""

    def __init__(
        self,
        config: AppConfig,
        repo: DatabaseRepository,
        as_of: Callable[[], date] = date.today,
    ):
        self.config = config
        self.repo = repo
        self.as_of = as_of

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------
    def _task_frame(self, business_id: str, start: date, end: date) -> pd.DataFrame:
        tasks = self.repo.tasks.get_tasks(business_id, {
            "date_from": start.isoformat(),
            "date_to": end.isoformat(),
        })
        rows = [{
            "task_id": t.id,
            "team_id": t.assigned_team_id,
            "scheduled_date": t.scheduled_date,
            "status": t.status.value,
            "estimated_minutes": float(t.estimated_duration_minutes),
            "actual_minutes": t.actual_duration_minutes,
            "customer_rating": t.customer_rating,
            "delays": t.delays or [],
        } for t in tasks if t.status != TaskStatus.CANCELLED]
        frame = pd.DataFrame(rows, columns=TASK_COLUMNS)
        for col in ("estimated_minutes", "actual_minutes", "customer_rating"):
            frame[col] = pd.to_numeric(frame[col], errors="coerce")
        return frame

    def _route_frame(self, business_id: str, start: date, end: date) -> pd.DataFrame:
        routes = self.repo.routes.get_routes(
            business_id, date_from=start.isoformat(), date_to=end.isoformat()
        )
        rows = [{
            "route_id": r.id,
            "team_id": r.team_id,
            "route_date": r.route_date,
            "status": r.status.value,
            "distance_km": r.actual_distance_km if r.actual_distance_km is not None else r.total_distance_km,
            "planned_minutes": r.total_time_minutes,
            "actual_minutes": r.actual_total_minutes,
            "fuel_cost": r.estimated_fuel_cost,
            "actual_fuel_cost": r.actual_fuel_cost,
            "score": r.optimization_score,
        } for r in routes]
        frame = pd.DataFrame(rows, columns=ROUTE_COLUMNS)
        for col in ROUTE_COLUMNS[4:]:
            frame[col] = pd.to_numeric(frame[col], errors="coerce")
        return frame

    def _completed_tasks(self, tasks: pd.DataFrame) -> pd.DataFrame:
        return tasks[tasks["status"] == TaskStatus.COMPLETED.value]

    def _completed_routes(self, routes: pd.DataFrame) -> pd.DataFrame:
        return routes[routes["status"] == RouteStatus.COMPLETED.value]

    # ------------------------------------------------------------------
    # Metric helpers
    # ------------------------------------------------------------------
    def _efficiency(self, completed: pd.DataFrame) -> float:
        """Estimated over actual duration, in percent and capped at 100."""
        if completed.empty:
            return 0
        measured = completed[completed["actual_minutes"].notna() & (completed["actual_minutes"] > 0)]
        if measured.empty:
            return self.config.analytics.default_efficiency
        actual = measured["actual_minutes"].sum()
        return min(100, int(round(float(measured["estimated_minutes"].sum()) / float(actual) * 100)))

    def _task_minutes(self, completed: pd.DataFrame) -> pd.Series:
        return completed["actual_minutes"].fillna(completed["estimated_minutes"]).astype(float)

    def _avg_task_time(self, completed: pd.DataFrame) -> float:
        if completed.empty:
            return 0
        return round(float(self._task_minutes(completed).mean()))

    def _on_time_percentage(self, completed: pd.DataFrame) -> float:
        if completed.empty:
            return 100
        limit = completed["estimated_minutes"] * (1 + self.config.analytics.on_time_tolerance)
        on_time = completed["actual_minutes"].isna() | (completed["actual_minutes"] <= limit)
        return round(float(on_time.mean()) * 100)

    def _delay_reasons(self, completed: pd.DataFrame) -> Dict[str, float]:
        totals = {reason: 0.0 for reason in DELAY_REASONS}
        for delays in completed["delays"]:
            for delay in delays:
                reason = delay.get("reason") or "Other"
                key = reason if reason in totals else "Other"
                totals[key] += float(delay.get("minutes") or delay.get("duration") or 0)
        return totals

    def _satisfaction(self, completed: pd.DataFrame) -> float:
        rated = completed["customer_rating"].dropna()
        if rated.empty:
            return 88
        return round(float(rated.mean()) / 5 * 100)

    def _team_rating(self, completed: pd.DataFrame) -> float:
        rated = completed["customer_rating"].dropna()
        return round(float(rated.mean()), 2) if not rated.empty else 4.5

    def _period_costs(self, routes: pd.DataFrame) -> Dict[str, float]:
        """Fuel, labour and maintenance cost of completed routes."""
        a = self.config.analytics
        done = self._completed_routes(routes)
        distance = float(done["distance_km"].sum())
        minutes = float(done["actual_minutes"].fillna(done["planned_minutes"]).sum())
        fuel = float(done["actual_fuel_cost"].fillna(done["fuel_cost"]).sum())
        if done.empty:
            fuel = 0.0
        elif fuel == 0 and distance > 0:
            fuel = distance * a.fuel_cost_per_km
        time_cost = minutes / 60 * a.labour_cost_per_hour
        maintenance = distance * a.maintenance_cost_per_km
        return {
            "total_cost": round(fuel + time_cost + maintenance, 2),
            "fuel_cost": round(fuel, 2),
            "time_cost": round(time_cost, 2),
            "maintenance_cost": round(maintenance, 2),
        }

    def _fuel_efficiency(self, routes: pd.DataFrame) -> float:
        done = self._completed_routes(routes)
        measured = done[done["actual_fuel_cost"].notna() & (done["actual_fuel_cost"] > 0)]
        if measured.empty:
            return self.config.analytics.default_efficiency
        ratio = float(measured["fuel_cost"].sum()) / float(measured["actual_fuel_cost"].sum())
        return min(100, int(round(ratio * 100)))

    def _team_rows(self, business_id: str, tasks: pd.DataFrame, routes: pd.DataFrame) -> List[Dict[str, Any]]:
        rows = []
        completed = self._completed_tasks(tasks)
        done_routes = self._completed_routes(routes)
        for team in self.repo.teams.get_teams(business_id):
            team_tasks = completed[completed["team_id"] == team.id]
            minutes = self._task_minutes(team_tasks)
            rows.append({
                "team_id": team.id,
                "team_name": team.name,
                "routes_completed": int((done_routes["team_id"] == team.id).sum()),
                "tasks_completed": len(team_tasks),
                "avg_completion_time": round(float(minutes.mean())) if len(minutes) else 0,
                "efficiency": self._efficiency(team_tasks),
                "rating": self._team_rating(team_tasks),
            })
        return rows

    # ------------------------------------------------------------------
    # Periods
    # ------------------------------------------------------------------
    def _timeframe_days(self, timeframe: str) -> int:
        if timeframe not in self.config.analytics.allowed_timeframes:
            allowed = ", ".join(self.config.analytics.allowed_timeframes)
            raise InvalidRequest(f"Invalid timeframe '{timeframe}'. Allowed: {allowed}")
        return int(timeframe.rstrip("d"))

    def _window(self, days: int) -> Tuple[date, date]:
        end = self.as_of()
        return end - timedelta(days=days), end

    def report_range(
        self,
        report_type: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> Tuple[date, date]:
        try:
            end = date.fromisoformat(end_date) if end_date else self.as_of()
            start = date.fromisoformat(start_date) if start_date else None
        except ValueError:
            raise InvalidRequest("Dates must be YYYY-MM-DD")

        if report_type == "daily":
            start = end - timedelta(days=1)
        elif report_type == "weekly":
            start = end - timedelta(days=7)
        elif report_type == "monthly":
            start = (pd.Timestamp(end) - pd.DateOffset(months=1)).date()
        elif report_type == "custom":
            if start is None:
                raise InvalidRequest("Custom reports require start_date")
            if start >= end:
                raise InvalidRequest("start_date must be before end_date")
            if (end - start).days > self.config.analytics.custom_max_span_days:
                raise InvalidRequest("Custom report range cannot exceed one year")
        else:
            raise InvalidRequest(f"Invalid report type '{report_type}'")
        return start, end

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def generate_route_report(
        self,
        business_id: str,
        report_type: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> Dict[str, Any]:
        self.repo.businesses.get_business(business_id)
        start, end = self.report_range(report_type, start_date, end_date)
        tasks = self._task_frame(business_id, start, end)
        routes = self._route_frame(business_id, start, end)
        completed = self._completed_tasks(tasks)
        done_routes = self._completed_routes(routes)

        distance = float(done_routes["distance_km"].sum())
        metrics = {
            "total_routes": len(routes),
            "completed_routes": len(done_routes),
            "total_tasks": len(tasks),
            "completed_tasks": len(completed),
            "total_distance": round(distance),
            "total_time": round(float(self._task_minutes(completed).sum())),
            "fuel_cost": self._period_costs(routes)["fuel_cost"],
            "efficiency": self._efficiency(completed),
        }
        teams = self._team_rows(business_id, tasks, routes)

        span = end - start
        prev_start, prev_end = start - span, start
        prev_tasks = self._task_frame(business_id, prev_start, prev_end)
        prev_routes = self._route_frame(business_id, prev_start, prev_end)
        prev_completed = self._completed_tasks(prev_tasks)
        trends = {
            "efficiency_trend": _pct_change(self._efficiency(completed), self._efficiency(prev_completed)),
            "time_trend": _pct_change(self._avg_task_time(completed), self._avg_task_time(prev_completed)),
            "cost_trend": _pct_change(self._period_costs(routes)["total_cost"],
                                      self._period_costs(prev_routes)["total_cost"]),
        }

        report = {
            "business_id": business_id,
            "report_type": report_type,
            "date_range": {"start_date": start.isoformat(), "end_date": end.isoformat()},
            "metrics": metrics,
            "team_performance": teams,
            "trends": trends,
            "recommendations": self._recommendations(metrics, teams),
        }
        record = self.repo.reports.save_report(
            RouteReportRecord(
                business_id=business_id,
                report_type=report_type,
                period_start=start.isoformat(),
                period_end=end.isoformat(),
                payload=report,
            ),
            keep=self.config.analytics.max_stored_reports,
        )
        report["report_id"] = record.id
        report["generated_at"] = record.created_at.isoformat()
        logger.info(f"Generated {report_type} route report {record.id} for business {business_id}")
        return report

    def _recommendations(self, metrics: Dict[str, Any], teams: List[Dict[str, Any]]) -> List[str]:
        out = []
        if metrics["efficiency"] < TARGET_EFFICIENCY:
            out.append("Route optimization needed - current efficiency below target")
        low = [t for t in teams if t["tasks_completed"] and t["efficiency"] < LOW_TEAM_EFFICIENCY]
        if low:
            out.append(f"{len(low)} teams need performance improvement")
        if metrics["total_distance"] / max(1, metrics["completed_routes"]) > LONG_ROUTE_KM:
            out.append("Routes are longer than optimal - review service area assignments")
        if any(t["tasks_completed"] > HIGH_TEAM_TASKS for t in teams):
            out.append("Consider redistributing workload for optimal performance")
        out.append("Continue monitoring performance metrics weekly")
        return out[:5]

    def get_performance_metrics(self, business_id: str, timeframe: str = "30d") -> Dict[str, Any]:
        days = self._timeframe_days(timeframe)
        self.repo.businesses.get_business(business_id)
        start, end = self._window(days)
        tasks = self._task_frame(business_id, start, end)
        routes = self._route_frame(business_id, start, end)
        completed = self._completed_tasks(tasks)
        done_routes = self._completed_routes(routes)
        a = self.config.analytics

        distance_saved = float(done_routes["distance_km"].sum()) * a.distance_saved_ratio
        saved = (completed["estimated_minutes"] - completed["actual_minutes"]).clip(lower=0)
        time_saved = float(saved.fillna(completed["estimated_minutes"] * 0.1).sum())
        cost_saved = distance_saved * a.fuel_cost_per_km + time_saved / 60 * a.labour_cost_per_hour

        route_minutes = done_routes["actual_minutes"].fillna(done_routes["planned_minutes"])
        return {
            "timeframe": timeframe,
            "period": {"start_date": start.isoformat(), "end_date": end.isoformat()},
            "overview": {
                "total_routes": len(done_routes),
                "avg_efficiency": self._efficiency(completed),
                "total_distance_saved": round(distance_saved),
                "total_time_saved": round(time_saved),
                "total_cost_saved": round(cost_saved),
            },
            "time_metrics": {
                "avg_route_time": round(float(route_minutes.mean())) if len(route_minutes) else 0,
                "avg_task_time": self._avg_task_time(completed),
                "on_time_percentage": self._on_time_percentage(completed),
                "delay_reasons": self._delay_reasons(completed),
            },
            "efficiency_metrics": {
                "route_optimization_score": round(float(routes["score"].mean()), 1) if len(routes) else 0,
                "fuel_efficiency": self._fuel_efficiency(routes),
                "task_completion_rate": round(len(completed) / len(tasks) * 100) if len(tasks) else 0,
                "customer_satisfaction": self._satisfaction(completed),
            },
            "team_metrics": [
                {
                    "team_id": row["team_id"],
                    "team_name": row["team_name"],
                    "performance": row["efficiency"],
                    "tasks_completed": row["tasks_completed"],
                    "avg_rating": row["rating"],
                }
                for row in self._team_rows(business_id, tasks, routes)
            ],
        }

    def calculate_cost_savings(self, business_id: str, timeframe: str = "30d") -> Dict[str, Any]:
        days = self._timeframe_days(timeframe)
        self.repo.businesses.get_business(business_id)
        start, end = self._window(days)
        prev_start, prev_end = start - timedelta(days=days), start - timedelta(days=1)

        current = self._period_costs(self._route_frame(business_id, start, end))
        previous = self._period_costs(self._route_frame(business_id, prev_start, prev_end))

        def saved(key: str) -> float:
            return round(max(0.0, previous[key] - current[key]), 2)

        savings = {
            "total_savings": saved("total_cost"),
            "fuel_savings": saved("fuel_cost"),
            "time_savings": saved("time_cost"),
            "maintenance_savings": saved("maintenance_cost"),
            "percentage_saved": -_pct_change(current["total_cost"], previous["total_cost"]),
        }
        return {
            "timeframe": timeframe,
            "period_comparison": {"current": current, "previous": previous, "savings": savings},
            "projected_savings": {
                "monthly": round(savings["total_savings"] * 30 / days),
                "yearly": round(savings["total_savings"] * 365 / days),
            },
            "optimization_impact": {
                "route_optimization": round(savings["total_savings"] * self.config.analytics.optimization_impact_share),
                "fuel_optimization": savings["fuel_savings"],
                "time_optimization": savings["time_savings"],
            },
        }

    def get_efficiency_trends(self, business_id: str, timeframe: str = "90d") -> Dict[str, Any]:
        days = self._timeframe_days(timeframe)
        self.repo.businesses.get_business(business_id)
        start, end = self._window(days)
        tasks = self._task_frame(business_id, start, end)
        routes = self._route_frame(business_id, start, end)

        points = []
        for week_start in pd.date_range(start, end - timedelta(days=1), freq="7D"):
            lo = week_start.date().isoformat()
            hi = (week_start.date() + timedelta(days=6)).isoformat()
            week_tasks = tasks[(tasks["scheduled_date"] >= lo) & (tasks["scheduled_date"] <= hi)]
            week_routes = routes[(routes["route_date"] >= lo) & (routes["route_date"] <= hi)]
            completed = self._completed_tasks(week_tasks)
            points.append({
                "date": lo,
                "efficiency": self._efficiency(completed),
                "route_count": len(self._completed_routes(week_routes)),
                "avg_time": self._avg_task_time(completed),
                "costs": self._period_costs(week_routes)["total_cost"],
            })

        frame = pd.DataFrame(points, columns=["date", "efficiency", "route_count", "avg_time", "costs"])
        half = len(frame) // 2
        first, second = frame.iloc[:half], frame.iloc[half:]
        if first.empty or second.empty:
            trends = {"efficiency": "stable", "route_count": "stable", "costs": "stable"}
            eff_second = float(second["efficiency"].mean()) if not second.empty else 0.0
            cost_second = float(second["costs"].mean()) if not second.empty else 0.0
            eff_delta = cost_delta = 0.0
        else:
            eff_first, eff_second = float(first["efficiency"].mean()), float(second["efficiency"].mean())
            cost_first, cost_second = float(first["costs"].mean()), float(second["costs"].mean())
            routes_first, routes_second = float(first["route_count"].mean()), float(second["route_count"].mean())
            trends = {
                "efficiency": _direction(eff_second, eff_first, 0.05, "improving", "declining"),
                "route_count": _direction(routes_second, routes_first, 0.10, "increasing", "decreasing"),
                "costs": _direction(cost_second, cost_first, 0.05, "increasing", "decreasing"),
            }
            eff_delta = eff_second - eff_first
            cost_delta = cost_second - cost_first

        return {
            "timeframe": timeframe,
            "data_points": points,
            "trends": trends,
            "forecasts": {
                "next_month": {
                    "expected_efficiency": round(max(60.0, min(95.0, eff_second + eff_delta)), 1),
                    "expected_costs": round(max(0.0, cost_second + cost_delta), 2),
                    "confidence": min(95, 75 + len(points) * 2),
                }
            },
        }

    def export_analytics(self, business_id: str, export_format: str = "csv", timeframe: str = "30d") -> Dict[str, Any]:
        if export_format not in EXPORT_FORMATS:
            raise InvalidRequest(f"Invalid export format '{export_format}'")
        metrics = self.get_performance_metrics(business_id, timeframe)
        savings = self.calculate_cost_savings(business_id, timeframe)
        trends = self.get_efficiency_trends(business_id, timeframe)

        if export_format == "csv":
            rows = pd.DataFrame([
                {"metric": "Total Routes", "value": metrics["overview"]["total_routes"], "category": "Overview"},
                {"metric": "Average Efficiency", "value": f"{metrics['overview']['avg_efficiency']}%",
                 "category": "Overview"},
                {"metric": "Total Cost Saved",
                 "value": savings["period_comparison"]["savings"]["total_savings"], "category": "Savings"},
                {"metric": "Fuel Savings",
                 "value": savings["period_comparison"]["savings"]["fuel_savings"], "category": "Savings"},
                {"metric": "Completion Rate",
                 "value": f"{metrics['efficiency_metrics']['task_completion_rate']}%", "category": "Performance"},
            ])
            data: Any = rows.to_csv(index=False)
        elif export_format == "json":
            data = {
                "as_of": self.as_of().isoformat(),
                "timeframe": timeframe,
                "business_id": business_id,
                "performance_metrics": metrics,
                "cost_savings": savings,
                "efficiency_trends": trends,
            }
        else:
            data = {
                "title": "Route Analytics Report",
                "as_of": self.as_of().isoformat(),
                "sections": [
                    {"title": "Performance Overview", "data": metrics["overview"]},
                    {"title": "Cost Savings", "data": savings["period_comparison"]["savings"]},
                    {"title": "Efficiency Trends",
                     "data": {"trend": trends["trends"]["efficiency"],
                              "forecast": trends["forecasts"]["next_month"]}},
                ],
            }
        logger.info(f"Exported analytics ({export_format}, {timeframe}) for business {business_id}")
        return {"format": export_format, "timeframe": timeframe, "data": data}
