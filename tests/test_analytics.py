"""
Tests for route analytics: periods, reports, metrics and exports.
"""

import asyncio
from datetime import date, datetime, timezone

import pytest

from field_routing.errors import InvalidRequest, NotFound
from field_routing.schemas import OptimizeRequest, ProgressUpdateRequest

from conftest import DAY


@pytest.fixture
def completed_route(seeded):
    """Run the seeded day to completion: 45 and 60 minutes on site."""
    service, team, tasks = seeded
    now = [datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)]
    service.tracker.clock = lambda: now[0]

    route = asyncio.run(service.optimize_routes("biz", OptimizeRequest(date=DAY))).routes[0]
    steps = [
        (datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc), route.stops[0].task_id, "started"),
        (datetime(2025, 6, 2, 9, 45, tzinfo=timezone.utc), route.stops[0].task_id, "completed"),
        (datetime(2025, 6, 2, 9, 45, tzinfo=timezone.utc), route.stops[1].task_id, "started"),
        (datetime(2025, 6, 2, 10, 45, tzinfo=timezone.utc), route.stops[1].task_id, "completed"),
    ]
    for at, task_id, status in steps:
        now[0] = at
        asyncio.run(service.update_route_progress(
            "biz", route.id, ProgressUpdateRequest(task_id=task_id, status=status)))
    return service, route


def test_timeframes_are_validated(service):
    for bad in ("45d", "1y", ""):
        with pytest.raises(InvalidRequest, match="Invalid timeframe"):
            service.get_performance_metrics("biz", bad)
    with pytest.raises(NotFound):
        service.get_performance_metrics("nobody", "30d")


def test_report_ranges(service):
    analytics = service.analytics

    assert analytics.report_range("daily") == (date(2025, 6, 1), date(2025, 6, 2))
    assert analytics.report_range("weekly") == (date(2025, 5, 26), date(2025, 6, 2))
    assert analytics.report_range("monthly") == (date(2025, 5, 2), date(2025, 6, 2))
    assert analytics.report_range("custom", "2025-01-01", "2025-02-01") == (date(2025, 1, 1), date(2025, 2, 1))

    with pytest.raises(InvalidRequest, match="require start_date"):
        analytics.report_range("custom")
    with pytest.raises(InvalidRequest, match="before end_date"):
        analytics.report_range("custom", "2025-02-01", "2025-02-01")
    with pytest.raises(InvalidRequest, match="one year"):
        analytics.report_range("custom", "2023-01-01", "2025-01-01")
    with pytest.raises(InvalidRequest):
        analytics.report_range("fortnightly")


def test_empty_report(service):
    report = service.generate_route_report("biz", "weekly")

    assert report["metrics"]["total_routes"] == 0
    assert report["metrics"]["efficiency"] == 0
    assert report["recommendations"][0].startswith("Route optimization needed")
    assert report["recommendations"][-1] == "Continue monitoring performance metrics weekly"
    assert report["report_id"] is not None


def test_report_after_completed_route(completed_route):
    service, route = completed_route

    report = service.generate_route_report("biz", "weekly")

    metrics = report["metrics"]
    assert metrics["completed_routes"] == 1
    assert metrics["completed_tasks"] == metrics["total_tasks"] == 2
    assert metrics["total_time"] == 105
    assert metrics["efficiency"] == 86
    assert [t["tasks_completed"] for t in report["team_performance"]] == [2]


def test_performance_and_savings(completed_route):
    service, _ = completed_route

    metrics = service.get_performance_metrics("biz", "30d")
    assert metrics["overview"]["total_routes"] == 1
    assert metrics["efficiency_metrics"]["task_completion_rate"] == 100
    assert metrics["time_metrics"]["avg_task_time"] == 52

    savings = service.calculate_cost_savings("biz", "30d")
    assert savings["period_comparison"]["previous"]["total_cost"] == 0
    assert savings["period_comparison"]["current"]["total_cost"] > 0
    assert savings["period_comparison"]["savings"]["total_savings"] == 0


def test_efficiency_trends_weekly_points(service):
    trends = service.get_efficiency_trends("biz", "90d")

    assert len(trends["data_points"]) == 13
    assert trends["trends"] == {"efficiency": "stable", "route_count": "stable", "costs": "stable"}
    assert 60 <= trends["forecasts"]["next_month"]["expected_efficiency"] <= 95


def test_exports(completed_route):
    service, _ = completed_route

    csv = service.export_analytics("biz", "csv", "30d")
    assert csv["format"] == "csv"
    assert csv["data"].splitlines()[0] == "metric,value,category"
    assert "Total Routes,1,Overview" in csv["data"]

    as_json = service.export_analytics("biz", "json", "7d")
    assert as_json["data"]["business_id"] == "biz"
    assert as_json["data"]["as_of"] == DAY

    with pytest.raises(InvalidRequest):
        service.export_analytics("biz", "xml", "30d")
