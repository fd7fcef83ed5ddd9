"""
HTTP surface tests: tagged bodies and error-to-status mapping.
"""

import pytest
from fastapi.testclient import TestClient

from field_routing.api import create_app

from conftest import DAY


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


def seed(client):
    team = client.post("/businesses/biz/teams", json={
        "name": "Crew", "current_lat": 40.0, "current_lon": -75.0, "skills": ["hvac"],
    })
    assert team.status_code == 201
    for n, lat in enumerate((40.01, 40.02), start=1):
        task = client.post("/businesses/biz/tasks", json={
            "name": f"Job {n}", "address": f"{n} Main St", "lat": lat, "lon": -75.0,
            "scheduled_date": DAY, "estimated_duration_minutes": 30,
        })
        assert task.status_code == 201
    return team.json()["data"]["id"]


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_optimize_and_read_back(client):
    seed(client)

    response = client.post("/businesses/biz/routes/optimize", json={"date": DAY})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert len(body["data"]["routes"]) == 1
    assert body["data"]["summary"]["tasks_assigned"] == 2

    routes = client.get("/businesses/biz/routes", params={"date": DAY}).json()
    assert routes["success"] is True
    assert [r["id"] for r in routes["data"]] == [body["data"]["routes"][0]["id"]]


def test_empty_selector_is_bad_request(client):
    response = client.post("/businesses/biz/routes/optimize", json={})

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "error": {"code": "invalid_request", "message": "Provide task_ids, a date or month, or team_ids"},
    }


def test_malformed_body_is_bad_request(client):
    response = client.post("/businesses/biz/routes/optimize", json={"date": "2025-6-2"})

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "invalid_request"
    assert "date" in error["message"]


def test_missing_resources_are_not_found(client):
    missing_routes = client.get("/businesses/biz/routes", params={"date": DAY})
    assert missing_routes.status_code == 404
    assert missing_routes.json()["error"]["code"] == "not_found"

    missing_business = client.get("/businesses/nobody/analytics/performance")
    assert missing_business.status_code == 404

    missing_route = client.get("/businesses/biz/routes/9999/progress")
    assert missing_route.status_code == 404


def test_invalid_transition_is_conflict(client):
    seed(client)
    route = client.post("/businesses/biz/routes/optimize", json={"date": DAY}).json()["data"]["routes"][0]

    response = client.post(f"/businesses/biz/routes/{route['id']}/progress", json={
        "task_id": route["stops"][0]["task_id"], "status": "completed",
    })

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "invalid_transition"


def test_constraint_violation_lists_violations(client):
    seed(client)
    route = client.post("/businesses/biz/routes/optimize", json={"date": DAY}).json()["data"]["routes"][0]
    other = client.post("/businesses/biz/teams", json={"name": "Tiny", "max_daily_tasks": 1}).json()["data"]

    response = client.post(f"/businesses/biz/routes/{route['id']}/assign", json={"team_id": other["id"]})

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "constraint_violation"
    assert "exceeds maxDailyTasks" in [v["violation_type"] for v in error["violations"]]


def test_analytics_timeframe_checked(client):
    response = client.get("/businesses/biz/analytics/trends", params={"timeframe": "45d"})

    assert response.status_code == 400
    assert "Invalid timeframe" in response.json()["error"]["message"]

    export = client.get("/businesses/biz/analytics/export", params={"format": "json", "timeframe": "7d"})
    assert export.status_code == 200
    assert export.json()["data"]["format"] == "json"
