from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime

from fastapi.testclient import TestClient

from app import create_app
from schedule_optimizer.domain.models import TimeSlot
from schedule_optimizer.domain.schedule import ScheduleEntity
from schedule_optimizer.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str):
    return replace(get_settings(), database_path=tmp_path / filename)


def _client(tmp_path, filename: str) -> TestClient:
    return TestClient(create_app(_build_test_settings(tmp_path, filename)))


def test_optimize_demo_day_end_to_end(tmp_path):
    with _client(tmp_path, "api_flow.db") as client:
        analysis = client.get("/schedules/demo-day/analysis")
        assert analysis.status_code == 200
        assert [item["id"] for item in analysis.json()["conflicts"]] == ["double_booking_S1_S2"]

        response = client.post("/optimize_schedule", json={"schedule_id": "demo-day"})
        assert response.status_code == 200
        body = response.json()

        assert [item["type"] for item in body["resolved_conflicts"]] == ["double_booking"]
        assert body["remaining_conflicts"] == []
        assert [item["id"] for item in body["applied_suggestions"]] == ["gap_S3", "gap_S4"]
        assert body["estimated_time_saved"] == 75
        assert body["efficiency_improvement"] > 0
        assert body["recommendations"][0] == "Applied 2 optimization suggestions"

        original = {slot["id"]: slot for slot in body["original_schedule"]["time_slots"]}
        assert original["S1"]["therapist_id"] == "T1"

        stored = client.get("/schedules/demo-day")
        assert stored.status_code == 200
        slots = {slot["id"]: slot for slot in stored.json()["time_slots"]}
        assert slots["S1"]["therapist_id"] == "T2"
        assert slots["S3"]["start_time"].endswith("09:30:00")


def test_list_schedules_by_date(tmp_path):
    today = datetime.now().date().isoformat()
    with _client(tmp_path, "api_list.db") as client:
        response = client.get("/schedules", params={"start_date": today, "end_date": today})
        assert response.status_code == 200
        assert [item["id"] for item in response.json()] == ["demo-day"]

        reversed_range = client.get(
            "/schedules",
            params={"start_date": today, "end_date": "2000-01-01"},
        )
        assert reversed_range.status_code == 400


def test_unknown_schedule_returns_404(tmp_path):
    with _client(tmp_path, "api_missing.db") as client:
        assert client.post("/optimize_schedule", json={"schedule_id": "nope"}).status_code == 404
        assert client.get("/schedules/nope").status_code == 404
        assert client.get("/schedules/nope/analysis").status_code == 404


def test_malformed_schedule_returns_422(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_invalid.db"))
    with TestClient(app) as client:
        app.state.repository.save(
            ScheduleEntity(
                id="broken",
                date=date(2026, 3, 2),
                time_slots=[
                    TimeSlot(
                        "S1",
                        datetime(2026, 3, 2, 10, 0),
                        datetime(2026, 3, 2, 9, 0),
                        "T1",
                        "R1",
                        "P1",
                    )
                ],
            )
        )

        response = client.post("/optimize_schedule", json={"schedule_id": "broken"})
        assert response.status_code == 422
        assert "S1" in response.json()["detail"]


def test_request_payload_is_validated(tmp_path):
    with _client(tmp_path, "api_payload.db") as client:
        response = client.post(
            "/optimize_schedule",
            json={
                "schedule_id": "demo-day",
                "therapist_preferences": {
                    "preferred_start_time": "17:00",
                    "preferred_end_time": "09:00",
                },
            },
        )
        assert response.status_code == 422

        response = client.post(
            "/optimize_schedule",
            json={"schedule_id": "demo-day", "room_constraints": {"room_capacity": {"R1": -1}}},
        )
        assert response.status_code == 422
