"""
Tests for Sweeps and Health API
"""

import pytest
from fastapi import status
from fastapi.testclient import TestClient


class TestSweeps:

    @pytest.mark.api
    def test_reminder_sweep(self, client: TestClient, morning_schedule, transport):
        response = client.post("/api/v1/sweeps/reminders", json={"now": "2024-06-03T07:50:00"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["name"] == "reminder_sweep"
        assert data["succeeded"] == 1
        assert len(transport.pushes) == 1

    @pytest.mark.api
    def test_missed_dose_sweep(self, client: TestClient, morning_schedule, caregiver, transport):
        response = client.post("/api/v1/sweeps/missed-doses", json={"now": "2024-06-03T08:31:00"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["succeeded"] == 1
        assert data["counters"]["materialized"] == 1
        assert data["counters"]["legs_sent"] == 2

        today = client.get("/api/v1/doses/today", params={"user_id": 1}).json()
        assert today["doses"][0]["status"] == "missed"

    @pytest.mark.api
    def test_sweep_without_body_uses_engine_clock(self, client: TestClient, morning_schedule):
        # Engine clock sits at 07:00, outside the reminder window
        response = client.post("/api/v1/sweeps/reminders")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["started_at"] == "2024-06-03T07:00:00"
        assert response.json()["examined"] == 0

    @pytest.mark.api
    def test_weekly_rollover(self, client: TestClient, weekly_challenges, morning_schedule):
        client.get("/api/v1/challenges", params={"user_id": 1})

        response = client.post("/api/v1/sweeps/weekly-rollover", json={"now": "2024-06-10T00:05:00"})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["succeeded"] == 1


class TestHealth:

    @pytest.mark.api
    def test_root(self, client: TestClient):
        response = client.get("/")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "healthy"

    @pytest.mark.api
    def test_health(self, client: TestClient):
        data = client.get("/health").json()

        assert data["checks"]["database"]["type"] == "sqlite"
        assert data["checks"]["scheduler"]["enabled"] is False
        assert data["config"]["missed_grace_minutes"] == 30
