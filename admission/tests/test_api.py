"""
Incident Admission Service - API Unit Tests

Tests for the FastAPI endpoints using TestClient.
Run with: pytest admission/tests/test_api.py -v
"""

import pytest
from fastapi.testclient import TestClient

from admission.api import app, app_state


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def live(pipeline):
    """Install a test pipeline as the application state."""
    app_state.pipeline = pipeline
    yield pipeline
    app_state.pipeline = None


CARDIAC = {
    "submission_id": "api-0001",
    "description": "unconscious, cardiac arrest",
    "patient_status": "unconscious",
    "incident_type": "heart-attack",
    "age_range": "51+",
    "transport_mode": "ambulance",
    "location": {"latitude": 18.0179, "longitude": -76.8099},
    "submitted_at": "2024-06-12T12:00:00Z",
}

MINOR = {
    "incident_type": "fall",
    "patient_status": "conscious",
    "age_range": "31-50",
    "transport_mode": "self-carry",
    "submitted_at": "2024-06-12T12:00:00Z",
}


class TestHealthEndpoint:
    """Tests for the /health endpoint."""

    def test_health_check_returns_valid_structure(self, client, live):
        """Health endpoint should report every component."""
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["pipeline"]["status"] == "ok"
        assert data["checks"]["facilities"]["active"] == 14
        assert data["checks"]["rules"]["version"] == "2024.06.1"

    def test_health_check_without_pipeline(self, client):
        """Health should be unhealthy before the pipeline is initialized."""
        app_state.pipeline = None
        data = client.get("/health").json()

        assert data["status"] == "unhealthy"
        assert data["checks"]["pipeline"]["status"] == "error"


class TestSubmissionEndpoint:
    """Tests for POST /submissions."""

    def test_submit_returns_201(self, client, live):
        response = client.post("/submissions", json=CARDIAC)
        assert response.status_code == 201

        data = response.json()
        assert data["triage_result"]["tier"] == "Critical"
        assert data["triage_result"]["method"] == "rule-match"
        assert data["assigned_facility"]["facility_id"] == "HOSP003"
        assert data["queue_position"] == 1
        assert data["needs_manual_review"] is False

    def test_submission_id_is_generated(self, client, live):
        response = client.post("/submissions", json=MINOR)
        assert response.status_code == 201
        assert response.json()["triage_result"]["submission_id"]

    def test_missing_location_needs_review(self, client, live):
        data = client.post("/submissions", json=MINOR).json()
        assert data["needs_manual_review"] is True
        assert data["assigned_facility"]["location_status"] == "unknown"

    def test_invalid_latitude_rejected(self, client, live):
        """Out-of-range coordinates are rejected before reaching the pipeline."""
        payload = dict(MINOR, location={"latitude": 123.0, "longitude": -76.8})
        response = client.post("/submissions", json=payload)
        assert response.status_code == 422

    def test_unknown_forced_facility(self, client, live):
        response = client.post("/submissions", json=dict(MINOR, facility_id="HOSP999"))
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "facility_not_found"

    def test_service_not_ready(self, client):
        """Submissions return 503 while the pipeline is unavailable."""
        app_state.pipeline = None
        response = client.post("/submissions", json=MINOR)

        assert response.status_code == 503
        assert response.json()["detail"]["error"] == "service_not_ready"


class TestQueueEndpoints:
    """Tests for queue reads and staff case operations."""

    def test_get_queue(self, client, live):
        client.post("/submissions", json=CARDIAC)
        response = client.get("/queues/HOSP003")
        assert response.status_code == 200

        data = response.json()
        assert data["facility_name"] == "University Hospital of the West Indies"
        assert data["count"] == 1
        assert data["entries"][0]["submission_id"] == "api-0001"
        assert data["entries"][0]["status"] == "Queued"

    def test_get_unknown_queue(self, client, live):
        response = client.get("/queues/HOSP999")
        assert response.status_code == 404

    def test_get_queue_with_history(self, client, live):
        client.post("/submissions", json=CARDIAC)
        client.post("/cases/api-0001/complete")

        assert client.get("/queues/HOSP003").json()["count"] == 0
        data = client.get("/queues/HOSP003", params={"include_history": True}).json()
        assert data["count"] == 1
        assert data["entries"][0]["status"] == "Completed"
        assert data["entries"][0]["closed_at"] is not None

    def test_queue_statistics(self, client, live):
        client.post("/submissions", json=CARDIAC)
        client.post("/submissions", json=dict(MINOR, submission_id="api-0002", facility_id="HOSP003"))

        response = client.get("/queue-statistics")
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        row = data["statistics"][0]
        assert row["facility_id"] == "HOSP003"
        assert row["waiting"] == 2
        assert row["min_wait_minutes"] <= row["average_wait_minutes"] <= row["max_wait_minutes"]

    def test_queue_statistics_for_one_facility(self, client, live):
        data = client.get("/queue-statistics", params={"facility_id": "HOSP001"}).json()
        assert data["statistics"][0]["waiting"] == 0
        assert data["statistics"][0]["average_wait_minutes"] is None

        assert client.get("/queue-statistics", params={"facility_id": "HOSP999"}).status_code == 404

    def test_start_and_complete(self, client, live):
        client.post("/submissions", json=CARDIAC)

        started = client.post("/cases/api-0001/start")
        assert started.status_code == 200
        assert started.json()["status"] == "InTreatment"

        completed = client.post("/cases/api-0001/complete")
        assert completed.status_code == 200
        assert completed.json()["status"] == "Completed"

        assert client.get("/queues/HOSP003").json()["count"] == 0

    def test_complete_with_outcome(self, client, live):
        client.post("/submissions", json=CARDIAC)
        response = client.post("/cases/api-0001/complete", json={"outcome": "transferred", "actor": "dr.brown"})

        assert response.status_code == 200
        assert response.json()["status"] == "Removed"
        assert response.json()["removal_reason"] == "transferred"

    def test_complete_unknown_case(self, client, live):
        response = client.post("/cases/ghost/complete")
        assert response.status_code == 404
        assert response.json()["detail"] == {
            "error": "entry_not_found",
            "message": "No active queue entry for submission: ghost",
            "submission_id": "ghost",
        }

    def test_move_rejected(self, client, live):
        client.post("/submissions", json=CARDIAC)
        response = client.post("/cases/api-0001/move", json={"direction": "up"})

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "move_rejected"

    def test_move_bad_direction(self, client, live):
        client.post("/submissions", json=CARDIAC)
        response = client.post("/cases/api-0001/move", json={"direction": "left"})
        assert response.status_code == 422


class TestTriageEndpoints:
    """Tests for staff overrides and triage history."""

    def test_override_and_history(self, client, live):
        client.post("/submissions", json=CARDIAC)
        response = client.post("/cases/api-0001/override", json={
            "tier": "High",
            "actor": "dr.brown",
            "reason": "Rhythm restored on scene",
            "recompute": True,
        })
        assert response.status_code == 200

        data = response.json()
        assert data["triage_result"]["version"] == 2
        assert data["triage_result"]["method"] == "staff-override"
        assert data["queue_entry"]["tier"] == "High"
        assert data["recomputed"] is True

        history = client.get("/cases/api-0001/triage").json()
        assert [r["version"] for r in history] == [1, 2]

    def test_resubmission_returns_latest_version(self, client, live):
        client.post("/submissions", json=CARDIAC)
        client.post("/cases/api-0001/override", json={
            "tier": "High",
            "actor": "dr.brown",
            "reason": "Rhythm restored on scene",
        })

        again = client.post("/submissions", json=CARDIAC)
        assert again.status_code == 201
        assert again.json()["triage_result"]["version"] == 2
        assert again.json()["triage_result"]["tier"] == "High"

        history = client.get("/cases/api-0001/triage").json()
        assert [r["version"] for r in history] == [1, 2]

    def test_override_invalid_tier(self, client, live):
        client.post("/submissions", json=CARDIAC)
        response = client.post("/cases/api-0001/override", json={
            "tier": "Urgentish",
            "actor": "dr.brown",
            "reason": "typo",
        })
        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "validation_error"

    def test_override_requires_reason(self, client, live):
        client.post("/submissions", json=CARDIAC)
        response = client.post("/cases/api-0001/override", json={"tier": "High", "actor": "dr.brown"})
        assert response.status_code == 422

    def test_history_for_unknown_submission(self, client, live):
        assert client.get("/cases/ghost/triage").status_code == 404


class TestRetractEndpoint:
    """Tests for POST /submissions/{id}/retract."""

    def test_retract_then_resubmit_conflicts(self, client, live):
        client.post("/submissions", json=CARDIAC)

        response = client.post("/submissions/api-0001/retract")
        assert response.status_code == 200
        assert response.json()["queue_entry"]["removal_reason"] == "retracted"

        again = client.post("/submissions", json=CARDIAC)
        assert again.status_code == 409
        assert again.json()["detail"]["error"] == "submission_retracted"


class TestDirectoryEndpoints:
    """Tests for /facilities and /stats."""

    def test_list_facilities(self, client, live):
        data = client.get("/facilities").json()
        assert data["count"] == 14
        assert data["facilities"][0]["facility_id"] == "HOSP001"

    def test_nearby_facilities(self, client, live):
        response = client.get("/facilities/nearby", params={
            "latitude": 18.0179, "longitude": -76.8099, "radius_km": 5,
        })
        assert response.status_code == 200

        data = response.json()
        assert data["count"] == 3
        assert [f["facility_id"] for f in data["facilities"]] == ["HOSP009", "HOSP004", "HOSP005"]
        assert all(f["distance_km"] <= 5 for f in data["facilities"])

    def test_nearby_facilities_validates_query(self, client, live):
        assert client.get("/facilities/nearby", params={"latitude": 95, "longitude": -76.8}).status_code == 422
        assert client.get("/facilities/nearby", params={
            "latitude": 18.0, "longitude": -76.8, "radius_km": 0,
        }).status_code == 422

    def test_stats(self, client, live):
        client.post("/submissions", json=CARDIAC)
        data = client.get("/stats").json()

        assert data["pipeline"]["submitted"] == 1
        assert data["queues"]["active_entries"] == 1
