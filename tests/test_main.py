"""Tests for cgm_link/main.py API endpoints."""

from fastapi.testclient import TestClient

from conftest import NOW_MS
from cgm_link.constants import SENSOR_LIFESPAN_MS
from cgm_link.models import GlucoseReading, SensorGeneration, SensorInfo


class TestRootEndpoint:
    """Tests for the root endpoint."""

    def test_root_returns_health(self, test_client):
        """Test root endpoint returns healthy status."""
        response = test_client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "cgm-link"


class TestHealthEndpoint:
    """Tests for the health check endpoint."""

    def test_health_returns_ok(self, test_client):
        response = test_client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert "timestamp" in data

    def test_request_headers(self, test_client):
        """Test every response carries request ID and timing headers."""
        response = test_client.get("/health")
        assert len(response.headers["X-Request-ID"]) > 0
        assert response.headers["X-Response-Time"].endswith("ms")


class TestSessionEndpoint:
    """Tests for the session status endpoint."""

    def test_idle_session(self, test_client):
        response = test_client.get("/session")
        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "idle"
        assert data["connection_state"] == "disconnected"
        assert data["generation"] == "gen3"
        assert data["reconnect_attempt"] == 0

    def test_scanning_session(self, test_client, orchestrator):
        orchestrator.start_scan()
        data = test_client.get("/session").json()
        assert data["state"] == "scanning"
        assert data["connection_state"] == "scanning"


class TestGlucoseEndpoint:
    """Tests for the current glucose endpoint."""

    def test_no_reading_yet(self, test_client):
        """Test 503 is returned before the first reading."""
        response = test_client.get("/glucose/current")
        assert response.status_code == 503
        data = response.json()
        assert data["error"] == "SESSION_4002"
        assert data["message"] == "No glucose reading available"

    def test_current_reading(self, test_client, orchestrator):
        orchestrator.process_glucose_readings([
            GlucoseReading(timestamp_ms=NOW_MS - 60_000, glucose_mg_dl=118.0),
            GlucoseReading(timestamp_ms=NOW_MS, glucose_mg_dl=120.0),
        ])

        response = test_client.get("/glucose/current")

        assert response.status_code == 200
        data = response.json()
        assert data["glucose_mg_dl"] == 120.0
        assert data["timestamp_ms"] == NOW_MS
        assert data["quality"] == "good"


class TestSensorEndpoint:
    """Tests for the sensor metadata endpoint."""

    def test_no_sensor(self, test_client):
        response = test_client.get("/sensor")
        assert response.status_code == 503

    def test_sensor_metadata(self, test_client, orchestrator, patch_info):
        """Test sensor metadata is returned without key material."""
        orchestrator.process_sensor_info(SensorInfo(
            serial_number="3MH0012345",
            start_time_ms=NOW_MS,
            expiry_time_ms=NOW_MS + SENSOR_LIFESPAN_MS,
            generation=SensorGeneration.GEN3,
            patch_info=patch_info,
        ))

        response = test_client.get("/sensor")

        assert response.status_code == 200
        data = response.json()
        assert data["serial_number"] == "3MH0012345"
        assert data["generation"] == "gen3"
        assert data["expiry_time_ms"] == NOW_MS + SENSOR_LIFESPAN_MS
        assert data["remaining_ms"] >= 0
        assert "patch_info" not in data


class TestNoSession:
    """Tests for requests before an orchestrator is registered."""

    def test_session_not_registered(self):
        """Test endpoints report 503 without a session."""
        from cgm_link.main import app
        from cgm_link.session import reset_session

        reset_session()
        client = TestClient(app)

        response = client.get("/session")

        assert response.status_code == 503
        assert response.json()["error"] == "SESSION_4002"

    def test_health_without_session(self):
        from cgm_link.main import app

        client = TestClient(app)
        assert client.get("/health").status_code == 200


class TestAppSettings:
    """Tests for settings applied to the application."""

    def test_debug_follows_settings(self):
        """Test the app debug flag comes from settings."""
        from cgm_link.config import get_settings
        from cgm_link.main import app

        assert app.debug is get_settings().debug
