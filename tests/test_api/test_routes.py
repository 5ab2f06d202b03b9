"""Tests for the FastAPI application factory and health routes."""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from innsync.api.routes import OPENAPI_TAGS, create_app, error_body
from innsync.errors import ConflictUnresolved, NotFound, PersistenceError, ValidationRejected
from innsync.webhooks.dispatcher import set_delivery_engine

# ============================================================================
# Fixtures
# ============================================================================


def engine_status(running: bool) -> dict:
    return {
        "running": running,
        "partitions": 2,
        "queue_depths": [3, 0],
        "queued": 3,
        "in_flight": 1,
        "delivered": 0,
        "failed": 0,
        "dropped": 0,
        "retried": 0,
    }


@pytest.fixture
def engine():
    """Set a mock delivery engine."""
    mock = MagicMock()
    mock.status.return_value = engine_status(running=False)
    set_delivery_engine(mock)
    yield mock
    set_delivery_engine(None)


@pytest.fixture
def app(engine):  # noqa: ARG001
    """Create test FastAPI app with routes raising each error type."""
    app = create_app(title="Test API", version="0.1.0")

    @app.get("/raise/{kind}")
    async def raise_error(kind: str):
        errors = {
            "validation": ValidationRejected("bad input"),
            "missing": NotFound("Booking B9 not found"),
            "conflict": ConflictUnresolved("gave up"),
            "storage": PersistenceError("redis down"),
        }
        if kind in errors:
            raise errors[kind]
        raise RuntimeError("boom")

    return app


@pytest.fixture
def client(app):
    """Create test client."""
    return TestClient(app, raise_server_exceptions=False)


# ============================================================================
# App Factory Tests
# ============================================================================


class TestCreateApp:
    """Tests for create_app."""

    def test_metadata(self, app):
        """Test title, version and tags."""
        assert app.title == "Test API"
        assert app.version == "0.1.0"
        assert app.openapi_tags == OPENAPI_TAGS

    def test_routers_registered(self, app):
        """Test amendment and endpoint routers are included."""
        paths = app.openapi()["paths"]

        assert "/webhooks/ota/amendments" in paths
        assert "/ota/amendments/pending" in paths
        assert "/webhook-endpoints" in paths
        assert "/health" in paths

    def test_error_body(self):
        """Test the standard error body."""
        assert error_body("nope") == {"status": "error", "message": "nope"}
        assert error_body("nope", errors=[]) == {"status": "error", "message": "nope", "errors": []}


# ============================================================================
# Health Tests
# ============================================================================


class TestHealth:
    """Tests for health endpoints."""

    def test_health(self, client):
        """Test liveness."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "timestamp" in response.json()

    def test_not_ready(self, client):
        """Test readiness fails while workers are stopped."""
        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_ready(self, client, engine):
        """Test readiness reports queue depth once running."""
        engine.status.return_value = engine_status(running=True)

        response = client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["checks"]["delivery_engine"] == {"running": True, "queued": 3, "in_flight": 1}


# ============================================================================
# Error Rendering Tests
# ============================================================================


class TestErrorRendering:
    """Tests for error responses."""

    @pytest.mark.parametrize(
        ("kind", "status_code", "message"),
        [
            ("validation", 400, "bad input"),
            ("missing", 404, "Booking B9 not found"),
            ("conflict", 409, "gave up"),
            ("storage", 503, "redis down"),
        ],
    )
    def test_innsync_errors(self, client, kind, status_code, message):
        """Test each error type maps to its status code."""
        response = client.get(f"/raise/{kind}")

        assert response.status_code == status_code
        assert response.json() == {"status": "error", "message": message}

    def test_unhandled_error(self, client):
        """Test unexpected errors return a generic 500."""
        response = client.get("/raise/other")

        assert response.status_code == 500
        assert response.json() == {"status": "error", "message": "Internal server error"}

    def test_unknown_route(self, client):
        """Test unknown routes use the error body."""
        response = client.get("/nowhere")

        assert response.status_code == 404
        assert response.json() == {"status": "error", "message": "Not Found"}

    def test_request_validation(self, client):
        """Test malformed requests return 400 with details."""
        response = client.post("/webhooks/ota/amendments", json={"bookingId": "B1"})

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid request"
        assert response.json()["errors"]
