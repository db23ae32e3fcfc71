"""Shared fixtures for API tests."""

import os
import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch

from dispatch.api.main import create_app
from dispatch.api.deps import get_queue


# --- Test API Key Fixture ---
@pytest.fixture
def test_api_key():
    """Valid API key for testing."""
    return "test-api-key"

# --- Mock Settings Fixture ---
@pytest.fixture
def mock_settings(test_api_key):
    """Mock settings for API tests."""
    return {
        "database_url": "sqlite:///:memory:",
        "api_keys": [test_api_key],
        "sync_interval_ms": 30000,
        "max_retries": 3,
        "retention_days": 7,
        "geofence_radius_m": 100.0,
    }

# --- Test Client Fixture ---
@pytest.fixture
def client(mock_settings, test_api_key, queue):
    """
    Create a FastAPI TestClient with mocked settings and the queue
    bound to the per-test in-memory database.
    """
    os.environ["API_KEYS"] = test_api_key

    with patch("dispatch.api.deps.get_settings", return_value=mock_settings):
        app = create_app()
        app.dependency_overrides[get_queue] = lambda: queue

        with TestClient(app) as test_client:
            yield test_client

        app.dependency_overrides = {}

@pytest.fixture
def headers(test_api_key):
    return {"api-key": test_api_key}

@pytest.fixture
def stop_payloads():
    """Two deliveries east of the start, listed far one first."""
    return [
        {"id": "far", "type": "delivery", "clinic_id": "c1", "coordinates": {"lat": 0, "lng": 0.05}},
        {"id": "near", "type": "delivery", "clinic_id": "c2", "coordinates": {"lat": 0, "lng": 0.01}},
    ]
