"""
Tests for FastAPI Endpoints

Integration tests for the billing trigger surface. The app starts with its
real lifespan against a temporary database; charge collaborators are fakes.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import FakeAnalyticsSource, FakeChargeProvider, RecordingNotifier
from usage_billing.api.server import app, get_orchestrator, is_scheduler_request
from usage_billing.persistence.repository import LedgerRepository


@pytest.fixture
def client(temp_db):
    """Create test client."""
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def use_fakes(make_orchestrator, scenario_analytics, temp_db, notifier):
    """Route billing endpoints to an orchestrator built on fakes."""

    def _install(analytics=None, provider=None):
        orchestrator = make_orchestrator(
            analytics or scenario_analytics,
            provider or FakeChargeProvider(),
            LedgerRepository(temp_db),
            notifier,
        )
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        return orchestrator

    return _install


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_no_auth_required(self, client):
        """Health check should not require authentication."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "sqlite"
        assert "version" in data
        assert "uptime_seconds" in data


class TestAuth:
    """Test API key enforcement."""

    def test_run_requires_auth(self, client):
        response = client.post("/billing/run", json={"date": "2024-01-15"})

        assert response.status_code == 422  # Missing header

    def test_invalid_api_key(self, client):
        response = client.post(
            "/billing/run",
            json={"date": "2024-01-15"},
            headers={"X-API-Key": "wrong-key"},
        )

        assert response.status_code == 401

    def test_records_requires_auth(self, client):
        response = client.get("/billing/records", params={"date": "2024-01-15"}, headers={"X-API-Key": "nope"})

        assert response.status_code == 401


class TestRunEndpoint:
    """Test POST /billing/run."""

    def test_run_for_explicit_date(self, client, auth_headers, use_fakes, notifier):
        use_fakes()

        response = client.post("/billing/run", json={"date": "2024-01-15"}, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["scheduled"] is False
        assert data["billingDetails"]["targetDate"] == "2024-01-15"
        assert data["billingDetails"]["billingRecordsGenerated"] == 3
        assert data["billingDetails"]["totalAmount"] == 25.0
        assert len(notifier.reports) == 1

    def test_run_without_body_uses_default_date(self, client, auth_headers, use_fakes):
        orchestrator = use_fakes()

        response = client.post("/billing/run", headers=auth_headers)

        assert response.status_code == 200
        assert orchestrator.analytics.usage_dates != []

    def test_scheduler_header_marks_run_scheduled(self, client, auth_headers, use_fakes):
        use_fakes()

        response = client.post(
            "/billing/run",
            headers={**auth_headers, "X-CloudScheduler-JobName": "daily-usage-billing"},
        )

        assert response.status_code == 200
        assert response.json()["scheduled"] is True

    def test_skipped_run_is_200(self, client, auth_headers, use_fakes):
        use_fakes(analytics=FakeAnalyticsSource())

        response = client.post("/billing/run", json={"date": "2024-01-15"}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["billingDetails"]["skipped"] is True

    def test_failed_run_is_500(self, client, auth_headers, use_fakes):
        use_fakes(analytics=FakeAnalyticsSource(fail_tenants=True))

        response = client.post("/billing/run", json={"date": "2024-01-15"}, headers=auth_headers)

        assert response.status_code == 500
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "analytics unavailable"
        assert data["billingDetails"]["errorDetails"]["stage"] == "aggregate_usage"

    def test_invalid_date_is_400(self, client, auth_headers, use_fakes):
        use_fakes()

        response = client.post("/billing/run", json={"date": "15/01/2024"}, headers=auth_headers)

        assert response.status_code == 400


class TestPreviewEndpoint:
    """Test POST /billing/preview."""

    def test_preview(self, client, auth_headers, use_fakes, temp_db):
        orchestrator = use_fakes()

        response = client.post("/billing/preview", params={"date": "2024-01-15"}, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["dryRun"] is True
        assert data["message"] == "Test billing completed for date: 2024-01-15"
        assert len(data["sampleRecords"]) == 3
        assert LedgerRepository(temp_db).count() == 0
        assert orchestrator.dispatcher.provider.calls == []


class TestRecordsEndpoint:
    """Test GET /billing/records."""

    def test_history_and_latest(self, client, auth_headers, use_fakes):
        use_fakes()
        client.post("/billing/run", json={"date": "2024-01-15"}, headers=auth_headers)

        history = client.get("/billing/records", params={"date": "2024-01-15"}, headers=auth_headers).json()
        latest = client.get(
            "/billing/records",
            params={"date": "2024-01-15", "latest": "true"},
            headers=auth_headers,
        ).json()

        assert history["total"] == 6
        assert [r["phase"] for r in history["records"][:3]] == ["pending"] * 3
        assert latest["total"] == 3
        assert {r["phase"] for r in latest["records"]} == {"reconciliation"}

    def test_empty_date(self, client, auth_headers):
        response = client.get("/billing/records", params={"date": "2023-01-01"}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["total"] == 0


class TestSchedulerDetection:
    """Test Cloud Scheduler detection."""

    def test_job_header(self):
        assert is_scheduler_request("daily-billing", None) is True

    def test_user_agent(self):
        assert is_scheduler_request(None, "Google-Cloud-Scheduler") is True

    def test_manual(self):
        assert is_scheduler_request(None, "curl/8.0") is False


class TestServerlessEntry:
    """Test the Mangum handler module."""

    def test_handler_wraps_app(self):
        import importlib.util
        import os

        from mangum import Mangum

        path = os.path.join(os.path.dirname(os.path.dirname(__file__)), "api", "index.py")
        spec = importlib.util.spec_from_file_location("serverless_index", path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        assert isinstance(module.handler, Mangum)
        assert module.app is app
