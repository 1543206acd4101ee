"""
Unit tests for the HTTP trigger surface.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import MARKETPLACE_ID, FakeSpApiClient, aware, make_item, make_order
from pnl_sync.api.main import create_app
from pnl_sync.clients.base import APIError
from pnl_sync.core.config import settings
from pnl_sync.sync.pipeline import SyncPipeline


@pytest.fixture
def fake_client() -> FakeSpApiClient:
    return FakeSpApiClient(
        order_pages=[[make_order("O-1", "2024-05-09T10:00:00Z")]],
        order_items={"O-1": [[make_item("SKU-A", price="10.00")]]},
    )


@pytest.fixture
def client(session_factory, sp_settings, fast_transport, fake_client) -> TestClient:
    pipeline = SyncPipeline(
        session_factory,
        client_factory=lambda config: fake_client,
        transport=fast_transport,
        source_settings=sp_settings,
        clock=lambda: aware(2024, 5, 10, 12, 0, 0),
    )
    return TestClient(create_app(session_factory=session_factory, pipeline=pipeline))


class TestHealth:
    """Test the health endpoint."""

    def test_health(self, client) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestSyncTriggers:
    """Test the sync trigger endpoints."""

    def test_orders_sync(self, client) -> None:
        """A valid trigger returns the run result and echoes the request id."""
        response = client.post(
            "/api/sync/orders", json={"days": 3}, headers={"x-request-id": "req-42"}
        )

        assert response.status_code == 200
        assert response.headers["x-request-id"] == "req-42"
        body = response.json()
        assert body["ok"] is True
        assert body["request_id"] == "req-42"
        assert body["result"]["orders"]["orders_upserted"] == 1
        assert body["result"]["diagnostics"]["truncation_flags"]["orders_page_limit_hit"] is False

    def test_camel_case_body(self, client) -> None:
        """camelCase limits are accepted."""
        response = client.post("/api/sync/orders", json={"days": 3, "maxOrdersWithItems": 1, "dryRun": True})

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["dry_run"] is True
        assert result["diagnostics"]["limits_applied"]["max_orders_with_items"] == 1

    def test_empty_body_uses_defaults(self, client) -> None:
        """A trigger without body runs with default parameters."""
        response = client.post("/api/sync/finances")

        assert response.status_code == 200
        assert response.json()["result"]["finances"]["events_upserted"] == 0

    def test_invalid_parameters(self, client) -> None:
        """Out-of-range values are a validation error."""
        response = client.post("/api/sync/run", json={"days": 0})

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert response.headers["x-request-id"] == body["request_id"]

    def test_config_error(self, session_factory, sp_settings, fast_transport, fake_client) -> None:
        """Missing credentials map to a config error."""
        incomplete = sp_settings.model_copy(
            update={"sp_api_client_id": None, "lwa_client_id": None}
        )
        pipeline = SyncPipeline(
            session_factory,
            client_factory=lambda config: fake_client,
            transport=fast_transport,
            source_settings=incomplete,
        )
        client = TestClient(create_app(session_factory=session_factory, pipeline=pipeline))

        response = client.post("/api/sync/orders", json={"days": 3})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "CONFIG_ERROR"

    def test_upstream_failure(self, client, fake_client) -> None:
        """An upstream failure is an internal error."""
        fake_client.orders_error = APIError("HTTP 400: InvalidInput", status_code=400)

        response = client.post("/api/sync/orders", json={"days": 3})

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "INTERNAL_ERROR",
            "message": "HTTP 400: InvalidInput",
        }

    def test_daily_summary(self, client) -> None:
        response = client.post("/api/sync/daily-summary", json={"days": 2, "marketplaceId": MARKETPLACE_ID})

        assert response.status_code == 200
        assert response.json()["result"]["summary"]["summaries_written"] == 2


class TestSyncStatusEndpoint:
    """Test the status endpoint."""

    def test_status_after_runs(self, client) -> None:
        """Finished runs appear newest first."""
        client.post("/api/sync/orders", json={"days": 3})
        client.post("/api/sync/run", json={"days": 0})

        response = client.get("/api/sync/status", params={"limit": 5})

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert len(body["runs"]) == 1
        assert body["runs"][0]["status"] == "success"
        assert body["last_success_at"] is not None
        assert body["last_failure_at"] is None

    def test_limit_bounds(self, client) -> None:
        assert client.get("/api/sync/status", params={"limit": 0}).status_code == 422


class TestDailySummariesEndpoint:
    """Test reading stored daily summaries."""

    def test_rows_after_recompute(self, client) -> None:
        """Recomputed days are listed oldest first with money as strings."""
        client.post("/api/sync/orders", json={"days": 3})
        client.post("/api/sync/daily-summary", json={"days": 2, "marketplaceId": MARKETPLACE_ID})

        response = client.get(
            "/api/daily-summaries",
            params={"marketplaceId": MARKETPLACE_ID, "days": 2, "end": "2024-05-10"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["start_date"] == "2024-05-09"
        assert [row["date"] for row in body["summaries"]] == ["2024-05-09", "2024-05-10"]
        assert body["summaries"][0]["orders_count"] == 1
        assert body["summaries"][1]["orders_count"] == 0
        assert isinstance(body["summaries"][0]["net_profit"], str)

    def test_empty_window(self, client) -> None:
        response = client.get(
            "/api/daily-summaries",
            params={"marketplaceId": MARKETPLACE_ID, "end": "2023-01-01"},
        )

        assert response.status_code == 200
        assert response.json()["summaries"] == []

    def test_missing_marketplace(self, client, monkeypatch) -> None:
        """Without an explicit or configured marketplace the read is a config error."""
        monkeypatch.setattr(settings, "sp_api_marketplace_id", None)

        response = client.get("/api/daily-summaries")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "CONFIG_ERROR"
