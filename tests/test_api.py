"""
Tests for the Meter Rail API
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from meter_rail.api.server import AppState, create_app
from meter_rail.billing.rules import UnitRule
from meter_rail.config import MeterSettings
from meter_rail.core.errors import DedupeStoreUnavailableError

API_KEY = "test-key-12345"
TTL = timedelta(hours=1)


@pytest.fixture
def state(clock):
    """Pipeline over an in-memory database with loan rules."""
    settings = MeterSettings(database_url="sqlite:///:memory:", api_key=API_KEY, dedupe_ttl=TTL)
    app_state = AppState(settings, clock=clock)
    app_state.resolver.replace_rules([
        UnitRule(
            prefix="/v1/loans",
            base_units=Decimal("1.00"),
            per_item_units=Decimal("0.02"),
            item_key="periods",
            rule_id="loans",
        ),
    ])
    yield app_state
    app_state.close()


@pytest.fixture
def client(state):
    return TestClient(create_app(state=state))


@pytest.fixture
def headers():
    return {
        "X-API-Key": API_KEY,
        "X-Request-Id": "req-123",
        "Idempotency-Key": "idem-abc",
    }


LOAN_REQUEST = {
    "method": "POST",
    "path": "/v1/loans/amortize",
    "endpoint": "Loans.Amortize",
    "items": {"periods": 36},
}


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["dedupe_scope"] == "request"
        assert data["rules_loaded"] == 1


class TestAuthentication:
    """Test API key authentication."""

    def test_missing_api_key(self, client):
        response = client.post("/units/quote", json=LOAN_REQUEST)

        assert response.status_code == 422

    def test_invalid_api_key(self, client):
        response = client.post("/units/quote", json=LOAN_REQUEST, headers={"X-API-Key": "wrong"})

        assert response.status_code == 401

    def test_valid_api_key(self, client):
        response = client.post("/units/quote", json=LOAN_REQUEST, headers={"X-API-Key": API_KEY})

        assert response.status_code == 200


class TestRecordUsage:
    """Test single-request metering."""

    def test_first_delivery_recorded(self, client, headers):
        response = client.post("/usage/tenant-a", json=LOAN_REQUEST, headers=headers)

        assert response.status_code == 201
        assert response.headers["X-Usage-Units"] == "1.72"
        data = response.json()
        assert data["recorded"] is True
        assert data["event"]["units"] == "1.72"
        assert data["event"]["tenant_id"] == "tenant-a"
        assert data["event"]["request_id"] == "req-123"
        assert data["event"]["idempotency_key"] == "idem-abc"
        assert data["event"]["occurred_at"] == "2025-01-01T12:00:00+00:00"

    def test_duplicate_delivery_not_recorded(self, client, headers):
        client.post("/usage/tenant-a", json=LOAN_REQUEST, headers=headers)

        response = client.post("/usage/tenant-a", json=LOAN_REQUEST, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"recorded": False, "event": None}
        assert "X-Usage-Units" not in response.headers

    def test_same_request_for_other_tenant_recorded(self, client, headers):
        client.post("/usage/tenant-a", json=LOAN_REQUEST, headers=headers)

        response = client.post("/usage/tenant-b", json=LOAN_REQUEST, headers=headers)

        assert response.status_code == 201

    def test_replay_after_ttl_recorded(self, client, headers, clock):
        first = client.post("/usage/tenant-a", json=LOAN_REQUEST, headers=headers).json()
        clock.advance(TTL + timedelta(seconds=1))

        response = client.post("/usage/tenant-a", json=LOAN_REQUEST, headers=headers)

        assert response.status_code == 201
        assert response.json()["event"]["event_id"] != first["event"]["event_id"]

    def test_request_id_required(self, client, headers):
        del headers["X-Request-Id"]

        response = client.post("/usage/tenant-a", json=LOAN_REQUEST, headers=headers)

        assert response.status_code == 422

    def test_dedupe_outage_returns_503(self, client, headers, state):
        async def unavailable(*args, **kwargs):
            raise DedupeStoreUnavailableError("down")

        state.dedupe_store.acquire = unavailable

        response = client.post("/usage/tenant-a", json=LOAN_REQUEST, headers=headers)

        assert response.status_code == 503

    def test_sink_failure_returns_502_and_allows_retry(self, client, headers, state):
        original_write = state.meter.sink.write

        async def failing(events):
            raise IOError("disk full")

        state.meter.sink.write = failing
        response = client.post("/usage/tenant-a", json=LOAN_REQUEST, headers=headers)

        assert response.status_code == 502
        assert response.json()["retry_safe"] is True

        state.meter.sink.write = original_write
        retry = client.post("/usage/tenant-a", json=LOAN_REQUEST, headers=headers)

        assert retry.status_code == 201


class TestBatchUsage:
    """Test batch metering."""

    def test_batch_skips_duplicates(self, client):
        item = dict(LOAN_REQUEST)
        body = {"items": [
            dict(item, request_id="a", idempotency_key="idem-a"),
            dict(item, request_id="b"),
            dict(item, request_id="a", idempotency_key="idem-a"),
        ]}

        response = client.post("/usage/tenant-a/batch", json=body, headers={"X-API-Key": API_KEY})

        assert response.status_code == 200
        data = response.json()
        assert data["recorded"] == 2
        assert [e["request_id"] for e in data["events"]] == ["a", "b"]


class TestEvents:
    """Test event listing."""

    def test_list_events(self, client, headers):
        client.post("/usage/tenant-a", json=LOAN_REQUEST, headers=headers)

        response = client.get("/usage/tenant-a/events", headers={"X-API-Key": API_KEY})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["events"][0]["units"] == "1.72"
        assert data["events"][0]["occurred_at"] == "2025-01-01T12:00:00+00:00"

    def test_invalid_limit(self, client):
        response = client.get("/usage/tenant-a/events?limit=0", headers={"X-API-Key": API_KEY})

        assert response.status_code == 400


class TestQuote:
    """Test unit quotes."""

    def test_quote_does_not_record(self, client, state):
        response = client.post("/units/quote", json=LOAN_REQUEST, headers={"X-API-Key": API_KEY})

        assert response.json() == {"units": "1.72", "reason": "rule:loans", "rule_id": "loans"}
        assert state.events.count() == 0

    def test_quote_without_match(self, client):
        body = dict(LOAN_REQUEST, path="/v1/accounts", endpoint="Accounts.List")

        response = client.post("/units/quote", json=body, headers={"X-API-Key": API_KEY})

        assert response.json()["units"] == "0"
        assert response.json()["rule_id"] is None


class TestMetrics:
    """Test meter counters."""

    def test_metrics_count_recorded_and_duplicates(self, client, headers):
        client.post("/usage/tenant-a", json=LOAN_REQUEST, headers=headers)
        client.post("/usage/tenant-a", json=LOAN_REQUEST, headers=headers)

        response = client.get("/metrics", headers={"X-API-Key": API_KEY})

        data = response.json()
        assert data["meter"]["recorded"] == 1
        assert data["meter"]["duplicates"] == 1
        assert data["events"]["total"] == 1
