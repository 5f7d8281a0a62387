"""
API tests for the Site Ledger HTTP surface

Tests cover:
1. Budget, spend, reconcile and carry into the next day
2. Error mapping (404, 409, 400, 503)
3. History endpoints
"""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from siteledger.api import create_app
from siteledger.service import CarryforwardService
from siteledger.store import InMemoryLedgerStore, StoreUnavailable


SITE_ID = "a1b2c3d4-0000-4000-8000-000000000001"
MANAGER_ID = "550e8400-e29b-41d4-a716-446655440000"
UNKNOWN_SITE_ID = "00000000-0000-0000-0000-000000000000"


@pytest.fixture
def client():
    app = create_app(CarryforwardService(InMemoryLedgerStore()))
    return TestClient(app)


class UnavailableStore(InMemoryLedgerStore):
    def query_transactions(self, *args, **kwargs):
        raise StoreUnavailable("database unreachable")

    def query_carryforwards(self, *args, **kwargs):
        raise StoreUnavailable("database unreachable")


def post_budget(client, day, amount, site_id=SITE_ID):
    return client.post(f"/sites/{site_id}/budget", json={
        "budget_date": day,
        "base_amount": amount,
        "manager_id": MANAGER_ID,
        "description": "Daily budget",
    })


def post_spend(client, day, amount):
    return client.post("/transactions", json={
        "site_id": SITE_ID,
        "manager_id": MANAGER_ID,
        "type": "OUTWARD",
        "amount": amount,
        "category": "Materials",
        "description": "Cement",
        "date": day,
    })


class TestCarryforwardFlow:
    """End-to-end flow over HTTP."""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_surplus_carried_to_next_day(self, client):
        """Test budget, spend, reconcile and apply over HTTP."""
        assert post_budget(client, "2024-03-01", 5000).status_code == 201
        assert post_spend(client, "2024-03-01", 3000).status_code == 201

        r = client.get(f"/sites/{SITE_ID}/totals/2024-03-01")
        assert r.status_code == 200
        assert Decimal(r.json()["net"]) == Decimal("2000")

        r = client.post(f"/sites/{SITE_ID}/reconcile/2024-03-01")
        assert r.status_code == 200
        carryforward = r.json()["carryforward"]
        assert Decimal(carryforward["amount"]) == Decimal("2000")

        r = client.get(f"/sites/{SITE_ID}/carryforwards/pending", params={"date": "2024-03-02"})
        assert r.status_code == 200
        assert r.json()["id"] == carryforward["id"]

        r = post_budget(client, "2024-03-02", 1000)
        assert r.status_code == 201
        body = r.json()
        assert body["adjustment_tx"]["category"] == "Carryforward"
        assert Decimal(body["effective_total"]) == Decimal("3000")

        r = client.get(f"/sites/{SITE_ID}/transactions", params={"date": "2024-03-02"})
        assert r.status_code == 200
        assert {t["category"] for t in r.json()} == {"Daily Budget", "Carryforward"}

    def test_balanced_day_returns_nothing(self, client):
        """Test that nothing to carry is not an error."""
        post_budget(client, "2024-03-01", 1000)
        post_spend(client, "2024-03-01", 1000)

        r = client.post(f"/sites/{SITE_ID}/reconcile/2024-03-01")

        assert r.status_code == 200
        assert r.json()["carryforward"] is None

    def test_delete_transaction(self, client):
        """Test deleting an entry, then deleting it again."""
        tx = post_spend(client, "2024-03-01", 500).json()

        assert client.delete(f"/transactions/{tx['id']}").status_code == 204
        assert client.delete(f"/transactions/{tx['id']}").status_code == 404


class TestErrorMapping:
    """Tests for HTTP error codes."""

    def test_duplicate_budget_conflict(self, client):
        post_budget(client, "2024-03-01", 1000)

        r = post_budget(client, "2024-03-01", 1000)

        assert r.status_code == 409

    def test_unknown_site_not_found(self, client):
        assert post_budget(client, "2024-03-01", 1000, site_id=UNKNOWN_SITE_ID).status_code == 404
        assert client.post(f"/sites/{UNKNOWN_SITE_ID}/reconcile/2024-03-01").status_code == 404

    def test_reserved_category_bad_request(self, client):
        r = client.post("/transactions", json={
            "site_id": SITE_ID,
            "manager_id": MANAGER_ID,
            "type": "INWARD",
            "amount": 100,
            "category": "Carryforward",
            "date": "2024-03-01",
        })

        assert r.status_code == 400

    def test_store_outage_maps_to_service_unavailable(self):
        """Test that read routes report a store outage as 503."""
        client = TestClient(create_app(CarryforwardService(UnavailableStore())))

        assert client.get(f"/sites/{SITE_ID}/transactions").status_code == 503
        assert client.get(
            f"/sites/{SITE_ID}/carryforwards/pending", params={"date": "2024-03-02"}
        ).status_code == 503
        assert client.get("/carryforwards").status_code == 503
        assert client.get("/carryforwards/summary").status_code == 503


class TestHistoryEndpoints:
    """Tests for history listing and summary."""

    def test_history_and_summary(self, client):
        post_budget(client, "2024-03-01", 2000)
        post_spend(client, "2024-03-01", 2700)
        client.post(f"/sites/{SITE_ID}/reconcile/2024-03-01")

        r = client.get("/carryforwards", params={"site_id": SITE_ID})
        assert r.status_code == 200
        assert len(r.json()) == 1

        r = client.get("/carryforwards/summary")
        assert r.status_code == 200
        summary = r.json()
        assert Decimal(summary["total"]) == Decimal("-700")
        assert summary["is_surplus"] is False
        assert summary["monthly"][0]["month"] == "2024-03"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
