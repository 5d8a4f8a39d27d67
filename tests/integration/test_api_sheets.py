"""Integration tests for /sheets and /categories routes."""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from expenso.api.main import create_app
from expenso.config import Settings
from expenso.services import build_services


@pytest.fixture(name="api_settings")
def api_settings_fixture():
    # Long debounces keep background cycles out of the request/response flow
    return Settings(
        user_email="api@example.com",
        enqueue_debounce_seconds=3600,
        online_debounce_seconds=3600,
        queue_operation_delay_seconds=0,
        pending_operation_delay_seconds=0,
        _env_file=None,
    )


@pytest.fixture(name="probe")
def probe_fixture():
    return AsyncMock(return_value=False)


@pytest.fixture(name="services")
def services_fixture(engine, api_settings, adapter, probe):
    return build_services(api_settings, adapter=adapter, probe=probe, db_engine=engine)


@pytest.fixture(name="client")
def client_fixture(services):
    app = create_app(services)
    with TestClient(app) as c:
        yield c


def _create_sheet(client, name="Trip"):
    resp = client.post("/sheets", json={"name": name})
    assert resp.status_code == 201
    return resp.json()["entity"]


class TestSheetRoutes:
    def test_create_sheet(self, client):
        resp = client.post("/sheets", json={"name": "Trip"})
        assert resp.status_code == 201
        body = resp.json()
        assert body["entity"]["name"] == "Trip"
        assert body["entity"]["synced"] is False
        assert body["queued"] is True
        assert body["operation_id"]

    def test_duplicate_sheet(self, client):
        _create_sheet(client)
        resp = client.post("/sheets", json={"name": "trip"})
        assert resp.status_code == 409
        assert resp.json()["code"] == "duplicate_name"

    def test_empty_name(self, client):
        resp = client.post("/sheets", json={"name": "  "})
        assert resp.status_code == 422
        assert resp.json()["code"] == "validation_error"

    def test_list_sheets(self, client):
        _create_sheet(client, "A")
        _create_sheet(client, "B")
        resp = client.get("/sheets")
        assert [s["name"] for s in resp.json()] == ["A", "B"]

    def test_get_missing_sheet(self, client):
        resp = client.get("/sheets/nope")
        assert resp.status_code == 404
        assert resp.json()["code"] == "not_found"

    def test_sheet_sync_status(self, client):
        sheet = _create_sheet(client)
        resp = client.get(f"/sheets/{sheet['id']}/sync-status")
        assert resp.status_code == 200
        assert resp.json()["sync_status"] == "pending"

    def test_all_sheets_sync_status(self, client):
        _create_sheet(client)
        resp = client.get("/sheets/sync-status")
        assert resp.status_code == 200
        assert resp.json()["total"] == 1
        assert resp.json()["local"] == 1

    def test_retry_sheet_sync(self, client, services):
        sheet = _create_sheet(client)
        services.queue.clear()
        resp = client.post(f"/sheets/{sheet['id']}/retry")
        assert resp.status_code == 200
        assert resp.json()["queued"] is True
        assert resp.json()["entity"]["sync_status"] == "syncing"


class TestTransactionRoutes:
    def test_add_while_offline(self, client, services):
        sheet = _create_sheet(client)
        resp = client.post(
            f"/sheets/{sheet['id']}/transactions",
            json={"amount": "50", "purpose": "Taxi", "kind": "debit"},
        )
        assert resp.status_code == 201
        tx = resp.json()["entity"]
        assert Decimal(tx["amount"]) == Decimal("50")
        assert tx["category"] == "Misc"
        assert tx["synced"] is False
        assert len(services.queue.get_pending_operations()) == 1

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_amount(self, client, amount):
        sheet = _create_sheet(client)
        resp = client.post(
            f"/sheets/{sheet['id']}/transactions",
            json={"amount": amount, "purpose": "Taxi", "kind": "debit"},
        )
        assert resp.status_code == 422

    def test_unknown_kind(self, client):
        sheet = _create_sheet(client)
        resp = client.post(
            f"/sheets/{sheet['id']}/transactions",
            json={"amount": "5", "purpose": "Taxi", "kind": "refund"},
        )
        assert resp.status_code == 422

    def test_totals(self, client):
        sheet = _create_sheet(client)
        url = f"/sheets/{sheet['id']}/transactions"
        client.post(url, json={"amount": "50", "purpose": "Taxi", "kind": "debit"})
        client.post(url, json={"amount": "20", "purpose": "Refund", "kind": "credit"})

        resp = client.get(f"/sheets/{sheet['id']}/totals")
        body = resp.json()
        assert Decimal(body["debit"]) == Decimal("50")
        assert Decimal(body["credit"]) == Decimal("20")
        assert Decimal(body["balance"]) == Decimal("-30")

    def test_update_and_delete(self, client):
        sheet = _create_sheet(client)
        url = f"/sheets/{sheet['id']}/transactions"
        tx = client.post(url, json={"amount": "10", "purpose": "Taxi", "kind": "debit"}).json()["entity"]

        resp = client.patch(f"{url}/{tx['id']}", json={"purpose": "Cab"})
        assert resp.status_code == 200
        assert resp.json()["entity"]["purpose"] == "Cab"
        assert Decimal(resp.json()["entity"]["amount"]) == Decimal("10")

        resp = client.delete(f"{url}/{tx['id']}")
        assert resp.status_code == 200
        assert client.get(url).json() == []

    def test_delete_missing_transaction(self, client):
        sheet = _create_sheet(client)
        resp = client.delete(f"/sheets/{sheet['id']}/transactions/nope")
        assert resp.status_code == 404


class TestCategoryRoutes:
    def test_default_category(self, client):
        assert client.get("/categories").json() == ["Misc"]

    def test_add_category(self, client):
        resp = client.post("/categories", json={"name": "Food"})
        assert resp.status_code == 201
        assert client.get("/categories").json() == ["Misc", "Food"]

    def test_category_too_long(self, client):
        resp = client.post("/categories", json={"name": "x" * 31})
        assert resp.status_code == 422

    @pytest.mark.parametrize("name", ["Misc", "misc", "MISC"])
    def test_default_category_protected(self, client, name):
        resp = client.delete(f"/categories/{name}")
        assert resp.status_code == 403
        assert resp.json()["code"] == "protected_entity"

    def test_delete_category(self, client):
        client.post("/categories", json={"name": "Food"})
        resp = client.delete("/categories/food")
        assert resp.status_code == 200
        assert client.get("/categories").json() == ["Misc"]

    def test_delete_missing_category(self, client):
        assert client.delete("/categories/Nope").status_code == 404
