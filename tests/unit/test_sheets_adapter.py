"""Tests for the Google Sheets RemoteAdapter and record building.

The Sheets API resource is a MagicMock: each call chain
(spreadsheets().values().append(...).execute()) is configured on the mock
so no network or credentials are needed.
"""
import socket
import ssl
from unittest.mock import MagicMock

import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError
from httplib2 import Response

from expenso.errors import AuthRequiredError, TransientRemoteError
from expenso.remote.adapter import build_record
from expenso.remote.sheets import HEADERS, WORKSHEET_TITLE, GoogleSheetsAdapter, record_to_row

TRANSACTION = {
    "id": "tx-1",
    "sheet_id": "sheet-1",
    "amount": "50",
    "purpose": "Taxi",
    "category": "Misc",
    "kind": "debit",
    "created_at": "2025-01-15T07:30:12.345678+00:00",
}


def _http_error(status: int) -> HttpError:
    return HttpError(Response({"status": status}), b"error")


@pytest.fixture
def service():
    service = MagicMock()
    service.spreadsheets().create().execute.return_value = {"spreadsheetId": "ss-123"}
    return service


@pytest.fixture
def adapter(service):
    return GoogleSheetsAdapter(service=service)


# ─── build_record ─────────────────────────────────────────────────────────────

class TestBuildRecord:
    def test_create(self):
        record = build_record(TRANSACTION, sheet_name="Trip", action="create")
        assert record["transaction_id"] == "tx-1"
        assert record["date"] == "2025-01-15"
        assert record["time"] == "07:30:12"
        assert record["amount"] == "50"
        assert record["sheet_name"] == "Trip"
        assert record["action"] == "create"
        assert "updates" not in record

    def test_delete_negates_amount(self):
        """The remote log is append-only: a delete is an annotated, negated row."""
        record = build_record(TRANSACTION, sheet_name="Trip", action="delete")
        assert record["amount"] == "-50"
        assert record["action"] == "delete"

    def test_update_carries_changes(self):
        record = build_record(TRANSACTION, sheet_name="Trip", action="update", updates={"amount": "60"})
        assert record["updates"] == {"amount": "60"}
        assert record["amount"] == "50"

    def test_row_matches_headers(self):
        record = build_record(TRANSACTION, sheet_name="Trip", action="create")
        row = record_to_row(record, synced_at="2025-01-15T08:00:00+00:00")
        assert len(row) == len(HEADERS)
        assert row[HEADERS.index("Amount")] == "50"
        assert row[HEADERS.index("Transaction ID")] == "tx-1"
        assert row[HEADERS.index("Sync Time")] == "2025-01-15T08:00:00+00:00"


# ─── create_container ─────────────────────────────────────────────────────────

class TestCreateContainer:
    @pytest.mark.asyncio
    async def test_returns_spreadsheet_id(self, adapter):
        assert await adapter.create_container("Trip", "me@example.com") == "ss-123"

    @pytest.mark.asyncio
    async def test_title_and_worksheet(self, adapter, service):
        await adapter.create_container("Trip", "me@example.com")
        body = service.spreadsheets().create.call_args.kwargs["body"]
        assert body["properties"]["title"] == "ExpensO - Trip - me@example.com"
        assert body["sheets"][0]["properties"]["title"] == WORKSHEET_TITLE

    @pytest.mark.asyncio
    async def test_writes_header_row(self, adapter, service):
        await adapter.create_container("Trip", "")
        kwargs = service.spreadsheets().values().update.call_args.kwargs
        assert kwargs["spreadsheetId"] == "ss-123"
        assert kwargs["body"] == {"values": [HEADERS]}

    @pytest.mark.asyncio
    async def test_header_failure_is_not_fatal(self, adapter, service):
        service.spreadsheets().values().update().execute.side_effect = _http_error(500)
        assert await adapter.create_container("Trip", "") == "ss-123"


# ─── append_record ────────────────────────────────────────────────────────────

class TestAppendRecord:
    @pytest.mark.asyncio
    async def test_appends_one_row(self, adapter, service):
        record = build_record(TRANSACTION, sheet_name="Trip", action="create")
        await adapter.append_record("ss-123", record)

        kwargs = service.spreadsheets().values().append.call_args.kwargs
        assert kwargs["spreadsheetId"] == "ss-123"
        assert kwargs["valueInputOption"] == "USER_ENTERED"
        assert kwargs["insertDataOption"] == "INSERT_ROWS"
        [row] = kwargs["body"]["values"]
        assert row[HEADERS.index("Purpose")] == "Taxi"


# ─── Error mapping ────────────────────────────────────────────────────────────

class TestErrorMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_statuses(self, adapter, service, status):
        service.spreadsheets().values().append().execute.side_effect = _http_error(status)
        with pytest.raises(AuthRequiredError):
            await adapter.append_record("ss-123", {})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_other_http_errors_are_transient(self, adapter, service, status):
        service.spreadsheets().values().append().execute.side_effect = _http_error(status)
        with pytest.raises(TransientRemoteError):
            await adapter.append_record("ss-123", {})

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc",
        [socket.timeout("timed out"), ssl.SSLError("bad record mac"), ConnectionResetError("reset")],
    )
    async def test_network_errors_are_transient(self, adapter, service, exc):
        service.spreadsheets().create().execute.side_effect = exc
        with pytest.raises(TransientRemoteError):
            await adapter.create_container("Trip", "")

    @pytest.mark.asyncio
    async def test_refresh_error_requires_auth(self, adapter, service):
        service.spreadsheets().create().execute.side_effect = RefreshError("invalid_grant")
        with pytest.raises(AuthRequiredError):
            await adapter.create_container("Trip", "")

    @pytest.mark.asyncio
    async def test_missing_token_requires_auth(self, tmp_path):
        from expenso.remote.credentials import GoogleTokenStore

        adapter = GoogleSheetsAdapter(GoogleTokenStore(str(tmp_path / "absent.json")))
        with pytest.raises(AuthRequiredError):
            await adapter.append_record("ss-123", {})
