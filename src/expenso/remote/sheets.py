"""
Async Google Sheets adapter.

googleapiclient is synchronous; every request runs in the default thread
pool executor so it doesn't block the asyncio event loop.

One local sheet maps to one spreadsheet with a single "Transactions"
worksheet. Records are only ever appended (see build_record).
"""
import asyncio
import logging
import socket
import ssl
from typing import Any, Callable, Dict, List, Optional

from google.auth.exceptions import RefreshError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from expenso.errors import AuthRequiredError, TransientRemoteError
from expenso.models.ledger import utc_now
from expenso.remote.adapter import RemoteAdapter
from expenso.remote.credentials import GoogleTokenStore

logger = logging.getLogger(__name__)

WORKSHEET_TITLE = "Transactions"
HEADERS = [
    "Date",
    "Time",
    "Type",
    "Amount",
    "Category",
    "Purpose",
    "Sheet Name",
    "Sync Time",
    "Action",
    "Transaction ID",
]
_LAST_COLUMN = chr(ord("A") + len(HEADERS) - 1)

AUTH_STATUSES = (401, 403)


def record_to_row(record: Dict[str, Any], synced_at: str) -> List[Any]:
    return [
        record.get("date", ""),
        record.get("time", ""),
        record.get("kind", ""),
        record.get("amount", "0"),
        record.get("category", ""),
        record.get("purpose", ""),
        record.get("sheet_name", ""),
        synced_at,
        record.get("action", "create"),
        record.get("transaction_id", ""),
    ]


class GoogleSheetsAdapter(RemoteAdapter):
    """
    RemoteAdapter backed by the Sheets v4 API.

    The API client is built lazily on first use so constructing the adapter
    never touches the network or the token file.
    """

    def __init__(
        self,
        token_store: Optional[GoogleTokenStore] = None,
        service: Any = None,
    ):
        """
        Args:
            token_store: Source of OAuth credentials. Defaults to the
                         configured google_token_file.
            service: Pre-built Sheets API resource (used by tests).
        """
        if token_store is None and service is None:
            from expenso.config import get_settings

            token_store = GoogleTokenStore(get_settings().google_token_file)
        self._tokens = token_store
        self._service = service

    def _get_service(self) -> Any:
        if self._service is None:
            creds = self._tokens.load()  # raises AuthRequiredError
            self._service = build("sheets", "v4", credentials=creds, cache_discovery=False)
            logger.debug("Google Sheets service client created.")
        return self._service

    def reset(self) -> None:
        """Drop the cached client (after re-authorization)."""
        if self._tokens is not None:
            self._service = None

    async def create_container(self, name: str, owner_id: str) -> str:
        body = {
            "properties": {"title": f"ExpensO - {name} - {owner_id}" if owner_id else f"ExpensO - {name}"},
            "sheets": [
                {
                    "properties": {
                        "title": WORKSHEET_TITLE,
                        "gridProperties": {"rowCount": 1000, "columnCount": len(HEADERS)},
                    }
                }
            ],
        }
        result = await self._call(
            lambda: self._get_service()
            .spreadsheets()
            .create(body=body, fields="spreadsheetId")
            .execute()
        )
        spreadsheet_id = result["spreadsheetId"]
        logger.info("Created spreadsheet %s for sheet %r", spreadsheet_id, name)

        # A missing header row is cosmetic; failing here would make the retry
        # create a second spreadsheet.
        try:
            await self._call(
                lambda: self._get_service()
                .spreadsheets()
                .values()
                .update(
                    spreadsheetId=spreadsheet_id,
                    range=f"{WORKSHEET_TITLE}!A1:{_LAST_COLUMN}1",
                    valueInputOption="RAW",
                    body={"values": [HEADERS]},
                )
                .execute()
            )
        except (AuthRequiredError, TransientRemoteError) as exc:
            logger.warning("Failed to write headers to %s: %s", spreadsheet_id, exc)

        return spreadsheet_id

    async def append_record(self, container_id: str, record: Dict[str, Any]) -> None:
        row = record_to_row(record, synced_at=utc_now().isoformat())
        await self._call(
            lambda: self._get_service()
            .spreadsheets()
            .values()
            .append(
                spreadsheetId=container_id,
                range=f"{WORKSHEET_TITLE}!A:{_LAST_COLUMN}",
                valueInputOption="USER_ENTERED",
                insertDataOption="INSERT_ROWS",
                body={"values": [row]},
            )
            .execute()
        )
        logger.debug("Appended %s record to %s", record.get("action"), container_id)

    async def _run(self, fn: Callable[[], Any]) -> Any:
        """Run a blocking client call in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    async def _call(self, fn: Callable[[], Any]) -> Any:
        """Run fn and translate client errors into the adapter error taxonomy."""
        try:
            return await self._run(fn)
        except AuthRequiredError:
            raise
        except HttpError as exc:
            status = getattr(exc.resp, "status", None)
            if status in AUTH_STATUSES:
                self.reset()
                raise AuthRequiredError(
                    f"Google Sheets rejected the request (HTTP {status}). Re-authorize access."
                ) from exc
            raise TransientRemoteError(f"Google Sheets API error (HTTP {status})") from exc
        except RefreshError as exc:
            self.reset()
            raise AuthRequiredError("Google session has expired. Sign in again.") from exc
        except socket.timeout as exc:
            raise TransientRemoteError(f"Timeout talking to Google Sheets: {exc}") from exc
        except ssl.SSLError as exc:
            raise TransientRemoteError(f"SSL error talking to Google Sheets: {exc}") from exc
        except OSError as exc:
            raise TransientRemoteError(f"Network error talking to Google Sheets: {exc}") from exc
