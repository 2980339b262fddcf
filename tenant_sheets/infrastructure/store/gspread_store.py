"""
Google Sheets remote store backed by gspread.

gspread is synchronous; every call runs in a worker thread through
``asyncio.to_thread`` so the event loop only yields at remote I/O.

Error mapping (``gspread.exceptions.APIError`` by HTTP status):
    429, or 403 mentioning quota/rate limit  -> QuotaExceededError
    401 / 403                                -> RemoteAuthError
    404                                      -> DocumentNotFoundError
    400                                      -> InvalidOperationError
    5xx and network errors                   -> UnavailableError
"""

import asyncio
import re
from pathlib import Path
from typing import Any

import gspread
from gspread.exceptions import APIError, SpreadsheetNotFound, WorksheetNotFound

from tenant_sheets.core.config.constants import (
    REMOTE_AUTH_STATUSES,
    REMOTE_INVALID_STATUSES,
    REMOTE_NOT_FOUND_STATUSES,
    REMOTE_QUOTA_KEYWORDS,
    REMOTE_QUOTA_STATUSES,
)
from tenant_sheets.core.exceptions import (
    DocumentNotFoundError,
    InvalidOperationError,
    QuotaExceededError,
    RemoteAuthError,
    RemoteStoreError,
    SheetNotFoundError,
    UnavailableError,
)
from tenant_sheets.core.logging import get_logger
from tenant_sheets.infrastructure.store.base import FIRST_DATA_ROW, RowFilter, SheetRow

logger = get_logger(__name__)

_UPDATED_RANGE_RE = re.compile(r"![A-Z]+(\d+)")
NEW_SHEET_ROWS = 1000


def _status_of(error: APIError) -> int | None:
    response = getattr(error, "response", None)
    return getattr(response, "status_code", None) or getattr(error, "code", None)


def map_api_error(error: Exception, **context) -> RemoteStoreError:
    """Translate a gspread/network failure into a store error."""
    if isinstance(error, RemoteStoreError):
        return error
    if isinstance(error, SpreadsheetNotFound):
        return DocumentNotFoundError.from_exception(error, message="Spreadsheet not found", **context)
    if isinstance(error, APIError):
        status = _status_of(error)
        text = str(error).lower()
        context["status"] = status
        if status in REMOTE_QUOTA_STATUSES or (
            status in REMOTE_AUTH_STATUSES and any(k in text for k in REMOTE_QUOTA_KEYWORDS)
        ):
            return QuotaExceededError.from_exception(error, **context)
        if status in REMOTE_AUTH_STATUSES:
            return RemoteAuthError.from_exception(error, **context)
        if status in REMOTE_NOT_FOUND_STATUSES:
            return DocumentNotFoundError.from_exception(error, **context)
        if status in REMOTE_INVALID_STATUSES:
            return InvalidOperationError.from_exception(error, **context)
        return UnavailableError.from_exception(error, **context)
    return UnavailableError.from_exception(error, **context)


async def _call(func, *args, context: dict[str, Any] | None = None, **kwargs):
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except (APIError, SpreadsheetNotFound, OSError) as e:
        raise map_api_error(e, **(context or {})) from e


def _row_values(header: list[str], row: dict[str, Any]) -> list[Any]:
    unknown = set(row) - set(header)
    if unknown:
        raise InvalidOperationError(
            "Row has columns missing from the sheet header",
            details={"unknown_columns": sorted(unknown), "header": header},
        )
    return [row.get(col, "") for col in header]


class GSpreadSheet:
    """SheetHandle over a ``gspread.Worksheet``."""

    def __init__(self, worksheet: gspread.Worksheet, header_columns: list[str]):
        self._ws = worksheet
        self.title = worksheet.title
        self.header_columns = header_columns

    def _context(self) -> dict[str, Any]:
        return {"sheet": self.title}

    async def get_rows(self, row_filter: RowFilter | None = None) -> list[SheetRow]:
        values = await _call(self._ws.get_all_values, context=self._context())
        if not values:
            return []
        header = values[0]
        self.header_columns = header
        rows = [
            SheetRow(
                row_number=index,
                values={col: (raw[i] if i < len(raw) else "") for i, col in enumerate(header)},
            )
            for index, raw in enumerate(values[1:], start=FIRST_DATA_ROW)
        ]
        return row_filter.apply(rows) if row_filter else rows

    async def add_rows(self, rows: list[dict[str, Any]]) -> list[SheetRow]:
        if not rows:
            raise InvalidOperationError("add_rows needs at least one row", details=self._context())
        values = [_row_values(self.header_columns, row) for row in rows]
        response = await _call(
            self._ws.append_rows,
            values,
            value_input_option="RAW",
            insert_data_option="INSERT_ROWS",
            context=self._context(),
        )
        updated_range = (response or {}).get("updates", {}).get("updatedRange", "")
        match = _UPDATED_RANGE_RE.search(updated_range)
        first_row = int(match.group(1)) if match else 0
        return [
            SheetRow(row_number=first_row + i if first_row else 0, values=dict(row))
            for i, row in enumerate(rows)
        ]

    async def update_row(self, row_number: int, values: dict[str, Any]) -> SheetRow:
        if row_number < FIRST_DATA_ROW:
            raise InvalidOperationError(
                "Row number must point at a data row", details={**self._context(), "row": row_number}
            )
        _row_values(self.header_columns, values)
        current = await _call(self._ws.row_values, row_number, context=self._context())
        if not current:
            raise InvalidOperationError(
                "Row does not exist", details={**self._context(), "row": row_number}
            )
        merged = {col: (current[i] if i < len(current) else "") for i, col in enumerate(self.header_columns)}
        merged.update(values)
        await _call(
            self._ws.update,
            values=[_row_values(self.header_columns, merged)],
            range_name=f"A{row_number}",
            context=self._context(),
        )
        return SheetRow(row_number=row_number, values=merged)

    async def delete_row(self, row_number: int) -> None:
        if row_number < FIRST_DATA_ROW:
            raise InvalidOperationError(
                "Row number must point at a data row", details={**self._context(), "row": row_number}
            )
        await _call(self._ws.delete_rows, row_number, context=self._context())


class GSpreadDocument:
    """DocHandle over a ``gspread.Spreadsheet``."""

    def __init__(self, spreadsheet: gspread.Spreadsheet, document_id: str):
        self._spreadsheet = spreadsheet
        self.document_id = document_id

    async def sheet(
        self,
        title: str,
        header_columns: list[str] | None = None,
        create: bool = False,
    ) -> GSpreadSheet:
        context = {"document_id": self.document_id, "sheet": title}
        try:
            worksheet = await _call(self._spreadsheet.worksheet, title, context=context)
        except WorksheetNotFound as e:
            if not create:
                raise SheetNotFoundError(f"Sheet '{title}' does not exist", details=context) from e
            worksheet = await _call(
                self._spreadsheet.add_worksheet,
                title=title,
                rows=NEW_SHEET_ROWS,
                cols=max(len(header_columns or []), 1),
                context=context,
            )
            logger.info("Created worksheet", stage="ST.1", **context)

        header = await _call(worksheet.row_values, 1, context=context)
        if not header and create and header_columns:
            await _call(worksheet.update, values=[list(header_columns)], range_name="A1", context=context)
            header = list(header_columns)
        return GSpreadSheet(worksheet, header)

    async def sheet_titles(self) -> list[str]:
        worksheets = await _call(self._spreadsheet.worksheets, context={"document_id": self.document_id})
        return [ws.title for ws in worksheets]


class GSpreadStore:
    """
    RemoteStore using gspread service-account clients.

    ``credentials_ref`` names a service account key file, either as a path or
    relative to ``credentials_dir`` (``.json`` is appended when missing).
    Without a ref the default key file is used. One client is kept per key file.
    """

    def __init__(self, default_key_file: str | None = None, credentials_dir: str | Path = "keys"):
        self._default_key_file = default_key_file
        self._credentials_dir = Path(credentials_dir)
        self._clients: dict[str, gspread.Client] = {}

    def _key_path(self, credentials_ref: str | None) -> Path:
        ref = credentials_ref or self._default_key_file
        if not ref:
            raise RemoteAuthError("No credentials configured for the document")
        path = Path(ref)
        if path.is_absolute() or path.exists():
            return path
        if not path.suffix:
            path = path.with_suffix(".json")
        return self._credentials_dir / path

    async def _client(self, credentials_ref: str | None) -> gspread.Client:
        key_path = self._key_path(credentials_ref)
        client = self._clients.get(str(key_path))
        if client is None:
            try:
                client = await asyncio.to_thread(gspread.service_account, filename=str(key_path))
            except (OSError, ValueError) as e:
                raise RemoteAuthError.from_exception(
                    e, message="Cannot load service account credentials", key_file=key_path.name
                ) from e
            self._clients[str(key_path)] = client
        return client

    async def load_document(self, document_id: str, credentials_ref: str | None = None) -> GSpreadDocument:
        client = await self._client(credentials_ref)
        spreadsheet = await _call(client.open_by_key, document_id, context={"document_id": document_id})
        return GSpreadDocument(spreadsheet, document_id)
