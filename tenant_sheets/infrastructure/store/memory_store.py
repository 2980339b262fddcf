"""
In-process remote store.

A RemoteStore that keeps documents in memory. It is used for local
development (STORE_BACKEND=memory) and by the test-suite, and can simulate
the remote API's failure modes:

- ``fail_next(method, error, times)`` raises ``error`` on the next calls
- ``delay_next(method, seconds, times)`` makes the next calls slow
- every call is recorded in ``calls`` with its outcome
"""

import asyncio
import copy
from collections import defaultdict, deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from tenant_sheets.core.exceptions import (
    DocumentNotFoundError,
    InvalidOperationError,
    RemoteAuthError,
    SheetNotFoundError,
    TenantSheetsError,
)
from tenant_sheets.infrastructure.store.base import FIRST_DATA_ROW, RowFilter, SheetRow


@dataclass
class RemoteCall:
    """One recorded call against the store."""

    method: str
    document_id: str
    sheet: str | None = None
    payload: Any = None
    outcome: str = "ok"


@dataclass
class _SheetData:
    header: list[str]
    rows: list[dict[str, Any]] = field(default_factory=list)


class MemorySheet:
    """SheetHandle over in-memory rows."""

    def __init__(self, store: "MemoryStore", document_id: str, title: str):
        self._store = store
        self._document_id = document_id
        self.title = title

    @property
    def _data(self) -> _SheetData:
        return self._store._documents[self._document_id][self.title]

    @property
    def header_columns(self) -> list[str]:
        return list(self._data.header)

    def _check_columns(self, values: dict[str, Any]) -> None:
        unknown = set(values) - set(self._data.header)
        if unknown:
            raise InvalidOperationError(
                "Row has columns missing from the sheet header",
                details={"unknown_columns": sorted(unknown), "sheet": self.title},
            )

    def _index(self, row_number: int) -> int:
        index = row_number - FIRST_DATA_ROW
        if index < 0 or index >= len(self._data.rows):
            raise InvalidOperationError(
                "Row does not exist", details={"sheet": self.title, "row": row_number}
            )
        return index

    async def get_rows(self, row_filter: RowFilter | None = None) -> list[SheetRow]:
        async with self._store._recorded("get_rows", self._document_id, self.title, row_filter):
            rows = [
                SheetRow(row_number=i, values={col: row.get(col, "") for col in self._data.header})
                for i, row in enumerate(self._data.rows, start=FIRST_DATA_ROW)
            ]
        return row_filter.apply(rows) if row_filter else rows

    async def add_rows(self, rows: list[dict[str, Any]]) -> list[SheetRow]:
        async with self._store._recorded("add_rows", self._document_id, self.title, copy.deepcopy(rows)):
            if not rows:
                raise InvalidOperationError("add_rows needs at least one row", details={"sheet": self.title})
            for row in rows:
                self._check_columns(row)
            first = FIRST_DATA_ROW + len(self._data.rows)
            self._data.rows.extend(dict(row) for row in rows)
        return [SheetRow(row_number=first + i, values=dict(row)) for i, row in enumerate(rows)]

    async def update_row(self, row_number: int, values: dict[str, Any]) -> SheetRow:
        payload = {"row": row_number, "values": dict(values)}
        async with self._store._recorded("update_row", self._document_id, self.title, payload):
            self._check_columns(values)
            index = self._index(row_number)
            self._data.rows[index].update(values)
        return SheetRow(row_number=row_number, values=dict(self._data.rows[index]))

    async def delete_row(self, row_number: int) -> None:
        async with self._store._recorded("delete_row", self._document_id, self.title, {"row": row_number}):
            del self._data.rows[self._index(row_number)]


class MemoryDocument:
    """DocHandle over an in-memory document."""

    def __init__(self, store: "MemoryStore", document_id: str):
        self._store = store
        self.document_id = document_id

    async def sheet(
        self,
        title: str,
        header_columns: list[str] | None = None,
        create: bool = False,
    ) -> MemorySheet:
        async with self._store._recorded("sheet", self.document_id, title, {"create": create}):
            sheets = self._store._documents[self.document_id]
            if title not in sheets:
                if not create:
                    raise SheetNotFoundError(
                        f"Sheet '{title}' does not exist",
                        details={"document_id": self.document_id, "sheet": title},
                    )
                sheets[title] = _SheetData(header=list(header_columns or []))
            elif create and header_columns and not sheets[title].header:
                sheets[title].header = list(header_columns)
        return MemorySheet(self._store, self.document_id, title)

    async def sheet_titles(self) -> list[str]:
        async with self._store._recorded("sheet_titles", self.document_id):
            return list(self._store._documents[self.document_id])


class MemoryStore:
    """
    RemoteStore keeping every document in process memory.

    Usage:
        store = MemoryStore()
        store.create_document("doc-acme", sheets={"USERS": ["id", "email"]})
        store.fail_next("add_rows", QuotaExceededError("quota"), times=2)
    """

    def __init__(self):
        self._documents: dict[str, dict[str, _SheetData]] = {}
        self._credentials: dict[str, str | None] = {}
        self._failures: dict[str, deque[Exception]] = defaultdict(deque)
        self._delays: dict[str, deque[float]] = defaultdict(deque)
        self.calls: list[RemoteCall] = []

    # =========================================================================
    # Setup / simulation
    # =========================================================================

    def create_document(
        self,
        document_id: str,
        sheets: dict[str, list[str]] | None = None,
        credentials_ref: str | None = None,
    ) -> None:
        """Register a document. A non-None ``credentials_ref`` must match on load."""
        self._documents[document_id] = {
            title: _SheetData(header=list(header)) for title, header in (sheets or {}).items()
        }
        self._credentials[document_id] = credentials_ref

    def seed_rows(self, document_id: str, title: str, rows: list[dict[str, Any]]) -> None:
        self._documents[document_id][title].rows.extend(dict(r) for r in rows)

    def rows(self, document_id: str, title: str) -> list[dict[str, Any]]:
        """Raw rows of a sheet, bypassing call recording."""
        return [dict(r) for r in self._documents[document_id][title].rows]

    def fail_next(self, method: str, error: Exception, times: int = 1) -> None:
        for _ in range(times):
            self._failures[method].append(error)

    def delay_next(self, method: str, seconds: float, times: int = 1) -> None:
        for _ in range(times):
            self._delays[method].append(seconds)

    def calls_for(self, method: str) -> list[RemoteCall]:
        return [c for c in self.calls if c.method == method]

    # =========================================================================
    # RemoteStore
    # =========================================================================

    @asynccontextmanager
    async def _recorded(
        self, method: str, document_id: str, sheet: str | None = None, payload: Any = None
    ) -> AsyncIterator[RemoteCall]:
        call = RemoteCall(method=method, document_id=document_id, sheet=sheet, payload=payload)
        self.calls.append(call)
        try:
            await asyncio.sleep(self._delays[method].popleft() if self._delays[method] else 0)
            if self._failures[method]:
                raise self._failures[method].popleft()
            yield call
        except asyncio.CancelledError:
            call.outcome = "cancelled"
            raise
        except Exception as e:
            call.outcome = e.kind if isinstance(e, TenantSheetsError) else type(e).__name__
            raise

    async def load_document(self, document_id: str, credentials_ref: str | None = None) -> MemoryDocument:
        async with self._recorded("load_document", document_id):
            if document_id not in self._documents:
                raise DocumentNotFoundError(
                    f"Document '{document_id}' not found", details={"document_id": document_id}
                )
            expected = self._credentials.get(document_id)
            if expected is not None and expected != credentials_ref:
                raise RemoteAuthError(
                    "Credentials rejected for document", details={"document_id": document_id}
                )
        return MemoryDocument(self, document_id)
