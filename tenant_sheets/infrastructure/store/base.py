"""
Remote row-store boundary.

The data-access layer only talks to the remote store through these
protocols. Adapters translate their client library's failures into
``tenant_sheets.core.exceptions.store`` errors so the pool and the batch
queue can tell transient failures from terminal ones.

Row numbers are 1-based sheet rows; row 1 holds the header, so the first
data row is row 2.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

HEADER_ROW = 1
FIRST_DATA_ROW = 2


@dataclass(frozen=True)
class SheetRow:
    """One data row: its sheet row number and its values keyed by header."""

    row_number: int
    values: dict[str, Any]

    def get(self, column: str, default: Any = None) -> Any:
        return self.values.get(column, default)

    def to_dict(self) -> dict[str, Any]:
        return {"row_number": self.row_number, **self.values}


@dataclass(frozen=True)
class SheetRef:
    """Result of ensure_sheet."""

    title: str
    header_columns: tuple[str, ...]
    created: bool = False


@dataclass(frozen=True)
class RowFilter:
    """
    Client-side row filter.

    ``equals`` keeps rows whose columns match every given value (compared as
    strings). ``offset`` and ``limit`` page through the matches.
    """

    equals: dict[str, Any] = field(default_factory=dict)
    limit: int | None = None
    offset: int = 0

    def apply(self, rows: list[SheetRow]) -> list[SheetRow]:
        matched = [
            row for row in rows
            if all(str(row.values.get(col, "")) == str(val) for col, val in self.equals.items())
        ]
        end = None if self.limit is None else self.offset + self.limit
        return matched[self.offset:end]

    def cache_params(self) -> dict[str, Any]:
        """Stable representation used in cache keys."""
        return {
            "equals": {k: str(v) for k, v in self.equals.items()},
            "limit": self.limit,
            "offset": self.offset,
        }


class SheetHandle(Protocol):
    """One worksheet of a backing document."""

    title: str
    header_columns: list[str]

    async def get_rows(self, row_filter: RowFilter | None = None) -> list[SheetRow]:
        ...

    async def add_rows(self, rows: list[dict[str, Any]]) -> list[SheetRow]:
        ...

    async def update_row(self, row_number: int, values: dict[str, Any]) -> SheetRow:
        ...

    async def delete_row(self, row_number: int) -> None:
        ...


class DocHandle(Protocol):
    """A loaded backing document."""

    document_id: str

    async def sheet(
        self,
        title: str,
        header_columns: list[str] | None = None,
        create: bool = False,
    ) -> SheetHandle:
        """
        Open a worksheet.

        With ``create=True`` a missing sheet is created with the declared
        header row, and an existing sheet with an empty header gets it.

        Raises:
            SheetNotFoundError: If the sheet is missing and create is False
        """
        ...

    async def sheet_titles(self) -> list[str]:
        ...


class RemoteStore(Protocol):
    """Factory of document handles."""

    async def load_document(self, document_id: str, credentials_ref: str | None = None) -> DocHandle:
        """
        Raises:
            RemoteAuthError: Credentials rejected or unreadable
            DocumentNotFoundError: No such document (or not shared)
            UnavailableError / QuotaExceededError: Transient failures
        """
        ...
