"""
Remote store adapters.

- **base.py**: RemoteStore / DocHandle / SheetHandle protocols and row types
- **gspread_store.py**: Google Sheets through gspread
- **memory_store.py**: In-process store for development and tests
"""

from tenant_sheets.infrastructure.store.base import (
    DocHandle,
    RemoteStore,
    RowFilter,
    SheetHandle,
    SheetRef,
    SheetRow,
)
from tenant_sheets.infrastructure.store.memory_store import MemoryStore

__all__ = [
    "DocHandle",
    "MemoryStore",
    "RemoteStore",
    "RowFilter",
    "SheetHandle",
    "SheetRef",
    "SheetRow",
]
