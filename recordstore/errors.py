"""Error taxonomy shared by both storage backends.

Callers only ever see these types; engine-level exceptions are wrapped in
BackendFailure with the original chained as __cause__.
"""
from __future__ import annotations
from typing import Any, Optional


class RecordStoreError(Exception):
    """Base class for every error raised by the record store."""


class ValidationError(RecordStoreError, ValueError):
    """Bad database/table name, index spec or key. Raised before any backend call."""


class ConnectionNotInitialized(RecordStoreError):
    def __init__(self, message: str = "Database connection not initialized. Call start() first."):
        super().__init__(message)


class TableNotInitialized(RecordStoreError):
    def __init__(self, table: str):
        self.table = table
        super().__init__(f"Table {table} not initialized in memory.")


class RecordNotFound(RecordStoreError, LookupError):
    def __init__(self, table: str, record_id: Any, suffix: str = ""):
        self.table = table
        self.record_id = record_id
        msg = f"Record with ID {record_id} not found"
        if suffix:
            msg = f"{msg} {suffix}"
        super().__init__(msg)


class MissingIdentifier(RecordStoreError):
    def __init__(self, message: str = "Record must have an ID to update"):
        super().__init__(message)


class BackendFailure(RecordStoreError):
    """Opaque engine failure: constraint violation, aborted transaction, I/O error."""

    @classmethod
    def from_exc(cls, context: str, exc: BaseException) -> "BackendFailure":
        return cls(f"{context}: {exc}")


class Blocked(RecordStoreError):
    def __init__(self, database: str, requested: int, held: Optional[int] = None):
        self.database = database
        self.requested = requested
        self.held = held
        super().__init__(
            "Database opening blocked. Please close other connections using this database."
        )


__all__ = [
    "RecordStoreError",
    "ValidationError",
    "ConnectionNotInitialized",
    "TableNotInitialized",
    "RecordNotFound",
    "MissingIdentifier",
    "BackendFailure",
    "Blocked",
]
