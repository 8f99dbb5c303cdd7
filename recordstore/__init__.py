"""recordstore: one CRUD contract over a durable SQLite engine or process memory.

Single source of truth for the package version so that code, tests, and
scripts can import without duplicating literals.
"""

PACKAGE_VERSION = "0.1.0"  # Keep in sync with pyproject version.

from .errors import (  # noqa: E402
    BackendFailure,
    Blocked,
    ConnectionNotInitialized,
    MissingIdentifier,
    RecordNotFound,
    RecordStoreError,
    TableNotInitialized,
    ValidationError,
)
from .store import RecordStore, StoreConfig  # noqa: E402
from .validation import IndexSpec, is_valid_database_name, is_valid_table_name  # noqa: E402

__all__ = [
    "PACKAGE_VERSION",
    "RecordStore",
    "StoreConfig",
    "IndexSpec",
    "is_valid_database_name",
    "is_valid_table_name",
    "RecordStoreError",
    "ValidationError",
    "ConnectionNotInitialized",
    "TableNotInitialized",
    "RecordNotFound",
    "MissingIdentifier",
    "BackendFailure",
    "Blocked",
]
