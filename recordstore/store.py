"""Public record store API.

    store = RecordStore()                      # durable, schema version 1
    await store.start("shop-db", "orders-table", ["status", {"name": "sku-index", "keyPath": "item.sku"}])
    order_id = await store.creates("orders-table", {"item": {"sku": "pen"}})
    order = await store.reads("orders-table", order_id)
    await store.updates("orders-table", {**order, "status": "shipped"})
    await store.deletes("orders-table", order_id)
    await store.close()

RecordStore(memory_fallback=True) keeps everything in process memory instead.
Both backends raise the same errors for the same situations (see errors.py).
"""
from __future__ import annotations
import os
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, TypeVar, Union

from .base_adapter import BackendAdapter, Record
from .connection import AUTO, ConnectionManager, FallbackMode
from .engine import DurableEngine, EngineConfig
from .errors import (
    BackendFailure,
    ConnectionNotInitialized,
    MissingIdentifier,
    RecordNotFound,
    RecordStoreError,
    ValidationError,
)
from .logging_util import debug, error, warn
from .validation import IndexSpec, check_record_id, normalize_indexes, validate_names

T = TypeVar("T")
IndexInput = Union[str, IndexSpec, Mapping[str, Any]]


def _fallback_from_env(raw: Optional[str]) -> FallbackMode:
    if raw is None or raw == "0":
        return False
    if raw == "1":
        return True
    if raw.lower() == AUTO:
        return AUTO
    warn("invalid_env_value", key="RECORDSTORE_MEMORY_FALLBACK", value=raw, default="0")
    return False


@dataclass
class StoreConfig:
    memory_fallback: FallbackMode = False
    version: int = 1

    @classmethod
    def from_env(cls) -> "StoreConfig":
        raw_version = os.environ.get("RECORDSTORE_SCHEMA_VERSION")
        version = 1
        if raw_version is not None:
            try:
                version = int(raw_version)
            except ValueError:
                warn("invalid_env_int", key="RECORDSTORE_SCHEMA_VERSION", value=raw_version, default=1)
            if version < 1:
                warn("store_config_clamped", key="RECORDSTORE_SCHEMA_VERSION", original=version, clamped=1)
                version = 1
        return cls(
            memory_fallback=_fallback_from_env(os.environ.get("RECORDSTORE_MEMORY_FALLBACK")),
            version=version,
        )


class RecordStore:
    """CRUD over one bound backend.

    Explicit ``memory_fallback`` / ``version`` arguments win over the
    environment (RECORDSTORE_MEMORY_FALLBACK, RECORDSTORE_SCHEMA_VERSION).
    """

    def __init__(self, memory_fallback: Optional[FallbackMode] = None, version: Optional[int] = None,
                 config: Optional[StoreConfig] = None, engine_config: Optional[EngineConfig] = None):
        self.config = replace(config) if config is not None else StoreConfig.from_env()
        if memory_fallback is not None:
            self.config.memory_fallback = memory_fallback
        if version is not None:
            self.config.version = version
        if isinstance(self.config.version, bool) or not isinstance(self.config.version, int) \
                or self.config.version < 1:
            raise ValidationError(f"Invalid schema version: {self.config.version!r}. Must be a positive integer")
        engine = DurableEngine(engine_config) if engine_config is not None else None
        self._manager = ConnectionManager(self.config.memory_fallback, self.config.version, engine)

    @property
    def backend(self) -> Optional[str]:
        adapter = self._manager.adapter
        return adapter.kind if adapter else None

    @property
    def is_started(self) -> bool:
        return self._manager.adapter is not None

    @property
    def schema_version(self) -> Optional[int]:
        adapter = self._manager.adapter
        return getattr(adapter, "version", None)

    async def start(self, database: str, table: str, indexes: Iterable[IndexInput] = ()) -> bool:
        """Validate names and indexes, then bind a backend and create/upgrade the table.

        Raises ValidationError before any backend work, Blocked when another
        connection holds an older schema version open, BackendFailure when the
        engine cannot be opened.
        """
        validate_names(database, table)
        specs = normalize_indexes(indexes)
        await self._manager.start(database, table, specs)
        return True

    def _adapter(self) -> BackendAdapter:
        adapter = self._manager.adapter
        if adapter is None:
            raise ConnectionNotInitialized()
        return adapter

    async def _dispatch(self, op: str, table: str, call: Callable[[BackendAdapter], Awaitable[T]]) -> T:
        adapter = self._adapter()
        try:
            return await call(adapter)
        except RecordNotFound as e:
            debug("record_not_found", op=op, backend=adapter.kind, table=table, id=e.record_id)
            raise
        except BackendFailure as e:
            error("backend_failure", op=op, backend=adapter.kind, table=table, error=str(e))
            raise
        except RecordStoreError as e:
            warn("operation_rejected", op=op, backend=adapter.kind, table=table, error=str(e))
            raise

    @staticmethod
    def _check_record(data: Any) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise ValidationError(f"Record must be a dict, got {type(data).__name__}")
        return data

    async def creates(self, table: str, data: Record) -> Any:
        """Insert a new record and return its id.

        A missing id is generated; the id is also written back onto ``data``.
        An id that already exists raises BackendFailure.
        """
        self._adapter()
        record = self._check_record(data)
        if record.get("id") is not None:
            check_record_id(record["id"])
        record_id = await self._dispatch("create", table, lambda a: a.create(table, record))
        record["id"] = record_id
        return record_id

    async def reads(self, table: str, record_id: Any) -> Record:
        self._adapter()
        check_record_id(record_id)
        return await self._dispatch("read", table, lambda a: a.read(table, record_id))

    async def updates(self, table: str, data: Record) -> Any:
        """Replace an existing record. Never inserts."""
        self._adapter()
        record = self._check_record(data)
        if record.get("id") is None:
            raise MissingIdentifier()
        check_record_id(record["id"])
        return await self._dispatch("update", table, lambda a: a.update(table, record))

    async def deletes(self, table: str, record_id: Any) -> bool:
        self._adapter()
        check_record_id(record_id)
        return await self._dispatch("delete", table, lambda a: a.delete(table, record_id))

    async def get_all(self, table: str) -> List[Record]:
        return await self._dispatch("get_all", table, lambda a: a.list(table))

    async def count_records(self, table: str) -> int:
        return await self._dispatch("count", table, lambda a: a.count(table))

    async def find_by_index(self, table: str, index: str, value: Any) -> List[Record]:
        """Exact-match lookup on a named index (records ordered by the backend)."""
        return await self._dispatch("find", table, lambda a: a.find(table, index, value))

    async def close(self) -> None:
        await self._manager.close()

    # camelCase aliases
    getAll = get_all
    countRecords = count_records

    async def __aenter__(self) -> "RecordStore":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
