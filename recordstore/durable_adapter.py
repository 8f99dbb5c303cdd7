"""Durable backend: bridges the engine's request/event protocol to coroutines.

Each engine request gets a future that its on_success / on_error callbacks
resolve; awaiting that future is the only suspension point of an operation.
Update and delete read first so a missing id is always RecordNotFound, never
a silent upsert or no-op.
"""
from __future__ import annotations
import asyncio, copy, sqlite3
from typing import Any, List, Optional, Sequence

from .base_adapter import Record
from .engine import (
    READONLY,
    READWRITE,
    DurableEngine,
    EngineConnection,
    EngineError,
    VersionChangeEvent,
)
from .errors import BackendFailure, Blocked, ConnectionNotInitialized, RecordNotFound
from .logging_util import info, warn
from .schema import plan_index_creation
from .validation import IndexSpec

_ENGINE_ERRORS = (EngineError, sqlite3.Error, TypeError, ValueError, OverflowError)


def _settle(future: asyncio.Future, result: Any = None, exc: Optional[BaseException] = None) -> None:
    if future.done():
        return
    if exc is not None:
        future.set_exception(exc)
    else:
        future.set_result(result)


class DurableAdapter:
    kind = "durable"

    def __init__(self, engine: DurableEngine, version: int = 1):
        self._engine = engine
        self._version = version
        self._db: Optional[EngineConnection] = None

    @property
    def is_open(self) -> bool:
        return self._db is not None

    @property
    def version(self) -> Optional[int]:
        return self._db.version if self._db else None

    # --- Lifecycle ------------------------------------------------------------------
    async def open(self, database: str, table: str, indexes: Sequence[IndexSpec]) -> bool:
        if self._db is not None:
            self._db.close()
            self._db = None
        db = await self._open_at(database, self._version, table, indexes)
        if table not in db.object_store_names:
            # the engine only creates stores during an upgrade
            bumped = max(db.version, self._version) + 1
            db.close()
            info("schema_version_bumped", database=database, table=table, version=bumped)
            db = await self._open_at(database, bumped, table, indexes)
        self._db = db
        return True

    async def _open_at(self, database: str, version: int, table: str,
                       indexes: Sequence[IndexSpec]) -> EngineConnection:
        future = asyncio.get_running_loop().create_future()
        try:
            request = self._engine.open(database, version)
        except TypeError as e:
            raise BackendFailure.from_exc("Failed to open database", e) from e

        def upgrade(event: VersionChangeEvent) -> None:
            tx = event.transaction
            info("schema_upgrade", database=database, table=table,
                 old_version=event.old_version, new_version=event.new_version)
            if table in tx.object_store_names:
                store = tx.object_store(table)
                todo = plan_index_creation(store.index_names, indexes)
            else:
                store = tx.create_object_store(table)
                todo = list(indexes)
            for spec in todo:
                store.create_index(spec)
                info("index_created", backend=self.kind, table=table, index=spec.name)

        def failed(exc: BaseException) -> None:
            warn("open_failed", database=database, version=version, error=str(exc))
            failure = BackendFailure.from_exc("Failed to open database", exc)
            failure.__cause__ = exc
            _settle(future, exc=failure)

        def blocked(event: VersionChangeEvent) -> None:
            warn("open_blocked", database=database, held=event.old_version, requested=event.new_version)
            _settle(future, exc=Blocked(database, event.new_version, event.old_version))

        request.on_upgrade_needed = upgrade
        request.on_success = lambda db: _settle(future, db)
        request.on_error = failed
        request.on_blocked = blocked
        return await future

    async def close(self) -> None:
        if self._db is None:
            return
        self._db.close()
        self._db = None

    # --- Requests -------------------------------------------------------------------
    async def _request(self, context: str, table: str, mode: str, op: str, *args: Any) -> Any:
        if self._db is None:
            raise ConnectionNotInitialized()
        future = asyncio.get_running_loop().create_future()
        try:
            request = self._db.request(table, mode, op, *args)
        except _ENGINE_ERRORS as e:
            raise BackendFailure.from_exc(context, e) from e
        request.on_success = lambda result: _settle(future, result)
        request.on_error = lambda exc: _settle(future, exc=exc)
        try:
            return await future
        except _ENGINE_ERRORS as e:
            raise BackendFailure.from_exc(context, e) from e

    def _snapshot(self, context: str, data: Record) -> Record:
        # values are captured when the request is issued, not when it runs
        try:
            return copy.deepcopy(data)
        except Exception as e:
            raise BackendFailure.from_exc(context, e) from e

    async def create(self, table: str, data: Record) -> Any:
        context = "Failed to create record"
        return await self._request(context, table, READWRITE, "add", self._snapshot(context, data))

    async def read(self, table: str, record_id: Any) -> Record:
        record = await self._request("Failed to read record", table, READONLY, "get", record_id)
        if record is None:
            raise RecordNotFound(table, record_id)
        return record

    async def _require(self, table: str, record_id: Any, suffix: str) -> None:
        try:
            await self.read(table, record_id)
        except RecordNotFound:
            raise RecordNotFound(table, record_id, suffix) from None

    async def update(self, table: str, data: Record) -> Any:
        context = "Failed to update record"
        snapshot = self._snapshot(context, data)
        await self._require(table, snapshot["id"], "for update")
        return await self._request(context, table, READWRITE, "put", snapshot)

    async def delete(self, table: str, record_id: Any) -> bool:
        await self._require(table, record_id, "for delete")
        await self._request("Failed to delete record", table, READWRITE, "delete", record_id)
        return True

    async def list(self, table: str) -> List[Record]:
        return await self._request("Failed to get all records", table, READONLY, "get_all")

    async def count(self, table: str) -> int:
        return await self._request("Failed to count records", table, READONLY, "count")

    async def find(self, table: str, index: str, value: Any) -> List[Record]:
        return await self._request("Failed to query index", table, READONLY, "index_get_all", index, value)
