"""Volatile backend: per-table dicts of deep-copied records.

Nothing leaves or enters the mapping by reference; every read and write goes
through copy.deepcopy so callers cannot mutate stored state. All steps run
without suspending, so a single operation is never interleaved with another.
"""
from __future__ import annotations
import copy
from typing import Any, Dict, List, Sequence

from .base_adapter import Record
from .errors import BackendFailure, RecordNotFound, TableNotInitialized
from .logging_util import debug, info
from .schema import find_conflict, index_keys, matches, plan_index_creation
from .validation import IndexSpec, numeric_id_in_range


def _clone(context: str, value: Any) -> Any:
    try:
        return copy.deepcopy(value)
    except Exception as e:
        raise BackendFailure.from_exc(context, e) from e


class MemoryAdapter:
    kind = "memory"

    def __init__(self):
        self._tables: Dict[str, Dict[Any, Record]] = {}
        self._counters: Dict[str, int] = {}
        self._indexes: Dict[str, Dict[str, IndexSpec]] = {}
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, database: str, table: str, indexes: Sequence[IndexSpec]) -> bool:
        rows = self._tables.setdefault(table, {})
        self._counters.setdefault(table, 1)
        registered = self._indexes.setdefault(table, {})
        missing = plan_index_creation(registered, indexes)
        for spec in missing:
            if spec.unique:
                self._check_existing_unique(table, rows, spec)
        for spec in missing:
            registered[spec.name] = spec
            info("index_created", backend=self.kind, table=table, index=spec.name)
        self._open = True
        return True

    def _table(self, table: str) -> Dict[Any, Record]:
        if table not in self._tables:
            raise TableNotInitialized(table)
        return self._tables[table]

    def _next_id(self, table: str) -> int:
        return self._counters.get(table, 1)

    def _advance(self, table: str, record_id: Any) -> None:
        if isinstance(record_id, (int, float)) and record_id >= self._next_id(table):
            self._counters[table] = int(record_id) + 1

    def _check_existing_unique(self, table: str, rows: Dict[Any, Record], spec: IndexSpec) -> None:
        seen: List[Any] = []
        for record in rows.values():
            for key in index_keys(record, spec):
                if key in seen:
                    raise BackendFailure(
                        f"Failed to create index: unique index {spec.name} on {table} violated by existing key {key!r}"
                    )
                seen.append(key)

    def _check_unique(self, context: str, table: str, record: Record) -> None:
        rows = self._tables[table].values()
        for spec in self._indexes.get(table, {}).values():
            if not spec.unique:
                continue
            clash = find_conflict(rows, spec, record, ignore_id=record["id"])
            if clash is not None:
                raise BackendFailure(f"{context}: unique index {spec.name} already contains {clash!r}")

    async def create(self, table: str, data: Record) -> Any:
        rows = self._table(table)
        record = _clone("Failed to create record", data)
        record_id = record.get("id")
        if record_id is None:
            record_id = self._next_id(table)
            if not numeric_id_in_range(record_id):
                raise BackendFailure(f"Failed to create record: key generator for {table} is exhausted")
            record["id"] = record_id
        elif record_id in rows:
            raise BackendFailure(f"Failed to create record: Key {record_id!r} already exists in {table}")
        self._check_unique("Failed to create record", table, record)
        self._advance(table, record_id)
        rows[record_id] = record
        return record_id

    async def read(self, table: str, record_id: Any) -> Record:
        rows = self._table(table)
        if record_id not in rows:
            raise RecordNotFound(table, record_id, "in memory")
        return copy.deepcopy(rows[record_id])

    async def update(self, table: str, data: Record) -> Any:
        rows = self._table(table)
        record_id = data["id"]
        if record_id not in rows:
            raise RecordNotFound(table, record_id, "for update")
        record = _clone("Failed to update record", data)
        self._check_unique("Failed to update record", table, record)
        rows[record_id] = record
        return record_id

    async def delete(self, table: str, record_id: Any) -> bool:
        rows = self._table(table)
        if record_id not in rows:
            raise RecordNotFound(table, record_id, "for delete")
        del rows[record_id]
        return True

    async def list(self, table: str) -> List[Record]:
        return [copy.deepcopy(r) for r in self._table(table).values()]

    async def count(self, table: str) -> int:
        return len(self._table(table))

    async def find(self, table: str, index: str, value: Any) -> List[Record]:
        rows = self._table(table)
        spec = self._indexes.get(table, {}).get(index)
        if spec is None:
            raise BackendFailure(f"Failed to query index: Index {index} not found on {table}")
        try:
            return [copy.deepcopy(r) for r in rows.values() if matches(r, spec, value)]
        except ValueError as e:
            raise BackendFailure.from_exc("Failed to query index", e) from e

    async def close(self) -> None:
        self._tables.clear()
        self._counters.clear()
        self._indexes.clear()
        self._open = False
        debug("memory_cleared", backend=self.kind)
