"""Backend adapter abstraction.

Defines the capability every storage substrate must offer so RecordStore can
dispatch without branching on the backend kind. Two implementations exist:
DurableAdapter (SQLite engine) and MemoryAdapter (in-process dict).

Contract shared by both:
  - create: assigns an id when the record has none; duplicate id -> BackendFailure
  - read: RecordNotFound when absent; the returned dict is the caller's to mutate
  - update / delete: RecordNotFound when absent (no upsert, no silent no-op)
  - close: idempotent
"""
from __future__ import annotations
from typing import Protocol, Any, Dict, List, Sequence

from .validation import IndexSpec

Record = Dict[str, Any]


class BackendAdapter(Protocol):
    kind: str

    async def open(self, database: str, table: str, indexes: Sequence[IndexSpec]) -> bool:
        """Bind the table (creating or upgrading schema as required)."""
        ...

    async def create(self, table: str, data: Record) -> Any: ...

    async def read(self, table: str, record_id: Any) -> Record: ...

    async def update(self, table: str, data: Record) -> Any: ...

    async def delete(self, table: str, record_id: Any) -> bool: ...

    async def list(self, table: str) -> List[Record]: ...

    async def count(self, table: str) -> int: ...

    async def find(self, table: str, index: str, value: Any) -> List[Record]: ...

    async def close(self) -> None: ...

    @property
    def is_open(self) -> bool: ...
