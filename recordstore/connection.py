"""Backend selection and schema lifecycle.

The manager owns at most one adapter. Which one is decided by the
memory_fallback setting:
  True    always the in-memory adapter
  False   always the durable engine; if it is unavailable start() fails
  "auto"  durable engine when available, otherwise in-memory with a warning
"""
from __future__ import annotations
from typing import Optional, Sequence, Union

from .base_adapter import BackendAdapter
from .durable_adapter import DurableAdapter
from .engine import DurableEngine
from .errors import BackendFailure
from .logging_util import info, warn
from .memory_adapter import MemoryAdapter
from .validation import IndexSpec

FallbackMode = Union[bool, str]
AUTO = "auto"


class ConnectionManager:
    def __init__(self, memory_fallback: FallbackMode = False, version: int = 1,
                 engine: Optional[DurableEngine] = None):
        if memory_fallback not in (True, False, AUTO):
            raise ValueError(f"memory_fallback must be True, False or 'auto', got {memory_fallback!r}")
        self.memory_fallback = memory_fallback
        self.version = version
        self._engine = engine
        self._adapter: Optional[BackendAdapter] = None

    @property
    def engine(self) -> DurableEngine:
        if self._engine is None:
            self._engine = DurableEngine()
        return self._engine

    @property
    def adapter(self) -> Optional[BackendAdapter]:
        if self._adapter is not None and self._adapter.is_open:
            return self._adapter
        return None

    def _select(self, database: str) -> BackendAdapter:
        if self.memory_fallback is True:
            kind = MemoryAdapter.kind
        elif self.engine.available():
            kind = DurableAdapter.kind
        elif self.memory_fallback == AUTO:
            warn("durable_unavailable_fallback", database=database)
            kind = MemoryAdapter.kind
        else:
            raise BackendFailure("Failed to open database: durable engine is not available")
        if self._adapter is not None and self._adapter.kind == kind:
            return self._adapter
        if kind == MemoryAdapter.kind:
            return MemoryAdapter()
        return DurableAdapter(self.engine, self.version)

    async def start(self, database: str, table: str, indexes: Sequence[IndexSpec]) -> BackendAdapter:
        adapter = self._select(database)
        if self._adapter is not None and self._adapter is not adapter:
            await self._adapter.close()
        self._adapter = adapter
        await adapter.open(database, table, indexes)
        info("store_started", backend=adapter.kind, database=database, table=table,
             indexes=[spec.name for spec in indexes])
        return adapter

    async def close(self) -> None:
        if self._adapter is None or not self._adapter.is_open:
            return
        await self._adapter.close()
        info("store_closed", backend=self._adapter.kind)
