"""Durable engine: versioned object stores on top of SQLite.

One SQLite file per database name. The engine speaks an asynchronous
request/event protocol instead of returning results directly:

    req = engine.open("shop-db", 2)
    req.on_upgrade_needed = lambda event: ...   # schema changes go here
    req.on_success = lambda conn: ...
    req.on_error = lambda exc: ...
    req.on_blocked = lambda event: ...

Work is scheduled with loop.call_soon, so callbacks must be attached before
control returns to the event loop. Every data request runs in its own SQLite
transaction (BEGIN IMMEDIATE for readwrite).

Layout inside a database file:
    PRAGMA user_version         schema version
    __stores(name, next_key)    object stores + key generator
    __indexes(store, name, ...) index catalog
    "<store>"(key, value)       one row per record, value is JSON

Indexes that are not multiEntry are real SQLite expression indexes over
json_extract(value, ...); unique ones are enforced by SQLite. multiEntry
indexes are catalog-only and use json_each for lookups and uniqueness checks.
"""
from __future__ import annotations
import asyncio, json, math, os, sqlite3
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .logging_util import warn, debug, info
from .schema import normalize_lookup
from .validation import IndexSpec, numeric_id_in_range, split_key_path

MAX_CACHE_KIB = 512 * 1024        # 512 MiB upper clamp
MIN_CACHE_KIB = 16
DEFAULT_CACHE_KIB = 8 * 1024      # 8 MiB
MAX_BUSY_TIMEOUT_MS = 600_000
DEFAULT_BUSY_TIMEOUT_MS = 30_000
DEFAULT_DATA_DIR = "data"
DB_SUFFIX = ".sqlite3"

READONLY = "readonly"
READWRITE = "readwrite"

_CATALOG_DDL = (
    "CREATE TABLE IF NOT EXISTS __stores ("
    " name TEXT PRIMARY KEY,"
    " next_key INTEGER NOT NULL DEFAULT 1)",
    "CREATE TABLE IF NOT EXISTS __indexes ("
    " store TEXT NOT NULL,"
    " name TEXT NOT NULL,"
    " key_path TEXT NOT NULL,"
    " is_unique INTEGER NOT NULL DEFAULT 0,"
    " multi_entry INTEGER NOT NULL DEFAULT 0,"
    " PRIMARY KEY (store, name))",
)

# path -> live connections, shared by every engine in the process
_LIVE: Dict[str, List["EngineConnection"]] = {}


class EngineError(Exception):
    """Base for engine-level failures (not the record store taxonomy)."""


class NotFoundError(EngineError):
    pass


class ConstraintError(EngineError):
    pass


class DataError(EngineError, ValueError):
    pass


class InvalidStateError(EngineError):
    pass


@dataclass
class EngineConfig:
    data_dir: str = DEFAULT_DATA_DIR
    cache_kib: int = DEFAULT_CACHE_KIB
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    verify_on_connect: bool = False
    disabled: bool = False

    @classmethod
    def from_env(cls) -> "EngineConfig":
        def _int(name: str, default: int) -> int:
            raw = os.environ.get(name)
            if raw is None:
                return default
            try:
                return int(raw)
            except ValueError:
                warn("invalid_env_int", key=name, value=raw, default=default)
                return default
        cache_kib = _int("CACHE_SIZE_KIB", DEFAULT_CACHE_KIB)
        busy_ms = _int("BUSY_TIMEOUT_MS", DEFAULT_BUSY_TIMEOUT_MS)
        adjusted = {}
        if cache_kib < MIN_CACHE_KIB or cache_kib > MAX_CACHE_KIB:
            adjusted["cache_kib"] = cache_kib
            cache_kib = min(MAX_CACHE_KIB, max(MIN_CACHE_KIB, cache_kib))
        if busy_ms < 0 or busy_ms > MAX_BUSY_TIMEOUT_MS:
            adjusted["busy_timeout_ms"] = busy_ms
            busy_ms = min(MAX_BUSY_TIMEOUT_MS, max(0, busy_ms))
        if adjusted:
            warn("engine_config_clamped", original=adjusted,
                 clamped={"cache_kib": cache_kib, "busy_timeout_ms": busy_ms})
        return cls(
            data_dir=os.environ.get("RECORDSTORE_DATA_DIR", DEFAULT_DATA_DIR),
            cache_kib=cache_kib,
            busy_timeout_ms=busy_ms,
            verify_on_connect=os.environ.get("VERIFY_ON_CONNECT", "0") == "1",
            disabled=os.environ.get("RECORDSTORE_DISABLE_DURABLE", "0") == "1",
        )


# --- SQL helpers ---------------------------------------------------------------------

def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _json_path(path: str) -> str:
    return "$" + "".join('."' + part + '"' for part in split_key_path(path))


def _json_extract(path: str) -> str:
    literal = _json_path(path).replace("'", "''")
    return f"json_extract(value, '{literal}')"


def _json_type(path: str) -> str:
    literal = _json_path(path).replace("'", "''")
    return f"json_type(value, '{literal}')"


def _sql_index_name(store: str, index: str) -> str:
    return _quote(f"{store}::{index}")


def _check_key(key: Any) -> None:
    if isinstance(key, bool) or not isinstance(key, (int, float, str)):
        raise DataError(f"The key {key!r} is not a valid key (expected int, float or str)")
    if isinstance(key, float) and math.isnan(key):
        raise DataError("NaN is not a valid key")
    if not isinstance(key, str) and not numeric_id_in_range(key):
        raise DataError(f"The key {key!r} is outside the key generator range")


def _spec_from_row(row) -> IndexSpec:
    key_path = json.loads(row["key_path"])
    if isinstance(key_path, list):
        key_path = tuple(key_path)
    return IndexSpec(name=row["name"], key_path=key_path,
                     unique=bool(row["is_unique"]), multi_entry=bool(row["multi_entry"]))


# --- Requests ------------------------------------------------------------------------

class Request:
    """Pending engine request. Exactly one of on_success / on_error fires."""

    def __init__(self, source: Any = None):
        self.source = source
        self.ready_state = "pending"
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.on_success: Optional[Callable[[Any], None]] = None
        self.on_error: Optional[Callable[[BaseException], None]] = None

    def _succeed(self, result: Any) -> None:
        self.ready_state = "done"
        self.result = result
        if self.on_success is not None:
            self.on_success(result)

    def _fail(self, exc: BaseException) -> None:
        self.ready_state = "done"
        self.error = exc
        if self.on_error is not None:
            self.on_error(exc)


@dataclass
class VersionChangeEvent:
    old_version: int
    new_version: int
    transaction: Optional["UpgradeTransaction"] = None


class OpenRequest(Request):
    def __init__(self, name: str, version: int):
        super().__init__(source=name)
        self.name = name
        self.version = version
        self.on_upgrade_needed: Optional[Callable[[VersionChangeEvent], None]] = None
        self.on_blocked: Optional[Callable[[VersionChangeEvent], None]] = None


# --- Schema objects (valid only inside an upgrade) -----------------------------------

class StoreSchema:
    def __init__(self, conn: sqlite3.Connection, name: str):
        self._conn = conn
        self.name = name

    @property
    def index_names(self) -> List[str]:
        rows = self._conn.execute(
            "SELECT name FROM __indexes WHERE store=? ORDER BY name", (self.name,)
        ).fetchall()
        return [r["name"] for r in rows]

    def create_index(self, spec: IndexSpec) -> None:
        if spec.name in self.index_names:
            raise ConstraintError(f"Index {spec.name} already exists on {self.name}")
        self._conn.execute(
            "INSERT INTO __indexes(store, name, key_path, is_unique, multi_entry) VALUES (?,?,?,?,?)",
            (self.name, spec.name, json.dumps(spec.key_path_json()), int(spec.unique), int(spec.multi_entry)),
        )
        if spec.multi_entry:
            if spec.unique:
                _check_multi_entry_unique_existing(self._conn, self.name, spec)
            return
        paths = spec.key_path if spec.is_compound else (spec.key_path,)
        columns = ", ".join(_json_extract(p) for p in paths)
        unique = "UNIQUE " if spec.unique else ""
        self._conn.execute(
            f"CREATE {unique}INDEX {_sql_index_name(self.name, spec.name)} "
            f"ON {_quote(self.name)} ({columns})"
        )


class UpgradeTransaction:
    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    @property
    def object_store_names(self) -> List[str]:
        return [r["name"] for r in self._conn.execute("SELECT name FROM __stores ORDER BY name")]

    def create_object_store(self, name: str) -> StoreSchema:
        if name in self.object_store_names:
            raise ConstraintError(f"Object store {name} already exists")
        self._conn.execute(
            f"CREATE TABLE {_quote(name)} (key BLOB PRIMARY KEY NOT NULL, value TEXT NOT NULL)"
        )
        self._conn.execute("INSERT INTO __stores(name, next_key) VALUES (?, 1)", (name,))
        return StoreSchema(self._conn, name)

    def object_store(self, name: str) -> StoreSchema:
        if name not in self.object_store_names:
            raise NotFoundError(f"Object store {name} not found")
        return StoreSchema(self._conn, name)


def _check_multi_entry_unique_existing(conn: sqlite3.Connection, store: str, spec: IndexSpec) -> None:
    row = conn.execute(
        f"SELECT j.value, COUNT(DISTINCT s.key) AS n FROM {_quote(store)} s, "
        f"json_each(s.value, ?) j GROUP BY j.value HAVING n > 1 LIMIT 1",
        (_json_path(spec.key_path),),
    ).fetchone()
    if row is not None:
        raise ConstraintError(f"Unique index {spec.name} violated by existing key {row[0]!r}")


# --- Data access (one call == one transaction) ---------------------------------------

class ObjectStore:
    def __init__(self, conn: sqlite3.Connection, name: str):
        self._conn = conn
        self.name = name
        self._table = _quote(name)

    def _indexes(self) -> List[IndexSpec]:
        rows = self._conn.execute(
            "SELECT name, key_path, is_unique, multi_entry FROM __indexes WHERE store=?", (self.name,)
        ).fetchall()
        return [_spec_from_row(r) for r in rows]

    def _serialize(self, value: Dict[str, Any]) -> str:
        try:
            return json.dumps(value, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise DataError(f"Record could not be serialized: {e}") from e

    def _check_multi_entry(self, key: Any, value: Dict[str, Any]) -> None:
        for spec in self._indexes():
            if not (spec.multi_entry and spec.unique):
                continue
            path = _json_path(spec.key_path)
            for (item,) in self._conn.execute("SELECT value FROM json_each(?, ?)", (json.dumps(value), path)):
                clash = self._conn.execute(
                    f"SELECT 1 FROM {self._table} s WHERE s.key != ? AND EXISTS "
                    f"(SELECT 1 FROM json_each(s.value, ?) j WHERE j.value = ?) LIMIT 1",
                    (key, path, item),
                ).fetchone()
                if clash:
                    raise ConstraintError(f"Unique index {spec.name} already contains {item!r}")

    def _next_key(self) -> int:
        row = self._conn.execute("SELECT next_key FROM __stores WHERE name=?", (self.name,)).fetchone()
        return row["next_key"]

    def _bump_generator(self, key: Any) -> None:
        if isinstance(key, (int, float)) and key >= self._next_key():
            self._conn.execute("UPDATE __stores SET next_key=? WHERE name=?",
                               (int(math.floor(key)) + 1, self.name))

    def add(self, value: Dict[str, Any]) -> Any:
        record = dict(value)
        key = record.get("id")
        if key is None:
            key = self._next_key()
            record["id"] = key
        _check_key(key)
        payload = self._serialize(record)
        self._check_multi_entry(key, record)
        try:
            self._conn.execute(f"INSERT INTO {self._table}(key, value) VALUES (?, ?)", (key, payload))
        except sqlite3.IntegrityError as e:
            raise ConstraintError(str(e)) from e
        self._bump_generator(key)
        return key

    def put(self, value: Dict[str, Any]) -> Any:
        key = value.get("id")
        if key is None:
            raise DataError("put() requires an inline id")
        _check_key(key)
        payload = self._serialize(value)
        self._check_multi_entry(key, value)
        try:
            self._conn.execute(
                f"INSERT INTO {self._table}(key, value) VALUES (?, ?) "
                f"ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, payload),
            )
        except sqlite3.IntegrityError as e:
            raise ConstraintError(str(e)) from e
        self._bump_generator(key)
        return key

    def get(self, key: Any) -> Optional[Dict[str, Any]]:
        _check_key(key)
        row = self._conn.execute(f"SELECT value FROM {self._table} WHERE key=?", (key,)).fetchone()
        return json.loads(row["value"]) if row else None

    def delete(self, key: Any) -> None:
        _check_key(key)
        self._conn.execute(f"DELETE FROM {self._table} WHERE key=?", (key,))

    def get_all(self) -> List[Dict[str, Any]]:
        rows = self._conn.execute(f"SELECT value FROM {self._table} ORDER BY key").fetchall()
        return [json.loads(r["value"]) for r in rows]

    def count(self) -> int:
        return self._conn.execute(f"SELECT COUNT(*) FROM {self._table}").fetchone()[0]

    def index_get_all(self, index: str, value: Any) -> List[Dict[str, Any]]:
        spec = next((s for s in self._indexes() if s.name == index), None)
        if spec is None:
            raise NotFoundError(f"Index {index} not found on {self.name}")
        try:
            lookup = normalize_lookup(spec, value)
        except ValueError as e:
            raise DataError(str(e)) from e
        # json_extract renders arrays/objects as JSON text; keep them from matching a string key
        if spec.multi_entry:
            sql = (f"SELECT value FROM {self._table} s WHERE EXISTS "
                   f"(SELECT 1 FROM json_each(s.value, ?) j "
                   f"WHERE j.value = ? AND j.type NOT IN ('array', 'object')) ORDER BY key")
            params: Tuple[Any, ...] = (_json_path(spec.key_path), lookup)
        else:
            paths = spec.key_path if spec.is_compound else (spec.key_path,)
            where = " AND ".join(
                f"{_json_extract(p)} = ? AND {_json_type(p)} NOT IN ('array', 'object')" for p in paths
            )
            sql = f"SELECT value FROM {self._table} WHERE {where} ORDER BY key"
            params = tuple(lookup) if spec.is_compound else (lookup,)
        return [json.loads(r["value"]) for r in self._conn.execute(sql, params)]


class EngineConnection:
    """Live handle to one database at one schema version."""

    def __init__(self, name: str, path: str, conn: sqlite3.Connection, version: int):
        self.name = name
        self.path = path
        self.version = version
        self._conn = conn
        self.on_version_change: Optional[Callable[[VersionChangeEvent], None]] = None

    @property
    def closed(self) -> bool:
        return self._conn is None

    @property
    def object_store_names(self) -> List[str]:
        if self._conn is None:
            raise InvalidStateError("The connection is closed")
        return [r["name"] for r in self._conn.execute("SELECT name FROM __stores ORDER BY name")]

    def index_names(self, store: str) -> List[str]:
        if self._conn is None:
            raise InvalidStateError("The connection is closed")
        rows = self._conn.execute("SELECT name FROM __indexes WHERE store=? ORDER BY name", (store,))
        return [r["name"] for r in rows]

    def request(self, store: str, mode: str, op: str, *args: Any) -> Request:
        """Queue ``op`` against ``store`` in its own transaction and return its Request."""
        if self._conn is None:
            raise InvalidStateError("The connection is closed")
        if mode not in (READONLY, READWRITE):
            raise ValueError(f"Invalid transaction mode: {mode}")
        if store not in self.object_store_names:
            raise NotFoundError(f"Object store {store} not found")
        request = Request(source=store)
        asyncio.get_running_loop().call_soon(self._execute, request, store, mode, op, args)
        return request

    def _execute(self, request: Request, store: str, mode: str, op: str, args: Tuple[Any, ...]) -> None:
        conn = self._conn
        if conn is None:
            request._fail(InvalidStateError("The connection was closed before the transaction ran"))
            return
        try:
            conn.execute("BEGIN IMMEDIATE" if mode == READWRITE else "BEGIN")
            try:
                if mode == READONLY and op in ("add", "put", "delete"):
                    raise InvalidStateError(f"{op} is not allowed in a readonly transaction")
                result = getattr(ObjectStore(conn, store), op)(*args)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except Exception as e:
            debug("transaction_aborted", database=self.name, store=store, op=op, error=str(e))
            request._fail(e)
            return
        request._succeed(result)

    def close(self) -> None:
        if self._conn is None:
            return
        live = _LIVE.get(self.path, [])
        if self in live:
            live.remove(self)
        try:
            self._conn.close()
        finally:
            self._conn = None


class DurableEngine:
    """Factory for versioned SQLite-backed databases."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig.from_env()

    def available(self) -> bool:
        return not self.config.disabled

    def path_for(self, name: str) -> str:
        return os.path.join(self.config.data_dir, name + DB_SUFFIX)

    def open(self, name: str, version: int) -> OpenRequest:
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise TypeError(f"Version must be a positive integer, got {version!r}")
        request = OpenRequest(name, version)
        asyncio.get_running_loop().call_soon(self._run_open, request)
        return request

    def stored_version(self, name: str) -> int:
        path = self.path_for(name)
        if not os.path.exists(path):
            return 0
        conn = sqlite3.connect(path)
        try:
            return conn.execute("PRAGMA user_version").fetchone()[0]
        finally:
            conn.close()

    # --- Internal -------------------------------------------------------------------
    def _connect(self, path: str) -> sqlite3.Connection:
        if os.path.isdir(path):
            raise ValueError(f"Path points to a directory, expected file: {path}")
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        conn = sqlite3.connect(path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        self._apply_pragmas(conn, path)
        if self.config.verify_on_connect:
            res = conn.execute("PRAGMA integrity_check").fetchone()[0]
            if res != "ok":
                warn("integrity_check_failed", path=path, result=res)
        return conn

    def _apply_pragmas(self, conn: sqlite3.Connection, path: str) -> None:
        conn.execute(f"PRAGMA busy_timeout={int(self.config.busy_timeout_ms)}")
        try:
            jm = conn.execute("PRAGMA journal_mode=WAL").fetchone()[0]
            if jm.lower() != "wal":
                warn("journal_mode_unexpected", got=jm, path=path)
        except sqlite3.Error as e:
            warn("pragma_failed", pragma="journal_mode=WAL", path=path, error=str(e))
        for p in (f"cache_size=-{self.config.cache_kib}", "synchronous=NORMAL"):
            try:
                conn.execute(f"PRAGMA {p}")
            except sqlite3.Error as e:
                warn("pragma_failed", pragma=p, path=path, error=str(e))

    def _run_open(self, request: OpenRequest) -> None:
        path = os.path.realpath(self.path_for(request.name))
        try:
            conn = self._connect(path)
        except (sqlite3.Error, OSError, ValueError) as e:
            request._fail(e)
            return
        try:
            stored = conn.execute("PRAGMA user_version").fetchone()[0]
            if request.version > stored:
                if not self._notify_version_change(path, stored, request.version):
                    conn.close()
                    if request.on_blocked is not None:
                        request.on_blocked(VersionChangeEvent(stored, request.version))
                    return
                self._upgrade(conn, request, stored)
                version = request.version
            else:
                version = stored
        except Exception as e:
            conn.close()
            request._fail(e)
            return
        handle = EngineConnection(request.name, path, conn, version)
        _LIVE.setdefault(path, []).append(handle)
        request._succeed(handle)

    def _notify_version_change(self, path: str, old: int, new: int) -> bool:
        """Ask live connections to step aside; True when none remain open."""
        for other in list(_LIVE.get(path, [])):
            if other.on_version_change is not None:
                other.on_version_change(VersionChangeEvent(old, new))
        return not _LIVE.get(path)

    def _upgrade(self, conn: sqlite3.Connection, request: OpenRequest, stored: int) -> None:
        conn.execute("BEGIN IMMEDIATE")
        try:
            for ddl in _CATALOG_DDL:
                conn.execute(ddl)
            if request.on_upgrade_needed is not None:
                request.on_upgrade_needed(
                    VersionChangeEvent(stored, request.version, UpgradeTransaction(conn))
                )
            conn.execute(f"PRAGMA user_version={int(request.version)}")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
        info("engine_upgraded", database=request.name, old_version=stored, new_version=request.version)

    def health_check(self, name: str) -> Dict[str, Any]:
        """Return core pragma values and store counts for one database."""
        path = self.path_for(name)
        if not os.path.exists(path):
            return {"ok": False, "error": f"Database not found: {path}"}
        try:
            conn = self._connect(path)
        except Exception as e:
            return {"ok": False, "error": str(e)}
        try:
            stores: Dict[str, int] = {}
            has_catalog = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type='table' AND name='__stores'"
            ).fetchone()
            if has_catalog:
                for row in conn.execute("SELECT name FROM __stores ORDER BY name").fetchall():
                    stores[row["name"]] = conn.execute(
                        f"SELECT COUNT(*) FROM {_quote(row['name'])}").fetchone()[0]
            return {
                "ok": True,
                "path": path,
                "version": conn.execute("PRAGMA user_version").fetchone()[0],
                "journal_mode": conn.execute("PRAGMA journal_mode").fetchone()[0],
                "cache_size": conn.execute("PRAGMA cache_size").fetchone()[0],
                "busy_timeout": conn.execute("PRAGMA busy_timeout").fetchone()[0],
                "live_connections": len(_LIVE.get(os.path.realpath(path), [])),
                "stores": stores,
            }
        finally:
            conn.close()


def cli_dump_config():  # pragma: no cover - thin CLI wrapper
    """CLI helper: print resolved EngineConfig + health_check JSON."""
    import argparse
    ap = argparse.ArgumentParser(description='Dump engine config and health info')
    ap.add_argument('database', help='Database name, e.g. shop-db')
    ap.add_argument('--data-dir', help='Override RECORDSTORE_DATA_DIR')
    args = ap.parse_args()
    engine = DurableEngine()
    if args.data_dir:
        engine.config.data_dir = args.data_dir
    out = {'config': engine.config.__dict__.copy(), 'health_check': engine.health_check(args.database)}
    print(json.dumps(out, indent=2))


if __name__ == '__main__':  # pragma: no cover
    cli_dump_config()
