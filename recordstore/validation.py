"""Name and index descriptor validation.

Everything here is pure and synchronous so that RecordStore.start() can reject
bad input before any backend is touched.

Naming conventions:
  - database: ``<alnum>-db`` or ``<alnum>_db``
  - table:    ``<alnum>-<alnum>`` or ``<alnum>_<alnum>``
  - index:    structured descriptors must be named ``*-index`` / ``*_index``;
              a bare string index is a field name and doubles as its key path
"""
from __future__ import annotations
import math, re
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Tuple, Union

from .errors import ValidationError

_DATABASE_RE = re.compile(r"^[a-zA-Z0-9]+[-_]db$")
_TABLE_RE = re.compile(r"^[a-zA-Z0-9]+[-_][a-zA-Z0-9]+$")
_FIELD_RE = re.compile(r"^[a-zA-Z0-9]+[-_]?[a-zA-Z0-9]+$")
_KEY_PATH_RE = re.compile(r"^[a-zA-Z0-9]+(\.[a-zA-Z0-9]+)*$")
INDEX_SUFFIXES = ("-index", "_index")
VALID_OPTIONS = ("unique", "multiEntry")
# SQLite INTEGER is int64 and the key generator stores id + 1
MIN_NUMERIC_ID = -(2 ** 63)
MAX_NUMERIC_ID = 2 ** 63 - 2

KeyPath = Union[str, Tuple[str, ...]]


@dataclass(frozen=True)
class IndexSpec:
    name: str
    key_path: KeyPath
    unique: bool = False
    multi_entry: bool = False

    @property
    def is_compound(self) -> bool:
        return isinstance(self.key_path, tuple)

    def key_path_json(self) -> Any:
        """key_path as stored in the engine catalog (list for compound paths)."""
        return list(self.key_path) if self.is_compound else self.key_path


def is_valid_database_name(name: Any) -> bool:
    return isinstance(name, str) and bool(_DATABASE_RE.match(name))


def is_valid_table_name(name: Any) -> bool:
    return isinstance(name, str) and bool(_TABLE_RE.match(name))


def _valid_path(path: Any) -> bool:
    return isinstance(path, str) and bool(_KEY_PATH_RE.match(path))


def _check_key_path(key_path: Any) -> KeyPath:
    if isinstance(key_path, (list, tuple)):
        if len(key_path) == 0:
            raise ValidationError("Compound keyPath cannot be empty")
        for segment in key_path:
            if not _valid_path(segment):
                raise ValidationError(f"Invalid keyPath segment: {segment}")
        return tuple(key_path)
    if not _valid_path(key_path):
        raise ValidationError(f"Invalid keyPath: {key_path}")
    return key_path


def _check_options(options: Any) -> Mapping[str, bool]:
    if options is None:
        return {}
    if not isinstance(options, Mapping):
        raise ValidationError(f"Invalid index options: {options!r}")
    for option, value in options.items():
        if option not in VALID_OPTIONS:
            raise ValidationError(f"Invalid option: {option}")
        if not isinstance(value, bool):
            raise ValidationError(f"Option {option} must be a boolean")
    return options


def validate_index_spec(index: Union[str, IndexSpec, Mapping[str, Any]]) -> IndexSpec:
    """Validate one index entry and return its normalized IndexSpec.

    Accepts a bare field name, an IndexSpec, or a mapping shaped like
    ``{"name": ..., "keyPath": ..., "options": {"unique": ..., "multiEntry": ...}}``.
    Raises ValidationError on the first problem found.
    """
    if isinstance(index, str):
        if not _FIELD_RE.match(index):
            raise ValidationError(f"Invalid index name: {index}. Must be a valid field name.")
        return IndexSpec(name=index, key_path=index)

    if isinstance(index, IndexSpec):
        name = index.name
        raw_path = index.key_path
        options = {"unique": index.unique, "multiEntry": index.multi_entry}
    elif isinstance(index, Mapping):
        name = index.get("name")
        raw_path = index.get("keyPath", index.get("key_path"))
        options = index.get("options")
    else:
        raise ValidationError(f"Invalid index descriptor: {index!r}")

    if not isinstance(name, str) or not name.endswith(INDEX_SUFFIXES):
        raise ValidationError(f"Invalid index name: {name}. Must end with -index or _index")

    key_path = _check_key_path(raw_path)
    options = _check_options(options)

    multi_entry = options.get("multiEntry", False)
    if multi_entry and isinstance(key_path, tuple):
        raise ValidationError("multiEntry option cannot be used with compound keyPath")

    return IndexSpec(
        name=name,
        key_path=key_path,
        unique=options.get("unique", False),
        multi_entry=multi_entry,
    )


def normalize_indexes(indexes: Iterable[Union[str, IndexSpec, Mapping[str, Any]]]) -> List[IndexSpec]:
    """Validate every entry up front; one bad entry rejects the whole list."""
    specs = [validate_index_spec(index) for index in (indexes or ())]
    seen = set()
    for spec in specs:
        if spec.name in seen:
            raise ValidationError(f"Duplicate index name: {spec.name}")
        seen.add(spec.name)
    return specs


def validate_names(database: Any, table: Any) -> None:
    if not is_valid_database_name(database):
        raise ValidationError("Invalid database name. Must end with -db or _db")
    if not is_valid_table_name(table):
        raise ValidationError("Invalid table name. Must contain hyphen or underscore")


def split_key_path(path: str) -> List[str]:
    return path.split(".")


def numeric_id_in_range(record_id: Any) -> bool:
    """True for finite numbers the key generator can step past (id + 1 fits int64)."""
    if isinstance(record_id, float) and not math.isfinite(record_id):
        return False
    return MIN_NUMERIC_ID <= record_id <= MAX_NUMERIC_ID


def check_record_id(record_id: Any) -> Any:
    """Valid keys are int, float (finite, within int64) and str; bool is rejected."""
    if record_id is None:
        raise ValidationError("Record ID is required")
    if isinstance(record_id, bool) or not isinstance(record_id, (int, float, str)):
        raise ValidationError(f"Invalid record ID: {record_id!r}. Must be int, float or str")
    if isinstance(record_id, float) and math.isnan(record_id):
        raise ValidationError("Invalid record ID: NaN")
    if not isinstance(record_id, str) and not numeric_id_in_range(record_id):
        raise ValidationError(
            f"Invalid record ID: {record_id!r}. Numeric IDs must lie in [{MIN_NUMERIC_ID}, {MAX_NUMERIC_ID}]"
        )
    return record_id
