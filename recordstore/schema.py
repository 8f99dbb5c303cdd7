"""Schema helpers shared by both adapters.

plan_index_creation is the versioned-migration step: given what already exists
on a table and what the caller asked for, return only what must be created.
The key path helpers evaluate an IndexSpec against a plain record the same way
the durable engine's json_extract based indexes do.
"""
from __future__ import annotations
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from .validation import IndexSpec, KeyPath, split_key_path

_MISSING = object()


def plan_index_creation(existing_index_names: Iterable[str], requested: Iterable[IndexSpec]) -> List[IndexSpec]:
    existing = set(existing_index_names)
    return [spec for spec in requested if spec.name not in existing]


def _resolve(record: Mapping[str, Any], path: str) -> Any:
    value: Any = record
    for part in split_key_path(path):
        if not isinstance(value, Mapping) or part not in value:
            return _MISSING
        value = value[part]
    return value


def evaluate_key_path(record: Mapping[str, Any], key_path: KeyPath) -> Tuple[bool, Any]:
    """Return (found, value). Compound paths are found only if every part is."""
    if isinstance(key_path, tuple):
        parts = [_resolve(record, p) for p in key_path]
        if any(p is _MISSING for p in parts):
            return False, None
        return True, tuple(parts)
    value = _resolve(record, key_path)
    if value is _MISSING:
        return False, None
    return True, value


def index_keys(record: Mapping[str, Any], spec: IndexSpec) -> List[Any]:
    """Keys a record contributes to an index (several for multiEntry arrays)."""
    found, value = evaluate_key_path(record, spec.key_path)
    if not found or value is None:
        return []
    if spec.multi_entry and isinstance(value, list):
        keys: List[Any] = []
        for item in value:
            if item not in keys:
                keys.append(item)
        return keys
    return [value]


def _check_scalar(spec: IndexSpec, value: Any) -> None:
    if isinstance(value, (list, tuple, dict)):
        raise ValueError(f"Index {spec.name} lookups take scalar keys, got {value!r}")


def normalize_lookup(spec: IndexSpec, value: Any) -> Any:
    """Validate a lookup value for spec; arrays and objects are never index keys."""
    if spec.is_compound:
        if not isinstance(value, (list, tuple)) or len(value) != len(spec.key_path):
            raise ValueError(
                f"Index {spec.name} expects {len(spec.key_path)} key parts, got {value!r}"
            )
        for part in value:
            _check_scalar(spec, part)
        return tuple(value)
    _check_scalar(spec, value)
    return value


def matches(record: Mapping[str, Any], spec: IndexSpec, value: Any) -> bool:
    return normalize_lookup(spec, value) in index_keys(record, spec)


def find_conflict(records: Iterable[Mapping[str, Any]], spec: IndexSpec,
                  candidate: Mapping[str, Any], ignore_id: Any = _MISSING) -> Optional[Any]:
    """Return the first key of candidate already claimed by another record, else None."""
    wanted = index_keys(candidate, spec)
    if not wanted:
        return None
    for record in records:
        if ignore_id is not _MISSING and record.get("id") == ignore_id:
            continue
        for key in index_keys(record, spec):
            if key in wanted:
                return key
    return None
