"""Lightweight structured logging helper.

Emits one JSON object per line to stderr. Threshold comes from LOG_LEVEL and is
re-read on every call so tests and operators can flip it without reloading.
"""
from __future__ import annotations
import os, sys, json, time, threading

_lock = threading.Lock()
LEVEL_ORDER = ["DEBUG", "INFO", "WARN", "ERROR"]
DEFAULT_LEVEL = "INFO"


def _threshold() -> str:
    return os.environ.get("LOG_LEVEL", DEFAULT_LEVEL).upper()


def _should(level: str) -> bool:
    try:
        return LEVEL_ORDER.index(level) >= LEVEL_ORDER.index(_threshold())
    except ValueError:
        return True


def _jsonable(value):
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    return value


def log(level: str, event: str, **fields):
    level = level.upper()
    if not _should(level):
        return
    record = {
        "ts": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime()),
        "level": level,
        "logger": "recordstore",
        "event": event,
    }
    record.update({k: _jsonable(v) for k, v in fields.items()})
    line = json.dumps(record, separators=(',', ':'), default=str)
    with _lock:
        sys.stderr.write(line + "\n")
        sys.stderr.flush()


def debug(event: str, **fields): log("DEBUG", event, **fields)
def info(event: str, **fields): log("INFO", event, **fields)
def warn(event: str, **fields): log("WARN", event, **fields)
def error(event: str, **fields): log("ERROR", event, **fields)
