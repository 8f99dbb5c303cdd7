#!/usr/bin/env python3
"""Smoke test for core invariants on both backends.

Checks (per backend):
  * start() succeeds for a valid database/table pair
  * create -> read round trip returns the record with its id
  * update without a prior record is refused (no upsert)
  * delete then read raises RecordNotFound
  * count matches live records
  * (Optional) engine health_check contains required keys (set SMOKE_HEALTH_CHECK=1)

Durable data goes to RECORDSTORE_DATA_DIR (a temp dir when unset).
Prints one JSON line: {"success": true} or {"success": false, "failures": [...]}.
"""
import asyncio, json, os, sys, tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from recordstore import RecordNotFound, RecordStore  # noqa: E402
from recordstore.engine import DurableEngine, EngineConfig  # noqa: E402

DATABASE = "smoke-db"
TABLE = "smoke-table"

failures = []


def check(cond, msg):
    if not cond:
        failures.append(msg)


async def exercise(store: RecordStore, label: str):
    check(await store.start(DATABASE, TABLE, ["status"]) is True, f"{label}: start failed")
    rid = await store.creates(TABLE, {"status": "new", "item": "pen"})
    rec = await store.reads(TABLE, rid)
    check(rec.get("id") == rid and rec.get("item") == "pen", f"{label}: round trip mismatch {rec}")
    try:
        await store.updates(TABLE, {"id": "missing", "status": "x"})
        check(False, f"{label}: update of missing record succeeded")
    except RecordNotFound:
        pass
    await store.deletes(TABLE, rid)
    try:
        await store.reads(TABLE, rid)
        check(False, f"{label}: record readable after delete")
    except RecordNotFound:
        pass
    check(await store.count_records(TABLE) == 0, f"{label}: count not zero after delete")
    await store.close()


async def main(data_dir: str):
    engine_config = EngineConfig.from_env()
    engine_config.data_dir = data_dir
    await exercise(RecordStore(memory_fallback=True), "memory")
    await exercise(RecordStore(memory_fallback=False, engine_config=engine_config), "durable")
    if os.environ.get('SMOKE_HEALTH_CHECK', '0') == '1':
        hc = DurableEngine(engine_config).health_check(DATABASE)
        missing = {'ok', 'version', 'journal_mode', 'stores'} - hc.keys()
        check(not missing, f"health_check missing keys: {sorted(missing)}")
        check(hc.get('ok') is True, f"health_check not ok: {hc}")


if __name__ == '__main__':
    env_dir = os.environ.get('RECORDSTORE_DATA_DIR')
    with tempfile.TemporaryDirectory() as tmp:
        try:
            asyncio.run(main(env_dir or tmp))
        except Exception as e:
            failures.append(f"{type(e).__name__}: {e}")
    if failures:
        print(json.dumps({'success': False, 'failures': failures}))
        sys.exit(2)
    print(json.dumps({'success': True}))
