import pytest
from recordstore import BackendFailure, RecordStore, TableNotInitialized

DB = 'test-db'
TABLE = 'test-table'


@pytest.fixture()
def mem():
    return RecordStore(memory_fallback=True)


@pytest.mark.asyncio
async def test_ids_start_at_one_and_ignore_deletes(mem):
    await mem.start(DB, TABLE)
    assert await mem.creates(TABLE, {'n': 1}) == 1
    assert await mem.creates(TABLE, {'n': 2}) == 2
    await mem.deletes(TABLE, 2)
    await mem.deletes(TABLE, 1)
    assert await mem.creates(TABLE, {'n': 3}) == 3
    await mem.close()


@pytest.mark.asyncio
async def test_counters_are_per_table(mem):
    await mem.start(DB, TABLE)
    await mem.start(DB, 'other-table')
    assert await mem.creates(TABLE, {}) == 1
    assert await mem.creates(TABLE, {}) == 2
    assert await mem.creates('other-table', {}) == 1
    await mem.close()


@pytest.mark.asyncio
async def test_explicit_numeric_id_advances_counter(mem):
    await mem.start(DB, TABLE)
    assert await mem.creates(TABLE, {'id': 10}) == 10
    assert await mem.creates(TABLE, {}) == 11
    assert await mem.creates(TABLE, {'id': 'text-key'}) == 'text-key'
    assert await mem.creates(TABLE, {}) == 12
    await mem.close()


@pytest.mark.asyncio
async def test_failed_create_does_not_consume_an_id(mem):
    await mem.start(DB, TABLE, [{'name': 'code-index', 'keyPath': 'code', 'options': {'unique': True}}])
    assert await mem.creates(TABLE, {'code': 'a'}) == 1
    with pytest.raises(BackendFailure):
        await mem.creates(TABLE, {'code': 'a'})
    assert await mem.creates(TABLE, {'code': 'b'}) == 2
    await mem.close()


@pytest.mark.asyncio
async def test_unregistered_table(mem):
    await mem.start(DB, TABLE)
    rid = await mem.creates(TABLE, {'test': 'data'})
    for call in (
        lambda: mem.reads('nonexistent', rid),
        lambda: mem.updates('nonexistent', {'id': rid, 'test': 'updated'}),
        lambda: mem.deletes('nonexistent', rid),
        lambda: mem.count_records('nonexistent'),
        lambda: mem.get_all('wrong-table'),
    ):
        with pytest.raises(TableNotInitialized, match='not initialized in memory'):
            await call()
    await mem.close()


@pytest.mark.asyncio
async def test_restarting_a_table_keeps_its_records(mem):
    await mem.start(DB, TABLE)
    await mem.creates(TABLE, {'keep': True})
    await mem.start(DB, TABLE, ['keep'])
    assert await mem.count_records(TABLE) == 1
    assert await mem.creates(TABLE, {'keep': False}) == 2
    assert len(await mem.find_by_index(TABLE, 'keep', True)) == 1
    await mem.close()


@pytest.mark.asyncio
async def test_close_clears_tables_and_counters(mem):
    await mem.start(DB, TABLE)
    await mem.creates(TABLE, {})
    await mem.creates(TABLE, {})
    await mem.close()
    await mem.start(DB, TABLE)
    assert await mem.count_records(TABLE) == 0
    assert await mem.creates(TABLE, {}) == 1
    await mem.close()


@pytest.mark.asyncio
async def test_unique_index_on_existing_duplicates_fails(mem):
    await mem.start(DB, TABLE)
    await mem.creates(TABLE, {'code': 'x'})
    await mem.creates(TABLE, {'code': 'x'})
    with pytest.raises(BackendFailure, match='unique index code-index'):
        await mem.start(DB, TABLE, [{'name': 'code-index', 'keyPath': 'code', 'options': {'unique': True}}])
    await mem.close()


@pytest.mark.asyncio
async def test_uncopyable_record_is_backend_failure(mem):
    await mem.start(DB, TABLE)

    class Sticky:
        def __deepcopy__(self, memo):
            raise RuntimeError('Invalid data')

    with pytest.raises(BackendFailure, match='Invalid data'):
        await mem.creates(TABLE, {'thing': Sticky()})
    assert await mem.count_records(TABLE) == 0
    await mem.close()


@pytest.mark.asyncio
async def test_env_selects_memory_backend(monkeypatch):
    monkeypatch.setenv('RECORDSTORE_MEMORY_FALLBACK', '1')
    store = RecordStore()
    await store.start(DB, TABLE)
    assert store.backend == 'memory'
    await store.close()
