import pytest, pytest_asyncio
from recordstore import RecordStore
from recordstore.engine import EngineConfig

BACKENDS = ['memory', 'durable']


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for key in ('RECORDSTORE_MEMORY_FALLBACK', 'RECORDSTORE_SCHEMA_VERSION', 'RECORDSTORE_DISABLE_DURABLE',
                'CACHE_SIZE_KIB', 'BUSY_TIMEOUT_MS', 'VERIFY_ON_CONNECT', 'LOG_LEVEL'):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv('RECORDSTORE_DATA_DIR', str(tmp_path / 'data'))


@pytest.fixture()
def engine_config(tmp_path):
    return EngineConfig(data_dir=str(tmp_path / 'data'))


@pytest.fixture()
def make_store(engine_config):
    """Factory: make_store(backend, version=1) -> unstarted RecordStore."""
    def _make(backend: str, version: int = 1) -> RecordStore:
        return RecordStore(memory_fallback=(backend == 'memory'), version=version, engine_config=engine_config)
    return _make


@pytest_asyncio.fixture(params=BACKENDS)
async def store(request, make_store):
    s = make_store(request.param)
    yield s
    await s.close()
