import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx
import pytest

from ctxpipe.core.config import get_settings
from ctxpipe.db.base import init_db
from ctxpipe.main import create_app


@pytest.fixture
def app(tmp_path, monkeypatch):
    db_path = tmp_path / "test_ctxpipe.db"
    monkeypatch.setenv("DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("HISTORY_PERSISTENCE", "sqlite")
    monkeypatch.setenv("EMBED_PROVIDER", "deterministic")
    monkeypatch.setenv("EMBED_MODEL", "deterministic-v1")
    monkeypatch.setenv("EMBED_DIM", "64")
    monkeypatch.setenv("KNOWLEDGE_BASE_PATH", "")
    monkeypatch.setenv("CATALOG_PATH", "")
    get_settings.cache_clear()
    return create_app()


@pytest.fixture
async def client(app):
    await init_db(app.state.engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.assembler.history_store.flush_all()
    await app.state.engine.dispose()


@pytest.fixture
def anyio_backend():
    return "asyncio"
