"""
Root test configuration.

Sets up:
- A throwaway data root per test (tmp_path) with a SQLite database
- ConfigState / DatabaseHandle / RestoreOrchestrator bound to that root
- AsyncClient for FastAPI testing
- Lifespan is skipped in tests (no init_db / staging cleanup on the real data dir)
"""
import os
import tempfile

# Set env vars before any app imports
os.environ["DATA_DIR"] = tempfile.mkdtemp(prefix="keepsake-test-")

from contextlib import asynccontextmanager
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport

from keepsake.api.v1.backup import get_data_root
from keepsake.core.local_config import ConfigState, get_config_state
from keepsake.db.database import DatabaseHandle
from keepsake.main import create_app
from keepsake.services.restore import RestoreOrchestrator, get_restore_orchestrator

from tests.factories import make_sqlite_db, write_file


@pytest.fixture()
def data_root(tmp_path: Path) -> Path:
    """Data root with the usual layout: a card, a database and the protected entries."""
    root = tmp_path / "data"
    root.mkdir()
    write_file(root / "cards" / "a.json", b'{"n": "a"}')
    write_file(root / "config.yml", b"username: alice\npassword: ''\n")
    write_file(root / ".jwt_secret", b"original-secret")
    write_file(root / "temp" / "stale.tmp", b"scratch")
    make_sqlite_db(root / "keepsake.db", rows=["first"])
    return root


@pytest.fixture()
def config(data_root: Path) -> ConfigState:
    state = ConfigState(data_root / "config.yml", data_root / ".jwt_secret")
    state.load()
    return state


@pytest_asyncio.fixture()
async def db(data_root: Path):
    handle = DatabaseHandle(f"sqlite+aiosqlite:///{data_root / 'keepsake.db'}")
    await handle.connect()
    try:
        yield handle
    finally:
        await handle.close()


@pytest.fixture()
def orchestrator(data_root: Path, db: DatabaseHandle, config: ConfigState) -> RestoreOrchestrator:
    return RestoreOrchestrator(data_root, db, config)


def _create_test_app(config: ConfigState) -> FastAPI:
    """Create a FastAPI app for testing WITHOUT lifespan (no init_db)."""

    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        yield

    return create_app(config=config, lifespan=test_lifespan)


@pytest_asyncio.fixture()
async def app(data_root: Path, config: ConfigState, orchestrator: RestoreOrchestrator):
    """Create a test FastAPI app bound to the per-test data root."""
    application = _create_test_app(config)
    application.dependency_overrides[get_data_root] = lambda: data_root
    application.dependency_overrides[get_config_state] = lambda: config
    application.dependency_overrides[get_restore_orchestrator] = lambda: orchestrator
    return application


@pytest_asyncio.fixture()
async def client(app):
    """Provide an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
