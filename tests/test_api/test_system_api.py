"""
Tests for the System API.

Endpoints tested:
- GET /api/v1/system/database
- POST /api/v1/system/restart
"""
import pytest
from httpx import AsyncClient

from keepsake.api.v1 import system as system_module
from keepsake.db.database import DatabaseHandle, get_db


@pytest.fixture
def live_db(app, db: DatabaseHandle):
    """Route get_db to the per-test database handle."""

    async def _get_db():
        async with db.session() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    return db


class TestDatabaseInfo:
    async def test_lists_tables(self, client: AsyncClient, live_db):
        response = await client.get("/api/v1/system/database")
        assert response.status_code == 200
        data = response.json()
        assert "notes" in data["tables"]
        assert data["path"].endswith("keepsake.db")

    async def test_closed_handle_returns_503(self, client: AsyncClient):
        # The process-wide handle is never connected in tests
        response = await client.get("/api/v1/system/database")
        assert response.status_code == 503
        assert "restart" in response.json()["detail"]


class TestRestart:
    async def test_restart_schedules_exit(self, client: AsyncClient, monkeypatch):
        delays = []
        monkeypatch.setattr(system_module, "_schedule_exit", delays.append)

        response = await client.post("/api/v1/system/restart")

        assert response.status_code == 200
        assert response.json() == {"message": "Restarting..."}
        assert delays == [system_module.RESTART_DELAY_SECONDS]
