from __future__ import annotations

import os

import pytest
from httpx import ASGITransport, AsyncClient

from edugov.apps.api.main import create_app
from edugov.core.config import get_settings
from edugov.domain.models import Base
from edugov.persistence.db import Database
from edugov.services.analytics import get_regeneration_flight
from edugov.services.quota import reset_quota_service
from edugov.services.storage import set_blob_store
from edugov.services.telemetry import reset_telemetry


def _reset_process_state() -> None:
    get_settings.cache_clear()
    reset_quota_service()
    set_blob_store(None)
    reset_telemetry()
    get_regeneration_flight().clear()


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch, tmp_path) -> None:
    # Cheap bcrypt, a fixed token secret and a per-test blob root.
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("SESSION_SECRET", "test-session-secret")
    monkeypatch.setenv("PASSWORD_HASH_ROUNDS", "4")
    monkeypatch.setenv("AUTH_DEV_BYPASS", "false")
    monkeypatch.setenv("BLOB_STORAGE_ROOT", str(tmp_path / "blobs"))
    _reset_process_state()
    yield
    _reset_process_state()


@pytest.fixture
async def database(tmp_path):
    # One throwaway sqlite file per test unless TEST_DATABASE_URL points elsewhere.
    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'edugov.db'}"
    db = Database(url)
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
async def client(database):
    app = create_app(database=database)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
