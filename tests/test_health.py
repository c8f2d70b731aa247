"""
Tests for the /health endpoint and API root.

The autouse mock_db fixture leaves db_client disconnected; tests that need
a live-looking database point db_client at a FakeDB with a stub client.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import ServerSelectionTimeoutError

import keygate.core.database as db_module
from keygate.version import __version__


def _connect(db, ping=None):
    client = MagicMock()
    client.admin.command = ping or AsyncMock(return_value={"ok": 1})
    db_module.db_client.client = client
    db_module.db_client.db = db


@pytest.mark.asyncio
async def test_health_returns_200(client):
    """Health endpoint must always return 200 if the API process is alive."""
    response = await client.get("/health")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_health_response_schema(client):
    data = (await client.get("/health")).json()

    assert data["status"] == "ok"
    assert data["version"] == __version__
    assert data["environment"] == "test"


@pytest.mark.asyncio
async def test_health_disconnected_when_no_db(client):
    data = (await client.get("/health")).json()
    assert data["database"] == "disconnected"
    assert data["indexes"] == "unknown"
    assert data["quota_ready"] is False


@pytest.mark.asyncio
async def test_health_ready_with_indexes(client, fake_db):
    _connect(fake_db)
    data = (await client.get("/health")).json()

    assert data["database"] == "connected"
    assert data["indexes"] == "ok"
    assert data["missing_indexes"] == []
    assert data["quota_ready"] is True


@pytest.mark.asyncio
async def test_health_lists_missing_indexes(client, bare_db):
    _connect(bare_db)
    data = (await client.get("/health")).json()

    assert data["database"] == "connected"
    assert data["indexes"] == "missing"
    assert "credentials.one_active_per_class" in data["missing_indexes"]
    assert "api_usage.credential_tier_time" in data["missing_indexes"]
    assert data["quota_ready"] is False


@pytest.mark.asyncio
async def test_health_ping_failure_reports_disconnected(client, fake_db):
    _connect(fake_db, ping=AsyncMock(side_effect=ServerSelectionTimeoutError("no servers")))
    data = (await client.get("/health")).json()

    assert data["status"] == "ok"
    assert data["database"] == "disconnected"
    assert data["quota_ready"] is False


@pytest.mark.asyncio
async def test_root_endpoint(client):
    response = await client.get("/")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "running"
    assert data["name"] == "KeyGate API"


@pytest.mark.asyncio
async def test_unknown_route_returns_404(client):
    response = await client.get("/does-not-exist")
    assert response.status_code == 404
