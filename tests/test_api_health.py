"""Basic API smoke tests — health, empty listings."""

import pytest


@pytest.mark.asyncio
async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"


@pytest.mark.asyncio
async def test_services_list_empty(client):
    r = await client.get("/api/v1/services")
    assert r.status_code == 200
    data = r.json()
    assert data["total"] == 0
    assert data["items"] == []


@pytest.mark.asyncio
async def test_scans_list_empty(client):
    r = await client.get("/api/v1/scans")
    assert r.status_code == 200
    data = r.json()
    assert data["total"] == 0
