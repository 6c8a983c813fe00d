"""Tests for the CI webhook receiver."""

import pytest

from scantrack.api.dependencies import get_app_settings
from scantrack.models import ScanState

LEAKS = [{"File": "settings.py", "StartLine": 3, "RuleID": "generic-api-key"}]


@pytest.mark.asyncio
async def test_compact_notification(client, make_scan):
    record = await make_scan(external_pipeline_id="500")

    r = await client.post("/api/v1/webhook", json={"pipelineId": 500, "status": "success"})
    assert r.status_code == 200
    assert r.json() == {"scan_id": str(record.id), "state": "SUCCESS", "changed": True}

    # Redelivery is a no-op
    r = await client.post("/api/v1/webhook", json={"pipelineId": "500", "status": "success"})
    assert r.json()["changed"] is False


@pytest.mark.asyncio
async def test_gitlab_pipeline_event(client, make_scan):
    await make_scan(external_pipeline_id="501")

    r = await client.post(
        "/api/v1/webhook",
        json={
            "object_kind": "pipeline",
            "object_attributes": {"id": 501, "status": "failed", "ref": "main"},
            "project": {"id": 7},
        },
    )
    assert r.status_code == 200
    assert r.json()["state"] == "FAILED"


@pytest.mark.asyncio
async def test_tool_report_then_success(client, make_scan, executor):
    record = await make_scan(external_pipeline_id="502", image_tag="3.1.0")
    executor.tags["payments-api"] = ["3.1.0"]

    r = await client.post(
        "/api/v1/webhook",
        json={"pipelineId": "502", "status": "running", "tool": "gitleaks", "report": LEAKS},
    )
    assert r.json()["state"] == "RUNNING"
    assert r.json()["changed"] is True

    r = await client.post("/api/v1/webhook", json={"pipelineId": "502", "status": "success"})
    assert r.json()["state"] == "FAILED_SECURITY"

    stored = (await client.get(f"/api/v1/scans/{record.id}")).json()
    assert stored["vuln_critical"] == 1
    assert stored["findings"] == {"secrets": LEAKS}
    assert executor.deleted == [("payments-api", "3.1.0")]


@pytest.mark.asyncio
async def test_unknown_pipeline_is_404(client):
    r = await client.post("/api/v1/webhook", json={"pipelineId": "999", "status": "success"})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_malformed_payload_is_422(client):
    r = await client.post("/api/v1/webhook", json={"status": "success"})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_terminal_record_ignores_late_status(client, make_scan):
    await make_scan(state=ScanState.CANCELLED, external_pipeline_id="503")

    r = await client.post("/api/v1/webhook", json={"pipelineId": "503", "status": "success"})
    assert r.status_code == 200
    assert r.json()["state"] == "CANCELLED"
    assert r.json()["changed"] is False


@pytest.mark.asyncio
async def test_webhook_secret_enforced(app, client, make_scan, settings):
    await make_scan(external_pipeline_id="504")
    secured = settings.model_copy(update={"webhook_secret": "s3cret"})
    app.dependency_overrides[get_app_settings] = lambda: secured

    r = await client.post("/api/v1/webhook", json={"pipelineId": "504", "status": "running"})
    assert r.status_code == 401

    r = await client.post(
        "/api/v1/webhook",
        json={"pipelineId": "504", "status": "running"},
        headers={"X-Gitlab-Token": "wrong"},
    )
    assert r.status_code == 401

    r = await client.post(
        "/api/v1/webhook",
        json={"pipelineId": "504", "status": "running"},
        headers={"X-Gitlab-Token": "s3cret"},
    )
    assert r.status_code == 200
