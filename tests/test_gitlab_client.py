"""Tests for ci/gitlab.py against a mocked GitLab REST API."""

import json

import httpx
import pytest

from scantrack.ci.base import PipelineExecutorError, PipelineNotFoundError, RegistryArtifact
from scantrack.ci.gitlab import GitLabExecutor

API = "https://gitlab.test/api/v4"
PROJECT = "/projects/acme%2Fscans"


def _executor(handler, requests=None):
    def _record(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return handler(request)

    return GitLabExecutor(
        API, "glpat-test", "acme/scans", timeout=1.0, transport=httpx.MockTransport(_record)
    )


@pytest.mark.asyncio
async def test_get_status():
    requests = []

    def handler(request):
        return httpx.Response(
            200, json={"id": 42, "status": "running", "web_url": "https://gitlab.test/p/42"}
        )

    status = await _executor(handler, requests).get_status("42")

    assert status.id == "42"
    assert status.status == "running"
    assert status.web_url == "https://gitlab.test/p/42"
    [request] = requests
    assert request.url.raw_path.decode() == f"/api/v4{PROJECT}/pipelines/42"
    assert request.headers["PRIVATE-TOKEN"] == "glpat-test"


@pytest.mark.asyncio
async def test_get_status_404_is_not_found():
    executor = _executor(lambda r: httpx.Response(404, json={"message": "404 Not found"}))
    with pytest.raises(PipelineNotFoundError):
        await executor.get_status("1")


@pytest.mark.asyncio
@pytest.mark.parametrize("code", [401, 500, 502])
async def test_get_status_http_error_is_transient(code):
    executor = _executor(lambda r: httpx.Response(code))
    with pytest.raises(PipelineExecutorError) as exc_info:
        await executor.get_status("1")
    assert not isinstance(exc_info.value, PipelineNotFoundError)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [b"<html>gateway</html>", b'{"id": 1}', b'{"status": "running"}', b"[]"],
)
async def test_get_status_malformed_body(body):
    executor = _executor(lambda r: httpx.Response(200, content=body))
    with pytest.raises(PipelineExecutorError):
        await executor.get_status("1")


@pytest.mark.asyncio
async def test_transport_failure_is_executor_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PipelineExecutorError):
        await _executor(handler).get_status("1")


@pytest.mark.asyncio
async def test_trigger_sends_variables():
    requests = []

    def handler(request):
        return httpx.Response(201, json={"id": 900, "status": "created", "web_url": "u"})

    status = await _executor(handler, requests).trigger("main", {"SCAN_ID": "abc", "SCAN_MODE": "SCAN_ONLY"})

    assert status.id == "900"
    [request] = requests
    assert request.method == "POST"
    assert json.loads(request.content) == {
        "ref": "main",
        "variables": [
            {"key": "SCAN_ID", "value": "abc"},
            {"key": "SCAN_MODE", "value": "SCAN_ONLY"},
        ],
    }


@pytest.mark.asyncio
async def test_cancel_posts_cancel():
    requests = []
    await _executor(lambda r: httpx.Response(200, json={}), requests).cancel("7")
    assert requests[0].method == "POST"
    assert requests[0].url.path.endswith("/pipelines/7/cancel")


@pytest.mark.asyncio
async def test_play_manual_job():
    requests = []

    def handler(request):
        if request.url.path.endswith("/jobs"):
            return httpx.Response(
                200,
                json=[
                    {"id": 1, "name": "gitleaks", "status": "success"},
                    {"id": 2, "name": "push_to_hub", "status": "manual"},
                ],
            )
        return httpx.Response(200, json={"id": 2, "status": "pending"})

    await _executor(handler, requests).play_manual_job("7", "push_to_hub")

    assert requests[-1].method == "POST"
    assert requests[-1].url.path.endswith("/jobs/2/play")


@pytest.mark.asyncio
async def test_play_manual_job_missing_job():
    executor = _executor(
        lambda r: httpx.Response(200, json=[{"id": 2, "name": "push_to_hub", "status": "success"}])
    )
    with pytest.raises(PipelineExecutorError):
        await executor.play_manual_job("7", "push_to_hub")


def _registry_handler(deleted):
    def handler(request):
        path = request.url.path
        if path.endswith("/registry/repositories"):
            return httpx.Response(
                200,
                json=[
                    {"id": 3, "name": "", "path": "acme/scans"},
                    {"id": 5, "name": "payments-api", "path": "acme/scans/payments-api"},
                ],
            )
        if request.method == "DELETE":
            deleted.append(request.url.raw_path.decode())
            return httpx.Response(200)
        return httpx.Response(200, json=[{"name": "1.4.0"}, {"name": "latest"}])

    return handler


@pytest.mark.asyncio
async def test_registry_list_and_delete():
    deleted = []
    executor = _executor(_registry_handler(deleted))
    artifact = RegistryArtifact(image_name="payments-api")

    assert await executor.list_registry_tags(artifact) == ["1.4.0", "latest"]
    await executor.delete_tag(artifact, "1.4.0")

    assert deleted == [f"/api/v4{PROJECT}/registry/repositories/5/tags/1.4.0"]


@pytest.mark.asyncio
async def test_registry_ignores_repositories_sharing_a_prefix():
    deleted = []

    def handler(request):
        path = request.url.path
        if path.endswith("/registry/repositories"):
            return httpx.Response(
                200,
                json=[
                    {"id": 1, "name": "api-gateway", "path": "acme/scans/api-gateway"},
                    {"id": 4, "name": "", "path": "acme/scans/legacy-api"},
                    {"id": 2, "name": "api", "path": "acme/scans/api"},
                ],
            )
        if request.method == "DELETE":
            deleted.append(path)
            return httpx.Response(200)
        return httpx.Response(200, json=[{"name": "v1"}])

    executor = _executor(handler)
    artifact = RegistryArtifact(image_name="api")

    assert await executor.list_registry_tags(artifact) == ["v1"]
    await executor.delete_tag(artifact, "v1")

    assert len(deleted) == 1
    assert deleted[0].endswith("/registry/repositories/2/tags/v1")


@pytest.mark.asyncio
async def test_registry_matches_on_path_when_name_is_empty():
    deleted = []

    def handler(request):
        if request.url.path.endswith("/registry/repositories"):
            return httpx.Response(
                200,
                json=[
                    {"id": 8, "name": "", "path": "acme/scans/api-gateway"},
                    {"id": 9, "name": "", "path": "acme/scans/api"},
                ],
            )
        deleted.append(request.url.path)
        return httpx.Response(200)

    await _executor(handler).delete_tag(RegistryArtifact(image_name="api"), "v1")

    [path] = deleted
    assert path.endswith("/registry/repositories/9/tags/v1")


@pytest.mark.asyncio
async def test_registry_unknown_image_is_not_found():
    executor = _executor(_registry_handler([]))
    with pytest.raises(PipelineNotFoundError):
        await executor.list_registry_tags(RegistryArtifact(image_name="ledger"))
