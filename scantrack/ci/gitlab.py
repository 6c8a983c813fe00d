"""GitLab implementation of the pipeline executor (REST API v4)."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from urllib.parse import quote

import httpx

from scantrack.ci.base import (
    PipelineExecutor,
    PipelineExecutorError,
    PipelineNotFoundError,
    PipelineStatus,
    RegistryArtifact,
)
from scantrack.core.config import Settings, get_settings
from scantrack.core.logging import get_logger

logger = get_logger(__name__)

# Job states in which a manual job can still be played
_PLAYABLE_JOB_STATES = {"manual", "created", "skipped"}


class GitLabExecutor(PipelineExecutor):
    """Talks to one GitLab project that hosts the scan pipelines and the registry.

    Every call uses a bounded timeout. HTTP 404 becomes ``PipelineNotFoundError``;
    any other HTTP error, transport failure, timeout or unreadable body becomes
    ``PipelineExecutorError``.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        project_id: str,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._project = quote(str(project_id), safe="")
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "GitLabExecutor":
        settings = settings or get_settings()
        return cls(
            settings.gitlab_api_url,
            settings.gitlab_token,
            settings.gitlab_project_id,
            timeout=settings.ci_request_timeout,
        )

    # ── Transport ─────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            headers={"PRIVATE-TOKEN": self._token},
            timeout=httpx.Timeout(self._timeout),
            transport=self._transport,
        ) as client:
            yield client

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            if code == 404:
                raise PipelineNotFoundError(f"{method} {path} returned 404") from exc
            if code in (401, 403):
                logger.warning("GitLab rejected the token", path=path, status=code)
            raise PipelineExecutorError(f"{method} {path} returned {code}") from exc
        except httpx.HTTPError as exc:
            raise PipelineExecutorError(f"{method} {path} failed: {exc!r}") from exc

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise PipelineExecutorError(f"{method} {path} returned a non-JSON body") from exc

    @staticmethod
    def _pipeline_status(data: Any) -> PipelineStatus:
        if not isinstance(data, dict) or "id" not in data or not isinstance(data.get("status"), str):
            raise PipelineExecutorError("Malformed pipeline payload")
        return PipelineStatus(
            id=str(data["id"]),
            status=data["status"],
            web_url=data.get("web_url"),
        )

    # ── Pipelines ─────────────────────────────────────────────────────────────

    async def get_status(self, pipeline_id: str) -> PipelineStatus:
        data = await self._json("GET", f"/projects/{self._project}/pipelines/{pipeline_id}")
        return self._pipeline_status(data)

    async def cancel(self, pipeline_id: str) -> None:
        await self._request("POST", f"/projects/{self._project}/pipelines/{pipeline_id}/cancel")
        logger.info("Cancelled pipeline", pipeline_id=pipeline_id)

    async def trigger(self, ref: str, variables: dict[str, str]) -> PipelineStatus:
        data = await self._json(
            "POST",
            f"/projects/{self._project}/pipeline",
            json={
                "ref": ref,
                "variables": [{"key": key, "value": value} for key, value in variables.items()],
            },
        )
        status = self._pipeline_status(data)
        logger.info("Triggered pipeline", pipeline_id=status.id, ref=ref)
        return status

    async def play_manual_job(self, pipeline_id: str, job_name: str) -> None:
        jobs = await self._json("GET", f"/projects/{self._project}/pipelines/{pipeline_id}/jobs")
        job = next(
            (
                j for j in jobs or []
                if isinstance(j, dict)
                and j.get("name") == job_name
                and j.get("status") in _PLAYABLE_JOB_STATES
            ),
            None,
        )
        if job is None:
            raise PipelineExecutorError(
                f"No playable job {job_name!r} in pipeline {pipeline_id}"
            )
        await self._request("POST", f"/projects/{self._project}/jobs/{job['id']}/play")
        logger.info("Played manual job", pipeline_id=pipeline_id, job=job_name, job_id=job["id"])

    # ── Container registry ────────────────────────────────────────────────────

    async def _repository_id(self, artifact: RegistryArtifact) -> int:
        repos = await self._json("GET", f"/projects/{self._project}/registry/repositories")
        repos = [repo for repo in repos or [] if isinstance(repo, dict) and "id" in repo]
        image = artifact.image_name
        # Exact name first; the full path ("group/project/<image>") only as a fallback
        for repo in repos:
            if repo.get("name") == image:
                return repo["id"]
        for repo in repos:
            path = repo.get("path") or ""
            if path == image or path.endswith("/" + image):
                return repo["id"]
        raise PipelineNotFoundError(f"No registry repository for image {image!r}")

    async def list_registry_tags(self, artifact: RegistryArtifact) -> list[str]:
        repo_id = await self._repository_id(artifact)
        tags = await self._json(
            "GET", f"/projects/{self._project}/registry/repositories/{repo_id}/tags"
        )
        return [t["name"] for t in tags or [] if isinstance(t, dict) and "name" in t]

    async def delete_tag(self, artifact: RegistryArtifact, tag: str) -> None:
        repo_id = await self._repository_id(artifact)
        await self._request(
            "DELETE",
            f"/projects/{self._project}/registry/repositories/{repo_id}/tags/{quote(tag, safe='')}",
        )
        logger.info("Deleted registry tag", image=artifact.image_name, tag=tag)
