"""Pipeline executor contract — the CI system as seen by the reconciliation engine."""

from abc import ABC, abstractmethod
from dataclasses import dataclass


class PipelineExecutorError(Exception):
    """The CI system could not answer (network error, timeout, non-404 HTTP error,
    malformed body). Callers treat this as transient."""


class PipelineNotFoundError(PipelineExecutorError):
    """The CI system confirmed the requested object does not exist (HTTP 404)."""


@dataclass(frozen=True)
class PipelineStatus:
    id: str
    status: str
    web_url: str | None = None


@dataclass(frozen=True)
class RegistryArtifact:
    """Coordinates of an image repository in the CI container registry."""

    image_name: str


class PipelineExecutor(ABC):
    """Abstract CI pipeline executor.

    Implementations raise ``PipelineNotFoundError`` for confirmed absence and
    ``PipelineExecutorError`` for everything else that goes wrong.
    """

    @abstractmethod
    async def get_status(self, pipeline_id: str) -> PipelineStatus:
        ...

    @abstractmethod
    async def cancel(self, pipeline_id: str) -> None:
        ...

    @abstractmethod
    async def trigger(self, ref: str, variables: dict[str, str]) -> PipelineStatus:
        """Start a new pipeline on ``ref`` and return its initial status."""
        ...

    @abstractmethod
    async def play_manual_job(self, pipeline_id: str, job_name: str) -> None:
        ...

    @abstractmethod
    async def list_registry_tags(self, artifact: RegistryArtifact) -> list[str]:
        ...

    @abstractmethod
    async def delete_tag(self, artifact: RegistryArtifact, tag: str) -> None:
        ...
