"""Stale-image cleanup — purge images of scans that failed the security gate."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from scantrack.ci.base import PipelineExecutor, PipelineExecutorError, PipelineNotFoundError, RegistryArtifact
from scantrack.core.logging import get_logger
from scantrack.models.scan_record import ScanState

if TYPE_CHECKING:
    from scantrack.models.scan_record import ScanRecord

logger = get_logger(__name__)


def should_cleanup(state: ScanState, critical_count: int) -> bool:
    return state is ScanState.BLOCKED or critical_count > 0


@dataclass(frozen=True)
class CleanupResult:
    success: bool
    message: str


class ImageCleaner:
    """Deletes the registry tag built by a scan.

    Best-effort: absence counts as success and any other failure is reported in
    the result, never raised.
    """

    def __init__(self, executor: PipelineExecutor) -> None:
        self._executor = executor

    async def purge(self, record: "ScanRecord") -> CleanupResult:
        image_name = record.service.image_name if record.service else None
        tag = record.image_tag
        log = logger.bind(scan_id=str(record.id), image=image_name, tag=tag)

        if not image_name or not tag:
            return CleanupResult(True, "No image coordinates; nothing to purge")

        artifact = RegistryArtifact(image_name=image_name)
        try:
            tags = await self._executor.list_registry_tags(artifact)
            if tag not in tags:
                log.info("Image tag already absent")
                return CleanupResult(True, "Image tag not found")
            await self._executor.delete_tag(artifact, tag)
        except PipelineNotFoundError:
            log.info("Image or tag not found (may already be deleted)")
            return CleanupResult(True, "Image already deleted or not found")
        except PipelineExecutorError as exc:
            log.warning("Failed to delete blocked image", error=str(exc))
            return CleanupResult(False, f"Failed to delete image: {exc}")

        log.info("Deleted blocked image")
        return CleanupResult(True, f"Deleted blocked image: {image_name}:{tag}")
