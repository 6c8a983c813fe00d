"""Dispatch a queued scan to the CI system and release images held at the push gate."""

from __future__ import annotations

import uuid

from scantrack.ci.base import PipelineExecutor, PipelineExecutorError
from scantrack.core.logging import get_logger
from scantrack.engine.lifecycle import (
    bind_pipeline,
    fail_dispatch,
    observe_ci_status,
    require_state,
)
from scantrack.engine.reconciler import (
    RecordNotFoundError,
    SessionFactory,
    apply_with_retry,
    load_record,
)
from scantrack.models.scan_record import TERMINAL_STATES, ScanRecord, ScanState

logger = get_logger(__name__)


def pipeline_variables(record: ScanRecord) -> dict[str, str]:
    service = record.service
    variables = {
        "SCAN_ID": str(record.id),
        "SCAN_MODE": record.scan_mode.value,
        "SERVICE_NAME": service.name,
        "REPO_URL": service.repo_url,
    }
    if service.image_name:
        variables["IMAGE_NAME"] = service.image_name
    if record.image_tag:
        variables["IMAGE_TAG"] = record.image_tag
    return variables


async def dispatch_scan(
    session_factory: SessionFactory,
    executor: PipelineExecutor,
    record_id: uuid.UUID,
) -> None:
    """Trigger the CI pipeline for a QUEUED record and bind its pipeline id."""
    async with session_factory() as session:
        record = await load_record(session, record_id)
        if record is None or record.state is not ScanState.QUEUED or record.external_pipeline_id:
            return
        ref = record.service.ref
        variables = pipeline_variables(record)

    try:
        pipeline = await executor.trigger(ref, variables)
    except PipelineExecutorError as exc:
        logger.error("Pipeline trigger failed", scan_id=str(record_id), error=str(exc))
        await apply_with_retry(session_factory, record_id, lambda r: fail_dispatch(r, str(exc)))
        return

    def _bind(r: ScanRecord) -> bool:
        # Cancelled or expired while the trigger was in flight
        orphaned = r.state in TERMINAL_STATES
        bind_pipeline(r, pipeline.id, pipeline.web_url)
        observe_ci_status(r, pipeline.status)
        return orphaned

    _, orphaned = await apply_with_retry(session_factory, record_id, _bind)
    if orphaned:
        await _cancel_orphan(executor, record_id, pipeline.id)
        return
    logger.info("Scan dispatched", scan_id=str(record_id), pipeline_id=pipeline.id)


async def _cancel_orphan(executor: PipelineExecutor, record_id: uuid.UUID, pipeline_id: str) -> None:
    try:
        await executor.cancel(pipeline_id)
    except PipelineExecutorError as exc:
        logger.warning(
            "Could not cancel pipeline of a scan that finished during dispatch",
            scan_id=str(record_id),
            pipeline_id=pipeline_id,
            error=str(exc),
        )
        return
    logger.info(
        "Cancelled pipeline of a scan that finished during dispatch",
        scan_id=str(record_id),
        pipeline_id=pipeline_id,
    )


async def confirm_push(
    session_factory: SessionFactory,
    executor: PipelineExecutor,
    record_id: uuid.UUID,
    job_name: str,
) -> ScanRecord:
    """Play the manual push job of a scan waiting at the push gate.

    The record itself is not modified; its state advances when the CI system
    reports the pipeline finished.
    """
    async with session_factory() as session:
        record = await load_record(session, record_id)
        if record is None:
            raise RecordNotFoundError(str(record_id))
        require_state(record, "confirm the push of", {ScanState.WAITING_CONFIRMATION})

    await executor.play_manual_job(record.external_pipeline_id, job_name)
    logger.info("Image push confirmed", scan_id=str(record_id), pipeline_id=record.external_pipeline_id)
    return record
