"""Tests for engine/dispatch.py and the reconciliation scheduler."""

import asyncio
from unittest.mock import patch

import pytest

from scantrack.ci.base import PipelineExecutorError
from scantrack.core.scheduler import ReconciliationScheduler
from scantrack.engine.dispatch import confirm_push, dispatch_scan
from scantrack.engine.lifecycle import InvalidTransitionError
from scantrack.engine.reconciler import cancel_scan, load_record
from scantrack.models import ScanMode, ScanState


async def _reload(session_factory, record_id):
    async with session_factory() as session:
        return await load_record(session, record_id)


@pytest.mark.asyncio
async def test_dispatch_binds_pipeline(session_factory, executor, make_scan):
    record = await make_scan(
        state=ScanState.QUEUED, scan_mode=ScanMode.SCAN_AND_BUILD, image_tag="1.4.0"
    )

    await dispatch_scan(session_factory, executor, record.id)

    stored = await _reload(session_factory, record.id)
    assert stored.external_pipeline_id == "1001"
    assert stored.pipeline_url == "https://gitlab.test/pipelines/1001"
    assert stored.state is ScanState.RUNNING

    [(ref, variables)] = executor.triggered
    assert ref == "main"
    assert variables["SCAN_ID"] == str(record.id)
    assert variables["SCAN_MODE"] == "SCAN_AND_BUILD"
    assert variables["SERVICE_NAME"] == "payments-api"
    assert variables["IMAGE_NAME"] == "payments-api"
    assert variables["IMAGE_TAG"] == "1.4.0"


@pytest.mark.asyncio
async def test_dispatch_is_not_repeated(session_factory, executor, make_scan):
    record = await make_scan(state=ScanState.QUEUED)

    await dispatch_scan(session_factory, executor, record.id)
    await dispatch_scan(session_factory, executor, record.id)

    assert len(executor.triggered) == 1


@pytest.mark.asyncio
async def test_dispatch_failure_fails_record(session_factory, executor, make_scan):
    executor.trigger_error = PipelineExecutorError("POST /pipeline returned 400")
    record = await make_scan(state=ScanState.QUEUED)

    await dispatch_scan(session_factory, executor, record.id)

    stored = await _reload(session_factory, record.id)
    assert stored.state is ScanState.FAILED
    assert "returned 400" in stored.error_message
    assert stored.external_pipeline_id is None


@pytest.mark.asyncio
async def test_cancel_during_trigger_cancels_new_pipeline(session_factory, executor, make_scan):
    record = await make_scan(state=ScanState.QUEUED)
    trigger = executor.trigger

    async def trigger_while_user_cancels(ref, variables):
        pipeline = await trigger(ref, variables)
        await cancel_scan(session_factory, executor, record.id)
        return pipeline

    with patch.object(executor, "trigger", side_effect=trigger_while_user_cancels):
        await dispatch_scan(session_factory, executor, record.id)

    stored = await _reload(session_factory, record.id)
    assert stored.state is ScanState.CANCELLED
    assert stored.external_pipeline_id == "1001"
    assert executor.cancelled == ["1001"]
    assert executor.statuses["1001"] == "canceled"


@pytest.mark.asyncio
async def test_orphan_cancel_failure_is_tolerated(session_factory, executor, make_scan):
    record = await make_scan(state=ScanState.QUEUED)
    trigger = executor.trigger

    async def trigger_while_user_cancels(ref, variables):
        pipeline = await trigger(ref, variables)
        await cancel_scan(session_factory, executor, record.id)
        executor.cancel_error = PipelineExecutorError("POST cancel returned 500")
        return pipeline

    with patch.object(executor, "trigger", side_effect=trigger_while_user_cancels):
        await dispatch_scan(session_factory, executor, record.id)

    stored = await _reload(session_factory, record.id)
    assert stored.state is ScanState.CANCELLED
    assert executor.cancelled == []


@pytest.mark.asyncio
async def test_confirm_push_plays_job(session_factory, executor, make_scan):
    record = await make_scan(
        external_pipeline_id="77",
        state=ScanState.WAITING_CONFIRMATION,
        scan_mode=ScanMode.SCAN_AND_BUILD,
    )
    executor.statuses["77"] = "manual"

    await confirm_push(session_factory, executor, record.id, "push_to_hub")

    assert executor.played == [("77", "push_to_hub")]
    assert (await _reload(session_factory, record.id)).state is ScanState.WAITING_CONFIRMATION


@pytest.mark.asyncio
async def test_confirm_push_requires_gate(session_factory, executor, make_scan):
    record = await make_scan(external_pipeline_id="78")

    with pytest.raises(InvalidTransitionError):
        await confirm_push(session_factory, executor, record.id, "push_to_hub")
    assert executor.played == []


# ── Scheduler ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_scheduler_run_once(session_factory, executor, make_scan, settings):
    record = await make_scan(external_pipeline_id="90")
    executor.statuses["90"] = "success"

    scheduler = ReconciliationScheduler(session_factory, executor, settings=settings)
    summary = await scheduler.run_once()

    assert (summary.checked, summary.changed, summary.errors) == (1, 1, 0)
    assert (await _reload(session_factory, record.id)).state is ScanState.SUCCESS


@pytest.mark.asyncio
async def test_scheduler_disabled_does_not_start(session_factory, executor, settings):
    scheduler = ReconciliationScheduler(session_factory, executor, settings=settings)
    await scheduler.start()
    assert not scheduler.running


@pytest.mark.asyncio
async def test_scheduler_loop_survives_errors(session_factory, executor, settings):
    settings = settings.model_copy(update={"reconcile_enabled": True, "reconcile_interval_seconds": 1})
    scheduler = ReconciliationScheduler(session_factory, executor, settings=settings)
    calls = 0

    async def flaky_pass():
        nonlocal calls
        calls += 1
        raise RuntimeError("database went away")

    scheduler._interval = 0.01
    scheduler.run_once = flaky_pass

    await scheduler.start()
    assert scheduler.running
    await asyncio.sleep(0.1)
    await scheduler.stop()

    assert calls >= 2
    assert not scheduler.running
