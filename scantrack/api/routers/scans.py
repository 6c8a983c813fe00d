"""Scans API router — dispatch, inspect, reconcile, cancel, acknowledge and compare scans."""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scantrack.api.dependencies import (
    get_app_settings,
    get_cleaner,
    get_db,
    get_executor,
    get_sessionmaker,
)
from scantrack.ci.base import PipelineExecutor, PipelineExecutorError
from scantrack.core.config import Settings
from scantrack.core.logging import get_logger
from scantrack.engine.cleanup import ImageCleaner
from scantrack.engine.comparator import compare, severity_delta
from scantrack.engine.dispatch import confirm_push, dispatch_scan
from scantrack.engine.lifecycle import InvalidTransitionError, require_state
from scantrack.engine.reconciler import (
    RecordNotFoundError,
    acknowledge_scan,
    cancel_scan,
    reconcile_pending,
    reconcile_record,
)
from scantrack.models.scan_record import TERMINAL_STATES, ScanRecord, ScanState
from scantrack.models.service import Service
from scantrack.schemas.compare import ComparisonOut, FindingOut, ScanRefOut, SeverityDeltaOut
from scantrack.schemas.scan import (
    AcknowledgeRequest,
    ScanCreate,
    ScanDetailOut,
    ScanList,
    ScanOut,
    SyncSummaryOut,
)

router = APIRouter(prefix="/scans", tags=["scans"])
logger = get_logger(__name__)

DbDep = Annotated[AsyncSession, Depends(get_db)]
SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_sessionmaker)]
ExecutorDep = Annotated[PipelineExecutor, Depends(get_executor)]
CleanerDep = Annotated[ImageCleaner, Depends(get_cleaner)]
SettingsDep = Annotated[Settings, Depends(get_app_settings)]


def _conflict(exc: InvalidTransitionError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_detail())


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scan not found")


async def _get_record(db: AsyncSession, scan_id: uuid.UUID) -> ScanRecord:
    record = await db.get(ScanRecord, scan_id)
    if not record:
        raise _not_found()
    return record


def build_comparison(baseline: ScanRecord, target: ScanRecord) -> ComparisonOut:
    result = compare(baseline, target)
    return ComparisonOut(
        baseline=ScanRefOut.model_validate(baseline),
        target=ScanRefOut.model_validate(target),
        new=[FindingOut.model_validate(f) for f in result.new],
        resolved=[FindingOut.model_validate(f) for f in result.resolved],
        persistent=[FindingOut.model_validate(f) for f in result.persistent],
        new_count=result.new_count,
        resolved_count=result.resolved_count,
        persistent_count=result.persistent_count,
        changes=SeverityDeltaOut.model_validate(severity_delta(baseline, target)),
    )


# ── Collection ────────────────────────────────────────────────────────────────

@router.get("", response_model=ScanList)
async def list_scans(
    db: DbDep,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=200),
    state: ScanState | None = Query(None),
    service_id: uuid.UUID | None = Query(None),
    include_archived: bool = Query(False),
) -> ScanList:
    filters = []
    if state is not None:
        filters.append(ScanRecord.state == state)
    if service_id is not None:
        filters.append(ScanRecord.service_id == service_id)
    if not include_archived:
        filters.append(ScanRecord.is_latest.is_(True))

    total = (
        await db.execute(select(func.count()).select_from(ScanRecord).where(*filters))
    ).scalar_one()
    result = await db.execute(
        select(ScanRecord)
        .where(*filters)
        .order_by(ScanRecord.created_at.desc())
        .offset(skip)
        .limit(limit)
    )
    return ScanList(total=total, items=list(result.scalars().all()))


@router.post("", response_model=ScanOut, status_code=status.HTTP_202_ACCEPTED)
async def create_scan(
    payload: ScanCreate,
    background_tasks: BackgroundTasks,
    db: DbDep,
    session_factory: SessionFactoryDep,
    executor: ExecutorDep,
) -> ScanRecord:
    service = await db.get(Service, payload.service_id)
    if not service:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service not found")

    record = ScanRecord(
        service_id=service.id,
        scan_mode=payload.scan_mode,
        image_tag=payload.image_tag,
    )
    db.add(record)
    await db.commit()

    background_tasks.add_task(_dispatch_in_background, session_factory, executor, record.id)
    logger.info("Scan queued", scan_id=str(record.id), service=service.name)
    return record


@router.post("/sync", response_model=SyncSummaryOut)
async def sync_all(
    session_factory: SessionFactoryDep,
    executor: ExecutorDep,
    cleaner: CleanerDep,
    settings: SettingsDep,
) -> SyncSummaryOut:
    """Reconcile every pending scan now instead of waiting for the next scheduler tick."""
    summary = await reconcile_pending(
        session_factory,
        executor,
        cleaner=cleaner,
        max_concurrency=settings.max_concurrent_reconciles,
        max_runtime=timedelta(minutes=settings.scan_max_runtime_minutes),
        fetch_timeout=settings.ci_request_timeout,
    )
    return SyncSummaryOut(checked=summary.checked, changed=summary.changed, errors=summary.errors)


# ── Single record ─────────────────────────────────────────────────────────────

@router.get("/{scan_id}", response_model=ScanDetailOut)
async def get_scan(scan_id: uuid.UUID, db: DbDep) -> ScanRecord:
    return await _get_record(db, scan_id)


@router.delete("/{scan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_scan(scan_id: uuid.UUID, db: DbDep) -> None:
    record = await _get_record(db, scan_id)
    try:
        require_state(record, "delete", TERMINAL_STATES)
    except InvalidTransitionError as exc:
        raise _conflict(exc)
    await db.delete(record)
    logger.info("Scan deleted", scan_id=str(scan_id))


@router.post("/{scan_id}/sync", response_model=ScanOut)
async def sync_scan(
    scan_id: uuid.UUID,
    db: DbDep,
    session_factory: SessionFactoryDep,
    executor: ExecutorDep,
    cleaner: CleanerDep,
    settings: SettingsDep,
) -> ScanRecord:
    await _get_record(db, scan_id)
    outcome = await reconcile_record(
        session_factory,
        executor,
        scan_id,
        cleaner=cleaner,
        max_runtime=timedelta(minutes=settings.scan_max_runtime_minutes),
        fetch_timeout=settings.ci_request_timeout,
    )
    logger.info("Scan synced", scan_id=str(scan_id), outcome=outcome.value)
    async with session_factory() as session:
        return await _get_record(session, scan_id)


@router.post("/{scan_id}/cancel", response_model=ScanOut)
async def cancel(
    scan_id: uuid.UUID,
    session_factory: SessionFactoryDep,
    executor: ExecutorDep,
) -> ScanRecord:
    try:
        return await cancel_scan(session_factory, executor, scan_id)
    except RecordNotFoundError:
        raise _not_found()
    except InvalidTransitionError as exc:
        raise _conflict(exc)


@router.post("/{scan_id}/confirm-push", response_model=ScanOut)
async def confirm_image_push(
    scan_id: uuid.UUID,
    session_factory: SessionFactoryDep,
    executor: ExecutorDep,
    settings: SettingsDep,
) -> ScanRecord:
    """Release an image held at the push gate by playing the pipeline's manual push job."""
    try:
        return await confirm_push(session_factory, executor, scan_id, settings.push_job_name)
    except RecordNotFoundError:
        raise _not_found()
    except InvalidTransitionError as exc:
        raise _conflict(exc)
    except PipelineExecutorError as exc:
        logger.warning("Push confirmation failed", scan_id=str(scan_id), error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"CI system rejected the push confirmation: {exc}",
        )


@router.post("/{scan_id}/acknowledge", response_model=ScanOut)
async def acknowledge(
    scan_id: uuid.UUID,
    payload: AcknowledgeRequest,
    session_factory: SessionFactoryDep,
) -> ScanRecord:
    try:
        record, _ = await acknowledge_scan(
            session_factory, scan_id, payload.user, archive=payload.action == "archive"
        )
    except RecordNotFoundError:
        raise _not_found()
    except InvalidTransitionError as exc:
        raise _conflict(exc)
    return record


@router.get("/{baseline_id}/compare/{target_id}", response_model=ComparisonOut)
async def compare_scans(baseline_id: uuid.UUID, target_id: uuid.UUID, db: DbDep) -> ComparisonOut:
    baseline = await _get_record(db, baseline_id)
    target = await _get_record(db, target_id)
    if baseline.service_id != target.service_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Only scans of the same service can be compared",
        )
    return build_comparison(baseline, target)


# ── Background dispatch ───────────────────────────────────────────────────────

async def _dispatch_in_background(
    session_factory: async_sessionmaker[AsyncSession],
    executor: PipelineExecutor,
    scan_id: uuid.UUID,
) -> None:
    try:
        await dispatch_scan(session_factory, executor, scan_id)
    except Exception:
        logger.exception("Scan dispatch failed", scan_id=str(scan_id))
