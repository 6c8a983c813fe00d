"""Reconciliation — bring local scan records in line with the CI system.

All entry points (periodic pass, "sync now", webhook, cancel, acknowledge)
write through ``apply_with_retry``: load the record, let a state machine
function decide, commit under the record's version check. A lost race rolls
back and decides again on fresh state, so whichever writer commits first wins
and the other one re-evaluates against its result.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterable, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from scantrack.ci.base import PipelineExecutor, PipelineExecutorError, PipelineNotFoundError
from scantrack.core.logging import get_logger
from scantrack.engine.cleanup import ImageCleaner
from scantrack.engine.lifecycle import (
    CANCELLABLE_STATES,
    Transition,
    acknowledge,
    apply_ci_event,
    expire_stalled,
    is_stalled,
    mark_pipeline_missing,
    observe_ci_status,
    request_cancel,
    require_state,
)
from scantrack.models.scan_record import TERMINAL_STATES, ScanRecord

logger = get_logger(__name__)

T = TypeVar("T")

SessionFactory = async_sessionmaker[AsyncSession]

MAX_WRITE_ATTEMPTS = 3


class RecordNotFoundError(LookupError):
    pass


class ConcurrentUpdateError(RuntimeError):
    """Every write attempt lost the race against another writer."""


class ReconcileOutcome(str, Enum):
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(frozen=True)
class ReconcileSummary:
    checked: int = 0
    changed: int = 0
    errors: int = 0

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[ReconcileOutcome]) -> "ReconcileSummary":
        outcomes = list(outcomes)
        return cls(
            checked=len(outcomes),
            changed=sum(1 for o in outcomes if o is ReconcileOutcome.CHANGED),
            errors=sum(1 for o in outcomes if o is ReconcileOutcome.ERROR),
        )


async def load_record(session: AsyncSession, record_id: uuid.UUID) -> ScanRecord | None:
    result = await session.execute(select(ScanRecord).where(ScanRecord.id == record_id))
    return result.scalar_one_or_none()


async def apply_with_retry(
    session_factory: SessionFactory,
    record_id: uuid.UUID,
    mutate: Callable[[ScanRecord], T],
    *,
    attempts: int = MAX_WRITE_ATTEMPTS,
) -> tuple[ScanRecord, T]:
    """Run read -> decide -> versioned write, retrying when another writer got there first.

    Exceptions raised by ``mutate`` (e.g. ``InvalidTransitionError``) propagate
    and nothing is written.
    """
    for attempt in range(1, attempts + 1):
        async with session_factory() as session:
            record = await load_record(session, record_id)
            if record is None:
                raise RecordNotFoundError(str(record_id))
            outcome = mutate(record)
            try:
                await session.commit()
            except StaleDataError:
                await session.rollback()
                logger.info(
                    "Concurrent update on scan record, retrying",
                    scan_id=str(record_id),
                    attempt=attempt,
                )
                continue
            return record, outcome
    raise ConcurrentUpdateError(f"Gave up updating scan {record_id} after {attempts} attempts")


async def _run_cleanup(cleaner: ImageCleaner | None, record: ScanRecord, transition: Transition) -> None:
    if not transition.cleanup_required or cleaner is None:
        return
    result = await cleaner.purge(record)
    if not result.success:
        logger.warning("Image cleanup did not complete", scan_id=str(record.id), detail=result.message)


async def reconcile_record(
    session_factory: SessionFactory,
    executor: PipelineExecutor,
    record_id: uuid.UUID,
    *,
    cleaner: ImageCleaner | None = None,
    max_runtime: timedelta | None = None,
    fetch_timeout: float | None = None,
    now: datetime | None = None,
) -> ReconcileOutcome:
    """Fetch the CI status of one record and apply it.

    Transient CI failures leave the record untouched and return ERROR; a
    confirmed 404 fails the scan.
    """
    async with session_factory() as session:
        record = await load_record(session, record_id)
        if record is None or record.state in TERMINAL_STATES:
            return ReconcileOutcome.SKIPPED
        pipeline_id = record.external_pipeline_id
        stalled = max_runtime is not None and is_stalled(record, max_runtime, now=now)

    log = logger.bind(scan_id=str(record_id), pipeline_id=pipeline_id)

    mutate: Callable[[ScanRecord], Transition]
    if stalled:
        log.warning("Scan exceeded maximum runtime", state=record.state.value)
        mutate = lambda r: expire_stalled(r, max_runtime, now=now)  # noqa: E731
    elif pipeline_id is None:
        # Not dispatched yet
        return ReconcileOutcome.SKIPPED
    else:
        try:
            status = await asyncio.wait_for(executor.get_status(pipeline_id), timeout=fetch_timeout)
        except PipelineNotFoundError:
            log.warning("Pipeline not found in CI")
            mutate = lambda r: mark_pipeline_missing(r, now=now)  # noqa: E731
        except (PipelineExecutorError, asyncio.TimeoutError) as exc:
            log.warning("CI status fetch failed, will retry next pass", error=str(exc) or type(exc).__name__)
            return ReconcileOutcome.ERROR
        else:
            mutate = lambda r: observe_ci_status(r, status.status, now=now)  # noqa: E731

    try:
        record, transition = await apply_with_retry(session_factory, record_id, mutate)
    except RecordNotFoundError:
        return ReconcileOutcome.SKIPPED

    if not transition.changed:
        return ReconcileOutcome.UNCHANGED
    await _run_cleanup(cleaner, record, transition)
    return ReconcileOutcome.CHANGED


async def pending_record_ids(session_factory: SessionFactory) -> list[uuid.UUID]:
    async with session_factory() as session:
        result = await session.execute(
            select(ScanRecord.id)
            .where(ScanRecord.state.not_in(list(TERMINAL_STATES)))
            .order_by(ScanRecord.created_at)
        )
        return list(result.scalars().all())


async def reconcile_pending(
    session_factory: SessionFactory,
    executor: PipelineExecutor,
    *,
    cleaner: ImageCleaner | None = None,
    max_concurrency: int = 5,
    max_runtime: timedelta | None = None,
    fetch_timeout: float | None = None,
) -> ReconcileSummary:
    """Reconcile every non-terminal record, at most ``max_concurrency`` at a time.

    A failure on one record is logged and counted; it never stops the others.
    """
    record_ids = await pending_record_ids(session_factory)
    if not record_ids:
        return ReconcileSummary()

    semaphore = asyncio.Semaphore(max_concurrency)

    async def _one(record_id: uuid.UUID) -> ReconcileOutcome:
        async with semaphore:
            try:
                return await reconcile_record(
                    session_factory,
                    executor,
                    record_id,
                    cleaner=cleaner,
                    max_runtime=max_runtime,
                    fetch_timeout=fetch_timeout,
                )
            except Exception:
                logger.exception("Reconciliation failed", scan_id=str(record_id))
                return ReconcileOutcome.ERROR

    outcomes = await asyncio.gather(*(_one(record_id) for record_id in record_ids))
    summary = ReconcileSummary.from_outcomes(outcomes)
    logger.info(
        "Reconciliation pass complete",
        checked=summary.checked,
        changed=summary.changed,
        errors=summary.errors,
    )
    return summary


# ── Caller-initiated entry points ─────────────────────────────────────────────

async def apply_notification(
    session_factory: SessionFactory,
    record_id: uuid.UUID,
    status: str,
    *,
    tool: str | None = None,
    report: Any = None,
    cleaner: ImageCleaner | None = None,
) -> tuple[ScanRecord, Transition]:
    """Apply a pushed CI notification (webhook). Safe to replay."""
    record, transition = await apply_with_retry(
        session_factory,
        record_id,
        lambda r: apply_ci_event(r, status, tool=tool, report=report),
    )
    await _run_cleanup(cleaner, record, transition)
    return record, transition


async def cancel_scan(
    session_factory: SessionFactory,
    executor: PipelineExecutor,
    record_id: uuid.UUID,
) -> ScanRecord:
    """Cancel upstream (best-effort) and record the cancellation locally.

    Raises ``InvalidTransitionError`` if the scan is no longer cancellable.
    """
    async with session_factory() as session:
        record = await load_record(session, record_id)
        if record is None:
            raise RecordNotFoundError(str(record_id))
        require_state(record, "cancel", CANCELLABLE_STATES)
        pipeline_id = record.external_pipeline_id

    if pipeline_id is not None:
        try:
            await executor.cancel(pipeline_id)
        except PipelineExecutorError as exc:
            logger.warning(
                "Upstream cancel failed; cancelling locally",
                scan_id=str(record_id),
                pipeline_id=pipeline_id,
                error=str(exc),
            )

    record, _ = await apply_with_retry(session_factory, record_id, request_cancel)
    return record


async def acknowledge_scan(
    session_factory: SessionFactory,
    record_id: uuid.UUID,
    user: str,
    *,
    archive: bool = False,
) -> tuple[ScanRecord, bool]:
    return await apply_with_retry(
        session_factory,
        record_id,
        lambda r: acknowledge(r, user, archive=archive),
    )
