"""Background reconciliation scheduler.

Runs as an asyncio task in the app lifespan. Every
``reconcile_interval_seconds`` it reconciles all non-terminal scan records
against the CI system, so records converge even when webhooks are lost.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

from scantrack.ci.base import PipelineExecutor
from scantrack.core.config import Settings, get_settings
from scantrack.core.logging import get_logger
from scantrack.engine.cleanup import ImageCleaner
from scantrack.engine.reconciler import ReconcileSummary, SessionFactory, reconcile_pending

logger = get_logger(__name__)


class ReconciliationScheduler:
    """Periodically reconciles pending scans.

    Usage::

        scheduler = ReconciliationScheduler(factory, executor)
        await scheduler.start()
        # ... app runs ...
        await scheduler.stop()
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        executor: PipelineExecutor,
        *,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._session_factory = session_factory
        self._executor = executor
        self._cleaner = ImageCleaner(executor)
        self._interval = settings.reconcile_interval_seconds
        self._enabled = settings.reconcile_enabled
        self._max_concurrency = settings.max_concurrent_reconciles
        self._max_runtime = timedelta(minutes=settings.scan_max_runtime_minutes)
        self._fetch_timeout = settings.ci_request_timeout
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if not self._enabled:
            logger.info("Reconciliation scheduler disabled")
            return
        if self.running:
            logger.warning("Reconciliation scheduler already running")
            return
        self._task = asyncio.create_task(self._loop(), name="scan-reconciler")
        logger.info("Reconciliation scheduler started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if not self.running:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reconciliation scheduler stopped")

    async def run_once(self) -> ReconcileSummary:
        """One reconciliation pass over every non-terminal record."""
        return await reconcile_pending(
            self._session_factory,
            self._executor,
            cleaner=self._cleaner,
            max_concurrency=self._max_concurrency,
            max_runtime=self._max_runtime,
            fetch_timeout=self._fetch_timeout,
        )

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reconciliation pass failed, will retry next cycle")
