"""Periodic sync passes in a background asyncio task."""

from __future__ import annotations

import asyncio
import logging

from omnisync.core.settings import Settings
from omnisync.core.storage import get_db
from omnisync.core.sync_job import (
    SyncEventType,
    get_sync_store,
    is_pass_running,
    run_configured_sync_job,
)

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs a sync pass every `interval_minutes`. 0 disables scheduling."""

    def __init__(self, settings: Settings, interval_minutes: int | None = None) -> None:
        self._settings = settings
        self._interval_minutes = (
            settings.sync_interval_minutes if interval_minutes is None else interval_minutes
        )
        self._task: asyncio.Task | None = None

    @property
    def enabled(self) -> bool:
        return self._interval_minutes > 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> bool:
        """Run one scheduled pass. Returns False if skipped because one is running."""
        store = get_sync_store()
        running = store.get_running()
        if running or is_pass_running():
            logger.info(f"Skipping scheduled sync, a pass is already running ({running.id if running else 'in process'})")
            return False

        job = store.create(trigger="scheduled")
        logger.info(f"Starting scheduled sync {job.id}")
        async for event in run_configured_sync_job(job, get_db(), store, self._settings):
            if event.type == SyncEventType.FAILED:
                logger.warning(f"Scheduled sync {job.id} failed: {event.data.get('error')}")
        return True

    async def _loop(self) -> None:
        interval = self._interval_minutes * 60
        while True:
            await asyncio.sleep(interval)
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduled sync crashed")

    def start(self) -> None:
        if not self.enabled:
            logger.info("Scheduled sync disabled (SYNC_INTERVAL_MINUTES=0)")
            return
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Scheduled sync every {self._interval_minutes} minutes")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
