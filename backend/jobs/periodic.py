"""
Periodic version checks.

Enqueues a CheckAllForUpdates job at startup and then every
PATCHPILOT_CHECK_INTERVAL_HOURS. On an empty inventory a full reset is
queued first, once per process, so a fresh install picks up its stacks.
"""

import asyncio
import logging
from typing import Optional

from config.settings import AppConfig
from database import DatabaseManager
from jobs.registry import JobRegistry

logger = logging.getLogger(__name__)


class VersionCheckScheduler:
    """Timer that feeds version check sweeps into the job queue"""

    def __init__(self, db: DatabaseManager, registry: JobRegistry, interval_hours: Optional[float] = None):
        self.db = db
        self.registry = registry
        self.interval_hours = interval_hours if interval_hours is not None else AppConfig.CHECK_INTERVAL_HOURS
        self._reset_pushed = False

    def tick(self) -> Optional[int]:
        """Queue one sweep. Returns the sequence of the check job, or None if one is already pending."""
        if not self._reset_pushed and self.db.count_containers() == 0:
            logger.info("No containers tracked yet, queueing a full container reset")
            self.registry.mark_for_reset_all()
            self._reset_pushed = True

        if self.registry.is_check_all_queued() or self.registry.is_check_all_processing():
            logger.info("Update check already pending, skipping this interval")
            return None

        return self.registry.mark_for_check_all()

    async def run(self, shutdown: asyncio.Event):
        """Tick immediately, then every interval until shutdown is set"""
        interval = self.interval_hours * 3600
        logger.info(f"Version checks scheduled every {self.interval_hours:g} hours")

        while not shutdown.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error scheduling version check: {e}", exc_info=True)

            try:
                await asyncio.wait_for(shutdown.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
