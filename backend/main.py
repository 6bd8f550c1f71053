#!/usr/bin/env python3
"""
PatchPilot - Upstream release tracking and updates for Docker Compose stacks

Wires the services together and runs the background loops:
- the job worker, the single consumer of the job queue
- the version check scheduler, which enqueues a sweep every interval

Everything that mutates stacks goes through the job queue, so at most one
update, reset or restart is running at any time.
"""

import asyncio
import logging
import os
import signal
from typing import Optional

from config.paths import DATA_DIR, DATABASE_PATH, ensure_data_dirs
from config.settings import AppConfig, setup_logging
from database import DatabaseManager
from deployment.compose_runner import ComposeRunner
from deployment.config_storage import FileConfigStorage
from deployment.portainer_client import PortainerClient
from jobs.periodic import VersionCheckScheduler
from jobs.queue import JobQueue
from jobs.registry import JobRegistry
from jobs.worker import JobWorker
from notifications import NotificationService
from updates.github_client import GitHubClient
from updates.inventory_importer import InventoryImporter, InventoryScanner, JsonInventoryScanner
from updates.ollama_client import OllamaClient
from updates.release_analyzer import ReleaseAnalyzer
from updates.repository_resolver import RepositoryResolver
from updates.update_checker import UpdateChecker
from updates.update_planner import UpdatePlanner
from updates.version_resolver import VersionResolver

logger = logging.getLogger(__name__)


class PatchPilot:
    """Owns every long-lived service and the background tasks"""

    def __init__(self, db_path: Optional[str] = None, scanner: Optional[InventoryScanner] = None):
        self.db = DatabaseManager(db_path or DATABASE_PATH)

        self.github = GitHubClient()
        self.ollama = OllamaClient() if AppConfig.ollama_configured() else None
        self.analyzer = ReleaseAnalyzer(self.ollama)
        self.portainer = PortainerClient() if AppConfig.portainer_configured() else None
        self.notifier = NotificationService()

        self.storage = FileConfigStorage()
        self.runner = ComposeRunner()
        self.planner = UpdatePlanner(self.storage, self.runner, self.portainer)
        self.repository_resolver = RepositoryResolver(self.github)
        self.version_resolver = VersionResolver(self.github, self.analyzer)
        self.importer = InventoryImporter(self.db, self.repository_resolver)
        self.scanner = scanner or JsonInventoryScanner(
            AppConfig.INVENTORY_FILE or os.path.join(DATA_DIR, 'inventory.json')
        )

        self.queue = JobQueue()
        self.registry = JobRegistry(self.queue)
        self.checker = UpdateChecker(self.db, self.version_resolver, self.notifier, self.planner, self.registry)
        self.worker = JobWorker(
            self.queue, self.registry, self.db, self.planner, self.checker,
            self.importer, self.scanner, self.runner, self.notifier,
        )
        self.scheduler = VersionCheckScheduler(self.db, self.registry)

        self.shutdown_event = asyncio.Event()
        self.worker_task: Optional[asyncio.Task] = None
        self.scheduler_task: Optional[asyncio.Task] = None

    def start(self):
        def _handle_task_exception(task: asyncio.Task):
            """Handle exceptions from background tasks"""
            try:
                task.result()
            except asyncio.CancelledError:
                pass  # Normal shutdown, don't log
            except Exception as e:
                logger.error(f"Background task failed: {e}", exc_info=True)

        self.worker_task = asyncio.create_task(self.worker.run())
        self.worker_task.add_done_callback(_handle_task_exception)
        logger.info("Job worker task started")

        self.scheduler_task = asyncio.create_task(self.scheduler.run(self.shutdown_event))
        self.scheduler_task.add_done_callback(_handle_task_exception)
        logger.info("Version check scheduler task started")

    def stop(self):
        logger.info("Shutting down PatchPilot...")
        self.shutdown_event.set()
        self.worker.stop()

    async def wait_closed(self):
        for name, task in (("scheduler", self.scheduler_task), ("worker", self.worker_task)):
            if task is None:
                continue
            try:
                await task
            except asyncio.CancelledError:
                logger.info(f"{name.capitalize()} task cancelled")
            except Exception as e:
                logger.error(f"Error during {name} task shutdown: {e}")

        await self.notifier.close()
        if self.ollama is not None:
            await self.ollama.close()
        if self.portainer is not None:
            await self.portainer.close()
        logger.info("PatchPilot stopped")


async def main():
    # Validate configuration early to fail fast on misconfiguration
    AppConfig.validate()
    ensure_data_dirs()
    setup_logging()

    logger.info("Starting PatchPilot...")
    app = PatchPilot()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, app.stop)
        except NotImplementedError:
            pass  # Not supported on this platform, rely on KeyboardInterrupt

    app.start()
    await app.shutdown_event.wait()
    await app.wait_closed()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
