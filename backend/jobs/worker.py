"""
Background job worker

The single consumer of the job queue. Jobs run strictly one at a time in
FIFO order; a job is claimed in the registry before it runs and finished
afterwards whatever the outcome, so a failure never stops the loop.

Known limitations: jobs have no timeout and a shutdown does not interrupt a
running compose subprocess, it only stops the loop between jobs.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from database import CandidateVersion, ComposeStack, DatabaseManager, ManagedContainer
from deployment.compose_runner import ComposeRunner
from jobs.queue import JobQueue
from jobs.registry import JobRegistry
from jobs.types import (
    CheckAllForUpdatesJob,
    Job,
    JobKind,
    ResetAllJob,
    RestartStackJob,
    UpdateJob,
)
from notifications import NotificationService
from updates.inventory_importer import InventoryImporter, InventoryScanner
from updates.update_checker import UpdateChecker
from updates.update_planner import UpdatePlanner

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[None]]


class JobWorker:
    """Runs queued jobs one after another"""

    def __init__(self, queue: JobQueue, registry: JobRegistry, db: DatabaseManager,
                 planner: UpdatePlanner, checker: UpdateChecker, importer: InventoryImporter,
                 scanner: InventoryScanner, runner: ComposeRunner,
                 notifier: Optional[NotificationService] = None):
        self.queue = queue
        self.registry = registry
        self.db = db
        self.planner = planner
        self.checker = checker
        self.importer = importer
        self.scanner = scanner
        self.runner = runner
        self.notifier = notifier
        self._shutdown = asyncio.Event()

        self._handlers: Dict[JobKind, JobHandler] = {
            JobKind.UPDATE: self._handle_update,
            JobKind.RESET_ALL: self._handle_reset_all,
            JobKind.CHECK_ALL_FOR_UPDATES: self._handle_check_all,
            JobKind.RESTART_STACK: self._handle_restart_stack,
        }
        missing = [kind.value for kind in JobKind if kind not in self._handlers]
        if missing:
            raise ValueError(f"No handler registered for job kinds: {', '.join(missing)}")

    def stop(self):
        """Stop the loop once the current job is done"""
        self._shutdown.set()

    @property
    def is_stopping(self) -> bool:
        return self._shutdown.is_set()

    def _output(self, job: Job, line: str):
        self.registry.append_output(job.sequence, line)
        logger.debug(f"[job #{job.sequence}] {line}")

    async def _next_job(self) -> Optional[Job]:
        getter = asyncio.ensure_future(self.queue.get())
        stopper = asyncio.ensure_future(self._shutdown.wait())
        done, _ = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)

        if getter in done:
            stopper.cancel()
            return getter.result()

        getter.cancel()
        return None

    async def run(self):
        """Consume jobs until stop() is called"""
        logger.info("Job worker started")
        while not self._shutdown.is_set():
            job = await self._next_job()
            if job is None:
                break
            await self.process_job(job)
        logger.info("Job worker stopped")

    async def process_job(self, job: Job):
        try:
            if not self.registry.try_claim(job.sequence):
                logger.debug(f"Skipping {job.kind.value} job #{job.sequence}, removed or already claimed")
                return

            try:
                await self._handlers[job.kind](job)
            except Exception as e:
                logger.error(f"Unhandled error in {job.kind.value} job #{job.sequence}: {e}", exc_info=True)
            finally:
                self.registry.finish(job.sequence)
        finally:
            self.queue.task_done()

    async def _handle_update(self, job: UpdateJob):
        self._output(job, "Starting update (queued)...")

        with self.db.get_session() as session:
            container = session.get(ManagedContainer, job.container_id)
            if container is None:
                logger.warning(f"Update job #{job.sequence}: container {job.container_id} no longer exists")
                self._output(job, "Container not found.")
                return

            container_name = container.name
            target = session.get(CandidateVersion, job.target_version_id)
            if target is None:
                logger.warning(f"Update job #{job.sequence}: version {job.target_version} no longer exists")
                self._output(job, "Target version not found.")
                return

            try:
                await self.planner.update(session, container, target, lambda line: self._output(job, line))
            except Exception as e:
                logger.error(f"Update of {container_name} to {job.target_version} failed: {e}", exc_info=True)
                self._output(job, f"Update failed: {e}")
                if job.is_automatic:
                    await self._notify_auto_update(container_name, job.target_version, False, str(e))
                return

        self._output(job, "Update finished.")
        if job.is_automatic:
            await self._notify_auto_update(container_name, job.target_version, True)

    async def _notify_auto_update(self, container_name: str, target_version: str, success: bool,
                                  error: Optional[str] = None):
        if self.notifier is None or not self.notifier.is_configured:
            return
        await self.notifier.send_auto_update_result(container_name, target_version, success, error)

    async def _handle_reset_all(self, job: ResetAllJob):
        self._output(job, "Starting full container reset (queued)...")
        try:
            if await self.importer.reset_all(self.scanner):
                self._output(job, "Reset finished.")
            else:
                self._output(job, "Reset failed.")
        except Exception as e:
            logger.error(f"Full container reset failed: {e}", exc_info=True)
            self._output(job, f"Reset failed: {e}")

    async def _handle_check_all(self, job: CheckAllForUpdatesJob):
        self._output(job, "Starting update check (queued)...")
        try:
            stats = await self.checker.check_all_for_updates()
            self._output(
                job,
                f"Update check finished: {stats['new_versions']} new versions in {stats['groups']} groups.",
            )
        except Exception as e:
            logger.error(f"Update check failed: {e}", exc_info=True)
            self._output(job, f"Update check failed: {e}")

    async def _handle_restart_stack(self, job: RestartStackJob):
        self._output(job, "Starting stack restart (queued)...")

        with self.db.get_session() as session:
            stack = session.get(ComposeStack, job.stack_id)
            if stack is None or not stack.config_file:
                logger.warning(f"Restart job #{job.sequence}: stack {job.stack_id} not found or has no compose file")
                self._output(job, "Stack not found.")
                return

            try:
                await self.runner.run(stack, 'restart', lambda line: self._output(job, line))
            except Exception as e:
                logger.error(f"Restart of stack {stack.stack_name} failed: {e}", exc_info=True)
                self._output(job, f"Restart failed: {e}")
                return

        self._output(job, "Restart finished.")
