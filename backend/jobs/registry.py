"""
Job Registry

Tracks every queued or processing job, its processing flag and its
accumulated output lines.

Architecture:
1. Producers call mark_for_* which records the job and enqueues it
2. The worker claims a job (try_claim) before running it, runs it, then
   finishes it (finish) which drops the entry
3. Readers take snapshots which are copies and never alias live state

All state changes happen under a single lock so concurrent claims of the
same job cannot both succeed.
"""

import logging
import threading
from typing import Dict, List, Optional

from jobs.queue import JobQueue
from jobs.types import (
    CheckAllForUpdatesJob,
    Job,
    JobKind,
    PendingJob,
    ResetAllJob,
    RestartStackJob,
    UpdateJob,
)

logger = logging.getLogger(__name__)


class JobRegistry:
    """Registry of pending jobs, keyed by sequence number."""

    def __init__(self, queue: JobQueue):
        self._queue = queue
        self._lock = threading.Lock()
        self._pending: Dict[int, PendingJob] = {}
        self._sequence = 0

    def _next_sequence(self) -> int:
        # Caller holds the lock
        self._sequence += 1
        return self._sequence

    def _register(self, job: Job) -> Job:
        # Caller holds the lock
        self._pending[job.sequence] = PendingJob(job=job)
        return job

    def _enqueue(self, job: Job) -> int:
        self._queue.enqueue(job)
        logger.info(f"Queued {job.kind.value} job #{job.sequence}")
        return job.sequence

    def mark_for_update(self, container_id: int, target_version_id: int, target_version: str,
                        is_automatic: bool = False) -> int:
        with self._lock:
            job = self._register(UpdateJob(
                sequence=self._next_sequence(),
                container_id=container_id,
                target_version_id=target_version_id,
                target_version=target_version,
                is_automatic=is_automatic,
            ))
        return self._enqueue(job)

    def mark_for_reset_all(self) -> int:
        with self._lock:
            job = self._register(ResetAllJob(sequence=self._next_sequence()))
        return self._enqueue(job)

    def mark_for_check_all(self) -> int:
        with self._lock:
            job = self._register(CheckAllForUpdatesJob(sequence=self._next_sequence()))
        return self._enqueue(job)

    def mark_for_restart_stack(self, stack_id: int) -> int:
        with self._lock:
            job = self._register(RestartStackJob(sequence=self._next_sequence(), stack_id=stack_id))
        return self._enqueue(job)

    def try_claim(self, sequence: int) -> bool:
        """
        Mark a job as processing.

        Returns False when the job is gone (removed while queued) or already
        processing; in both cases the caller must skip it.
        """
        with self._lock:
            entry = self._pending.get(sequence)
            if entry is None or entry.is_processing:
                return False
            entry.is_processing = True
            return True

    def finish(self, sequence: int) -> None:
        with self._lock:
            self._pending.pop(sequence, None)

    def append_output(self, sequence: int, line: str) -> None:
        """Append an output line; ignored once the job has been finished"""
        with self._lock:
            entry = self._pending.get(sequence)
            if entry is not None:
                entry.output.append(line)

    def get_output_snapshot(self, sequence: int) -> Optional[List[str]]:
        with self._lock:
            entry = self._pending.get(sequence)
            return list(entry.output) if entry is not None else None

    def get_snapshot(self) -> List[PendingJob]:
        """Copies of every pending job, ordered by sequence"""
        with self._lock:
            entries = [entry.copy() for entry in self._pending.values()]
        return sorted(entries, key=lambda entry: entry.sequence)

    def get_snapshot_dicts(self) -> List[dict]:
        return [entry.to_dict() for entry in self.get_snapshot()]

    def _find(self, kind: JobKind, processing: bool, container_id: Optional[int] = None,
              stack_id: Optional[int] = None) -> Optional[PendingJob]:
        with self._lock:
            for entry in sorted(self._pending.values(), key=lambda e: e.sequence):
                if entry.kind != kind or entry.is_processing != processing:
                    continue
                if container_id is not None and entry.container_id != container_id:
                    continue
                if stack_id is not None and entry.stack_id != stack_id:
                    continue
                return entry.copy()
        return None

    def get_queued_update_for_container(self, container_id: int) -> Optional[PendingJob]:
        return self._find(JobKind.UPDATE, False, container_id=container_id)

    def get_processing_update_for_container(self, container_id: int) -> Optional[PendingJob]:
        return self._find(JobKind.UPDATE, True, container_id=container_id)

    def is_reset_all_queued(self) -> bool:
        return self._find(JobKind.RESET_ALL, False) is not None

    def is_reset_all_processing(self) -> bool:
        return self._find(JobKind.RESET_ALL, True) is not None

    def is_check_all_queued(self) -> bool:
        return self._find(JobKind.CHECK_ALL_FOR_UPDATES, False) is not None

    def is_check_all_processing(self) -> bool:
        return self._find(JobKind.CHECK_ALL_FOR_UPDATES, True) is not None

    def is_restart_stack_queued(self, stack_id: int) -> bool:
        return self._find(JobKind.RESTART_STACK, False, stack_id=stack_id) is not None

    def is_restart_stack_processing(self, stack_id: int) -> bool:
        return self._find(JobKind.RESTART_STACK, True, stack_id=stack_id) is not None

    def try_remove(self, sequence: int) -> bool:
        """
        Cancel a queued job.

        The job stays in the queue but the worker skips it because its claim
        fails. A job that is already processing cannot be removed.
        """
        with self._lock:
            entry = self._pending.get(sequence)
            if entry is None or entry.is_processing:
                return False
            del self._pending[sequence]
        logger.info(f"Removed queued {entry.kind.value} job #{sequence}")
        return True
