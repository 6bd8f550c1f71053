"""
Job types for the background scheduler.

The set of job kinds is closed: every job is one of the dataclasses below,
tagged by its JobKind. The worker's dispatch table must cover every kind.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union


class JobKind(Enum):
    """Kinds of work the scheduler processes."""
    UPDATE = "update"
    RESET_ALL = "reset_all"
    CHECK_ALL_FOR_UPDATES = "check_all_for_updates"
    RESTART_STACK = "restart_stack"


@dataclass(frozen=True)
class UpdateJob:
    """Move one container to a candidate version."""
    sequence: int
    container_id: int
    target_version_id: int
    target_version: str
    is_automatic: bool = False
    kind: ClassVar[JobKind] = JobKind.UPDATE


@dataclass(frozen=True)
class ResetAllJob:
    """Rebuild the inventory from a fresh scan."""
    sequence: int
    kind: ClassVar[JobKind] = JobKind.RESET_ALL


@dataclass(frozen=True)
class CheckAllForUpdatesJob:
    """Run a full version check sweep."""
    sequence: int
    kind: ClassVar[JobKind] = JobKind.CHECK_ALL_FOR_UPDATES


@dataclass(frozen=True)
class RestartStackJob:
    """docker compose restart for one stack."""
    sequence: int
    stack_id: int
    kind: ClassVar[JobKind] = JobKind.RESTART_STACK


Job = Union[UpdateJob, ResetAllJob, CheckAllForUpdatesJob, RestartStackJob]


@dataclass
class PendingJob:
    """Registry entry for a queued or processing job."""
    job: Job
    is_processing: bool = False
    output: List[str] = field(default_factory=list)

    @property
    def sequence(self) -> int:
        return self.job.sequence

    @property
    def kind(self) -> JobKind:
        return self.job.kind

    @property
    def container_id(self) -> Optional[int]:
        return getattr(self.job, 'container_id', None)

    @property
    def stack_id(self) -> Optional[int]:
        return getattr(self.job, 'stack_id', None)

    def copy(self) -> 'PendingJob':
        # Jobs are frozen, only the output list needs copying
        return PendingJob(job=self.job, is_processing=self.is_processing, output=list(self.output))

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'sequence': self.sequence,
            'kind': self.kind.value,
            'is_processing': self.is_processing,
            'output': list(self.output),
        }
        if isinstance(self.job, UpdateJob):
            data.update({
                'container_id': self.job.container_id,
                'target_version_id': self.job.target_version_id,
                'target_version': self.job.target_version,
                'is_automatic': self.job.is_automatic,
            })
        elif isinstance(self.job, RestartStackJob):
            data['stack_id'] = self.job.stack_id
        return data
