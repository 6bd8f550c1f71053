"""
Unit tests for the job registry and queue.

Tests registry state transitions:
- Enqueue on mark_for_*
- Exactly-once claim under concurrent callers
- Snapshots are ordered copies
- Queued/processing queries and cancellation
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from jobs.queue import JobQueue
from jobs.registry import JobRegistry
from jobs.types import JobKind, UpdateJob


@pytest.fixture
def queue():
    return JobQueue()


@pytest.fixture
def registry(queue):
    return JobRegistry(queue)


class TestMarkFor:
    def test_sequences_increase(self, registry):
        first = registry.mark_for_check_all()
        second = registry.mark_for_reset_all()
        assert second == first + 1

    def test_sequence_is_per_registry(self, registry):
        registry.mark_for_check_all()
        assert JobRegistry(JobQueue()).mark_for_check_all() == 1

    @pytest.mark.asyncio
    async def test_jobs_are_enqueued_in_order(self, registry, queue):
        registry.mark_for_update(5, 9, "v1.2.0")
        registry.mark_for_restart_stack(3)

        first = await queue.get()
        second = await queue.get()

        assert isinstance(first, UpdateJob)
        assert first.container_id == 5
        assert first.target_version == "v1.2.0"
        assert not first.is_automatic
        assert second.kind == JobKind.RESTART_STACK
        assert second.stack_id == 3


class TestClaim:
    def test_claim_once(self, registry):
        seq = registry.mark_for_check_all()
        assert registry.try_claim(seq)
        assert not registry.try_claim(seq)

    def test_claim_unknown(self, registry):
        assert not registry.try_claim(42)

    def test_concurrent_claims_single_winner(self, registry):
        seq = registry.mark_for_reset_all()

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda _: registry.try_claim(seq), range(64)))

        assert results.count(True) == 1

    def test_finish_removes_entry(self, registry):
        seq = registry.mark_for_check_all()
        registry.try_claim(seq)
        registry.finish(seq)

        assert registry.get_snapshot() == []
        assert not registry.try_claim(seq)


class TestOutput:
    def test_output_accumulates(self, registry):
        seq = registry.mark_for_restart_stack(1)
        registry.append_output(seq, "one")
        registry.append_output(seq, "two")
        assert registry.get_output_snapshot(seq) == ["one", "two"]

    def test_output_after_finish_ignored(self, registry):
        seq = registry.mark_for_restart_stack(1)
        registry.finish(seq)
        registry.append_output(seq, "late")
        assert registry.get_output_snapshot(seq) is None

    def test_snapshot_is_a_copy(self, registry):
        seq = registry.mark_for_restart_stack(1)
        registry.append_output(seq, "line")

        snapshot = registry.get_snapshot()
        snapshot[0].output.append("mutated")
        output = registry.get_output_snapshot(seq)
        output.append("mutated")

        assert registry.get_output_snapshot(seq) == ["line"]


class TestSnapshot:
    def test_ordered_by_sequence_with_all_kinds(self, registry):
        registry.mark_for_update(1, 2, "v2")
        registry.mark_for_check_all()
        registry.mark_for_reset_all()
        registry.mark_for_restart_stack(7)

        snapshot = registry.get_snapshot()

        assert [entry.sequence for entry in snapshot] == [1, 2, 3, 4]
        assert [entry.kind for entry in snapshot] == [
            JobKind.UPDATE, JobKind.CHECK_ALL_FOR_UPDATES, JobKind.RESET_ALL, JobKind.RESTART_STACK,
        ]

    def test_snapshot_dicts(self, registry):
        seq = registry.mark_for_update(1, 2, "v2", is_automatic=True)
        registry.try_claim(seq)

        data = registry.get_snapshot_dicts()[0]

        assert data['kind'] == 'update'
        assert data['is_processing'] is True
        assert data['is_automatic'] is True
        assert data['target_version'] == 'v2'


class TestQueries:
    def test_update_queued_then_processing(self, registry):
        seq = registry.mark_for_update(10, 20, "v1.1.0")

        assert registry.get_queued_update_for_container(10).sequence == seq
        assert registry.get_processing_update_for_container(10) is None
        assert registry.get_queued_update_for_container(11) is None

        registry.try_claim(seq)

        assert registry.get_queued_update_for_container(10) is None
        assert registry.get_processing_update_for_container(10).sequence == seq

    def test_reset_and_check_queries(self, registry):
        reset = registry.mark_for_reset_all()
        registry.mark_for_check_all()

        assert registry.is_reset_all_queued()
        assert registry.is_check_all_queued()
        assert not registry.is_reset_all_processing()

        registry.try_claim(reset)
        assert registry.is_reset_all_processing()
        assert not registry.is_reset_all_queued()
        assert not registry.is_check_all_processing()

    def test_restart_stack_queries(self, registry):
        seq = registry.mark_for_restart_stack(3)

        assert registry.is_restart_stack_queued(3)
        assert not registry.is_restart_stack_queued(4)

        registry.try_claim(seq)
        assert registry.is_restart_stack_processing(3)


class TestRemove:
    def test_remove_queued(self, registry):
        seq = registry.mark_for_update(1, 2, "v2")
        assert registry.try_remove(seq)
        assert registry.get_queued_update_for_container(1) is None
        assert not registry.try_claim(seq)

    def test_cannot_remove_processing(self, registry):
        seq = registry.mark_for_update(1, 2, "v2")
        registry.try_claim(seq)
        assert not registry.try_remove(seq)
        assert registry.get_processing_update_for_container(1) is not None

    def test_remove_unknown(self, registry):
        assert not registry.try_remove(99)
