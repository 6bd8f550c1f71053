"""
Unit tests for service wiring and the background task lifecycle.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from main import PatchPilot
from models.inventory_models import InventorySnapshot


@pytest.fixture
def scanner():
    return MagicMock(scan=AsyncMock(return_value=InventorySnapshot()))


class TestPatchPilot:
    def test_wiring(self, tmp_path, scanner):
        app = PatchPilot(db_path=str(tmp_path / "patchpilot.db"), scanner=scanner)

        assert app.worker.registry is app.registry
        assert app.scheduler.registry is app.registry
        assert app.worker.scanner is scanner
        assert app.checker.planner is app.planner

    @pytest.mark.asyncio
    async def test_start_runs_first_sweep_then_stops(self, tmp_path, scanner):
        app = PatchPilot(db_path=str(tmp_path / "patchpilot.db"), scanner=scanner)

        app.start()
        while scanner.scan.await_count == 0:
            await asyncio.sleep(0.01)
        await asyncio.wait_for(app.queue.join(), timeout=5)
        app.stop()
        await asyncio.wait_for(app.wait_closed(), timeout=5)

        scanner.scan.assert_awaited_once()
        assert app.registry.get_snapshot() == []
        assert app.worker_task.done()
        assert app.scheduler_task.done()
