"""Unit tests for the durable JSON stores (autoship.store).

Tests cover:
- Fix-task creation, ids, depth and root resolution
- Loop detection against a threshold
- Link expiry after the TTL
- Workflow state round trip and unreadable files
- Signal send/drain semantics
- Fix-task queueing and claiming
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from autoship.models import Task, TaskPriority, TaskType, WorkflowPhase, WorkflowState
from autoship.store import (
    FIX_ACCEPTANCE_CRITERIA,
    FixTaskChainStore,
    FixTaskLauncher,
    SignalQueue,
    WorkflowStateStore,
)


class FrozenClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def chains(tmp_path: Path, clock: FrozenClock) -> FixTaskChainStore:
    return FixTaskChainStore(tmp_path / "fix-chains.json", ttl_days=7, clock=clock)


# ---------------------------------------------------------------------------
# FixTaskChainStore
# ---------------------------------------------------------------------------


class TestFixTaskChainStore:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_fix_task(self, chains: FixTaskChainStore):
        task, depth = await chains.create_fix_task(
            "T-1", "Add login", "TS2304: Cannot find name", commit_sha="abc123", project_id="shop"
        )

        assert depth == 1
        assert task.id == "fix-T-1-1"
        assert task.title == "[FIX] Add login"
        assert task.priority == TaskPriority.HIGH
        assert task.type == TaskType.BUGFIX
        assert task.project_id == "shop"
        assert task.acceptance_criteria == FIX_ACCEPTANCE_CRITERIA
        assert "TS2304" in task.context
        assert "abc123" in task.context
        assert "fix attempt #1" in task.context
        assert task.metadata["original_task_id"] == "T-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_chain_resolves_to_root(self, chains: FixTaskChainStore):
        first, _ = await chains.create_fix_task("T-1", "Add login", "e1")
        second, depth = await chains.create_fix_task(first.id, first.title, "e2")

        assert depth == 2
        assert second.id == "fix-T-1-2"
        assert second.title == "[FIX] Add login"
        assert chains.root_of(second.id) == "T-1"
        assert chains.chain_depth(second.id) == 2
        assert chains.chain_depth("T-1") == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_commit_sha(self, chains: FixTaskChainStore):
        task, _ = await chains.create_fix_task("T-1", "x", "e")
        assert "N/A" in task.context

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_check_loop(self, chains: FixTaskChainStore):
        assert chains.check_loop("T-1", 1) == (False, 0)
        await chains.create_fix_task("T-1", "x", "e")
        assert chains.check_loop("T-1", 1) == (False, 1)
        await chains.create_fix_task("T-1", "x", "e")
        assert chains.check_loop("T-1", 1) == (True, 2)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_links_expire(self, chains: FixTaskChainStore, clock: FrozenClock):
        await chains.create_fix_task("T-1", "x", "e")
        clock.advance(days=8)
        assert chains.chain_depth("T-1") == 0

        task, depth = await chains.create_fix_task("T-1", "x", "e")
        assert depth == 1
        assert len(json.loads(chains.path.read_text())) == 1

    @pytest.mark.unit
    def test_unrelated_chains(self, chains: FixTaskChainStore):
        assert chains.root_of("T-9") == "T-9"
        assert chains.chain_depth("T-9") == 0


# ---------------------------------------------------------------------------
# WorkflowStateStore
# ---------------------------------------------------------------------------


class TestWorkflowStateStore:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path: Path):
        store = WorkflowStateStore(tmp_path / "workflows")
        state = WorkflowState(
            workflow_id="wf-1",
            task=Task(id="T-1", title="t", acceptanceCriteria=["a"]),
            phase=WorkflowPhase.CODING,
            retry_count=2,
            completed_steps=["planning"],
        )
        await store.save(state)

        loaded = store.load("wf-1")
        assert loaded.phase == WorkflowPhase.CODING
        assert loaded.retry_count == 2
        assert loaded.task.acceptance_criteria == ["a"]
        assert store.list_ids() == ["wf-1"]

    @pytest.mark.unit
    def test_missing(self, tmp_path: Path):
        store = WorkflowStateStore(tmp_path / "workflows")
        assert store.load("nope") is None
        assert store.list_ids() == []

    @pytest.mark.unit
    def test_unreadable(self, tmp_path: Path):
        store = WorkflowStateStore(tmp_path)
        store.path_for("bad").write_text("{not json")
        assert store.load("bad") is None


# ---------------------------------------------------------------------------
# SignalQueue
# ---------------------------------------------------------------------------


class TestSignalQueue:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_send_and_drain(self, tmp_path: Path):
        queue = SignalQueue(tmp_path)
        await queue.approve("wf-1", False, "too risky")
        await queue.cancel("wf-1")

        signals = await queue.drain("wf-1")
        assert [s["name"] for s in signals] == [SignalQueue.APPROVAL, SignalQueue.CANCEL]
        assert signals[0]["payload"] == {"approved": False, "comment": "too risky"}
        assert await queue.drain("wf-1") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_queues_are_per_workflow(self, tmp_path: Path):
        queue = SignalQueue(tmp_path)
        await queue.cancel("wf-1")
        assert queue.pending("wf-2") == []

    @pytest.mark.unit
    def test_corrupt_file_is_empty(self, tmp_path: Path):
        queue = SignalQueue(tmp_path)
        queue.path_for("wf-1").write_text("[oops")
        assert queue.pending("wf-1") == []


# ---------------------------------------------------------------------------
# FixTaskLauncher
# ---------------------------------------------------------------------------


class TestFixTaskLauncher:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_queue_and_claim(self, tmp_path: Path):
        launcher = FixTaskLauncher(tmp_path / "queue")
        path = await launcher(Task(id="fix-T-1-1", title="[FIX] x"), "T-1")

        assert launcher.pending() == [path]
        workflow_input = launcher.claim(path)
        assert workflow_input.task.id == "fix-T-1-1"
        assert workflow_input.options.is_fix_task
        assert workflow_input.options.skip_approval
        assert workflow_input.options.original_task_id == "T-1"
        assert launcher.pending() == []

    @pytest.mark.unit
    def test_empty_queue(self, tmp_path: Path):
        assert FixTaskLauncher(tmp_path / "missing").pending() == []
