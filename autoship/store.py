"""Durable JSON-file stores.

- FixTaskChainStore: records which fix-task was spawned for which original
  task, creates fix-tasks, and answers the loop-guard question "how deep is
  this chain?".
- WorkflowStateStore: one ``WorkflowState`` file per workflow id, written
  after every phase transition so a restarted process can resume.
- SignalQueue: per-workflow list of pending signals (approve, reject,
  cancel) sent from other processes.
- FixTaskLauncher: queues fix-task workflow inputs for ``run-queued``.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from rich.console import Console

from autoship.models import (
    FixTaskLink,
    Task,
    TaskPriority,
    TaskType,
    WorkflowInput,
    WorkflowOptions,
    WorkflowState,
)
from autoship.prompts import PromptRenderer
from autoship.utils import load_json, load_json_list, save_json

console = Console()

Clock = Callable[[], datetime]

FIX_ACCEPTANCE_CRITERIA = [
    "The original error is resolved",
    "Build and tests pass successfully",
    "No new issues are introduced",
]
FIX_TITLE_PREFIX = "[FIX] "


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Fix-task chain
# ---------------------------------------------------------------------------


class FixTaskChainStore:
    """Fix-task chain records with a time-to-live."""

    def __init__(
        self,
        path: Path,
        ttl_days: int = 7,
        renderer: PromptRenderer | None = None,
        clock: Clock = _utcnow,
    ):
        self.path = Path(path)
        self.ttl = timedelta(days=ttl_days)
        self.renderer = renderer or PromptRenderer()
        self._clock = clock

    def _links(self) -> list[FixTaskLink]:
        cutoff = self._clock() - self.ttl
        links = [FixTaskLink.model_validate(item) for item in load_json_list(self.path)]
        return [link for link in links if link.created_at >= cutoff]

    async def _save(self, links: list[FixTaskLink]) -> None:
        await save_json([link.model_dump(mode="json") for link in links], self.path)

    def root_of(self, task_id: str) -> str:
        """Follow fix links back to the task that started the chain."""
        parents = {link.fix_task_id: link.original_task_id for link in self._links()}
        seen: set[str] = set()
        while task_id in parents and task_id not in seen:
            seen.add(task_id)
            task_id = parents[task_id]
        return task_id

    def chain_depth(self, original_task_id: str) -> int:
        """Number of live fix-tasks spawned for the chain ``original_task_id`` belongs to."""
        root = self.root_of(original_task_id)
        return sum(1 for link in self._links() if link.original_task_id == root)

    def check_loop(self, original_task_id: str, threshold: int) -> tuple[bool, int]:
        """Return ``(is_loop, depth)``; a chain deeper than ``threshold`` is a loop."""
        depth = self.chain_depth(original_task_id)
        return depth > threshold, depth

    async def create_fix_task(
        self,
        original_task_id: str,
        original_title: str,
        error: str,
        commit_sha: str | None = None,
        project_id: str | None = None,
    ) -> tuple[Task, int]:
        """Create the next fix-task in the chain and record the link."""
        root = self.root_of(original_task_id)
        links = self._links()
        depth = sum(1 for link in links if link.original_task_id == root) + 1

        title = original_title if original_title.startswith(FIX_TITLE_PREFIX) else f"{FIX_TITLE_PREFIX}{original_title}"
        task = Task(
            id=f"fix-{root}-{depth}",
            title=title,
            context=self.renderer.render(
                "fix_task",
                original_title=original_title,
                original_task_id=root,
                commit_sha=commit_sha,
                error=error,
                depth=depth,
            ),
            acceptance_criteria=list(FIX_ACCEPTANCE_CRITERIA),
            priority=TaskPriority.HIGH,
            type=TaskType.BUGFIX,
            project_id=project_id,
            metadata={"original_task_id": root, "commit_sha": commit_sha, "chain_depth": depth},
        )

        links.append(FixTaskLink(fix_task_id=task.id, original_task_id=root, depth=depth, created_at=self._clock()))
        await self._save(links)
        console.print(f"[yellow]Created fix task[/yellow] [bold]{task.id}[/bold] (chain depth {depth})")
        return task, depth


# ---------------------------------------------------------------------------
# Workflow state
# ---------------------------------------------------------------------------


class WorkflowStateStore:
    """Persists ``WorkflowState`` as ``<dir>/<workflow_id>.json``."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path_for(self, workflow_id: str) -> Path:
        return self.directory / f"{workflow_id}.json"

    async def save(self, state: WorkflowState) -> None:
        state.updated_at = _utcnow()
        await save_json(state.model_dump(mode="json", by_alias=True), self.path_for(state.workflow_id))

    def load(self, workflow_id: str) -> WorkflowState | None:
        path = self.path_for(workflow_id)
        if not path.exists():
            return None
        try:
            return WorkflowState.model_validate(load_json(path))
        except ValueError as exc:
            console.print(f"[yellow]Ignoring unreadable state file {path}: {exc}[/yellow]")
            return None

    def list_ids(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


class SignalQueue:
    """Per-workflow durable signal list at ``<dir>/<workflow_id>.json``."""

    APPROVAL = "approval"
    CANCEL = "cancel"

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path_for(self, workflow_id: str) -> Path:
        return self.directory / f"{workflow_id}.json"

    def pending(self, workflow_id: str) -> list[dict[str, Any]]:
        try:
            return load_json_list(self.path_for(workflow_id))
        except json.JSONDecodeError:
            return []

    async def send(self, workflow_id: str, name: str, payload: dict[str, Any] | None = None) -> None:
        signals = self.pending(workflow_id)
        signals.append({"name": name, "payload": payload or {}, "sent_at": _utcnow().isoformat()})
        await save_json(signals, self.path_for(workflow_id))

    async def approve(self, workflow_id: str, approved: bool, comment: str | None = None) -> None:
        await self.send(workflow_id, self.APPROVAL, {"approved": approved, "comment": comment})

    async def cancel(self, workflow_id: str) -> None:
        await self.send(workflow_id, self.CANCEL)

    async def drain(self, workflow_id: str) -> list[dict[str, Any]]:
        """Return and clear every pending signal, oldest first."""
        signals = self.pending(workflow_id)
        if signals:
            await save_json([], self.path_for(workflow_id))
        return signals


# ---------------------------------------------------------------------------
# Fix-task launch
# ---------------------------------------------------------------------------


class FixTaskLauncher:
    """Queues a fix-task workflow as ``<queue_dir>/<task_id>.json``."""

    def __init__(self, queue_dir: Path):
        self.queue_dir = Path(queue_dir)

    async def __call__(self, task: Task, original_task_id: str) -> Path:
        workflow_input = WorkflowInput(
            task=task,
            options=WorkflowOptions(
                skip_approval=True,
                notify_on_complete=True,
                is_fix_task=True,
                original_task_id=original_task_id,
            ),
        )
        path = self.queue_dir / f"{task.id}.json"
        await save_json(workflow_input.model_dump(mode="json", by_alias=True), path)
        console.print(f"[cyan]Queued fix workflow[/cyan] {path.name}")
        return path

    def pending(self) -> list[Path]:
        if not self.queue_dir.is_dir():
            return []
        return sorted(self.queue_dir.glob("*.json"))

    def claim(self, path: Path) -> WorkflowInput:
        """Load a queued input and remove it from the queue."""
        workflow_input = WorkflowInput.model_validate(load_json(path))
        path.unlink()
        return workflow_input
