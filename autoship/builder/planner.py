"""Planning and review activities.

``Planner`` turns a task into an ``ImplementationPlan`` using the ``planner``
oracle role. ``Reviewer`` compares the coder's actual diff with the task and
the plan using the ``reviewer`` role. Both render their prompts from Jinja2
templates and expect a JSON object back.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel

from autoship.errors import PlanningFailure
from autoship.executor import InfrastructureExecutor
from autoship.models import ChangeAction, ImplementationPlan, ReviewerOutput, Task
from autoship.oracle import OracleCascade, parse_json_response
from autoship.prompts import PromptRenderer
from autoship.utils import truncate

console = Console()

MAX_DIFF_CHARS = 50_000

_ACTION_ALIASES = {
    "add": ChangeAction.CREATE,
    "new": ChangeAction.CREATE,
    "update": ChangeAction.MODIFY,
    "edit": ChangeAction.MODIFY,
    "change": ChangeAction.MODIFY,
    "remove": ChangeAction.DELETE,
}


def _normalise_changes(changes: Any) -> list[dict[str, Any]]:
    """Coerce loosely-shaped change entries into ``FileChange`` payloads."""
    if not isinstance(changes, list):
        return []
    normalised: list[dict[str, Any]] = []
    for change in changes:
        if not isinstance(change, dict):
            continue
        path = change.get("path") or change.get("file") or ""
        if not path:
            continue
        action = str(change.get("action", "modify")).lower()
        if action not in {a.value for a in ChangeAction}:
            action = _ACTION_ALIASES.get(action, ChangeAction.MODIFY).value
        normalised.append(
            {"path": path, "action": action, "description": str(change.get("description", ""))}
        )
    return normalised


class Planner:
    """Produces implementation plans with the ``planner`` oracle role."""

    def __init__(self, oracle: OracleCascade, renderer: PromptRenderer | None = None):
        self.oracle = oracle
        self.renderer = renderer or PromptRenderer()

    async def plan(self, task: Task, cwd: str | Path | None = None) -> ImplementationPlan:
        """Plan ``task``.

        Raises:
            PlanningFailure: If the oracle's answer is not a usable plan.
            OracleError: If every model in the planner cascade failed.
        """
        prompt = self.renderer.render("planner", task=task)
        raw = await self.oracle.invoke(prompt, "planner", cwd=cwd)

        data = parse_json_response(raw)
        if data is None:
            raise PlanningFailure("planning", f"Planner returned no JSON: {truncate(raw, 300)}")

        try:
            plan = ImplementationPlan(
                task_id=task.id,
                proposed_changes=_normalise_changes(
                    data.get("proposedChanges", data.get("proposed_changes"))
                ),
                verification_plan=str(data.get("verificationPlan", data.get("verification_plan", ""))),
                estimated_effort=str(data.get("estimatedEffort", data.get("estimated_effort", ""))),
                context=data.get("context") or None,
                project_id=task.project_id,
            )
        except ValidationError as exc:
            raise PlanningFailure("planning", f"Invalid plan structure: {exc}") from exc

        console.print(
            Panel(plan.summary(), title=f"Plan for {task.id}", border_style="cyan")
        )
        return plan


class Reviewer:
    """Reviews the coder's diff against the task and the approved plan."""

    def __init__(
        self,
        oracle: OracleCascade,
        executor: InfrastructureExecutor,
        renderer: PromptRenderer | None = None,
    ):
        self.oracle = oracle
        self.executor = executor
        self.renderer = renderer or PromptRenderer()

    async def get_diff(self, worktree: str | Path, files_changed: list[str]) -> str:
        """Diff of the last commit, limited to ``files_changed`` when given."""
        args = ["diff", "HEAD~1"]
        if files_changed:
            args += ["--", *files_changed]
        result = await self.executor.git(*args, cwd=worktree)
        if not result.ok:
            console.print(f"[yellow]Could not compute diff: {result.stderr}[/yellow]")
            return ""
        return truncate(result.stdout, MAX_DIFF_CHARS)

    async def review(
        self,
        task: Task,
        plan: ImplementationPlan,
        files_changed: list[str],
        worktree: str | Path,
    ) -> ReviewerOutput:
        diff = await self.get_diff(worktree, files_changed)
        prompt = self.renderer.render("reviewer", task=task, plan=plan, diff=diff)
        raw = await self.oracle.invoke(prompt, "reviewer", cwd=worktree)

        data = parse_json_response(raw)
        if data is None:
            return ReviewerOutput(
                approved=False,
                issues=["Reviewer returned no parseable verdict"],
                suggestions=["Re-run the review"],
            )

        output = ReviewerOutput(
            approved=bool(data.get("approved", False)),
            issues=[str(issue) for issue in data.get("issues") or []],
            suggestions=[str(s) for s in data.get("suggestions") or []],
        )
        if output.approved:
            console.print(f"[green]Review approved[/green] for {task.id}")
        else:
            console.print(f"[yellow]Review rejected[/yellow] for {task.id}: {len(output.issues)} issue(s)")
        return output
