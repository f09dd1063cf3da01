"""Coding activity: implement a plan inside a task worktree and open a PR."""

from __future__ import annotations

from pathlib import Path

from rich.console import Console

from autoship.config import Config
from autoship.errors import ExecutorError, OracleError, ScmError
from autoship.executor import InfrastructureExecutor
from autoship.models import CoderOutput, ImplementationPlan
from autoship.oracle import OracleCascade, parse_json_response
from autoship.prompts import PromptRenderer
from autoship.scm import CreatePROptions, ScmFactory
from autoship.utils import truncate

console = Console()

COMMIT_EMAIL = "autoship@localhost"
COMMIT_NAME = "autoship"


def commit_message(task_id: str) -> str:
    return f"feat({task_id}): implement changes"


def pull_request_title(plan: ImplementationPlan) -> str:
    first = plan.proposed_changes[0].description if plan.proposed_changes else ""
    return truncate(f"feat({plan.task_id}): {first or 'implement changes'}", 120)


class Coder:
    """Runs the ``coder`` oracle role in a worktree, commits, pushes and opens the PR."""

    def __init__(
        self,
        config: Config,
        oracle: OracleCascade,
        executor: InfrastructureExecutor,
        scm: ScmFactory | None = None,
        renderer: PromptRenderer | None = None,
    ):
        self.config = config
        self.oracle = oracle
        self.executor = executor
        self.scm = scm
        self.renderer = renderer or PromptRenderer()

    async def implement(
        self,
        plan: ImplementationPlan,
        worktree: str | Path,
        branch: str,
        project_id: str | None = None,
        existing_pr_url: str | None = None,
    ) -> CoderOutput:
        """Implement ``plan``. Failures are reported in ``CoderOutput.error``, never raised."""
        worktree = Path(worktree)
        try:
            provider = self.scm.for_project(project_id) if self.scm else None
            if provider is not None:
                await provider.configure_git_credentials(worktree, self.executor)
            (await self.executor.git("config", "user.email", COMMIT_EMAIL, cwd=worktree)).check()
            (await self.executor.git("config", "user.name", COMMIT_NAME, cwd=worktree)).check()

            prompt = self.renderer.render("coder", plan=plan, branch=branch)
            console.print(f"[cyan]Coding[/cyan] {plan.task_id} in {worktree.name}")
            raw = await self.oracle.invoke(prompt, "coder", cwd=worktree)
            report = parse_json_response(raw) or {}

            (await self.executor.git("add", "-A", cwd=worktree)).check()
            status = await self.executor.git("status", "--porcelain", cwd=worktree)
            if status.ok and not status.stdout.strip():
                return CoderOutput(error="Coder produced no changes")

            (await self.executor.git("commit", "-m", commit_message(plan.task_id), cwd=worktree)).check()
            sha = (await self.executor.git("rev-parse", "HEAD", cwd=worktree)).check().stdout.strip()
            diff = await self.executor.git("diff", "--name-only", "HEAD~1", cwd=worktree)
            files_changed = [line for line in diff.stdout.splitlines() if line.strip()] if diff.ok else []

            (await self.executor.git("push", "-u", "origin", branch, cwd=worktree, timeout=120.0)).check()

            pr_url = existing_pr_url or ""
            if not pr_url and provider is not None:
                pr_url = await provider.create_pull_request(
                    CreatePROptions(
                        title=pull_request_title(plan),
                        body=f"Automated PR created by autoship\n\n{plan.verification_plan}",
                        source_branch=branch,
                        target_branch=self.config.trunk_branch,
                    )
                )
            elif not pr_url:
                console.print("[yellow]No SCM provider configured; skipping pull request[/yellow]")

        except (OracleError, ExecutorError, ScmError) as exc:
            console.print(f"[red]Coding failed:[/red] {truncate(str(exc), 300)}")
            return CoderOutput(error=str(exc))

        console.print(f"[green]Committed[/green] {sha[:8]} ({len(files_changed)} file(s))")
        return CoderOutput(
            pr_url=pr_url,
            files_changed=files_changed,
            commit_sha=sha,
            tests_passed=bool(report.get("testsPassed", report.get("tests_passed", False))),
        )
