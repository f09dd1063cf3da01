"""Rollback by revert commit.

Production is never reset. A bad change is undone with ``git revert`` on the
trunk and the revert is pushed, so history stays linear and auditable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console
from rich.panel import Panel

from autoship.executor import CommandResult, InfrastructureExecutor

console = Console()


@dataclass
class RollbackOutcome:
    success: bool
    revert_sha: str | None = None
    error: str | None = None
    logs: list[str] = field(default_factory=list)

    def summary(self) -> str:
        if self.success:
            return f"[green]Reverted[/green] -> {self.revert_sha}"
        return f"[red]Rollback failed:[/red] {self.error}"


class _StepFailed(Exception):
    def __init__(self, result: CommandResult):
        self.result = result
        super().__init__(f"{result.command}: {result.stderr or result.stdout}")


class RollbackManager:
    """Reverts a commit on the current branch and pushes the revert."""

    def __init__(self, executor: InfrastructureExecutor):
        self.executor = executor

    async def _git(self, *args: str, cwd: Path, logs: list[str], timeout: float = 60.0) -> str:
        result = await self.executor.git(*args, cwd=cwd, timeout=timeout)
        logs.append(result.summary())
        if not result.ok:
            raise _StepFailed(result)
        return result.stdout.strip()

    async def revert(
        self,
        commit_sha: str | None,
        reason: str,
        project_dir: str | Path,
    ) -> RollbackOutcome:
        """Revert ``commit_sha`` (``HEAD`` when omitted). Never raises."""
        project_dir = Path(project_dir)
        sha = commit_sha or "HEAD"
        logs: list[str] = [f"Rolling back {sha}: {reason}"]
        console.print(
            Panel(f"Reverting [bold]{sha}[/bold]\nReason: {reason}", title="Rollback", border_style="yellow")
        )

        reverting = False
        try:
            branch = await self._git("rev-parse", "--abbrev-ref", "HEAD", cwd=project_dir, logs=logs)
            await self._git("fetch", "origin", branch, cwd=project_dir, logs=logs, timeout=120.0)
            await self._git("checkout", branch, cwd=project_dir, logs=logs)
            await self._git("pull", "origin", branch, cwd=project_dir, logs=logs, timeout=120.0)
            reverting = True
            await self._git("revert", "--no-edit", sha, cwd=project_dir, logs=logs)
            reverting = False
            revert_sha = await self._git("rev-parse", "HEAD", cwd=project_dir, logs=logs)
            await self._git("push", "origin", branch, cwd=project_dir, logs=logs, timeout=120.0)
        except _StepFailed as exc:
            if reverting:
                abort = await self.executor.git("revert", "--abort", cwd=project_dir)
                logs.append(abort.summary())
            console.print(f"[red]Rollback failed:[/red] {exc}")
            return RollbackOutcome(success=False, error=str(exc), logs=logs)

        console.print(f"[green]Rollback pushed[/green] ({revert_sha[:8]})")
        return RollbackOutcome(success=True, revert_sha=revert_sha, logs=logs)
