"""Git worktree management for per-task isolation.

Every task runs in its own worktree under ``<project>/worktrees/`` on a
dedicated ``task/<name>`` branch cut from the latest trunk. Creation first
tears down anything left behind by an earlier attempt with the same name, so
a failed task can be retried safely. Removal is tolerant of a degraded
environment and falls back to a raw directory delete.
"""

from __future__ import annotations

import shutil
import time
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console
from rich.panel import Panel

from autoship.config import Config
from autoship.errors import WorktreeError
from autoship.executor import CommandResult, InfrastructureExecutor
from autoship.models import Worktree
from autoship.scm import ScmFactory
from autoship.utils import slugify

console = Console()

WORKTREES_DIR = "worktrees"
DEFAULT_MAX_AGE = 24 * 60 * 60


def worktree_name(task_id: str, task_type: str, slug: str, when: datetime | None = None) -> str:
    """Deterministic worktree name: ``task-<YYYYMMDD>-<type>-<task id>-<slug>``.

    The task id is part of the name, so two tasks with the same title never
    share a worktree path or branch.
    """
    stamp = (when or datetime.now(timezone.utc)).strftime("%Y%m%d")
    task_key = slugify(task_id, max_length=40).strip("-") or "task"
    return f"task-{stamp}-{task_type}-{task_key}-{slug}"


def base_dir_for(path: str | Path) -> Path:
    """Return the repository that owns a worktree path (the parent of ``worktrees/``)."""
    path = Path(path)
    for parent in path.parents:
        if parent.name == WORKTREES_DIR:
            return parent.parent
    return path.parent


def parse_porcelain(output: str) -> list[tuple[str, str]]:
    """Parse ``git worktree list --porcelain`` into ``(path, branch)`` pairs.

    Detached worktrees are reported with an empty branch.
    """
    entries: list[tuple[str, str]] = []
    current_path: str | None = None
    current_branch = ""

    for line in output.splitlines() + [""]:
        line = line.strip()
        if line.startswith("worktree "):
            current_path = line[len("worktree "):]
            current_branch = ""
        elif line.startswith("branch "):
            current_branch = line[len("branch "):].removeprefix("refs/heads/")
        elif line == "" and current_path:
            entries.append((current_path, current_branch))
            current_path = None
            current_branch = ""

    return entries


class WorktreeManager:
    """Creates, removes and prunes task worktrees."""

    def __init__(
        self,
        config: Config,
        executor: InfrastructureExecutor,
        scm: ScmFactory | None = None,
    ):
        self.config = config
        self.executor = executor
        self.scm = scm

    async def _git(self, *args: str, cwd: str | Path, timeout: float = 60.0) -> CommandResult:
        """Run git and raise ``WorktreeError`` on a non-zero exit."""
        result = await self.executor.git(*args, cwd=cwd, timeout=timeout)
        if not result.ok:
            raise WorktreeError(
                f"Git command failed (exit {result.returncode}): {result.command}\n{result.stderr}",
                command=result.command,
                stderr=result.stderr,
            )
        return result

    async def _git_quiet(self, *args: str, cwd: str | Path) -> bool:
        """Run git, ignoring failure. Used for idempotent teardown steps."""
        result = await self.executor.git(*args, cwd=cwd)
        return result.ok

    def ensure_ignored(self, base_dir: Path) -> None:
        """Make sure ``worktrees/`` is listed in the trunk's ``.gitignore``."""
        gitignore = base_dir / ".gitignore"
        content = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
        if any(line.strip().strip("/") == WORKTREES_DIR for line in content.splitlines()):
            return
        if content and not content.endswith("\n"):
            content += "\n"
        gitignore.write_text(f"{content}{WORKTREES_DIR}/\n", encoding="utf-8")
        console.print(f"[dim]Added {WORKTREES_DIR}/ to {gitignore}[/dim]")

    async def create(
        self,
        task_id: str,
        task_type: str,
        slug: str,
        project_id: str | None = None,
    ) -> Worktree:
        """Create a fresh worktree for a task.

        Raises:
            WorktreeError: If fetching trunk or adding the worktree fails.
        """
        base_dir = self.config.project_base_dir(project_id)
        trunk = self.config.trunk_branch
        worktrees_dir = base_dir / WORKTREES_DIR
        worktrees_dir.mkdir(parents=True, exist_ok=True)
        self.ensure_ignored(base_dir)

        name = worktree_name(task_id, task_type, slug)
        path = worktrees_dir / name
        branch = f"task/{name}"

        console.print(
            f"[cyan]Creating worktree[/cyan] [bold]{name}[/bold] from [green]origin/{trunk}[/green]..."
        )

        provider = self.scm.for_project(project_id) if self.scm else None
        if provider is not None:
            await provider.configure_git_credentials(base_dir, self.executor)

        await self._git("fetch", "origin", trunk, cwd=base_dir, timeout=120.0)

        # Idempotent teardown of anything a previous attempt left behind.
        await self._git_quiet("branch", "-D", branch, cwd=base_dir)
        await self._git_quiet("push", "origin", "--delete", branch, cwd=base_dir)
        await self._git_quiet("worktree", "remove", "--force", str(path), cwd=base_dir)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        await self._git_quiet("worktree", "prune", cwd=base_dir)

        await self._git("worktree", "add", "-b", branch, str(path), f"origin/{trunk}", cwd=base_dir)

        console.print(
            Panel(
                f"[green]Worktree created[/green]\n"
                f"  Path:   {path}\n"
                f"  Branch: {branch}\n"
                f"  Task:   {task_id}",
                title="Worktree Ready",
                border_style="green",
            )
        )
        return Worktree(path=str(path), branch=branch, task_id=task_id)

    async def remove(self, path: str | Path, force: bool = True) -> None:
        """Remove a worktree and the branch bound to it.

        Falls back to a raw directory delete when the owning repository is not
        a git repository.
        """
        path = Path(path)
        base_dir = base_dir_for(path)

        check = await self.executor.git("rev-parse", "--git-dir", cwd=base_dir)
        if not check.ok:
            console.print(f"[yellow]{base_dir} is not a git repository; deleting {path} directly[/yellow]")
            shutil.rmtree(path, ignore_errors=True)
            return

        branch = ""
        listing = await self.executor.git("worktree", "list", "--porcelain", cwd=base_dir)
        if listing.ok:
            for wt_path, wt_branch in parse_porcelain(listing.stdout):
                if Path(wt_path) == path:
                    branch = wt_branch
                    break

        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        removed = await self.executor.git(*args, str(path), cwd=base_dir)
        if not removed.ok:
            console.print(f"[yellow]git worktree remove failed, deleting directory: {removed.stderr}[/yellow]")
            shutil.rmtree(path, ignore_errors=True)
            await self._git_quiet("worktree", "prune", cwd=base_dir)

        if branch:
            deleted = await self.executor.git("branch", "-D", branch, cwd=base_dir)
            if not deleted.ok:
                console.print(f"[yellow]Warning: Could not delete branch {branch}: {deleted.stderr}[/yellow]")

        console.print(f"[green]Removed worktree:[/green] {path.name}")

    async def list_worktrees(self, project_id: str | None = None) -> list[Worktree]:
        """List worktrees under ``worktrees/`` for a project."""
        base_dir = self.config.project_base_dir(project_id)
        result = await self.executor.git("worktree", "list", "--porcelain", cwd=base_dir)
        if not result.ok:
            return []
        prefix = str(base_dir / WORKTREES_DIR)
        return [
            Worktree(path=wt_path, branch=branch)
            for wt_path, branch in parse_porcelain(result.stdout)
            if wt_path.startswith(prefix)
        ]

    async def prune(self, max_age: float = DEFAULT_MAX_AGE, project_id: str | None = None) -> int:
        """Remove worktrees older than ``max_age`` seconds. Returns how many were removed."""
        base_dir = self.config.project_base_dir(project_id)
        await self._git_quiet("worktree", "prune", cwd=base_dir)

        worktrees_dir = base_dir / WORKTREES_DIR
        if not worktrees_dir.is_dir():
            return 0

        cutoff = time.time() - max_age
        pruned = 0
        for entry in sorted(worktrees_dir.iterdir()):
            if not entry.is_dir() or entry.stat().st_mtime >= cutoff:
                continue
            console.print(f"[yellow]Pruning stale worktree[/yellow] {entry.name}")
            await self.remove(entry, force=True)
            pruned += 1

        return pruned
