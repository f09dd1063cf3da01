"""Build verification for task worktrees.

Runs a fast, language-appropriate syntax/compile check against a checkout
before anything is merged. Node.js checks are advisory (dependency audits and
lockfile refreshes fail for reasons unrelated to the change); Go, Python and
Rust checks gate the result.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from rich.console import Console

from autoship.config import Config
from autoship.executor import InfrastructureExecutor
from autoship.models import BuildVerification
from autoship.scm import ScmFactory
from autoship.utils import truncate

console = Console()

MAX_ERROR_CHARS = 2000

# Marker files, checked in order.
_PROJECT_MARKERS: list[tuple[str, tuple[str, ...]]] = [
    ("nodejs", ("package.json",)),
    ("go", ("go.mod",)),
    ("python", ("pyproject.toml", "setup.py", "requirements.txt")),
    ("rust", ("Cargo.toml",)),
]


def detect_project_type(project_dir: str | Path) -> str:
    """Return ``nodejs``, ``go``, ``python``, ``rust`` or ``unknown``."""
    root = Path(project_dir)
    for project_type, markers in _PROJECT_MARKERS:
        if any((root / marker).exists() for marker in markers):
            return project_type
    return "unknown"


@dataclass
class _Check:
    command: str
    advisory: bool = False
    timeout: float = 300.0


_CHECKS: dict[str, list[_Check]] = {
    "nodejs": [
        _Check("npm audit --audit-level=critical", advisory=True, timeout=120.0),
        _Check("npm install --package-lock-only --ignore-scripts", advisory=True),
        _Check("npm run build --if-present", advisory=True, timeout=600.0),
    ],
    "go": [_Check("go build -buildvcs=false -o /dev/null ./...")],
    "python": [_Check("python3 -m compileall -q .")],
    "rust": [_Check("cargo check --quiet", timeout=900.0)],
}


class BuildVerifier:
    """Pulls the latest branch state and runs the project's syntax check."""

    def __init__(
        self,
        config: Config,
        executor: InfrastructureExecutor,
        scm: ScmFactory | None = None,
    ):
        self.config = config
        self.executor = executor
        self.scm = scm

    async def _pull(self, project_dir: Path, project_id: str | None, logs: list[str]) -> None:
        provider = self.scm.for_project(project_id) if self.scm else None
        if provider is not None:
            await provider.configure_git_credentials(project_dir, self.executor)

        branch = await self.executor.git("rev-parse", "--abbrev-ref", "HEAD", cwd=project_dir)
        if not branch.ok:
            logs.append(f"Could not determine current branch: {branch.stderr}")
            return

        pulled = await self.executor.git(
            "pull", "origin", branch.stdout.strip(), cwd=project_dir, timeout=120.0
        )
        if pulled.ok:
            logs.append(f"Pulled latest changes for {branch.stdout.strip()}")
        else:
            logs.append(f"git pull failed (continuing with local state): {pulled.stderr}")

    async def verify(
        self,
        project_dir: str | Path,
        pull: bool = True,
        project_id: str | None = None,
    ) -> BuildVerification:
        """Run the syntax check for ``project_dir``. Never raises."""
        project_dir = Path(project_dir)
        logs: list[str] = []
        project_type = "unknown"

        try:
            if pull:
                await self._pull(project_dir, project_id, logs)

            project_type = detect_project_type(project_dir)
            checks = _CHECKS.get(project_type)
            if not checks:
                logs.append("No recognised project type; skipping build check")
                console.print("[dim]Build check skipped: unknown project type[/dim]")
                return BuildVerification(
                    build_success=True, tests_passed=True, project_type=project_type, logs="\n".join(logs)
                )

            console.print(f"[cyan]Verifying {project_type} build in[/cyan] {project_dir}")
            for check in checks:
                result = await self.executor.run_local(check.command, cwd=project_dir, timeout=check.timeout)
                if result.ok:
                    logs.append(f"PASS: {check.command}")
                    continue
                detail = truncate(result.stderr or result.stdout, MAX_ERROR_CHARS)
                if check.advisory:
                    logs.append(f"WARN (advisory): {check.command}\n{detail}")
                    console.print(f"[yellow]Advisory check failed:[/yellow] {check.command}")
                    continue
                logs.append(f"FAIL: {check.command}\n{detail}")
                console.print(f"[red]Build check failed:[/red] {check.command}")
                return BuildVerification(
                    build_success=False, project_type=project_type, logs="\n".join(logs)
                )

        except Exception as exc:
            logs.append(f"Build verification error: {truncate(str(exc), MAX_ERROR_CHARS)}")
            return BuildVerification(build_success=False, project_type=project_type, logs="\n".join(logs))

        console.print(f"[green]Build verification passed[/green] ({project_type})")
        return BuildVerification(
            build_success=True, tests_passed=True, project_type=project_type, logs="\n".join(logs)
        )
