"""Shared pytest fixtures for the autoship test suite.

Provides reusable fixtures for:
- Temporary project directories and a real git repository
- A recording fake of the infrastructure executor
- A scripted fake of the reasoning oracle
- Config factories pointing every derived path into tmp_path
- Mock subprocess helpers
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from autoship.config import Config, DeployTarget
from autoship.errors import OracleError
from autoship.executor import CommandResult, InfrastructureExecutor


# ---------------------------------------------------------------------------
# Paths & Directories
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_project_dir(tmp_path: Path) -> Path:
    """Temporary project checkout directory (auto-cleanup)."""
    project_dir = tmp_path / "test-project"
    project_dir.mkdir()
    yield project_dir


@pytest.fixture
def tmp_git_repo(tmp_path: Path) -> Path:
    """Temporary git repository with an initial commit.

    Creates a real git repo so tests depending on git plumbing (porcelain
    output, worktree add/remove) have something valid to work in.
    """
    repo_dir = tmp_path / "test-repo"
    repo_dir.mkdir()
    subprocess.run(["git", "init", "-b", "main"], cwd=repo_dir, check=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@autoship.local"],
        cwd=repo_dir, check=True, capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Autoship Test"],
        cwd=repo_dir, check=True, capture_output=True,
    )
    subprocess.run(
        ["git", "config", "commit.gpgsign", "false"],
        cwd=repo_dir, check=True, capture_output=True,
    )
    readme = repo_dir / "README.md"
    readme.write_text("# Test Project\n", encoding="utf-8")
    subprocess.run(["git", "add", "."], cwd=repo_dir, check=True, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "Initial commit"],
        cwd=repo_dir, check=True, capture_output=True,
    )
    yield repo_dir


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
    """Factory for ``Config`` objects rooted in tmp_path.

    Keyword arguments override top-level fields; ``deploy`` may be a dict.

    Usage:
        def test_x(make_config):
            config = make_config(deploy={"deploy_dir": "/srv/app"})
    """
    def factory(**overrides: Any) -> Config:
        project_dir = tmp_path / "project"
        project_dir.mkdir(exist_ok=True)
        deploy = overrides.pop("deploy", None)
        if isinstance(deploy, dict):
            deploy = DeployTarget(**deploy)
        values: dict[str, Any] = {
            "project_dir": project_dir,
            "state_dir": tmp_path / "state",
        }
        if deploy is not None:
            values["deploy"] = deploy
        values.update(overrides)
        return Config(**values)

    return factory


# ---------------------------------------------------------------------------
# Fake infrastructure executor
# ---------------------------------------------------------------------------

@dataclass
class ExecutedCommand:
    kind: str
    command: str
    cwd: str | None = None
    host: str | None = None
    timeout: float | None = None


class FakeExecutor(InfrastructureExecutor):
    """Records every command and answers from fragment rules.

    Rules are matched by substring; the most recently added matching rule
    wins. Commands with no matching rule succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[ExecutedCommand] = []
        self._rules: list[tuple[str, int, str, str]] = []

    def on(self, fragment: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> "FakeExecutor":
        self._rules.append((fragment, returncode, stdout, stderr))
        return self

    def _answer(self, command: str) -> CommandResult:
        for fragment, returncode, stdout, stderr in reversed(self._rules):
            if fragment in command:
                return CommandResult(command=command, returncode=returncode, stdout=stdout, stderr=stderr)
        return CommandResult(command=command, returncode=0)

    async def run_local(self, command: str, cwd: str | Path | None = None, timeout: float = 120.0) -> CommandResult:
        self.calls.append(ExecutedCommand("local", command, str(cwd) if cwd else None, None, timeout))
        return self._answer(command)

    async def run_remote(
        self,
        host: str,
        user: str,
        command: str,
        cwd: str | None = None,
        timeout: float = 600.0,
    ) -> CommandResult:
        self.calls.append(ExecutedCommand("remote", command, cwd, host, timeout))
        return self._answer(command)

    def commands(self, fragment: str = "") -> list[str]:
        return [call.command for call in self.calls if fragment in call.command]

    def find(self, fragment: str) -> list[ExecutedCommand]:
        return [call for call in self.calls if fragment in call.command]

    def ran(self, fragment: str) -> bool:
        return any(fragment in call.command for call in self.calls)


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


# ---------------------------------------------------------------------------
# Fake oracle
# ---------------------------------------------------------------------------

class FakeOracle:
    """Scripted oracle: answers per role, in order; the last answer repeats.

    An answer may be a string or an exception instance to raise.
    """

    def __init__(self, answers: dict[str, list[Any]] | None = None) -> None:
        self.answers: dict[str, list[Any]] = {role: list(items) for role, items in (answers or {}).items()}
        self.prompts: list[tuple[str, str]] = []

    def script(self, role: str, *answers: Any) -> "FakeOracle":
        self.answers[role] = list(answers)
        return self

    async def invoke(self, prompt: str, role: str, cwd: str | Path | None = None) -> str:
        self.prompts.append((role, prompt))
        queue = self.answers.get(role)
        if not queue:
            raise OracleError(role, f"No scripted answer for role: {role}")
        answer = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(answer, Exception):
            raise answer
        return answer

    def prompts_for(self, role: str) -> list[str]:
        return [prompt for r, prompt in self.prompts if r == role]


@pytest.fixture
def fake_oracle() -> FakeOracle:
    return FakeOracle()


# ---------------------------------------------------------------------------
# Mock Subprocess (generic)
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_subprocess():
    """Mock asyncio subprocess for testing command execution.

    Returns a factory that creates mock subprocess instances with configurable
    stdout, stderr, and return codes.

    Usage:
        def test_command(mock_subprocess):
            proc = mock_subprocess(stdout="output", returncode=0)
            with patch("asyncio.create_subprocess_exec", return_value=proc):
                ...
    """
    def factory(
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
    ) -> AsyncMock:
        mock_proc = AsyncMock()
        mock_proc.communicate = AsyncMock(
            return_value=(stdout.encode("utf-8"), stderr.encode("utf-8"))
        )
        mock_proc.returncode = returncode
        mock_proc.pid = 99999
        mock_proc.kill = MagicMock()
        mock_proc.wait = AsyncMock(return_value=returncode)
        return mock_proc

    return factory


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Drop-in replacement for ``asyncio.sleep`` that records delays."""
    return AsyncMock(return_value=None)
