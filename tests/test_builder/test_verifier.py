"""Unit tests for build verification (autoship.builder.verifier).

Tests cover:
- Project type detection from marker files
- Gating checks (go, python, rust) versus advisory Node.js checks
- Pulling the current branch before verification
- Error truncation and the never-raise contract
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from autoship.builder.verifier import MAX_ERROR_CHARS, BuildVerifier, detect_project_type


# ---------------------------------------------------------------------------
# detect_project_type
# ---------------------------------------------------------------------------


class TestDetectProjectType:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("marker", "expected"),
        [
            ("package.json", "nodejs"),
            ("go.mod", "go"),
            ("pyproject.toml", "python"),
            ("requirements.txt", "python"),
            ("Cargo.toml", "rust"),
        ],
    )
    def test_markers(self, tmp_path: Path, marker: str, expected: str):
        (tmp_path / marker).write_text("")
        assert detect_project_type(tmp_path) == expected

    @pytest.mark.unit
    def test_node_wins_over_python(self, tmp_path: Path):
        (tmp_path / "package.json").write_text("{}")
        (tmp_path / "requirements.txt").write_text("")
        assert detect_project_type(tmp_path) == "nodejs"

    @pytest.mark.unit
    def test_unknown(self, tmp_path: Path):
        assert detect_project_type(tmp_path) == "unknown"


# ---------------------------------------------------------------------------
# verify
# ---------------------------------------------------------------------------


class TestBuildVerifier:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_go_success(self, make_config, fake_executor, tmp_project_dir: Path):
        (tmp_project_dir / "go.mod").write_text("module x\n")
        result = await BuildVerifier(make_config(), fake_executor).verify(tmp_project_dir, pull=False)

        assert result.build_success
        assert result.tests_passed
        assert result.project_type == "go"
        assert "PASS: go build" in result.logs
        assert fake_executor.find("go build")[0].cwd == str(tmp_project_dir)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_python_failure_gates(self, make_config, fake_executor, tmp_project_dir: Path):
        (tmp_project_dir / "setup.py").write_text("")
        fake_executor.on("compileall", returncode=1, stdout="SyntaxError: invalid syntax")
        result = await BuildVerifier(make_config(), fake_executor).verify(tmp_project_dir, pull=False)

        assert not result.build_success
        assert "FAIL: python3 -m compileall" in result.logs
        assert "SyntaxError" in result.logs

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_node_failures_are_advisory(self, make_config, fake_executor, tmp_project_dir: Path):
        (tmp_project_dir / "package.json").write_text("{}")
        fake_executor.on("npm audit", returncode=1, stderr="critical vulnerability")
        fake_executor.on("npm run build", returncode=2, stderr="tsc error")
        result = await BuildVerifier(make_config(), fake_executor).verify(tmp_project_dir, pull=False)

        assert result.build_success
        assert result.logs.count("WARN (advisory)") == 2
        assert len(fake_executor.commands("npm")) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_type_passes(self, make_config, fake_executor, tmp_project_dir: Path):
        result = await BuildVerifier(make_config(), fake_executor).verify(tmp_project_dir, pull=False)
        assert result.build_success
        assert result.project_type == "unknown"
        assert fake_executor.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_error_output_truncated(self, make_config, fake_executor, tmp_project_dir: Path):
        (tmp_project_dir / "Cargo.toml").write_text("")
        fake_executor.on("cargo check", returncode=101, stderr="e" * (MAX_ERROR_CHARS * 3))
        result = await BuildVerifier(make_config(), fake_executor).verify(tmp_project_dir, pull=False)

        assert not result.build_success
        assert len(result.logs) < MAX_ERROR_CHARS * 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pull_uses_current_branch(self, make_config, fake_executor, tmp_project_dir: Path):
        fake_executor.on("rev-parse --abbrev-ref HEAD", stdout="task/task-x\n")
        result = await BuildVerifier(make_config(), fake_executor).verify(tmp_project_dir)

        assert "git pull origin task/task-x" in fake_executor.commands()
        assert "Pulled latest changes for task/task-x" in result.logs

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pull_failure_is_not_fatal(self, make_config, fake_executor, tmp_project_dir: Path):
        (tmp_project_dir / "go.mod").write_text("")
        fake_executor.on("rev-parse --abbrev-ref HEAD", stdout="main")
        fake_executor.on("git pull", returncode=1, stderr="network down")
        result = await BuildVerifier(make_config(), fake_executor).verify(tmp_project_dir)

        assert result.build_success
        assert "git pull failed" in result.logs

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pull_configures_credentials(self, make_config, fake_executor, tmp_project_dir: Path):
        provider = MagicMock()
        provider.configure_git_credentials = AsyncMock(return_value=True)
        scm = MagicMock()
        scm.for_project.return_value = provider

        await BuildVerifier(make_config(), fake_executor, scm).verify(tmp_project_dir, project_id="p1")

        scm.for_project.assert_called_once_with("p1")
        provider.configure_git_credentials.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_never_raises(self, make_config, tmp_project_dir: Path):
        (tmp_project_dir / "go.mod").write_text("")
        executor = MagicMock()
        executor.run_local = AsyncMock(side_effect=RuntimeError("ssh exploded"))
        result = await BuildVerifier(make_config(), executor).verify(tmp_project_dir, pull=False)

        assert not result.build_success
        assert "ssh exploded" in result.logs
        assert result.project_type == "go"
