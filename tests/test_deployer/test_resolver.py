"""Unit tests for deployment resolution (autoship.deployer.resolver).

Tests cover:
- read_identity and compose_command helpers
- Remote source folder redirected to its -build sibling
- In-place deploys, git-direct pulls and custom commands
- Aborting on a failed pull or a missing or failing sync script
- Local mount sync and the self-deploy safety check
- Docker host rewriting and failure reporting
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from autoship.config import ProjectRecord
from autoship.deployer.resolver import DeploymentResolver, compose_command, read_identity
from autoship.errors import SafetyAbort
from autoship.models import DeployConfig, DeployMode


REMOTE = {"deploy_dir": "/srv/app", "ssh_host": "prod.example.com", "ssh_user": "deploy"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestReadIdentity:
    @pytest.mark.unit
    def test_package_json_name(self, tmp_path: Path):
        (tmp_path / "package.json").write_text(json.dumps({"name": "shop-frontend"}))
        assert read_identity(tmp_path) == "shop-frontend"

    @pytest.mark.unit
    def test_pyproject_name(self, tmp_path: Path):
        (tmp_path / "pyproject.toml").write_text('[project]\nname = "autoship"\n')
        assert read_identity(tmp_path) == "autoship"

    @pytest.mark.unit
    def test_directory_name_fallback(self, tmp_path: Path):
        target = tmp_path / "billing"
        target.mkdir()
        (target / "package.json").write_text("{broken")
        assert read_identity(target) == "billing"


class TestComposeCommand:
    @pytest.mark.unit
    def test_all_services_with_commit(self):
        assert compose_command([], "abc123") == (
            "GIT_COMMIT=abc123 docker compose build && docker compose up -d"
        )

    @pytest.mark.unit
    def test_selected_services(self):
        assert compose_command(["web", "worker"]) == (
            "docker compose build web worker && docker compose up -d web worker"
        )

    @pytest.mark.unit
    def test_custom_command(self):
        assert compose_command(["web"], "abc", "make deploy") == "GIT_COMMIT=abc make deploy"


# ---------------------------------------------------------------------------
# Remote deploys
# ---------------------------------------------------------------------------


class TestRemoteDeploy:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_source_folder_redirected_to_build_folder(self, make_config, fake_executor):
        fake_executor.on("find /srv/app/scripts", stdout="/srv/app/scripts/sync-build.sh\n")
        resolver = DeploymentResolver(make_config(deploy=REMOTE), fake_executor, in_docker=False)

        outcome = await resolver.deploy(commit_sha="abc123")

        assert outcome.success
        assert outcome.mode == "remote"
        assert outcome.effective_dir == "/srv/app-build"
        assert "Source folder detected; redirecting to /srv/app-build" in outcome.logs

        pull = fake_executor.find("git pull")[0]
        assert (pull.host, pull.cwd) == ("prod.example.com", "/srv/app")
        sync = fake_executor.find("chmod +x")[0]
        assert sync.command.endswith("/srv/app/scripts/sync-build.sh")
        compose = fake_executor.find("docker compose")[0]
        assert compose.cwd == "/srv/app-build"
        assert compose.command.startswith("GIT_COMMIT=abc123 ")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_build_folder_without_sync_script_aborts(self, make_config, fake_executor):
        resolver = DeploymentResolver(make_config(deploy=REMOTE), fake_executor, in_docker=False)

        outcome = await resolver.deploy(commit_sha="abc123")

        assert not outcome.success
        assert outcome.effective_dir == "/srv/app-build"
        assert "Sync script failed or not found for /srv/app" in outcome.error
        assert "No sync script under /srv/app/scripts" in outcome.logs
        assert not fake_executor.ran("docker compose")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_build_folder_sync_script_failure_aborts(self, make_config, fake_executor):
        fake_executor.on("find /srv/app/scripts", stdout="/srv/app/scripts/sync-build.sh\n")
        fake_executor.on("chmod +x", returncode=1, stderr="rsync: connection refused")
        outcome = await DeploymentResolver(make_config(deploy=REMOTE), fake_executor, in_docker=False).deploy()

        assert not outcome.success
        assert "Sync script failed or not found" in outcome.error
        assert not fake_executor.ran("docker compose")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_source_folder_without_build_folder_deploys_in_place(self, make_config, fake_executor):
        fake_executor.on("test -d /srv/app-build", returncode=1)
        outcome = await DeploymentResolver(make_config(deploy=REMOTE), fake_executor, in_docker=False).deploy()

        assert outcome.success
        assert outcome.effective_dir == "/srv/app"
        assert not fake_executor.ran("git pull")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rsync_requires_build_folder(self, make_config, fake_executor):
        fake_executor.on("test -d", returncode=1)
        record = ProjectRecord(id="shop", deployment=REMOTE, deploy_config=DeployConfig(mode=DeployMode.RSYNC))
        resolver = DeploymentResolver(make_config(projects={"shop": record}), fake_executor, in_docker=False)

        outcome = await resolver.deploy("shop")

        assert not outcome.success
        assert "rsync mode requires a build folder" in outcome.error
        assert not fake_executor.ran("docker compose")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_git_direct_with_custom_command(self, make_config, fake_executor, tmp_path: Path):
        source = tmp_path / "wt"
        source.mkdir()
        (source / "autoship.deploy.yaml").write_text(
            "mode: git-direct\ndeploy:\n  command: make deploy\n  postCommand: make smoke\n"
        )
        resolver = DeploymentResolver(make_config(deploy=REMOTE), fake_executor, in_docker=False)

        outcome = await resolver.deploy(commit_sha="abc", source_dir=source)

        assert outcome.success
        assert not fake_executor.ran("test -e")
        commands = fake_executor.commands()
        assert "GIT_COMMIT=abc make deploy" in commands
        assert commands[-1] == "make smoke"
        assert "git-direct mode: deploying /srv/app in place" in outcome.logs
        pull = fake_executor.find("git pull")[0]
        assert (pull.host, pull.cwd) == ("prod.example.com", "/srv/app")
        assert commands.index("git pull") < commands.index("GIT_COMMIT=abc make deploy")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_git_direct_pull_failure_aborts(self, make_config, fake_executor):
        fake_executor.on("git pull", returncode=1, stderr="fatal: Not possible to fast-forward")
        record = ProjectRecord(id="shop", deployment=REMOTE, deploy_config=DeployConfig(mode=DeployMode.GIT_DIRECT))
        resolver = DeploymentResolver(make_config(projects={"shop": record}), fake_executor, in_docker=False)

        outcome = await resolver.deploy("shop")

        assert not outcome.success
        assert outcome.error == "git pull failed in /srv/app"
        assert "fast-forward" in outcome.log_text
        assert not fake_executor.ran("docker compose")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_explicit_services(self, make_config, fake_executor):
        fake_executor.on("test -e", returncode=1)
        await DeploymentResolver(make_config(deploy=REMOTE), fake_executor, in_docker=False).deploy(
            services=["api"]
        )
        assert fake_executor.commands("docker compose") == [
            "docker compose build api && docker compose up -d api"
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rebuild_failure_logged(self, make_config, fake_executor):
        fake_executor.on("test -e", returncode=1)
        fake_executor.on("docker compose", returncode=1, stderr="failed to solve: npm ERR!")
        outcome = await DeploymentResolver(make_config(deploy=REMOTE), fake_executor, in_docker=False).deploy()

        assert not outcome.success
        assert outcome.error == "Container rebuild failed"
        assert "npm ERR!" in outcome.log_text
        assert "FAILED" in outcome.summary()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pre_command_failure(self, make_config, fake_executor):
        fake_executor.on("test -e", returncode=1)
        fake_executor.on("./migrate.sh", returncode=3)
        record = ProjectRecord(
            id="shop",
            deployment=REMOTE,
            deploy_config=DeployConfig.model_validate({"deploy": {"preCommand": "./migrate.sh"}}),
        )
        outcome = await DeploymentResolver(
            make_config(projects={"shop": record}), fake_executor, in_docker=False
        ).deploy("shop")
        assert outcome.error == "Pre-deploy command failed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_deploy_dir(self, make_config, fake_executor):
        outcome = await DeploymentResolver(make_config(), fake_executor, in_docker=False).deploy()
        assert not outcome.success
        assert outcome.error == "No deploy directory configured"
        assert fake_executor.calls == []


# ---------------------------------------------------------------------------
# Local deploys
# ---------------------------------------------------------------------------


class TestLocalDeploy:
    def _local_config(self, make_config, tmp_path: Path):
        mount = tmp_path / "apps"
        (mount / "shop").mkdir(parents=True)
        (mount / "shop" / "package.json").write_text(json.dumps({"name": "shop"}))
        return make_config(
            deploy={
                "deploy_dir": "/apps/shop",
                "ssh_host": "localhost",
                "local_path_map": {"/apps": str(mount)},
            }
        ), mount / "shop"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_syncs_worktree_into_mount(self, make_config, fake_executor, tmp_path: Path):
        config, mounted = self._local_config(make_config, tmp_path)
        worktree = tmp_path / "wt"
        (worktree / "src").mkdir(parents=True)
        (worktree / "package.json").write_text(json.dumps({"name": "shop"}))
        (worktree / "src" / "index.ts").write_text("export {}\n")
        (worktree / "node_modules").mkdir()
        (worktree / "node_modules" / "junk.js").write_text("")

        outcome = await DeploymentResolver(config, fake_executor, in_docker=False).deploy(source_dir=worktree)

        assert outcome.success
        assert outcome.mode == "local"
        assert (mounted / "src" / "index.ts").exists()
        assert not (mounted / "node_modules").exists()
        compose = fake_executor.find("docker compose")[0]
        assert compose.kind == "local"
        assert not fake_executor.ran("test -e")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refuses_to_deploy_itself_over_another_project(
        self, make_config, fake_executor, tmp_path: Path
    ):
        config, mounted = self._local_config(make_config, tmp_path)
        worktree = tmp_path / "wt"
        worktree.mkdir()
        (worktree / "pyproject.toml").write_text('[project]\nname = "autoship"\n')

        with pytest.raises(SafetyAbort, match="SAFETY BLOCK"):
            await DeploymentResolver(config, fake_executor, in_docker=False).deploy(source_dir=worktree)

        assert not (mounted / "pyproject.toml").exists()
        assert fake_executor.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_docker_rewrites_loopback(self, make_config, fake_executor):
        config = make_config(deploy={"deploy_dir": "/srv/app", "ssh_host": "localhost"})
        fake_executor.on("test -e", returncode=1)

        outcome = await DeploymentResolver(config, fake_executor, in_docker=True).deploy()

        assert outcome.success
        assert "Running in Docker: rewriting localhost to host.docker.internal" in outcome.logs
        assert all(call.kind == "remote" and call.host == "host.docker.internal" for call in fake_executor.calls)


class TestTargetLocks:
    @pytest.mark.unit
    def test_same_target_same_lock(self, make_config, fake_executor):
        resolver = DeploymentResolver(make_config(), fake_executor, in_docker=False, serialize_targets=True)
        assert resolver.target_lock("h:/a") is resolver.target_lock("h:/a")
        assert resolver.target_lock("h:/a") is not resolver.target_lock("h:/b")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_serialized_deploy(self, make_config, fake_executor):
        fake_executor.on("test -e", returncode=1)
        resolver = DeploymentResolver(
            make_config(deploy=REMOTE), fake_executor, in_docker=False, serialize_targets=True
        )
        assert (await resolver.deploy()).success
