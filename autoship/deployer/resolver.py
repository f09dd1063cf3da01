"""Production deployment resolution.

Works out *where* a change has to land and *how* to get it there, then
rebuilds the affected containers:

- A target whose directory is mounted into this process is synced straight
  from the worktree (after the identity check).
- A source checkout with a sibling ``<dir>-build`` folder is redirected to
  the build folder, refreshed through its ``scripts/sync-*.sh``.
- Everything else is deployed in place.

Every step is appended to the outcome's log trail, which is what the
troubleshooter sees when a deployment fails.
"""

from __future__ import annotations

import asyncio
import shlex
import shutil
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console
from rich.panel import Panel

from autoship.config import Config
from autoship.deployer.config import DEFAULT_DEPLOY_COMMAND, DeployConfigResolver
from autoship.errors import SafetyAbort
from autoship.executor import InfrastructureExecutor, is_local_host, is_loopback_host
from autoship.models import DeployConfigSource, DeployMode, ResolvedDeployConfig
from autoship.utils import load_json, running_in_docker, truncate

console = Console()

BUILD_SUFFIX = "-build"
SYNC_IGNORE = (".git", "worktrees", "node_modules")
DOCKER_HOST_ALIAS = "host.docker.internal"


@dataclass
class DeployOutcome:
    """Result of one deployment attempt."""

    success: bool
    mode: str = "remote"
    logs: list[str] = field(default_factory=list)
    error: str | None = None
    effective_dir: str = ""

    @property
    def log_text(self) -> str:
        return "\n".join(self.logs)

    def summary(self) -> str:
        status = "[green]DEPLOYED[/green]" if self.success else "[red]FAILED[/red]"
        lines = [f"Status: {status}", f"Mode: {self.mode}", f"Directory: {self.effective_dir}"]
        if self.error:
            lines.append(f"Error: {self.error[:200]}")
        return "\n".join(lines)


def read_identity(directory: Path) -> str:
    """Name a checkout identifies as: package.json name, pyproject name, else the directory name."""
    package_json = directory / "package.json"
    if package_json.exists():
        try:
            name = load_json(package_json).get("name")
            if name:
                return str(name)
        except ValueError:
            pass

    pyproject = directory / "pyproject.toml"
    if pyproject.exists():
        try:
            with pyproject.open("rb") as f:
                name = tomllib.load(f).get("project", {}).get("name")
            if name:
                return str(name)
        except tomllib.TOMLDecodeError:
            pass

    return directory.name


def compose_command(
    services: list[str],
    commit_sha: str | None = None,
    custom_command: str | None = None,
) -> str:
    """Build the rebuild command, stamping ``GIT_COMMIT`` when a commit is known."""
    prefix = f"GIT_COMMIT={shlex.quote(commit_sha)} " if commit_sha else ""
    if custom_command:
        return f"{prefix}{custom_command}"
    names = " ".join(shlex.quote(s) for s in services)
    build = f"{prefix}docker compose build {names}".rstrip()
    up = f"docker compose up -d {names}".rstrip()
    return f"{build} && {up}"


class DeploymentResolver:
    """Deploys a project's trunk (or a worktree) to its production target."""

    def __init__(
        self,
        config: Config,
        executor: InfrastructureExecutor,
        configs: DeployConfigResolver | None = None,
        in_docker: bool | None = None,
        serialize_targets: bool = False,
    ):
        self.config = config
        self.executor = executor
        self.configs = configs or DeployConfigResolver(config)
        self.in_docker = running_in_docker() if in_docker is None else in_docker
        self.serialize_targets = serialize_targets
        self._locks: dict[str, asyncio.Lock] = {}

    def target_lock(self, key: str) -> asyncio.Lock:
        """Per-target mutex used when ``serialize_targets`` is enabled."""
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    # ------------------------------------------------------------------
    # Safety
    # ------------------------------------------------------------------

    def check_identity(self, source: Path, destination: Path) -> None:
        """Refuse to sync the orchestrator's own repository over another project.

        Raises:
            SafetyAbort: If ``source`` is the orchestrator and ``destination`` is not.
        """
        own = set(self.config.self_identity_names)
        source_name = read_identity(source)
        dest_name = read_identity(destination)
        if source_name in own and dest_name not in own and source_name != dest_name:
            raise SafetyAbort(
                f"SAFETY BLOCK: refusing to deploy '{source_name}' over '{dest_name}' "
                f"({source} -> {destination})"
            )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _sync_local(self, source: Path, destination: Path, logs: list[str]) -> bool:
        logs.append(f"Syncing {source} -> {destination} (local mount)")
        await asyncio.to_thread(
            shutil.copytree,
            source,
            destination,
            dirs_exist_ok=True,
            ignore=shutil.ignore_patterns(*SYNC_IGNORE),
        )
        if destination.name.endswith(BUILD_SUFFIX):
            script_ok = await self._run_sync_script("localhost", "", str(destination), logs)
            if script_ok is False:
                return False
        logs.append("Local sync complete")
        return True

    async def _run_sync_script(self, host: str, user: str, base_dir: str, logs: list[str]) -> bool | None:
        """Run ``<base_dir>/scripts/sync-*.sh``. ``None`` when no script exists."""
        found = await self.executor.run_on(
            host,
            user,
            f"find {shlex.quote(base_dir)}/scripts -name 'sync-*.sh' -type f 2>/dev/null | head -1",
            timeout=30.0,
        )
        script = found.stdout.strip()
        if not script:
            logs.append(f"No sync script under {base_dir}/scripts")
            return None

        quoted = shlex.quote(script)
        result = await self.executor.run_on(
            host, user, f"chmod +x {quoted} && {quoted}", cwd=base_dir, timeout=120.0
        )
        if result.ok:
            logs.append(f"Sync script {script} completed")
            return True
        logs.append(f"Sync script {script} failed: {truncate(result.stderr or result.stdout, 2000)}")
        return False

    async def _is_source_folder(self, host: str, user: str, directory: str) -> bool:
        if directory.endswith(BUILD_SUFFIX):
            return False
        return await self.executor.path_exists(host, user, f"{directory}/.git")

    async def _run_step(
        self, host: str, user: str, command: str, cwd: str, logs: list[str], timeout: float = 600.0
    ) -> bool:
        logs.append(f"$ {command}  (in {cwd})")
        result = await self.executor.run_on(host, user, command, cwd=cwd, timeout=timeout)
        if result.stdout:
            logs.append(truncate(result.stdout, 4000, tail=True))
        if not result.ok:
            logs.append(f"exit {result.returncode}: {truncate(result.stderr, 4000, tail=True)}")
        return result.ok

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    async def deploy(
        self,
        project_id: str | None = None,
        services: list[str] | None = None,
        commit_sha: str | None = None,
        source_dir: str | Path | None = None,
    ) -> DeployOutcome:
        """Deploy to the project's production target.

        Failures are reported in the outcome. ``SafetyAbort`` is raised.
        """
        target = self.config.deploy_target(project_id)
        if self.serialize_targets:
            async with self.target_lock(f"{target.ssh_host}:{target.deploy_dir}"):
                return await self._deploy(project_id, services, commit_sha, source_dir)
        return await self._deploy(project_id, services, commit_sha, source_dir)

    async def _deploy(
        self,
        project_id: str | None,
        services: list[str] | None,
        commit_sha: str | None,
        source_dir: str | Path | None,
    ) -> DeployOutcome:
        logs: list[str] = []
        target = self.config.deploy_target(project_id)
        if not target.deploy_dir:
            return DeployOutcome(success=False, logs=logs, error="No deploy directory configured")

        host, user = target.ssh_host, target.ssh_user
        if self.in_docker and is_loopback_host(host):
            logs.append(f"Running in Docker: rewriting {host or 'localhost'} to {DOCKER_HOST_ALIAS}")
            host = DOCKER_HOST_ALIAS

        mode = "local" if is_local_host(host) else "remote"
        deploy_config: ResolvedDeployConfig = self.configs.resolve(project_id, source_dir)
        logs.append(
            f"Deploy config: mode={deploy_config.mode.value} source={deploy_config.source.value}"
        )

        def fail(message: str, effective_dir: str) -> DeployOutcome:
            logs.append(f"ERROR: {message}")
            console.print(f"[red]Deployment failed:[/red] {message}")
            return DeployOutcome(success=False, mode=mode, logs=logs, error=message, effective_dir=effective_dir)

        effective_dir = target.deploy_dir
        local_sync_done = False

        try:
            local_path = target.local_path() if is_local_host(host) else None
            if source_dir and local_path is not None and local_path.is_dir():
                self.check_identity(Path(source_dir), local_path)
                if not await self._sync_local(Path(source_dir), local_path, logs):
                    return fail("Local sync script failed", effective_dir)
                local_sync_done = True

            if not local_sync_done and deploy_config.mode in (DeployMode.RSYNC, DeployMode.AUTO):
                if await self._is_source_folder(host, user, effective_dir):
                    build_dir = f"{effective_dir}{BUILD_SUFFIX}"
                    if await self.executor.path_exists(host, user, build_dir, kind="d"):
                        logs.append(f"Source folder detected; redirecting to {build_dir}")
                        effective_dir = build_dir
                    elif deploy_config.mode is DeployMode.RSYNC:
                        return fail(f"rsync mode requires a build folder, {build_dir} not found", effective_dir)
                    else:
                        logs.append(f"No build folder for {effective_dir}; deploying source folder in place")
            elif not local_sync_done and deploy_config.mode is DeployMode.GIT_DIRECT:
                logs.append(f"git-direct mode: deploying {effective_dir} in place")
                if not await self._run_step(host, user, "git pull", effective_dir, logs, timeout=120.0):
                    return fail(f"git pull failed in {effective_dir}", effective_dir)

            if effective_dir.endswith(BUILD_SUFFIX) and not local_sync_done:
                source = effective_dir[: -len(BUILD_SUFFIX)]
                if not await self._run_step(host, user, "git pull", source, logs, timeout=120.0):
                    return fail(f"git pull failed in {source}", effective_dir)
                if not await self._run_sync_script(host, user, source, logs):
                    return fail(
                        f"Sync script failed or not found for {source}; refusing to deploy a stale build folder",
                        effective_dir,
                    )

            selected = services or target.services or deploy_config.deploy.services
            deploy_cfg = deploy_config.deploy

            if deploy_cfg.pre_command and not await self._run_step(
                host, user, deploy_cfg.pre_command, effective_dir, logs
            ):
                return fail("Pre-deploy command failed", effective_dir)

            custom = (
                deploy_cfg.command
                if deploy_config.source is not DeployConfigSource.DEFAULT
                and deploy_cfg.command != DEFAULT_DEPLOY_COMMAND
                else None
            )
            command = compose_command(selected, commit_sha, custom)
            console.print(f"[cyan]Rebuilding[/cyan] {', '.join(selected) or 'all services'} in {effective_dir}")
            if not await self._run_step(host, user, command, effective_dir, logs):
                return fail("Container rebuild failed", effective_dir)

            if deploy_cfg.post_command and not await self._run_step(
                host, user, deploy_cfg.post_command, effective_dir, logs
            ):
                return fail("Post-deploy command failed", effective_dir)

        except SafetyAbort as exc:
            logs.append(str(exc))
            console.print(Panel(f"[bold red]{exc}[/bold red]", title="SAFETY ABORT", border_style="red"))
            raise
        except OSError as exc:
            return fail(f"Deployment error: {exc}", effective_dir)

        logs.append("Deployment complete")
        console.print(f"[green]Deployed[/green] to {effective_dir} ({mode})")
        return DeployOutcome(success=True, mode=mode, logs=logs, effective_dir=effective_dir)
