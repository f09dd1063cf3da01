"""Declarative deploy configuration.

A project's deploy configuration is resolved from, in priority order:

1. the project record (``ProjectRecord.deploy_config``),
2. the repository-local ``autoship.deploy.yaml``,
3. a heuristic default (``auto`` mode, ``docker compose up -d --build``).

``DeployConfigResolver.analyze`` can also ask the ``deployer`` oracle role to
propose a configuration for a project that has none, and writes the answer
back as the repository-local file.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError
from rich.console import Console

from autoship.builder.verifier import detect_project_type
from autoship.config import Config
from autoship.errors import DeployConfigError, OracleError
from autoship.models import (
    DeployBuildConfig,
    DeployCommandConfig,
    DeployConfig,
    DeployConfigSource,
    DeployMode,
    ResolvedDeployConfig,
)
from autoship.oracle import OracleCascade, parse_json_response
from autoship.prompts import PromptRenderer
from autoship.utils import load_json

console = Console()

COMPOSE_FILENAMES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")
DEFAULT_DEPLOY_COMMAND = "docker compose up -d --build"


def load_config_file(path: Path) -> DeployConfig:
    """Parse and validate a deploy configuration file.

    Raises:
        DeployConfigError: If the YAML is malformed or does not match the schema.
    """
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise DeployConfigError(f"Invalid YAML in {path}: {e}", path=str(path)) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise DeployConfigError(
            f"Deploy config must be a mapping, got {type(data).__name__}", path=str(path)
        )

    try:
        return DeployConfig.model_validate(data)
    except ValidationError as e:
        raise DeployConfigError(f"Invalid deploy config in {path}: {e}", path=str(path)) from e


def compose_services(project_dir: Path) -> list[str]:
    """Service names declared in the project's compose file, if any."""
    for name in COMPOSE_FILENAMES:
        compose = project_dir / name
        if not compose.exists():
            continue
        try:
            data = yaml.safe_load(compose.read_text(encoding="utf-8"))
        except yaml.YAMLError:
            # Templated compose files are not always valid YAML.
            return re.findall(r"^\s{2}(\w[\w-]*):\s*$", compose.read_text(encoding="utf-8"), re.MULTILINE)
        services = (data or {}).get("services") if isinstance(data, dict) else None
        return list(services) if isinstance(services, dict) else []
    return []


@dataclass
class ProjectContext:
    """Facts about a checkout that inform the deploy-config analysis."""

    has_docker_compose: bool = False
    has_dockerfile: bool = False
    has_git: bool = False
    has_package_json: bool = False
    project_type: str = "unknown"
    services: list[str] = field(default_factory=list)
    build_script: str = ""


@dataclass
class DeployAnalysis:
    """Result of ``DeployConfigResolver.analyze``."""

    config: ResolvedDeployConfig
    analysis: str = ""
    saved_to_file: bool = False
    error: str | None = None

    def summary(self) -> str:
        lines = [
            f"Mode: {self.config.mode.value}",
            f"Services: {', '.join(self.config.deploy.services) or 'all'}",
            f"Command: {self.config.deploy.command}",
            f"Saved: {self.saved_to_file}",
        ]
        if self.error:
            lines.append(f"Error: {self.error[:200]}")
        return "\n".join(lines)


def gather_context(project_dir: Path) -> ProjectContext:
    context = ProjectContext(
        has_docker_compose=any((project_dir / name).exists() for name in COMPOSE_FILENAMES),
        has_dockerfile=(project_dir / "Dockerfile").exists(),
        has_git=(project_dir / ".git").exists(),
        has_package_json=(project_dir / "package.json").exists(),
        project_type=detect_project_type(project_dir),
        services=compose_services(project_dir),
    )
    if context.has_package_json:
        try:
            scripts = load_json(project_dir / "package.json").get("scripts") or {}
            context.build_script = str(scripts.get("build", ""))
        except ValueError:
            console.print(f"[yellow]Could not parse {project_dir / 'package.json'}[/yellow]")
    return context


class DeployConfigResolver:
    """Resolves and (optionally) infers a project's deploy configuration."""

    def __init__(
        self,
        config: Config,
        oracle: OracleCascade | None = None,
        renderer: PromptRenderer | None = None,
    ):
        self.config = config
        self.oracle = oracle
        self.renderer = renderer or PromptRenderer()

    def config_path(self, project_dir: str | Path) -> Path:
        return Path(project_dir) / self.config.deploy_config_filename

    def resolve(self, project_id: str | None, project_dir: str | Path | None = None) -> ResolvedDeployConfig:
        """Return the highest-priority configuration available for the project."""
        project = self.config.get_project(project_id)
        if project and project.deploy_config:
            return ResolvedDeployConfig(
                **project.deploy_config.model_dump(),
                source=DeployConfigSource.DATABASE,
                project_id=project_id,
            )

        base = Path(project_dir) if project_dir else self.config.project_base_dir(project_id)
        path = self.config_path(base)
        if path.exists():
            try:
                parsed = load_config_file(path)
                return ResolvedDeployConfig(
                    **parsed.model_dump(), source=DeployConfigSource.FILE, project_id=project_id
                )
            except DeployConfigError as e:
                console.print(f"[yellow]Ignoring deploy config: {e}[/yellow]")

        return ResolvedDeployConfig(source=DeployConfigSource.DEFAULT, project_id=project_id)

    def write_config_file(self, project_dir: str | Path, deploy_config: DeployConfig) -> Path:
        """Write ``deploy_config`` as the repository-local YAML file."""
        path = self.config_path(project_dir)
        # Re-validating as the base model drops resolution metadata (source, project id).
        payload = DeployConfig.model_validate(deploy_config.model_dump()).model_dump(
            mode="json", by_alias=True
        )
        with path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(payload, f, sort_keys=False, default_flow_style=False)
        console.print(f"[green]Wrote deploy config[/green] {path}")
        return path

    async def _ask_oracle(self, context: ProjectContext, project_dir: Path) -> dict[str, Any]:
        if self.oracle is None:
            raise DeployConfigError("No reasoning oracle configured for deploy analysis")
        prompt = self.renderer.render("deploy_config", context=context)
        raw = await self.oracle.invoke(prompt, "deployer", cwd=project_dir)
        data = parse_json_response(raw)
        if data is None:
            raise DeployConfigError("Deploy analysis returned no JSON")
        return data

    async def analyze(self, project_dir: str | Path, project_id: str | None = None) -> DeployAnalysis:
        """Infer a deploy configuration for ``project_dir`` and save it. Never raises."""
        project_dir = Path(project_dir)
        context = gather_context(project_dir)
        error: str | None = None
        source = DeployConfigSource.LLM

        try:
            data = await self._ask_oracle(context, project_dir)
        except (OracleError, DeployConfigError) as e:
            error = str(e)
            source = DeployConfigSource.DEFAULT
            data = {
                "mode": DeployMode.GIT_DIRECT.value,
                "services": [],
                "deployCommand": DEFAULT_DEPLOY_COMMAND,
                "buildCommand": "",
                "analysis": "Analysis failed, using defaults",
            }

        mode = str(data.get("mode", DeployMode.GIT_DIRECT.value))
        if mode not in (DeployMode.GIT_DIRECT.value, DeployMode.RSYNC.value):
            mode = DeployMode.GIT_DIRECT.value
        services = [str(s) for s in data.get("services") or []]

        deploy_config = DeployConfig(
            version="1",
            mode=DeployMode(mode),
            build=DeployBuildConfig(base=".", command=str(data.get("buildCommand") or ""), output_dir="dist"),
            deploy=DeployCommandConfig(
                services=services,
                command=str(data.get("deployCommand") or DEFAULT_DEPLOY_COMMAND),
            ),
        )

        saved = False
        try:
            self.write_config_file(project_dir, deploy_config)
            saved = True
        except OSError as e:
            error = error or f"Could not write deploy config: {e}"

        return DeployAnalysis(
            config=ResolvedDeployConfig(**deploy_config.model_dump(), source=source, project_id=project_id),
            analysis=str(data.get("analysis", "")),
            saved_to_file=saved,
            error=error,
        )
