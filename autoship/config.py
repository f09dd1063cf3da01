"""Autoship configuration.

Centralised, typed configuration for the whole orchestrator. Every setting is a
Pydantic v2 model so it is validated at construction time and can be
serialised to/from JSON or environment variables without boiler-plate.

A single ``Config`` instance is built once at process start (normally through
``Config.from_env()``) and handed to every component constructor. Components
never read ``os.environ`` themselves.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from autoship.models import DeployConfig

DEFAULT_PROTECTED_TARGETS: list[str] = [
    "temporal-server",
    "postgres",
    "redis",
    "traefik",
    "portainer",
    "ai-swarm-portal",
    "ai-swarm-worker-1",
    "ai-swarm-worker-2",
    "ai-swarm-worker-3",
    "ai-swarm-worker-4",
    "ai-swarm-playwright",
    "ai-swarm-builder",
]

DEFAULT_CASCADES: dict[str, list[str]] = {
    "portal_planner": ["gemini-2.5-flash", "gemini-2.5-pro"],
    "planner": ["gemini-2.5-pro", "gemini-2.5-flash"],
    "coder": ["gemini-2.5-flash", "gemini-2.5-pro"],
    "reviewer": ["gemini-2.5-pro", "gemini-2.5-flash"],
    "deployer": ["gemini-2.5-flash", "gemini-2.5-pro"],
    "supervisor": ["gemini-2.5-flash"],
}

DEFAULT_ROLE_PROVIDERS: dict[str, str] = {
    "planner": "gemini",
    "coder": "claude",
    "reviewer": "gemini",
    "deployer": "gemini",
}


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class RetryPolicy(BaseModel):
    """Timeout and retry policy applied to every orchestrator activity.

    These numbers are part of the public contract: 15 minute activity
    timeout, three attempts, 5s initial backoff doubling up to 2 minutes.
    """

    start_to_close_timeout: float = Field(default=900.0, gt=0, description="Seconds per attempt")
    maximum_attempts: int = Field(default=3, ge=1)
    initial_interval: float = Field(default=5.0, ge=0)
    backoff_coefficient: float = Field(default=2.0, ge=1.0)
    maximum_interval: float = Field(default=120.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Backoff to wait after the given (1-based) failed attempt."""
        delay = self.initial_interval * (self.backoff_coefficient ** (attempt - 1))
        return min(delay, self.maximum_interval)


class WorkflowConfig(BaseModel):
    """Bounds and delays for the orchestrator's loops."""

    max_coding_attempts: int = Field(default=3, ge=1)
    build_verify_retries: int = Field(default=1, ge=0, description="Extra syntax checks after the first")
    build_retry_delay: float = Field(default=30.0, ge=0)
    max_deploy_attempts: int = Field(default=3, ge=1)
    recovery_retry_delay: float = Field(default=10.0, ge=0)
    deploy_failure_delay: float = Field(default=30.0, ge=0)
    approval_timeout: float = Field(default=86400.0, gt=0, description="Seconds to wait for plan approval")
    signal_poll_interval: float = Field(default=5.0, gt=0)
    fix_chain_threshold: int = Field(
        default=1, ge=0, description="A fix chain deeper than this is escalated instead of fixed"
    )
    fix_chain_ttl_days: int = Field(default=7, ge=1)


class OracleConfig(BaseModel):
    """Reasoning-oracle cascades and provider selection."""

    cascades: dict[str, list[str]] = Field(default_factory=lambda: dict(DEFAULT_CASCADES))
    role_providers: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_ROLE_PROVIDERS))
    claude_auth_mode: str = Field(default="oauth", description="'oauth' or 'zai'")
    zai_api_key: str = Field(default="")
    zai_base_url: str = Field(default="https://api.z.ai/api/anthropic")
    model_timeout: float = Field(default=600.0, gt=0, description="Per-model timeout in seconds")
    retry_delay: float = Field(default=2.0, ge=0)
    gemini_binary: str = Field(default="gemini")
    claude_binary: str = Field(default="claude")


class ScmSettings(BaseModel):
    """Source-control provider coordinates plus the token fallback chain."""

    provider: str = Field(default="azure-devops")
    org: str = Field(default="")
    project: str = Field(default="")
    repo: str = Field(default="")
    token: str = Field(default="", description="Environment-level token, lowest priority")
    provider_tokens: dict[str, str] = Field(
        default_factory=dict, description="Per-provider default tokens"
    )


class DeployTarget(BaseModel):
    """Where and how a project is deployed in production."""

    deploy_dir: str = Field(default="")
    ssh_host: str = Field(default="host.docker.internal")
    ssh_user: str = Field(default="ubuntu")
    services: list[str] = Field(default_factory=list)
    app_url: str = Field(default="")
    container: str = Field(default="", description="Container whose 'commit' label is checked")
    health_endpoint: str = Field(default="", description="Overrides endpoint discovery when set")
    health_attempts: int = Field(default=10, ge=1)
    health_interval: float = Field(default=30.0, ge=0)
    local_path_map: dict[str, str] = Field(
        default_factory=lambda: {"/home/ubuntu/apps": "/apps", "/apps": "/apps"},
        description="Host path prefix -> path visible to this process",
    )

    def local_path(self) -> Path | None:
        """Return the deploy dir as seen from this process, if it is mounted here."""
        if not self.deploy_dir:
            return None
        for prefix, mounted in self.local_path_map.items():
            if self.deploy_dir == prefix or self.deploy_dir.startswith(prefix + "/"):
                return Path(mounted + self.deploy_dir[len(prefix):])
        return None


class NotificationConfig(BaseModel):
    """Outbound e-mail notification settings."""

    provider: str = Field(default="resend", description="'resend' or 'sendgrid'")
    api_key: str = Field(default="")
    from_address: str = Field(default="autoship@localhost")
    to_address: str = Field(default="")


class ProjectRecord(BaseModel):
    """Per-project settings, the highest-priority configuration source."""

    id: str
    name: str = Field(default="")
    folder: str = Field(default="")
    scm_provider: str = Field(default="")
    scm_org: str = Field(default="")
    scm_project: str = Field(default="")
    scm_repo: str = Field(default="")
    scm_token: str = Field(default="")
    deployment: DeployTarget | None = Field(default=None)
    deploy_config: DeployConfig | None = Field(default=None)


class Config(BaseModel):
    """Global autoship configuration.

    Holds every tuneable parameter and derived path used by the orchestrator.
    """

    project_dir: Path = Field(default_factory=Path.cwd)
    state_dir: Path = Field(default=Path(".autoship"))
    trunk_branch: str = Field(default="main")
    skip_external_ci: bool = Field(default=False)
    self_identity_names: list[str] = Field(
        default_factory=lambda: ["autoship", "ai-swarm-v2"],
        description="Package names identifying the orchestrator's own repository",
    )
    protected_targets: list[str] = Field(default_factory=lambda: list(DEFAULT_PROTECTED_TARGETS))
    deploy_config_filename: str = Field(default="autoship.deploy.yaml")

    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    scm: ScmSettings = Field(default_factory=ScmSettings)
    deploy: DeployTarget = Field(default_factory=DeployTarget)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    projects: dict[str, ProjectRecord] = Field(default_factory=dict)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_project(self, project_id: str | None) -> ProjectRecord | None:
        if not project_id:
            return None
        return self.projects.get(project_id)

    def project_base_dir(self, project_id: str | None) -> Path:
        """Directory holding the trunk checkout for ``project_id``."""
        project = self.get_project(project_id)
        if project and project.folder:
            return Path(project.folder)
        return Path(self.project_dir)

    def deploy_target(self, project_id: str | None) -> DeployTarget:
        """Production target for ``project_id``, falling back to the global default."""
        project = self.get_project(project_id)
        if project and project.deployment:
            return project.deployment
        return self.deploy

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def state_path(self) -> Path:
        """Root of the persisted-state directory."""
        if self.state_dir.is_absolute():
            return self.state_dir
        return Path(self.project_dir) / self.state_dir

    @property
    def workflows_dir(self) -> Path:
        """Directory of per-workflow ``WorkflowState`` JSON files."""
        return self.state_path / "workflows"

    @property
    def signals_dir(self) -> Path:
        """Directory of per-workflow signal queues."""
        return self.state_path / "signals"

    @property
    def queue_dir(self) -> Path:
        """Directory of workflow inputs waiting to be started."""
        return self.state_path / "queue"

    @property
    def fix_chain_path(self) -> Path:
        """Path to the fix-task chain store."""
        return self.state_path / "fix-chains.json"

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path | None = None) -> Path:
        """Persist the configuration to a JSON file.

        Args:
            path: Destination file. Defaults to ``<state_path>/config.json``.

        Returns:
            The resolved path where the file was written.
        """
        target = path or (self.state_path / "config.json")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            AUTOSHIP_PROJECT_DIR, AUTOSHIP_STATE_DIR, AUTOSHIP_TRUNK_BRANCH,
            AUTOSHIP_SKIP_EXTERNAL_CI, AUTOSHIP_PROTECTED_TARGETS,
            AUTOSHIP_SCM_PROVIDER, AUTOSHIP_SCM_TOKEN, AUTOSHIP_SCM_ORG,
            AUTOSHIP_SCM_PROJECT, AUTOSHIP_SCM_REPO,
            AUTOSHIP_GITHUB_TOKEN, AUTOSHIP_GITLAB_TOKEN, AUTOSHIP_AZURE_DEVOPS_TOKEN,
            AUTOSHIP_DEPLOY_DIR, AUTOSHIP_DEPLOY_HOST, AUTOSHIP_DEPLOY_USER,
            AUTOSHIP_DEPLOY_SERVICES, AUTOSHIP_APP_URL, AUTOSHIP_DEPLOY_CONTAINER,
            AUTOSHIP_CLAUDE_AUTH_MODE, AUTOSHIP_ZAI_API_KEY,
            AUTOSHIP_LLM_PLANNER, AUTOSHIP_LLM_CODER, AUTOSHIP_LLM_REVIEWER,
            AUTOSHIP_EMAIL_PROVIDER, AUTOSHIP_EMAIL_API_KEY, AUTOSHIP_EMAIL_FROM,
            AUTOSHIP_EMAIL_TO, AUTOSHIP_FIX_CHAIN_THRESHOLD.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str:
            return env.get(f"AUTOSHIP_{name}", "")

        kwargs: dict[str, Any] = {}
        if get("PROJECT_DIR"):
            kwargs["project_dir"] = Path(get("PROJECT_DIR"))
        if get("STATE_DIR"):
            kwargs["state_dir"] = Path(get("STATE_DIR"))
        if get("TRUNK_BRANCH"):
            kwargs["trunk_branch"] = get("TRUNK_BRANCH")
        if get("SKIP_EXTERNAL_CI"):
            kwargs["skip_external_ci"] = get("SKIP_EXTERNAL_CI").lower() in ("1", "true", "yes")
        if get("PROTECTED_TARGETS"):
            kwargs["protected_targets"] = _split_csv(get("PROTECTED_TARGETS"))

        scm_kwargs: dict[str, Any] = {}
        for field_name, var in (
            ("provider", "SCM_PROVIDER"),
            ("token", "SCM_TOKEN"),
            ("org", "SCM_ORG"),
            ("project", "SCM_PROJECT"),
            ("repo", "SCM_REPO"),
        ):
            if get(var):
                scm_kwargs[field_name] = get(var)
        provider_tokens = {
            provider: get(var)
            for provider, var in (
                ("github", "GITHUB_TOKEN"),
                ("gitlab", "GITLAB_TOKEN"),
                ("azure-devops", "AZURE_DEVOPS_TOKEN"),
            )
            if get(var)
        }
        if provider_tokens:
            scm_kwargs["provider_tokens"] = provider_tokens

        deploy_kwargs: dict[str, Any] = {}
        if get("DEPLOY_DIR"):
            deploy_kwargs["deploy_dir"] = get("DEPLOY_DIR")
        if get("DEPLOY_HOST"):
            deploy_kwargs["ssh_host"] = get("DEPLOY_HOST")
        if get("DEPLOY_USER"):
            deploy_kwargs["ssh_user"] = get("DEPLOY_USER")
        if get("DEPLOY_SERVICES"):
            deploy_kwargs["services"] = _split_csv(get("DEPLOY_SERVICES"))
        if get("APP_URL"):
            deploy_kwargs["app_url"] = get("APP_URL")
        if get("DEPLOY_CONTAINER"):
            deploy_kwargs["container"] = get("DEPLOY_CONTAINER")

        oracle_kwargs: dict[str, Any] = {}
        if get("CLAUDE_AUTH_MODE"):
            oracle_kwargs["claude_auth_mode"] = get("CLAUDE_AUTH_MODE")
        if get("ZAI_API_KEY"):
            oracle_kwargs["zai_api_key"] = get("ZAI_API_KEY")
        role_providers = dict(DEFAULT_ROLE_PROVIDERS)
        for role in ("planner", "coder", "reviewer", "deployer"):
            if get(f"LLM_{role.upper()}"):
                role_providers[role] = get(f"LLM_{role.upper()}").lower()
        oracle_kwargs["role_providers"] = role_providers

        notify_kwargs: dict[str, Any] = {}
        for field_name, var in (
            ("provider", "EMAIL_PROVIDER"),
            ("api_key", "EMAIL_API_KEY"),
            ("from_address", "EMAIL_FROM"),
            ("to_address", "EMAIL_TO"),
        ):
            if get(var):
                notify_kwargs[field_name] = get(var)

        workflow_kwargs: dict[str, Any] = {}
        if get("FIX_CHAIN_THRESHOLD"):
            workflow_kwargs["fix_chain_threshold"] = int(get("FIX_CHAIN_THRESHOLD"))

        return cls(
            scm=ScmSettings(**scm_kwargs),
            deploy=DeployTarget(**deploy_kwargs),
            oracle=OracleConfig(**oracle_kwargs),
            notifications=NotificationConfig(**notify_kwargs),
            workflow=WorkflowConfig(**workflow_kwargs),
            **kwargs,
        )

    def ensure_directories(self) -> None:
        """Create all derived directories that must exist before a workflow runs."""
        for directory in (self.state_path, self.workflows_dir, self.signals_dir, self.queue_dir):
            directory.mkdir(parents=True, exist_ok=True)
