"""Source-control abstraction for autoship.

Key classes:
- SCMProvider: capability set (create/get/merge/close PRs, git credentials)
- GitHubProvider, GitLabProvider, AzureDevOpsProvider: concrete providers
- ScmHttpClient: shared REST client with the 429/5xx retry contract

``resolve_connection`` applies the token hierarchy (per-project token, then
per-provider default, then environment token) and ``get_provider`` builds the
matching provider from the closed set.
"""

from __future__ import annotations

from rich.console import Console

from autoship.config import Config, ProjectRecord
from autoship.errors import ScmConfigError
from autoship.scm.azure_devops import AzureDevOpsProvider
from autoship.scm.base import (
    CreatePROptions,
    MergeOptions,
    MergeResult,
    PullRequestInfo,
    ScmConnection,
    ScmHttpClient,
    SCMProvider,
)
from autoship.scm.github import GitHubProvider
from autoship.scm.gitlab import GitLabProvider

console = Console()

PROVIDERS: dict[str, type[SCMProvider]] = {
    "github": GitHubProvider,
    "gitlab": GitLabProvider,
    "azure-devops": AzureDevOpsProvider,
}


def resolve_connection(config: Config, project: ProjectRecord | None = None) -> ScmConnection | None:
    """Merge project and global SCM settings. ``None`` when anything essential is missing."""
    settings = config.scm
    provider = (project.scm_provider if project and project.scm_provider else settings.provider)
    org = (project.scm_org if project and project.scm_org else settings.org)
    repo = (project.scm_repo if project and project.scm_repo else settings.repo)
    scm_project = (project.scm_project if project and project.scm_project else settings.project)

    if not provider or not org or not repo:
        return None

    token = next(
        (
            candidate
            for candidate in (
                project.scm_token if project else "",
                settings.provider_tokens.get(provider, ""),
                settings.token,
            )
            if candidate
        ),
        "",
    )
    if not token:
        console.print(f"[yellow]No SCM token found for provider {provider}[/yellow]")
        return None

    return ScmConnection(provider=provider, token=token, org=org, repo=repo, project=scm_project)


def get_provider(connection: ScmConnection, http: ScmHttpClient | None = None) -> SCMProvider:
    """Instantiate the provider for ``connection.provider``."""
    provider_cls = PROVIDERS.get(connection.provider)
    if provider_cls is None:
        raise ScmConfigError(f"Unsupported SCM provider: {connection.provider}")
    return provider_cls(connection, http)


class ScmFactory:
    """Builds the provider for a project on demand."""

    def __init__(self, config: Config, http: ScmHttpClient | None = None):
        self.config = config
        self.http = http

    def for_project(self, project_id: str | None) -> SCMProvider | None:
        connection = resolve_connection(self.config, self.config.get_project(project_id))
        if connection is None:
            return None
        return get_provider(connection, self.http)


__all__ = [
    # Providers
    "SCMProvider",
    "GitHubProvider",
    "GitLabProvider",
    "AzureDevOpsProvider",
    "PROVIDERS",
    # HTTP
    "ScmHttpClient",
    # Types
    "CreatePROptions",
    "MergeOptions",
    "MergeResult",
    "PullRequestInfo",
    "ScmConnection",
    # Factory
    "ScmFactory",
    "get_provider",
    "resolve_connection",
]
