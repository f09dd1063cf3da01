"""Source-control abstraction: shared types, HTTP client and provider ABC.

Concrete providers (GitHub, GitLab, Azure DevOps) map their REST semantics
onto ``SCMProvider``. Every provider talks through ``ScmHttpClient``, which
owns the retry contract: honour ``Retry-After`` on 429, back off ``2^attempt``
seconds on 5xx and transport errors, and raise the last error on exhaustion.
"""

from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
from rich.console import Console

from autoship.errors import ScmError
from autoship.executor import InfrastructureExecutor

console = Console()

SleepFn = Callable[[float], Awaitable[None]]


# ---------------------------------------------------------------------------
# Shared types
# ---------------------------------------------------------------------------


@dataclass
class ScmConnection:
    """Fully-resolved coordinates and token for one repository."""

    provider: str
    token: str
    org: str
    repo: str
    project: str = ""


@dataclass
class CreatePROptions:
    title: str
    body: str
    source_branch: str
    target_branch: str = "main"
    draft: bool = False


@dataclass
class PullRequestInfo:
    id: int
    url: str
    title: str = ""
    status: str = "open"
    source_branch: str = ""
    target_branch: str = ""
    merge_commit_sha: str | None = None


@dataclass
class MergeOptions:
    merge_method: str = "squash"
    delete_branch: bool = True
    commit_message: str | None = None


@dataclass
class MergeResult:
    """Outcome of a merge request. Providers never raise out of ``merge``."""

    success: bool
    sha: str | None = None
    branch_deleted: bool = False
    error: str | None = None

    def summary(self) -> str:
        if self.success:
            return f"[green]Merged[/green] {self.sha or ''} (branch deleted: {self.branch_deleted})"
        return f"[red]Merge failed:[/red] {self.error}"


@dataclass
class RequestLog:
    """Attempts made by the last ``ScmHttpClient.request`` call (kept for tests and audits)."""

    statuses: list[int | None] = field(default_factory=list)
    sleeps: list[float] = field(default_factory=list)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


class ScmHttpClient:
    """Thin httpx wrapper implementing the SCM retry contract."""

    def __init__(
        self,
        max_attempts: int = 3,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
        default_retry_after: float = 60.0,
    ):
        self.max_attempts = max_attempts
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep
        self.default_retry_after = default_retry_after
        self.last = RequestLog()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            transport=self._transport,
        )

    def _retry_after(self, response: httpx.Response) -> float:
        value = response.headers.get("Retry-After", "")
        try:
            return float(value)
        except ValueError:
            return self.default_retry_after

    async def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        json_body: Any = None,
    ) -> Any:
        """Send a request and return the decoded JSON body (``{}`` when empty).

        Raises:
            ScmError: For a non-retryable status, or once attempts are exhausted.
        """
        self.last = RequestLog()
        last_error: Exception | None = None

        async with self._client() as client:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    response = await client.request(method, url, headers=headers, json=json_body)
                except httpx.TransportError as exc:
                    self.last.statuses.append(None)
                    last_error = ScmError(f"API request failed: {exc}", url=url)
                    if attempt < self.max_attempts:
                        await self._backoff(2 ** attempt)
                        continue
                    break

                self.last.statuses.append(response.status_code)

                if response.status_code == 429:
                    wait = self._retry_after(response)
                    console.print(f"[yellow]Rate limited by SCM API, waiting {wait:.0f}s[/yellow]")
                    last_error = ScmError(
                        "API request failed: 429 rate limited", status_code=429, url=url
                    )
                    if attempt < self.max_attempts:
                        await self._backoff(wait)
                        continue
                    break

                if response.status_code >= 500:
                    last_error = ScmError(
                        f"API request failed: {response.status_code} {response.reason_phrase} - {response.text}",
                        status_code=response.status_code,
                        url=url,
                    )
                    if attempt < self.max_attempts:
                        await self._backoff(2 ** attempt)
                        continue
                    break

                if response.is_error:
                    raise ScmError(
                        f"API request failed: {response.status_code} {response.reason_phrase} - {response.text}",
                        status_code=response.status_code,
                        url=url,
                    )

                if not response.content.strip():
                    return {}
                return response.json()

        assert last_error is not None
        raise last_error

    async def _backoff(self, seconds: float) -> None:
        self.last.sleeps.append(seconds)
        await self._sleep(seconds)


# ---------------------------------------------------------------------------
# Provider ABC
# ---------------------------------------------------------------------------


class SCMProvider(ABC):
    """Capability set every source-control provider implements."""

    name: str = ""
    host: str = ""
    pr_number_pattern: str = r"(\d+)$"

    def __init__(self, connection: ScmConnection, http: ScmHttpClient | None = None):
        self.connection = connection
        self.http = http or ScmHttpClient()

    @abstractmethod
    def api_base_url(self) -> str: ...

    @abstractmethod
    def repo_url(self) -> str: ...

    @abstractmethod
    def auth_headers(self) -> dict[str, str]: ...

    @abstractmethod
    def credential_rewrites(self) -> list[tuple[str, str]]:
        """``(authenticated_prefix, plain_prefix)`` pairs for ``url.<x>.insteadOf``."""

    @abstractmethod
    def clone_url(self) -> str: ...

    @abstractmethod
    async def create_pull_request(self, options: CreatePROptions) -> str:
        """Open a pull request and return its web URL."""

    @abstractmethod
    async def get_pull_request(self, pr: int | str) -> PullRequestInfo: ...

    @abstractmethod
    async def merge_pull_request(self, pr: int | str, options: MergeOptions) -> MergeResult: ...

    @abstractmethod
    async def close_pull_request(self, pr: int | str) -> bool: ...

    async def _request(self, method: str, path: str, json_body: Any = None) -> Any:
        url = path if path.startswith("http") else f"{self.api_base_url()}{path}"
        return await self.http.request(method, url, headers=self.auth_headers(), json_body=json_body)

    def extract_pr_number(self, pr: int | str) -> int:
        """Accept a PR number or its web URL."""
        if isinstance(pr, int):
            return pr
        if pr.strip().isdigit():
            return int(pr.strip())
        match = re.search(self.pr_number_pattern, pr)
        if not match:
            raise ScmError(f"Could not extract PR number from: {pr}")
        return int(match.group(1))

    async def configure_git_credentials(
        self, project_dir: str | Path, executor: InfrastructureExecutor
    ) -> bool:
        """Point git at authenticated remotes. Best effort: returns ``False`` on failure."""
        try:
            for authed, plain in self.credential_rewrites():
                await executor.git(
                    "config", "--global", f"url.{authed}.insteadOf", plain, cwd=project_dir
                )
            result = await executor.git("remote", "set-url", "origin", self.clone_url(), cwd=project_dir)
            if not result.ok:
                console.print(f"[yellow]Could not set origin URL: {result.stderr}[/yellow]")
                return False
            return True
        except OSError as exc:
            console.print(f"[yellow]Failed to configure {self.name} credentials: {exc}[/yellow]")
            return False
