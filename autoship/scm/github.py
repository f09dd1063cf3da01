"""GitHub pull-request provider (REST v3)."""

from __future__ import annotations

from rich.console import Console

from autoship.errors import ScmError
from autoship.scm.base import (
    CreatePROptions,
    MergeOptions,
    MergeResult,
    PullRequestInfo,
    SCMProvider,
)

console = Console()


class GitHubProvider(SCMProvider):
    name = "github"
    pr_number_pattern = r"/pull/(\d+)"

    def api_base_url(self) -> str:
        return "https://api.github.com"

    def repo_url(self) -> str:
        return f"https://github.com/{self.connection.org}/{self.connection.repo}"

    def clone_url(self) -> str:
        return f"{self.repo_url()}.git"

    def auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.connection.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def credential_rewrites(self) -> list[tuple[str, str]]:
        return [(f"https://{self.connection.token}@github.com/", "https://github.com/")]

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.connection.org}/{self.connection.repo}"

    async def create_pull_request(self, options: CreatePROptions) -> str:
        response = await self._request(
            "POST",
            f"{self._repo_path}/pulls",
            {
                "head": options.source_branch,
                "base": options.target_branch,
                "title": options.title,
                "body": options.body,
                "draft": options.draft,
            },
        )
        console.print(f"[green]GitHub PR created:[/green] {response['html_url']}")
        return response["html_url"]

    async def get_pull_request(self, pr: int | str) -> PullRequestInfo:
        number = self.extract_pr_number(pr)
        response = await self._request("GET", f"{self._repo_path}/pulls/{number}")

        if response.get("merged"):
            status = "merged"
        elif response.get("state") == "closed":
            status = "closed"
        else:
            status = "open"

        return PullRequestInfo(
            id=response["number"],
            url=response["html_url"],
            title=response.get("title", ""),
            status=status,
            source_branch=response.get("head", {}).get("ref", ""),
            target_branch=response.get("base", {}).get("ref", ""),
            merge_commit_sha=response.get("merge_commit_sha"),
        )

    async def merge_pull_request(self, pr: int | str, options: MergeOptions) -> MergeResult:
        try:
            number = self.extract_pr_number(pr)
            body: dict[str, object] = {"merge_method": options.merge_method}
            if options.commit_message:
                body["commit_message"] = options.commit_message

            response = await self._request("PUT", f"{self._repo_path}/pulls/{number}/merge", body)

            branch_deleted = False
            if options.delete_branch and response.get("merged"):
                info = await self.get_pull_request(number)
                try:
                    await self._request("DELETE", f"{self._repo_path}/git/refs/heads/{info.source_branch}")
                    branch_deleted = True
                except ScmError as exc:
                    console.print(f"[yellow]Failed to delete branch {info.source_branch}: {exc}[/yellow]")

            return MergeResult(success=True, sha=response.get("sha"), branch_deleted=branch_deleted)
        except ScmError as exc:
            console.print(f"[red]GitHub merge failed:[/red] {exc}")
            return MergeResult(success=False, error=str(exc))

    async def close_pull_request(self, pr: int | str) -> bool:
        number = self.extract_pr_number(pr)
        info = await self.get_pull_request(number)
        await self._request("PATCH", f"{self._repo_path}/pulls/{number}", {"state": "closed"})
        if info.source_branch:
            try:
                await self._request("DELETE", f"{self._repo_path}/git/refs/heads/{info.source_branch}")
            except ScmError as exc:
                console.print(f"[yellow]Branch {info.source_branch} not deleted: {exc}[/yellow]")
        return True
