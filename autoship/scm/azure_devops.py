"""Azure DevOps pull-request provider (REST api-version 7.0)."""

from __future__ import annotations

import base64

from rich.console import Console

from autoship.errors import ScmConfigError, ScmError
from autoship.scm.base import (
    CreatePROptions,
    MergeOptions,
    MergeResult,
    PullRequestInfo,
    ScmConnection,
    ScmHttpClient,
    SCMProvider,
)

console = Console()

API_VERSION = "7.0"

_STATUS = {"completed": "merged", "abandoned": "closed"}


def _strip_ref(ref: str) -> str:
    return ref.removeprefix("refs/heads/")


class AzureDevOpsProvider(SCMProvider):
    name = "azure-devops"
    pr_number_pattern = r"/pullrequest/(\d+)"

    def __init__(self, connection: ScmConnection, http: ScmHttpClient | None = None):
        if not connection.project:
            raise ScmConfigError("An SCM project is required for Azure DevOps")
        super().__init__(connection, http)

    def api_base_url(self) -> str:
        c = self.connection
        return f"https://dev.azure.com/{c.org}/{c.project}/_apis/git/repositories/{c.repo}"

    def repo_url(self) -> str:
        c = self.connection
        return f"https://dev.azure.com/{c.org}/{c.project}/_git/{c.repo}"

    def clone_url(self) -> str:
        return self.repo_url()

    def auth_headers(self) -> dict[str, str]:
        credentials = base64.b64encode(f":{self.connection.token}".encode()).decode()
        return {"Authorization": f"Basic {credentials}"}

    def credential_rewrites(self) -> list[tuple[str, str]]:
        org, token = self.connection.org, self.connection.token
        authed = f"https://{token}@dev.azure.com/{org}/"
        return [
            (authed, f"https://dev.azure.com/{org}/"),
            (authed, f"https://{org}@dev.azure.com/{org}/"),
        ]

    def _pr_path(self, pr_id: int | None = None) -> str:
        suffix = f"/{pr_id}" if pr_id is not None else ""
        return f"/pullrequests{suffix}?api-version={API_VERSION}"

    async def create_pull_request(self, options: CreatePROptions) -> str:
        response = await self._request(
            "POST",
            self._pr_path(),
            {
                "sourceRefName": f"refs/heads/{options.source_branch}",
                "targetRefName": f"refs/heads/{options.target_branch}",
                "title": options.title,
                "description": options.body,
                "isDraft": options.draft,
            },
        )
        url = f"{self.repo_url()}/pullrequest/{response['pullRequestId']}"
        console.print(f"[green]Azure DevOps PR created:[/green] {url}")
        return url

    async def get_pull_request(self, pr: int | str) -> PullRequestInfo:
        pr_id = self.extract_pr_number(pr)
        response = await self._request("GET", self._pr_path(pr_id))
        return PullRequestInfo(
            id=response["pullRequestId"],
            url=f"{self.repo_url()}/pullrequest/{response['pullRequestId']}",
            title=response.get("title", ""),
            status=_STATUS.get(response.get("status", ""), "open"),
            source_branch=_strip_ref(response.get("sourceRefName", "")),
            target_branch=_strip_ref(response.get("targetRefName", "")),
            merge_commit_sha=(response.get("lastMergeCommit") or {}).get("commitId"),
        )

    async def merge_pull_request(self, pr: int | str, options: MergeOptions) -> MergeResult:
        try:
            pr_id = self.extract_pr_number(pr)
            details = await self._request("GET", self._pr_path(pr_id))

            completion: dict[str, object] = {
                "deleteSourceBranch": options.delete_branch,
                "mergeStrategy": "squash",
            }
            if options.commit_message:
                completion["mergeCommitMessage"] = options.commit_message

            response = await self._request(
                "PATCH",
                self._pr_path(pr_id),
                {
                    "status": "completed",
                    "lastMergeSourceCommit": details.get("lastMergeSourceCommit"),
                    "completionOptions": completion,
                },
            )
            return MergeResult(
                success=True,
                sha=(response.get("lastMergeCommit") or {}).get("commitId"),
                branch_deleted=options.delete_branch,
            )
        except ScmError as exc:
            console.print(f"[red]Azure DevOps merge failed:[/red] {exc}")
            return MergeResult(success=False, error=str(exc))

    async def close_pull_request(self, pr: int | str) -> bool:
        pr_id = self.extract_pr_number(pr)
        await self._request("PATCH", self._pr_path(pr_id), {"status": "abandoned"})
        return True
