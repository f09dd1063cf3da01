"""Live verification of a production deployment.

Runs after every successful deploy:

1. HTTP health polling against an endpoint discovered from the deployed app's
   ``.aicontext/API_REFERENCE.md`` (``/healthz``, ``/health``, ``/api/setup``,
   else ``/api/health``).
2. A fail-safe visual review: the landing page is shown to the reasoning
   oracle, and only a high-confidence "catastrophically broken" verdict fails
   the deployment. Any error in this step passes through.
3. A check of the running container's ``commit`` label against the merge
   commit.
4. An advisory ``docker compose ps``.
"""

from __future__ import annotations

import asyncio
import re
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import httpx
from rich.console import Console

from autoship.config import Config, DeployTarget
from autoship.errors import OracleError
from autoship.executor import InfrastructureExecutor
from autoship.oracle import OracleCascade, parse_json_response
from autoship.prompts import PromptRenderer

console = Console()

SleepFn = Callable[[float], Awaitable[None]]

DEFAULT_HEALTH_ENDPOINT = "/api/health"
SETUP_ENDPOINT = "/api/setup"
VISUAL_FAIL_CONFIDENCE = 8
_UNLABELLED = {"", "unknown", "<no value>"}
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


def discover_health_endpoint(api_reference: str | None) -> str:
    """Pick the health endpoint advertised in an API reference document."""
    if not api_reference:
        return DEFAULT_HEALTH_ENDPOINT
    if "/healthz" in api_reference:
        return "/healthz"
    if "/health" in api_reference:
        return "/health"
    if SETUP_ENDPOINT in api_reference:
        return SETUP_ENDPOINT
    return DEFAULT_HEALTH_ENDPOINT


def join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}{path}"


@dataclass
class VisualVerdict:
    verdict: str = "pass"
    confidence: int = 0
    reason: str = ""

    @property
    def should_fail(self) -> bool:
        return self.verdict == "fail" and self.confidence >= VISUAL_FAIL_CONFIDENCE


@dataclass
class VerificationOutcome:
    """Result of ``LiveVerifier.verify``."""

    success: bool
    logs: list[str] = field(default_factory=list)
    visual_verified: bool = False
    visual_error: str | None = None

    @property
    def log_text(self) -> str:
        return "\n".join(self.logs)

    def summary(self) -> str:
        status = "[green]VERIFIED[/green]" if self.success else "[red]FAILED[/red]"
        lines = [f"Status: {status}", f"Visual review: {self.visual_verified}"]
        if self.visual_error:
            lines.append(f"Visual error: {self.visual_error[:200]}")
        return "\n".join(lines)


class LiveVerifier:
    """Verifies that the live application is healthy and runs the expected commit."""

    def __init__(
        self,
        config: Config,
        executor: InfrastructureExecutor,
        oracle: OracleCascade | None = None,
        renderer: PromptRenderer | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.config = config
        self.executor = executor
        self.oracle = oracle
        self.renderer = renderer or PromptRenderer()
        self._transport = transport
        self._sleep = sleep

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(10.0), transport=self._transport, follow_redirects=True
        )

    async def resolve_endpoint(self, target: DeployTarget, logs: list[str]) -> str:
        if target.health_endpoint:
            return target.health_endpoint
        if not target.deploy_dir:
            return DEFAULT_HEALTH_ENDPOINT
        logs.append(f"Checking for health endpoint in {target.deploy_dir}/.aicontext/")
        reference = await self.executor.read_text(
            target.ssh_host, target.ssh_user, f"{target.deploy_dir}/.aicontext/API_REFERENCE.md"
        )
        endpoint = discover_health_endpoint(reference)
        logs.append(f"Using health endpoint {endpoint}")
        return endpoint

    async def poll_health(self, url: str, endpoint: str, target: DeployTarget, logs: list[str]) -> bool:
        attempts = target.health_attempts
        async with self._client() as client:
            for attempt in range(1, attempts + 1):
                logs.append(f"Attempt {attempt}/{attempts}: checking {url}")
                try:
                    response = await client.get(url)
                    if self._healthy(response, endpoint):
                        logs.append(f"Attempt {attempt}: health check passed ({response.status_code})")
                        return True
                    logs.append(
                        f"Attempt {attempt}: unexpected response {response.status_code}: {response.text[:100]}"
                    )
                except httpx.HTTPError as exc:
                    logs.append(f"Attempt {attempt}: connection failed ({exc}); app may still be starting")

                if attempt < attempts:
                    await self._sleep(target.health_interval)

        logs.append(f"Health check FAILED after {attempts} attempts")
        return False

    @staticmethod
    def _healthy(response: httpx.Response, endpoint: str) -> bool:
        if endpoint == SETUP_ENDPOINT:
            try:
                data = response.json()
                return isinstance(data, dict) and data.get("success") is True
            except ValueError:
                return False
        return response.is_success and bool(response.text.strip())

    async def visual_review(self, url: str) -> VisualVerdict:
        """Ask the oracle whether the page is catastrophically broken.

        Raises:
            httpx.HTTPError, OracleError, ValueError: Callers treat these as a pass.
        """
        if self.oracle is None:
            raise ValueError("No reasoning oracle configured for visual review")
        async with self._client() as client:
            page = await client.get(url)
        match = _TITLE_RE.search(page.text)
        prompt = self.renderer.render(
            "visual_review",
            url=url,
            status_code=page.status_code,
            title=match.group(1).strip() if match else "",
            body=page.text,
        )
        raw = await self.oracle.invoke(prompt, "reviewer")
        data = parse_json_response(raw)
        if data is None:
            raise ValueError("Visual review returned no JSON")
        return VisualVerdict(
            verdict=str(data.get("verdict", "pass")).lower(),
            confidence=int(data.get("confidence") or 0),
            reason=str(data.get("reason", "")),
        )

    async def check_commit_label(self, target: DeployTarget, expected: str, logs: list[str]) -> bool:
        logs.append(f"Verifying container label 'commit' for {target.container}")
        result = await self.executor.run_on(
            target.ssh_host,
            target.ssh_user,
            f"docker inspect --format '{{{{ index .Config.Labels \"commit\" }}}}' {shlex.quote(target.container)}",
            timeout=30.0,
        )
        if not result.ok:
            logs.append(f"Commit label check failed ({result.stderr}); continuing")
            return True
        deployed = result.stdout.strip()
        if deployed == expected:
            logs.append(f"Commit verified: {deployed}")
            return True
        if deployed in _UNLABELLED:
            logs.append("Container has no commit label; skipping strict verification")
            return True
        logs.append(f"Commit mismatch! Expected: {expected}, Got: {deployed}")
        return False

    async def verify(self, project_id: str | None = None, expected_commit: str | None = None) -> VerificationOutcome:
        target = self.config.deploy_target(project_id)
        logs: list[str] = []
        outcome = VerificationOutcome(success=True, logs=logs)

        endpoint = await self.resolve_endpoint(target, logs)

        if not target.app_url:
            logs.append("Skipping HTTP health check (no app URL configured)")
        else:
            url = join_url(target.app_url, endpoint)
            console.print(f"[cyan]Health check:[/cyan] {url}")
            if not await self.poll_health(url, endpoint, target, logs):
                outcome.success = False
                return outcome

            try:
                verdict = await self.visual_review(target.app_url)
                if verdict.should_fail:
                    logs.append(f"Visual review CRITICAL FAILURE (confidence {verdict.confidence}/10): {verdict.reason}")
                    outcome.success = False
                    outcome.visual_error = f"Visual review failed: {verdict.reason}"
                    return outcome
                logs.append(f"Visual review {verdict.verdict} (confidence {verdict.confidence}/10): {verdict.reason}")
                outcome.visual_verified = True
            except (httpx.HTTPError, OracleError, ValueError) as exc:
                logs.append(f"Visual review skipped: {exc}")
                outcome.visual_error = str(exc)

        if expected_commit and target.container:
            if not await self.check_commit_label(target, expected_commit, logs):
                outcome.success = False
                return outcome
        elif expected_commit:
            logs.append("Skipping commit label verification (no container configured)")

        if target.deploy_dir:
            ps = await self.executor.run_on(
                target.ssh_host,
                target.ssh_user,
                "docker compose ps --format '{{.Name}} {{.Status}}' | head -10",
                cwd=target.deploy_dir,
                timeout=30.0,
            )
            logs.append(f"Container status:\n{ps.output[:500]}")

        console.print("[green]Live verification passed[/green]")
        return outcome
