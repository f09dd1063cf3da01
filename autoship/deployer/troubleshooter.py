"""Deployment troubleshooting and recovery.

``DeploymentTroubleshooter`` asks the ``deployer`` oracle role to classify a
failed deployment as a code or an infrastructure problem and to suggest a
recovery action. ``RecoveryExecutor`` carries that action out.

Both enforce the protected-target blacklist: the troubleshooter rewrites any
action aimed at a protected container into an escalation, and the executor
checks again immediately before running anything.
"""

from __future__ import annotations

import asyncio
import shlex
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from rich.console import Console
from rich.panel import Panel

from autoship.config import Config, DeployTarget
from autoship.errors import OracleError
from autoship.executor import InfrastructureExecutor
from autoship.models import (
    ErrorType,
    RecoveryAction,
    RecoveryActionType,
    TroubleshootResult,
)
from autoship.oracle import OracleCascade, parse_json_response
from autoship.prompts import PromptRenderer
from autoship.utils import truncate

console = Console()

SleepFn = Callable[[float], Awaitable[None]]

MAX_LOG_CHARS = 10_000
ERROR_SUMMARY_CHARS = 500
WAIT_AND_RETRY_SECONDS = 30.0
PROTECTED_MESSAGE = "Manual intervention required - protected container affected"


class ProtectedTargets:
    """Blacklist of containers/services the recovery loop must never touch."""

    def __init__(self, names: Iterable[str]):
        self.names = [name.strip() for name in names if name and name.strip()]

    def contains(self, name: str | None) -> bool:
        if not name:
            return False
        return name.strip() in self.names

    def mentioned_in(self, command: str | None) -> str | None:
        """First protected name that appears as a word in ``command``."""
        if not command:
            return None
        try:
            words = set(shlex.split(command))
        except ValueError:
            words = set(command.split())
        for name in self.names:
            if name in words:
                return name
        return None

    def __iter__(self):
        return iter(self.names)


@dataclass
class RecoveryOutcome:
    """Result of executing one recovery action."""

    success: bool
    output: str = ""
    command: str = ""

    def summary(self) -> str:
        status = "[green]RECOVERED[/green]" if self.success else "[red]NOT RECOVERED[/red]"
        return f"{status} {self.command}\n{self.output[:200]}"


def escalation(analysis: str, error_type: ErrorType = ErrorType.UNKNOWN, summary: str = "") -> TroubleshootResult:
    return TroubleshootResult(
        analysis=analysis,
        error_type=error_type,
        error_summary=summary,
        suggested_action=RecoveryAction(type=RecoveryActionType.ESCALATE),
    )


class DeploymentTroubleshooter:
    """Classifies failed deployments with the ``deployer`` oracle role."""

    def __init__(
        self,
        config: Config,
        oracle: OracleCascade,
        executor: InfrastructureExecutor,
        renderer: PromptRenderer | None = None,
    ):
        self.config = config
        self.oracle = oracle
        self.executor = executor
        self.renderer = renderer or PromptRenderer()
        self.protected = ProtectedTargets(config.protected_targets)

    async def list_containers(self, target: DeployTarget) -> list[str]:
        result = await self.executor.run_on(
            target.ssh_host, target.ssh_user, "docker ps --format '{{.Names}}'", timeout=30.0
        )
        if not result.ok:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def get_container_logs(self, container: str, target: DeployTarget | None = None) -> str:
        """Last 200 log lines of ``container`` on the target host."""
        target = target or self.config.deploy
        result = await self.executor.run_on(
            target.ssh_host,
            target.ssh_user,
            f"docker logs {shlex.quote(container)} --tail 200 2>&1",
            timeout=30.0,
        )
        return result.output

    async def classify(
        self,
        error: str,
        logs: str,
        attempt: int,
        project_id: str | None = None,
    ) -> TroubleshootResult:
        """Classify a deployment failure. Never raises; failures escalate."""
        target = self.config.deploy_target(project_id)
        try:
            containers = await self.list_containers(target)
            prompt = self.renderer.render(
                "troubleshoot",
                attempt=attempt,
                max_attempts=self.config.workflow.max_deploy_attempts,
                project_id=project_id,
                error=error,
                logs=truncate(logs, MAX_LOG_CHARS, tail=True),
                containers=containers,
                protected=list(self.protected),
            )
            raw = await self.oracle.invoke(prompt, "deployer")
            data = parse_json_response(raw)
            if data is None:
                return escalation(f"Troubleshooter returned no JSON: {truncate(raw, 300)}")
            result = TroubleshootResult.model_validate(data)
        except (OracleError, ValueError) as exc:
            console.print(f"[red]Troubleshooting failed:[/red] {exc}")
            return escalation(f"Troubleshooting failed: {exc}")

        if result.error_summary:
            result = result.model_copy(update={"error_summary": result.error_summary[:ERROR_SUMMARY_CHARS]})

        action = result.suggested_action
        if action is not None and action.type is not RecoveryActionType.ESCALATE:
            hit = (action.target if self.protected.contains(action.target) else None) or self.protected.mentioned_in(
                action.command
            )
            if hit:
                console.print(
                    Panel(
                        f"Suggested {action.type.value} on protected target [bold]{hit}[/bold]; escalating.",
                        title="Protected Target",
                        border_style="red",
                    )
                )
                result = result.model_copy(
                    update={
                        "analysis": f"{result.analysis}\n{PROTECTED_MESSAGE}".strip(),
                        "suggested_action": RecoveryAction(
                            type=RecoveryActionType.ESCALATE, target=action.target
                        ),
                    }
                )

        console.print(
            f"[cyan]Troubleshooter:[/cyan] {result.error_type.value} error, "
            f"action={result.suggested_action.type.value if result.suggested_action else 'none'}"
        )
        return result


class RecoveryExecutor:
    """Executes troubleshooter-suggested recovery actions."""

    def __init__(
        self,
        config: Config,
        executor: InfrastructureExecutor,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.config = config
        self.executor = executor
        self.protected = ProtectedTargets(config.protected_targets)
        self._sleep = sleep

    async def execute(self, action: RecoveryAction, project_id: str | None = None) -> RecoveryOutcome:
        """Run ``action`` against the project's deploy target. Never raises."""
        target = self.config.deploy_target(project_id)

        blocked = (action.target if self.protected.contains(action.target) else None) or self.protected.mentioned_in(
            action.command
        )
        if blocked:
            console.print(f"[bold red]Refusing recovery on protected target {blocked}[/bold red]")
            return RecoveryOutcome(success=False, output=f"Protected target '{blocked}' cannot be modified")

        if action.type is RecoveryActionType.ESCALATE:
            return RecoveryOutcome(success=False, output="Escalation required - no automatic action taken")

        if action.type is RecoveryActionType.WAIT_AND_RETRY:
            console.print(f"[dim]Waiting {WAIT_AND_RETRY_SECONDS:.0f}s before retry[/dim]")
            await self._sleep(WAIT_AND_RETRY_SECONDS)
            return RecoveryOutcome(success=True, output="Waited before retry")

        command = self._command_for(action, target)
        if not command:
            return RecoveryOutcome(success=False, output=f"No command for {action.type.value}")

        cwd = target.deploy_dir or None
        console.print(f"[cyan]Recovery:[/cyan] {command}")
        result = await self.executor.run_on(target.ssh_host, target.ssh_user, command, cwd=cwd, timeout=120.0)
        output = result.stdout or result.stderr or "Action completed successfully"
        return RecoveryOutcome(success=result.ok, output=output, command=command)

    def _command_for(self, action: RecoveryAction, target: DeployTarget) -> str:
        name = shlex.quote(action.target) if action.target else ""
        if action.type is RecoveryActionType.RESTART_CONTAINER:
            return f"docker restart {name}" if name else ""
        if action.type is RecoveryActionType.REBUILD_CONTAINER:
            if target.deploy_dir and name:
                return f"docker compose build --no-cache {name} && docker compose up -d {name}"
            return f"docker restart {name}" if name else ""
        if action.type in (RecoveryActionType.RUN_MIGRATION, RecoveryActionType.CLEAR_VOLUME):
            return action.command
        return ""
