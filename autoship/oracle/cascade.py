"""Reasoning-oracle cascade.

Every role (planner, coder, reviewer, deployer, ...) maps to an ordered list
of models. ``OracleCascade.invoke`` walks that list until one model answers,
waiting a fixed delay between models, and only raises once every option is
exhausted. Above the model cascade sits provider selection: a role may ask
for Claude, but that is honoured only when Claude's credentials fit the
configured auth mode. Otherwise the call is quietly downgraded to Gemini.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path

from rich.console import Console
from rich.panel import Panel

from autoship.config import OracleConfig
from autoship.errors import OracleError
from autoship.oracle.runners import ClaudeRunner, GeminiRunner

console = Console()

SleepFn = Callable[[float], Awaitable[None]]


class Provider(str, Enum):
    """The closed set of reasoning providers."""
    GEMINI = "gemini"
    CLAUDE = "claude"


_DEFAULT_PROVIDER = {
    "coder": Provider.CLAUDE,
}


def claude_available(config: OracleConfig) -> bool:
    """Claude needs either an OAuth session or a Z.ai key in ``zai`` mode."""
    if config.claude_auth_mode == "oauth":
        return True
    if config.claude_auth_mode == "zai":
        return bool(config.zai_api_key)
    return False


def select_provider(role: str, config: OracleConfig) -> Provider:
    """Pick the provider for ``role``, downgrading to Gemini when Claude cannot run."""
    configured = config.role_providers.get(role)
    try:
        provider = Provider(configured) if configured else _DEFAULT_PROVIDER.get(role, Provider.GEMINI)
    except ValueError:
        console.print(f"[yellow]Unknown provider '{configured}' for role {role}; using gemini[/yellow]")
        return Provider.GEMINI

    if provider is Provider.CLAUDE and not claude_available(config):
        console.print(
            f"[yellow]Claude selected for {role} but auth mode '{config.claude_auth_mode}' "
            f"has no credentials; downgrading to gemini[/yellow]"
        )
        return Provider.GEMINI
    return provider


class OracleCascade:
    """Invokes the reasoning oracle for a role, failing only when all options fail."""

    def __init__(
        self,
        config: OracleConfig,
        gemini: GeminiRunner | None = None,
        claude: ClaudeRunner | None = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.config = config
        self.gemini = gemini or GeminiRunner(config.gemini_binary, config.model_timeout)
        self.claude = claude or ClaudeRunner(
            config.claude_binary,
            config.model_timeout,
            auth_mode=config.claude_auth_mode,
            zai_api_key=config.zai_api_key,
            zai_base_url=config.zai_base_url,
        )
        self._sleep = sleep

    def cascade_for(self, role: str) -> list[str]:
        models = self.config.cascades.get(role)
        if not models:
            raise OracleError(role, f"Unknown agent role: {role}")
        return models

    async def invoke(self, prompt: str, role: str, cwd: str | Path | None = None) -> str:
        """Return the first successful answer for ``role``.

        Raises:
            OracleError: When Claude (if selected) and every Gemini model failed.
        """
        provider = select_provider(role, self.config)

        if provider is Provider.CLAUDE:
            console.print(f"[cyan]Invoking claude for role[/cyan] [bold]{role}[/bold]")
            result = await self.claude.run(prompt, cwd=cwd)
            if result.success:
                return result.text
            console.print(
                f"[yellow]Claude failed for {role} ({result.error[:200]}); falling back to gemini[/yellow]"
            )

        return await self._invoke_gemini(prompt, role, cwd)

    async def _invoke_gemini(self, prompt: str, role: str, cwd: str | Path | None) -> str:
        models = self.cascade_for(role)
        attempts: list[str] = []

        for index, model in enumerate(models):
            console.print(
                f"[cyan]Invoking gemini[/cyan] [bold]{model}[/bold] for role {role} "
                f"({index + 1}/{len(models)})"
            )
            result = await self.gemini.run(prompt, model=model, cwd=cwd)
            if result.success:
                return result.text

            attempts.append(f"{model}: {result.error}")
            console.print(f"[yellow]Model {model} failed: {result.error[:200]}[/yellow]")
            if index < len(models) - 1:
                await self._sleep(self.config.retry_delay)

        console.print(
            Panel(
                "\n".join(attempts) or "no models configured",
                title=f"[red]Cascade exhausted: {role}[/red]",
                border_style="red",
            )
        )
        raise OracleError(role, f"All models in cascade exhausted for role: {role}", attempts)
