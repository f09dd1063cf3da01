"""CLI process management for the reasoning oracle.

Spawns the Gemini and Claude command-line clients with the prompt piped on
stdin, enforces a wall-clock timeout and returns a structured result. A
runner never raises for process-level failures; the cascade decides what to
do with a failed ``OracleResult``.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console

console = Console()


@dataclass
class OracleResult:
    """Structured result from one oracle CLI invocation."""

    success: bool
    text: str = ""
    model: str = ""
    provider: str = ""
    error: str = ""
    exit_code: int = -1
    duration_seconds: float = 0.0

    def summary(self) -> str:
        """Return a human-readable summary of the result."""
        status = "[green]SUCCESS[/green]" if self.success else "[red]FAILED[/red]"
        lines = [
            f"Status: {status}",
            f"Provider: {self.provider} ({self.model or 'default model'})",
            f"Duration: {self.duration_seconds:.1f}s",
        ]
        if self.error:
            lines.append(f"Error: {self.error[:200]}")
        return "\n".join(lines)


class CliRunner:
    """Base class: run ``argv`` with ``prompt`` on stdin under a timeout."""

    provider = ""

    def __init__(self, binary: str, timeout_seconds: float = 600.0):
        self.binary = binary
        self.timeout_seconds = timeout_seconds

    def build_args(self, model: str) -> list[str]:
        raise NotImplementedError

    def build_env(self) -> dict[str, str]:
        return dict(os.environ)

    def extract_text(self, stdout: str) -> str:
        return stdout.strip()

    async def run(self, prompt: str, model: str = "", cwd: str | Path | None = None) -> OracleResult:
        """Invoke the CLI once and collect its output."""
        cmd = [self.binary, *self.build_args(model)]
        start_time = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=self.build_env(),
            )
        except FileNotFoundError:
            return OracleResult(
                success=False,
                model=model,
                provider=self.provider,
                error=f"{self.provider} binary not found: '{self.binary}'",
            )
        except PermissionError:
            return OracleResult(
                success=False,
                model=model,
                provider=self.provider,
                error=f"Permission denied executing: '{self.binary}'",
            )

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(prompt.encode("utf-8")),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return OracleResult(
                success=False,
                model=model,
                provider=self.provider,
                error=f"Process timed out after {self.timeout_seconds}s",
                duration_seconds=time.monotonic() - start_time,
            )

        elapsed = time.monotonic() - start_time
        exit_code = process.returncode if process.returncode is not None else -1
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")

        if exit_code != 0:
            return OracleResult(
                success=False,
                model=model,
                provider=self.provider,
                error=(stderr.strip() or stdout.strip() or f"exit code {exit_code}")[:2000],
                exit_code=exit_code,
                duration_seconds=elapsed,
            )

        text = self.extract_text(stdout)
        if not text:
            return OracleResult(
                success=False,
                model=model,
                provider=self.provider,
                error="Empty response",
                exit_code=exit_code,
                duration_seconds=elapsed,
            )

        return OracleResult(
            success=True,
            text=text,
            model=model,
            provider=self.provider,
            exit_code=exit_code,
            duration_seconds=elapsed,
        )


class GeminiRunner(CliRunner):
    """Runs ``gemini -y -o json --model <model>`` non-interactively."""

    provider = "gemini"

    def __init__(self, binary: str = "gemini", timeout_seconds: float = 600.0):
        super().__init__(binary, timeout_seconds)

    def build_args(self, model: str) -> list[str]:
        args = ["-y", "-o", "json"]
        if model:
            args.extend(["--model", model])
        return args

    def build_env(self) -> dict[str, str]:
        return {**os.environ, "GEMINI_NONINTERACTIVE": "1"}

    def extract_text(self, stdout: str) -> str:
        # -o json wraps the answer as {"response": "..."}
        raw = stdout.strip()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return raw
        if isinstance(data, dict) and isinstance(data.get("response"), str):
            return data["response"].strip()
        return raw


class ClaudeRunner(CliRunner):
    """Runs ``claude -p`` under OAuth or Z.ai credentials."""

    provider = "claude"

    def __init__(
        self,
        binary: str = "claude",
        timeout_seconds: float = 600.0,
        auth_mode: str = "oauth",
        zai_api_key: str = "",
        zai_base_url: str = "",
    ):
        super().__init__(binary, timeout_seconds)
        self.auth_mode = auth_mode
        self.zai_api_key = zai_api_key
        self.zai_base_url = zai_base_url

    def build_args(self, model: str) -> list[str]:
        args = ["-p"]
        if model:
            args.extend(["--model", model])
        return args

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.auth_mode == "zai":
            env["ANTHROPIC_AUTH_TOKEN"] = self.zai_api_key
            if self.zai_base_url:
                env["ANTHROPIC_BASE_URL"] = self.zai_base_url
        else:
            # OAuth sessions break if an API token is also present.
            env.pop("ANTHROPIC_AUTH_TOKEN", None)
            env.pop("ANTHROPIC_API_KEY", None)
        return env
